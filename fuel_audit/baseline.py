from __future__ import annotations

import asyncio

from fuel_audit.consumption import compute_consumption_l100
from fuel_audit.interfaces import FuelPriceLookup, VoucherHistoryQuery

WINDOW_SIZE = 20
MIN_DISTANCE_KM = 10.0


async def build_vehicle_baseline(
    vehicle_id: str,
    exclude_voucher_id: str | None,
    *,
    history: VoucherHistoryQuery,
    prices: FuelPriceLookup,
    window_size: int = WINDOW_SIZE,
    min_distance: float = MIN_DISTANCE_KM,
) -> list[float]:
    """Consumption values of the vehicle's recent closed vouchers, most recent first.

    Current prices are read once and applied to the whole batch.
    """
    vouchers = await asyncio.to_thread(
        history.fetch_closed_history,
        vehicle_id,
        exclude_voucher_id,
        limit=window_size,
        min_distance=min_distance,
    )
    if not vouchers:
        return []

    price_by_type = await asyncio.to_thread(prices.current_prices)

    values: list[float] = []
    for voucher in vouchers[:window_size]:
        if voucher.id == exclude_voucher_id:
            continue
        consumption = compute_consumption_l100(
            voucher,
            price_by_type=price_by_type,
            min_distance=min_distance,
        )
        if consumption is not None:
            values.append(consumption)
    return values
