from __future__ import annotations

import logging
from collections.abc import Mapping

from fuel_audit.config import DetectionThresholds
from fuel_audit.interfaces import FuelPriceLookup
from fuel_audit.lifecycle import CLOSED, classify_phase, effective_distance
from schemas.voucher_schema import Voucher

logger = logging.getLogger(__name__)

DEFAULT_THRESHOLDS = DetectionThresholds()


def resolve_unit_price(
    voucher: Voucher,
    *,
    prices: FuelPriceLookup | None = None,
    price_by_type: Mapping[str, float] | None = None,
) -> float | None:
    if price_by_type is not None and voucher.fuel_type in price_by_type:
        return price_by_type[voucher.fuel_type]
    if prices is None:
        return None
    # Lookup is keyed by date, but stores only hold the current price today.
    return prices.price_on(voucher.fuel_type, voucher.issued_at)


def compute_consumption_l100(
    voucher: Voucher,
    *,
    prices: FuelPriceLookup | None = None,
    price_by_type: Mapping[str, float] | None = None,
    min_distance: float = DEFAULT_THRESHOLDS.min_distance_km,
) -> float | None:
    """Liters per 100 km for a closed voucher, or None when not computable.

    Liters are back-derived from the amount and the fuel unit price since
    vouchers carry no liters field.
    """
    if classify_phase(voucher) != CLOSED:
        return None
    distance = effective_distance(voucher)
    if distance is None or distance < min_distance:
        return None
    if voucher.amount <= 0:
        return None

    price = resolve_unit_price(voucher, prices=prices, price_by_type=price_by_type)
    if price is None or price <= 0:
        logger.debug("No usable price for fuel type %s", voucher.fuel_type)
        return None

    liters = voucher.amount / price
    if liters <= 0:
        return None
    consumption = (100 * liters) / distance
    return consumption if consumption > 0 else None
