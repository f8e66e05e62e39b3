from __future__ import annotations

from collections.abc import Collection, Iterable
from datetime import datetime
from typing import Protocol

from schemas.voucher_schema import Anomaly, AnomalyCandidate, Voucher


class VoucherHistoryQuery(Protocol):
    def fetch_closed_history(
        self,
        vehicle_id: str,
        exclude_voucher_id: str | None,
        *,
        limit: int,
        min_distance: float,
    ) -> list[Voucher]:
        """Most recent closed vouchers, ordered by (issued_at, number) descending."""


class FuelPriceLookup(Protocol):
    def price_on(self, fuel_type: str, on: datetime) -> float | None:
        """Unit price for a fuel type; None when unknown."""

    def current_prices(self) -> dict[str, float]:
        """Current unit price per fuel type."""


class VoucherStore(Protocol):
    def get_voucher(self, voucher_id: str) -> Voucher | None:
        ...

    def list_vehicle_vouchers(self, vehicle_id: str) -> list[Voucher]:
        ...

    def list_driver_vouchers(self, driver_id: str) -> list[Voucher]:
        ...

    def find_vouchers_by_number(self, number: str) -> list[Voucher]:
        ...


class AnomalyStore(Protocol):
    def get_anomaly(self, voucher_id: str, anomaly_type: str) -> Anomaly | None:
        ...

    def list_anomalies(
        self,
        *,
        voucher_id: str | None = None,
        status: str | None = None,
    ) -> list[Anomaly]:
        ...

    def upsert_anomaly(self, candidate: AnomalyCandidate) -> Anomaly:
        """Insert or update the row keyed by (voucher_id, type)."""

    def delete_anomalies(self, voucher_id: str, types: Collection[str]) -> int:
        ...

    def replace_findings(
        self,
        voucher_id: str,
        managed_types: Collection[str],
        findings: Iterable[AnomalyCandidate],
    ) -> dict[str, int]:
        """Atomically drop managed types not in findings and upsert the findings."""
