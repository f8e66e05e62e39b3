from __future__ import annotations

from typing import Any, Protocol

from schemas.voucher_schema import Driver, Vehicle, Voucher


class VoucherRejectedError(ValueError):
    def __init__(self, message: str, code: str = "invalid_voucher") -> None:
        super().__init__(message)
        self.code = code


class ReferenceLookup(Protocol):
    def get_vehicle(self, vehicle_id: str) -> Vehicle | None:
        ...

    def get_driver(self, driver_id: str) -> Driver | None:
        ...


def validate_voucher_payload(payload: dict[str, Any]) -> Voucher:
    return Voucher.model_validate(payload)


def check_references(voucher: Voucher, lookup: ReferenceLookup) -> None:
    """Reject vouchers whose driver or vehicle is unknown; the core assumes both exist."""
    if lookup.get_vehicle(voucher.vehicle_id) is None:
        raise VoucherRejectedError(
            f"Unknown vehicle: {voucher.vehicle_id}", code="unknown_vehicle"
        )
    if lookup.get_driver(voucher.driver_id) is None:
        raise VoucherRejectedError(f"Unknown driver: {voucher.driver_id}", code="unknown_driver")
