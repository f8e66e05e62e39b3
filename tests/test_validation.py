from __future__ import annotations

import pytest
from pydantic import ValidationError

from fuel_audit.validation import VoucherRejectedError, check_references, validate_voucher_payload
from schemas.voucher_schema import Driver, Vehicle


def _valid_payload() -> dict:
    return {
        "id": "b-1",
        "number": "BC-001",
        "issued_at": "2024-03-01T08:00:00",
        "fuel_type": "gasoil",
        "amount": 30000,
        "driver_id": "d-1",
        "vehicle_id": "v-1",
        "odometer_start": 1000,
        "odometer_end": 1200,
    }


class _FakeReferences:
    def __init__(self, vehicles: set[str], drivers: set[str]) -> None:
        self.vehicles = vehicles
        self.drivers = drivers

    def get_vehicle(self, vehicle_id: str) -> Vehicle | None:
        return Vehicle(id=vehicle_id) if vehicle_id in self.vehicles else None

    def get_driver(self, driver_id: str) -> Driver | None:
        return Driver(id=driver_id) if driver_id in self.drivers else None


def test_validate_voucher_payload_accepts_valid_sample() -> None:
    voucher = validate_voucher_payload(_valid_payload())
    assert voucher.number == "BC-001"
    assert voucher.issued_at.tzinfo is not None
    assert voucher.odometer_end == 1200


@pytest.mark.parametrize(
    ("field", "value", "error_fragment"),
    [
        ("fuel_type", "kerosene", "fuel_type"),
        ("issued_at", "hier", "issued_at"),
        ("number", "", "number"),
    ],
)
def test_validate_voucher_payload_rejects_invalid_samples(
    field: str, value: object, error_fragment: str
) -> None:
    payload = _valid_payload()
    payload[field] = value

    with pytest.raises(ValidationError) as exc_info:
        validate_voucher_payload(payload)
    assert error_fragment in str(exc_info.value)


def test_odometer_end_without_start_is_rejected() -> None:
    payload = _valid_payload()
    payload.pop("odometer_start")
    with pytest.raises(ValidationError, match="odometer_end requires odometer_start"):
        validate_voucher_payload(payload)


def test_check_references_reports_missing_vehicle_then_driver() -> None:
    voucher = validate_voucher_payload(_valid_payload())

    check_references(voucher, _FakeReferences({"v-1"}, {"d-1"}))
    with pytest.raises(VoucherRejectedError) as missing_vehicle:
        check_references(voucher, _FakeReferences(set(), {"d-1"}))
    with pytest.raises(VoucherRejectedError) as missing_driver:
        check_references(voucher, _FakeReferences({"v-1"}, set()))

    assert missing_vehicle.value.code == "unknown_vehicle"
    assert missing_driver.value.code == "unknown_driver"
