from __future__ import annotations

from datetime import datetime, timedelta, timezone

from fuel_audit.rules import detect_anomalies, detect_anomalies_for_previous_voucher
from schemas.voucher_schema import Driver, Vehicle, Voucher

_NOW = datetime(2024, 5, 10, 12, 0, tzinfo=timezone.utc)

_DRIVERS = [Driver(id="d-1", first_name="Awa", last_name="Diallo")]
_VEHICLES = [Vehicle(id="v-1", registration="AB-123-CD", default_fuel_type="gasoil")]


def _voucher(idx: int, **overrides: object) -> Voucher:
    data: dict[str, object] = {
        "id": f"b-{idx}",
        "number": f"BC-{idx:03d}",
        "issued_at": _NOW - timedelta(days=30 - idx),
        "fuel_type": "gasoil",
        "amount": 30000,
        "driver_id": "d-1",
        "vehicle_id": "v-1",
    }
    data.update(overrides)
    return Voucher(**data)


def _types(findings: list) -> set[str]:
    return {f.type for f in findings}


def test_clean_voucher_has_no_findings() -> None:
    voucher = _voucher(2, odometer_start=1200, odometer_end=1400)
    previous = _voucher(1, odometer_start=1000, odometer_end=1200)
    assert detect_anomalies(voucher, [previous], _DRIVERS, _VEHICLES, now=_NOW) == []


def test_duplicate_number_is_flagged_in_every_phase() -> None:
    other = _voucher(1, number="BC-777")
    for overrides in (
        {},
        {"odometer_start": 1000},
        {"odometer_start": 1000, "odometer_end": 1100},
    ):
        voucher = _voucher(2, number=" BC-777 ", **overrides)
        findings = detect_anomalies(voucher, [other], _DRIVERS, _VEHICLES, now=_NOW)
        duplicate = [f for f in findings if f.type == "doublon_numero"]
        assert len(duplicate) == 1
        assert duplicate[0].severity == "critique"
        assert duplicate[0].risk_score == 90


def test_voucher_is_not_its_own_duplicate() -> None:
    voucher = _voucher(1)
    assert detect_anomalies(voucher, [voucher], _DRIVERS, _VEHICLES, now=_NOW) == []


def test_odometer_regression_against_latest_closed_voucher() -> None:
    older = _voucher(1, odometer_start=1000, odometer_end=1500)
    latest = _voucher(2, odometer_start=1500, odometer_end=2000)
    voucher = _voucher(3, odometer_start=1900, odometer_end=2100)

    findings = detect_anomalies(voucher, [older, latest], _DRIVERS, _VEHICLES, now=_NOW)

    regression = [f for f in findings if f.type == "recul_kilometrique"]
    assert len(regression) == 1
    assert regression[0].severity == "elevee"
    assert regression[0].risk_score == 85
    assert "Recul de 100 km" in regression[0].details


def test_regression_ignores_later_and_unclosed_vouchers() -> None:
    later = _voucher(5, odometer_start=5000, odometer_end=6000)
    in_use = _voucher(2, odometer_start=9000)
    voucher = _voucher(3, odometer_start=1900, odometer_end=2100)

    findings = detect_anomalies(voucher, [later, in_use], _DRIVERS, _VEHICLES, now=_NOW)
    assert "recul_kilometrique" not in _types(findings)


def test_closed_only_rules_skip_open_vouchers() -> None:
    previous = _voucher(1, odometer_start=1000, odometer_end=5000)
    voucher = _voucher(2, odometer_start=1200)
    findings = detect_anomalies(voucher, [previous], _DRIVERS, _VEHICLES, now=_NOW)
    assert findings == []


def test_excessive_distance() -> None:
    voucher = _voucher(2, odometer_start=1000, odometer_end=2500)
    findings = detect_anomalies(voucher, [], _DRIVERS, _VEHICLES, now=_NOW)
    excessive = [f for f in findings if f.type == "distance_incoherente"]
    assert len(excessive) == 1
    assert excessive[0].severity == "moyenne"
    assert excessive[0].risk_score == 60


def test_distance_at_threshold_is_not_excessive() -> None:
    voucher = _voucher(2, odometer_start=1000, odometer_end=2000)
    findings = detect_anomalies(voucher, [], _DRIVERS, _VEHICLES, now=_NOW)
    assert "distance_incoherente" not in _types(findings)


def test_abnormal_frequency_uses_evaluation_time() -> None:
    recent = [
        _voucher(10 + i, issued_at=_NOW - timedelta(hours=2 * i + 1)) for i in range(5)
    ]
    voucher = _voucher(20, issued_at=_NOW)

    findings = detect_anomalies(voucher, recent, _DRIVERS, _VEHICLES, now=_NOW)
    frequency = [f for f in findings if f.type == "frequence_anormale"]
    assert len(frequency) == 1
    assert frequency[0].severity == "moyenne"
    assert frequency[0].risk_score == 55
    assert "Awa Diallo" in frequency[0].details

    a_day_later = _NOW + timedelta(days=1, hours=1)
    later = _voucher(21, issued_at=a_day_later)
    assert detect_anomalies(later, recent, _DRIVERS, _VEHICLES, now=a_day_later) == []


def test_four_recent_vouchers_are_not_abnormal() -> None:
    recent = [_voucher(10 + i, issued_at=_NOW - timedelta(hours=i + 1)) for i in range(4)]
    voucher = _voucher(20, issued_at=_NOW)
    assert detect_anomalies(voucher, recent, _DRIVERS, _VEHICLES, now=_NOW) == []


def test_fuel_type_mismatch() -> None:
    voucher = _voucher(1, fuel_type="essence")
    findings = detect_anomalies(voucher, [], _DRIVERS, _VEHICLES, now=_NOW)
    assert _types(findings) == {"carburant_incoherent"}
    assert findings[0].severity == "faible"


def test_amount_far_from_reference_cost() -> None:
    vehicles = [Vehicle(id="v-1", default_fuel_type="gasoil", cost_per_km_reference=100)]
    # expected 200 km * 100 = 20000, paid 50000 -> 150% deviation
    voucher = _voucher(1, amount=50000, odometer_start=1000, odometer_end=1200)
    findings = detect_anomalies(voucher, [], _DRIVERS, vehicles, now=_NOW)
    amount = [f for f in findings if f.type == "montant_incoherent"]
    assert len(amount) == 1
    assert amount[0].severity == "elevee"
    assert amount[0].risk_score == 90

    close_enough = _voucher(2, amount=25000, odometer_start=1200, odometer_end=1400)
    findings = detect_anomalies(close_enough, [], _DRIVERS, vehicles, now=_NOW)
    assert "montant_incoherent" not in _types(findings)


def test_previous_voucher_rules_wait_for_closing() -> None:
    previous = _voucher(1, odometer_start=1000)
    assert detect_anomalies_for_previous_voucher(previous, [], _DRIVERS, _VEHICLES, now=_NOW) == []

    closed = _voucher(1, odometer_start=1000, odometer_end=2500)
    findings = detect_anomalies_for_previous_voucher(closed, [], _DRIVERS, _VEHICLES, now=_NOW)
    assert _types(findings) == {"distance_incoherente"}


def test_same_day_later_voucher_is_not_treated_as_previous() -> None:
    day = datetime(2024, 5, 10, tzinfo=timezone.utc)
    earlier = _voucher(1, number="BC-001", issued_at=day, odometer_start=1000, odometer_end=1100)
    later = _voucher(2, number="BC-002", issued_at=day, odometer_start=1100, odometer_end=1200)

    findings = detect_anomalies(earlier, [later], _DRIVERS, _VEHICLES, now=day)
    assert "recul_kilometrique" not in _types(findings)

    regressed = _voucher(3, number="BC-003", issued_at=day, odometer_start=1150, odometer_end=1300)
    findings = detect_anomalies(regressed, [earlier, later], _DRIVERS, _VEHICLES, now=day)
    assert "recul_kilometrique" in _types(findings)
