from __future__ import annotations

from collections.abc import Iterable, Sequence
from datetime import datetime, timedelta, timezone

from fuel_audit import anomaly_types as types
from fuel_audit.config import DetectionThresholds
from fuel_audit.lifecycle import CLOSED, classify_phase, effective_distance
from schemas.voucher_schema import Anomaly, Driver, Vehicle, Voucher


def _fmt(value: float) -> str:
    return f"{value:g}"


def _anomaly(
    voucher: Voucher,
    anomaly_type: str,
    severity: str,
    risk_score: float,
    details: str,
) -> Anomaly:
    return Anomaly(
        voucher_id=voucher.id,
        type=anomaly_type,
        severity=severity,
        risk_score=risk_score,
        details=details,
    )


def _check_duplicate_number(voucher: Voucher, others: Sequence[Voucher]) -> Anomaly | None:
    number = voucher.number.strip()
    duplicate = next(
        (b for b in others if b.id != voucher.id and b.number.strip() == number),
        None,
    )
    if duplicate is None:
        return None
    return _anomaly(
        voucher,
        types.DUPLICATE_NUMBER,
        "critique",
        90,
        f'Numéro de bon "{voucher.number}" déjà utilisé (bon {duplicate.id}).',
    )


def _previous_closed_voucher(voucher: Voucher, others: Sequence[Voucher]) -> Voucher | None:
    key = (voucher.issued_at, voucher.number)
    candidates = [
        b
        for b in others
        if b.vehicle_id == voucher.vehicle_id
        and b.id != voucher.id
        and classify_phase(b) == CLOSED
        and (b.issued_at, b.number) < key
    ]
    if not candidates:
        return None
    return max(candidates, key=lambda b: (b.issued_at, b.number))


def _check_odometer_regression(voucher: Voucher, others: Sequence[Voucher]) -> Anomaly | None:
    if voucher.odometer_start is None:
        return None
    previous = _previous_closed_voucher(voucher, others)
    if previous is None or previous.odometer_end is None:
        return None
    if voucher.odometer_start >= previous.odometer_end:
        return None
    regression = previous.odometer_end - voucher.odometer_start
    return _anomaly(
        voucher,
        types.ODOMETER_REGRESSION,
        "elevee",
        85,
        f"Kilométrage initial ({_fmt(voucher.odometer_start)}) inférieur au dernier "
        f"kilométrage final ({_fmt(previous.odometer_end)}) du véhicule. "
        f"Recul de {_fmt(regression)} km.",
    )


def _check_excessive_distance(
    voucher: Voucher, thresholds: DetectionThresholds
) -> Anomaly | None:
    distance = effective_distance(voucher)
    if distance is None or distance <= thresholds.max_trip_distance_km:
        return None
    return _anomaly(
        voucher,
        types.EXCESSIVE_DISTANCE,
        "moyenne",
        60,
        f"Distance exceptionnellement élevée: {_fmt(distance)} km.",
    )


def _check_amount_vs_reference(
    voucher: Voucher,
    vehicle: Vehicle | None,
    thresholds: DetectionThresholds,
) -> Anomaly | None:
    distance = effective_distance(voucher)
    if vehicle is None or not vehicle.cost_per_km_reference or not distance or distance <= 0:
        return None
    expected = distance * vehicle.cost_per_km_reference
    deviation_pct = abs(voucher.amount - expected) / expected * 100
    if deviation_pct <= thresholds.amount_deviation_pct:
        return None
    return _anomaly(
        voucher,
        types.AMOUNT_MISMATCH,
        "elevee" if deviation_pct > 100 else "moyenne",
        min(90.0, 40 + deviation_pct),
        f"Montant ({_fmt(voucher.amount)}) très différent du coût attendu "
        f"({expected:.2f}). Écart: {deviation_pct:.1f}%.",
    )


def _check_fuel_type(voucher: Voucher, vehicle: Vehicle | None) -> Anomaly | None:
    if vehicle is None or vehicle.default_fuel_type is None:
        return None
    if vehicle.default_fuel_type == voucher.fuel_type:
        return None
    return _anomaly(
        voucher,
        types.FUEL_TYPE_MISMATCH,
        "faible",
        30,
        f"Carburant du bon ({voucher.fuel_type}) différent du carburant du véhicule "
        f"({vehicle.default_fuel_type}).",
    )


def _check_frequency(
    voucher: Voucher,
    others: Sequence[Voucher],
    driver: Driver | None,
    now: datetime,
    thresholds: DetectionThresholds,
) -> Anomaly | None:
    window = timedelta(hours=thresholds.frequency_window_hours)
    recent = [
        b
        for b in others
        if b.driver_id == voucher.driver_id
        and b.id != voucher.id
        and abs(now - b.issued_at) <= window
    ]
    if len(recent) < thresholds.frequency_max_vouchers:
        return None
    who = driver.display_name if driver is not None else voucher.driver_id
    return _anomaly(
        voucher,
        types.ABNORMAL_FREQUENCY,
        "moyenne",
        55,
        f"Fréquence élevée: {len(recent)} autres bons pour {who} dans les dernières "
        f"{_fmt(thresholds.frequency_window_hours)}h.",
    )


def detect_anomalies(
    voucher: Voucher,
    other_vouchers: Iterable[Voucher],
    drivers: Iterable[Driver],
    vehicles: Iterable[Vehicle],
    *,
    now: datetime | None = None,
    thresholds: DetectionThresholds | None = None,
) -> list[Anomaly]:
    """Phase-gated rule checks for one voucher.

    Duplicate number, fuel type and frequency checks run in every phase;
    odometer, distance and amount checks need a closed voucher. No I/O: the
    caller passes every voucher in scope.
    """
    active = thresholds or DetectionThresholds()
    current_time = now or datetime.now(timezone.utc)
    others = [b for b in other_vouchers if b.id != voucher.id]
    vehicle = next((v for v in vehicles if v.id == voucher.vehicle_id), None)
    driver = next((d for d in drivers if d.id == voucher.driver_id), None)
    phase = classify_phase(voucher)

    findings: list[Anomaly | None] = [
        _check_duplicate_number(voucher, others),
        _check_fuel_type(voucher, vehicle),
    ]
    if phase == CLOSED:
        findings.extend(
            [
                _check_odometer_regression(voucher, others),
                _check_excessive_distance(voucher, active),
                _check_amount_vs_reference(voucher, vehicle, active),
            ]
        )

    findings.append(_check_frequency(voucher, others, driver, current_time, active))
    return [f for f in findings if f is not None]


def detect_anomalies_for_previous_voucher(
    previous: Voucher,
    all_vouchers: Iterable[Voucher],
    drivers: Iterable[Driver],
    vehicles: Iterable[Vehicle],
    *,
    now: datetime | None = None,
    thresholds: DetectionThresholds | None = None,
) -> list[Anomaly]:
    """Rule checks for a neighbour voucher, only once it has been closed."""
    if classify_phase(previous) != CLOSED:
        return []
    return detect_anomalies(
        previous, all_vouchers, drivers, vehicles, now=now, thresholds=thresholds
    )
