from __future__ import annotations

import asyncio
import logging
from collections.abc import Sequence

from fuel_audit import anomaly_types as types
from fuel_audit.baseline import build_vehicle_baseline
from fuel_audit.config import DetectionThresholds
from fuel_audit.consumption import compute_consumption_l100
from fuel_audit.interfaces import AnomalyStore, FuelPriceLookup, VoucherHistoryQuery
from fuel_audit.lifecycle import CLOSED, classify_phase, effective_distance
from fuel_audit.logger import log_voucher_event
from fuel_audit.scoring import HIGH, MEDIUM, OutlierScore, score_consumption
from schemas.voucher_schema import Anomaly, AnomalyCandidate, Voucher

logger = logging.getLogger(__name__)


def _fmt(value: float) -> str:
    return f"{value:g}"


def check_odometer_consistency(voucher: Voucher) -> AnomalyCandidate | None:
    """Invalid odometer or distance on a closed voucher; blocks consumption analysis."""
    if classify_phase(voucher) != CLOSED:
        return None
    assert voucher.odometer_start is not None and voucher.odometer_end is not None
    if voucher.odometer_end < voucher.odometer_start:
        return AnomalyCandidate(
            voucher_id=voucher.id,
            type=types.INVALID_ODOMETER,
            severity="elevee",
            risk_score=85,
            details=(
                f"km_final ({_fmt(voucher.odometer_end)}) < "
                f"km_initial ({_fmt(voucher.odometer_start)})"
            ),
        )
    distance = effective_distance(voucher)
    if distance is not None and distance <= 0:
        return AnomalyCandidate(
            voucher_id=voucher.id,
            type=types.INVALID_DISTANCE,
            severity="elevee",
            risk_score=85,
            details=f"distance <= 0 ({_fmt(distance)} km)",
        )
    return None


def _outlier_candidate(voucher: Voucher, score: OutlierScore) -> AnomalyCandidate | None:
    details = (
        f"Conso {score.value:.1f} L/100km vs médiane {score.median:.1f} "
        f"(z={score.z:.2f}, n={score.sample_size})"
    )
    if score.classification == HIGH:
        return AnomalyCandidate(
            voucher_id=voucher.id,
            type=types.CONSUMPTION_OUTLIER_HIGH,
            severity="elevee",
            risk_score=90,
            details=details,
        )
    if score.classification == MEDIUM:
        return AnomalyCandidate(
            voucher_id=voucher.id,
            type=types.CONSUMPTION_OUTLIER_MEDIUM,
            severity="moyenne",
            risk_score=70,
            details=details,
        )
    return None


async def evaluate_closed_voucher(
    voucher: Voucher,
    *,
    history: VoucherHistoryQuery,
    prices: FuelPriceLookup,
    thresholds: DetectionThresholds | None = None,
) -> list[AnomalyCandidate]:
    """Consumption findings for a closed voucher.

    Odometer/distance problems short-circuit the analysis. A missing price,
    a short trip or a thin baseline produce no finding.
    """
    active = thresholds or DetectionThresholds()
    if classify_phase(voucher) != CLOSED:
        return []

    invalid = check_odometer_consistency(voucher)
    if invalid is not None:
        return [invalid]

    current = await asyncio.to_thread(
        compute_consumption_l100,
        voucher,
        prices=prices,
        min_distance=active.min_distance_km,
    )
    if current is None:
        return []

    baseline = await build_vehicle_baseline(
        voucher.vehicle_id,
        voucher.id,
        history=history,
        prices=prices,
        window_size=active.window_size,
        min_distance=active.min_distance_km,
    )
    score = score_consumption(current, baseline, active)
    candidate = _outlier_candidate(voucher, score)
    return [candidate] if candidate is not None else []


async def reconcile_closed_voucher_anomalies(
    voucher: Voucher,
    *,
    history: VoucherHistoryQuery,
    prices: FuelPriceLookup,
    anomalies: AnomalyStore,
    thresholds: DetectionThresholds | None = None,
) -> list[AnomalyCandidate]:
    """Make the statistically derived anomalies of a voucher match a fresh evaluation.

    Stale rows of those types are deleted and current findings are upserted
    in a single store call, so a failed write leaves the prior rows intact.
    """
    findings = await evaluate_closed_voucher(
        voucher, history=history, prices=prices, thresholds=thresholds
    )
    summary = await asyncio.to_thread(
        anomalies.replace_findings,
        voucher.id,
        types.STATISTICAL_TYPES,
        findings,
    )
    log_voucher_event(
        logger,
        logging.INFO,
        f"Reconciled consumption anomalies upserted={summary['upserted']} removed={summary['removed']}",
        voucher_id=voucher.id,
        vehicle_id=voucher.vehicle_id,
        phase=classify_phase(voucher),
        stage="reconcile_statistical",
        outcome="flagged" if findings else "clean",
    )
    return findings


async def reconcile_rule_anomalies(
    voucher: Voucher,
    findings: Sequence[AnomalyCandidate],
    *,
    anomalies: AnomalyStore,
) -> list[Anomaly]:
    """Upsert rule findings by (voucher, type); existing rule rows are never removed."""
    stored: list[Anomaly] = []
    for finding in findings:
        if finding.voucher_id != voucher.id:
            raise ValueError(
                f"Finding for voucher {finding.voucher_id} passed while reconciling {voucher.id}"
            )
        if finding.type not in types.RULE_TYPES:
            raise ValueError(f"{finding.type} is not a rule anomaly type")
        candidate = AnomalyCandidate(
            voucher_id=finding.voucher_id,
            type=finding.type,
            severity=finding.severity,
            risk_score=finding.risk_score,
            details=finding.details,
        )
        stored.append(await asyncio.to_thread(anomalies.upsert_anomaly, candidate))
    if stored:
        log_voucher_event(
            logger,
            logging.INFO,
            f"Recorded {len(stored)} rule anomalies",
            voucher_id=voucher.id,
            vehicle_id=voucher.vehicle_id,
            stage="reconcile_rules",
            outcome="flagged",
        )
    return stored
