from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Protocol

from fuel_audit.config import DetectionThresholds
from fuel_audit.dead_letter import DeadLetterStore
from fuel_audit.interfaces import AnomalyStore, FuelPriceLookup, VoucherHistoryQuery, VoucherStore
from fuel_audit.lifecycle import CLOSED, classify_phase
from fuel_audit.logger import log_voucher_event
from fuel_audit.metrics import MetricsCollector
from fuel_audit.reconciler import reconcile_closed_voucher_anomalies, reconcile_rule_anomalies
from fuel_audit.review_queue import ReviewDecision, decide_review_status
from fuel_audit.rules import detect_anomalies
from schemas.voucher_schema import AnomalyCandidate, Driver, Vehicle, Voucher

logger = logging.getLogger(__name__)


class FleetStore(VoucherStore, VoucherHistoryQuery, FuelPriceLookup, Protocol):
    def get_vehicle(self, vehicle_id: str) -> Vehicle | None:
        ...

    def get_driver(self, driver_id: str) -> Driver | None:
        ...


@dataclass(frozen=True)
class EvaluationResult:
    voucher_id: str
    phase: str
    status: str
    rule_findings: tuple[AnomalyCandidate, ...] = ()
    statistical_findings: tuple[AnomalyCandidate, ...] = ()
    previous_voucher_id: str | None = None
    decision: ReviewDecision = field(
        default_factory=lambda: ReviewDecision(status="CLEAR", reason_codes=tuple())
    )
    error: str | None = None

    @property
    def findings(self) -> tuple[AnomalyCandidate, ...]:
        return self.rule_findings + self.statistical_findings


async def wait_until_closed(
    store: VoucherStore,
    voucher_id: str,
    *,
    timeout: float,
    poll_interval: float,
) -> Voucher | None:
    """Poll the store until the voucher is closed; None on timeout or if it disappears.

    The neighbour of a freshly started voucher is finalized outside this
    process, so its closing may lag behind the write that triggered us.
    """
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while True:
        current = await asyncio.to_thread(store.get_voucher, voucher_id)
        if current is None:
            return None
        if classify_phase(current) == CLOSED:
            return current
        if loop.time() >= deadline:
            return None
        await asyncio.sleep(poll_interval)


class VoucherEvaluationPipeline:
    """Runs rule checks and consumption reconciliation for voucher writes.

    ``handle_voucher_write`` never raises: failures are logged, counted and
    sent to the dead letter so the voucher write itself is not blocked.
    """

    def __init__(
        self,
        fleet: FleetStore,
        anomalies: AnomalyStore,
        *,
        thresholds: DetectionThresholds | None = None,
        dead_letter: DeadLetterStore | None = None,
        metrics: MetricsCollector | None = None,
        previous_wait_seconds: float = 2.0,
        previous_poll_seconds: float = 0.1,
    ) -> None:
        self._fleet = fleet
        self._anomalies = anomalies
        self._thresholds = thresholds or DetectionThresholds()
        self._dead_letter = dead_letter
        self.metrics = metrics or MetricsCollector()
        self._previous_wait_seconds = previous_wait_seconds
        self._previous_poll_seconds = previous_poll_seconds

    @property
    def fleet(self) -> FleetStore:
        return self._fleet

    @property
    def anomalies(self) -> AnomalyStore:
        return self._anomalies

    def _load_scope(self, voucher: Voucher) -> tuple[list[Voucher], list[Driver], list[Vehicle]]:
        by_id: dict[str, Voucher] = {}
        for batch in (
            self._fleet.list_vehicle_vouchers(voucher.vehicle_id),
            self._fleet.list_driver_vouchers(voucher.driver_id),
            self._fleet.find_vouchers_by_number(voucher.number),
        ):
            for item in batch:
                by_id.setdefault(item.id, item)
        by_id.pop(voucher.id, None)
        driver = self._fleet.get_driver(voucher.driver_id)
        vehicle = self._fleet.get_vehicle(voucher.vehicle_id)
        return (
            list(by_id.values()),
            [driver] if driver is not None else [],
            [vehicle] if vehicle is not None else [],
        )

    def _previous_voucher(self, voucher: Voucher) -> Voucher | None:
        key = (voucher.issued_at, voucher.number)
        earlier = [
            b
            for b in self._fleet.list_vehicle_vouchers(voucher.vehicle_id)
            if b.id != voucher.id and (b.issued_at, b.number) < key
        ]
        if not earlier:
            return None
        return max(earlier, key=lambda b: (b.issued_at, b.number))

    async def evaluate(
        self,
        voucher: Voucher,
        *,
        now: datetime | None = None,
        include_previous: bool = True,
    ) -> EvaluationResult:
        """Evaluate one voucher and reconcile its anomalies; store errors propagate."""
        phase = classify_phase(voucher)
        others, drivers, vehicles = await asyncio.to_thread(self._load_scope, voucher)

        rule_findings = detect_anomalies(
            voucher, others, drivers, vehicles, now=now, thresholds=self._thresholds
        )
        await reconcile_rule_anomalies(voucher, rule_findings, anomalies=self._anomalies)
        self.metrics.record_findings(rule_findings)

        statistical = await reconcile_closed_voucher_anomalies(
            voucher,
            history=self._fleet,
            prices=self._fleet,
            anomalies=self._anomalies,
            thresholds=self._thresholds,
        )
        self.metrics.record_findings(statistical)

        previous_id: str | None = None
        if include_previous and voucher.odometer_start is not None:
            previous = await asyncio.to_thread(self._previous_voucher, voucher)
            if previous is not None:
                closed = await wait_until_closed(
                    self._fleet,
                    previous.id,
                    timeout=self._previous_wait_seconds,
                    poll_interval=self._previous_poll_seconds,
                )
                if closed is not None:
                    await self.evaluate(closed, now=now, include_previous=False)
                    self.metrics.increment("previous_vouchers_evaluated_total")
                    previous_id = closed.id
                else:
                    log_voucher_event(
                        logger,
                        logging.WARNING,
                        "Previous voucher not closed before timeout",
                        voucher_id=previous.id,
                        vehicle_id=previous.vehicle_id,
                        stage="previous_voucher",
                        outcome="skipped",
                    )

        return EvaluationResult(
            voucher_id=voucher.id,
            phase=phase,
            status="evaluated",
            rule_findings=tuple(rule_findings),
            statistical_findings=tuple(statistical),
            previous_voucher_id=previous_id,
            decision=decide_review_status([*rule_findings, *statistical]),
        )

    async def handle_voucher_write(
        self,
        voucher: Voucher,
        *,
        now: datetime | None = None,
    ) -> EvaluationResult:
        started = time.monotonic()
        self.metrics.increment("evaluations_total")
        phase = classify_phase(voucher)
        try:
            result = await self.evaluate(voucher, now=now)
        except Exception as exc:  # noqa: BLE001
            self.metrics.increment("evaluations_failed_total")
            if self._dead_letter is not None:
                self._dead_letter.record_failure(
                    voucher_id=voucher.id,
                    vehicle_id=voucher.vehicle_id,
                    stage="evaluate",
                    error=exc,
                )
            logger.exception(
                "Evaluation failed for voucher_id=%s",
                voucher.id,
                extra={"voucher_id": voucher.id, "vehicle_id": voucher.vehicle_id, "outcome": "failed"},
            )
            return EvaluationResult(
                voucher_id=voucher.id,
                phase=phase,
                status="failed",
                error=str(exc),
            )
        finally:
            self.metrics.observe_latency(int((time.monotonic() - started) * 1000))

        log_voucher_event(
            logger,
            logging.INFO,
            f"Voucher evaluated decision={result.decision.status}",
            voucher_id=voucher.id,
            vehicle_id=voucher.vehicle_id,
            phase=phase,
            stage="evaluate",
            outcome=result.decision.status.lower(),
        )
        return result

    async def evaluate_voucher_id(
        self,
        voucher_id: str,
        *,
        now: datetime | None = None,
    ) -> EvaluationResult | None:
        voucher = await asyncio.to_thread(self._fleet.get_voucher, voucher_id)
        if voucher is None:
            return None
        return await self.handle_voucher_write(voucher, now=now)

    async def evaluate_vehicle(
        self,
        vehicle_id: str,
        *,
        now: datetime | None = None,
    ) -> list[EvaluationResult]:
        """Re-run evaluation for every voucher of a vehicle, oldest first."""
        vouchers = await asyncio.to_thread(self._fleet.list_vehicle_vouchers, vehicle_id)
        results: list[EvaluationResult] = []
        for voucher in sorted(vouchers, key=lambda b: (b.issued_at, b.number)):
            results.append(await self.handle_voucher_write(voucher, now=now))
        return results
