from __future__ import annotations

import asyncio
import json
import sqlite3
from collections.abc import Collection, Iterable
from datetime import datetime, timezone
from pathlib import Path

from fuel_audit.anomaly_store import SqliteAnomalyStore
from fuel_audit.dead_letter import DeadLetterStore
from fuel_audit.fleet_store import SqliteFleetStore
from fuel_audit.pipeline import VoucherEvaluationPipeline
from fuel_audit.replay import replay_failures
from fuel_audit.retry_utils import RetryPolicy
from schemas.voucher_schema import AnomalyCandidate, Vehicle, Voucher


class _FlakyAnomalyStore(SqliteAnomalyStore):
    def __init__(self, db_path: Path, failures: int) -> None:
        super().__init__(db_path)
        self.failures = failures

    def replace_findings(
        self,
        voucher_id: str,
        managed_types: Collection[str],
        findings: Iterable[AnomalyCandidate],
    ) -> dict[str, int]:
        if self.failures > 0:
            self.failures -= 1
            raise sqlite3.OperationalError("database is locked")
        return super().replace_findings(voucher_id, managed_types, findings)


def _voucher(voucher_id: str) -> Voucher:
    return Voucher(
        id=voucher_id,
        number=f"BC-{voucher_id}",
        issued_at=datetime(2024, 4, 1, 9, 0, tzinfo=timezone.utc),
        fuel_type="gasoil",
        amount=6000,
        driver_id="d-1",
        vehicle_id="v-1",
        odometer_start=1000,
        odometer_end=1100,
    )


def _policy() -> RetryPolicy:
    return RetryPolicy(max_attempts=3, base_delay_seconds=0.001, max_delay_seconds=0.002)


def test_replay_evaluates_pending_and_skips_deleted(tmp_path: Path) -> None:
    db = tmp_path / "fleet.db"
    fleet = SqliteFleetStore(db)
    fleet.save_vehicle(Vehicle(id="v-1", default_fuel_type="gasoil"))
    fleet.save_voucher(_voucher("b-1"))
    dead = DeadLetterStore(tmp_path / "dead.jsonl")
    dead.record_failure(voucher_id="b-1", stage="evaluate", error=RuntimeError("locked"))
    dead.record_failure(voucher_id="b-gone", stage="evaluate", error=RuntimeError("locked"))
    pipeline = VoucherEvaluationPipeline(fleet, _FlakyAnomalyStore(db, failures=1))
    audit_path = tmp_path / "replay_audit.jsonl"

    summary = asyncio.run(
        replay_failures(pipeline, dead_letter=dead, audit_path=audit_path, policy=_policy())
    )

    assert summary == {"replayed": 1, "skipped_missing": 1, "failed": 0}
    assert dead.pending_voucher_ids() == []
    payloads = [json.loads(line) for line in audit_path.read_text(encoding="utf-8").splitlines()]
    assert {p["outcome"] for p in payloads} == {"replayed", "skipped_missing"}


def test_replay_keeps_voucher_pending_when_retries_exhausted(tmp_path: Path) -> None:
    db = tmp_path / "fleet.db"
    fleet = SqliteFleetStore(db)
    fleet.save_voucher(_voucher("b-1"))
    dead = DeadLetterStore(tmp_path / "dead.jsonl")
    dead.record_failure(voucher_id="b-1", stage="evaluate", error=RuntimeError("locked"))
    pipeline = VoucherEvaluationPipeline(fleet, _FlakyAnomalyStore(db, failures=10))
    audit_path = tmp_path / "audit.jsonl"

    summary = asyncio.run(
        replay_failures(pipeline, dead_letter=dead, audit_path=audit_path, policy=_policy())
    )

    assert summary["failed"] == 1
    assert dead.pending_voucher_ids() == ["b-1"]
    event = json.loads(audit_path.read_text(encoding="utf-8").splitlines()[0])
    assert event["outcome"] == "failed"
    assert event["reason"] == "database is locked"
