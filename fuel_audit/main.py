from __future__ import annotations

import argparse
import asyncio
import logging
from dataclasses import dataclass
from typing import Any

from fuel_audit.anomaly_store import SqliteAnomalyStore
from fuel_audit.config import Settings, load_dotenv
from fuel_audit.dead_letter import DeadLetterStore
from fuel_audit.fleet_store import SqliteFleetStore
from fuel_audit.logger import configure_logging
from fuel_audit.metrics import JsonlMetricsSink
from fuel_audit.pipeline import VoucherEvaluationPipeline
from fuel_audit.replay import replay_failures
from fuel_audit.storage_service import PostgresAnomalyStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Services:
    fleet: SqliteFleetStore
    anomalies: Any
    dead_letter: DeadLetterStore
    pipeline: VoucherEvaluationPipeline


def build_services(settings: Settings) -> Services:
    fleet = SqliteFleetStore(settings.database_path)
    if settings.anomaly_backend == "postgres":
        anomalies: Any = PostgresAnomalyStore.from_settings(settings)
        anomalies.ensure_schema()
    else:
        anomalies = SqliteAnomalyStore(settings.database_path)
    dead_letter = DeadLetterStore(settings.dead_letter_path)
    pipeline = VoucherEvaluationPipeline(
        fleet,
        anomalies,
        thresholds=settings.thresholds,
        dead_letter=dead_letter,
        previous_wait_seconds=settings.previous_voucher_wait_seconds,
        previous_poll_seconds=settings.previous_voucher_poll_seconds,
    )
    return Services(fleet=fleet, anomalies=anomalies, dead_letter=dead_letter, pipeline=pipeline)


def _emit_metrics(settings: Settings, pipeline: VoucherEvaluationPipeline, stage: str) -> None:
    snapshot = pipeline.metrics.snapshot()
    JsonlMetricsSink(settings.metrics_path).emit_snapshot(snapshot, stage=stage)
    logger.info("%s summary: %s", stage, snapshot)


def run_evaluate(settings: Settings, voucher_id: str) -> int:
    services = build_services(settings)
    result = asyncio.run(services.pipeline.evaluate_voucher_id(voucher_id))
    if result is None:
        logger.error("Unknown voucher_id=%s", voucher_id, extra={"voucher_id": voucher_id})
        return 2
    _emit_metrics(settings, services.pipeline, "evaluate")
    logger.info(
        "Voucher %s decision=%s reasons=%s",
        voucher_id,
        result.decision.status,
        ",".join(result.decision.reason_codes) or "-",
        extra={"voucher_id": voucher_id, "phase": result.phase, "outcome": result.status},
    )
    return 0 if result.status == "evaluated" else 1


def run_evaluate_vehicle(settings: Settings, vehicle_id: str) -> int:
    services = build_services(settings)
    results = asyncio.run(services.pipeline.evaluate_vehicle(vehicle_id))
    _emit_metrics(settings, services.pipeline, "evaluate_vehicle")
    failed = [r.voucher_id for r in results if r.status == "failed"]
    logger.info(
        "Vehicle %s evaluated vouchers=%d failed=%d",
        vehicle_id,
        len(results),
        len(failed),
        extra={"vehicle_id": vehicle_id},
    )
    return 1 if failed else 0


def run_replay(settings: Settings, audit_path: str) -> int:
    services = build_services(settings)
    summary = asyncio.run(
        replay_failures(services.pipeline, dead_letter=services.dead_letter, audit_path=audit_path)
    )
    logger.info(
        "Replay summary replayed=%d skipped_missing=%d failed=%d",
        summary["replayed"],
        summary["skipped_missing"],
        summary["failed"],
    )
    return 1 if summary["failed"] else 0


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Fuel voucher anomaly audit")
    subparsers = parser.add_subparsers(dest="command", required=True)

    evaluate = subparsers.add_parser("evaluate", help="Evaluate one voucher")
    evaluate.add_argument("--voucher-id", required=True)

    vehicle = subparsers.add_parser("evaluate-vehicle", help="Re-evaluate every voucher of a vehicle")
    vehicle.add_argument("--vehicle-id", required=True)

    replay = subparsers.add_parser("replay", help="Replay failed evaluations from the dead letter")
    replay.add_argument("--audit-path", default="logs/replay_audit.jsonl")

    serve = subparsers.add_parser("serve", help="Run the review API")
    serve.add_argument("--host", default="0.0.0.0")
    serve.add_argument("--port", type=int, default=8000)
    return parser


def main(argv: list[str] | None = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)
    load_dotenv()
    settings = Settings.from_env()
    configure_logging(settings.log_level)

    if args.command == "evaluate":
        return run_evaluate(settings, args.voucher_id)
    if args.command == "evaluate-vehicle":
        return run_evaluate_vehicle(settings, args.vehicle_id)
    if args.command == "replay":
        return run_replay(settings, args.audit_path)
    if args.command == "serve":
        from fuel_audit.review_main import main as serve_main

        serve_main(host=args.host, port=args.port)
        return 0
    return 1


if __name__ == "__main__":
    raise SystemExit(main())
