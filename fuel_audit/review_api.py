from __future__ import annotations

import asyncio
import json
from collections import Counter
from pathlib import Path
from typing import Any, Protocol

from fastapi import FastAPI, HTTPException
from pydantic import BaseModel, ValidationError

from fuel_audit.anomaly_types import label_for
from fuel_audit.dead_letter import DeadLetterStore
from fuel_audit.lifecycle import InvalidTransitionError, check_voucher_update
from fuel_audit.pipeline import EvaluationResult, VoucherEvaluationPipeline
from fuel_audit.review_queue import InvalidReviewTransitionError, ReviewableStore, apply_review
from fuel_audit.validation import VoucherRejectedError, check_references, validate_voucher_payload
from schemas.voucher_schema import Anomaly, ReviewStatus, Voucher

# Percentiles are reported as the latest value, never summed.
_GAUGES = frozenset({"latency_p50_ms", "latency_p95_ms"})


class ReviewStore(ReviewableStore, Protocol):
    def list_anomalies(
        self,
        *,
        voucher_id: str | None = None,
        status: str | None = None,
    ) -> list[Anomaly]:
        ...


class VoucherWriter(Protocol):
    def get_voucher(self, voucher_id: str) -> Voucher | None:
        ...

    def save_voucher(self, voucher: Voucher) -> None:
        ...


class ReviewUpdate(BaseModel):
    status: ReviewStatus
    comment: str | None = None


def create_review_app(
    pipeline: VoucherEvaluationPipeline,
    *,
    fleet_store: VoucherWriter,
    anomaly_store: ReviewStore,
    metrics_path: str | Path = "logs/metrics.jsonl",
    dead_letter_path: str | Path = "logs/evaluation_dead_letter.jsonl",
) -> FastAPI:
    app = FastAPI(title="Fuel Voucher Audit Review API", version="0.1.0")
    dead_letter = DeadLetterStore(dead_letter_path)

    @app.get("/health")
    def health() -> dict[str, str]:
        return {"status": "ok"}

    @app.get("/stats")
    def stats() -> dict[str, Any]:
        counters = _aggregate_metrics(_read_jsonl(metrics_path))
        _merge_live_metrics(counters, pipeline.metrics.snapshot())
        by_status = Counter(a.status for a in anomaly_store.list_anomalies())
        counters["dead_letter_pending_total"] = len(dead_letter.pending_voucher_ids())
        counters["anomalies_total"] = sum(by_status.values())
        counters["anomalies_by_status"] = dict(by_status)
        return counters

    @app.get("/failures")
    def failures(limit: int = 50) -> dict[str, Any]:
        items = dead_letter.list_failures()
        return {
            "count": len(items),
            "pending": dead_letter.pending_voucher_ids(),
            "items": items[-limit:],
        }

    @app.get("/anomalies")
    def list_anomalies(
        status: ReviewStatus | None = None,
        voucher_id: str | None = None,
    ) -> dict[str, Any]:
        items = anomaly_store.list_anomalies(voucher_id=voucher_id, status=status)
        return {"count": len(items), "items": [_anomaly_payload(a) for a in items]}

    @app.patch("/anomalies/{anomaly_id}")
    def review_anomaly(anomaly_id: str, update: ReviewUpdate) -> dict[str, Any]:
        try:
            anomaly = apply_review(anomaly_store, anomaly_id, update.status, comment=update.comment)
        except InvalidReviewTransitionError as exc:
            raise HTTPException(status_code=409, detail=str(exc)) from exc
        except LookupError as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc
        return _anomaly_payload(anomaly)

    @app.post("/vouchers", status_code=201)
    async def write_voucher(payload: dict[str, Any]) -> dict[str, Any]:
        try:
            voucher = validate_voucher_payload(payload)
        except ValidationError as exc:
            raise HTTPException(
                status_code=422, detail=json.loads(exc.json(include_url=False))
            ) from exc
        try:
            await asyncio.to_thread(check_references, voucher, pipeline.fleet)
            before = await asyncio.to_thread(fleet_store.get_voucher, voucher.id)
            if before is not None:
                check_voucher_update(before, voucher)
        except VoucherRejectedError as exc:
            raise HTTPException(status_code=422, detail={"code": exc.code, "message": str(exc)}) from exc
        except InvalidTransitionError as exc:
            raise HTTPException(status_code=409, detail=str(exc)) from exc

        await asyncio.to_thread(fleet_store.save_voucher, voucher)
        result = await pipeline.handle_voucher_write(voucher)
        return _result_payload(result)

    @app.post("/vouchers/{voucher_id}/evaluate")
    async def evaluate_voucher(voucher_id: str) -> dict[str, Any]:
        result = await pipeline.evaluate_voucher_id(voucher_id)
        if result is None:
            raise HTTPException(status_code=404, detail=f"Unknown voucher: {voucher_id}")
        return _result_payload(result)

    return app


def _anomaly_payload(anomaly: Anomaly) -> dict[str, Any]:
    return {**anomaly.model_dump(mode="json"), "label": label_for(anomaly.type)}


def _result_payload(result: EvaluationResult) -> dict[str, Any]:
    return {
        "voucher_id": result.voucher_id,
        "phase": result.phase,
        "evaluation_status": result.status,
        "decision": result.decision.status,
        "reason_codes": list(result.decision.reason_codes),
        "max_severity": result.decision.max_severity,
        "previous_voucher_id": result.previous_voucher_id,
        "findings": [f.model_dump(mode="json") for f in result.findings],
        "error": result.error,
    }


def _merge_live_metrics(counters: dict[str, Any], snapshot: dict[str, Any]) -> None:
    """Add this process's counters, not yet written to the sink, to the file totals."""
    for name, value in snapshot.items():
        if name in _GAUGES:
            if value:
                counters[name] = value
        elif isinstance(value, int):
            counters[name] = counters.get(name, 0) + value
    by_type = Counter(counters.get("findings_by_type", {}))
    by_type.update(snapshot.get("findings_by_type", {}))
    if by_type:
        counters["findings_by_type"] = dict(by_type)


def _read_jsonl(path: str | Path) -> list[dict[str, Any]]:
    p = Path(path)
    if not p.exists():
        return []
    rows: list[dict[str, Any]] = []
    for line in p.read_text(encoding="utf-8").splitlines():
        if not line.strip():
            continue
        rows.append(json.loads(line))
    return rows


def _aggregate_metrics(events: list[dict[str, Any]]) -> dict[str, Any]:
    counters: dict[str, Any] = {}
    by_type: Counter[str] = Counter()
    for event in events:
        name = event.get("metric")
        value = event.get("value")
        if not isinstance(name, str) or not isinstance(value, int):
            continue
        if name == "findings_by_type":
            by_type[str(event.get("type"))] += value
        elif name in _GAUGES:
            counters[name] = value
        else:
            counters[name] = counters.get(name, 0) + value
    if by_type:
        counters["findings_by_type"] = dict(by_type)
    return counters
