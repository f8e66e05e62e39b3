from __future__ import annotations

import json
from collections import Counter
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from schemas.voucher_schema import AnomalyCandidate

COUNTER_NAMES = (
    "evaluations_total",
    "evaluations_failed_total",
    "anomalies_upserted_total",
    "previous_vouchers_evaluated_total",
)


def _percentile(values: list[int], fraction: float) -> int:
    if not values:
        return 0
    ordered = sorted(values)
    return ordered[int(fraction * (len(ordered) - 1))]


@dataclass
class MetricsCollector:
    """In-process counters for one pipeline instance."""

    counters: Counter[str] = field(default_factory=Counter)
    findings_by_type: Counter[str] = field(default_factory=Counter)
    latencies_ms: list[int] = field(default_factory=list)

    def increment(self, name: str, value: int = 1) -> None:
        self.counters[name] += value

    def record_findings(self, findings: Iterable[AnomalyCandidate]) -> None:
        for finding in findings:
            self.counters["anomalies_upserted_total"] += 1
            self.findings_by_type[finding.type] += 1

    def observe_latency(self, value_ms: int) -> None:
        self.latencies_ms.append(value_ms)

    def snapshot(self) -> dict[str, Any]:
        snap: dict[str, Any] = {name: self.counters.get(name, 0) for name in COUNTER_NAMES}
        snap["latency_p50_ms"] = _percentile(self.latencies_ms, 0.5)
        snap["latency_p95_ms"] = _percentile(self.latencies_ms, 0.95)
        snap["findings_by_type"] = dict(self.findings_by_type)
        return snap


class JsonlMetricsSink:
    def __init__(self, path: str | Path = "logs/metrics.jsonl") -> None:
        self._path = Path(path)
        self._path.parent.mkdir(parents=True, exist_ok=True)

    def emit(self, event: dict[str, Any]) -> None:
        self.emit_many([event])

    def emit_many(self, events: Iterable[dict[str, Any]]) -> None:
        recorded_at = datetime.now(timezone.utc).isoformat()
        with self._path.open("a", encoding="utf-8") as fh:
            for event in events:
                fh.write(json.dumps({"recorded_at_utc": recorded_at, **event}, ensure_ascii=True) + "\n")

    def emit_snapshot(self, snapshot: dict[str, Any], *, stage: str) -> None:
        """Write one line per integer counter, plus one per anomaly type."""
        events = [
            {"metric": key, "value": value, "stage": stage}
            for key, value in snapshot.items()
            if isinstance(value, int)
        ]
        for anomaly_type, count in snapshot.get("findings_by_type", {}).items():
            events.append(
                {"metric": "findings_by_type", "type": anomaly_type, "value": count, "stage": stage}
            )
        self.emit_many(events)
