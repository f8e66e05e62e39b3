from __future__ import annotations

import asyncio
import json
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from fuel_audit.dead_letter import DeadLetterStore
from fuel_audit.pipeline import VoucherEvaluationPipeline
from fuel_audit.retry_utils import RetryExhaustedError, RetryPolicy, run_with_retry


async def replay_failures(
    pipeline: VoucherEvaluationPipeline,
    *,
    dead_letter: DeadLetterStore,
    audit_path: str | Path = "logs/replay_audit.jsonl",
    policy: RetryPolicy | None = None,
) -> dict[str, int]:
    """Re-run evaluation for every voucher whose latest dead-letter entry is FAILED."""
    audit_file = Path(audit_path)
    audit_file.parent.mkdir(parents=True, exist_ok=True)
    summary = {"replayed": 0, "skipped_missing": 0, "failed": 0}

    with audit_file.open("a", encoding="utf-8") as fh:
        for voucher_id in dead_letter.pending_voucher_ids():

            async def _evaluate(voucher_id: str = voucher_id) -> Any:
                voucher = await asyncio.to_thread(pipeline.fleet.get_voucher, voucher_id)
                if voucher is None:
                    return None
                return await pipeline.evaluate(voucher)

            try:
                result = await run_with_retry(_evaluate, policy=policy)
            except RetryExhaustedError as exc:
                summary["failed"] += 1
                _write_audit(
                    fh,
                    voucher_id=voucher_id,
                    outcome="failed",
                    reason=str(exc.__cause__ or exc),
                )
                continue

            if result is None:
                summary["skipped_missing"] += 1
                dead_letter.mark_replayed(voucher_id)
                _write_audit(fh, voucher_id=voucher_id, outcome="skipped_missing", reason="voucher_deleted")
                continue

            summary["replayed"] += 1
            dead_letter.mark_replayed(voucher_id)
            _write_audit(
                fh,
                voucher_id=voucher_id,
                outcome="replayed",
                reason=result.decision.status,
            )

    return summary


def _write_audit(
    fh: Any,
    *,
    voucher_id: str,
    outcome: str,
    reason: str,
) -> None:
    event = {
        "recorded_at_utc": datetime.now(timezone.utc).isoformat(),
        "voucher_id": voucher_id,
        "outcome": outcome,
        "reason": reason,
    }
    fh.write(json.dumps(event, ensure_ascii=True) + "\n")
