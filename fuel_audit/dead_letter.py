from __future__ import annotations

import json
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

FAILED = "FAILED"
REPLAYED = "REPLAYED"


class DeadLetterStore:
    """Append-only JSONL log of voucher evaluations that failed.

    A voucher is pending while its latest entry is FAILED; a later
    REPLAYED entry for the same voucher clears it.
    """

    def __init__(self, file_path: str | Path = "logs/evaluation_dead_letter.jsonl") -> None:
        self._path = Path(file_path)
        self._path.parent.mkdir(parents=True, exist_ok=True)

    def _append(self, payload: dict[str, Any]) -> None:
        event = {
            "recorded_at_utc": datetime.now(timezone.utc).isoformat(),
            **payload,
        }
        with self._path.open("a", encoding="utf-8") as fh:
            fh.write(json.dumps(event, ensure_ascii=True) + "\n")

    def record_failure(
        self,
        *,
        voucher_id: str,
        stage: str,
        error: BaseException,
        vehicle_id: str | None = None,
    ) -> None:
        self._append(
            {
                "voucher_id": voucher_id,
                "vehicle_id": vehicle_id,
                "status": FAILED,
                "stage": stage,
                "error_code": type(error).__name__,
                "error_message": str(error),
            }
        )

    def mark_replayed(self, voucher_id: str) -> None:
        self._append({"voucher_id": voucher_id, "status": REPLAYED})

    def list_failures(self, status: str | None = None) -> list[dict[str, Any]]:
        if not self._path.exists():
            return []
        items: list[dict[str, Any]] = []
        for line in self._path.read_text(encoding="utf-8").splitlines():
            if not line.strip():
                continue
            event = json.loads(line)
            if status and event.get("status") != status:
                continue
            items.append(event)
        return items

    def pending_voucher_ids(self) -> list[str]:
        latest: dict[str, str] = {}
        for event in self.list_failures():
            voucher_id = event.get("voucher_id")
            if voucher_id:
                latest[voucher_id] = str(event.get("status"))
        return [voucher_id for voucher_id, status in latest.items() if status == FAILED]
