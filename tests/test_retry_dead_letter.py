from __future__ import annotations

import asyncio
import sqlite3
from pathlib import Path

import pytest

from fuel_audit.dead_letter import DeadLetterStore
from fuel_audit.retry_utils import (
    RetryExhaustedError,
    RetryPolicy,
    is_transient_store_error,
    run_with_retry,
)


class _TransientError(RuntimeError):
    pass


class _FatalError(RuntimeError):
    pass


def test_run_with_retry_succeeds_after_transient_failures() -> None:
    state = {"count": 0}
    sleeps: list[float] = []

    async def _op() -> str:
        state["count"] += 1
        if state["count"] < 3:
            raise _TransientError("temporary")
        return "ok"

    async def _sleep(delay: float) -> None:
        sleeps.append(delay)

    result = asyncio.run(
        run_with_retry(
            operation=_op,
            should_retry=lambda e: isinstance(e, _TransientError),
            policy=RetryPolicy(max_attempts=4, base_delay_seconds=0.01, max_delay_seconds=0.02),
            sleep_fn=_sleep,
        )
    )
    assert result == "ok"
    assert len(sleeps) == 2


def test_run_with_retry_stops_on_non_retryable_error() -> None:
    calls = {"count": 0}

    async def _op() -> str:
        calls["count"] += 1
        raise _FatalError("bad voucher")

    async def _sleep(delay: float) -> None:
        return None

    with pytest.raises(RetryExhaustedError) as info:
        asyncio.run(
            run_with_retry(
                operation=_op,
                should_retry=lambda e: isinstance(e, _TransientError),
                policy=RetryPolicy(max_attempts=5, base_delay_seconds=0.01),
                sleep_fn=_sleep,
            )
        )
    assert calls["count"] == 1
    assert isinstance(info.value.__cause__, _FatalError)


def test_transient_store_errors() -> None:
    assert is_transient_store_error(sqlite3.OperationalError("database is locked"))
    assert is_transient_store_error(ConnectionError("reset"))
    assert not is_transient_store_error(sqlite3.OperationalError("no such table: vouchers"))
    assert not is_transient_store_error(ValueError("bad input"))


def test_backoff_is_capped() -> None:
    policy = RetryPolicy(base_delay_seconds=1.0, max_delay_seconds=4.0, jitter_ratio=0.0)
    assert policy.delay_for_attempt(1) == 1.0
    assert policy.delay_for_attempt(3) == 4.0
    assert policy.delay_for_attempt(6) == 4.0


def test_dead_letter_tracks_pending_vouchers(tmp_path: Path) -> None:
    store = DeadLetterStore(file_path=tmp_path / "dead_letter.jsonl")
    store.record_failure(
        voucher_id="b-1", stage="evaluate", error=sqlite3.OperationalError("database is locked")
    )
    store.record_failure(voucher_id="b-2", stage="evaluate", error=ValueError("bad price"))
    store.mark_replayed("b-1")

    failed = store.list_failures(status="FAILED")

    assert len(store.list_failures()) == 3
    assert [item["voucher_id"] for item in failed] == ["b-1", "b-2"]
    assert failed[1]["error_code"] == "ValueError"
    assert store.pending_voucher_ids() == ["b-2"]
