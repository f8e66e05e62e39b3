from __future__ import annotations

import asyncio
import random
import sqlite3
from collections.abc import Awaitable
from dataclasses import dataclass
from typing import Callable, TypeVar

T = TypeVar("T")

_TRANSIENT_MARKERS = ("database is locked", "database is busy", "could not connect", "timeout")


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    base_delay_seconds: float = 0.5
    max_delay_seconds: float = 8.0
    jitter_ratio: float = 0.25

    def delay_for_attempt(self, attempt: int) -> float:
        backoff = min(self.base_delay_seconds * (2 ** (attempt - 1)), self.max_delay_seconds)
        jitter = backoff * self.jitter_ratio * random.random()
        return backoff + jitter


class RetryExhaustedError(RuntimeError):
    pass


def is_transient_store_error(exc: Exception) -> bool:
    """Lock contention and dropped connections; everything else is permanent."""
    if isinstance(exc, sqlite3.OperationalError):
        message = str(exc).lower()
        return any(marker in message for marker in _TRANSIENT_MARKERS)
    # psycopg is optional; match its OperationalError by name.
    if type(exc).__name__ == "OperationalError":
        return True
    return isinstance(exc, (ConnectionError, TimeoutError))


async def run_with_retry(
    operation: Callable[[], Awaitable[T]],
    should_retry: Callable[[Exception], bool] = is_transient_store_error,
    policy: RetryPolicy | None = None,
    sleep_fn: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    active = policy or RetryPolicy()
    last_error: Exception | None = None
    for attempt in range(1, active.max_attempts + 1):
        try:
            return await operation()
        except Exception as exc:  # noqa: BLE001
            last_error = exc
            if attempt >= active.max_attempts or not should_retry(exc):
                break
            await sleep_fn(active.delay_for_attempt(attempt))
    raise RetryExhaustedError("Operation failed after max retry attempts") from last_error
