# app/settlement/retry.py
from __future__ import annotations

import logging
import time
from contextlib import AbstractContextManager
from typing import Any, Callable, TypeVar

from app.settlement.errors import RetryExhausted, TransientConflict
from services.metrics import increment_settlement_retry

logger = logging.getLogger("marketsettle.retry")

T = TypeVar("T")

# serialization_failure, deadlock_detected, lock_not_available
TRANSIENT_PGCODES = frozenset({"40001", "40P01", "55P03"})


def is_transient(exc: BaseException) -> bool:
    if isinstance(exc, TransientConflict):
        return True
    return getattr(exc, "pgcode", None) in TRANSIENT_PGCODES


def backoff_seconds(attempt: int, base_backoff_ms: int) -> float:
    return (base_backoff_ms / 1000.0) * (2 ** max(attempt - 1, 0))


def run_atomic(
    work: Callable[[Any], T],
    *,
    connect: Callable[[], AbstractContextManager],
    max_attempts: int = 5,
    base_backoff_ms: int = 100,
    sleep: Callable[[float], None] = time.sleep,
    op: str = "settlement",
) -> T:
    """
    Run work(conn) inside one connection scope from connect(); the scope commits
    on return and rolls back on exception. Transient conflicts are retried with
    exponential backoff, anything else propagates on the first failure.
    """
    attempt = 0
    while True:
        attempt += 1
        try:
            with connect() as conn:
                return work(conn)
        except Exception as exc:
            if not is_transient(exc):
                raise
            increment_settlement_retry(op)
            if attempt >= max_attempts:
                logger.error("retry_exhausted op=%s attempts=%s error=%s", op, attempt, type(exc).__name__)
                raise RetryExhausted(f"{op} gave up after {attempt} attempts") from exc
            delay = backoff_seconds(attempt, base_backoff_ms)
            logger.warning(
                "transient_conflict op=%s attempt=%s/%s retry_in_s=%.3f error=%s",
                op,
                attempt,
                max_attempts,
                delay,
                type(exc).__name__,
            )
            sleep(delay)
