"""
Retry with exponential backoff for backend round-trips.

Delays double on every retry: 100ms, 200ms, 400ms ... for the default
base of 100ms. Only failures classified as retryable are retried; every
other failure propagates on its first occurrence. Cancellation is never
retried.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import TypeVar

from ..backend.base import StorageError

logger = logging.getLogger(__name__)

T = TypeVar("T")

RETRYABLE_STATUS = frozenset({408, 429})


def is_retryable(error: BaseException) -> bool:
    """Classify a failure as transient.

    Retryable: connection reset, timeout, rate limit, 5xx-class status.
    """
    if isinstance(error, asyncio.CancelledError):
        return False
    if isinstance(error, StorageError):
        return error.retryable
    if isinstance(error, (ConnectionError, TimeoutError, asyncio.TimeoutError)):
        return True
    status = getattr(error, "status", None) or getattr(error, "status_code", None)
    if isinstance(status, int):
        return status in RETRYABLE_STATUS or 500 <= status < 600
    return False


def backoff_delays(max_retries: int, base_delay_ms: int) -> list[float]:
    """Delays in seconds slept before each retry."""
    return [base_delay_ms * (2**attempt) / 1000.0 for attempt in range(max_retries)]


async def retry_with_backoff(
    op: Callable[[], Awaitable[T]],
    max_retries: int = 3,
    base_delay_ms: int = 100,
    classify: Callable[[BaseException], bool] = is_retryable,
    description: str = "operation",
) -> T:
    """Run op, retrying transient failures with exponential backoff.

    Args:
        op: Zero-argument coroutine factory; called once per attempt
        max_retries: Retries after the first attempt
        base_delay_ms: Delay before the first retry
        classify: Predicate deciding whether a failure is retryable
        description: Label used in log records

    Returns:
        The result of the first successful attempt

    Raises:
        The first non-retryable error, or the last error once retries are
        exhausted.
    """
    delays = backoff_delays(max_retries, base_delay_ms)
    attempt = 0
    while True:
        try:
            return await op()
        except Exception as e:
            if not classify(e) or attempt >= max_retries:
                raise
            delay = delays[attempt]
            attempt += 1
            logger.warning(
                "Transient storage failure, retrying",
                extra={
                    "operation": description,
                    "attempt": attempt,
                    "max_retries": max_retries,
                    "delay_ms": int(delay * 1000),
                    "error": str(e),
                },
            )
            await asyncio.sleep(delay)
