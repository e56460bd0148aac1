"""Retry helper for language-model calls.

Only failures classified as transient are retried; everything else
propagates on the first attempt.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, TypeVar

import anthropic

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Messages seen when the upstream runtime dies mid-request
CRASH_SIGNATURES = ("worker_limit", "function crashed", "connection reset")


@dataclass
class RetryStats:
    """Counters for one or more ``with_retry`` calls."""

    attempts: int = 0
    retries: int = 0


def is_retryable(exc: BaseException) -> bool:
    """Return True for rate limits, server errors, timeouts and runtime crashes."""
    if isinstance(exc, anthropic.APIStatusError):
        return exc.status_code == 429 or exc.status_code >= 500
    if isinstance(exc, (anthropic.APIConnectionError, asyncio.TimeoutError)):
        return True
    message = str(exc).lower()
    return any(sig in message for sig in CRASH_SIGNATURES)


async def with_retry(
    fn: Callable[[], Awaitable[T]],
    *,
    max_attempts: int = 3,
    base_delay: float = 0.5,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    stats: RetryStats | None = None,
) -> T:
    """Call *fn* until it succeeds, backing off exponentially on retryable errors.

    Args:
        fn: Zero-argument coroutine factory.
        max_attempts: Total attempts including the first.
        base_delay: Delay before the first retry; doubles on each retry.
        sleep: Awaitable sleep, injectable for tests.
        stats: Optional counters updated in place.

    Returns:
        Whatever *fn* returns.
    """
    delay = base_delay
    for attempt in range(1, max_attempts + 1):
        if stats is not None:
            stats.attempts += 1
        try:
            return await fn()
        except Exception as exc:
            if not is_retryable(exc) or attempt == max_attempts:
                raise
            logger.warning(
                "Retryable failure (attempt %d/%d), retrying in %.2fs: %s",
                attempt,
                max_attempts,
                delay,
                exc,
            )
            if stats is not None:
                stats.retries += 1
            await sleep(delay)
            delay *= 2
    raise RuntimeError("unreachable")  # pragma: no cover
