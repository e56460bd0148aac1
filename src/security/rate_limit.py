"""Per-caller sliding-window rate limiting."""

from __future__ import annotations

import math
import threading
import time
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    retry_after_seconds: int = 0


class SlidingWindowRateLimiter:
    """Sliding log of request times per ``(caller, bucket)``.

    Denied requests are not recorded, so a caller who backs off regains
    capacity as soon as the oldest request leaves the window.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._log: dict[tuple[str, str], deque[float]] = {}
        self._lock = threading.Lock()

    def check(
        self,
        caller_id: str,
        bucket_key: str,
        limit: int = 5,
        window_seconds: int = 60,
    ) -> RateLimitDecision:
        now = self._clock()
        key = (caller_id, bucket_key)
        with self._lock:
            log = self._log.setdefault(key, deque())
            while log and log[0] <= now - window_seconds:
                log.popleft()

            if len(log) >= limit:
                retry_after = max(1, math.ceil(log[0] + window_seconds - now))
                return RateLimitDecision(allowed=False, retry_after_seconds=retry_after)

            log.append(now)
            return RateLimitDecision(allowed=True)

    def reset(self) -> None:
        with self._lock:
            self._log.clear()
