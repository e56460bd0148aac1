"""Progress payloads and throttled heartbeat writes for background jobs."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from src.ingestion.storage import SupabaseStore

logger = logging.getLogger(__name__)

# Stage order and share of overall progress (percent) for a full reindex
REINDEX_STAGES: tuple[tuple[str, int], ...] = (
    ("reset", 10),
    ("chunking", 20),
    ("embeddings", 35),
    ("entities", 35),
)


class Heartbeat:
    """Writes job progress at most once per interval unless forced."""

    def __init__(
        self,
        store: SupabaseStore,
        job_id: str,
        interval_seconds: float = 10.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._store = store
        self._job_id = job_id
        self._interval = interval_seconds
        self._clock = clock
        self._last: float | None = None

    async def beat(self, progress: dict[str, Any], force: bool = False) -> bool:
        """Persist *progress*; returns True if a write happened."""
        now = self._clock()
        if not force and self._last is not None and now - self._last < self._interval:
            return False
        await self._store.update_job(self._job_id, progress=progress)
        self._last = now
        return True


@dataclass
class StageProgress:
    processed: int = 0
    total: int = 0
    done: bool = False

    def fraction(self) -> float:
        if self.done:
            return 1.0
        if self.total <= 0:
            return 0.0
        return min(self.processed / self.total, 1.0)


@dataclass
class ReindexProgress:
    """Composite progress of the four full-reindex stages.

    ``overall_percent`` is the weighted sum of stage fractions and never
    decreases, even if a stage total is revised upward mid-run.
    """

    stages: dict[str, StageProgress] = field(
        default_factory=lambda: {name: StageProgress() for name, _ in REINDEX_STAGES}
    )
    current_stage: str = REINDEX_STAGES[0][0]
    errors: int = 0
    message: str = ""
    _overall: float = 0.0

    def start_stage(self, name: str, total: int, message: str = "") -> None:
        self.current_stage = name
        self.stages[name].total = max(total, 0)
        self.message = message or f"Running {name}"

    def advance(self, name: str, count: int) -> None:
        self.stages[name].processed += count

    def complete_stage(self, name: str) -> None:
        self.stages[name].done = True

    def overall_percent(self) -> float:
        raw = sum(weight * self.stages[name].fraction() for name, weight in REINDEX_STAGES)
        self._overall = max(self._overall, round(raw, 1))
        return self._overall

    def to_dict(self) -> dict[str, Any]:
        return {
            "stage": self.current_stage,
            "stages": {
                name: {"processed": s.processed, "total": s.total}
                for name, s in self.stages.items()
            },
            "overall_percent": self.overall_percent(),
            "errors": self.errors,
            "message": self.message,
        }
