"""Background job runner for embedding/entity backfills and full reindexes.

Each job is an ``asyncio.Task`` that outlives the request that started it.
The task is the only writer of its job record apart from external
cancellation, which it observes by polling the persisted status before each
unit of work.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from typing import Any

from src.config import Settings, settings as default_settings
from src.errors import ConflictError, PersistenceError
from src.ingestion.enrichment import ChunkEnricher
from src.ingestion.models import BatchResult, JobStatus, JobType
from src.ingestion.pipeline import TranscriptIndexer
from src.ingestion.storage import SupabaseStore, utcnow
from src.jobs.progress import Heartbeat, ReindexProgress

logger = logging.getLogger(__name__)

BatchFn = Callable[..., Awaitable[BatchResult]]


class JobCancelled(Exception):
    """Raised inside a job when its record has been cancelled externally."""


class JobRunner:
    """Starts and supervises background jobs, one active job per type."""

    def __init__(
        self,
        store: SupabaseStore,
        indexer: TranscriptIndexer,
        enricher: ChunkEnricher,
        settings: Settings = default_settings,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._store = store
        self._indexer = indexer
        self._enricher = enricher
        self._settings = settings
        self._clock = clock
        self._tasks: dict[str, asyncio.Task[None]] = {}

    @property
    def running(self) -> list[str]:
        return [job_id for job_id, task in self._tasks.items() if not task.done()]

    async def start(self, job_type: JobType, created_by: str, job_id: str | None = None) -> str:
        """Create the job record and spawn its task.

        Args:
            job_type: Kind of job to run.
            created_by: User id (or service id) recorded on the job.
            job_id: Optional id of a record pre-created by the caller.

        Returns:
            The job id. The job itself keeps running after this returns.

        Raises:
            ConflictError: A job of the same type is already active.
        """
        active = await self._store.find_active_job(job_type)
        if active is not None and str(active["id"]) != job_id:
            raise ConflictError(
                f"A {job_type.value} job is already running", job_id=str(active["id"])
            )

        job_id = await self._store.create_job(job_type, created_by, job_id)
        task = asyncio.create_task(self._run(job_id, job_type), name=f"job-{job_id}")
        self._tasks[job_id] = task
        task.add_done_callback(lambda t, jid=job_id: self._on_done(jid, t))
        logger.info("Started %s job %s for %s", job_type.value, job_id, created_by)
        return job_id

    def _on_done(self, job_id: str, task: asyncio.Task[None]) -> None:
        self._tasks.pop(job_id, None)
        if task.cancelled():
            logger.warning("Job %s task was cancelled", job_id)
        elif task.exception() is not None:
            logger.error("Job %s task ended with %r", job_id, task.exception())

    async def wait(self, job_id: str) -> None:
        """Wait for a job task started by this runner to finish."""
        task = self._tasks.get(job_id)
        if task is not None:
            await asyncio.gather(task, return_exceptions=True)

    async def shutdown(self) -> None:
        """Cancel all running job tasks and wait for them to record the interruption."""
        tasks = list(self._tasks.values())
        if not tasks:
            return
        logger.info("Shutting down %d running job(s)", len(tasks))
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

    # ------------------------------------------------------------------
    # Task body
    # ------------------------------------------------------------------

    async def _run(self, job_id: str, job_type: JobType) -> None:
        try:
            if job_type is JobType.FULL_REINDEX:
                await self._run_full_reindex(job_id)
            elif job_type is JobType.EMBEDDING_BACKFILL:
                await self._run_backfill(
                    job_id, "embeddings", self._enricher.embedding_counts,
                    self._enricher.embed_batch, self._settings.embedding_fetch_size,
                )
            else:
                await self._run_backfill(
                    job_id, "entities", self._enricher.extraction_counts,
                    self._enricher.extract_batch, self._settings.ner_fetch_size,
                )
        except JobCancelled:
            logger.info("Job %s cancelled", job_id)
        except asyncio.CancelledError:
            logger.warning("Job %s interrupted by shutdown", job_id)
            await self._fail(job_id, "Job interrupted by shutdown")
            raise
        except Exception as exc:
            logger.exception("Job %s failed", job_id)
            await self._fail(job_id, str(exc) or type(exc).__name__)

    async def _fail(self, job_id: str, error: str) -> None:
        try:
            await self._store.update_job(
                job_id, status=JobStatus.FAILED.value, error=error, completed_at=utcnow()
            )
        except PersistenceError:
            logger.exception("Could not record failure of job %s", job_id)

    async def _complete(self, job_id: str, progress: dict[str, Any]) -> None:
        # Cancellation wins over a completion that raced it.
        if await self._store.get_job_status(job_id) in (JobStatus.CANCELLED, None):
            raise JobCancelled(job_id)
        await self._store.update_job(
            job_id, status=JobStatus.COMPLETED.value, progress=progress, completed_at=utcnow()
        )
        logger.info("Job %s completed: %s", job_id, progress.get("message"))

    async def _check_cancelled(self, job_id: str) -> None:
        status = await self._store.get_job_status(job_id)
        if status is JobStatus.CANCELLED or status is None:
            raise JobCancelled(job_id)

    def _heartbeat(self, job_id: str) -> Heartbeat:
        return Heartbeat(
            self._store, job_id, self._settings.heartbeat_interval_seconds, self._clock
        )

    async def _drain(
        self,
        job_id: str,
        batch_fn: BatchFn,
        limit: int,
        on_batch: Callable[[BatchResult], Awaitable[None]],
        on_item: Callable[[int], Awaitable[None]],
    ) -> None:
        """Process batches until nothing is left to do.

        Items that fail in this run are excluded from later fetches so the
        loop always terminates; the next run retries them.
        """
        failed: list[str] = []
        while True:
            await self._check_cancelled(job_id)
            result = await batch_fn(limit, failed, on_item)
            if result.processed == 0:
                return
            failed.extend(result.failed_ids)
            await on_batch(result)

    # ------------------------------------------------------------------
    # Single-stage backfills
    # ------------------------------------------------------------------

    async def _run_backfill(
        self,
        job_id: str,
        label: str,
        counts: Callable[[], Awaitable[tuple[int, int]]],
        batch_fn: BatchFn,
        limit: int,
    ) -> None:
        total, done = await counts()
        progress: dict[str, Any] = {
            "processed": 0,
            "total": total - done,
            "errors": 0,
            "message": f"Backfilling {label}",
        }
        heartbeat = self._heartbeat(job_id)
        await heartbeat.beat(progress, force=True)
        batch_start = 0

        async def on_item(handled: int) -> None:
            progress["processed"] = batch_start + handled
            await heartbeat.beat(dict(progress))

        async def on_batch(result: BatchResult) -> None:
            nonlocal batch_start
            batch_start += result.processed
            progress["processed"] = batch_start
            progress["errors"] += result.errors
            progress["message"] = f"Processed {batch_start} {label} ({progress['errors']} errors)"
            await heartbeat.beat(dict(progress), force=True)

        await self._drain(job_id, batch_fn, limit, on_batch, on_item)

        progress["message"] = (
            f"Backfilled {progress['processed'] - progress['errors']} {label} "
            f"({progress['errors']} errors)"
        )
        await self._complete(job_id, progress)

    # ------------------------------------------------------------------
    # Full reindex
    # ------------------------------------------------------------------

    async def _run_full_reindex(self, job_id: str) -> None:
        progress = ReindexProgress()
        heartbeat = self._heartbeat(job_id)

        # Reset
        await self._check_cancelled(job_id)
        progress.start_stage("reset", 1, "Deleting existing chunks")
        await heartbeat.beat(progress.to_dict(), force=True)
        deleted = await self._store.delete_all_chunks()
        progress.advance("reset", 1)
        progress.complete_stage("reset")
        logger.info("Full reindex %s: deleted %d chunks", job_id, deleted)

        # Chunking
        await self._check_cancelled(job_id)
        ids = await self._store.list_indexable_transcript_ids()
        progress.start_stage("chunking", len(ids), f"Chunking {len(ids)} transcripts")
        await heartbeat.beat(progress.to_dict(), force=True)
        batch_size = self._settings.chunking_batch_size
        for i in range(0, len(ids), batch_size):
            await self._check_cancelled(job_id)
            batch = ids[i : i + batch_size]
            outcome = await self._indexer.chunk_transcript_batch(batch)
            progress.advance("chunking", len(batch))
            progress.errors += len(batch) - outcome.transcripts_indexed
            await heartbeat.beat(progress.to_dict(), force=True)
        progress.complete_stage("chunking")

        # Embeddings, then entities
        for stage, counts, batch_fn, limit in (
            ("embeddings", self._enricher.embedding_counts, self._enricher.embed_batch,
             self._settings.embedding_fetch_size),
            ("entities", self._enricher.extraction_counts, self._enricher.extract_batch,
             self._settings.ner_fetch_size),
        ):
            await self._check_cancelled(job_id)
            total, done = await counts()
            progress.start_stage(stage, total - done, f"Backfilling {stage}")
            await heartbeat.beat(progress.to_dict(), force=True)
            await self._run_reindex_stage(job_id, stage, batch_fn, limit, progress, heartbeat)
            progress.complete_stage(stage)

        progress.current_stage = "complete"
        progress.message = f"Full reindex complete ({progress.errors} errors)"
        await self._complete(job_id, progress.to_dict())

    async def _run_reindex_stage(
        self,
        job_id: str,
        stage: str,
        batch_fn: BatchFn,
        limit: int,
        progress: ReindexProgress,
        heartbeat: Heartbeat,
    ) -> None:
        base = progress.stages[stage].processed

        async def on_item(handled: int) -> None:
            progress.stages[stage].processed = base + handled
            await heartbeat.beat(progress.to_dict())

        async def on_batch(result: BatchResult) -> None:
            nonlocal base
            base += result.processed
            progress.stages[stage].processed = base
            progress.errors += result.errors
            await heartbeat.beat(progress.to_dict(), force=True)

        await self._drain(job_id, batch_fn, limit, on_batch, on_item)
