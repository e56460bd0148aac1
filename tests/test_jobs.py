"""Tests for background job progress and the job runner."""

from __future__ import annotations

import asyncio

import pytest

from src.errors import ConflictError, PersistenceError, ValidationError
from src.ingestion.enrichment import ChunkEnricher
from src.ingestion.models import JobStatus, JobType
from src.ingestion.pipeline import TranscriptIndexer
from src.jobs.orchestrator import JobRunner
from src.jobs.progress import Heartbeat, ReindexProgress
from tests.conftest import FakeEmbedder, no_sleep


def _runner(store, embedder, extractor, settings) -> JobRunner:
    indexer = TranscriptIndexer(store, settings)
    enricher = ChunkEnricher(store, embedder, extractor, settings, sleep=no_sleep)
    return JobRunner(store, indexer, enricher, settings)


def _run_job(runner: JobRunner, job_type: JobType, job_id: str | None = None) -> str:
    async def main() -> str:
        started = await runner.start(job_type, "admin-user", job_id)
        await runner.wait(started)
        return started

    return asyncio.run(main())


def _overall_history(store, job_id: str) -> list[float]:
    return [
        fields["progress"]["overall_percent"]
        for jid, fields in store.job_updates
        if jid == job_id and "overall_percent" in (fields.get("progress") or {})
    ]


# ---------------------------------------------------------------------------
# Progress helpers
# ---------------------------------------------------------------------------


class TestHeartbeat:
    def test_throttles_writes(self, store) -> None:
        store.jobs["j"] = {"id": "j", "status": "processing"}
        now = [0.0]
        heartbeat = Heartbeat(store, "j", interval_seconds=10, clock=lambda: now[0])

        async def beats() -> list[bool]:
            results = [await heartbeat.beat({"processed": 1})]
            now[0] = 5
            results.append(await heartbeat.beat({"processed": 2}))
            results.append(await heartbeat.beat({"processed": 3}, force=True))
            now[0] = 16
            results.append(await heartbeat.beat({"processed": 4}))
            return results

        assert asyncio.run(beats()) == [True, False, True, True]
        assert store.jobs["j"]["progress"] == {"processed": 4}
        assert len(store.job_updates) == 3


class TestReindexProgress:
    def test_weighted_overall(self) -> None:
        progress = ReindexProgress()
        progress.complete_stage("reset")
        assert progress.overall_percent() == 10
        progress.start_stage("chunking", 4)
        progress.advance("chunking", 2)
        assert progress.overall_percent() == 20
        progress.complete_stage("chunking")
        progress.start_stage("embeddings", 10)
        progress.advance("embeddings", 5)
        assert progress.overall_percent() == 47.5

    def test_never_decreases_when_total_grows(self) -> None:
        progress = ReindexProgress()
        progress.complete_stage("reset")
        progress.start_stage("chunking", 2)
        progress.advance("chunking", 2)
        before = progress.overall_percent()
        progress.start_stage("chunking", 10)
        assert progress.overall_percent() == before

    def test_complete_is_100(self) -> None:
        progress = ReindexProgress()
        for name in progress.stages:
            progress.complete_stage(name)
        payload = progress.to_dict()
        assert payload["overall_percent"] == 100
        assert set(payload["stages"]) == {"reset", "chunking", "embeddings", "entities"}


# ---------------------------------------------------------------------------
# Runner
# ---------------------------------------------------------------------------


class TestBackfillJobs:
    def test_embedding_backfill_completes(self, store, embedder, extractor, test_settings) -> None:
        for i in range(23):
            store.add_chunk(f"text {i}")
        runner = _runner(store, embedder, extractor, test_settings)

        job_id = _run_job(runner, JobType.EMBEDDING_BACKFILL)

        job = store.jobs[job_id]
        assert job["status"] == "completed"
        assert job["completed_at"]
        assert job["progress"]["processed"] == 23
        assert job["progress"]["total"] == 23
        assert job["progress"]["errors"] == 0
        assert asyncio.run(store.count_chunks_with_embedding()) == 23
        assert runner.running == []

    def test_item_failures_do_not_abort(self, store, embedder, extractor, test_settings) -> None:
        store.add_chunk("FAIL forever")
        for i in range(12):
            store.add_chunk(f"text {i}")
        runner = _runner(store, embedder, extractor, test_settings)

        job_id = _run_job(runner, JobType.EMBEDDING_BACKFILL)

        job = store.jobs[job_id]
        assert job["status"] == "completed"
        assert job["progress"]["errors"] == 1
        assert embedder.calls.count("FAIL forever") == 1
        assert asyncio.run(store.count_chunks_with_embedding()) == 12

    def test_entity_backfill_completes(self, store, embedder, extractor, test_settings) -> None:
        for i in range(20):
            store.add_chunk(f"text {i}")
        runner = _runner(store, embedder, extractor, test_settings)

        job_id = _run_job(runner, JobType.NER_BACKFILL)

        assert store.jobs[job_id]["status"] == "completed"
        assert asyncio.run(store.count_chunks_extracted()) == 20

    def test_heartbeat_progress_has_expected_shape(self, store, embedder, extractor, test_settings) -> None:
        store.add_chunk("text")
        runner = _runner(store, embedder, extractor, test_settings)

        job_id = _run_job(runner, JobType.EMBEDDING_BACKFILL)

        progress_writes = [f["progress"] for jid, f in store.job_updates if jid == job_id and "progress" in f]
        assert progress_writes
        assert all(set(p) == {"processed", "total", "errors", "message"} for p in progress_writes)

    def test_unexpected_error_fails_job(self, store, extractor, test_settings) -> None:
        class Broken(FakeEmbedder):
            async def embed(self, text: str) -> list[float]:
                raise RuntimeError("boom")

        store.add_chunk("text")
        runner = _runner(store, Broken(), extractor, test_settings)

        job_id = _run_job(runner, JobType.EMBEDDING_BACKFILL)

        assert store.jobs[job_id]["status"] == "failed"
        assert store.jobs[job_id]["error"] == "boom"


class TestJobLifecycle:
    def test_conflict_with_active_job(self, store, embedder, extractor, test_settings) -> None:
        store.jobs["existing"] = {"id": "existing", "job_type": "embedding_backfill", "status": "processing"}
        runner = _runner(store, embedder, extractor, test_settings)

        with pytest.raises(ConflictError) as exc_info:
            asyncio.run(runner.start(JobType.EMBEDDING_BACKFILL, "admin-user"))
        assert exc_info.value.job_id == "existing"

    def test_other_job_types_do_not_conflict(self, store, embedder, extractor, test_settings) -> None:
        store.jobs["existing"] = {"id": "existing", "job_type": "embedding_backfill", "status": "processing"}
        runner = _runner(store, embedder, extractor, test_settings)

        job_id = _run_job(runner, JobType.NER_BACKFILL)

        assert store.jobs[job_id]["status"] == "completed"

    def test_finished_jobs_do_not_conflict(self, store, embedder, extractor, test_settings) -> None:
        store.jobs["old"] = {"id": "old", "job_type": "embedding_backfill", "status": "failed"}
        runner = _runner(store, embedder, extractor, test_settings)
        job_id = _run_job(runner, JobType.EMBEDDING_BACKFILL)
        assert job_id != "old"

    def test_promotes_precreated_record(self, store, embedder, extractor, test_settings) -> None:
        store.jobs["pre"] = {"id": "pre", "job_type": "ner_backfill", "status": "pending", "created_by": "ui"}
        runner = _runner(store, embedder, extractor, test_settings)

        job_id = _run_job(runner, JobType.NER_BACKFILL, job_id="pre")

        assert job_id == "pre"
        assert store.jobs["pre"]["status"] == "completed"

    @pytest.mark.parametrize(
        ("job_type", "status"),
        [("full_reindex", "cancelled"), ("embedding_backfill", "completed"), ("ner_backfill", "processing")],
    )
    def test_refuses_unusable_precreated_record(
        self, store, embedder, extractor, test_settings, job_type: str, status: str
    ) -> None:
        store.jobs["pre"] = {"id": "pre", "job_type": job_type, "status": status}
        runner = _runner(store, embedder, extractor, test_settings)

        with pytest.raises(ValidationError, match="not an active embedding_backfill job"):
            asyncio.run(runner.start(JobType.EMBEDDING_BACKFILL, "admin-user", "pre"))

        assert store.jobs["pre"] == {"id": "pre", "job_type": job_type, "status": status}
        assert runner.running == []

    def test_unknown_precreated_id_is_created(self, store, embedder, extractor, test_settings) -> None:
        runner = _runner(store, embedder, extractor, test_settings)

        job_id = _run_job(runner, JobType.EMBEDDING_BACKFILL, job_id="fresh")

        assert job_id == "fresh"
        assert store.jobs["fresh"]["job_type"] == "embedding_backfill"
        assert store.jobs["fresh"]["status"] == "completed"

    def test_cancellation_stops_before_next_batch(self, store, extractor, test_settings) -> None:
        class CancellingEmbedder(FakeEmbedder):
            async def embed(self, text: str) -> list[float]:
                if not self.calls:
                    for job_id in list(store.jobs):
                        await store.cancel_job(job_id)
                return await super().embed(text)

        for i in range(25):
            store.add_chunk(f"text {i}")
        runner = _runner(store, CancellingEmbedder(), extractor, test_settings)

        job_id = _run_job(runner, JobType.EMBEDDING_BACKFILL)

        assert store.jobs[job_id]["status"] == "cancelled"
        assert asyncio.run(store.count_chunks_with_embedding()) == test_settings.embedding_fetch_size

    def test_cancel_before_start_of_work(self, store, embedder, extractor, test_settings) -> None:
        store.add_chunk("text")
        runner = _runner(store, embedder, extractor, test_settings)

        async def main() -> str:
            job_id = await runner.start(JobType.EMBEDDING_BACKFILL, "admin-user")
            await store.cancel_job(job_id)
            await runner.wait(job_id)
            return job_id

        job_id = asyncio.run(main())

        assert store.jobs[job_id]["status"] == "cancelled"
        assert embedder.calls == []

    def test_shutdown_marks_job_failed(self, store, extractor, test_settings) -> None:
        class BlockingEmbedder(FakeEmbedder):
            def __init__(self) -> None:
                super().__init__()
                self.started = asyncio.Event()

            async def embed(self, text: str) -> list[float]:
                self.started.set()
                await asyncio.Event().wait()
                return []

        store.add_chunk("text")

        async def main() -> str:
            embedder = BlockingEmbedder()
            runner = _runner(store, embedder, extractor, test_settings)
            job_id = await runner.start(JobType.EMBEDDING_BACKFILL, "admin-user")
            await embedder.started.wait()
            await runner.shutdown()
            assert runner.running == []
            return job_id

        job_id = asyncio.run(main())

        assert store.jobs[job_id]["status"] == "failed"
        assert store.jobs[job_id]["error"] == "Job interrupted by shutdown"


class TestFullReindex:
    def test_rebuilds_everything_with_monotonic_progress(
        self, store, embedder, extractor, test_settings
    ) -> None:
        cfg = test_settings.model_copy(update={"chunking_batch_size": 2})
        for _ in range(5):
            store.add_transcript()
        stale = store.add_chunk("stale chunk", embedding=[1.0], extraction_status="completed")
        runner = _runner(store, embedder, extractor, cfg)

        job_id = _run_job(runner, JobType.FULL_REINDEX)

        job = store.jobs[job_id]
        assert job["status"] == "completed"
        history = _overall_history(store, job_id)
        assert len(history) > 4
        assert history == sorted(history)
        assert history[-1] == 100
        assert job["progress"]["overall_percent"] == 100

        assert stale not in store.chunks
        assert {c["transcript_id"] for c in store.chunks.values()} == set(store.transcripts)
        assert all(c["embedding"] is not None for c in store.chunks.values())
        assert all(c["extraction_status"] == "completed" for c in store.chunks.values())

    def test_stage_counts(self, store, embedder, extractor, test_settings) -> None:
        for _ in range(3):
            store.add_transcript()
        runner = _runner(store, embedder, extractor, test_settings)

        job_id = _run_job(runner, JobType.FULL_REINDEX)

        stages = store.jobs[job_id]["progress"]["stages"]
        assert stages["chunking"] == {"processed": 3, "total": 3}
        assert stages["embeddings"]["processed"] == len(store.chunks)
        assert stages["entities"]["processed"] == len(store.chunks)

    def test_failure_in_stage_fails_job(self, store, embedder, extractor, test_settings) -> None:
        async def broken_delete() -> int:
            raise PersistenceError("Failed to delete chunks: permission denied")

        store.delete_all_chunks = broken_delete
        runner = _runner(store, embedder, extractor, test_settings)

        job_id = _run_job(runner, JobType.FULL_REINDEX)

        assert store.jobs[job_id]["status"] == "failed"
        assert "permission denied" in store.jobs[job_id]["error"]

    def test_cancelled_between_stages(self, store, extractor, test_settings) -> None:
        class CancellingEmbedder(FakeEmbedder):
            async def embed(self, text: str) -> list[float]:
                for job_id in list(store.jobs):
                    await store.cancel_job(job_id)
                return await super().embed(text)

        store.add_transcript()
        runner = _runner(store, CancellingEmbedder(), extractor, test_settings)

        job_id = _run_job(runner, JobType.FULL_REINDEX)

        assert store.jobs[job_id]["status"] == "cancelled"
        assert asyncio.run(store.count_chunks_extracted()) == 0

    def test_chunk_insert_failures_are_counted(self, store, embedder, extractor, test_settings) -> None:
        for _ in range(2):
            store.add_transcript()
        store.fail_upserts = True
        runner = _runner(store, embedder, extractor, test_settings)

        job_id = _run_job(runner, JobType.FULL_REINDEX)

        job = store.jobs[job_id]
        assert job["status"] == "completed"
        assert job["progress"]["errors"] == 2
        assert job["progress"]["message"] == "Full reindex complete (2 errors)"
