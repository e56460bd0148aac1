"""Shared fixtures: an in-memory store and fake model clients."""

from __future__ import annotations

import itertools
import uuid
from copy import deepcopy
from typing import Any

import pytest

from src.api.dispatcher import IndexingDispatcher
from src.config import Settings
from src.errors import ConflictError, ExternalServiceError, PersistenceError, ValidationError
from src.extraction.models import ChunkInput, EntityResult, ExtractionContext
from src.ingestion.enrichment import ChunkEnricher
from src.ingestion.models import ACTIVE_JOB_STATUSES, ExtractionStatus, JobStatus, JobType
from src.ingestion.pipeline import TranscriptIndexer
from src.jobs.orchestrator import JobRunner
from src.security.guard import RequestGuard
from src.security.rate_limit import SlidingWindowRateLimiter

SERVICE_KEY = "sb-service-role-key-0123456789abcdef-rest-of-key"

REP_ID = "11111111-1111-1111-1111-111111111111"
OTHER_REP_ID = "22222222-2222-2222-2222-222222222222"
MANAGER_ID = "33333333-3333-3333-3333-333333333333"
ADMIN_ID = "44444444-4444-4444-4444-444444444444"
TEAM_ID = "55555555-5555-5555-5555-555555555555"


def transcript_text(turns: int = 6, sentences: int = 5) -> str:
    parts = []
    for i in range(turns):
        speaker = "REP" if i % 2 == 0 else "PROSPECT"
        body = " ".join(
            f"Turn {i} point {j} covers rollout timing and pricing for the team." for j in range(sentences)
        )
        parts.append(f"{speaker}: {body}")
    return "\n\n".join(parts)


class FakeStore:
    """In-memory stand-in for SupabaseStore with the same async interface."""

    def __init__(self) -> None:
        self.tokens: dict[str, str] = {}
        self.roles: dict[str, str] = {}
        self.teams: dict[str, str] = {}  # manager_id -> team_id
        self.profiles: dict[str, dict[str, Any]] = {}
        self.transcripts: dict[str, dict[str, Any]] = {}
        self.chunks: dict[str, dict[str, Any]] = {}
        self.jobs: dict[str, dict[str, Any]] = {}
        self.job_updates: list[tuple[str, dict[str, Any]]] = []
        self.fail_upserts = False
        self.fail_job_updates = False
        self._ids = itertools.count(1)

    # -- seeding helpers -------------------------------------------------

    def add_user(self, token: str, user_id: str, role: str | None, name: str = "", team_id: str | None = None) -> None:
        self.tokens[token] = user_id
        if role is not None:
            self.roles[user_id] = role
        self.profiles[user_id] = {"id": user_id, "name": name or f"User {user_id[:4]}", "team_id": team_id}

    def add_transcript(
        self,
        rep_id: str = REP_ID,
        raw_text: str | None = None,
        transcript_id: str | None = None,
        analysis_status: str = "completed",
        **fields: Any,
    ) -> str:
        transcript_id = transcript_id or str(uuid.uuid4())
        self.transcripts[transcript_id] = {
            "id": transcript_id,
            "rep_id": rep_id,
            "raw_text": raw_text if raw_text is not None else transcript_text(),
            "account_name": fields.get("account_name", "Acme Corp"),
            "call_type": fields.get("call_type", "Discovery"),
            "call_date": fields.get("call_date", "2024-05-01"),
            "analysis_status": analysis_status,
            "deleted_at": fields.get("deleted_at"),
        }
        return transcript_id

    def add_chunk(self, text: str = "chunk text", **fields: Any) -> str:
        chunk_id = fields.pop("id", None) or f"chunk-{next(self._ids):04d}"
        row = {
            "id": chunk_id,
            "transcript_id": fields.pop("transcript_id", str(uuid.uuid4())),
            "chunk_index": fields.pop("chunk_index", 0),
            "chunk_text": text,
            "metadata": fields.pop("metadata", {"account_name": "Acme Corp", "rep_name": "Rep", "call_type": "Call"}),
            "extraction_status": ExtractionStatus.PENDING.value,
            "embedding": None,
            "entities": None,
            "topics": None,
            "framework_elements": None,
        }
        row.update(fields)
        self.chunks[chunk_id] = row
        return chunk_id

    # -- identity --------------------------------------------------------

    async def get_user_id(self, token: str) -> str | None:
        return self.tokens.get(token)

    async def get_user_role(self, user_id: str) -> str | None:
        return self.roles.get(user_id)

    async def get_manager_team_id(self, user_id: str) -> str | None:
        return self.teams.get(user_id)

    async def get_team_rep_ids(self, team_id: str) -> set[str]:
        return {pid for pid, p in self.profiles.items() if p.get("team_id") == team_id}

    async def get_rep_names(self, rep_ids: list[str]) -> dict[str, str]:
        return {i: self.profiles[i]["name"] for i in rep_ids if i in self.profiles}

    # -- transcripts -----------------------------------------------------

    async def get_transcript_owners(self, ids: list[str]) -> dict[str, str]:
        return {i: self.transcripts[i]["rep_id"] for i in ids if i in self.transcripts}

    async def list_indexable_transcript_ids(self) -> list[str]:
        return sorted(
            t["id"]
            for t in self.transcripts.values()
            if t["analysis_status"] in ("completed", "skipped") and t["deleted_at"] is None
        )

    async def fetch_transcripts(self, ids: list[str]) -> list[dict[str, Any]]:
        return [deepcopy(self.transcripts[i]) for i in ids if i in self.transcripts]

    async def get_chunked_transcript_ids(self, ids: list[str]) -> set[str]:
        wanted = set(ids)
        return {c["transcript_id"] for c in self.chunks.values() if c["transcript_id"] in wanted}

    # -- chunks ----------------------------------------------------------

    async def upsert_chunks(self, rows: list[dict[str, Any]]) -> list[str]:
        if self.fail_upserts:
            raise PersistenceError("Failed to insert chunks: simulated outage")
        existing = {(c["transcript_id"], c["chunk_index"]) for c in self.chunks.values()}
        inserted = []
        for row in rows:
            key = (row["transcript_id"], row["chunk_index"])
            if key in existing:
                continue
            existing.add(key)
            inserted.append(self.add_chunk(row["chunk_text"], **{k: v for k, v in row.items() if k != "chunk_text"}))
        return inserted

    async def count_chunks(self) -> int:
        return len(self.chunks)

    async def delete_all_chunks(self) -> int:
        count = len(self.chunks)
        self.chunks.clear()
        return count

    async def fetch_chunks_missing_embedding(self, limit: int, exclude_ids: list[str] | None = None) -> list[dict[str, Any]]:
        excluded = set(exclude_ids or [])
        rows = [
            c for cid, c in sorted(self.chunks.items())
            if c["embedding"] is None and cid not in excluded
        ]
        return [deepcopy(r) for r in rows[:limit]]

    async def fetch_chunks_by_ids(self, chunk_ids: list[str]) -> list[dict[str, Any]]:
        return [deepcopy(self.chunks[i]) for i in chunk_ids if i in self.chunks]

    async def save_embedding(self, chunk_id: str, vector: list[float]) -> None:
        self.chunks[chunk_id]["embedding"] = vector

    async def count_chunks_with_embedding(self) -> int:
        return sum(1 for c in self.chunks.values() if c["embedding"] is not None)

    async def fetch_chunks_pending_extraction(self, limit: int, exclude_ids: list[str] | None = None) -> list[dict[str, Any]]:
        excluded = set(exclude_ids or [])
        rows = [
            c for cid, c in sorted(self.chunks.items())
            if c["extraction_status"] in ("pending", "failed") and cid not in excluded
        ]
        return [deepcopy(r) for r in rows[:limit]]

    async def save_entities(self, chunk_id: str, entity_result: EntityResult) -> None:
        self.chunks[chunk_id].update(
            entities=entity_result.entities,
            topics=entity_result.topics,
            framework_elements=entity_result.framework_elements,
            extraction_status=ExtractionStatus.COMPLETED.value,
        )

    async def mark_extraction_failed(self, chunk_ids: list[str]) -> None:
        for chunk_id in chunk_ids:
            self.chunks[chunk_id]["extraction_status"] = ExtractionStatus.FAILED.value

    async def count_chunks_extracted(self) -> int:
        return sum(1 for c in self.chunks.values() if c["extraction_status"] == "completed")

    # -- jobs ------------------------------------------------------------

    async def find_active_job(self, job_type: JobType) -> dict[str, Any] | None:
        active = {s.value for s in ACTIVE_JOB_STATUSES}
        for job in self.jobs.values():
            if job["job_type"] == job_type.value and job["status"] in active:
                return deepcopy(job)
        return None

    async def create_job(self, job_type: JobType, created_by: str, job_id: str | None = None) -> str:
        existing = self.jobs.get(job_id) if job_id else None
        if existing is not None:
            active = {s.value for s in ACTIVE_JOB_STATUSES}
            if existing["job_type"] != job_type.value or existing["status"] not in active:
                raise ValidationError(
                    f"Job {job_id} is {existing['status']} {existing['job_type']}, "
                    f"not an active {job_type.value} job"
                )
        elif await self.find_active_job(job_type) is not None:
            raise ConflictError(f"A {job_type.value} job is already running")
        job_id = job_id or str(uuid.uuid4())
        job = self.jobs.setdefault(job_id, {"id": job_id, "job_type": job_type.value, "created_by": created_by})
        job.update(status=JobStatus.PROCESSING.value, progress={"message": "Starting"}, error=None)
        return job_id

    async def get_job(self, job_id: str) -> dict[str, Any] | None:
        job = self.jobs.get(job_id)
        return deepcopy(job) if job else None

    async def get_job_status(self, job_id: str) -> JobStatus | None:
        job = self.jobs.get(job_id)
        return JobStatus(job["status"]) if job else None

    async def update_job(self, job_id: str, **fields: Any) -> None:
        if self.fail_job_updates:
            raise PersistenceError(f"Failed to update job {job_id}: simulated outage")
        self.job_updates.append((job_id, deepcopy(fields)))
        self.jobs[job_id].update(fields)

    async def cancel_job(self, job_id: str) -> bool:
        job = self.jobs.get(job_id)
        if job is None or job["status"] not in {s.value for s in ACTIVE_JOB_STATUSES}:
            return False
        job["status"] = JobStatus.CANCELLED.value
        return True


class FakeEmbedder:
    """Returns a fixed vector; texts containing ``FAIL`` raise."""

    def __init__(self) -> None:
        self.calls: list[str] = []

    async def embed(self, text: str) -> list[float]:
        self.calls.append(text)
        if "FAIL" in text:
            raise ExternalServiceError("Embedding rate limit retries exhausted")
        return [0.1, 0.2, 0.3]


class FakeExtractor:
    """Tags every chunk with the pricing topic.

    ``batch_fails`` makes every batched call raise; texts containing
    ``NER_FAIL`` also fail in the single-chunk fallback.
    """

    def __init__(self, batch_fails: bool = False) -> None:
        self.batch_fails = batch_fails
        self.batch_calls: list[list[str]] = []
        self.single_calls: list[str] = []

    @staticmethod
    def _result(chunk: ChunkInput) -> EntityResult:
        return EntityResult(entities={"people": ["Dana"]}, topics=["pricing"], framework_elements=["metrics"])

    async def extract_batch(self, chunks: list[ChunkInput], context: ExtractionContext, stats: Any = None) -> dict[str, EntityResult]:
        self.batch_calls.append([c.id for c in chunks])
        if self.batch_fails:
            raise ExternalServiceError("Batch NER API error: timeout")
        return {c.id: self._result(c) for c in chunks}

    async def extract_single(self, chunk: ChunkInput, context: ExtractionContext, stats: Any = None) -> EntityResult:
        self.single_calls.append(chunk.id)
        if "NER_FAIL" in chunk.text:
            raise ExternalServiceError("Batch NER API error: worker_limit")
        return self._result(chunk)


async def no_sleep(seconds: float) -> None:
    return None


@pytest.fixture
def test_settings() -> Settings:
    return Settings(
        _env_file=None,  # type: ignore[call-arg]
        supabase_url="http://localhost:54321",
        supabase_key=SERVICE_KEY,
        request_signing_secret="",
        openai_api_key="test",
        anthropic_api_key="test",
        embedding_delay_seconds=0,
        ner_batch_delay_seconds=0,
        embedding_initial_delay_seconds=0,
        ner_retry_base_delay_seconds=0,
        heartbeat_interval_seconds=0,
        inline_enrichment_limit=0,
    )


@pytest.fixture
def store() -> FakeStore:
    return FakeStore()


@pytest.fixture
def embedder() -> FakeEmbedder:
    return FakeEmbedder()


@pytest.fixture
def extractor() -> FakeExtractor:
    return FakeExtractor()


def build_dispatcher(store: FakeStore, embedder: Any, extractor: Any, settings: Settings) -> IndexingDispatcher:
    """Wire a dispatcher over the fakes, the way ``get_dispatcher`` wires real clients."""
    indexer = TranscriptIndexer(store, settings)
    enricher = ChunkEnricher(store, embedder, extractor, settings, sleep=no_sleep)
    return IndexingDispatcher(
        store=store,
        guard=RequestGuard(store, settings),
        limiter=SlidingWindowRateLimiter(),
        indexer=indexer,
        enricher=enricher,
        runner=JobRunner(store, indexer, enricher, settings),
        settings=settings,
    )
