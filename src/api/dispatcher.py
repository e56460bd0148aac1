"""Mode dispatch for the chunk-transcripts endpoint.

A request is validated, authenticated, rate limited and authorized before any
work starts; each mode then maps to one indexer, enricher or job-runner call.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Mapping
from functools import lru_cache

from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from src.api.models import (
    BatchProgressResponse,
    IndexRequest,
    IndexResponse,
    JobStartedResponse,
    ResetResponse,
)
from src.config import Settings, settings as default_settings
from src.errors import RateLimitError, ValidationError
from src.extraction.extractor import EntityExtractor
from src.ingestion.embeddings import EmbeddingClient
from src.ingestion.enrichment import ChunkEnricher
from src.ingestion.models import BatchResult, IndexingMode, JobType
from src.ingestion.pipeline import TranscriptIndexer
from src.ingestion.storage import SupabaseStore
from src.jobs.orchestrator import JobRunner
from src.security.guard import Caller, RequestGuard
from src.security.rate_limit import SlidingWindowRateLimiter

logger = logging.getLogger(__name__)

JOB_MODES: dict[IndexingMode, JobType] = {
    IndexingMode.BACKFILL_EMBEDDINGS: JobType.EMBEDDING_BACKFILL,
    IndexingMode.BACKFILL_ENTITIES: JobType.NER_BACKFILL,
    IndexingMode.FULL_REINDEX: JobType.FULL_REINDEX,
}


def parse_request(raw_body: bytes) -> IndexRequest:
    """Decode and validate a request body.

    Raises:
        ValidationError: The body is not JSON or does not select exactly one mode.
    """
    try:
        payload = json.loads(raw_body or b"null")
    except json.JSONDecodeError as exc:
        raise ValidationError("Invalid JSON body") from exc
    if not isinstance(payload, dict):
        raise ValidationError("Request body must be a JSON object")
    try:
        return IndexRequest.model_validate(payload)
    except PydanticValidationError as exc:
        first = exc.errors()[0]
        location = ".".join(str(p) for p in first.get("loc", ()))
        detail = first.get("msg", "invalid value")
        raise ValidationError(f"{location}: {detail}" if location else detail) from exc


class IndexingDispatcher:
    """Runs one validated request in the mode it selects."""

    def __init__(
        self,
        store: SupabaseStore,
        guard: RequestGuard,
        limiter: SlidingWindowRateLimiter,
        indexer: TranscriptIndexer,
        enricher: ChunkEnricher,
        runner: JobRunner,
        settings: Settings = default_settings,
    ) -> None:
        self.store = store
        self.guard = guard
        self.limiter = limiter
        self.indexer = indexer
        self.enricher = enricher
        self.runner = runner
        self._settings = settings

    async def handle(self, headers: Mapping[str, str], raw_body: bytes) -> BaseModel:
        request = parse_request(raw_body)
        mode = request.mode
        caller = await self.guard.authenticate(headers, raw_body)
        logger.info("Mode %s requested by %s (%s)", mode.value, caller.user_id, caller.role.value)

        if not caller.is_admin:
            decision = self.limiter.check(
                caller.user_id,
                mode.value,
                limit=self._settings.rate_limit_requests,
                window_seconds=self._settings.rate_limit_window_seconds,
            )
            if not decision.allowed:
                logger.warning("Rate limit exceeded for user %s (%s)", caller.user_id, mode.value)
                raise RateLimitError(decision.retry_after_seconds)

        if mode is not IndexingMode.STANDARD:
            self.guard.require_admin(caller, mode.value)

        if mode is IndexingMode.STANDARD:
            return await self._standard(caller, request.ids)
        if mode is IndexingMode.BACKFILL_ALL:
            return await self._backfill_all()
        if mode is IndexingMode.RESET_ALL_CHUNKS:
            return await self._reset_all_chunks()
        if mode is IndexingMode.EMBEDDING_BATCH:
            return await self._embedding_batch(request.batch_size)
        if mode is IndexingMode.NER_BATCH:
            return await self._ner_batch(request.batch_size)
        job_id = str(request.job_id) if request.job_id else None
        return await self._start_job(caller, JOB_MODES[mode], job_id)

    # ------------------------------------------------------------------
    # Modes
    # ------------------------------------------------------------------

    async def _standard(self, caller: Caller, ids: list[str]) -> IndexResponse:
        allowed = await self.guard.authorize_transcripts(caller, ids)
        if not allowed:
            return IndexResponse(
                message="No transcripts to process (none authorized)", chunked=0, new_chunks=0
            )

        outcome = await self.indexer.index_transcripts(allowed)
        if outcome.transcripts_indexed == 0:
            return IndexResponse(
                message="All transcripts already indexed",
                chunked=outcome.chunked,
                new_chunks=0,
                skipped=outcome.skipped,
            )

        response = IndexResponse(
            message=f"Indexed {outcome.transcripts_indexed} transcripts",
            chunked=outcome.chunked,
            new_chunks=outcome.new_chunks,
            skipped=outcome.skipped,
        )
        limit = self._settings.inline_enrichment_limit
        if 0 < outcome.new_chunks <= limit:
            rows = await self.store.fetch_chunks_by_ids(outcome.new_chunk_ids)
            embedded = await self.enricher.embed_rows(rows)
            extracted = await self.enricher.extract_rows(rows)
            response.embeddings_generated = embedded.succeeded
            response.ner_extracted = extracted.succeeded
        return response

    async def _backfill_all(self) -> IndexResponse:
        outcome = await self.indexer.backfill_all()
        if outcome.transcripts_indexed == 0 and not outcome.errors:
            message = "All transcripts already indexed"
        else:
            message = f"Backfilled {outcome.transcripts_indexed} transcripts"
        if outcome.errors:
            message += f" ({outcome.errors} failed)"
            logger.error("Backfill could not insert chunks for %d transcripts", outcome.errors)
        return IndexResponse(
            success=not outcome.errors,
            message=message,
            errors=outcome.errors or None,
            chunked=outcome.chunked,
            new_chunks=outcome.new_chunks,
            skipped=outcome.skipped,
        )

    async def _reset_all_chunks(self) -> ResetResponse:
        deleted = await self.store.delete_all_chunks()
        logger.warning("Deleted all %d transcript chunks", deleted)
        return ResetResponse(message="Deleted all transcript chunks", deleted_count=deleted)

    async def _embedding_batch(self, batch_size: int | None) -> BatchProgressResponse:
        result = await self.enricher.embed_batch(batch_size or self._settings.embedding_fetch_size)
        total, done = await self.enricher.embedding_counts()
        return self._batch_progress(result, total, done, "Embedding")

    async def _ner_batch(self, batch_size: int | None) -> BatchProgressResponse:
        result = await self.enricher.extract_batch(batch_size or self._settings.ner_fetch_size)
        total, done = await self.enricher.extraction_counts()
        return self._batch_progress(result, total, done, "NER")

    @staticmethod
    def _batch_progress(
        result: BatchResult, total: int, done: int, label: str
    ) -> BatchProgressResponse:
        remaining = max(total - done, 0)
        logger.info(
            "%s batch complete: %d success, %d errors, %d remaining",
            label,
            result.succeeded,
            result.errors,
            remaining,
        )
        # A batch that made no progress ends the caller's loop so persistent
        # failures cannot spin it forever.
        complete = remaining == 0 or result.succeeded == 0
        return BatchProgressResponse(
            processed=result.processed,
            remaining=remaining,
            total=total,
            errors=result.errors,
            complete=complete,
        )

    async def _start_job(
        self, caller: Caller, job_type: JobType, job_id: str | None
    ) -> JobStartedResponse:
        job_id = await self.runner.start(job_type, caller.user_id, job_id)
        return JobStartedResponse(
            message=f"Started {job_type.value} job", job_id=job_id
        )


@lru_cache(maxsize=1)
def get_dispatcher() -> IndexingDispatcher:
    """Build the process-wide dispatcher from settings."""
    store = SupabaseStore(default_settings.supabase_url, default_settings.supabase_key)
    embedder = EmbeddingClient(default_settings.openai_api_key, default_settings)
    extractor = EntityExtractor(default_settings.anthropic_api_key, default_settings)
    indexer = TranscriptIndexer(store, default_settings)
    enricher = ChunkEnricher(store, embedder, extractor, default_settings)
    return IndexingDispatcher(
        store=store,
        guard=RequestGuard(store, default_settings),
        limiter=SlidingWindowRateLimiter(),
        indexer=indexer,
        enricher=enricher,
        runner=JobRunner(store, indexer, enricher, default_settings),
        settings=default_settings,
    )
