"""Embedding and entity enrichment of stored chunks, one bounded batch at a time.

Work is selected with "still missing" predicates (no embedding, extraction
pending or failed), so re-running a batch after a failure converges without
reprocessing completed chunks.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Any

from src.config import Settings, settings as default_settings
from src.errors import ExternalServiceError, PersistenceError
from src.extraction.extractor import EntityExtractor
from src.extraction.models import ChunkInput, EntityResult, ExtractionContext
from src.ingestion.embeddings import EmbeddingClient
from src.ingestion.models import BatchResult
from src.ingestion.storage import SupabaseStore

logger = logging.getLogger(__name__)

# Called with the number of chunks handled so far in the current batch
ProgressCallback = Callable[[int], Awaitable[Any]]


class ChunkEnricher:
    """Fills embeddings and entity fields for chunks that lack them."""

    def __init__(
        self,
        store: SupabaseStore,
        embedder: EmbeddingClient,
        extractor: EntityExtractor,
        settings: Settings = default_settings,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._store = store
        self._embedder = embedder
        self._extractor = extractor
        self._settings = settings
        self._sleep = sleep

    # ------------------------------------------------------------------
    # Embeddings
    # ------------------------------------------------------------------

    async def embed_rows(
        self, rows: list[dict[str, Any]], on_progress: ProgressCallback | None = None
    ) -> BatchResult:
        """Embed chunks sequentially with a fixed delay before each call."""
        result = BatchResult(processed=len(rows))
        for handled, row in enumerate(rows, start=1):
            await self._sleep(self._settings.embedding_delay_seconds)
            chunk_id = str(row["id"])
            try:
                vector = await self._embedder.embed(row.get("chunk_text") or "")
                await self._store.save_embedding(chunk_id, vector)
            except (ExternalServiceError, PersistenceError) as exc:
                logger.error("Embedding failed for chunk %s: %s", chunk_id, exc)
                result.errors += 1
                result.failed_ids.append(chunk_id)
            else:
                result.succeeded += 1
            if on_progress is not None:
                await on_progress(handled)
        return result

    async def embed_batch(
        self,
        limit: int,
        exclude_ids: list[str] | None = None,
        on_progress: ProgressCallback | None = None,
    ) -> BatchResult:
        rows = await self._store.fetch_chunks_missing_embedding(limit, exclude_ids)
        logger.info("Found %d chunks needing embeddings (batch limit: %d)", len(rows), limit)
        return await self.embed_rows(rows, on_progress)

    async def embedding_counts(self) -> tuple[int, int]:
        """Return ``(total_chunks, chunks_with_embedding)``."""
        total = await self._store.count_chunks()
        done = await self._store.count_chunks_with_embedding()
        return total, done

    # ------------------------------------------------------------------
    # Entities
    # ------------------------------------------------------------------

    async def _extract_group(self, group: list[dict[str, Any]]) -> dict[str, EntityResult | None]:
        """Run one batched call, falling back to per-chunk calls if it fails.

        A ``None`` value means the chunk could not be extracted at all.
        """
        context = ExtractionContext.from_metadata(group[0].get("metadata"))
        inputs = [ChunkInput(id=str(r["id"]), text=r.get("chunk_text") or "") for r in group]
        try:
            batch = await self._extractor.extract_batch(inputs, context)
            return dict(batch)
        except ExternalServiceError as exc:
            logger.warning("Batch NER failed, falling back to single-chunk extraction: %s", exc)

        results: dict[str, EntityResult | None] = {}
        for chunk in inputs:
            try:
                results[chunk.id] = await self._extractor.extract_single(chunk, context)
            except ExternalServiceError as exc:
                logger.error("Single-chunk NER failed for %s: %s", chunk.id, exc)
                results[chunk.id] = None
        return results

    async def extract_rows(
        self, rows: list[dict[str, Any]], on_progress: ProgressCallback | None = None
    ) -> BatchResult:
        """Extract entities for *rows*, several chunks per model call."""
        result = BatchResult(processed=len(rows))
        per_call = self._settings.ner_chunks_per_call
        total_groups = (len(rows) + per_call - 1) // per_call

        for i in range(0, len(rows), per_call):
            group = rows[i : i + per_call]
            logger.info(
                "Processing NER batch %d/%d (%d chunks)", i // per_call + 1, total_groups, len(group)
            )
            extracted = await self._extract_group(group)

            failed: list[str] = []
            for row in group:
                chunk_id = str(row["id"])
                entity_result = extracted.get(chunk_id)
                if entity_result is None:
                    failed.append(chunk_id)
                    continue
                try:
                    await self._store.save_entities(chunk_id, entity_result)
                except PersistenceError as exc:
                    logger.error("Failed to save NER for chunk %s: %s", chunk_id, exc)
                    result.errors += 1
                    result.failed_ids.append(chunk_id)
                    continue
                result.succeeded += 1

            if failed:
                result.errors += len(failed)
                result.failed_ids.extend(failed)
                try:
                    await self._store.mark_extraction_failed(failed)
                except PersistenceError as exc:
                    logger.error("Failed to mark %d chunks as failed: %s", len(failed), exc)

            if on_progress is not None:
                await on_progress(i + len(group))

            if i + per_call < len(rows):
                await self._sleep(self._settings.ner_batch_delay_seconds)

        return result

    async def extract_batch(
        self,
        limit: int,
        exclude_ids: list[str] | None = None,
        on_progress: ProgressCallback | None = None,
    ) -> BatchResult:
        rows = await self._store.fetch_chunks_pending_extraction(limit, exclude_ids)
        logger.info("Found %d chunks needing NER extraction", len(rows))
        return await self.extract_rows(rows, on_progress)

    async def extraction_counts(self) -> tuple[int, int]:
        """Return ``(total_chunks, chunks_extracted)``."""
        total = await self._store.count_chunks()
        done = await self._store.count_chunks_extracted()
        return total, done
