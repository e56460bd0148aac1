"""Transcript indexing: fetch -> chunk -> upsert chunk rows.

Embeddings and entities are filled separately by the enrichment batches so a
single request never has to wait on the model providers.
"""

from __future__ import annotations

import logging
from typing import Any

from src.config import Settings, settings as default_settings
from src.errors import PersistenceError
from src.ingestion.chunking import chunk_text
from src.ingestion.models import ChunkMetadata, IndexOutcome, TranscriptChunk
from src.ingestion.storage import SupabaseStore

logger = logging.getLogger(__name__)


def build_chunks(
    transcript: dict[str, Any],
    rep_name: str,
    chunk_size: int = 2000,
    overlap: int = 200,
) -> list[TranscriptChunk]:
    """Chunk one transcript row and attach denormalized metadata."""
    metadata = ChunkMetadata(
        account_name=transcript.get("account_name") or "Unknown",
        call_date=transcript.get("call_date"),
        call_type=transcript.get("call_type") or "Call",
        rep_id=transcript.get("rep_id"),
        rep_name=rep_name,
    )
    texts = chunk_text(transcript.get("raw_text") or "", chunk_size, overlap)
    return [
        TranscriptChunk(
            transcript_id=str(transcript["id"]),
            chunk_index=idx,
            chunk_text=text,
            metadata=metadata,
        )
        for idx, text in enumerate(texts)
    ]


class TranscriptIndexer:
    """Creates chunk rows for transcripts that do not have any yet."""

    def __init__(self, store: SupabaseStore, settings: Settings = default_settings) -> None:
        self._store = store
        self._settings = settings

    async def chunk_transcript_batch(self, ids: list[str], strict: bool = False) -> IndexOutcome:
        """Chunk and upsert the given transcripts without checking for existing chunks.

        Args:
            ids: Transcript ids to chunk.
            strict: Raise on the first failed insert instead of logging it.

        Returns:
            IndexOutcome with ``transcripts_indexed`` and ``new_chunks`` set.
            In lenient mode a transcript whose rows sit in a failed insert
            batch is reported in ``failed_transcript_ids`` instead.
        """
        outcome = IndexOutcome(requested=len(ids))
        transcripts = await self._store.fetch_transcripts(ids)
        if not transcripts:
            return outcome

        rep_ids = sorted({str(t["rep_id"]) for t in transcripts if t.get("rep_id")})
        rep_names = await self._store.get_rep_names(rep_ids)

        rows: list[dict[str, Any]] = []
        for transcript in transcripts:
            rep_name = rep_names.get(str(transcript.get("rep_id")), "Unknown")
            chunks = build_chunks(
                transcript, rep_name, self._settings.chunk_size, self._settings.chunk_overlap
            )
            rows.extend(c.to_row() for c in chunks)

        failed: list[str] = []
        batch_size = self._settings.insert_batch_size
        for i in range(0, len(rows), batch_size):
            try:
                inserted = await self._store.upsert_chunks(rows[i : i + batch_size])
            except PersistenceError:
                if strict:
                    raise
                logger.exception("Error inserting chunk batch starting at row %d", i)
                for row in rows[i : i + batch_size]:
                    if row["transcript_id"] not in failed:
                        failed.append(row["transcript_id"])
                continue
            outcome.new_chunks += len(inserted)
            outcome.new_chunk_ids.extend(inserted)

        outcome.failed_transcript_ids = failed
        outcome.transcripts_indexed = len(transcripts) - len(failed)
        logger.info(
            "Created %d chunks from %d transcripts (%d failed)",
            outcome.new_chunks,
            outcome.transcripts_indexed,
            len(failed),
        )
        return outcome

    async def index_transcripts(self, ids: list[str], strict: bool = True) -> IndexOutcome:
        """Index the given transcripts, skipping any that already have chunks."""
        outcome = IndexOutcome(requested=len(ids), chunked=len(ids))
        if not ids:
            return outcome

        already = await self._store.get_chunked_transcript_ids(ids)
        to_chunk = [i for i in ids if i not in already]
        outcome.skipped = len(ids) - len(to_chunk)
        logger.info("%d already chunked, %d to process", outcome.skipped, len(to_chunk))
        if not to_chunk:
            return outcome

        result = await self.chunk_transcript_batch(to_chunk, strict=strict)
        outcome.new_chunks = result.new_chunks
        outcome.new_chunk_ids = result.new_chunk_ids
        outcome.transcripts_indexed = result.transcripts_indexed
        outcome.failed_transcript_ids = result.failed_transcript_ids
        return outcome

    async def backfill_all(self) -> IndexOutcome:
        """Chunk every eligible transcript that has no chunks yet."""
        all_ids = await self._store.list_indexable_transcript_ids()
        already = await self._store.get_chunked_transcript_ids(all_ids)
        unchunked = [i for i in all_ids if i not in already]
        outcome = IndexOutcome(requested=len(all_ids), skipped=len(already))
        logger.info(
            "Backfill: %d total, %d already indexed, %d to process",
            len(all_ids),
            len(already),
            len(unchunked),
        )

        batch_size = self._settings.chunking_batch_size
        for i in range(0, len(unchunked), batch_size):
            result = await self.chunk_transcript_batch(unchunked[i : i + batch_size])
            outcome.new_chunks += result.new_chunks
            outcome.transcripts_indexed += result.transcripts_indexed
            outcome.failed_transcript_ids.extend(result.failed_transcript_ids)
            logger.info(
                "Backfill progress: %d/%d transcripts", outcome.transcripts_indexed, len(unchunked)
            )

        outcome.chunked = outcome.skipped + outcome.transcripts_indexed
        return outcome
