"""Pydantic request/response schemas for the indexing API."""

from __future__ import annotations

from typing import Any
from uuid import UUID

from pydantic import BaseModel, Field, model_validator

from src.ingestion.models import IndexingMode

MAX_TRANSCRIPT_IDS = 100
MAX_BATCH_SIZE = 50

# Boolean flags that each select one non-standard mode
MODE_FLAGS: tuple[IndexingMode, ...] = (
    IndexingMode.BACKFILL_ALL,
    IndexingMode.BACKFILL_EMBEDDINGS,
    IndexingMode.BACKFILL_ENTITIES,
    IndexingMode.RESET_ALL_CHUNKS,
    IndexingMode.FULL_REINDEX,
    IndexingMode.NER_BATCH,
    IndexingMode.EMBEDDING_BATCH,
)


class IndexRequest(BaseModel):
    """Request body for POST /api/chunk-transcripts.

    Exactly one of ``transcript_ids`` or a mode flag must be given.
    """

    transcript_ids: list[UUID] | None = Field(default=None, max_length=MAX_TRANSCRIPT_IDS)
    backfill_all: bool = False
    backfill_embeddings: bool = False
    backfill_entities: bool = False
    reset_all_chunks: bool = False
    full_reindex: bool = False
    ner_batch: bool = False
    embedding_batch: bool = False
    batch_size: int | None = Field(default=None, ge=1, le=MAX_BATCH_SIZE)
    job_id: UUID | None = None

    @model_validator(mode="after")
    def _exactly_one_mode(self) -> IndexRequest:
        selected = [flag for flag in MODE_FLAGS if getattr(self, flag.value)]
        if self.transcript_ids is not None:
            if not self.transcript_ids:
                raise ValueError("transcript_ids must not be empty")
            selected.append(IndexingMode.STANDARD)
        if len(selected) != 1:
            raise ValueError(
                "Exactly one of transcript_ids or a mode flag "
                f"({', '.join(f.value for f in MODE_FLAGS)}) is required"
            )
        return self

    @property
    def mode(self) -> IndexingMode:
        if self.transcript_ids is not None:
            return IndexingMode.STANDARD
        return next(flag for flag in MODE_FLAGS if getattr(self, flag.value))

    @property
    def ids(self) -> list[str]:
        """Transcript ids as strings, deduplicated in request order."""
        return list(dict.fromkeys(str(i) for i in self.transcript_ids or []))


class IndexResponse(BaseModel):
    """Response for standard and backfill_all modes."""

    success: bool = True
    message: str
    chunked: int
    new_chunks: int
    embeddings_generated: int | None = None
    ner_extracted: int | None = None
    skipped: int | None = None
    errors: int | None = None


class BatchProgressResponse(BaseModel):
    """Response for ner_batch and embedding_batch modes.

    ``remaining`` and ``complete`` drive the caller's auto-continue loop.
    """

    processed: int
    remaining: int
    total: int
    errors: int
    complete: bool


class ResetResponse(BaseModel):
    success: bool = True
    message: str
    deleted_count: int


class JobStartedResponse(BaseModel):
    """Response for modes that run as a background job."""

    success: bool = True
    message: str
    job_id: str


class JobDetail(BaseModel):
    """A background job record as read by the polling endpoint."""

    id: str
    job_type: str
    status: str
    progress: dict[str, Any] | None = None
    error: str | None = None
    created_by: str | None = None
    started_at: str | None = None
    completed_at: str | None = None
    updated_at: str | None = None
