"""Data models for the indexing pipeline."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any


class JobType(str, Enum):
    """Kinds of long-running background jobs."""

    EMBEDDING_BACKFILL = "embedding_backfill"
    NER_BACKFILL = "ner_backfill"
    FULL_REINDEX = "full_reindex"


class JobStatus(str, Enum):
    """Background job lifecycle states."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


ACTIVE_JOB_STATUSES = (JobStatus.PENDING, JobStatus.PROCESSING)


class ExtractionStatus(str, Enum):
    """Entity extraction state of a chunk."""

    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


class Role(str, Enum):
    """End-user roles known to the identity store."""

    ADMIN = "admin"
    MANAGER = "manager"
    REP = "rep"


class IndexingMode(str, Enum):
    """Operating modes of the indexing endpoint."""

    STANDARD = "standard"
    BACKFILL_ALL = "backfill_all"
    BACKFILL_EMBEDDINGS = "backfill_embeddings"
    BACKFILL_ENTITIES = "backfill_entities"
    RESET_ALL_CHUNKS = "reset_all_chunks"
    FULL_REINDEX = "full_reindex"
    NER_BATCH = "ner_batch"
    EMBEDDING_BATCH = "embedding_batch"


class Topic(str, Enum):
    """Closed vocabulary of conversation topics."""

    PRICING = "pricing"
    OBJECTIONS = "objections"
    DEMO = "demo"
    NEXT_STEPS = "next_steps"
    DISCOVERY = "discovery"
    NEGOTIATION = "negotiation"
    TECHNICAL = "technical"
    COMPETITOR_DISCUSSION = "competitor_discussion"
    BUDGET = "budget"
    TIMELINE = "timeline"
    DECISION_PROCESS = "decision_process"
    PAIN_POINTS = "pain_points"
    VALUE_PROP = "value_prop"
    CLOSING = "closing"


class FrameworkElement(str, Enum):
    """MEDDPICC sales-qualification elements."""

    METRICS = "metrics"
    ECONOMIC_BUYER = "economic_buyer"
    DECISION_CRITERIA = "decision_criteria"
    DECISION_PROCESS = "decision_process"
    PAPER_PROCESS = "paper_process"
    IDENTIFY_PAIN = "identify_pain"
    CHAMPION = "champion"
    COMPETITION = "competition"


@dataclass
class ChunkMetadata:
    """Transcript fields denormalized onto every chunk."""

    account_name: str
    call_date: str | None
    call_type: str
    rep_id: str | None
    rep_name: str


@dataclass
class TranscriptChunk:
    """A chunk ready for storage. Embedding and entities are filled later."""

    transcript_id: str
    chunk_index: int
    chunk_text: str
    metadata: ChunkMetadata
    extraction_status: ExtractionStatus = ExtractionStatus.PENDING

    def to_row(self) -> dict[str, Any]:
        return {
            "transcript_id": self.transcript_id,
            "chunk_index": self.chunk_index,
            "chunk_text": self.chunk_text,
            "extraction_status": self.extraction_status.value,
            "metadata": asdict(self.metadata),
        }


@dataclass
class BatchResult:
    """Counts for one enrichment batch."""

    processed: int = 0
    succeeded: int = 0
    errors: int = 0
    failed_ids: list[str] = field(default_factory=list)


@dataclass
class IndexOutcome:
    """Result of chunking a set of transcripts."""

    requested: int = 0
    chunked: int = 0
    new_chunks: int = 0
    skipped: int = 0
    transcripts_indexed: int = 0
    new_chunk_ids: list[str] = field(default_factory=list)
    # Transcripts with at least one failed chunk insert
    failed_transcript_ids: list[str] = field(default_factory=list)

    @property
    def errors(self) -> int:
        return len(self.failed_transcript_ids)
