"""Data models for entity/topic extraction results."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from src.ingestion.models import FrameworkElement, Topic

_TOPICS = {t.value for t in Topic}
_FRAMEWORK = {f.value for f in FrameworkElement}


@dataclass
class ChunkInput:
    """A chunk submitted for extraction."""

    id: str
    text: str


@dataclass
class ExtractionContext:
    """Call-level context included in the extraction prompt."""

    account_name: str | None = None
    rep_name: str | None = None
    call_type: str | None = None

    @classmethod
    def from_metadata(cls, metadata: dict[str, Any] | None) -> ExtractionContext:
        metadata = metadata or {}
        return cls(
            account_name=metadata.get("account_name"),
            rep_name=metadata.get("rep_name"),
            call_type=metadata.get("call_type"),
        )


@dataclass
class EntityResult:
    """Entities, topics and framework tags extracted from one chunk."""

    entities: dict[str, Any] = field(default_factory=dict)
    topics: list[str] = field(default_factory=list)
    framework_elements: list[str] = field(default_factory=list)

    @classmethod
    def empty(cls) -> EntityResult:
        return cls()

    @classmethod
    def from_payload(cls, payload: Any) -> EntityResult:
        """Build a result from one tool-call entry, dropping unknown tags."""
        if not isinstance(payload, dict):
            return cls.empty()
        entities = payload.get("entities")
        topics = payload.get("topics")
        elements = payload.get("framework_elements")
        return cls(
            entities=entities if isinstance(entities, dict) else {},
            topics=[t for t in topics if t in _TOPICS] if isinstance(topics, list) else [],
            framework_elements=(
                [e for e in elements if e in _FRAMEWORK] if isinstance(elements, list) else []
            ),
        )

    def is_empty(self) -> bool:
        return not self.entities and not self.topics and not self.framework_elements
