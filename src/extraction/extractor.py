"""Claude-powered batched extraction of entities, topics and MEDDPICC tags."""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Awaitable, Callable
from typing import Any

from anthropic import AsyncAnthropic

from src.config import Settings, settings as default_settings
from src.errors import ExternalServiceError
from src.extraction.models import ChunkInput, EntityResult, ExtractionContext
from src.extraction.retry import RetryStats, with_retry
from src.ingestion.models import FrameworkElement, Topic

logger = logging.getLogger(__name__)

TOOL_NAME = "extract_entities_batch"

_TEXT_ARRAY: dict[str, Any] = {"type": "array", "items": {"type": "string"}}

# Per-chunk output schema
NER_SCHEMA: dict[str, Any] = {
    "type": "object",
    "properties": {
        "entities": {
            "type": "object",
            "properties": {
                "people": {
                    "type": "array",
                    "items": {
                        "type": "object",
                        "properties": {
                            "name": {"type": "string"},
                            "role": {"type": "string"},
                            "is_decision_maker": {"type": "boolean"},
                        },
                        "required": ["name"],
                    },
                },
                "organizations": _TEXT_ARRAY,
                "competitors": _TEXT_ARRAY,
                "money_amounts": {
                    "type": "array",
                    "items": {
                        "type": "object",
                        "properties": {
                            "amount": {"type": "string"},
                            "context": {"type": "string"},
                        },
                        "required": ["amount", "context"],
                    },
                },
                "dates": {
                    "type": "array",
                    "items": {
                        "type": "object",
                        "properties": {
                            "date": {"type": "string"},
                            "context": {"type": "string"},
                        },
                        "required": ["date", "context"],
                    },
                },
                "products": _TEXT_ARRAY,
            },
        },
        "topics": {
            "type": "array",
            "items": {"type": "string", "enum": [t.value for t in Topic]},
        },
        "framework_elements": {
            "type": "array",
            "items": {"type": "string", "enum": [f.value for f in FrameworkElement]},
        },
    },
    "required": ["entities", "topics", "framework_elements"],
}

SYSTEM_PROMPT = (
    "You are a sales call analyst. Extract named entities, conversation topics "
    "and MEDDPICC qualification elements from sales call transcript chunks.\n\n"
    "Only extract what is clearly supported by the text. Mark a person as a "
    "decision maker only when the transcript says so. Use the "
    f"{TOOL_NAME} tool to return your results."
)


def build_tool(count: int) -> dict[str, Any]:
    """Tool definition asking for exactly *count* results in order."""
    return {
        "name": TOOL_NAME,
        "description": f"Extract NER for {count} transcript chunks, returning results in order",
        "input_schema": {
            "type": "object",
            "properties": {
                "results": {
                    "type": "array",
                    "description": f"Array of {count} NER results, one per chunk in order",
                    "items": NER_SCHEMA,
                }
            },
            "required": ["results"],
        },
    }


def build_prompt(chunks: list[ChunkInput], context: ExtractionContext, text_limit: int) -> str:
    chunk_list = "\n\n---\n\n".join(
        f"[CHUNK {i + 1}]\n{c.text[:text_limit]}" for i, c in enumerate(chunks)
    )
    return (
        f"Extract entities, topics, and MEDDPICC elements from each of these "
        f"{len(chunks)} sales call transcript chunks.\n"
        f"Return exactly {len(chunks)} results in the same order as the chunks.\n\n"
        f"Context: Account={context.account_name or 'Unknown'}, "
        f"Rep={context.rep_name or 'Unknown'}, "
        f"CallType={context.call_type or 'Unknown'}\n\n"
        f"{chunk_list}"
    )


def parse_batch_response(response: Any, chunks: list[ChunkInput]) -> dict[str, EntityResult]:
    """Map tool-call results back to chunk ids.

    Missing or malformed entries resolve to empty results so the map always
    has one entry per submitted chunk.
    """
    results: list[Any] = []
    found = False

    for block in getattr(response, "content", None) or []:
        if getattr(block, "type", None) != "tool_use" or getattr(block, "name", None) != TOOL_NAME:
            continue
        found = True
        data = block.input
        try:
            if isinstance(data, str):
                data = json.loads(data)
            raw = data.get("results", []) if isinstance(data, dict) else []
            results = raw if isinstance(raw, list) else []
        except (json.JSONDecodeError, AttributeError):
            logger.error("Failed to parse batch NER response, using defaults")
            results = []
        break

    if not found:
        logger.warning("No tool call in batch NER response, using defaults for all chunks")

    mapped: dict[str, EntityResult] = {}
    for index, chunk in enumerate(chunks):
        if index < len(results):
            mapped[chunk.id] = EntityResult.from_payload(results[index])
        else:
            if found:
                logger.warning("Missing NER result for chunk index %d", index)
            mapped[chunk.id] = EntityResult.empty()
    return mapped


class EntityExtractor:
    """Extracts entities for a batch of chunks in a single model call."""

    def __init__(
        self,
        api_key: str,
        settings: Settings = default_settings,
        client: AsyncAnthropic | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._settings = settings
        self._client = client or AsyncAnthropic(api_key=api_key, max_retries=0)
        self._sleep = sleep

    async def _call(self, chunks: list[ChunkInput], context: ExtractionContext, timeout: float) -> Any:
        cfg = self._settings
        return await self._client.messages.create(
            model=cfg.ner_model,
            max_tokens=cfg.ner_max_tokens,
            system=SYSTEM_PROMPT,
            tools=[build_tool(len(chunks))],
            tool_choice={"type": "tool", "name": TOOL_NAME},
            messages=[
                {
                    "role": "user",
                    "content": build_prompt(chunks, context, cfg.ner_chunk_text_limit),
                }
            ],
            timeout=timeout,
        )

    async def _extract(
        self,
        chunks: list[ChunkInput],
        context: ExtractionContext,
        timeout: float,
        stats: RetryStats | None,
    ) -> dict[str, EntityResult]:
        cfg = self._settings
        # One deadline covers every attempt and the backoff between them.
        try:
            response = await asyncio.wait_for(
                with_retry(
                    lambda: self._call(chunks, context, timeout),
                    max_attempts=cfg.ner_max_attempts,
                    base_delay=cfg.ner_retry_base_delay_seconds,
                    sleep=self._sleep,
                    stats=stats,
                ),
                timeout=timeout,
            )
        except Exception as exc:
            raise ExternalServiceError(
                f"Batch NER API error: {str(exc) or type(exc).__name__}"
            ) from exc
        return parse_batch_response(response, chunks)

    async def extract_batch(
        self,
        chunks: list[ChunkInput],
        context: ExtractionContext,
        stats: RetryStats | None = None,
    ) -> dict[str, EntityResult]:
        """Extract results for every chunk with one model call.

        Args:
            chunks: Chunks to analyse; each text is cut to the configured limit.
            context: Account, rep and call type for the prompt.
            stats: Optional retry counters.

        Returns:
            A map with exactly one entry per chunk id.

        Raises:
            ExternalServiceError: The call failed after retries.
        """
        if not chunks:
            return {}
        return await self._extract(chunks, context, self._settings.ner_call_timeout_seconds, stats)

    async def extract_single(
        self,
        chunk: ChunkInput,
        context: ExtractionContext,
        stats: RetryStats | None = None,
    ) -> EntityResult:
        """Single-chunk fallback with its own, tighter timeout."""
        results = await self._extract(
            [chunk], context, self._settings.ner_single_chunk_timeout_seconds, stats
        )
        return results.get(chunk.id, EntityResult.empty())
