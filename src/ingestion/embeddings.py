"""Embedding client for OpenAI text-embedding-3-small with throttling backoff."""

from __future__ import annotations

import asyncio
import logging
import re
from collections.abc import Awaitable, Callable
from numbers import Real
from typing import Any

import openai
from openai import AsyncOpenAI

from src.config import Settings, settings as default_settings
from src.errors import ExternalServiceError

logger = logging.getLogger(__name__)

# "Please try again in 820ms" / "Please try again in 1.5s"
RETRY_AFTER_PATTERN = re.compile(r"try again in (\d+(?:\.\d+)?)(ms|s)\b", re.IGNORECASE)

# Added on top of a provider-suggested wait
RETRY_AFTER_BUFFER_SECONDS = 0.1


def parse_retry_after(message: str) -> float | None:
    """Return the provider-suggested wait in seconds, if the message has one."""
    match = RETRY_AFTER_PATTERN.search(message)
    if not match:
        return None
    value = float(match.group(1))
    return value if match.group(2).lower() == "s" else value / 1000


def to_pgvector(vector: list[float]) -> str:
    """Format a vector as a pgvector literal: ``[0.1,-0.2,...]``."""
    return "[" + ",".join(repr(float(v)) for v in vector) + "]"


def _validate_vector(response: Any) -> list[float]:
    try:
        vector = response.data[0].embedding
    except (AttributeError, IndexError, TypeError) as exc:
        raise ExternalServiceError("Invalid embedding response format") from exc
    if (
        not isinstance(vector, list)
        or not vector
        or not all(isinstance(v, Real) and not isinstance(v, bool) for v in vector)
    ):
        raise ExternalServiceError("Invalid embedding response format")
    return [float(v) for v in vector]


class EmbeddingClient:
    """Generates one embedding per call, retrying only on throttling.

    The SDK's own retries are disabled so the wait policy below is the only
    one in effect.
    """

    def __init__(
        self,
        api_key: str,
        settings: Settings = default_settings,
        client: AsyncOpenAI | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._settings = settings
        self._client = client or AsyncOpenAI(api_key=api_key, max_retries=0)
        self._sleep = sleep

    async def embed(self, text: str) -> list[float]:
        """Embed *text*, raising ExternalServiceError once retries are exhausted."""
        cfg = self._settings
        payload = text[: cfg.embedding_max_input_chars]
        delay = cfg.embedding_initial_delay_seconds
        last_error: Exception | None = None

        for attempt in range(1, cfg.embedding_max_retries + 1):
            try:
                response = await self._client.embeddings.create(
                    model=cfg.embedding_model,
                    input=payload,
                )
            except openai.RateLimitError as exc:
                last_error = exc
                suggested = parse_retry_after(str(exc))
                if suggested is not None:
                    delay = suggested + RETRY_AFTER_BUFFER_SECONDS
                else:
                    delay = min(delay * 2, cfg.embedding_max_delay_seconds)
                logger.warning(
                    "Embedding rate limited (attempt %d/%d), waiting %.2fs",
                    attempt,
                    cfg.embedding_max_retries,
                    delay,
                )
                if attempt < cfg.embedding_max_retries:
                    await self._sleep(delay)
                continue
            except openai.APIError as exc:
                raise ExternalServiceError(f"Embedding API error: {exc}") from exc

            return _validate_vector(response)

        logger.error("Embedding generation failed after %d attempts", cfg.embedding_max_retries)
        raise ExternalServiceError(
            f"Embedding rate limit retries exhausted: {last_error}"
        ) from last_error
