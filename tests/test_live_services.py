"""Live checks against the embedding and extraction providers.

# MANUAL RUN REQUIRED: set OPENAI_API_KEY and ANTHROPIC_API_KEY, then run:
#   pytest -m expensive tests/test_live_services.py -v
"""

from __future__ import annotations

import asyncio

import pytest

from src.config import settings
from src.extraction.extractor import EntityExtractor
from src.extraction.models import ChunkInput, ExtractionContext
from src.ingestion.embeddings import EmbeddingClient
from src.ingestion.models import FrameworkElement, Topic

SAMPLE_CHUNKS = [
    ChunkInput(
        id="c1",
        text=(
            "Rep: Thanks for making time, Dana. Last call you mentioned the Denver rollout.\n"
            "Dana: Right, our CFO Mark Chen signed off on a budget of about $120,000 for Q3."
        ),
    ),
    ChunkInput(
        id="c2",
        text=(
            "Dana: Our main worry is the integration with Salesforce.\n"
            "Rep: Understood. Next step is a technical deep dive with your IT lead on Friday."
        ),
    ),
]

needs_openai = pytest.mark.skipif(not settings.openai_api_key, reason="OPENAI_API_KEY not set")
needs_anthropic = pytest.mark.skipif(
    not settings.anthropic_api_key, reason="ANTHROPIC_API_KEY not set"
)


@pytest.mark.expensive
@needs_openai
def test_live_embedding_dimension() -> None:
    client = EmbeddingClient(settings.openai_api_key)

    vector = asyncio.run(client.embed(SAMPLE_CHUNKS[0].text))

    assert len(vector) == 1536
    assert any(v != 0 for v in vector)


@pytest.mark.expensive
@needs_anthropic
def test_live_batch_extraction_covers_every_chunk() -> None:
    extractor = EntityExtractor(settings.anthropic_api_key)
    context = ExtractionContext(account_name="Northwind", rep_name="Riley Rep", call_type="discovery")

    results = asyncio.run(extractor.extract_batch(SAMPLE_CHUNKS, context))

    assert set(results) == {"c1", "c2"}
    known_topics = {t.value for t in Topic}
    known_elements = {f.value for f in FrameworkElement}
    for result in results.values():
        assert set(result.topics) <= known_topics
        assert set(result.framework_elements) <= known_elements
    # The first chunk names a person and a budget; the model should pick up at least one.
    assert not results["c1"].is_empty()
