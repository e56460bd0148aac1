"""Speaker-aware recursive chunking for call transcripts.

Sections are split on speaker turns first, then paragraphs, then sentences,
and greedily merged into overlapping chunks. The output is a pure function of
the input so re-indexing a transcript always yields the same chunk sequence.
"""

from __future__ import annotations

import re

CHUNK_SIZE = 2000
CHUNK_OVERLAP = 200

SPEAKER_PATTERN = re.compile(r"(?=\n\n(?:REP|PROSPECT):)", re.IGNORECASE)
PARAGRAPH_PATTERN = re.compile(r"\n\n+")
SENTENCE_PATTERN = re.compile(r"(?<=[.!?])\s+")

_SEPARATOR = "\n\n"


def _split_oversized(sections: list[str], pattern: re.Pattern[str], max_size: float) -> list[str]:
    """Split every section longer than *max_size* on *pattern*.

    A section that the pattern cannot break apart is kept whole.
    """
    result: list[str] = []
    for section in sections:
        if len(section) <= max_size:
            result.append(section)
            continue
        parts = [p for p in pattern.split(section) if p.strip()]
        if len(parts) <= 1:
            result.append(section)
        else:
            result.extend(parts)
    return result


def _merge_with_overlap(sections: list[str], chunk_size: int, overlap: int) -> list[str]:
    chunks: list[str] = []
    buffer = ""

    for section in sections:
        trimmed = section.strip()
        if not trimmed:
            continue

        combined = len(buffer) + (len(_SEPARATOR) if buffer else 0) + len(trimmed)
        if combined <= chunk_size:
            buffer = f"{buffer}{_SEPARATOR}{trimmed}" if buffer else trimmed
            continue

        if buffer:
            chunks.append(buffer.strip())
        if len(buffer) > overlap:
            buffer = buffer[-overlap:].strip() + _SEPARATOR + trimmed
        else:
            buffer = trimmed

        # Hard-slice anything that still does not fit, keeping a trailing overlap
        while len(buffer) > chunk_size:
            chunks.append(buffer[:chunk_size].strip())
            buffer = buffer[chunk_size - overlap : chunk_size] + buffer[chunk_size:]

    if buffer.strip():
        chunks.append(buffer.strip())

    return [c for c in chunks if c]


def chunk_text(
    text: str,
    chunk_size: int = CHUNK_SIZE,
    overlap: int = CHUNK_OVERLAP,
) -> list[str]:
    """Split a transcript into ordered, overlapping chunks.

    Args:
        text: Raw transcript text, speaker turns marked ``REP:`` / ``PROSPECT:``.
        chunk_size: Target maximum characters per chunk.
        overlap: Characters carried from the end of one chunk into the next.

    Returns:
        Non-empty chunk strings in original text order.
    """
    if not text or not text.strip():
        return []

    max_section = chunk_size * 1.5

    sections = [s for s in SPEAKER_PATTERN.split(text) if s.strip()]
    sections = _split_oversized(sections, PARAGRAPH_PATTERN, max_section)
    sections = _split_oversized(sections, SENTENCE_PATTERN, max_section)

    return _merge_with_overlap(sections, chunk_size, overlap)
