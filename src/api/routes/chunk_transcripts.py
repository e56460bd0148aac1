"""Indexing endpoint: one entry point, mode chosen by the request body."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Request

from src.api.dispatcher import get_dispatcher

router = APIRouter()


@router.post("/api/chunk-transcripts")
async def chunk_transcripts(request: Request) -> dict[str, Any]:
    """Index transcripts, run a backfill batch, start a job, or reset chunks.

    The raw body is read before parsing because signed requests are verified
    against the exact bytes that were sent.
    """
    raw_body = await request.body()
    result = await get_dispatcher().handle(request.headers, raw_body)
    return result.model_dump(exclude_none=True)
