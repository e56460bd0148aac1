"""Supabase storage for transcripts, chunks and background jobs."""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime, timezone
from typing import Any, cast

from postgrest import CountMethod
from postgrest.exceptions import APIError
from supabase import AsyncClient, AuthApiError, acreate_client

from src.config import settings
from src.errors import ConflictError, PersistenceError, ValidationError
from src.extraction.models import EntityResult
from src.ingestion.embeddings import to_pgvector
from src.ingestion.models import ACTIVE_JOB_STATUSES, ExtractionStatus, JobStatus, JobType

logger = logging.getLogger(__name__)

CHUNKS = "transcript_chunks"
JOBS = "background_jobs"
TRANSCRIPTS = "call_transcripts"

# Sentinel used to build "match every row" deletes
NIL_UUID = "00000000-0000-0000-0000-000000000000"

INDEXABLE_ANALYSIS_STATUSES = ["completed", "skipped"]
UNIQUE_VIOLATION = "23505"

# Rows per request when reading whole tables; must not exceed the API max-rows
# setting or a short page ends the scan early.
PAGE_SIZE = 1000
# Ids per IN filter, to keep request URLs bounded
ID_GROUP_SIZE = 200


def utcnow() -> str:
    return datetime.now(timezone.utc).isoformat()


def _rows(result: Any) -> list[dict[str, Any]]:
    # Supabase .data is typed as JSON (broad union); cast to concrete type.
    return cast(list[dict[str, Any]], result.data or [])


class SupabaseStore:
    """Async store over the hosted Postgres tables used by the pipeline.

    The client is created lazily on first use so constructing the store never
    touches the network.
    """

    def __init__(self, url: str = "", key: str = "", client: AsyncClient | None = None) -> None:
        self._url = url or settings.supabase_url
        self._key = key or settings.supabase_key
        self._client = client

    async def client(self) -> AsyncClient:
        if self._client is None:
            self._client = await acreate_client(self._url, self._key)
        return self._client

    # ------------------------------------------------------------------
    # Identity
    # ------------------------------------------------------------------

    async def get_user_id(self, token: str) -> str | None:
        client = await self.client()
        try:
            response = await client.auth.get_user(token)
        except AuthApiError as exc:
            logger.info("Token rejected by identity store: %s", exc.message)
            return None
        if response is None or response.user is None:
            return None
        return str(response.user.id)

    async def get_user_role(self, user_id: str) -> str | None:
        client = await self.client()
        result = (
            await client.table("user_roles").select("role").eq("user_id", user_id).limit(1).execute()
        )
        rows = _rows(result)
        return rows[0]["role"] if rows else None

    async def get_manager_team_id(self, user_id: str) -> str | None:
        client = await self.client()
        result = await client.table("teams").select("id").eq("manager_id", user_id).limit(1).execute()
        rows = _rows(result)
        return str(rows[0]["id"]) if rows else None

    async def get_team_rep_ids(self, team_id: str) -> set[str]:
        client = await self.client()
        result = await client.table("profiles").select("id").eq("team_id", team_id).execute()
        return {str(r["id"]) for r in _rows(result)}

    async def get_rep_names(self, rep_ids: list[str]) -> dict[str, str]:
        if not rep_ids:
            return {}
        client = await self.client()
        result = await client.table("profiles").select("id, name").in_("id", rep_ids).execute()
        return {str(r["id"]): r.get("name") or "Unknown" for r in _rows(result)}

    # ------------------------------------------------------------------
    # Transcripts
    # ------------------------------------------------------------------

    async def get_transcript_owners(self, ids: list[str]) -> dict[str, str]:
        if not ids:
            return {}
        client = await self.client()
        result = await client.table(TRANSCRIPTS).select("id, rep_id").in_("id", ids).execute()
        return {str(r["id"]): str(r["rep_id"]) for r in _rows(result)}

    async def _select_all(self, build: Callable[[AsyncClient], Any]) -> list[dict[str, Any]]:
        """Run the query from *build* page by page until a short page comes back.

        *build* must return a fresh, ordered query each call.
        """
        client = await self.client()
        rows: list[dict[str, Any]] = []
        start = 0
        while True:
            result = await build(client).range(start, start + PAGE_SIZE - 1).execute()
            page = _rows(result)
            rows.extend(page)
            if len(page) < PAGE_SIZE:
                return rows
            start += PAGE_SIZE

    async def list_indexable_transcript_ids(self) -> list[str]:
        rows = await self._select_all(
            lambda client: client.table(TRANSCRIPTS)
            .select("id")
            .in_("analysis_status", INDEXABLE_ANALYSIS_STATUSES)
            .is_("deleted_at", "null")
            .order("id")
        )
        return [str(r["id"]) for r in rows]

    async def fetch_transcripts(self, ids: list[str]) -> list[dict[str, Any]]:
        if not ids:
            return []
        client = await self.client()
        result = (
            await client.table(TRANSCRIPTS)
            .select("id, call_date, account_name, call_type, raw_text, rep_id")
            .in_("id", ids)
            .execute()
        )
        return _rows(result)

    async def get_chunked_transcript_ids(self, ids: list[str]) -> set[str]:
        chunked: set[str] = set()
        for i in range(0, len(ids), ID_GROUP_SIZE):
            group = ids[i : i + ID_GROUP_SIZE]
            # One row per chunk, so even a small group can exceed a page.
            rows = await self._select_all(
                lambda client, group=group: client.table(CHUNKS)
                .select("transcript_id")
                .in_("transcript_id", group)
                .order("id")
            )
            chunked.update(str(r["transcript_id"]) for r in rows)
        return chunked

    # ------------------------------------------------------------------
    # Chunks
    # ------------------------------------------------------------------

    async def upsert_chunks(self, rows: list[dict[str, Any]]) -> list[str]:
        """Insert chunks, ignoring rows whose (transcript_id, chunk_index) exists.

        Returns:
            Ids of the rows actually inserted.
        """
        if not rows:
            return []
        client = await self.client()
        try:
            result = (
                await client.table(CHUNKS)
                .upsert(rows, on_conflict="transcript_id,chunk_index", ignore_duplicates=True)
                .execute()
            )
        except APIError as exc:
            raise PersistenceError(f"Failed to insert chunks: {exc.message}") from exc
        return [str(r["id"]) for r in _rows(result)]

    async def count_chunks(self) -> int:
        client = await self.client()
        result = await client.table(CHUNKS).select("*", count=CountMethod.exact, head=True).execute()
        return result.count or 0

    async def delete_all_chunks(self) -> int:
        client = await self.client()
        before = await self.count_chunks()
        try:
            await client.table(CHUNKS).delete().neq("id", NIL_UUID).execute()
        except APIError as exc:
            raise PersistenceError(f"Failed to delete chunks: {exc.message}") from exc
        return before

    async def fetch_chunks_missing_embedding(
        self, limit: int, exclude_ids: list[str] | None = None
    ) -> list[dict[str, Any]]:
        client = await self.client()
        query = client.table(CHUNKS).select("id, chunk_text").is_("embedding", "null")
        if exclude_ids:
            query = query.not_.in_("id", exclude_ids)
        result = await query.order("id").limit(limit).execute()
        return _rows(result)

    async def fetch_chunks_by_ids(self, chunk_ids: list[str]) -> list[dict[str, Any]]:
        if not chunk_ids:
            return []
        client = await self.client()
        result = (
            await client.table(CHUNKS)
            .select("id, chunk_text, metadata, transcript_id")
            .in_("id", chunk_ids)
            .order("chunk_index")
            .execute()
        )
        return _rows(result)

    async def save_embedding(self, chunk_id: str, vector: list[float]) -> None:
        client = await self.client()
        try:
            await client.table(CHUNKS).update({"embedding": to_pgvector(vector)}).eq("id", chunk_id).execute()
        except APIError as exc:
            raise PersistenceError(f"Failed to save embedding for {chunk_id}: {exc.message}") from exc

    async def count_chunks_with_embedding(self) -> int:
        client = await self.client()
        result = (
            await client.table(CHUNKS)
            .select("*", count=CountMethod.exact, head=True)
            .not_.is_("embedding", "null")
            .execute()
        )
        return result.count or 0

    async def fetch_chunks_pending_extraction(
        self, limit: int, exclude_ids: list[str] | None = None
    ) -> list[dict[str, Any]]:
        client = await self.client()
        query = (
            client.table(CHUNKS)
            .select("id, chunk_text, metadata, transcript_id")
            .in_("extraction_status", [ExtractionStatus.PENDING.value, ExtractionStatus.FAILED.value])
        )
        if exclude_ids:
            query = query.not_.in_("id", exclude_ids)
        result = await query.order("id").limit(limit).execute()
        return _rows(result)

    async def save_entities(self, chunk_id: str, entity_result: EntityResult) -> None:
        client = await self.client()
        try:
            await (
                client.table(CHUNKS)
                .update(
                    {
                        "entities": entity_result.entities,
                        "topics": entity_result.topics,
                        "framework_elements": entity_result.framework_elements,
                        "extraction_status": ExtractionStatus.COMPLETED.value,
                    }
                )
                .eq("id", chunk_id)
                .execute()
            )
        except APIError as exc:
            raise PersistenceError(f"Failed to save entities for {chunk_id}: {exc.message}") from exc

    async def mark_extraction_failed(self, chunk_ids: list[str]) -> None:
        if not chunk_ids:
            return
        client = await self.client()
        try:
            await (
                client.table(CHUNKS)
                .update({"extraction_status": ExtractionStatus.FAILED.value})
                .in_("id", chunk_ids)
                .execute()
            )
        except APIError as exc:
            raise PersistenceError(f"Failed to mark extraction failed: {exc.message}") from exc

    async def count_chunks_extracted(self) -> int:
        client = await self.client()
        result = (
            await client.table(CHUNKS)
            .select("*", count=CountMethod.exact, head=True)
            .eq("extraction_status", ExtractionStatus.COMPLETED.value)
            .execute()
        )
        return result.count or 0

    # ------------------------------------------------------------------
    # Background jobs
    # ------------------------------------------------------------------

    async def find_active_job(self, job_type: JobType) -> dict[str, Any] | None:
        client = await self.client()
        result = (
            await client.table(JOBS)
            .select("*")
            .eq("job_type", job_type.value)
            .in_("status", [s.value for s in ACTIVE_JOB_STATUSES])
            .limit(1)
            .execute()
        )
        rows = _rows(result)
        return rows[0] if rows else None

    async def create_job(
        self, job_type: JobType, created_by: str, job_id: str | None = None
    ) -> str:
        """Create a job in ``processing``, or promote a pre-created record.

        A pre-created record is promoted only while it is still active and of
        the same type; an unknown ``job_id`` is inserted with that id.

        Raises:
            ValidationError: ``job_id`` names a finished job or one of another type.
            ConflictError: The insert hit the one-active-job-per-type index.
        """
        client = await self.client()
        now = utcnow()
        fields = {
            "status": JobStatus.PROCESSING.value,
            "started_at": now,
            "updated_at": now,
            "progress": {"message": "Starting"},
        }
        try:
            if job_id:
                result = (
                    await client.table(JOBS)
                    .update(fields)
                    .eq("id", job_id)
                    .eq("job_type", job_type.value)
                    .in_("status", [s.value for s in ACTIVE_JOB_STATUSES])
                    .execute()
                )
                if _rows(result):
                    return job_id
                existing = await self.get_job(job_id)
                if existing is not None:
                    raise ValidationError(
                        f"Job {job_id} is {existing['status']} {existing['job_type']}, "
                        f"not an active {job_type.value} job"
                    )
            row = {"job_type": job_type.value, "created_by": created_by, **fields}
            if job_id:
                row["id"] = job_id
            result = await client.table(JOBS).insert(row).execute()
        except APIError as exc:
            if exc.code == UNIQUE_VIOLATION:
                raise ConflictError(f"A {job_type.value} job is already running") from exc
            raise PersistenceError(f"Failed to create job: {exc.message}") from exc
        return str(_rows(result)[0]["id"])

    async def get_job(self, job_id: str) -> dict[str, Any] | None:
        client = await self.client()
        result = await client.table(JOBS).select("*").eq("id", job_id).limit(1).execute()
        rows = _rows(result)
        return rows[0] if rows else None

    async def get_job_status(self, job_id: str) -> JobStatus | None:
        client = await self.client()
        result = await client.table(JOBS).select("status").eq("id", job_id).limit(1).execute()
        rows = _rows(result)
        return JobStatus(rows[0]["status"]) if rows else None

    async def update_job(self, job_id: str, **fields: Any) -> None:
        client = await self.client()
        fields["updated_at"] = utcnow()
        try:
            await client.table(JOBS).update(fields).eq("id", job_id).execute()
        except APIError as exc:
            raise PersistenceError(f"Failed to update job {job_id}: {exc.message}") from exc

    async def cancel_job(self, job_id: str) -> bool:
        """Cancel an active job. Returns False if it was not active."""
        client = await self.client()
        now = utcnow()
        result = (
            await client.table(JOBS)
            .update({"status": JobStatus.CANCELLED.value, "completed_at": now, "updated_at": now})
            .eq("id", job_id)
            .in_("status", [s.value for s in ACTIVE_JOB_STATUSES])
            .execute()
        )
        return bool(_rows(result))
