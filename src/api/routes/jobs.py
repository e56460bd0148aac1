"""Background job endpoints: poll a job record and cancel it."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Request

from src.api.dispatcher import IndexingDispatcher, get_dispatcher
from src.api.models import JobDetail
from src.errors import AuthError, ConflictError, NotFoundError

router = APIRouter()


async def _require_admin(dispatcher: IndexingDispatcher, request: Request) -> None:
    caller = await dispatcher.guard.authenticate(request.headers, await request.body())
    if not caller.is_admin:
        raise AuthError("Only admins can manage background jobs")


def _to_detail(job: dict[str, Any]) -> JobDetail:
    return JobDetail(
        id=str(job["id"]),
        job_type=job["job_type"],
        status=job["status"],
        progress=job.get("progress"),
        error=job.get("error"),
        created_by=job.get("created_by"),
        started_at=job.get("started_at"),
        completed_at=job.get("completed_at"),
        updated_at=job.get("updated_at"),
    )


@router.get("/api/jobs/{job_id}", response_model=JobDetail)
async def get_job(job_id: str, request: Request) -> JobDetail:
    """Read a job's status, progress and error for polling."""
    dispatcher = get_dispatcher()
    await _require_admin(dispatcher, request)
    job = await dispatcher.store.get_job(job_id)
    if job is None:
        raise NotFoundError("Job not found")
    return _to_detail(job)


@router.post("/api/jobs/{job_id}/cancel", response_model=JobDetail)
async def cancel_job(job_id: str, request: Request) -> JobDetail:
    """Mark an active job cancelled; the job stops before its next unit of work."""
    dispatcher = get_dispatcher()
    await _require_admin(dispatcher, request)
    job = await dispatcher.store.get_job(job_id)
    if job is None:
        raise NotFoundError("Job not found")
    if not await dispatcher.store.cancel_job(job_id):
        raise ConflictError(f"Job is already {job['status']}", job_id=job_id)
    return _to_detail(await dispatcher.store.get_job(job_id) or job)
