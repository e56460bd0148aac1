import logging
import uuid
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from src.api.dispatcher import get_dispatcher
from src.api.routes.chunk_transcripts import router as chunk_transcripts_router
from src.api.routes.jobs import router as jobs_router
from src.config import settings
from src.errors import ConflictError, IndexingError, RateLimitError

logging.basicConfig(
    level=settings.log_level.upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    yield
    # Only shut down a runner that was actually built during this process.
    if get_dispatcher.cache_info().currsize:
        await get_dispatcher().runner.shutdown()


app = FastAPI(
    title="Transcript Indexing API",
    description="Chunking, embedding and entity extraction for call transcripts",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_origin_regex=settings.cors_origin_regex,
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(chunk_transcripts_router)
app.include_router(jobs_router)


@app.exception_handler(IndexingError)
async def indexing_error_handler(request: Request, exc: IndexingError) -> JSONResponse:
    body: dict[str, str] = {"error": exc.message}
    headers: dict[str, str] = {}
    if isinstance(exc, RateLimitError):
        headers["Retry-After"] = str(exc.retry_after_seconds)
    if isinstance(exc, ConflictError) and exc.job_id:
        body["job_id"] = exc.job_id
    if exc.status_code >= 500:
        request_id = str(uuid.uuid4())
        body["requestId"] = request_id
        logger.error(
            "%s on %s [%s]: %s", type(exc).__name__, request.url.path, request_id, exc.message
        )
    return JSONResponse(status_code=exc.status_code, content=body, headers=headers)


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    request_id = str(uuid.uuid4())
    logger.exception("Unhandled error on %s [%s]", request.url.path, request_id)
    return JSONResponse(
        status_code=500,
        content={"error": str(exc) or "Internal server error", "requestId": request_id},
    )


@app.get("/health")
async def health() -> dict[str, str]:
    return {"status": "healthy"}
