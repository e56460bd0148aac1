"""Error taxonomy for the indexing service.

Each class carries the HTTP status the API layer renders it with.
"""

from __future__ import annotations


class IndexingError(Exception):
    """Base class for all expected service errors."""

    status_code: int = 500

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ValidationError(IndexingError):
    """Malformed or ambiguous request body."""

    status_code = 400


class AuthError(IndexingError):
    """Missing, invalid or expired credentials, or insufficient privilege."""

    status_code = 403

    def __init__(self, message: str, status_code: int = 403) -> None:
        super().__init__(message)
        self.status_code = status_code


class RateLimitError(IndexingError):
    """Caller exceeded the request window."""

    status_code = 429

    def __init__(self, retry_after_seconds: int) -> None:
        super().__init__(f"Rate limited. Try again in {retry_after_seconds} seconds.")
        self.retry_after_seconds = retry_after_seconds


class ConflictError(IndexingError):
    """A job of the same type is already active."""

    status_code = 409

    def __init__(self, message: str, job_id: str | None = None) -> None:
        super().__init__(message)
        self.job_id = job_id


class ExternalServiceError(IndexingError):
    """Embedding or language-model provider failure after retries."""

    status_code = 502


class PersistenceError(IndexingError):
    """Store write failure."""

    status_code = 500


class NotFoundError(IndexingError):
    """Referenced record does not exist."""

    status_code = 404
