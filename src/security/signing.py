"""HMAC-SHA256 request signing for service-to-service calls.

The signed payload is ``{timestamp}.{nonce}.{body}`` where the timestamp is
epoch milliseconds. Signatures are lowercase hex digests.
"""

from __future__ import annotations

import hashlib
import hmac
import threading
import time
import uuid
from collections.abc import Mapping

from src.errors import AuthError

SIGNATURE_HEADER = "X-Request-Signature"
TIMESTAMP_HEADER = "X-Request-Timestamp"
NONCE_HEADER = "X-Request-Nonce"
SIGNATURE_HEADERS = (SIGNATURE_HEADER, TIMESTAMP_HEADER, NONCE_HEADER)

SECRET_LENGTH = 32


def derive_signing_secret(service_key: str) -> str:
    """The HMAC secret is the first 32 characters of the service key."""
    return service_key[:SECRET_LENGTH]


def compute_signature(payload: str | bytes, secret: str) -> str:
    data = payload.encode("utf-8") if isinstance(payload, str) else payload
    return hmac.new(secret.encode("utf-8"), data, hashlib.sha256).hexdigest()


def _signed_payload(timestamp: str, nonce: str, body: bytes) -> bytes:
    return f"{timestamp}.{nonce}.".encode("utf-8") + body


def sign_request(
    body: str | bytes,
    secret: str,
    now_ms: int | None = None,
    nonce: str | None = None,
) -> dict[str, str]:
    """Return the three signature headers for *body*."""
    raw = body.encode("utf-8") if isinstance(body, str) else body
    timestamp = str(now_ms if now_ms is not None else int(time.time() * 1000))
    nonce = nonce or str(uuid.uuid4())
    return {
        SIGNATURE_HEADER: compute_signature(_signed_payload(timestamp, nonce, raw), secret),
        TIMESTAMP_HEADER: timestamp,
        NONCE_HEADER: nonce,
    }


def has_signature_headers(headers: Mapping[str, str]) -> bool:
    return any(headers.get(h) is not None for h in SIGNATURE_HEADERS)


class NonceCache:
    """Remembers nonces for their validity window to reject replays.

    Per-process only; a multi-instance deployment needs a shared store.
    """

    def __init__(self, ttl_seconds: float, clock=time.monotonic) -> None:
        self._ttl = ttl_seconds
        self._clock = clock
        self._seen: dict[str, float] = {}
        self._lock = threading.Lock()

    def _purge(self, now: float) -> None:
        expired = [n for n, expiry in self._seen.items() if expiry <= now]
        for nonce in expired:
            del self._seen[nonce]

    def check_and_store(self, nonce: str) -> bool:
        """Record *nonce*; return False if it was already seen and not expired."""
        with self._lock:
            now = self._clock()
            self._purge(now)
            if nonce in self._seen:
                return False
            self._seen[nonce] = now + self._ttl
            return True


def verify_signed_request(
    headers: Mapping[str, str],
    body: bytes,
    secret: str,
    now_ms: int | None = None,
    max_age_seconds: int = 300,
    max_skew_seconds: int = 60,
    nonce_cache: NonceCache | None = None,
) -> None:
    """Validate the signature headers against *body*.

    Raises:
        AuthError: No secret is configured, a header is missing, the
            timestamp is malformed, too old or too far in the future, the
            signature does not match, or the nonce was already used.
    """
    if not secret:
        raise AuthError("Invalid request signature: request signing is not configured")

    signature = headers.get(SIGNATURE_HEADER)
    timestamp = headers.get(TIMESTAMP_HEADER)
    nonce = headers.get(NONCE_HEADER)

    if not signature or not timestamp or not nonce:
        raise AuthError("Invalid request signature: missing signature headers")

    try:
        request_ms = int(timestamp)
    except ValueError as exc:
        raise AuthError("Invalid request signature: invalid timestamp format") from exc

    now_ms = now_ms if now_ms is not None else int(time.time() * 1000)
    if now_ms - request_ms > max_age_seconds * 1000:
        raise AuthError("Invalid request signature: request expired")
    if request_ms - now_ms > max_skew_seconds * 1000:
        raise AuthError("Invalid request signature: timestamp in future")

    expected = compute_signature(_signed_payload(timestamp, nonce, body), secret)
    if not hmac.compare_digest(signature.encode("utf-8"), expected.encode("utf-8")):
        raise AuthError("Invalid request signature")

    if nonce_cache is not None and not nonce_cache.check_and_store(nonce):
        raise AuthError("Invalid request signature: nonce already used")
