"""Caller authentication and transcript-level authorization."""

from __future__ import annotations

import hmac
import logging
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from enum import Enum

from src.config import Settings, settings as default_settings
from src.errors import AuthError
from src.ingestion.models import Role
from src.ingestion.storage import SupabaseStore
from src.security.signing import NonceCache, has_signature_headers, verify_signed_request

logger = logging.getLogger(__name__)

SERVICE_CALLER_ID = "service"


class AuthMethod(str, Enum):
    SIGNED = "signed"
    LEGACY_SECRET = "legacy_secret"
    USER_TOKEN = "user_token"


@dataclass(frozen=True)
class Caller:
    """Resolved identity of the requester."""

    user_id: str
    role: Role
    auth_method: AuthMethod

    @property
    def is_admin(self) -> bool:
        return self.role is Role.ADMIN

    @property
    def is_service(self) -> bool:
        return self.auth_method is not AuthMethod.USER_TOKEN


def _bearer_token(headers: Mapping[str, str]) -> str | None:
    value = headers.get("authorization") or headers.get("Authorization")
    if not value:
        return None
    scheme, _, token = value.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


class RequestGuard:
    """Resolves callers and scopes which transcripts they may act on."""

    def __init__(
        self,
        store: SupabaseStore,
        settings: Settings = default_settings,
        nonce_cache: NonceCache | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._store = store
        self._settings = settings
        self._clock = clock
        self._nonce_cache = nonce_cache or NonceCache(
            ttl_seconds=settings.signature_max_age_seconds + settings.signature_max_skew_seconds
        )

    async def authenticate(self, headers: Mapping[str, str], raw_body: bytes) -> Caller:
        """Resolve the caller from request headers.

        Order: signed service call, legacy shared secret, end-user token.

        Raises:
            AuthError: 401 when credentials are missing or unknown, 403 for a
                bad signature or a user without a role.
        """
        cfg = self._settings

        if has_signature_headers(headers):
            try:
                verify_signed_request(
                    headers,
                    raw_body,
                    cfg.signing_secret,
                    now_ms=int(self._clock() * 1000),
                    max_age_seconds=cfg.signature_max_age_seconds,
                    max_skew_seconds=cfg.signature_max_skew_seconds,
                    nonce_cache=self._nonce_cache,
                )
            except AuthError as exc:
                logger.warning("Rejected signed request: %s", exc.message)
                raise
            logger.info("Signed service call accepted")
            return Caller(SERVICE_CALLER_ID, Role.ADMIN, AuthMethod.SIGNED)

        token = _bearer_token(headers)
        if token is None:
            raise AuthError("Authorization required", status_code=401)

        if cfg.supabase_key and hmac.compare_digest(
            token.encode("utf-8"), cfg.supabase_key.encode("utf-8")
        ):
            logger.warning(
                "Legacy shared-secret authentication used; switch the caller to signed requests"
            )
            return Caller(SERVICE_CALLER_ID, Role.ADMIN, AuthMethod.LEGACY_SECRET)

        user_id = await self._store.get_user_id(token)
        if user_id is None:
            raise AuthError("Invalid authentication", status_code=401)

        role_value = await self._store.get_user_role(user_id)
        try:
            role = Role(role_value)
        except ValueError as exc:
            raise AuthError("Authentication required") from exc
        return Caller(user_id, role, AuthMethod.USER_TOKEN)

    async def authorize_transcripts(self, caller: Caller, ids: list[str]) -> list[str]:
        """Return the subset of *ids* the caller may index, in request order.

        Raises:
            AuthError: The caller is a manager without a team.
        """
        if caller.is_admin:
            logger.info("Admin %s authorized for all %d transcripts", caller.user_id, len(ids))
            return list(ids)

        owners = await self._store.get_transcript_owners(ids)

        if caller.role is Role.MANAGER:
            team_id = await self._store.get_manager_team_id(caller.user_id)
            if team_id is None:
                raise AuthError("No team assigned. Please contact an administrator.")
            team_reps = await self._store.get_team_rep_ids(team_id)
            allowed = [i for i in ids if owners.get(i) in team_reps]
            logger.info(
                "Manager %s authorized for %d team transcripts", caller.user_id, len(allowed)
            )
            return allowed

        allowed = [i for i in ids if owners.get(i) == caller.user_id]
        logger.info("Rep %s authorized for %d own transcripts", caller.user_id, len(allowed))
        return allowed

    @staticmethod
    def require_admin(caller: Caller, action: str) -> None:
        if not caller.is_admin:
            raise AuthError(f"Only admins can use {action} mode")
