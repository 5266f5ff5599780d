"""
Authenticated session lifecycle.

The session record ``{user, access_token, refresh_token, expires_at,
authenticated_at}`` is written and removed as a whole. Expiry is checked
lazily: when a caller asks whether the user is authenticated and the access
token has expired, the stored refresh token is used once; if that fails the
record is discarded.
"""

import asyncio
import logging
import time
from enum import Enum
from typing import Optional

from pydantic import ValidationError

from authflow.auth.client import TokenExchangeClient
from authflow.auth.pkce import PkceSessionStore
from authflow.auth.storage import Clock, SessionStorage
from authflow.models import AuthSessionRecord, RefreshResult, TokenResponse, VerifiedClaims

logger = logging.getLogger(__name__)


SESSION_STORAGE_KEY = "user_session"


class SessionState(str, Enum):
    UNAUTHENTICATED = "unauthenticated"
    AUTHENTICATED = "authenticated"
    EXPIRING = "expiring"


def _expires_at(token_response: TokenResponse, now: float) -> Optional[float]:
    if token_response.expires_in is None:
        return None
    return now + token_response.expires_in


class AuthSession:
    """
    Authenticated session state machine for one user context.

    Args:
        storage: Per-session key/value storage
        client: Token endpoint client used for refresh and revocation
        pkce_store: Pending authorization store, cleared on logout
        revoke_on_logout: Revoke access and refresh tokens on logout
        lock: Serializes refreshes; pass the lock shared by every request of
            the session, a private one only covers this instance
        clock: Returns the current time in epoch seconds
    """

    def __init__(
        self,
        storage: SessionStorage,
        client: TokenExchangeClient,
        *,
        pkce_store: Optional[PkceSessionStore] = None,
        revoke_on_logout: bool = True,
        lock: Optional[asyncio.Lock] = None,
        clock: Clock = time.time,
    ):
        self._storage = storage
        self._client = client
        self._pkce_store = pkce_store
        self._revoke_on_logout = revoke_on_logout
        self._clock = clock
        self._lock = lock if lock is not None else asyncio.Lock()

    # =========================================================================
    # Record access
    # =========================================================================

    def current(self) -> Optional[AuthSessionRecord]:
        """Return the stored record without checking expiry."""
        raw = self._storage.get(SESSION_STORAGE_KEY)
        if raw is None:
            return None
        try:
            return AuthSessionRecord.model_validate(raw)
        except ValidationError:
            logger.warning("Discarding unreadable session record")
            self._storage.delete(SESSION_STORAGE_KEY)
            return None

    def _save(self, record: AuthSessionRecord) -> None:
        self._storage.set(SESSION_STORAGE_KEY, record.model_dump(mode="json"))

    @property
    def state(self) -> SessionState:
        record = self.current()
        if record is None:
            return SessionState.UNAUTHENTICATED
        if record.is_expired(self._clock()):
            return SessionState.EXPIRING
        return SessionState.AUTHENTICATED

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def establish(
        self,
        token_response: TokenResponse,
        claims: Optional[VerifiedClaims],
    ) -> AuthSessionRecord:
        """Store a fully populated record after a verified code exchange."""
        now = self._clock()
        record = AuthSessionRecord(
            user=claims,
            access_token=token_response.access_token,
            refresh_token=token_response.refresh_token,
            expires_at=_expires_at(token_response, now),
            authenticated_at=now,
        )
        self._save(record)

        logger.info(
            "Session established",
            extra={
                "sub": claims.sub if claims else None,
                "has_refresh_token": record.refresh_token is not None,
            },
        )
        return record

    async def is_authenticated(self) -> bool:
        return await self._active_record() is not None

    async def get_user_info(self) -> Optional[VerifiedClaims]:
        record = await self._active_record()
        return record.user if record else None

    async def get_access_token(self) -> Optional[str]:
        record = await self._active_record()
        return record.access_token if record else None

    async def refresh(self) -> Optional[RefreshResult]:
        """
        Refresh the access token with the session's own refresh token.

        On success the record is updated in place (``user`` is kept). On
        failure the record is left untouched and None is returned.
        """
        async with self._lock:
            record = self.current()
            if record is None:
                return None
            refreshed = await self._refresh_record(record)

        if refreshed is None:
            return None
        return RefreshResult(access_token=refreshed.access_token, expires_at=refreshed.expires_at)

    async def logout(self) -> None:
        """
        Destroy the session.

        Provider revocation is best-effort; the local session and any pending
        authorization record are always cleared.
        """
        record = self.current()

        if record is not None and self._revoke_on_logout:
            try:
                await self._client.revoke(record.access_token, "access_token")
                if record.refresh_token:
                    await self._client.revoke(record.refresh_token, "refresh_token")
            except Exception as e:
                logger.warning("Token revocation during logout failed", extra={"error": str(e)})

        self._clear()
        logger.info("User logged out successfully")

    # =========================================================================
    # Internal
    # =========================================================================

    def _clear(self) -> None:
        self._storage.delete(SESSION_STORAGE_KEY)
        if self._pkce_store is not None:
            self._pkce_store.clear()

    async def _active_record(self) -> Optional[AuthSessionRecord]:
        record = self.current()
        if record is None or not record.is_expired(self._clock()):
            return record

        async with self._lock:
            # Another caller may have refreshed while we waited
            record = self.current()
            if record is None or not record.is_expired(self._clock()):
                return record

            refreshed = await self._refresh_record(record)
            if refreshed is None:
                logger.info("Session expired and could not be refreshed")
                self._clear()
            return refreshed

    async def _refresh_record(self, record: AuthSessionRecord) -> Optional[AuthSessionRecord]:
        if not record.refresh_token:
            return None

        token_response = await self._client.refresh(record.refresh_token)
        if token_response is None:
            return None

        now = self._clock()
        updated = record.model_copy(
            update={
                "access_token": token_response.access_token,
                "refresh_token": token_response.refresh_token or record.refresh_token,
                "expires_at": _expires_at(token_response, now),
            }
        )
        self._save(updated)
        return updated
