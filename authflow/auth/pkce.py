"""
PKCE record storage and authorization request construction.

The record ``{state, nonce, code_verifier, created_at}`` of the single
in-flight authorization attempt is written to the session storage before the
authorization URL is handed to the caller, so a callback can never arrive for
a state that has not been stored yet.
"""

import logging
import secrets
import time
from enum import Enum
from typing import Optional, Tuple

from pydantic import ValidationError

from authflow.auth.crypto import (
    STATE_BYTES,
    RandomSource,
    code_challenge_s256,
    generate_code_verifier,
    random_string,
)
from authflow.auth.storage import Clock, SessionStorage
from authflow.config import Settings, ensure_client_configuration
from authflow.models import AuthorizationRequest, PkceRecord

logger = logging.getLogger(__name__)


PKCE_STORAGE_KEY = "pkce"
DEFAULT_MAX_AGE = 600


def scope_requests_openid(scope: str) -> bool:
    return "openid" in scope.split()


# =============================================================================
# PKCE Session Store
# =============================================================================

class PkceLookup(str, Enum):
    FOUND = "found"
    MISSING = "missing"
    EXPIRED = "expired"


class PkceSessionStore:
    """
    Holds at most one pending PKCE record per session.

    ``put`` overwrites any unconsumed record. Records older than ``max_age``
    seconds are reported as expired by ``inspect`` and as absent by ``get``.
    """

    def __init__(
        self,
        storage: SessionStorage,
        *,
        max_age: int = DEFAULT_MAX_AGE,
        clock: Clock = time.time,
    ):
        self._storage = storage
        self._max_age = max_age
        self._clock = clock

    @property
    def max_age(self) -> int:
        return self._max_age

    def put(self, record: PkceRecord) -> None:
        # Storage TTL is a backstop; expiry is decided from created_at below.
        self._storage.set(
            PKCE_STORAGE_KEY,
            record.model_dump(mode="json"),
            ttl=self._max_age * 2,
        )

    def inspect(self) -> Tuple[PkceLookup, Optional[PkceRecord]]:
        """
        Look up the pending record and classify it.

        Returns:
            (FOUND, record), (EXPIRED, record) or (MISSING, None)
        """
        raw = self._storage.get(PKCE_STORAGE_KEY)
        if raw is None:
            return PkceLookup.MISSING, None

        try:
            record = PkceRecord.model_validate(raw)
        except ValidationError:
            logger.warning("Discarding unreadable PKCE record")
            self.clear()
            return PkceLookup.MISSING, None

        if self._clock() - record.created_at > self._max_age:
            return PkceLookup.EXPIRED, record

        return PkceLookup.FOUND, record

    def get(self) -> Optional[PkceRecord]:
        status, record = self.inspect()
        return record if status is PkceLookup.FOUND else None

    def clear(self) -> None:
        self._storage.delete(PKCE_STORAGE_KEY)


# =============================================================================
# Authorization Request Builder
# =============================================================================

class AuthorizationRequestBuilder:
    """
    Builds provider authorization requests bound to a fresh PKCE record.

    Raises:
        ConfigurationError: At construction, when client_id, redirect_uri or
            base_url is missing or invalid.
    """

    def __init__(
        self,
        settings: Settings,
        store: PkceSessionStore,
        *,
        clock: Clock = time.time,
        token_bytes: RandomSource = secrets.token_bytes,
    ):
        ensure_client_configuration(settings)
        self._settings = settings
        self._store = store
        self._clock = clock
        self._token_bytes = token_bytes

    @property
    def authorization_endpoint(self) -> str:
        return self._settings.authorization_endpoint

    def begin(
        self,
        scope: Optional[str] = None,
        existing_state: Optional[str] = None,
        existing_nonce: Optional[str] = None,
    ) -> Tuple[AuthorizationRequest, PkceRecord]:
        """
        Generate state, nonce and code verifier, persist them, build the request.

        Args:
            scope: Space separated scopes (defaults to the configured scope)
            existing_state: Use this state instead of generating one
            existing_nonce: Use this nonce instead of generating one

        Returns:
            The authorization request and the stored PKCE record
        """
        scope = " ".join((scope or self._settings.OIDC_SCOPE).split())
        wants_nonce = scope_requests_openid(scope)

        code_verifier = generate_code_verifier(self._token_bytes)
        state = existing_state or random_string(STATE_BYTES, self._token_bytes)
        nonce = None
        if wants_nonce:
            nonce = existing_nonce or random_string(STATE_BYTES, self._token_bytes)

        record = PkceRecord(
            state=state,
            nonce=nonce,
            code_verifier=code_verifier,
            created_at=self._clock(),
        )

        # Must complete before the URL leaves this method
        self._store.put(record)

        request = AuthorizationRequest(
            client_id=self._settings.OIDC_CLIENT_ID,
            redirect_uri=self._settings.OIDC_REDIRECT_URI,
            scope=scope,
            state=state,
            code_challenge=code_challenge_s256(code_verifier),
            nonce=nonce,
        )

        logger.info(
            "Authorization request created",
            extra={"scope": scope, "has_nonce": nonce is not None},
        )

        return request, record

    def build_url(self, request: AuthorizationRequest) -> str:
        return request.to_url(self.authorization_endpoint)
