"""
Authentication service facade.

``AuthService`` wires the protocol components for one user context and
exposes the operations used by the HTTP routes and by the in-process flow
orchestrator:

- begin_authorization / complete_authorization
- is_authenticated / get_user_info / logout / refresh_token
- introspect / revoke_token
- validate_id_token / parse_jwt / is_token_expired
- get_jwks / refresh_jwks
"""

import logging
from typing import Any, Dict, Optional

from authflow.auth.client import TokenExchangeClient
from authflow.auth.context import AuthContext
from authflow.auth.jwks import JwksCache
from authflow.auth.pkce import AuthorizationRequestBuilder, PkceLookup, PkceSessionStore
from authflow.auth.session import AuthSession
from authflow.auth import tokens
from authflow.auth.tokens import TokenVerifier
from authflow.config import Settings
from authflow.errors import AuthenticationError, InvalidTokenError, TokenErrorReason
from authflow.models import (
    BeginAuthorizationResult,
    CompleteAuthorizationResult,
    IntrospectionResult,
    RefreshResult,
    TokenSummary,
    VerifiedClaims,
)

logger = logging.getLogger(__name__)


class AuthService:
    """
    Per-session authentication service.

    Args:
        settings: Application settings
        context: Session storage, HTTP client, clock and random source
        jwks_cache: Key set cache shared by every session; a private one is
            created from the context when omitted
    """

    def __init__(
        self,
        settings: Settings,
        context: Optional[AuthContext] = None,
        jwks_cache: Optional[JwksCache] = None,
    ):
        self.settings = settings
        self.context = context or AuthContext()

        http_client = self.context.get_http_client()
        self.jwks = jwks_cache or JwksCache(
            settings.jwks_uri,
            http_client,
            ttl=settings.JWKS_CACHE_SECONDS,
            timeout=settings.NETWORK_TIMEOUT_SECONDS,
            clock=self.context.clock,
        )

        self.pkce_store = PkceSessionStore(
            self.context.storage,
            max_age=settings.AUTH_SESSION_MAX_AGE,
            clock=self.context.clock,
        )
        self.builder = AuthorizationRequestBuilder(
            settings,
            self.pkce_store,
            clock=self.context.clock,
            token_bytes=self.context.token_bytes,
        )
        self.client = TokenExchangeClient(settings, http_client)
        self.verifier = TokenVerifier(
            settings,
            self.jwks,
            introspector=self.client,
            clock=self.context.clock,
        )
        self.session = AuthSession(
            self.context.storage,
            self.client,
            pkce_store=self.pkce_store,
            revoke_on_logout=settings.REVOKE_TOKENS_ON_LOGOUT,
            lock=self.context.session_lock,
            clock=self.context.clock,
        )

    # =========================================================================
    # Authorization
    # =========================================================================

    def begin_authorization(
        self,
        scope: Optional[str] = None,
        state: Optional[str] = None,
        nonce: Optional[str] = None,
    ) -> BeginAuthorizationResult:
        """
        Start an authorization attempt.

        Any pending attempt of this session is replaced.

        Returns:
            Authorization URL plus the stored state and nonce
        """
        request, record = self.builder.begin(scope, existing_state=state, existing_nonce=nonce)
        return BeginAuthorizationResult(
            url=self.builder.build_url(request),
            state=record.state,
            nonce=record.nonce,
        )

    async def complete_authorization(self, code: str, state: str) -> CompleteAuthorizationResult:
        """
        Validate the callback, exchange the code and establish the session.

        Args:
            code: Authorization code from the callback
            state: State echoed by the provider

        Returns:
            Verified user claims and a summary of the issued tokens

        Raises:
            AuthenticationError: Missing, mismatched or expired authorization record
            CodeExchangeError: The provider rejected the code
            InvalidTokenError: The ID token failed verification
            KeySetFetchError: The provider keys could not be fetched
        """
        lookup, record = self.pkce_store.inspect()

        if lookup is PkceLookup.MISSING:
            logger.warning("No pending authorization for callback")
            raise AuthenticationError.invalid_state(None, state)

        if record.state != state:
            logger.warning("State parameter mismatch")
            raise AuthenticationError.invalid_state(record.state, state)

        if lookup is PkceLookup.EXPIRED:
            self.pkce_store.clear()
            logger.warning("Authorization record expired")
            raise AuthenticationError.session_expired()

        # The code is single use, so the record is spent whatever happens next
        self.pkce_store.clear()

        token_response = await self.client.exchange(code, record.code_verifier)

        claims: Optional[VerifiedClaims] = None
        if token_response.id_token:
            claims = await self.verifier.verify_id_token(
                token_response.id_token,
                expected_nonce=record.nonce,
            )
        elif record.nonce is not None:
            raise InvalidTokenError(
                TokenErrorReason.MALFORMED,
                "Token response missing id_token for an openid request",
            )

        if self.settings.VERIFY_ACCESS_TOKEN:
            await self.verifier.verify_access_token(token_response.access_token)

        self.session.establish(token_response, claims)

        logger.info(
            "Authorization completed",
            extra={"sub": claims.sub if claims else None},
        )

        return CompleteAuthorizationResult(
            user=claims,
            tokens=TokenSummary.from_response(token_response),
        )

    # =========================================================================
    # Session
    # =========================================================================

    async def is_authenticated(self) -> bool:
        return await self.session.is_authenticated()

    async def get_user_info(self) -> Optional[VerifiedClaims]:
        return await self.session.get_user_info()

    async def logout(self) -> None:
        await self.session.logout()

    async def refresh_token(self) -> Optional[RefreshResult]:
        return await self.session.refresh()

    # =========================================================================
    # Tokens
    # =========================================================================

    async def introspect(self, token: str) -> Optional[IntrospectionResult]:
        return await self.client.introspect(token)

    async def revoke_token(self, token: str, token_type_hint: str = "access_token") -> bool:
        return await self.client.revoke(token, token_type_hint)

    async def validate_id_token(
        self,
        id_token: str,
        expected_nonce: Optional[str] = None,
    ) -> VerifiedClaims:
        return await self.verifier.verify_id_token(id_token, expected_nonce)

    def parse_jwt(self, token: str) -> Dict[str, Dict[str, Any]]:
        return tokens.parse_jwt(token)

    def is_token_expired(self, token: str) -> bool:
        return tokens.is_token_expired(token, now=self.context.clock())

    # =========================================================================
    # Keys
    # =========================================================================

    async def get_jwks(self) -> Dict[str, Any]:
        return await self.jwks.get_jwks()

    async def refresh_jwks(self) -> Dict[str, Any]:
        self.jwks.invalidate()
        snapshot = await self.jwks.refresh()
        return snapshot.document
