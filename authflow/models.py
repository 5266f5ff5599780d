"""
Data Models Module

This module defines Pydantic models for the authentication protocol records
and the request/response bodies of the HTTP surface.

Models are organized by functional area:
- Authorization request models (PKCE record, authorization request)
- Token models (token response, verified claims, introspection)
- Session models (authenticated session record, status responses)
- Cross-window message models (auth-response envelope)
"""

from datetime import datetime, timezone
from typing import Any, Dict, List, Literal, Optional, Union
from urllib.parse import urlencode

from pydantic import BaseModel, ConfigDict, Field

from authflow.auth.crypto import code_challenge_s256


# ============================================================================
# Authorization Request Models
# ============================================================================

class PkceRecord(BaseModel):
    """Ephemeral record of one in-flight authorization attempt."""

    state: str = Field(..., description="Anti-CSRF correlator echoed by the provider")
    nonce: Optional[str] = Field(None, description="Anti-replay value bound into the ID token")
    code_verifier: str = Field(..., min_length=43, max_length=128, description="PKCE secret")
    created_at: float = Field(..., description="Creation time (epoch seconds)")

    @property
    def code_challenge(self) -> str:
        return code_challenge_s256(self.code_verifier)


class AuthorizationRequest(BaseModel):
    """Immutable view of the parameters sent to the authorization endpoint."""

    model_config = ConfigDict(frozen=True)

    response_type: Literal["code"] = "code"
    client_id: str
    redirect_uri: str
    scope: str
    state: str
    code_challenge: str
    code_challenge_method: Literal["S256"] = "S256"
    nonce: Optional[str] = None
    prompt: Optional[str] = "login"

    def to_query_params(self) -> Dict[str, str]:
        return self.model_dump(exclude_none=True)

    def to_url(self, authorization_endpoint: str) -> str:
        return f"{authorization_endpoint}?{urlencode(self.to_query_params())}"


class BeginAuthorizationResult(BaseModel):
    """Response model for a started authorization attempt."""
    url: str = Field(..., description="Provider authorization URL to open in the popup")
    state: str = Field(..., description="State stored for callback validation")
    nonce: Optional[str] = Field(None, description="Nonce stored for ID token validation")


class BeginAuthorizationRequest(BaseModel):
    """Request model for starting an authorization attempt."""
    scope: Optional[str] = Field(None, description="Scopes to request (defaults to configured scope)")


class ExchangeRequest(BaseModel):
    """Request model for completing an authorization attempt."""
    code: str = Field(..., min_length=1, description="Authorization code from the callback")
    state: str = Field(..., min_length=1, description="State echoed by the provider")


# ============================================================================
# Token Models
# ============================================================================

class TokenResponse(BaseModel):
    """Token endpoint response. Transient, never stored verbatim."""

    model_config = ConfigDict(extra="ignore")

    access_token: str
    token_type: str = "Bearer"
    expires_in: Optional[int] = None
    refresh_token: Optional[str] = None
    id_token: Optional[str] = None
    scope: Optional[str] = None


class TokenSummary(BaseModel):
    """Token fields returned to the caller after a successful login."""
    access_token: str
    refresh_token: Optional[str] = None
    expires_in: Optional[int] = None
    token_type: str = "Bearer"

    @classmethod
    def from_response(cls, response: TokenResponse) -> "TokenSummary":
        return cls(
            access_token=response.access_token,
            refresh_token=response.refresh_token,
            expires_in=response.expires_in,
            token_type=response.token_type,
        )


class VerifiedClaims(BaseModel):
    """
    ID token claims that passed full verification.

    Registered claims are typed; any other claim is kept verbatim as an extra
    field so ``model_dump(exclude_unset=True)`` reproduces the token payload.
    """

    model_config = ConfigDict(extra="allow", frozen=True)

    sub: str
    aud: Union[str, List[str]]
    exp: Union[int, float]
    iss: Optional[str] = None
    iat: Optional[Union[int, float]] = None
    nonce: Optional[str] = None

    def get(self, name: str, default: Any = None) -> Any:
        return self.model_dump().get(name, default)


class IntrospectionResult(BaseModel):
    """Provider introspection answer for an opaque token."""

    model_config = ConfigDict(extra="allow")

    active: bool = False
    scope: Optional[str] = None
    client_id: Optional[str] = None
    sub: Optional[str] = None
    exp: Optional[Union[int, float]] = None
    token_type: Optional[str] = None


class IntrospectRequest(BaseModel):
    """Request model for token introspection."""
    token: str = Field(..., min_length=1, description="Token to introspect")


# ============================================================================
# Session Models
# ============================================================================

class AuthSessionRecord(BaseModel):
    """Authenticated session state. Written and removed as a whole."""

    user: Optional[VerifiedClaims] = None
    access_token: str
    refresh_token: Optional[str] = None
    expires_at: Optional[float] = None
    authenticated_at: float

    def is_expired(self, now: float) -> bool:
        return self.expires_at is not None and self.expires_at < now


class CompleteAuthorizationResult(BaseModel):
    """Result of a successful code exchange and verification."""
    user: Optional[VerifiedClaims] = None
    tokens: TokenSummary


class SessionInfo(BaseModel):
    authenticated_at: Optional[float] = None
    expires_at: Optional[float] = None


class SessionStatus(BaseModel):
    """Response model for the authentication status endpoint."""
    authenticated: bool
    user: Optional[Dict[str, Any]] = None
    session_info: Optional[SessionInfo] = None


class RefreshResult(BaseModel):
    """Response model for a silent refresh of the current session."""
    access_token: str
    expires_at: Optional[float] = None


# ============================================================================
# Cross-window Message Models
# ============================================================================

AUTH_RESPONSE_TYPE = "auth-response"


def _utcnow_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class AuthResponseMessage(BaseModel):
    """
    Envelope posted from the callback popup to its opener.

    ``query`` is the raw callback query string (``code`` and ``state``, or
    ``error`` and ``error_description``). ``user`` is only set when the
    server already completed the login during the callback.
    """

    type: str = AUTH_RESPONSE_TYPE
    status: Literal["success", "error"]
    query: Optional[str] = None
    user: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    error_description: Optional[str] = None
    timestamp: str = Field(default_factory=_utcnow_iso)


# ============================================================================
# Health / Error Models
# ============================================================================

class HealthResponse(BaseModel):
    """Health check response model."""
    status: str = Field(..., description="Service health status")
    service: str = Field(..., description="Service name")
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc), description="Check timestamp")


class ErrorResponse(BaseModel):
    """Standardized error response model."""
    error: str = Field(..., description="Error type or code")
    message: str = Field(..., description="Human-readable error message")
    details: Optional[Dict[str, Any]] = Field(None, description="Additional error details")
