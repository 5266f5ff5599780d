"""
Exception taxonomy for the authentication flow.

Every error carries a short machine readable ``error`` code (the value that is
reported to the host application and over the message channel) and a
``context`` dictionary with non-secret details for logging.
"""

from enum import Enum
from typing import Any, Dict, Optional


class AuthFlowError(Exception):
    """Base exception for all authentication flow errors"""

    error = "auth_error"

    def __init__(
        self,
        message: str = "",
        *,
        error: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        if error:
            self.error = error
        self.context: Dict[str, Any] = dict(context or {})

    def add_context(self, key: str, value: Any) -> "AuthFlowError":
        self.context[key] = value
        return self

    def to_dict(self) -> Dict[str, Any]:
        return {"error": self.error, "error_description": self.message}


class ConfigurationError(AuthFlowError):
    """Missing or invalid client configuration. Fatal, raised at construction."""

    error = "configuration_error"


class AuthenticationError(AuthFlowError):
    """
    The authorization attempt cannot be completed.

    Raised for state mismatch, an expired PKCE record, a malformed callback
    or an error reported by the provider. Recoverable by restarting the flow.
    """

    error = "authentication_failed"

    @classmethod
    def invalid_state(cls, expected: Optional[str], actual: Optional[str]) -> "AuthenticationError":
        return cls(
            "Invalid state parameter",
            error="invalid_state",
            context={"has_expected": bool(expected), "has_actual": bool(actual)},
        )

    @classmethod
    def session_expired(cls) -> "AuthenticationError":
        return cls("Authorization session expired", error="session_expired")

    @classmethod
    def invalid_response(cls, description: str) -> "AuthenticationError":
        return cls(description, error="invalid_response")

    @classmethod
    def provider_error(cls, error: str, description: Optional[str] = None) -> "AuthenticationError":
        return cls(description or error, error=error)

    @classmethod
    def not_authenticated(cls) -> "AuthenticationError":
        return cls("User is not authenticated", error="unauthenticated")


class TokenErrorReason(str, Enum):
    """Named verification failures of ``InvalidTokenError``."""

    MALFORMED = "malformed"
    INVALID_SIGNATURE = "invalid_signature"
    EXPIRED = "expired"
    INVALID_ISSUER = "invalid_issuer"
    INVALID_AUDIENCE = "invalid_audience"
    INVALID_NONCE = "invalid_nonce"
    INACTIVE = "inactive"


class InvalidTokenError(AuthFlowError):
    """A token failed structural, signature or claim verification."""

    error = "invalid_token"

    def __init__(self, reason: TokenErrorReason, message: str = "", **kwargs):
        self.reason = TokenErrorReason(reason)
        super().__init__(message or _REASON_MESSAGES[self.reason], **kwargs)
        self.context.setdefault("reason", self.reason.value)

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["reason"] = self.reason.value
        return data


_REASON_MESSAGES = {
    TokenErrorReason.MALFORMED: "Token is malformed",
    TokenErrorReason.INVALID_SIGNATURE: "Token signature is invalid",
    TokenErrorReason.EXPIRED: "Token has expired",
    TokenErrorReason.INVALID_ISSUER: "Invalid issuer",
    TokenErrorReason.INVALID_AUDIENCE: "Invalid audience",
    TokenErrorReason.INVALID_NONCE: "Invalid nonce",
    TokenErrorReason.INACTIVE: "Token is not active",
}


class KeySetFetchError(AuthFlowError):
    """The provider JWKS could not be fetched or was not a key set."""

    error = "jwks_fetch_failed"


class CodeExchangeError(AuthFlowError):
    """The token endpoint rejected the authorization code exchange."""

    error = "token_exchange_error"

    def __init__(self, provider_message: str, **kwargs):
        self.provider_message = provider_message
        super().__init__(f"Code exchange failed: {provider_message}", **kwargs)


class PopupClosedError(AuthFlowError):
    """The user closed the popup before the provider answered."""

    error = "popup_closed"

    def __init__(self, message: str = "The authentication window was closed", **kwargs):
        super().__init__(message, **kwargs)


__all__ = [
    "AuthFlowError",
    "ConfigurationError",
    "AuthenticationError",
    "TokenErrorReason",
    "InvalidTokenError",
    "KeySetFetchError",
    "CodeExchangeError",
    "PopupClosedError",
]
