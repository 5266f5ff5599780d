"""
Configuration module for the authflow relying party.

This module uses Pydantic Settings to load and validate environment variables
for the OIDC provider, PKCE/token security policies, HTTP timeouts, the
session cookie and the popup flow.

Environment variables are loaded from .env file or system environment.
"""

import re
from functools import lru_cache
from typing import List, Optional
from urllib.parse import quote, urlparse

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from authflow.errors import ConfigurationError


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    Provider endpoints, client credentials, token validation policies and
    session settings are defined here. Client credentials default to empty
    so the settings object always loads; ``ensure_client_configuration``
    is what rejects an unusable configuration.
    """

    # =========================================================================
    # OIDC Provider Configuration
    # =========================================================================

    OIDC_BASE_URL: str = Field(
        default="https://tx-pki.gouv.bj",
        description="Base URL of the authorization server",
    )

    OIDC_AUTH_SERVER: str = Field(
        default="main-as",
        description="Authorization server identifier appended to the OAuth path",
    )

    OIDC_OAUTH_PATH: str = Field(
        default="/trustedx-authserver/oauth",
        description="Path prefix of the provider's OAuth endpoints",
    )

    OIDC_CLIENT_ID: str = Field(
        default="",
        description="OAuth client identifier registered with the provider",
    )

    OIDC_CLIENT_SECRET: Optional[str] = Field(
        None,
        description="OAuth client secret (optional for public clients)",
    )

    OIDC_REDIRECT_URI: str = Field(
        default="",
        description="Redirect URI registered with the provider (e.g., https://app.example.com/auth/callback)",
    )

    OIDC_SCOPE: str = Field(
        default="openid profile",
        description="Space separated scopes requested at authorization time",
    )

    OIDC_ISSUER: Optional[str] = Field(
        None,
        description="Expected 'iss' claim; issuer is not checked when unset",
    )

    # =========================================================================
    # Security Settings
    # =========================================================================

    JWKS_CACHE_SECONDS: int = Field(
        default=3600,
        description="Time to cache the provider JWKS in seconds",
        ge=0,
        le=86400,
    )

    AUTH_SESSION_MAX_AGE: int = Field(
        default=600,
        description="Maximum age of a pending PKCE/state record in seconds",
        ge=30,
        le=3600,
    )

    MAX_TOKEN_AGE: int = Field(
        default=300,
        description="Maximum accepted age of an ID token ('iat') in seconds",
        ge=1,
    )

    REVOKE_TOKENS_ON_LOGOUT: bool = Field(
        default=True,
        description="Revoke access and refresh tokens at the provider on logout",
    )

    VERIFY_ACCESS_TOKEN: bool = Field(
        default=False,
        description="Introspect the access token after code exchange",
    )

    INTROSPECTION_BEARER: Optional[str] = Field(
        None,
        description="Bearer credential for the introspection endpoint (defaults to the client secret)",
    )

    # =========================================================================
    # HTTP Settings
    # =========================================================================

    HTTP_TIMEOUT_SECONDS: float = Field(
        default=30.0,
        description="Timeout for code exchange and refresh requests",
        gt=0,
    )

    NETWORK_TIMEOUT_SECONDS: float = Field(
        default=10.0,
        description="Timeout for JWKS, revoke and introspection requests",
        gt=0,
    )

    # =========================================================================
    # Frontend / Popup Integration
    # =========================================================================

    FRONTEND_ORIGIN: str = Field(
        default="*",
        description="Origin allowed to receive the popup's auth-response message",
    )

    DEFAULT_REDIRECT_AFTER_LOGIN: str = Field(
        default="/",
        description="Where to send the user after a full-page login",
    )

    POPUP_POLL_INTERVAL_MS: int = Field(
        default=500,
        description="Interval of the popup-closed poll in milliseconds",
        ge=50,
        le=10000,
    )

    # =========================================================================
    # Session Cookie Configuration
    # =========================================================================

    SESSION_SECRET: str = Field(
        default="change-me-in-production-change-me-in-production",
        description="Secret used to sign the session cookie",
        min_length=32,
    )

    SESSION_COOKIE_NAME: str = Field(
        default="authflow_session",
        description="Name of the session cookie",
    )

    SESSION_MAX_AGE_SECONDS: int = Field(
        default=60 * 60 * 2,
        description="Lifetime of the session cookie and idle lifetime of server-side sessions in seconds",
        ge=60,
    )

    USE_SECURE_COOKIES: bool = Field(
        default=False,
        description="Only send the session cookie over HTTPS",
    )

    # =========================================================================
    # Server Configuration
    # =========================================================================

    ROUTE_PREFIX: str = Field(
        default="/auth",
        description="Prefix of the authentication routes",
    )

    ALLOWED_ORIGINS: Optional[str] = Field(
        None,
        description="Comma-separated list of allowed CORS origins (leave empty for no CORS)",
    )

    LOG_LEVEL: str = Field(
        default="INFO",
        description="Logging level (DEBUG, INFO, WARNING, ERROR)",
    )

    SHOW_DETAILED_ERRORS: bool = Field(
        default=False,
        description="Include exception details in error responses",
    )

    # =========================================================================
    # Pydantic Settings Configuration
    # =========================================================================

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
    )

    # =========================================================================
    # Computed Properties
    # =========================================================================

    @property
    def oauth_base(self) -> str:
        """Provider OAuth root, e.g. https://idp.example/trustedx-authserver/oauth."""
        return self.OIDC_BASE_URL.rstrip("/") + "/" + self.OIDC_OAUTH_PATH.strip("/")

    @property
    def authorization_endpoint(self) -> str:
        return f"{self.oauth_base}/{quote(self.OIDC_AUTH_SERVER, safe='')}"

    @property
    def token_endpoint(self) -> str:
        return f"{self.authorization_endpoint}/token"

    @property
    def revocation_endpoint(self) -> str:
        return f"{self.authorization_endpoint}/revoke"

    @property
    def introspection_endpoint(self) -> str:
        return f"{self.authorization_endpoint}/token/verify"

    @property
    def jwks_uri(self) -> str:
        return f"{self.oauth_base}/keys"

    @property
    def allowed_origins_list(self) -> List[str]:
        """
        Parse and return ALLOWED_ORIGINS as a list.

        Returns:
            List of allowed origin URLs, or empty list if not configured.
        """
        if not self.ALLOWED_ORIGINS:
            return []

        return [
            origin.strip()
            for origin in self.ALLOWED_ORIGINS.split(",")
            if origin.strip()
        ]

    @property
    def popup_poll_interval(self) -> float:
        return self.POPUP_POLL_INTERVAL_MS / 1000.0

    # =========================================================================
    # Validators
    # =========================================================================

    @field_validator("OIDC_SCOPE")
    @classmethod
    def normalize_scope(cls, v: str) -> str:
        """
        Normalize scope separators.

        Scopes written as 'openid+profile' (copied from a URL) are accepted
        and turned into the space separated form.
        """
        return " ".join(part for part in re.split(r"[+\s]+", v) if part)

    @field_validator("LOG_LEVEL")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        allowed = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        level = v.upper()
        if level not in allowed:
            raise ValueError(f"LOG_LEVEL must be one of {allowed}, got: {v}")
        return level

    @field_validator("ROUTE_PREFIX")
    @classmethod
    def validate_route_prefix(cls, v: str) -> str:
        v = "/" + v.strip("/")
        return "" if v == "/" else v


# =============================================================================
# Settings Singleton
# =============================================================================

@lru_cache()
def get_settings() -> Settings:
    """
    Get or create a singleton Settings instance.

    This function is cached so that the settings are loaded only once
    during the application lifecycle.

    Returns:
        Settings instance with all configuration loaded and validated.

    Raises:
        ValidationError: If environment variables are present but invalid.
    """
    return Settings()


# =============================================================================
# Configuration Helpers
# =============================================================================

def _is_valid_url(value: str) -> bool:
    parsed = urlparse(value)
    return parsed.scheme in ("http", "https") and bool(parsed.netloc)


def ensure_client_configuration(settings: Settings) -> None:
    """
    Fail fast on a configuration that cannot start an authorization flow.

    Raises:
        ConfigurationError: If client_id, redirect_uri or base_url is missing,
            or if redirect_uri / base_url is not an absolute http(s) URL.
    """
    required = {
        "OIDC_CLIENT_ID": settings.OIDC_CLIENT_ID,
        "OIDC_REDIRECT_URI": settings.OIDC_REDIRECT_URI,
        "OIDC_BASE_URL": settings.OIDC_BASE_URL,
    }
    for name, value in required.items():
        if not value or not value.strip():
            raise ConfigurationError(
                f"Configuration field '{name}' is required",
                context={"field": name},
            )

    if not _is_valid_url(settings.OIDC_REDIRECT_URI):
        raise ConfigurationError(
            "Invalid OIDC_REDIRECT_URI format",
            context={"field": "OIDC_REDIRECT_URI"},
        )

    if not _is_valid_url(settings.OIDC_BASE_URL):
        raise ConfigurationError(
            "Invalid OIDC_BASE_URL format",
            context={"field": "OIDC_BASE_URL"},
        )


def validate_configuration(settings: Settings) -> dict:
    """
    Validate critical configuration settings and return a status report.

    This can be called during application startup to ensure all required
    configuration is present and valid.

    Returns:
        Dictionary with validation status and any warnings.
    """
    errors = []
    warnings = []

    try:
        ensure_client_configuration(settings)
    except ConfigurationError as e:
        errors.append(str(e))

    if not settings.OIDC_CLIENT_SECRET:
        warnings.append("OIDC_CLIENT_SECRET is not set (required for confidential clients)")

    if "openid" not in settings.OIDC_SCOPE.split():
        warnings.append("OIDC_SCOPE does not contain 'openid'; no ID token will be verified")

    if not settings.OIDC_ISSUER:
        warnings.append("OIDC_ISSUER is not set; the 'iss' claim will not be checked")

    if settings.FRONTEND_ORIGIN == "*":
        warnings.append("FRONTEND_ORIGIN is '*'; auth-response messages are not origin bound")

    if settings.SESSION_SECRET.startswith("change-me"):
        warnings.append("SESSION_SECRET still has its default value")

    return {
        "valid": len(errors) == 0,
        "errors": errors,
        "warnings": warnings,
        "authorization_endpoint": settings.authorization_endpoint,
        "jwks_cache_seconds": settings.JWKS_CACHE_SECONDS,
    }
