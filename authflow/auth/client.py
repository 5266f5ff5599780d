"""
Token endpoint operations.

This module performs the network calls against the provider's OAuth
endpoints: authorization code exchange, refresh, revocation and
introspection. Nothing here retries; callers decide what a failure means.
"""

import logging
from typing import Any, Dict, Optional

import httpx
from pydantic import ValidationError

from authflow.config import Settings
from authflow.errors import CodeExchangeError
from authflow.models import IntrospectionResult, TokenResponse

logger = logging.getLogger(__name__)


def _provider_error_message(response: httpx.Response) -> str:
    """Pick the most descriptive error text out of a provider error body."""
    try:
        data = response.json()
    except ValueError:
        data = None

    if isinstance(data, dict):
        message = data.get("error_description") or data.get("error")
        if message:
            return str(message)

    return f"Unknown error (HTTP {response.status_code})"


class TokenExchangeClient:
    """
    Client for the provider's token, revoke and introspection endpoints.

    Args:
        settings: Application settings (endpoints, credentials, timeouts)
        http_client: Shared async HTTP client
    """

    def __init__(self, settings: Settings, http_client: httpx.AsyncClient):
        self._settings = settings
        self._http = http_client

    def _client_auth(self) -> Optional[httpx.BasicAuth]:
        if not self._settings.OIDC_CLIENT_SECRET:
            return None
        return httpx.BasicAuth(self._settings.OIDC_CLIENT_ID, self._settings.OIDC_CLIENT_SECRET)

    def _client_credentials(self) -> Dict[str, str]:
        data = {"client_id": self._settings.OIDC_CLIENT_ID}
        if self._settings.OIDC_CLIENT_SECRET:
            data["client_secret"] = self._settings.OIDC_CLIENT_SECRET
        return data

    # =========================================================================
    # Authorization Code Exchange
    # =========================================================================

    async def exchange(self, code: str, code_verifier: str) -> TokenResponse:
        """
        Exchange an authorization code for tokens.

        Args:
            code: Authorization code from the callback
            code_verifier: PKCE verifier bound to the authorization request

        Returns:
            Parsed token response

        Raises:
            CodeExchangeError: If the provider rejects the code or is unreachable
        """
        payload = {
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": self._settings.OIDC_REDIRECT_URI,
            "code_verifier": code_verifier,
        }
        auth = self._client_auth()
        if auth is None:
            # Public client: identify with client_id in the body
            payload["client_id"] = self._settings.OIDC_CLIENT_ID

        try:
            response = await self._http.post(
                self._settings.token_endpoint,
                data=payload,
                auth=auth,
                headers={"Accept": "application/json"},
                timeout=self._settings.HTTP_TIMEOUT_SECONDS,
            )
        except httpx.HTTPError as e:
            logger.error(
                "Token endpoint unreachable",
                extra={"endpoint": self._settings.token_endpoint, "error": str(e)},
            )
            raise CodeExchangeError(f"Unable to reach token endpoint: {e}") from e

        if not response.is_success:
            message = _provider_error_message(response)
            logger.error(
                "Code exchange failed",
                extra={"status": response.status_code, "error": message},
            )
            raise CodeExchangeError(message, context={"status": response.status_code})

        token_response = self._parse_token_response(response)
        if token_response is None:
            raise CodeExchangeError("Token response is not a valid token payload")

        logger.info(
            "Code exchanged successfully",
            extra={
                "has_access_token": True,
                "has_refresh_token": token_response.refresh_token is not None,
                "has_id_token": token_response.id_token is not None,
            },
        )
        return token_response

    # =========================================================================
    # Refresh
    # =========================================================================

    async def refresh(self, refresh_token: str) -> Optional[TokenResponse]:
        """
        Obtain a new access token with a refresh token.

        Returns:
            Token response, or None if the provider rejected the refresh
        """
        payload = {
            "grant_type": "refresh_token",
            "refresh_token": refresh_token,
            **self._client_credentials(),
        }

        try:
            response = await self._http.post(
                self._settings.token_endpoint,
                data=payload,
                headers={"Accept": "application/json"},
                timeout=self._settings.HTTP_TIMEOUT_SECONDS,
            )
        except httpx.HTTPError as e:
            logger.error("Token refresh error", extra={"error": str(e)})
            return None

        if not response.is_success:
            logger.warning(
                "Token refresh failed",
                extra={"status": response.status_code, "error": _provider_error_message(response)},
            )
            return None

        token_response = self._parse_token_response(response)
        if token_response is not None:
            logger.info("Access token refreshed successfully")
        return token_response

    # =========================================================================
    # Revocation
    # =========================================================================

    async def revoke(self, token: str, token_type_hint: str = "access_token") -> bool:
        """
        Revoke a token at the provider. Never raises.

        Returns:
            True if the provider accepted the revocation
        """
        payload = {
            "token": token,
            "token_type_hint": token_type_hint,
            **self._client_credentials(),
        }

        try:
            response = await self._http.post(
                self._settings.revocation_endpoint,
                data=payload,
                timeout=self._settings.NETWORK_TIMEOUT_SECONDS,
            )
        except httpx.HTTPError as e:
            logger.warning(
                "Token revocation failed",
                extra={"token_type": token_type_hint, "error": str(e)},
            )
            return False

        if not response.is_success:
            logger.warning(
                "Token revocation rejected",
                extra={"token_type": token_type_hint, "status": response.status_code},
            )
            return False

        return True

    # =========================================================================
    # Introspection
    # =========================================================================

    async def introspect(self, token: str) -> Optional[IntrospectionResult]:
        """
        Ask the provider whether a token is active.

        Returns:
            Introspection result, or None on any failure
        """
        bearer = self._settings.INTROSPECTION_BEARER or self._settings.OIDC_CLIENT_SECRET
        headers = {"Accept": "application/json"}
        if bearer:
            headers["Authorization"] = f"Bearer {bearer}"

        try:
            response = await self._http.post(
                self._settings.introspection_endpoint,
                data={"token": token},
                headers=headers,
                timeout=self._settings.NETWORK_TIMEOUT_SECONDS,
            )
        except httpx.HTTPError as e:
            logger.warning("Token introspection failed", extra={"error": str(e)})
            return None

        if not response.is_success:
            logger.warning(
                "Token introspection rejected",
                extra={"status": response.status_code},
            )
            return None

        try:
            return IntrospectionResult.model_validate(response.json())
        except (ValueError, ValidationError):
            logger.warning("Token introspection returned an invalid body")
            return None

    # =========================================================================
    # Helpers
    # =========================================================================

    @staticmethod
    def _parse_token_response(response: httpx.Response) -> Optional[TokenResponse]:
        try:
            data: Any = response.json()
            return TokenResponse.model_validate(data)
        except (ValueError, ValidationError):
            logger.error("Token endpoint returned an invalid body")
            return None
