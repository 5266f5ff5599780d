"""
Authorization backends used by the flow orchestrator.

The orchestrator only needs two operations: start an authorization attempt
and complete it with the callback's code and state. They are served either
in-process by an ``AuthService`` or over HTTP by the ``/auth/api`` routes of
a running authflow server.
"""

import logging
from typing import Any, Dict, Optional, Protocol

import httpx
from pydantic import ValidationError

from authflow.auth.service import AuthService
from authflow.errors import (
    AuthenticationError,
    AuthFlowError,
    CodeExchangeError,
    InvalidTokenError,
    KeySetFetchError,
    TokenErrorReason,
)
from authflow.flow.retry import RetryConfig, retry_on_exception
from authflow.models import (
    BeginAuthorizationResult,
    CompleteAuthorizationResult,
    IntrospectionResult,
    SessionStatus,
)

logger = logging.getLogger(__name__)


class AuthorizationBackend(Protocol):
    async def begin_authorization(self, scope: Optional[str] = None) -> BeginAuthorizationResult:
        ...

    async def complete_authorization(self, code: str, state: str) -> CompleteAuthorizationResult:
        ...


class ServiceBackend:
    """In-process backend over an ``AuthService``."""

    def __init__(self, service: AuthService):
        self.service = service

    async def begin_authorization(self, scope: Optional[str] = None) -> BeginAuthorizationResult:
        return self.service.begin_authorization(scope)

    async def complete_authorization(self, code: str, state: str) -> CompleteAuthorizationResult:
        return await self.service.complete_authorization(code, state)


# =============================================================================
# HTTP Backend
# =============================================================================

class BackendError(AuthFlowError):
    """The authflow server answered with an unexpected error."""

    error = "backend_error"

    def __init__(self, message: str, status_code: Optional[int] = None, **kwargs):
        self.status_code = status_code
        super().__init__(message, **kwargs)


def is_transient(exc: BaseException) -> bool:
    """Network failures and 5xx answers are worth another attempt."""
    if isinstance(exc, httpx.TransportError):
        return True
    if isinstance(exc, BackendError):
        return exc.status_code is not None and exc.status_code >= 500
    return False


def _error_from_body(status_code: int, body: Dict[str, Any]) -> AuthFlowError:
    """Rebuild the typed error reported by the server's JSON error envelope."""
    code = body.get("error") or "backend_error"
    message = body.get("message") or body.get("error_description") or "Authentication failed"

    if code == InvalidTokenError.error:
        reason = body.get("reason") or TokenErrorReason.MALFORMED.value
        try:
            return InvalidTokenError(TokenErrorReason(reason), message)
        except ValueError:
            return InvalidTokenError(TokenErrorReason.MALFORMED, message)
    if code == CodeExchangeError.error:
        return CodeExchangeError(body.get("provider_message") or message)
    if code == KeySetFetchError.error:
        return KeySetFetchError(message)
    if 400 <= status_code < 500:
        return AuthenticationError(message, error=code)
    return BackendError(message, status_code=status_code, error=code)


class BackendClient:
    """
    HTTP client for the authflow server API.

    The session cookie set by ``begin_authorization`` must be sent back with
    ``complete_authorization``, so one client instance (and its cookie jar)
    is used per flow.

    Args:
        base_url: Server root, e.g. https://app.example.com
        http_client: Async HTTP client (owns the cookie jar)
        route_prefix: Prefix the auth router is mounted under
        headers: Extra headers sent with every request
        retry_config: Retry policy for idempotent calls
    """

    def __init__(
        self,
        base_url: str,
        http_client: Optional[httpx.AsyncClient] = None,
        *,
        route_prefix: str = "/auth",
        headers: Optional[Dict[str, str]] = None,
        retry_config: Optional[RetryConfig] = None,
        timeout: float = 30.0,
    ):
        self.base_url = base_url.rstrip("/")
        self._http = http_client or httpx.AsyncClient()
        self._prefix = route_prefix.rstrip("/")
        self._headers = dict(headers or {})
        self._timeout = timeout

        retry = retry_on_exception(
            (httpx.TransportError, BackendError),
            retry_config or RetryConfig(),
            should_retry=is_transient,
        )
        self.begin_authorization = retry(self._begin_authorization)
        self.status = retry(self._status)
        self.introspect = retry(self._introspect)

    def _url(self, path: str) -> str:
        return f"{self.base_url}{self._prefix}/api/{path}"

    async def _request(self, method: str, path: str, json: Optional[dict] = None) -> Dict[str, Any]:
        response = await self._http.request(
            method,
            self._url(path),
            json=json,
            headers=self._headers,
            timeout=self._timeout,
        )

        try:
            body = response.json()
        except ValueError:
            body = {}

        if not response.is_success:
            logger.warning(
                "Backend request failed",
                extra={"path": path, "status": response.status_code},
            )
            raise _error_from_body(response.status_code, body if isinstance(body, dict) else {})

        if not isinstance(body, dict):
            raise BackendError("Backend returned a non-object body", status_code=response.status_code)
        return body

    async def _begin_authorization(self, scope: Optional[str] = None) -> BeginAuthorizationResult:
        body = await self._request("POST", "begin", json={"scope": scope})
        try:
            return BeginAuthorizationResult.model_validate(body)
        except ValidationError as e:
            raise BackendError("Invalid begin response from backend") from e

    async def complete_authorization(self, code: str, state: str) -> CompleteAuthorizationResult:
        """Exchange the code through the server. Never retried."""
        body = await self._request("POST", "exchange", json={"code": code, "state": state})
        try:
            return CompleteAuthorizationResult.model_validate(body)
        except ValidationError as e:
            raise BackendError("Invalid exchange response from backend") from e

    async def _status(self) -> SessionStatus:
        body = await self._request("GET", "status")
        return SessionStatus.model_validate(body)

    async def _introspect(self, token: str) -> IntrospectionResult:
        body = await self._request("POST", "introspect", json={"token": token})
        return IntrospectionResult.model_validate(body.get("introspection") or {})

    async def logout(self) -> None:
        await self._request("POST", "logout")

    async def aclose(self) -> None:
        await self._http.aclose()
