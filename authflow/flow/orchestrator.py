"""
Popup login flow orchestration.

``FlowOrchestrator`` drives one login at a time:

    idle -> awaiting_provider -> success | error | cancelled

It starts an authorization attempt through an ``AuthorizationBackend``,
opens the authentication window, waits for the callback's auth-response
message of this attempt (expected origin and state) while polling whether
the window was closed, validates the response and completes the login.
Exactly one outcome is reported per flow through ``on_success`` or
``on_error``.
"""

import asyncio
import logging
import uuid
from enum import Enum
from typing import Any, Callable, Dict, Optional, Tuple
from urllib.parse import parse_qs, urlparse

from authflow.config import Settings
from authflow.errors import AuthenticationError, AuthFlowError, PopupClosedError
from authflow.flow.backend import AuthorizationBackend
from authflow.flow.channel import BrowserPopup, ChannelMessage, MessageChannel, Popup
from authflow.flow.middleware import FlowMiddleware, MiddlewareChain
from authflow.models import AuthResponseMessage, CompleteAuthorizationResult

logger = logging.getLogger(__name__)


class FlowState(str, Enum):
    IDLE = "idle"
    AWAITING_PROVIDER = "awaiting_provider"
    SUCCESS = "success"
    ERROR = "error"
    CANCELLED = "cancelled"


# =============================================================================
# Error Messages
# =============================================================================

DEFAULT_ERROR_MESSAGE = "Authentication error"

ERROR_MESSAGES = {
    "invalid_token": "Invalid or expired token",
    "unsupported_grant_type": "Invalid OAuth grant type",
    "insufficient_scope": "Insufficient permissions",
    "invalid_grant": "Invalid or expired authorization code",
    "access_denied": "Authentication cancelled",
    "invalid_request": "Invalid request",
    "invalid_scope": "Invalid permissions",
    "server_error": "Server error",
    "popup_closed": "The authentication window was closed",
    "cancelled": "Authentication cancelled",
    "timeout": "Authentication timed out",
    "invalid_state": "Invalid state parameter",
    "invalid_response": "Invalid response from the authentication window",
    "session_expired": "The authentication session expired",
    "backend_error": "Backend error",
    "token_error": "Token validation error",
    "token_exchange_error": "Error during code exchange",
    "jwks_fetch_failed": "Unable to fetch the provider signing keys",
}


def describe_error(error: str, description: Optional[str] = None) -> str:
    """User facing message for an error code, with the description appended."""
    message = ERROR_MESSAGES.get(error, DEFAULT_ERROR_MESSAGE)
    if description:
        message = f"{message}: {description}"
    return message


# =============================================================================
# Flow Orchestrator
# =============================================================================

class FlowOrchestrator:
    """
    Coordinates the authentication window, the message channel and the backend.

    Args:
        backend: Starts and completes authorization attempts
        popup_factory: Returns a new authentication window per flow
        channel: Receives auth-response messages from the callback window
        poll_interval: Seconds between checks of the window's ``closed`` flag
        expected_origin: Only messages from this origin are accepted
            (None or "*" accepts any origin)
        flow_timeout: Seconds to wait for the provider before failing
        on_success: Called with the ``CompleteAuthorizationResult``
        on_error: Called with the ``AuthFlowError``
    """

    def __init__(
        self,
        backend: AuthorizationBackend,
        popup_factory: Callable[[], Popup] = BrowserPopup,
        channel: Optional[MessageChannel] = None,
        *,
        poll_interval: float = 0.5,
        expected_origin: Optional[str] = None,
        flow_timeout: float = 600.0,
        on_success: Optional[Callable[[CompleteAuthorizationResult], Any]] = None,
        on_error: Optional[Callable[[AuthFlowError], Any]] = None,
    ):
        self.backend = backend
        self.channel = channel or MessageChannel()
        self._popup_factory = popup_factory
        self._poll_interval = poll_interval
        self._expected_origin = expected_origin
        self._flow_timeout = flow_timeout
        self._on_success = on_success
        self._on_error = on_error
        self._middleware = MiddlewareChain()

        self._state = FlowState.IDLE
        self._active = False
        self._popup: Optional[Popup] = None
        self._success_flag = False
        self._reported = False
        self._cancel_requested = False
        self.result: Optional[CompleteAuthorizationResult] = None
        self.last_error: Optional[AuthFlowError] = None

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        backend: AuthorizationBackend,
        **kwargs: Any,
    ) -> "FlowOrchestrator":
        """
        Orchestrator using the configured poll interval and flow timeout.

        Messages are expected from the origin of the registered redirect URI,
        where the callback page is served.
        """
        redirect = urlparse(settings.OIDC_REDIRECT_URI)
        kwargs.setdefault("poll_interval", settings.popup_poll_interval)
        kwargs.setdefault("flow_timeout", float(settings.AUTH_SESSION_MAX_AGE))
        if redirect.scheme and redirect.netloc:
            kwargs.setdefault("expected_origin", f"{redirect.scheme}://{redirect.netloc}")
        return cls(backend, **kwargs)

    @property
    def state(self) -> FlowState:
        return self._state

    def use(self, middleware: FlowMiddleware) -> "FlowOrchestrator":
        self._middleware.use(middleware)
        return self

    # =========================================================================
    # Public API
    # =========================================================================

    async def start_auth_flow(self, scope: Optional[str] = None) -> Optional[CompleteAuthorizationResult]:
        """
        Run one complete popup login.

        Returns:
            The completed authorization, or None if the flow ended in error or
            was cancelled (see ``last_error``)
        """
        if self._active:
            raise AuthFlowError("An authentication flow is already in progress", error="flow_in_progress")

        self._reset()
        self._active = True
        try:
            return await self._run_flow(scope)
        finally:
            self._active = False

    async def _run_flow(self, scope: Optional[str]) -> Optional[CompleteAuthorizationResult]:
        context: Dict[str, Any] = {"flow_id": uuid.uuid4().hex, "scope": scope}

        try:
            begin = await self._middleware.run(
                "start_auth_flow", context, lambda: self._open_window(scope)
            )
            context["state"] = begin.state

            message = await self._await_response(begin.state)
            code, state = await self._middleware.run(
                "handle_response", context, lambda: self._validate(message, begin.state)
            )

            self._success_flag = True
            self._state = FlowState.SUCCESS
            self._close_popup()

            result = await self._middleware.run(
                "exchange", context, lambda: self.backend.complete_authorization(code, state)
            )

        except _FlowCancelled:
            self._close_popup()
            return None
        except AuthFlowError as e:
            self._fail(e)
            return None
        except Exception as e:
            logger.exception("Unexpected error during authentication flow")
            self._fail(AuthFlowError(str(e), error="auth_flow_error"))
            return None

        if self._state is not FlowState.SUCCESS or self._reported:
            # Cancelled while the exchange was on the wire
            logger.info("Ignoring exchange result of a finished flow", extra={"flow_id": context["flow_id"]})
            return None

        self.result = result
        self._report_success(result)
        return result

    def handle_response(self, message: AuthResponseMessage, expected_state: str) -> Tuple[str, str]:
        """
        Validate an auth-response message against the pending attempt.

        Returns:
            (code, state)

        Raises:
            AuthenticationError: Provider error, missing parameters or state mismatch
        """
        params = _query_params(message)

        error = message.error or params.get("error")
        if message.status == "error" or error:
            raise AuthenticationError.provider_error(
                error or "authentication_failed",
                message.error_description or params.get("error_description"),
            )

        code = params.get("code")
        state = params.get("state")
        if not code or not state:
            raise AuthenticationError.invalid_response("Missing code or state")

        if state != expected_state:
            raise AuthenticationError.invalid_state(expected_state, state)

        return code, state

    def cancel(self) -> None:
        """Abort the current flow. An exchange result arriving afterwards is discarded."""
        if not self._active or self._reported or self._cancel_requested:
            return

        self._cancel_requested = True
        self._state = FlowState.CANCELLED
        self._close_popup()
        error = AuthFlowError(describe_error("cancelled"), error="cancelled")
        self.last_error = error
        self._report_error(error)

    # =========================================================================
    # Internal
    # =========================================================================

    def _reset(self) -> None:
        self._state = FlowState.IDLE
        self._success_flag = False
        self._reported = False
        self._cancel_requested = False
        self.result = None
        self.last_error = None
        self.channel.drain()

    async def _open_window(self, scope: Optional[str]):
        begin = await self.backend.begin_authorization(scope)
        if self._cancel_requested:
            raise _FlowCancelled()
        self._popup = self._popup_factory()
        self._popup.open(begin.url)
        self._state = FlowState.AWAITING_PROVIDER
        logger.info("Authentication flow started")
        return begin

    async def _validate(self, message: AuthResponseMessage, expected_state: str) -> Tuple[str, str]:
        return self.handle_response(message, expected_state)

    async def _await_response(self, expected_state: str) -> AuthResponseMessage:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self._flow_timeout

        while True:
            if self._cancel_requested:
                raise _FlowCancelled()

            remaining = deadline - loop.time()
            if remaining <= 0:
                raise AuthenticationError(describe_error("timeout"), error="timeout")

            try:
                raw = await asyncio.wait_for(
                    self.channel.receive(), min(self._poll_interval, remaining)
                )
            except asyncio.TimeoutError:
                raw = None

            if raw is not None:
                message = self._accept(raw, expected_state)
                if message is not None:
                    return message
                continue

            if self._cancel_requested:
                raise _FlowCancelled()

            if self._popup is not None and self._popup.closed and not self._success_flag:
                # A message may have landed just before the window closed
                while True:
                    pending = self.channel.receive_nowait()
                    if pending is None:
                        break
                    message = self._accept(pending, expected_state)
                    if message is not None:
                        return message
                raise PopupClosedError()

    def _accept(self, raw: ChannelMessage, expected_state: str) -> Optional[AuthResponseMessage]:
        if self._expected_origin not in (None, "*") and raw.origin != self._expected_origin:
            logger.warning("Ignoring message from unexpected origin", extra={"origin": raw.origin})
            return None

        message = raw.as_auth_response()
        if message is None:
            return None

        # Responses without a state are left to handle_response
        state = _query_params(message).get("state")
        if state is not None and state != expected_state:
            logger.warning("Ignoring auth-response of another authorization attempt")
            return None
        return message

    def _close_popup(self) -> None:
        if self._popup is not None and not self._popup.closed:
            self._popup.close()

    def _fail(self, error: AuthFlowError) -> None:
        if self._cancel_requested:
            return
        # A closed window is a user cancellation, not a provider failure
        if isinstance(error, PopupClosedError):
            self._state = FlowState.CANCELLED
        else:
            self._state = FlowState.ERROR
        self.last_error = error
        self._close_popup()
        logger.warning(
            "Authentication flow failed",
            extra={"error": error.error, "description": error.message},
        )
        self._report_error(error)

    def _report_success(self, result: CompleteAuthorizationResult) -> None:
        if self._reported:
            return
        self._reported = True
        logger.info("Authentication flow succeeded")
        if self._on_success is not None:
            try:
                self._on_success(result)
            except Exception:
                logger.exception("on_success callback failed")

    def _report_error(self, error: AuthFlowError) -> None:
        if self._reported:
            return
        self._reported = True
        if self._on_error is not None:
            try:
                self._on_error(error)
            except Exception:
                logger.exception("on_error callback failed")


def _query_params(message: AuthResponseMessage) -> Dict[str, str]:
    return {
        key: values[0]
        for key, values in parse_qs(message.query or "", keep_blank_values=True).items()
    }


class _FlowCancelled(Exception):
    pass
