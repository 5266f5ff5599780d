"""
Middleware chain for the flow orchestrator.

Middlewares observe the orchestrator's operations (``start_auth_flow``,
``handle_response``, ``exchange``) through explicit hooks. ``before`` hooks
run in registration order, ``after`` and ``on_error`` hooks in reverse order.
A failing hook is logged and never changes the outcome of the operation.
"""

import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional

logger = logging.getLogger(__name__)


Tracker = Callable[[str, Dict[str, Any]], None]


class FlowMiddleware:
    """Base class; override the hooks you need."""

    name = "middleware"

    def before(self, operation: str, context: Dict[str, Any]) -> None:
        pass

    def after(self, operation: str, context: Dict[str, Any], result: Any) -> None:
        pass

    def on_error(self, operation: str, context: Dict[str, Any], exc: BaseException) -> None:
        pass


class MiddlewareChain:
    def __init__(self):
        self._middlewares: List[FlowMiddleware] = []

    def use(self, middleware: FlowMiddleware) -> None:
        self._middlewares.append(middleware)

    def remove(self, middleware: FlowMiddleware) -> None:
        self._middlewares.remove(middleware)

    def __len__(self) -> int:
        return len(self._middlewares)

    def _call(self, middleware: FlowMiddleware, hook: str, *args: Any) -> None:
        try:
            getattr(middleware, hook)(*args)
        except Exception:
            logger.exception(
                "Flow middleware hook failed",
                extra={"middleware": middleware.name, "hook": hook},
            )

    async def run(
        self,
        operation: str,
        context: Dict[str, Any],
        call: Callable[[], Awaitable[Any]],
    ) -> Any:
        """Run ``call`` wrapped by every registered middleware."""
        for middleware in self._middlewares:
            self._call(middleware, "before", operation, context)

        try:
            result = await call()
        except Exception as e:
            for middleware in reversed(self._middlewares):
                self._call(middleware, "on_error", operation, context, e)
            raise

        for middleware in reversed(self._middlewares):
            self._call(middleware, "after", operation, context, result)

        return result


# =============================================================================
# Built-in Middlewares
# =============================================================================

class LoggingMiddleware(FlowMiddleware):
    """Debug trace of every orchestrator operation."""

    name = "logging"

    def __init__(self, log: Optional[logging.Logger] = None):
        self._log = log or logger

    def before(self, operation, context):
        self._log.debug("Flow operation started", extra={"operation": operation, "flow_id": context.get("flow_id")})

    def after(self, operation, context, result):
        self._log.debug("Flow operation finished", extra={"operation": operation, "flow_id": context.get("flow_id")})

    def on_error(self, operation, context, exc):
        self._log.debug(
            "Flow operation failed",
            extra={
                "operation": operation,
                "flow_id": context.get("flow_id"),
                "error": getattr(exc, "error", type(exc).__name__),
            },
        )


class AnalyticsMiddleware(FlowMiddleware):
    """
    Emits ``auth_started``, ``auth_success`` and ``auth_error`` events.

    Args:
        tracker: Callable receiving ``(event, data)``
    """

    name = "analytics"

    def __init__(self, tracker: Tracker):
        self._tracker = tracker

    def before(self, operation, context):
        if operation == "start_auth_flow":
            self._tracker("auth_started", {"flow_id": context.get("flow_id")})

    def after(self, operation, context, result):
        if operation == "exchange":
            self._tracker("auth_success", {"flow_id": context.get("flow_id")})

    def on_error(self, operation, context, exc):
        self._tracker(
            "auth_error",
            {
                "flow_id": context.get("flow_id"),
                "operation": operation,
                "error": getattr(exc, "error", type(exc).__name__),
            },
        )
