"""
Authentication routes for the popup and full-page login flows.

Browser flow:
    GET  /start       Redirect to the provider (full-page login)
    GET  /callback    Provider redirect target
    GET  /error       Error page

API (used by the popup orchestrator and the frontend):
    POST /api/begin       Start an authorization attempt, returns the URL
    POST /api/exchange    Complete it with the callback's code and state
    GET  /api/status      Authentication status
    GET  /api/user        Current user (401 when not authenticated)
    POST /api/logout      Destroy the session (best-effort revocation)
    POST /api/refresh     Refresh the access token
    POST /api/introspect  Introspect a token

Protected example:
    GET  /protected/dashboard
"""

import html
import json
import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Body, Depends, Query, Request, status
from fastapi.responses import HTMLResponse, JSONResponse, RedirectResponse

from authflow.auth.context import AuthContext
from authflow.auth.service import AuthService
from authflow.auth.storage import SessionStorage
from authflow.config import Settings
from authflow.errors import (
    AuthenticationError,
    AuthFlowError,
    CodeExchangeError,
    ConfigurationError,
    InvalidTokenError,
    KeySetFetchError,
)
from authflow.models import (
    AuthResponseMessage,
    BeginAuthorizationRequest,
    BeginAuthorizationResult,
    CompleteAuthorizationResult,
    ExchangeRequest,
    IntrospectRequest,
    SessionInfo,
    SessionStatus,
    VerifiedClaims,
)

logger = logging.getLogger(__name__)


RETURN_URL_KEY = "return_url"


# =============================================================================
# Router Setup
# =============================================================================

auth_router = APIRouter(tags=["authentication"])


# =============================================================================
# Dependencies
# =============================================================================

def get_app_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_auth_service(request: Request) -> AuthService:
    """
    Build the authentication service for the current request's session.

    The key set cache, HTTP client and session store are shared
    application-wide; the storage and refresh lock belong to this browser
    session only.
    """
    settings = get_app_settings(request)
    session = request.app.state.session_store.bind(request.session)
    context = AuthContext(
        storage=SessionStorage(session),
        http_client=request.app.state.http_client,
        session_lock=session.lock,
    )
    return AuthService(settings, context, jwks_cache=request.app.state.jwks_cache)


async def require_authenticated_user(
    service: AuthService = Depends(get_auth_service),
) -> VerifiedClaims:
    """
    Dependency for routes that need a logged in user.

    Example:
        @router.get("/me")
        async def me(user: VerifiedClaims = Depends(require_authenticated_user)):
            return user

    Raises:
        AuthenticationError: ``unauthenticated`` (401) when there is no valid session
    """
    if not await service.is_authenticated():
        raise AuthenticationError.not_authenticated()

    user = await service.get_user_info()
    if user is None:
        raise AuthenticationError.not_authenticated()
    return user


def _session_info(service: AuthService) -> Optional[SessionInfo]:
    record = service.session.current()
    if record is None:
        return None
    return SessionInfo(authenticated_at=record.authenticated_at, expires_at=record.expires_at)


# =============================================================================
# Error Mapping
# =============================================================================

def error_status_code(exc: AuthFlowError) -> int:
    if isinstance(exc, AuthenticationError):
        if exc.error == "unauthenticated":
            return status.HTTP_401_UNAUTHORIZED
        return status.HTTP_400_BAD_REQUEST
    if isinstance(exc, InvalidTokenError):
        return status.HTTP_401_UNAUTHORIZED
    if isinstance(exc, (KeySetFetchError, CodeExchangeError)):
        return status.HTTP_502_BAD_GATEWAY
    return status.HTTP_500_INTERNAL_SERVER_ERROR


async def auth_error_handler(request: Request, exc: AuthFlowError) -> JSONResponse:
    """Render an ``AuthFlowError`` as ``{"error", "message"}`` JSON."""
    status_code = error_status_code(exc)

    log = logger.error if status_code >= 500 else logger.warning
    log(
        "Authentication request failed",
        extra={"path": request.url.path, "error": exc.error, "status": status_code},
    )

    content: Dict[str, Any] = {"error": exc.error, "message": exc.message}
    if isinstance(exc, InvalidTokenError):
        content["reason"] = exc.reason.value
    if isinstance(exc, CodeExchangeError):
        content["provider_message"] = exc.provider_message
    if isinstance(exc, ConfigurationError):
        content["message"] = "Authentication is not configured"

    return JSONResponse(status_code=status_code, content=content)


# =============================================================================
# Browser Flow
# =============================================================================

@auth_router.get("/start", response_class=RedirectResponse)
async def start(
    request: Request,
    return_url: Optional[str] = Query(None, description="Where to send the user after login"),
):
    """
    Start a full-page login by redirecting to the provider.

    The return URL is kept in the session; its presence tells /callback to
    complete the login server-side instead of relaying to a popup opener.
    """
    settings = get_app_settings(request)

    try:
        service = get_auth_service(request)
        begin = service.begin_authorization()
    except AuthFlowError as e:
        logger.error("Failed to start authentication", extra={"error": e.message})
        error_url = request.url_for("error_page").include_query_params(
            error="auth_start_failed",
            message="Failed to start authentication",
        )
        return RedirectResponse(url=str(error_url), status_code=302)

    service.context.storage.set(
        RETURN_URL_KEY,
        _safe_return_url(return_url) or settings.DEFAULT_REDIRECT_AFTER_LOGIN,
    )

    return RedirectResponse(url=begin.url, status_code=302)


@auth_router.get("/callback", response_class=HTMLResponse)
async def callback(
    request: Request,
    code: Optional[str] = Query(None, description="Authorization code from the provider"),
    state: Optional[str] = Query(None, description="State parameter for CSRF protection"),
    error: Optional[str] = Query(None, description="Error code if authentication failed"),
    error_description: Optional[str] = Query(None, description="Error description"),
):
    """
    Handle the provider redirect.

    Popup login: relay the raw query to the opener window, which completes the
    login through /api/exchange.

    Full-page login: exchange the code here and render the success page.
    """
    settings = get_app_settings(request)
    service = get_auth_service(request)
    storage = service.context.storage

    return_url = storage.get(RETURN_URL_KEY)

    if return_url is None:
        message = AuthResponseMessage(
            status="error" if error else "success",
            query=request.url.query,
            error=error,
            error_description=error_description,
        )
        return _render_relay_page(message, settings.FRONTEND_ORIGIN)

    storage.delete(RETURN_URL_KEY)

    if error:
        logger.warning(
            "OIDC provider returned error",
            extra={"error": error, "description": error_description},
        )
        return _render_error_page(error, error_description or "Authentication failed", settings.FRONTEND_ORIGIN)

    if not code or not state:
        logger.warning(
            "Missing code or state in callback",
            extra={"has_code": bool(code), "has_state": bool(state)},
        )
        return _render_error_page("invalid_callback", "Invalid callback parameters", settings.FRONTEND_ORIGIN)

    try:
        result = await service.complete_authorization(code, state)
    except AuthenticationError as e:
        logger.warning("Authentication failed", extra={"error": e.error})
        return _render_error_page("authentication_failed", e.message, settings.FRONTEND_ORIGIN)
    except AuthFlowError as e:
        logger.warning("Authentication failed", extra={"error": e.error})
        return _render_error_page(e.error, e.message, settings.FRONTEND_ORIGIN)
    except Exception:
        logger.exception("Unexpected error during authentication")
        return _render_error_page(
            "unexpected_error", "An unexpected error occurred", settings.FRONTEND_ORIGIN
        )

    logger.info(
        "Authentication successful",
        extra={"sub": result.user.sub if result.user else None},
    )
    return _render_success_page(result, return_url, settings.FRONTEND_ORIGIN)


@auth_router.get("/error", response_class=HTMLResponse, name="error_page")
async def error_page(
    request: Request,
    error: str = Query("unknown_error"),
    message: str = Query("An unknown error occurred"),
):
    settings = get_app_settings(request)
    return _render_error_page(error, message, settings.FRONTEND_ORIGIN)


# =============================================================================
# API
# =============================================================================

@auth_router.post("/api/begin", response_model=BeginAuthorizationResult)
async def begin(
    body: Optional[BeginAuthorizationRequest] = Body(None),
    service: AuthService = Depends(get_auth_service),
):
    """Start a popup login. Replaces any pending attempt of this session."""
    result = service.begin_authorization(body.scope if body else None)
    service.context.storage.delete(RETURN_URL_KEY)
    return result


@auth_router.post("/api/exchange", response_model=CompleteAuthorizationResult)
async def exchange(
    body: ExchangeRequest,
    service: AuthService = Depends(get_auth_service),
):
    """Complete a popup login with the code and state relayed by the callback."""
    return await service.complete_authorization(body.code, body.state)


@auth_router.get("/api/status", response_model=SessionStatus)
async def auth_status(service: AuthService = Depends(get_auth_service)):
    if not await service.is_authenticated():
        return SessionStatus(authenticated=False)

    user = await service.get_user_info()
    return SessionStatus(
        authenticated=True,
        user=user.model_dump() if user else None,
        session_info=_session_info(service),
    )


@auth_router.get("/api/user")
async def user_info(
    user: VerifiedClaims = Depends(require_authenticated_user),
    service: AuthService = Depends(get_auth_service),
):
    info = _session_info(service)
    return {
        "user": user.model_dump(),
        "session_info": info.model_dump() if info else None,
    }


@auth_router.post("/api/logout")
async def logout(service: AuthService = Depends(get_auth_service)):
    await service.logout()
    return {"success": True, "message": "Logged out successfully"}


@auth_router.post("/api/refresh")
async def refresh(service: AuthService = Depends(get_auth_service)):
    result = await service.refresh_token()
    if result is None:
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={"error": "refresh_failed", "message": "Failed to refresh token"},
        )
    return {"success": True, "token_info": result.model_dump()}


@auth_router.post("/api/introspect")
async def introspect(
    body: IntrospectRequest,
    service: AuthService = Depends(get_auth_service),
):
    result = await service.introspect(body.token)
    if result is None:
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={"error": "introspection_failed", "message": "Token introspection failed"},
        )
    return {"success": True, "introspection": result.model_dump()}


# =============================================================================
# Protected Example
# =============================================================================

@auth_router.get("/protected/dashboard")
async def dashboard(user: VerifiedClaims = Depends(require_authenticated_user)):
    return {"message": "Welcome to protected area", "user": user.model_dump()}


# =============================================================================
# HTML Response Templates
# =============================================================================

def _safe_return_url(url: Optional[str]) -> Optional[str]:
    """Only same-site relative paths are accepted as return URLs."""
    if url and url.startswith("/") and not url.startswith("//"):
        return url
    return None


def _script_json(data: Any) -> str:
    # Keep "</script>" inside string values from closing the script element
    return json.dumps(data).replace("</", "<\\/")


_PAGE_STYLE = """
            body {
                font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, Helvetica, Arial, sans-serif;
                background: linear-gradient(135deg, #667eea 0%, #764ba2 100%);
                min-height: 100vh;
                margin: 0;
                display: flex;
                align-items: center;
                justify-content: center;
            }
            .container {
                background: white;
                border-radius: 12px;
                padding: 40px;
                max-width: 500px;
                box-shadow: 0 10px 40px rgba(0,0,0,0.2);
                text-align: center;
            }
            h1 { color: #1f2937; font-size: 24px; }
            .message { color: #6b7280; font-size: 16px; line-height: 1.6; }
"""


def _render_page(
    title: str,
    message: str,
    payload: Dict[str, Any],
    frontend_origin: str,
    redirect_url: Optional[str] = None,
    status_code: int = 200,
) -> HTMLResponse:
    """
    Render a page that posts ``payload`` to its opener (or parent frame).

    Popups close themselves after posting; a top-level window follows
    ``redirect_url`` when one is given.
    """
    html_content = f"""
    <!DOCTYPE html>
    <html lang="en">
    <head>
        <meta charset="UTF-8">
        <meta name="viewport" content="width=device-width, initial-scale=1.0">
        <title>{html.escape(title)}</title>
        <style>{_PAGE_STYLE}</style>
    </head>
    <body>
        <div class="container">
            <h1>{html.escape(title)}</h1>
            <p class="message">{html.escape(message)}</p>
        </div>
        <script>
            (function() {{
                var data = {_script_json(payload)};
                var origin = {_script_json(frontend_origin)};
                var redirectUrl = {_script_json(redirect_url)};
                var target = window.opener && !window.opener.closed
                    ? window.opener
                    : (window.parent !== window ? window.parent : null);
                if (target) {{
                    target.postMessage(data, origin);
                    if (window.opener) {{
                        window.close();
                    }}
                }} else if (redirectUrl) {{
                    window.location.href = redirectUrl;
                }}
            }})();
        </script>
    </body>
    </html>
    """
    return HTMLResponse(content=html_content, status_code=status_code)


def _render_relay_page(message: AuthResponseMessage, frontend_origin: str) -> HTMLResponse:
    return _render_page(
        title="Completing sign-in",
        message="You can close this window if it does not close automatically.",
        payload=message.model_dump(exclude_none=True),
        frontend_origin=frontend_origin,
    )


def _render_success_page(
    result: CompleteAuthorizationResult,
    return_url: str,
    frontend_origin: str,
) -> HTMLResponse:
    message = AuthResponseMessage(
        status="success",
        user=result.user.model_dump() if result.user else None,
    )
    return _render_page(
        title="Login Successful",
        message="You are now signed in.",
        payload=message.model_dump(exclude_none=True),
        frontend_origin=frontend_origin,
        redirect_url=return_url,
    )


def _render_error_page(error: str, description: str, frontend_origin: str) -> HTMLResponse:
    message = AuthResponseMessage(
        status="error",
        error=error,
        error_description=description,
    )
    return _render_page(
        title="Authentication Failed",
        message=description,
        payload=message.model_dump(exclude_none=True),
        frontend_origin=frontend_origin,
        status_code=400,
    )
