"""
FastAPI Application Factory
===========================

Entry point of the authflow relying party service.

Routers:
    - /auth/*       : Login flows, callback relay and session API
    - /health       : Health check endpoint

Environment Variables (see authflow/config.py for the full list):
    - OIDC_BASE_URL, OIDC_AUTH_SERVER: Provider location
    - OIDC_CLIENT_ID, OIDC_CLIENT_SECRET, OIDC_REDIRECT_URI: Client registration
    - OIDC_SCOPE: Requested scopes (default: "openid profile")
    - SESSION_SECRET: Secret for signing the session cookie
    - FRONTEND_ORIGIN: Origin receiving the popup's auth-response message
    - ALLOWED_ORIGINS: Comma-separated CORS origins
    - LOG_LEVEL: Logging level (default: INFO)

Running the Service:
    Development:
        uvicorn authflow.main:app --reload --host 0.0.0.0 --port 8080

    Production:
        uvicorn authflow.main:app --host 0.0.0.0 --port 8080 --workers 4
"""

import logging
import sys
from contextlib import asynccontextmanager
from typing import Dict, Optional

import httpx
import uvicorn
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.middleware.sessions import SessionMiddleware

from authflow import __version__
from authflow.auth.jwks import JwksCache
from authflow.auth.routes import auth_error_handler, auth_router
from authflow.auth.storage import ServerSessionStore
from authflow.config import Settings, get_settings, validate_configuration
from authflow.errors import AuthFlowError


# Configure structured JSON logging
def setup_logging(log_level: str = "INFO") -> None:
    """
    Configure structured logging for the application.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    """
    logging.basicConfig(
        level=getattr(logging, log_level.upper()),
        format='{"timestamp": "%(asctime)s", "level": "%(levelname)s", "logger": "%(name)s", "message": "%(message)s", "module": "%(module)s", "function": "%(funcName)s"}',
        handlers=[logging.StreamHandler(sys.stdout)]
    )


logger = logging.getLogger("authflow.main")


# Lifespan context manager for startup/shutdown
@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan manager.

    Startup tasks:
        - Configure logging
        - Report configuration problems
        - Create the shared HTTP client and JWKS cache (unless injected)

    Shutdown tasks:
        - Close the HTTP client if this lifespan created it
    """
    settings: Settings = app.state.settings
    setup_logging(settings.LOG_LEVEL)

    report = validate_configuration(settings)
    for error in report["errors"]:
        logger.error("Configuration error", extra={"error": error})
    for warning in report["warnings"]:
        logger.warning("Configuration warning", extra={"warning": warning})

    owns_client = app.state.http_client is None
    if owns_client:
        app.state.http_client = httpx.AsyncClient()
        app.state.jwks_cache = _create_jwks_cache(settings, app.state.http_client)

    logger.info(
        "Authflow service started",
        extra={
            "authorization_endpoint": settings.authorization_endpoint,
            "log_level": settings.LOG_LEVEL,
        },
    )

    yield

    logger.info("Shutting down authflow service")
    if owns_client:
        await app.state.http_client.aclose()
        app.state.http_client = None
        app.state.jwks_cache = None


def _create_jwks_cache(settings: Settings, http_client: httpx.AsyncClient) -> JwksCache:
    return JwksCache(
        settings.jwks_uri,
        http_client,
        ttl=settings.JWKS_CACHE_SECONDS,
        timeout=settings.NETWORK_TIMEOUT_SECONDS,
    )


# Create FastAPI application
def create_app(
    settings: Optional[Settings] = None,
    http_client: Optional[httpx.AsyncClient] = None,
) -> FastAPI:
    """
    Application factory function.

    Args:
        settings: Settings to use (defaults to environment settings)
        http_client: Shared HTTP client for provider calls; created by the
            lifespan when omitted

    Returns:
        FastAPI: Configured application instance
    """
    settings = settings or get_settings()

    app = FastAPI(
        title="Authflow",
        description="OAuth 2.0 authorization code + PKCE relying party with OIDC ID token verification",
        version=__version__,
        lifespan=lifespan,
        docs_url="/docs",
        redoc_url="/redoc"
    )

    app.state.settings = settings
    app.state.http_client = http_client
    app.state.jwks_cache = _create_jwks_cache(settings, http_client) if http_client else None
    app.state.session_store = ServerSessionStore(max_age=settings.SESSION_MAX_AGE_SECONDS)

    # Configure CORS
    origins = settings.allowed_origins_list
    if origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=origins,
            allow_credentials=True,
            allow_methods=["GET", "POST", "OPTIONS"],
            allow_headers=["*"],
        )

    # Signed cookie carrying only the server-side session id
    app.add_middleware(
        SessionMiddleware,
        secret_key=settings.SESSION_SECRET,
        session_cookie=settings.SESSION_COOKIE_NAME,
        max_age=settings.SESSION_MAX_AGE_SECONDS,
        same_site="lax",
        https_only=settings.USE_SECURE_COOKIES,
    )

    app.include_router(auth_router, prefix=settings.ROUTE_PREFIX)
    app.add_exception_handler(AuthFlowError, auth_error_handler)

    # Health check endpoint
    @app.get("/health", tags=["System"])
    async def health_check() -> Dict[str, str]:
        return {
            "status": "ok",
            "service": "authflow",
            "version": __version__
        }

    # Root endpoint
    @app.get("/", tags=["System"])
    async def root() -> Dict[str, object]:
        """Service metadata and available endpoints."""
        return {
            "service": "authflow",
            "version": __version__,
            "endpoints": {
                "health": "/health",
                "docs": "/docs",
                "login": f"{settings.ROUTE_PREFIX}/start",
                "api": f"{settings.ROUTE_PREFIX}/api",
            }
        }

    # Global exception handler
    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """
        Global exception handler for unhandled errors.

        Logs the error and returns a standardized error response.
        """
        logger.error(
            f"Unhandled exception: {str(exc)}",
            extra={
                "path": request.url.path,
                "method": request.method,
                "exception_type": type(exc).__name__
            },
            exc_info=True
        )

        return JSONResponse(
            status_code=500,
            content={
                "error": "internal_server_error",
                "message": "An unexpected error occurred",
                "detail": str(exc) if settings.SHOW_DETAILED_ERRORS else None
            }
        )

    return app


# Create app instance for uvicorn
app = create_app()


if __name__ == "__main__":
    settings = get_settings()

    uvicorn.run(
        "authflow.main:app",
        host="0.0.0.0",
        port=8080,
        reload=True,
        log_level=settings.LOG_LEVEL.lower()
    )
