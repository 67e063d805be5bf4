"""
FastAPI Relying Party Application Factory
=========================================

Entry point for a web application that signs users in with an external
OpenID Connect provider.

Architecture:
    Browser → this service (/login, /callback) → Identity Provider
    Browser → protected routes (session cookie checked by the guard)

Routers:
    - /login, /callback, /logout : Authentication flow
    - /, /claims                 : Sample public and protected routes
    - /health                    : Health check endpoint

Environment Variables Required:
    - OIDC_AUTHORITY: Issuer URL of the identity provider
    - OIDC_CLIENT_ID: Client ID registered with the provider
    - OIDC_CLIENT_SECRET: Client secret
    - OIDC_REDIRECT_URI: Callback URL registered with the provider
    - STATE_COOKIE_SECRET: Secret for signing the in-flight sign-in cookie
    - LOG_LEVEL: Logging level (default: INFO)

Running the Service:
    Development:
        uvicorn relying_party.app.main:create_app --factory --reload --port 8080

    Production:
        uvicorn relying_party.app.main:create_app --factory --host 0.0.0.0 --port 8080
"""

import logging
import sys
from contextlib import asynccontextmanager
from typing import Optional

import httpx
import uvicorn
from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse, RedirectResponse
from starlette.middleware.sessions import SessionMiddleware

from .auth.errors import OIDCError
from .auth.flow import build_auth_services
from .auth.routes import auth_router, callback, failure_response
from .auth.session import SignInRequired
from .config import Settings, get_settings, validate_configuration
from .home.routes import home_router
from .models import HealthResponse

SIGN_IN_COOKIE_NAME = "rp_auth"


# Configure structured JSON logging
def setup_logging(log_level: str = "INFO") -> None:
    """
    Configure structured logging for the application.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    """
    logging.basicConfig(
        level=getattr(logging, log_level.upper(), logging.INFO),
        format='{"timestamp": "%(asctime)s", "level": "%(levelname)s", "logger": "%(name)s", "message": "%(message)s", "module": "%(module)s", "function": "%(funcName)s"}',
        handlers=[logging.StreamHandler(sys.stdout)]
    )


# Lifespan context manager for startup/shutdown
@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan manager.

    Startup tasks:
        - Configure logging
        - Report configuration problems

    Shutdown tasks:
        - Close the shared outbound HTTP client
        - Drop cached provider metadata
    """
    services = app.state.auth
    settings = services.settings

    setup_logging(settings.LOG_LEVEL)
    logger = logging.getLogger("relying_party.main")

    report = validate_configuration(settings)
    for error in report["errors"]:
        logger.error(f"Configuration error: {error}")
    for warning in report["warnings"]:
        logger.warning(f"Configuration warning: {warning}")

    logger.info(
        "Relying party started",
        extra={
            "authority": settings.authority,
            "callback_path": settings.callback_path,
            "log_level": settings.LOG_LEVEL,
        }
    )

    yield

    logger.info("Shutting down relying party")

    if services.owns_http_client:
        await services.http_client.aclose()
    services.discovery.invalidate()

    logger.info("Relying party shutdown complete")


# Create FastAPI application
def create_app(
    settings: Optional[Settings] = None,
    http_client: Optional[httpx.AsyncClient] = None,
) -> FastAPI:
    """
    Application factory function.

    Args:
        settings: Settings to use instead of the environment
        http_client: Outbound HTTP client to use (tests inject a mock transport)

    Returns:
        FastAPI: Configured application instance
    """
    settings = settings or get_settings()

    app = FastAPI(
        title="OIDC Relying Party",
        description="Web application signing users in with an OpenID Connect provider",
        version="1.0.0",
        lifespan=lifespan,
    )

    app.state.auth = build_auth_services(settings, http_client)

    # Signed cookie carrying the browser binding of in-flight sign-ins
    app.add_middleware(
        SessionMiddleware,
        secret_key=settings.STATE_COOKIE_SECRET,
        session_cookie=SIGN_IN_COOKIE_NAME,
        max_age=settings.AUTH_REQUEST_TTL_SECONDS,
        same_site=settings.SESSION_COOKIE_SAMESITE,
        https_only=settings.SESSION_COOKIE_SECURE,
    )

    app.include_router(auth_router)
    if settings.callback_path != "/callback":
        app.add_api_route(settings.callback_path, callback, methods=["GET"], include_in_schema=False)
    app.include_router(home_router)

    # Health check endpoint
    @app.get("/health", tags=["System"], response_model=HealthResponse)
    async def health_check() -> HealthResponse:
        return HealthResponse(status="ok", service="relying-party")

    @app.exception_handler(SignInRequired)
    async def sign_in_required_handler(request: Request, exc: SignInRequired) -> RedirectResponse:
        """Send unauthenticated browsers to the identity provider."""
        return RedirectResponse(url=exc.authorization_url, status_code=status.HTTP_302_FOUND)

    @app.exception_handler(OIDCError)
    async def oidc_error_handler(request: Request, exc: OIDCError):
        """Sign-in failures outside the callback (e.g. discovery during the guard)."""
        logging.getLogger("relying_party.main").warning(
            "Sign-in error",
            extra={"path": request.url.path, "error_kind": exc.kind},
        )
        return failure_response(exc)

    # Global exception handler
    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """
        Global exception handler for unhandled errors.

        Logs the error and returns a standardized error response.
        """
        logger = logging.getLogger("relying_party.main")
        logger.error(
            f"Unhandled exception: {type(exc).__name__}",
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
            }
        )

    return app


if __name__ == "__main__":
    settings = get_settings()

    uvicorn.run(
        "relying_party.app.main:create_app",
        factory=True,
        host=settings.HOST,
        port=settings.PORT,
        log_level=settings.LOG_LEVEL.lower()
    )
