"""
Authentication routes for OIDC login, callback and logout.

This module implements the browser-facing side of the OAuth 2.0 / OIDC
authorization code flow. The protocol work happens in SignInFlow; the
routes only translate between HTTP (query parameters, cookies, redirects)
and the flow.
"""

import html
import logging
from math import ceil
from typing import Optional

from fastapi import APIRouter, Query, Request, status
from fastapi.responses import HTMLResponse, RedirectResponse, Response

from ..models import Session, utcnow
from .errors import DiscoveryError, OIDCError, TokenExchangeError
from .flow import safe_return_path
from .session import BINDING_KEY, browser_binding, get_current_session

logger = logging.getLogger(__name__)

GENERIC_FAILURE_MESSAGE = "Sign-in failed, please try again."


# =============================================================================
# Router Setup
# =============================================================================

auth_router = APIRouter(tags=["authentication"])


# =============================================================================
# Login Endpoint
# =============================================================================

@auth_router.get("/login", response_class=RedirectResponse)
async def login(
    request: Request,
    return_path: Optional[str] = Query(None, description="Local path to return to after sign-in"),
):
    """
    Initiate the OIDC login flow by redirecting to the identity provider.

    Already signed-in browsers are sent straight to the return path.
    """
    if get_current_session(request) is not None:
        return RedirectResponse(url=safe_return_path(return_path), status_code=status.HTTP_302_FOUND)

    flow = request.app.state.auth.flow
    authorization_url = await flow.begin(return_path, browser_binding(request))
    return RedirectResponse(url=authorization_url, status_code=status.HTTP_302_FOUND)


# =============================================================================
# Callback Endpoint
# =============================================================================

async def callback(
    request: Request,
    code: Optional[str] = Query(None, description="Authorization code from the provider"),
    state: Optional[str] = Query(None, description="State parameter for CSRF protection"),
    error: Optional[str] = Query(None, description="Error code if authentication failed"),
    error_description: Optional[str] = Query(None, description="Error description"),
):
    """
    Handle the provider redirect after authentication.

    This endpoint:
    1. Rejects provider error responses (discarding the pending attempt)
    2. Hands code and state to the sign-in flow
    3. Sets the session cookie and redirects to the original path

    Every failure renders the same generic page; details go to the log only.
    """
    flow = request.app.state.auth.flow

    if error:
        logger.warning("Provider returned an error to the callback", extra={"error": error[:64]})
        flow.abandon(state, request.session.get(BINDING_KEY))
        return render_failure_page()

    if not code or not state:
        logger.warning("Callback missing code or state")
        flow.abandon(state, request.session.get(BINDING_KEY))
        return render_failure_page()

    try:
        session, return_path = await flow.complete(
            code=code,
            state=state,
            binding=request.session.get(BINDING_KEY),
        )
    except OIDCError as e:
        return failure_response(e)

    response = RedirectResponse(url=return_path, status_code=status.HTTP_302_FOUND)
    set_session_cookie(request, response, session)
    return response


auth_router.add_api_route(
    "/callback",
    callback,
    methods=["GET"],
    response_class=HTMLResponse,
    name="callback",
)


# =============================================================================
# Logout Endpoint
# =============================================================================

@auth_router.post("/logout")
async def logout(request: Request):
    """
    End the application session and clear the session cookie.

    Only the local session ends; the provider session is left alone.
    """
    services = request.app.state.auth
    cookie_name = services.settings.SESSION_COOKIE_NAME

    services.binder.end_session(request.cookies.get(cookie_name))

    response = RedirectResponse(url="/", status_code=status.HTTP_303_SEE_OTHER)
    response.delete_cookie(
        cookie_name,
        path="/",
        secure=services.settings.SESSION_COOKIE_SECURE,
        httponly=True,
        samesite=services.settings.SESSION_COOKIE_SAMESITE,
    )
    return response


# =============================================================================
# Cookie Helper
# =============================================================================

def set_session_cookie(request: Request, response: Response, session: Session) -> None:
    """Attach the opaque session token as an HttpOnly cookie."""
    settings = request.app.state.auth.settings
    max_age = max(0, ceil((session.expires_at - utcnow()).total_seconds()))

    response.set_cookie(
        settings.SESSION_COOKIE_NAME,
        session.session_id,
        max_age=max_age,
        path="/",
        secure=settings.SESSION_COOKIE_SECURE,
        httponly=True,
        samesite=settings.SESSION_COOKIE_SAMESITE,
    )


# =============================================================================
# Failure Responses
# =============================================================================

def failure_response(error: OIDCError) -> HTMLResponse:
    """
    Map a sign-in error to the generic failure page.

    Upstream failures (provider unreachable or refusing) answer 502; anything
    the browser sent us that did not check out answers 400.
    """
    if isinstance(error, (DiscoveryError, TokenExchangeError)):
        return render_failure_page(status_code=status.HTTP_502_BAD_GATEWAY)
    return render_failure_page()


def render_failure_page(
    message: str = GENERIC_FAILURE_MESSAGE,
    status_code: int = status.HTTP_400_BAD_REQUEST,
) -> HTMLResponse:
    """
    Render the error page for authentication failures.

    Args:
        message: User-facing message (never error details)
        status_code: HTTP status code
    """
    html_content = f"""
    <!DOCTYPE html>
    <html lang="en">
    <head>
        <meta charset="UTF-8">
        <meta name="viewport" content="width=device-width, initial-scale=1.0">
        <title>Sign-in failed</title>
        <style>
            body {{
                font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, Helvetica, Arial, sans-serif;
                background: #f3f4f6;
                min-height: 100vh;
                display: flex;
                align-items: center;
                justify-content: center;
                margin: 0;
            }}
            .container {{
                background: white;
                border-radius: 12px;
                padding: 40px;
                max-width: 500px;
                box-shadow: 0 10px 40px rgba(0,0,0,0.1);
                text-align: center;
            }}
            h1 {{ color: #1f2937; font-size: 24px; margin-bottom: 16px; }}
            .message {{ color: #6b7280; font-size: 16px; margin-bottom: 32px; }}
            .button {{
                display: inline-block;
                background: #667eea;
                color: white;
                padding: 14px 32px;
                border-radius: 8px;
                text-decoration: none;
                font-weight: 600;
            }}
        </style>
    </head>
    <body>
        <div class="container">
            <h1>Sign-in failed</h1>
            <p class="message">{html.escape(message)}</p>
            <a href="/login" class="button">Try Again</a>
        </div>
    </body>
    </html>
    """

    return HTMLResponse(content=html_content, status_code=status_code)
