"""
Home Routes - Sample Public and Protected Pages
===============================================

Routes that stand in for the application behind the sign-in. Protection is
declared where the route is registered: ``protected_router`` carries the
authentication guard as a router-level dependency, so every route added to
it requires a live session.

Endpoints:
----------
- GET /:       public index, reports whether the caller is signed in
- GET /claims: protected, returns the signed-in identity's claims
"""

import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends

from ..auth.session import get_current_session, require_authentication
from ..models import IdentityResponse, Session

logger = logging.getLogger(__name__)

home_router = APIRouter(tags=["home"])

protected_router = APIRouter(
    tags=["home"],
    dependencies=[Depends(require_authentication)],
)


@home_router.get("/")
async def index(session: Optional[Session] = Depends(get_current_session)) -> Dict[str, Any]:
    """Public landing page."""
    if session is None:
        return {"authenticated": False, "login": "/login"}

    return {
        "authenticated": True,
        "name": session.identity.display_name,
        "logout": "/logout",
    }


@protected_router.get("/claims", response_model=IdentityResponse)
async def claims(session: Session = Depends(require_authentication)) -> IdentityResponse:
    """
    Show the claims of the signed-in user.

    Unauthenticated browsers never reach this body: the guard redirects them
    to the identity provider and back here after sign-in.
    """
    identity = session.identity
    logger.debug("Serving claims", extra={"subject": identity.subject})

    return IdentityResponse(
        subject=identity.subject,
        issuer=identity.issuer,
        name=identity.display_name,
        claims=identity.claims,
        session_expires_at=session.expires_at,
    )


home_router.include_router(protected_router)
