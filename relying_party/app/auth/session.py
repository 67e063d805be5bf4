"""
Application Session Management Module
=====================================

Binds validated identities to server-side sessions and guards protected
routes.

- SessionStore keeps sessions in memory, keyed by an opaque token
- SessionBinder creates, resolves and ends sessions with a bounded lifetime
- require_authentication is the FastAPI dependency protected routes declare

The browser only ever holds the opaque session token (HttpOnly cookie); no
claims are stored client-side.
"""

import logging
import secrets
import threading
from datetime import datetime, timedelta
from typing import Callable, Dict, Optional

from fastapi import Request

from ..models import Session, ValidatedIdentity, utcnow
from .errors import SessionError

logger = logging.getLogger(__name__)


# =============================================================================
# Session Store
# =============================================================================

class SessionStore:
    """Thread-safe in-memory session storage."""

    def __init__(self):
        self._lock = threading.Lock()
        self._sessions: Dict[str, Session] = {}

    def add(self, session: Session) -> None:
        with self._lock:
            self._sessions[session.session_id] = session

    def get(self, session_id: str) -> Optional[Session]:
        with self._lock:
            return self._sessions.get(session_id)

    def remove(self, session_id: str) -> Optional[Session]:
        with self._lock:
            return self._sessions.pop(session_id, None)

    def prune(self, now: datetime) -> int:
        """Remove expired sessions. Returns how many were removed."""
        with self._lock:
            expired = [sid for sid, s in self._sessions.items() if s.is_expired(now)]
            for sid in expired:
                del self._sessions[sid]
        return len(expired)

    def __len__(self) -> int:
        return len(self._sessions)


# =============================================================================
# Session Binder
# =============================================================================

class SessionBinder:
    """
    Maps validated identities to application sessions.

    Args:
        store: Session storage
        max_age_seconds: Upper bound on session lifetime
        match_id_token_expiry: Also cap the lifetime at the ID token expiry
        clock_skew_seconds: Tolerance past the ID token expiry, matching the validator
        clock: Time source, overridable in tests
    """

    def __init__(
        self,
        store: SessionStore,
        max_age_seconds: int = 8 * 3600,
        match_id_token_expiry: bool = True,
        clock_skew_seconds: int = 0,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.max_age = timedelta(seconds=max_age_seconds)
        self.match_id_token_expiry = match_id_token_expiry
        self.clock_skew = timedelta(seconds=clock_skew_seconds)
        self.clock = clock

    def bind_session(self, identity: ValidatedIdentity) -> Session:
        """
        Create a session for a validated identity.

        Raises:
            SessionError: If the identity has already expired
        """
        now = self.clock()
        expires_at = now + self.max_age
        if self.match_id_token_expiry:
            expires_at = min(expires_at, identity.expiry + self.clock_skew)

        if expires_at <= now:
            raise SessionError("Identity expired before a session could be created")

        self.store.prune(now)

        session = Session(
            session_id=secrets.token_urlsafe(32),
            subject=identity.subject,
            issued_at=now,
            expires_at=expires_at,
            identity=identity,
        )
        self.store.add(session)

        logger.info(
            "Session created",
            extra={"subject": identity.subject, "expires_at": expires_at.isoformat()},
        )
        return session

    def resolve_session(self, session_token: Optional[str]) -> Optional[Session]:
        """
        Look up a live session. None means the caller is unauthenticated.
        """
        if not session_token:
            return None

        session = self.store.get(session_token)
        if session is None:
            return None

        if session.is_expired(self.clock()):
            self.store.remove(session_token)
            logger.info("Session expired", extra={"subject": session.subject})
            return None

        return session

    def end_session(self, session_token: Optional[str]) -> None:
        """End a session. Unknown or empty tokens are ignored."""
        if not session_token:
            return
        session = self.store.remove(session_token)
        if session is not None:
            logger.info("Session ended", extra={"subject": session.subject})


# =============================================================================
# FastAPI Dependencies
# =============================================================================

BINDING_KEY = "rp_binding"


def browser_binding(request: Request) -> str:
    """
    Return the browser binding id kept in the signed sign-in cookie.

    The id ties an in-flight state value to the browser that started the
    attempt. It is created on first use.
    """
    binding = request.session.get(BINDING_KEY)
    if not isinstance(binding, str) or not binding:
        binding = secrets.token_urlsafe(16)
        request.session[BINDING_KEY] = binding
    return binding


class SignInRequired(Exception):
    """Raised by the guard to send the browser to the identity provider."""

    def __init__(self, authorization_url: str):
        self.authorization_url = authorization_url
        super().__init__("Sign-in required")


def get_current_session(request: Request) -> Optional[Session]:
    """
    FastAPI dependency for optional authentication.

    Usage:
        @router.get("/")
        async def index(session: Optional[Session] = Depends(get_current_session)):
            ...
    """
    services = request.app.state.auth
    token = request.cookies.get(services.settings.SESSION_COOKIE_NAME)
    return services.binder.resolve_session(token)


async def require_authentication(request: Request) -> Session:
    """
    Guard for protected routes.

    Resolves the session from the request cookie. Without a live session a
    new sign-in attempt is started for the requested path and SignInRequired
    is raised; the application turns it into a redirect to the provider.

    Usage in routes:
        @router.get("/claims")
        async def claims(session: Session = Depends(require_authentication)):
            return session.identity.claims
    """
    session = get_current_session(request)
    if session is not None:
        request.state.identity = session.identity
        return session

    return_path = request.url.path
    if request.url.query:
        return_path = f"{return_path}?{request.url.query}"

    authorization_url = await request.app.state.auth.flow.begin(
        return_path, browser_binding(request)
    )
    raise SignInRequired(authorization_url)


__all__ = [
    "SessionStore",
    "SessionBinder",
    "SignInRequired",
    "browser_binding",
    "get_current_session",
    "require_authentication",
]
