"""
Sign-in flow orchestration.

SignInFlow drives one authorization-code sign-in through its stages:

    begin:     DISCOVERY -> AUTHORIZE
    complete:  STATE -> DISCOVERY -> EXCHANGE -> VALIDATE -> BIND

Every stage either hands its result to the next or raises an OIDCError,
which ends the attempt. The state entry is consumed before anything else
happens on the callback, so a failed attempt can never be resumed and the
authorization code is never redeemed twice.
"""

import base64
import enum
import hashlib
import logging
import secrets
from dataclasses import dataclass
from typing import Optional, Tuple
from urllib.parse import urlencode

import httpx

from ..config import Settings
from ..models import ClientCredentials, Session
from .discovery import DiscoveryCache
from .errors import OIDCError, StateBindingError
from .session import SessionBinder, SessionStore
from .state import StateStore
from .token_exchange import TokenExchangeClient
from .validation import TokenValidator

logger = logging.getLogger(__name__)


class SignInStage(str, enum.Enum):
    DISCOVERY = "discovery"
    AUTHORIZE = "authorize"
    STATE = "state"
    EXCHANGE = "exchange"
    VALIDATE = "validate"
    BIND = "bind"


# =============================================================================
# PKCE Helper Functions
# =============================================================================

def generate_code_verifier() -> str:
    """
    Generate a cryptographically random code verifier for PKCE.

    Returns:
        Base64-URL-encoded random string (43 characters)
    """
    verifier_bytes = secrets.token_bytes(32)
    return base64.urlsafe_b64encode(verifier_bytes).decode("utf-8").rstrip("=")


def generate_code_challenge(verifier: str) -> str:
    """
    Generate code challenge from verifier using S256 method.

    Returns:
        Base64-URL-encoded SHA256 hash of verifier
    """
    digest = hashlib.sha256(verifier.encode("utf-8")).digest()
    return base64.urlsafe_b64encode(digest).decode("utf-8").rstrip("=")


# =============================================================================
# Return Path Handling
# =============================================================================

def safe_return_path(path: Optional[str], default: str = "/") -> str:
    """
    Accept only local absolute paths as post-login targets.

    "//host" and "/\\host" are treated by browsers as other origins, so they
    are rejected along with anything carrying a scheme.
    """
    if not path or not path.startswith("/"):
        return default
    if path.startswith("//") or path.startswith("/\\"):
        return default
    if any(ch in path for ch in ("\r", "\n")):
        return default
    return path


# =============================================================================
# Flow
# =============================================================================

class SignInFlow:
    """
    Explicit authorization-code state machine for a single provider.

    Args:
        settings: Application settings (authority, client registration, scopes)
        discovery: Provider metadata/JWKS cache
        states: State/nonce store
        token_client: Token endpoint client
        validator: ID token validator
        binder: Session binder
    """

    def __init__(
        self,
        settings: Settings,
        discovery: DiscoveryCache,
        states: StateStore,
        token_client: TokenExchangeClient,
        validator: TokenValidator,
        binder: SessionBinder,
    ):
        self.settings = settings
        self.discovery = discovery
        self.states = states
        self.token_client = token_client
        self.validator = validator
        self.binder = binder
        self.credentials = ClientCredentials(
            client_id=settings.OIDC_CLIENT_ID,
            client_secret=settings.OIDC_CLIENT_SECRET,
        )

    async def begin(self, return_path: Optional[str], binding: str) -> str:
        """
        Start a sign-in attempt.

        Args:
            return_path: Local path to come back to after sign-in
            binding: Browser binding id of the requesting browser

        Returns:
            Authorization URL to redirect the browser to

        Raises:
            DiscoveryError: If provider metadata is unavailable
        """
        stage = SignInStage.DISCOVERY
        try:
            metadata = await self.discovery.get_metadata(self.settings.authority)

            stage = SignInStage.AUTHORIZE
            code_verifier = generate_code_verifier() if self.settings.OIDC_USE_PKCE else None
            entry = self.states.create(
                return_path=safe_return_path(return_path),
                binding=binding,
                code_verifier=code_verifier,
            )
        except OIDCError as e:
            self._log_failure(stage, e)
            raise

        params = {
            "client_id": self.settings.OIDC_CLIENT_ID,
            "response_type": "code",
            "redirect_uri": self.settings.OIDC_REDIRECT_URI,
            "response_mode": "query",
            "scope": " ".join(self.settings.scopes_list),
            "state": entry.state,
            "nonce": entry.nonce,
        }
        if code_verifier:
            params["code_challenge"] = generate_code_challenge(code_verifier)
            params["code_challenge_method"] = "S256"

        endpoint = metadata.authorization_endpoint
        separator = "&" if "?" in endpoint else "?"

        logger.info(
            "Sign-in started",
            extra={"state_prefix": entry.state[:8], "return_path": entry.return_path},
        )
        return f"{endpoint}{separator}{urlencode(params)}"

    async def complete(self, code: str, state: str, binding: Optional[str]) -> Tuple[Session, str]:
        """
        Finish a sign-in attempt from the provider callback.

        Args:
            code: Authorization code
            state: State value echoed by the provider
            binding: Browser binding id from the callback request

        Returns:
            The new session and the sanitized path to redirect to

        Raises:
            OIDCError: Any stage failed; the attempt is over
        """
        stage = SignInStage.STATE
        try:
            entry = self.states.consume(state)
            if binding is None or entry.binding != binding:
                raise StateBindingError("State was issued to a different browser")

            stage = SignInStage.DISCOVERY
            metadata = await self.discovery.get_metadata(self.settings.authority)
            signing_keys = await self.discovery.get_signing_keys(self.settings.authority)

            stage = SignInStage.EXCHANGE
            token_set = await self.token_client.exchange(
                code=code,
                redirect_uri=self.settings.OIDC_REDIRECT_URI,
                credentials=self.credentials,
                token_endpoint=metadata.token_endpoint,
                code_verifier=entry.code_verifier,
            )

            stage = SignInStage.VALIDATE
            identity = await self.validator.validate(
                token_set.id_token,
                expected_issuer=metadata.issuer,
                expected_audience=self.settings.OIDC_CLIENT_ID,
                expected_nonce=entry.nonce,
                signing_keys=signing_keys,
                refresh_keys=lambda: self.discovery.refresh_signing_keys(self.settings.authority),
            )

            stage = SignInStage.BIND
            session = self.binder.bind_session(identity)
        except OIDCError as e:
            self._log_failure(stage, e)
            raise

        logger.info("Sign-in completed", extra={"subject": session.subject})
        return session, entry.return_path

    def abandon(self, state: Optional[str], binding: Optional[str]) -> None:
        """
        Discard the attempt behind a callback that carried a provider error.

        Attempts issued to another browser are left alone.
        """
        if state and self.states.discard(state, binding):
            logger.info("Sign-in abandoned", extra={"state_prefix": state[:8]})

    @staticmethod
    def _log_failure(stage: SignInStage, error: OIDCError) -> None:
        logger.warning(
            "Sign-in failed",
            extra={"stage": stage.value, "error_kind": error.kind},
        )


# =============================================================================
# Service Container
# =============================================================================

@dataclass
class AuthServices:
    """Sign-in components shared by all requests of one application."""
    settings: Settings
    http_client: httpx.AsyncClient
    discovery: DiscoveryCache
    states: StateStore
    token_client: TokenExchangeClient
    validator: TokenValidator
    binder: SessionBinder
    flow: SignInFlow
    owns_http_client: bool = True


def build_auth_services(
    settings: Settings,
    http_client: Optional[httpx.AsyncClient] = None,
) -> AuthServices:
    """Wire the sign-in components from settings."""
    owns_http_client = http_client is None
    if http_client is None:
        http_client = httpx.AsyncClient(
            timeout=settings.HTTP_TIMEOUT_SECONDS,
            follow_redirects=False,
        )

    discovery = DiscoveryCache(
        http_client,
        ttl_seconds=settings.DISCOVERY_CACHE_SECONDS,
        timeout=settings.HTTP_TIMEOUT_SECONDS,
        retry_backoff=settings.HTTP_RETRY_BACKOFF_SECONDS,
    )
    states = StateStore(ttl_seconds=settings.AUTH_REQUEST_TTL_SECONDS)
    token_client = TokenExchangeClient(
        http_client,
        auth_method=settings.OIDC_TOKEN_ENDPOINT_AUTH_METHOD,
        timeout=settings.HTTP_TIMEOUT_SECONDS,
        retry_backoff=settings.HTTP_RETRY_BACKOFF_SECONDS,
    )
    validator = TokenValidator(
        allowed_algorithms=settings.allowed_algorithms_list,
        clock_skew_seconds=settings.CLOCK_SKEW_SECONDS,
    )
    binder = SessionBinder(
        SessionStore(),
        max_age_seconds=settings.SESSION_MAX_AGE_SECONDS,
        match_id_token_expiry=settings.SESSION_MATCH_ID_TOKEN_EXPIRY,
        clock_skew_seconds=settings.CLOCK_SKEW_SECONDS,
    )
    flow = SignInFlow(settings, discovery, states, token_client, validator, binder)

    return AuthServices(
        settings=settings,
        http_client=http_client,
        discovery=discovery,
        states=states,
        token_client=token_client,
        validator=validator,
        binder=binder,
        flow=flow,
        owns_http_client=owns_http_client,
    )
