"""
Sign-in error taxonomy.

Every failure of the relying party core derives from OIDCError. The ``kind``
attribute is a short, secret-free label that is safe to log; messages may
carry more detail for developers but are never shown to end users.
"""

from typing import Optional


class OIDCError(Exception):
    """Base exception for relying party sign-in failures."""

    kind = "oidc"

    def __init__(self, message: str = "Sign-in failed"):
        self.message = message
        super().__init__(message)


# =============================================================================
# Discovery
# =============================================================================

class DiscoveryError(OIDCError):
    """Provider metadata or signing keys could not be fetched or were malformed."""

    kind = "discovery"


# =============================================================================
# State / Nonce
# =============================================================================

class StateNotFoundError(OIDCError):
    """The callback carried a state value this service never issued."""

    kind = "state_not_found"


class StateBindingError(StateNotFoundError):
    """The state was issued, but to a different browser session."""

    kind = "state_binding"


class ReplayError(OIDCError):
    """The state value was already consumed (or superseded)."""

    kind = "replay"


class ExpiredError(OIDCError):
    """The state value outlived its time-to-live before the callback arrived."""

    kind = "state_expired"


# =============================================================================
# Token Exchange
# =============================================================================

class TokenExchangeError(OIDCError):
    """
    The authorization code could not be redeemed.

    Attributes:
        status_code: HTTP status from the token endpoint, if a response arrived
    """

    kind = "token_exchange"

    def __init__(self, message: str = "Token exchange failed", status_code: Optional[int] = None):
        self.status_code = status_code
        super().__init__(message)


# =============================================================================
# ID Token Validation
# =============================================================================

class ValidationError(OIDCError):
    """ID token rejected. The base class covers structurally malformed tokens."""

    kind = "malformed"


class InvalidSignatureError(ValidationError):
    kind = "signature"


class InvalidIssuerError(ValidationError):
    kind = "issuer"


class InvalidAudienceError(ValidationError):
    kind = "audience"


class TokenExpiredError(ValidationError):
    """Token is outside its [nbf, exp] window, skew included."""

    kind = "expiry"


class InvalidNonceError(ValidationError):
    kind = "nonce"


# =============================================================================
# Sessions
# =============================================================================

class SessionError(OIDCError):
    """A validated identity could not be bound to an application session."""

    kind = "session"


__all__ = [
    "OIDCError",
    "DiscoveryError",
    "StateNotFoundError",
    "StateBindingError",
    "ReplayError",
    "ExpiredError",
    "TokenExchangeError",
    "ValidationError",
    "InvalidSignatureError",
    "InvalidIssuerError",
    "InvalidAudienceError",
    "TokenExpiredError",
    "InvalidNonceError",
    "SessionError",
]
