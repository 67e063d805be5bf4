"""
Data Models Module

Pydantic models shared by the sign-in components. All of them are frozen:
once a component hands one out, nobody mutates it in place.

- ProviderMetadata:   discovery document subset, owned by the discovery cache
- AuthRequestState:   one in-flight sign-in attempt (state, nonce, return path)
- ClientCredentials:  confidential client registration
- TokenSet:           token endpoint response, consumed by the validator
- ValidatedIdentity:  ID token claims that passed every check
- Session:            server-side application session
"""

from datetime import datetime, timezone
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field, SecretStr


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


class _FrozenModel(BaseModel):
    model_config = ConfigDict(frozen=True)


# ============================================================================
# Discovery
# ============================================================================

class ProviderMetadata(_FrozenModel):
    """Endpoints of the identity provider, as published in its discovery document."""
    issuer: str = Field(..., description="Issuer identifier, equal to the authority")
    authorization_endpoint: str = Field(..., description="Browser-facing authorization URL")
    token_endpoint: str = Field(..., description="Back-channel token URL")
    jwks_uri: str = Field(..., description="Location of the provider's signing keys")
    end_session_endpoint: Optional[str] = Field(None, description="RP-initiated logout URL, if offered")
    fetched_at: datetime = Field(..., description="When this metadata was fetched")


# ============================================================================
# Sign-in Attempt
# ============================================================================

class AuthRequestState(_FrozenModel):
    """State and nonce issued for a single sign-in attempt."""
    state: str = Field(..., description="Anti-forgery value round-tripped through the redirect")
    nonce: str = Field(..., description="Replay-protection value echoed inside the ID token")
    return_path: str = Field("/", description="Local path to return to after sign-in")
    created_at: datetime = Field(..., description="Issue time, used for expiry")
    binding: str = Field(..., description="Browser binding id of the session that started the attempt")
    code_verifier: Optional[str] = Field(None, description="PKCE verifier, when PKCE is used")


class ClientCredentials(_FrozenModel):
    """Confidential client registration. The secret never appears in reprs."""
    client_id: str
    client_secret: SecretStr


# ============================================================================
# Tokens and Identity
# ============================================================================

class TokenSet(_FrozenModel):
    """Tokens returned by the token endpoint. Never persisted."""
    id_token: str = Field(..., repr=False)
    access_token: Optional[str] = Field(None, repr=False)
    token_type: Optional[str] = None
    expires_at: Optional[datetime] = Field(None, description="Access token expiry")


class ValidatedIdentity(_FrozenModel):
    """Identity established from an ID token that passed every validation check."""
    subject: str
    issuer: str
    audience: str
    claims: Dict[str, Any] = Field(default_factory=dict)
    expiry: datetime

    @property
    def display_name(self) -> str:
        """
        Best-effort human readable name from the standard profile claims.

        Returns:
            name, preferred_username or email, falling back to the subject
        """
        for claim_name in ("name", "preferred_username", "email"):
            value = self.claims.get(claim_name)
            if isinstance(value, str) and value:
                return value
        return self.subject


# ============================================================================
# Sessions
# ============================================================================

class Session(_FrozenModel):
    """Server-side session; the browser holds only the opaque session_id."""
    session_id: str = Field(..., repr=False)
    subject: str
    issued_at: datetime
    expires_at: datetime
    identity: ValidatedIdentity

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return (now or utcnow()) >= self.expires_at


# ============================================================================
# Responses
# ============================================================================

class HealthResponse(BaseModel):
    """Health check response model."""
    status: str = Field(..., description="Service health status")
    service: str = Field(..., description="Service name")
    timestamp: datetime = Field(default_factory=utcnow, description="Check timestamp")


class IdentityResponse(BaseModel):
    """Identity details returned by protected routes."""
    subject: str
    issuer: str
    name: str
    claims: Dict[str, Any]
    session_expires_at: datetime
