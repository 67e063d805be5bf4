"""
Configuration module for the OIDC relying party service.

This module uses Pydantic Settings to load and validate environment variables
for the identity provider connection, the sign-in flow, cookie sessions and
outbound HTTP behaviour.

Environment variables are loaded from .env file or system environment.
"""

from functools import lru_cache
from typing import List, Optional
from urllib.parse import urlparse

from pydantic import Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


_LOCAL_HOSTS = ("localhost", "127.0.0.1", "::1")


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    The identity provider is addressed by its authority (issuer) URL; all
    endpoints are discovered from its metadata document at runtime.
    """

    # =========================================================================
    # Identity Provider / Client Registration
    # =========================================================================

    OIDC_AUTHORITY: str = Field(
        ...,
        description="Issuer URL of the identity provider (e.g., https://idp.example.com/realms/main)",
        min_length=1,
    )

    OIDC_CLIENT_ID: str = Field(
        ...,
        description="Client ID registered with the identity provider",
        min_length=1,
    )

    OIDC_CLIENT_SECRET: SecretStr = Field(
        ...,
        description="Client secret (confidential client)",
    )

    OIDC_REDIRECT_URI: str = Field(
        ...,
        description="Redirect URI registered with the provider (e.g., https://app.example.com/callback)",
        min_length=1,
    )

    OIDC_SCOPES: str = Field(
        default="openid profile email",
        description="Space-separated scopes requested at sign-in",
    )

    OIDC_USE_PKCE: bool = Field(
        default=True,
        description="Send a PKCE S256 challenge with the authorization request",
    )

    OIDC_TOKEN_ENDPOINT_AUTH_METHOD: str = Field(
        default="client_secret_post",
        description="Client authentication at the token endpoint (client_secret_post or client_secret_basic)",
    )

    OIDC_ALLOWED_ALGORITHMS: str = Field(
        default="RS256",
        description="Comma-separated ID token signing algorithms accepted",
    )

    # =========================================================================
    # Caching, Lifetimes and Tolerances
    # =========================================================================

    DISCOVERY_CACHE_SECONDS: int = Field(
        default=86400,
        description="Time to cache provider metadata and signing keys in seconds",
        ge=60,
        le=7 * 86400,
    )

    AUTH_REQUEST_TTL_SECONDS: int = Field(
        default=600,
        description="Lifetime of an unconsumed state/nonce pair in seconds",
        ge=30,
        le=3600,
    )

    CLOCK_SKEW_SECONDS: int = Field(
        default=300,
        description="Clock skew tolerated when checking ID token exp/nbf",
        ge=0,
        le=900,
    )

    HTTP_TIMEOUT_SECONDS: float = Field(
        default=10.0,
        description="Timeout for outbound calls (discovery, JWKS, token endpoint)",
        gt=0,
        le=60,
    )

    HTTP_RETRY_BACKOFF_SECONDS: float = Field(
        default=0.5,
        description="Delay before the single retry of a transient outbound failure",
        ge=0,
        le=10,
    )

    # =========================================================================
    # Session Cookie Configuration
    # =========================================================================

    SESSION_MAX_AGE_SECONDS: int = Field(
        default=8 * 3600,
        description="Maximum lifetime of an application session in seconds",
        ge=60,
        le=7 * 86400,
    )

    SESSION_MATCH_ID_TOKEN_EXPIRY: bool = Field(
        default=True,
        description="Cap the session lifetime at the ID token expiry",
    )

    SESSION_COOKIE_NAME: str = Field(
        default="rp_session",
        description="Name of the cookie holding the opaque session token",
        min_length=1,
    )

    SESSION_COOKIE_SECURE: bool = Field(
        default=True,
        description="Mark cookies Secure (only disable for local http development)",
    )

    SESSION_COOKIE_SAMESITE: str = Field(
        default="lax",
        description="SameSite attribute for cookies (lax or strict)",
    )

    STATE_COOKIE_SECRET: str = Field(
        ...,
        description="Secret used to sign the in-flight sign-in cookie",
        min_length=32,
    )

    # =========================================================================
    # Server Configuration
    # =========================================================================

    LOG_LEVEL: str = Field(default="INFO", description="Logging level")

    HOST: str = Field(default="0.0.0.0", description="Host to bind the server")

    PORT: int = Field(default=8080, description="Port to bind the server", ge=1, le=65535)

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
    )

    # =========================================================================
    # Computed Properties
    # =========================================================================

    @property
    def authority(self) -> str:
        """Authority URL with one trailing slash removed."""
        authority = self.OIDC_AUTHORITY
        return authority[:-1] if authority.endswith("/") else authority

    @property
    def scopes_list(self) -> List[str]:
        return [scope for scope in self.OIDC_SCOPES.split() if scope]

    @property
    def allowed_algorithms_list(self) -> List[str]:
        return [
            alg.strip()
            for alg in self.OIDC_ALLOWED_ALGORITHMS.split(",")
            if alg.strip()
        ]

    @property
    def callback_path(self) -> str:
        """Path component of the redirect URI, used to mount the callback route."""
        return urlparse(self.OIDC_REDIRECT_URI).path or "/callback"

    # =========================================================================
    # Validators
    # =========================================================================

    @field_validator("OIDC_AUTHORITY")
    @classmethod
    def validate_authority(cls, v: str) -> str:
        """
        Require an https authority; plain http is tolerated for local providers.

        Raises:
            ValueError: If the URL is not absolute or uses an insecure scheme
        """
        parsed = urlparse(v)
        if not parsed.scheme or not parsed.netloc:
            raise ValueError(f"OIDC_AUTHORITY must be an absolute URL, got: {v}")
        if parsed.scheme != "https" and parsed.hostname not in _LOCAL_HOSTS:
            raise ValueError("OIDC_AUTHORITY must use https")
        return v

    @field_validator("OIDC_REDIRECT_URI")
    @classmethod
    def validate_redirect_uri(cls, v: str) -> str:
        parsed = urlparse(v)
        if not parsed.scheme or not parsed.netloc:
            raise ValueError(f"OIDC_REDIRECT_URI must be an absolute URL, got: {v}")
        return v

    @field_validator("OIDC_SCOPES")
    @classmethod
    def validate_scopes(cls, v: str) -> str:
        if "openid" not in v.split():
            raise ValueError("OIDC_SCOPES must include 'openid'")
        return v

    @field_validator("OIDC_TOKEN_ENDPOINT_AUTH_METHOD")
    @classmethod
    def validate_auth_method(cls, v: str) -> str:
        allowed_methods = ["client_secret_post", "client_secret_basic"]

        if v not in allowed_methods:
            raise ValueError(
                f"Token endpoint auth method must be one of {allowed_methods}, got: {v}"
            )

        return v

    @field_validator("OIDC_ALLOWED_ALGORITHMS")
    @classmethod
    def validate_algorithms(cls, v: str) -> str:
        """
        Only asymmetric algorithms may verify ID tokens.

        HMAC algorithms would let anyone holding the client secret mint tokens,
        and 'none' disables verification altogether.
        """
        supported = {"RS256", "RS384", "RS512", "PS256", "PS384", "PS512", "ES256", "ES384", "ES512"}
        algorithms = [alg.strip() for alg in v.split(",") if alg.strip()]

        if not algorithms:
            raise ValueError("OIDC_ALLOWED_ALGORITHMS must contain at least one algorithm")

        for alg in algorithms:
            if alg not in supported:
                raise ValueError(
                    f"Unsupported ID token algorithm: '{alg}'. "
                    f"Expected one of {sorted(supported)}"
                )

        return v

    @field_validator("SESSION_COOKIE_SAMESITE")
    @classmethod
    def validate_samesite(cls, v: str) -> str:
        v = v.lower()
        if v not in ("lax", "strict"):
            raise ValueError("SESSION_COOKIE_SAMESITE must be 'lax' or 'strict'")
        return v


# =============================================================================
# Settings Singleton
# =============================================================================

@lru_cache()
def get_settings() -> Settings:
    """
    Get or create a singleton Settings instance.

    Raises:
        ValidationError: If required environment variables are missing
                        or invalid.
    """
    return Settings()


# =============================================================================
# Configuration Helpers
# =============================================================================

def validate_configuration(settings: Optional[Settings] = None) -> dict:
    """
    Validate critical configuration settings and return a status report.

    Called during application startup; errors are logged, not raised, since
    the pydantic validators already reject outright invalid values.
    """
    settings = settings or get_settings()
    errors = []
    warnings = []

    if not settings.OIDC_CLIENT_SECRET.get_secret_value():
        errors.append("OIDC_CLIENT_SECRET is empty (required for confidential clients)")

    redirect = urlparse(settings.OIDC_REDIRECT_URI)
    if redirect.scheme != "https" and redirect.hostname not in _LOCAL_HOSTS:
        errors.append("OIDC_REDIRECT_URI must use https outside local development")

    if not settings.SESSION_COOKIE_SECURE:
        warnings.append("SESSION_COOKIE_SECURE is disabled (cookies sent over plain http)")

    if not settings.OIDC_USE_PKCE:
        warnings.append("PKCE is disabled")

    if settings.SESSION_MAX_AGE_SECONDS > 86400 and not settings.SESSION_MATCH_ID_TOKEN_EXPIRY:
        warnings.append("Sessions may outlive a day without re-authentication")

    return {
        "valid": len(errors) == 0,
        "errors": errors,
        "warnings": warnings,
        "authority": settings.authority,
        "callback_path": settings.callback_path,
    }
