"""
Shared fixtures: RSA signing keys, an ID token minter, and a fake identity
provider served through httpx.MockTransport.
"""

import json
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional
from urllib.parse import parse_qs

import httpx
import jwt
import pytest
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from jwt.algorithms import RSAAlgorithm

from relying_party.app.config import Settings

AUTHORITY = "https://idp.example.com/realms/main"
CLIENT_ID = "rp-client"
CLIENT_SECRET = "rp-client-secret-value"
REDIRECT_URI = "https://testserver/callback"
TEST_KID = "test-key-2024"


# =============================================================================
# Keys and Tokens
# =============================================================================

def generate_test_key():
    """Generate an RSA private key for signing test tokens"""
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


def private_pem(private_key) -> str:
    return private_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    ).decode()


def public_jwk(private_key, kid: str = TEST_KID) -> Dict[str, Any]:
    """Convert the public half of a key to JWK format"""
    key = RSAAlgorithm.to_jwk(private_key.public_key(), as_dict=True)
    key["kid"] = kid
    key["use"] = "sig"
    key["alg"] = "RS256"
    return key


# Generate test keys once for reuse
TEST_PRIVATE_KEY = generate_test_key()
OTHER_PRIVATE_KEY = generate_test_key()


def mint_id_token(
    nonce: Optional[str] = "test-nonce",
    private_key=None,
    kid: Optional[str] = TEST_KID,
    exp_delta_minutes: int = 60,
    **overrides,
) -> str:
    """
    Create an RS256 ID token.

    Keyword overrides replace (or, with value None, remove) payload claims.
    """
    now = datetime.now(timezone.utc)
    payload = {
        "iss": AUTHORITY,
        "sub": "user-123",
        "aud": CLIENT_ID,
        "exp": int((now + timedelta(minutes=exp_delta_minutes)).timestamp()),
        "iat": int(now.timestamp()),
        "nonce": nonce,
        "name": "Test User",
        "email": "test.user@example.com",
    }
    payload.update(overrides)
    payload = {k: v for k, v in payload.items() if v is not None}

    headers = {"kid": kid} if kid else {}
    return jwt.encode(
        payload,
        private_pem(private_key or TEST_PRIVATE_KEY),
        algorithm="RS256",
        headers=headers,
    )


# =============================================================================
# Fake Identity Provider
# =============================================================================

class FakeProvider:
    """
    Minimal identity provider answering discovery, JWKS and token requests.

    Tests tweak the public attributes to change responses; every request is
    recorded in ``requests``.
    """

    def __init__(self):
        self.issuer = AUTHORITY
        self.jwks_keys: List[Dict[str, Any]] = [public_jwk(TEST_PRIVATE_KEY)]
        self.nonce: Optional[str] = None
        self.token_status = 200
        self.token_body: Optional[Any] = None
        self.discovery_status = 200
        self.token_errors: List[Exception] = []
        self.requests: List[httpx.Request] = []

    def metadata(self) -> Dict[str, Any]:
        return {
            "issuer": self.issuer,
            "authorization_endpoint": f"{AUTHORITY}/protocol/openid-connect/auth",
            "token_endpoint": f"{AUTHORITY}/protocol/openid-connect/token",
            "jwks_uri": f"{AUTHORITY}/protocol/openid-connect/certs",
            "end_session_endpoint": f"{AUTHORITY}/protocol/openid-connect/logout",
        }

    def calls_to(self, suffix: str) -> List[httpx.Request]:
        return [r for r in self.requests if r.url.path.endswith(suffix)]

    def token_form(self, index: int = -1) -> Dict[str, List[str]]:
        return parse_qs(self.calls_to("/token")[index].content.decode())

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path

        if path.endswith("/.well-known/openid-configuration"):
            return httpx.Response(self.discovery_status, json=self.metadata())

        if path.endswith("/certs"):
            return httpx.Response(200, json={"keys": self.jwks_keys})

        if path.endswith("/token"):
            if self.token_errors:
                raise self.token_errors.pop(0)
            if self.token_status != 200:
                return httpx.Response(
                    self.token_status,
                    json={"error": "invalid_grant", "error_description": "code expired"},
                )
            body = self.token_body
            if body is None:
                body = {
                    "access_token": "provider-access-token",
                    "token_type": "Bearer",
                    "expires_in": 300,
                    "id_token": mint_id_token(nonce=self.nonce),
                }
            if isinstance(body, (dict, list)):
                return httpx.Response(200, content=json.dumps(body).encode(),
                                      headers={"Content-Type": "application/json"})
            return httpx.Response(200, content=body)

        return httpx.Response(404)


# =============================================================================
# Fixtures
# =============================================================================

@pytest.fixture
def provider():
    return FakeProvider()


@pytest.fixture
def http_client(provider):
    """Async HTTP client routed to the fake provider"""
    return httpx.AsyncClient(transport=httpx.MockTransport(provider.handler))


@pytest.fixture
def settings():
    return Settings(
        OIDC_AUTHORITY=AUTHORITY,
        OIDC_CLIENT_ID=CLIENT_ID,
        OIDC_CLIENT_SECRET=CLIENT_SECRET,
        OIDC_REDIRECT_URI=REDIRECT_URI,
        STATE_COOKIE_SECRET="test-state-cookie-secret-1234567890abcdef",
        HTTP_RETRY_BACKOFF_SECONDS=0,
        _env_file=None,
    )


class FakeClock:
    """Settable clock for TTL tests"""

    def __init__(self, start: Optional[datetime] = None):
        self.now = start or datetime(2024, 1, 1, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


@pytest.fixture
def clock():
    return FakeClock()
