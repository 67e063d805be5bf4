"""
Authentication Flow Tests

End-to-end tests of the sign-in flow through the FastAPI application:
guard redirect, callback, session cookie, logout and failure handling.
The identity provider is the fake served through httpx.MockTransport.
"""

import logging
from urllib.parse import parse_qs, urlparse

import pytest
from fastapi.testclient import TestClient

from relying_party.app.auth.flow import generate_code_challenge, safe_return_path
from relying_party.app.main import create_app

from .conftest import AUTHORITY, CLIENT_ID, CLIENT_SECRET, REDIRECT_URI

GENERIC_MESSAGE = "Sign-in failed, please try again."


@pytest.fixture
def app(settings, http_client):
    return create_app(settings=settings, http_client=http_client)


@pytest.fixture
def client(app):
    with TestClient(app, base_url="https://testserver", follow_redirects=False) as test_client:
        yield test_client


def authorization_params(response):
    """Return the query parameters of a redirect to the provider."""
    location = response.headers["location"]
    assert location.startswith(f"{AUTHORITY}/protocol/openid-connect/auth?")
    return {k: v[0] for k, v in parse_qs(urlparse(location).query).items()}


def start_sign_in(client, provider, path="/claims"):
    """Hit a protected path and return the state the provider would echo back."""
    response = client.get(path)
    assert response.status_code == 302
    params = authorization_params(response)
    provider.nonce = params["nonce"]
    return params["state"]


def session_cookie_header(response):
    for header in response.headers.get_list("set-cookie"):
        if header.startswith("rp_session="):
            return header
    return None


class TestSignIn:
    """Test suite for the successful sign-in flow"""

    def test_protected_route_redirects_to_provider(self, client, provider):
        response = client.get("/claims")

        assert response.status_code == 302
        params = authorization_params(response)
        assert params["client_id"] == CLIENT_ID
        assert params["response_type"] == "code"
        assert params["redirect_uri"] == REDIRECT_URI
        assert params["response_mode"] == "query"
        assert params["scope"].split() == ["openid", "profile", "email"]
        assert params["code_challenge_method"] == "S256"
        assert params["state"] and params["nonce"]
        assert params["state"] != params["nonce"]
        assert len(provider.calls_to("/token")) == 0

    def test_full_sign_in(self, client, provider):
        state = start_sign_in(client, provider)

        response = client.get("/callback", params={"code": "ABC", "state": state})

        assert response.status_code == 302
        assert response.headers["location"] == "/claims"
        cookie = session_cookie_header(response).lower()
        assert "httponly" in cookie
        assert "secure" in cookie
        assert "samesite=lax" in cookie

        response = client.get("/claims")

        assert response.status_code == 200
        data = response.json()
        assert data["subject"] == "user-123"
        assert data["issuer"] == AUTHORITY
        assert data["name"] == "Test User"
        assert data["claims"]["email"] == "test.user@example.com"

    def test_token_request_carries_code_and_verifier(self, client, provider):
        response = client.get("/claims")
        params = authorization_params(response)
        provider.nonce = params["nonce"]

        client.get("/callback", params={"code": "ABC", "state": params["state"]})

        form = provider.token_form()
        assert form["code"] == ["ABC"]
        assert form["redirect_uri"] == [REDIRECT_URI]
        assert form["client_id"] == [CLIENT_ID]
        assert generate_code_challenge(form["code_verifier"][0]) == params["code_challenge"]

    def test_login_endpoint_keeps_return_path(self, client, provider):
        response = client.get("/login", params={"return_path": "/reports?page=2"})
        params = authorization_params(response)
        provider.nonce = params["nonce"]

        response = client.get("/callback", params={"code": "ABC", "state": params["state"]})

        assert response.headers["location"] == "/reports?page=2"

    def test_login_rejects_external_return_path(self, client, provider):
        response = client.get("/login", params={"return_path": "//evil.example.com/phish"})
        params = authorization_params(response)
        provider.nonce = params["nonce"]

        response = client.get("/callback", params={"code": "ABC", "state": params["state"]})

        assert response.status_code == 302
        assert response.headers["location"] == "/"

    def test_login_when_signed_in_skips_provider(self, client, provider):
        state = start_sign_in(client, provider)
        client.get("/callback", params={"code": "ABC", "state": state})

        response = client.get("/login", params={"return_path": "/claims"})

        assert response.status_code == 302
        assert response.headers["location"] == "/claims"

    def test_index_reports_sign_in_status(self, client, provider):
        assert client.get("/").json()["authenticated"] is False

        state = start_sign_in(client, provider)
        client.get("/callback", params={"code": "ABC", "state": state})

        data = client.get("/").json()
        assert data["authenticated"] is True
        assert data["name"] == "Test User"

    def test_discovery_fetched_once_across_sign_ins(self, client, provider):
        for _ in range(2):
            state = start_sign_in(client, provider)
            client.get("/callback", params={"code": "ABC", "state": state})
            client.post("/logout")

        assert len(provider.calls_to("/.well-known/openid-configuration")) == 1
        assert len(provider.calls_to("/certs")) == 1

    def test_secrets_not_logged(self, client, provider, caplog):
        caplog.set_level(logging.DEBUG)

        state = start_sign_in(client, provider)
        response = client.get("/callback", params={"code": "ABC", "state": state})
        session_id = client.cookies.get("rp_session")

        assert response.status_code == 302
        assert session_id
        for record in caplog.records:
            text = record.getMessage() + str(record.__dict__)
            assert CLIENT_SECRET not in text
            assert session_id not in text


class TestCallbackFailures:
    """Test suite for callbacks that must not produce a session"""

    def test_unknown_state(self, client, provider):
        start_sign_in(client, provider)

        response = client.get("/callback", params={"code": "ABC", "state": "forged-state"})

        assert response.status_code == 400
        assert GENERIC_MESSAGE in response.text
        assert session_cookie_header(response) is None
        assert len(provider.calls_to("/token")) == 0

    def test_replayed_state(self, client, provider):
        state = start_sign_in(client, provider)
        client.get("/callback", params={"code": "ABC", "state": state})

        response = client.get("/callback", params={"code": "ABC", "state": state})

        assert response.status_code == 400
        assert len(provider.calls_to("/token")) == 1

    def test_state_from_another_browser(self, app, client, provider):
        state = start_sign_in(client, provider)

        with TestClient(app, base_url="https://testserver", follow_redirects=False) as other:
            response = other.get("/callback", params={"code": "ABC", "state": state})

        assert response.status_code == 400
        assert len(provider.calls_to("/token")) == 0

    def test_missing_code(self, client, provider):
        state = start_sign_in(client, provider)

        response = client.get("/callback", params={"state": state})

        assert response.status_code == 400
        assert GENERIC_MESSAGE in response.text

    def test_provider_error_discards_attempt(self, client, provider):
        state = start_sign_in(client, provider)

        response = client.get(
            "/callback",
            params={"error": "access_denied", "error_description": "<b>denied</b>", "state": state},
        )

        assert response.status_code == 400
        assert "denied" not in response.text
        response = client.get("/callback", params={"code": "ABC", "state": state})
        assert response.status_code == 400
        assert len(provider.calls_to("/token")) == 0

    def test_error_callback_from_another_browser_keeps_attempt(self, app, client, provider):
        state = start_sign_in(client, provider)

        with TestClient(app, base_url="https://testserver", follow_redirects=False) as other:
            response = other.get("/callback", params={"error": "access_denied", "state": state})
        assert response.status_code == 400

        response = client.get("/callback", params={"code": "ABC", "state": state})

        assert response.status_code == 302
        assert response.headers["location"] == "/claims"
        assert session_cookie_header(response) is not None

    def test_token_endpoint_rejection(self, client, provider):
        state = start_sign_in(client, provider)
        provider.token_status = 400

        response = client.get("/callback", params={"code": "ABC", "state": state})

        assert response.status_code == 502
        assert GENERIC_MESSAGE in response.text
        assert "invalid_grant" not in response.text
        assert "code expired" not in response.text
        assert session_cookie_header(response) is None
        assert len(provider.calls_to("/token")) == 1

    def test_failed_exchange_is_not_resumable(self, client, provider):
        state = start_sign_in(client, provider)
        provider.token_status = 400
        client.get("/callback", params={"code": "ABC", "state": state})
        provider.token_status = 200

        response = client.get("/callback", params={"code": "ABC", "state": state})

        assert response.status_code == 400
        assert len(provider.calls_to("/token")) == 1

    def test_nonce_mismatch(self, client, provider):
        state = start_sign_in(client, provider)
        provider.nonce = "not-the-issued-nonce"

        response = client.get("/callback", params={"code": "ABC", "state": state})

        assert response.status_code == 400
        assert session_cookie_header(response) is None
        assert client.get("/claims").status_code == 302

    def test_discovery_failure_at_guard(self, client, provider):
        provider.discovery_status = 503

        response = client.get("/claims")

        assert response.status_code == 502
        assert GENERIC_MESSAGE in response.text


class TestLogout:
    """Test suite for ending sessions"""

    def test_logout_ends_session(self, client, provider):
        state = start_sign_in(client, provider)
        client.get("/callback", params={"code": "ABC", "state": state})
        assert client.get("/claims").status_code == 200

        response = client.post("/logout")

        assert response.status_code == 303
        assert response.headers["location"] == "/"
        response = client.get("/claims")
        assert response.status_code == 302
        authorization_params(response)

    def test_stale_cookie_after_logout_rejected(self, app, client, provider):
        state = start_sign_in(client, provider)
        client.get("/callback", params={"code": "ABC", "state": state})
        session_id = client.cookies.get("rp_session")
        client.post("/logout")

        with TestClient(
            app,
            base_url="https://testserver",
            follow_redirects=False,
            cookies={"rp_session": session_id},
        ) as replaying:
            assert replaying.get("/claims").status_code == 302


class TestReturnPath:
    """Test suite for post-login redirect sanitizing"""

    @pytest.mark.parametrize(
        "path,expected",
        [
            ("/claims", "/claims"),
            ("/a/b?c=d", "/a/b?c=d"),
            (None, "/"),
            ("", "/"),
            ("https://evil.example.com", "/"),
            ("//evil.example.com", "/"),
            ("/\\evil.example.com", "/"),
            ("/ok\r\nSet-Cookie: x=y", "/"),
        ],
    )
    def test_safe_return_path(self, path, expected):
        assert safe_return_path(path) == expected


class TestHealth:
    """Test suite for the health endpoint"""

    def test_health(self, client):
        response = client.get("/health")

        assert response.status_code == 200
        assert response.json()["status"] == "ok"
