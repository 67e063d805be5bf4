"""
Authorization code exchange against the provider's token endpoint.

The code is single use. A failed exchange is never replayed by the caller;
the sign-in attempt restarts from a fresh authorization request instead.
Nothing sensitive is logged here: not the client secret, not the code, not
the returned tokens, and not the provider's error body.
"""

import logging
from datetime import datetime, timedelta
from typing import Callable, Dict, Optional

import httpx

from ..models import ClientCredentials, TokenSet, utcnow
from .errors import TokenExchangeError
from .http import request_with_retry

logger = logging.getLogger(__name__)

AUTH_METHODS = ("client_secret_post", "client_secret_basic")


class TokenExchangeClient:
    """
    Redeems authorization codes for tokens.

    Args:
        http_client: Shared async HTTP client
        auth_method: client_secret_post (credentials in the form body) or
            client_secret_basic (HTTP Basic authentication)
        timeout: Timeout for the token request
        retry_backoff: Delay before retrying a transient failure
        clock: Time source, overridable in tests
    """

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        auth_method: str = "client_secret_post",
        timeout: float = 10.0,
        retry_backoff: float = 0.5,
        clock: Callable[[], datetime] = utcnow,
    ):
        if auth_method not in AUTH_METHODS:
            raise ValueError(f"Unsupported token endpoint auth method: {auth_method}")
        self.http_client = http_client
        self.auth_method = auth_method
        self.timeout = timeout
        self.retry_backoff = retry_backoff
        self.clock = clock

    async def exchange(
        self,
        code: str,
        redirect_uri: str,
        credentials: ClientCredentials,
        token_endpoint: str,
        code_verifier: Optional[str] = None,
    ) -> TokenSet:
        """
        Exchange an authorization code for tokens.

        Args:
            code: Authorization code from the callback
            redirect_uri: Redirect URI (must match the one used at authorization)
            credentials: Client ID and secret
            token_endpoint: Token endpoint from provider metadata
            code_verifier: PKCE verifier, when the request carried a challenge

        Returns:
            TokenSet holding the raw ID token and optional access token

        Raises:
            TokenExchangeError: On non-success response, network error,
                timeout, or malformed response body
        """
        payload = {
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": redirect_uri,
            "client_id": credentials.client_id,
        }
        request_kwargs = {}

        if self.auth_method == "client_secret_basic":
            request_kwargs["auth"] = httpx.BasicAuth(
                credentials.client_id, credentials.client_secret.get_secret_value()
            )
        else:
            payload["client_secret"] = credentials.client_secret.get_secret_value()

        if code_verifier:
            payload["code_verifier"] = code_verifier

        try:
            response = await request_with_retry(
                self.http_client,
                "POST",
                token_endpoint,
                timeout=self.timeout,
                backoff_seconds=self.retry_backoff,
                data=payload,
                headers={
                    "Accept": "application/json",
                    "Content-Type": "application/x-www-form-urlencoded",
                },
                **request_kwargs,
            )
        except httpx.HTTPError as e:
            logger.error(
                "Token exchange request failed",
                extra={"token_endpoint": token_endpoint, "error_type": type(e).__name__},
            )
            raise TokenExchangeError(f"Token endpoint unreachable: {type(e).__name__}") from e

        if not response.is_success:
            # Status only: provider error bodies may echo the code or client details
            logger.warning(
                "Token endpoint rejected the exchange",
                extra={"token_endpoint": token_endpoint, "status_code": response.status_code},
            )
            raise TokenExchangeError(
                f"Token exchange failed with HTTP {response.status_code}",
                status_code=response.status_code,
            )

        token_set = self._parse_token_response(response)
        logger.info(
            "Authorization code exchanged",
            extra={
                "token_endpoint": token_endpoint,
                "has_access_token": token_set.access_token is not None,
            },
        )
        return token_set

    def _parse_token_response(self, response: httpx.Response) -> TokenSet:
        try:
            token_data = response.json()
        except ValueError as e:
            raise TokenExchangeError("Token response is not JSON", response.status_code) from e

        if not isinstance(token_data, dict):
            raise TokenExchangeError("Token response is not a JSON object", response.status_code)

        id_token = token_data.get("id_token")
        if not isinstance(id_token, str) or not id_token:
            raise TokenExchangeError("Token response missing id_token", response.status_code)

        access_token = token_data.get("access_token")
        if access_token is not None and not isinstance(access_token, str):
            raise TokenExchangeError("Token response has malformed access_token", response.status_code)

        token_type = token_data.get("token_type")
        if access_token is not None and (
            not isinstance(token_type, str) or token_type.lower() != "bearer"
        ):
            raise TokenExchangeError("Token response has unsupported token_type", response.status_code)

        return TokenSet(
            id_token=id_token,
            access_token=access_token,
            token_type=token_type,
            expires_at=self._expires_at(token_data, response.status_code),
        )

    def _expires_at(self, token_data: Dict, status_code: int) -> Optional[datetime]:
        expires_in = token_data.get("expires_in")
        if expires_in is None:
            return None
        # Some providers send expires_in as a numeric string
        if isinstance(expires_in, str) and expires_in.isdigit():
            expires_in = int(expires_in)
        if isinstance(expires_in, bool) or not isinstance(expires_in, int) or expires_in < 0:
            raise TokenExchangeError("Token response has malformed expires_in", status_code)
        return self.clock() + timedelta(seconds=expires_in)
