"""
ID token validation.

This module handles:
- Selecting the provider signing key that matches the token's kid
- Verifying the JWS signature (with one key refresh for rotated keys)
- Validating issuer, audience, lifetime and nonce claims

Checks run in a fixed order and stop at the first failure, each with its own
ValidationError subtype. A ValidatedIdentity is only ever built after all
of them pass.
"""

import hmac
import json
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence

from jose import jwk, jws
from jose.exceptions import JOSEError

from ..models import ValidatedIdentity, utcnow
from .errors import (
    InvalidAudienceError,
    InvalidIssuerError,
    InvalidNonceError,
    InvalidSignatureError,
    TokenExpiredError,
    ValidationError,
)

logger = logging.getLogger(__name__)

KeyRefresher = Callable[[], Awaitable[List[Dict[str, Any]]]]


class TokenValidator:
    """
    Validates raw ID tokens against provider keys and the expected context.

    Args:
        allowed_algorithms: JWS algorithms accepted for ID tokens
        clock_skew_seconds: Tolerance applied to exp and nbf
        clock: Time source, overridable in tests
    """

    def __init__(
        self,
        allowed_algorithms: Sequence[str] = ("RS256",),
        clock_skew_seconds: int = 300,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.allowed_algorithms = list(allowed_algorithms)
        self.clock_skew = timedelta(seconds=clock_skew_seconds)
        self.clock = clock

    async def validate(
        self,
        id_token: str,
        expected_issuer: str,
        expected_audience: str,
        expected_nonce: str,
        signing_keys: List[Dict[str, Any]],
        refresh_keys: Optional[KeyRefresher] = None,
    ) -> ValidatedIdentity:
        """
        Verify an ID token and return the identity it asserts.

        Args:
            id_token: Raw compact-serialized JWT from the token endpoint
            expected_issuer: Issuer from provider metadata
            expected_audience: Our client ID
            expected_nonce: Nonce bound to this sign-in attempt
            signing_keys: Provider's current JWKS keys
            refresh_keys: Called once to re-fetch keys if none verify

        Raises:
            InvalidSignatureError, InvalidIssuerError, InvalidAudienceError,
            TokenExpiredError, InvalidNonceError: The named check failed
            ValidationError: The token is structurally malformed
        """
        claims = await self._verify_signature(id_token, signing_keys, refresh_keys)

        if not isinstance(claims.get("sub"), str) or not claims["sub"]:
            raise ValidationError("ID token missing 'sub' claim")

        self._check_issuer(claims, expected_issuer)
        self._check_audience(claims, expected_audience)
        expiry = self._check_lifetime(claims)
        self._check_nonce(claims, expected_nonce)

        logger.debug("ID token validated", extra={"issuer": expected_issuer})

        return ValidatedIdentity(
            subject=claims["sub"],
            issuer=claims["iss"],
            audience=expected_audience,
            claims=claims,
            expiry=expiry,
        )

    # =========================================================================
    # 1. Signature
    # =========================================================================

    async def _verify_signature(
        self,
        id_token: str,
        signing_keys: List[Dict[str, Any]],
        refresh_keys: Optional[KeyRefresher],
    ) -> Dict[str, Any]:
        try:
            header = jws.get_unverified_header(id_token)
        except JOSEError as e:
            raise InvalidSignatureError(f"Failed to decode token header: {e}") from e

        alg = header.get("alg")
        if alg not in self.allowed_algorithms:
            raise InvalidSignatureError(f"Token algorithm not allowed: {alg}")

        payload = self._verify_with_keys(id_token, header, alg, signing_keys)

        if payload is None and refresh_keys is not None:
            # Keys may have rotated since they were cached
            logger.info("No cached key verified the ID token, refreshing signing keys")
            payload = self._verify_with_keys(id_token, header, alg, await refresh_keys())

        if payload is None:
            raise InvalidSignatureError(
                "Unable to verify token signature with any provider signing key"
            )

        try:
            claims = json.loads(payload)
        except ValueError as e:
            raise ValidationError("ID token payload is not JSON") from e

        if not isinstance(claims, dict):
            raise ValidationError("ID token payload is not a JSON object")

        return claims

    def _verify_with_keys(
        self,
        id_token: str,
        header: Dict[str, Any],
        alg: str,
        keys: List[Dict[str, Any]],
    ) -> Optional[bytes]:
        """Return the verified payload, or None when no candidate key verifies."""
        for key_data in self._candidate_keys(header, keys):
            try:
                public_key = jwk.construct(key_data, algorithm=alg)
            except (JOSEError, ValueError, TypeError, KeyError, AttributeError):
                # Structurally broken JWK entries are skipped, not fatal
                logger.warning(
                    "Skipping unusable signing key",
                    extra={"kid": key_data.get("kid"), "kty": key_data.get("kty")},
                )
                continue
            try:
                return jws.verify(id_token, public_key, algorithms=[alg])
            except JOSEError:
                continue
        return None

    @staticmethod
    def _candidate_keys(header: Dict[str, Any], keys: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        kid = header.get("kid")
        if kid is None:
            return list(keys)
        return [key for key in keys if key.get("kid") == kid]

    # =========================================================================
    # 2-5. Claims
    # =========================================================================

    @staticmethod
    def _check_issuer(claims: Dict[str, Any], expected_issuer: str) -> None:
        if claims.get("iss") != expected_issuer:
            raise InvalidIssuerError(f"Invalid issuer: {claims.get('iss')}")

    @staticmethod
    def _check_audience(claims: Dict[str, Any], expected_audience: str) -> None:
        aud = claims.get("aud")
        audiences = [aud] if isinstance(aud, str) else aud

        if not isinstance(audiences, list) or expected_audience not in audiences:
            raise InvalidAudienceError("Token audience does not include this client")

        # With several audiences the authorized party must be us
        if len(audiences) > 1 and claims.get("azp") != expected_audience:
            raise InvalidAudienceError("Token authorized party does not match this client")

    def _check_lifetime(self, claims: Dict[str, Any]) -> datetime:
        now = self.clock()

        exp = _numeric_date(claims, "exp", required=True)
        if now > exp + self.clock_skew:
            raise TokenExpiredError("ID token has expired")

        nbf = _numeric_date(claims, "nbf", required=False)
        if nbf is not None and now < nbf - self.clock_skew:
            raise TokenExpiredError("ID token is not yet valid")

        return exp

    @staticmethod
    def _check_nonce(claims: Dict[str, Any], expected_nonce: str) -> None:
        token_nonce = claims.get("nonce")
        if not isinstance(token_nonce, str) or not hmac.compare_digest(
            token_nonce.encode(), expected_nonce.encode()
        ):
            raise InvalidNonceError("Nonce mismatch")


def _numeric_date(claims: Dict[str, Any], name: str, required: bool) -> Optional[datetime]:
    value = claims.get(name)
    if value is None:
        if required:
            raise TokenExpiredError(f"ID token missing '{name}' claim")
        return None
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise TokenExpiredError(f"ID token '{name}' claim is not a timestamp")
    try:
        return datetime.fromtimestamp(value, tz=timezone.utc)
    except (ValueError, OverflowError, OSError) as e:
        raise TokenExpiredError(f"ID token '{name}' claim is not a timestamp") from e
