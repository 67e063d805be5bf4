"""
Provider metadata and JWKS caching.

This module handles:
- Fetching the OpenID Provider discovery document for an authority
- Fetching the provider's signing keys (JWKS)
- Caching both per authority with a freshness TTL

Cache entries are immutable snapshots. Readers use whatever snapshot is
current without locking; a refresh builds a complete new snapshot and swaps
it in, so nobody ever observes metadata from one fetch mixed with keys from
another.
"""

import asyncio
import logging
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Tuple

import httpx

from ..models import ProviderMetadata, utcnow
from .errors import DiscoveryError
from .http import request_with_retry

logger = logging.getLogger(__name__)

WELL_KNOWN_PATH = "/.well-known/openid-configuration"

REQUIRED_METADATA_FIELDS = ("issuer", "authorization_endpoint", "token_endpoint", "jwks_uri")


def normalize_authority(authority: str) -> str:
    """Ignore a single trailing slash; anything beyond that is significant."""
    return authority[:-1] if authority.endswith("/") else authority


@dataclass(frozen=True)
class _ProviderSnapshot:
    metadata: ProviderMetadata
    keys: Tuple[Dict[str, Any], ...]
    keys_fetched_at: datetime


class DiscoveryCache:
    """
    Per-authority cache of provider metadata and signing keys.

    Args:
        http_client: Shared async HTTP client
        ttl_seconds: Age after which a snapshot is re-fetched
        timeout: Timeout for each outbound request
        retry_backoff: Delay before retrying a transient failure
        clock: Time source, overridable in tests
    """

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        ttl_seconds: int = 86400,
        timeout: float = 10.0,
        retry_backoff: float = 0.5,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.http_client = http_client
        self.ttl = timedelta(seconds=ttl_seconds)
        self.timeout = timeout
        self.retry_backoff = retry_backoff
        self.clock = clock

        self._snapshots: Dict[str, _ProviderSnapshot] = {}
        self._refresh_locks: Dict[str, asyncio.Lock] = {}

    # =========================================================================
    # Public API
    # =========================================================================

    async def get_metadata(self, authority: str) -> ProviderMetadata:
        """
        Return provider metadata for an authority, fetching it when stale.

        Raises:
            DiscoveryError: On network failure, malformed metadata, or an
                issuer that does not match the authority
        """
        snapshot = await self._get_snapshot(normalize_authority(authority))
        return snapshot.metadata

    async def get_signing_keys(self, authority: str) -> List[Dict[str, Any]]:
        """Return the cached signing keys for an authority."""
        snapshot = await self._get_snapshot(normalize_authority(authority))
        return list(snapshot.keys)

    async def refresh_signing_keys(self, authority: str) -> List[Dict[str, Any]]:
        """
        Re-fetch the JWKS for an authority, keeping its metadata.

        Used when an ID token is signed with a key we have not seen yet
        (provider key rotation).
        """
        authority = normalize_authority(authority)
        seen = self._snapshots.get(authority)

        async with self._lock_for(authority):
            current = self._snapshots.get(authority)
            if current is None:
                current = await self._fetch_snapshot(authority)
            elif current is seen:
                keys = await self._fetch_keys(current.metadata.jwks_uri)
                current = replace(current, keys=keys, keys_fetched_at=self.clock())
            # else another request refreshed while we waited; reuse its result
            self._snapshots[authority] = current

        logger.info(
            "Signing keys refreshed",
            extra={"authority": authority, "keys_count": len(current.keys)},
        )
        return list(current.keys)

    def invalidate(self, authority: Optional[str] = None) -> None:
        """Drop the cached snapshot for one authority, or for all of them."""
        if authority is None:
            self._snapshots.clear()
        else:
            self._snapshots.pop(normalize_authority(authority), None)

    # =========================================================================
    # Snapshot Management
    # =========================================================================

    def _lock_for(self, authority: str) -> asyncio.Lock:
        lock = self._refresh_locks.get(authority)
        if lock is None:
            lock = self._refresh_locks.setdefault(authority, asyncio.Lock())
        return lock

    def _is_fresh(self, snapshot: Optional[_ProviderSnapshot]) -> bool:
        if snapshot is None:
            return False
        return self.clock() - snapshot.metadata.fetched_at < self.ttl

    async def _get_snapshot(self, authority: str) -> _ProviderSnapshot:
        snapshot = self._snapshots.get(authority)
        if self._is_fresh(snapshot):
            return snapshot

        async with self._lock_for(authority):
            # Another request may have refreshed while we waited
            snapshot = self._snapshots.get(authority)
            if self._is_fresh(snapshot):
                return snapshot

            snapshot = await self._fetch_snapshot(authority)
            self._snapshots[authority] = snapshot

        logger.info(
            "Provider metadata refreshed",
            extra={"authority": authority, "keys_count": len(snapshot.keys)},
        )
        return snapshot

    async def _fetch_snapshot(self, authority: str) -> _ProviderSnapshot:
        metadata = await self._fetch_metadata(authority)
        keys = await self._fetch_keys(metadata.jwks_uri)
        return _ProviderSnapshot(metadata=metadata, keys=keys, keys_fetched_at=self.clock())

    # =========================================================================
    # Fetching
    # =========================================================================

    async def _get_json(self, url: str, what: str) -> Any:
        try:
            response = await request_with_retry(
                self.http_client,
                "GET",
                url,
                timeout=self.timeout,
                backoff_seconds=self.retry_backoff,
                headers={"Accept": "application/json"},
            )
        except httpx.HTTPError as e:
            logger.error(
                f"Failed to fetch {what}",
                extra={"url": url, "error_type": type(e).__name__},
            )
            raise DiscoveryError(f"Unable to fetch {what}: {type(e).__name__}") from e

        if response.status_code != 200:
            logger.error(
                f"Failed to fetch {what}",
                extra={"url": url, "status_code": response.status_code},
            )
            raise DiscoveryError(f"Unable to fetch {what}: HTTP {response.status_code}")

        try:
            return response.json()
        except ValueError as e:
            raise DiscoveryError(f"Invalid {what}: body is not JSON") from e

    async def _fetch_metadata(self, authority: str) -> ProviderMetadata:
        document = await self._get_json(authority + WELL_KNOWN_PATH, "provider metadata")

        if not isinstance(document, dict):
            raise DiscoveryError("Invalid provider metadata: expected a JSON object")

        for field in REQUIRED_METADATA_FIELDS:
            value = document.get(field)
            if not isinstance(value, str) or not value:
                raise DiscoveryError(f"Invalid provider metadata: missing '{field}'")

        # Metadata served for one authority must not speak for another issuer
        if normalize_authority(document["issuer"]) != authority:
            logger.warning(
                "Provider metadata issuer mismatch",
                extra={"authority": authority, "issuer": document["issuer"]},
            )
            raise DiscoveryError(
                f"Issuer mismatch: metadata for {authority} names issuer {document['issuer']}"
            )

        end_session = document.get("end_session_endpoint")

        return ProviderMetadata(
            issuer=document["issuer"],
            authorization_endpoint=document["authorization_endpoint"],
            token_endpoint=document["token_endpoint"],
            jwks_uri=document["jwks_uri"],
            end_session_endpoint=end_session if isinstance(end_session, str) else None,
            fetched_at=self.clock(),
        )

    async def _fetch_keys(self, jwks_uri: str) -> Tuple[Dict[str, Any], ...]:
        jwks = await self._get_json(jwks_uri, "JWKS")

        if not isinstance(jwks, dict) or not isinstance(jwks.get("keys"), list):
            raise DiscoveryError("Invalid JWKS response: missing 'keys' field")

        return tuple(
            key for key in jwks["keys"]
            if isinstance(key, dict) and key.get("use", "sig") == "sig"
        )
