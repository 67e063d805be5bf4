"""
State/nonce store for in-flight sign-in attempts.

Each attempt gets a random state (anti-forgery, round-tripped through the
redirect) and nonce (echoed inside the ID token). Entries are single use:
``consume`` finds and removes an entry under one lock acquisition, so two
concurrent callbacks can never both redeem the same state.

Used-up states are remembered for one more TTL as tombstones, which lets the
store tell a replayed or expired state apart from one it never issued.
"""

import logging
import secrets
import threading
from datetime import datetime, timedelta
from typing import Callable, Dict, Optional, Tuple

from ..models import AuthRequestState, utcnow
from .errors import ExpiredError, ReplayError, StateNotFoundError

logger = logging.getLogger(__name__)

# 32 random bytes = 256 bits of entropy per value
TOKEN_BYTES = 32

_CONSUMED = "consumed"
_EXPIRED = "expired"


def _fingerprint(state: str) -> str:
    """Short prefix of a state value, safe for log correlation."""
    return state[:8]


class StateStore:
    """
    In-memory, thread-safe store of AuthRequestState keyed by state value.

    Args:
        ttl_seconds: Lifetime of an unconsumed entry
        clock: Time source, overridable in tests
    """

    def __init__(self, ttl_seconds: int = 600, clock: Callable[[], datetime] = utcnow):
        self.ttl = timedelta(seconds=ttl_seconds)
        self.clock = clock

        self._lock = threading.Lock()
        self._entries: Dict[str, AuthRequestState] = {}
        self._by_binding: Dict[str, str] = {}
        self._tombstones: Dict[str, Tuple[str, datetime]] = {}

    def create(
        self,
        return_path: str,
        binding: str,
        code_verifier: Optional[str] = None,
    ) -> AuthRequestState:
        """
        Issue a fresh state/nonce pair for a sign-in attempt.

        A browser may have only one attempt in flight: an unconsumed entry
        previously issued to the same binding is discarded.
        """
        entry = AuthRequestState(
            state=secrets.token_urlsafe(TOKEN_BYTES),
            nonce=secrets.token_urlsafe(TOKEN_BYTES),
            return_path=return_path,
            created_at=self.clock(),
            binding=binding,
            code_verifier=code_verifier,
        )

        with self._lock:
            self._prune_locked()
            previous = self._by_binding.get(binding)
            if previous is not None:
                self._retire_locked(previous, _CONSUMED)
            self._entries[entry.state] = entry
            self._by_binding[binding] = entry.state

        logger.debug(
            "Issued sign-in state",
            extra={"state_prefix": _fingerprint(entry.state), "superseded": previous is not None},
        )
        return entry

    def consume(self, state: str) -> AuthRequestState:
        """
        Atomically retrieve and remove the entry for a state value.

        Raises:
            StateNotFoundError: The state was never issued (or long forgotten)
            ReplayError: The state was already consumed or superseded
            ExpiredError: The entry outlived its TTL
        """
        with self._lock:
            entry = self._entries.get(state)
            if entry is not None:
                expired = self._is_expired(entry)
                self._retire_locked(state, _EXPIRED if expired else _CONSUMED)
            else:
                tombstone = self._tombstones.get(state)

        if entry is None:
            if tombstone is None:
                raise StateNotFoundError("Unknown state value")
            if tombstone[0] == _EXPIRED:
                raise ExpiredError("State value expired")
            raise ReplayError("State value already used")

        if expired:
            raise ExpiredError("State value expired")

        return entry

    def discard(self, state: str, binding: Optional[str]) -> bool:
        """
        Retire an entry without using it.

        Only the browser the entry was issued to may discard it. Returns True
        if a pending entry was retired.
        """
        with self._lock:
            entry = self._entries.get(state)
            if entry is None or binding is None or entry.binding != binding:
                return False
            self._retire_locked(state, _CONSUMED)
            return True

    def __len__(self) -> int:
        return len(self._entries)

    # =========================================================================
    # Internals (callers hold self._lock)
    # =========================================================================

    def _is_expired(self, entry: AuthRequestState) -> bool:
        return self.clock() - entry.created_at >= self.ttl

    def _retire_locked(self, state: str, reason: str) -> None:
        entry = self._entries.pop(state, None)
        if entry is not None and self._by_binding.get(entry.binding) == state:
            del self._by_binding[entry.binding]
        self._tombstones[state] = (reason, self.clock() + self.ttl)

    def _prune_locked(self) -> None:
        now = self.clock()

        for state in [s for s, entry in self._entries.items() if self._is_expired(entry)]:
            self._retire_locked(state, _EXPIRED)

        for state in [s for s, (_, forget_at) in self._tombstones.items() if forget_at <= now]:
            del self._tombstones[state]
