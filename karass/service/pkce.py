from __future__ import annotations

import base64
import hashlib
import secrets
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict

from karass.logging import get_logger
from karass.service.errors import InvalidStateError

logger = get_logger(__name__)

DEFAULT_STATE_TTL_SECONDS = 10 * 60
DEFAULT_MAX_ENTRIES = 1000


def _b64url(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("ascii").rstrip("=")


def generate_code_verifier() -> str:
    """43-character verifier from 32 random bytes (RFC 7636 section 4.1)."""
    return _b64url(secrets.token_bytes(32))


def code_challenge_for(verifier: str) -> str:
    """S256 challenge: base64url(SHA-256(verifier)) without padding."""
    return _b64url(hashlib.sha256(verifier.encode("ascii")).digest())


def generate_state() -> str:
    return secrets.token_hex(16)


@dataclass(frozen=True)
class PkceChallenge:
    state: str
    code_verifier: str
    code_challenge: str


@dataclass(frozen=True)
class _PendingState:
    provider: str
    code_verifier: str
    created_at: float


class PkceStateStore:
    """Short-lived map from OAuth state token to PKCE verifier and provider.

    Entries are consumed exactly once. Dict insertion order doubles as
    creation order, so oldest-first eviction walks the dict from the front.
    """

    def __init__(
        self,
        *,
        ttl_seconds: int = DEFAULT_STATE_TTL_SECONDS,
        max_entries: int = DEFAULT_MAX_ENTRIES,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.ttl_seconds = ttl_seconds
        self.max_entries = max_entries
        self._clock = clock
        self._entries: Dict[str, _PendingState] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def begin(self, provider: str) -> PkceChallenge:
        verifier = generate_code_verifier()
        challenge = PkceChallenge(
            state=generate_state(),
            code_verifier=verifier,
            code_challenge=code_challenge_for(verifier),
        )
        with self._lock:
            self._entries[challenge.state] = _PendingState(
                provider=provider, code_verifier=verifier, created_at=self._clock()
            )
            evicted = self._evict_overflow()
        if evicted:
            logger.warning("pkce_state_evicted", count=evicted, provider=provider)
        return challenge

    def consume(self, state: str, provider: str) -> str:
        """Pop the entry for ``state`` and return its verifier.

        The entry is removed even when the provider does not match, so a
        state token can never be replayed against another provider.
        """
        with self._lock:
            entry = self._entries.pop(state, None) if state else None
            now = self._clock()
        if entry is None:
            raise InvalidStateError("Invalid or expired state")
        if entry.provider != provider:
            logger.warning(
                "pkce_state_provider_mismatch", expected=entry.provider, actual=provider
            )
            raise InvalidStateError("Invalid or expired state")
        if now - entry.created_at > self.ttl_seconds:
            raise InvalidStateError("Invalid or expired state")
        return entry.code_verifier

    def _evict_overflow(self) -> int:
        evicted = 0
        while len(self._entries) > self.max_entries:
            oldest = next(iter(self._entries))
            del self._entries[oldest]
            evicted += 1
        return evicted

    def sweep(self) -> int:
        """Delete expired entries, then trim to the size cap. Returns entries removed."""
        with self._lock:
            now = self._clock()
            expired = [
                state
                for state, entry in self._entries.items()
                if now - entry.created_at > self.ttl_seconds
            ]
            for state in expired:
                del self._entries[state]
            removed = len(expired) + self._evict_overflow()
        if removed:
            logger.info("pkce_state_sweep", removed=removed)
        return removed
