from __future__ import annotations

import math
import threading
import time
from collections import deque
from dataclasses import dataclass
from typing import Callable, Deque, Dict

from karass.logging import get_logger

logger = get_logger(__name__)

DEFAULT_MAX_CLIENTS = 10000


@dataclass(frozen=True)
class RateLimitPolicy:
    name: str
    window_seconds: int
    max_requests: int


GENERAL_POLICY = RateLimitPolicy("general", window_seconds=60, max_requests=100)
AUTH_POLICY = RateLimitPolicy("auth", window_seconds=15 * 60, max_requests=10)


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    limit: int
    remaining: int
    retry_after: int = 0


class RateLimiter:
    """Sliding-window request counter keyed by client address.

    Each key owns a deque of request timestamps; on every check the deque is
    pruned to the trailing window. The number of tracked keys is capped so
    address-spraying cannot grow memory without bound: once at the cap, keys
    that are not already tracked are rejected until a sweep frees room.
    """

    def __init__(
        self,
        policy: RateLimitPolicy,
        *,
        max_clients: int = DEFAULT_MAX_CLIENTS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.policy = policy
        self.max_clients = max_clients
        self._clock = clock
        self._buckets: Dict[str, Deque[float]] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._buckets)

    def _prune(self, bucket: Deque[float], now: float) -> None:
        cutoff = now - self.policy.window_seconds
        while bucket and bucket[0] <= cutoff:
            bucket.popleft()

    def check(self, key: str) -> RateLimitDecision:
        limit = self.policy.max_requests
        with self._lock:
            now = self._clock()
            bucket = self._buckets.get(key)
            if bucket is None:
                if len(self._buckets) >= self.max_clients:
                    logger.warning(
                        "rate_limit_client_cap_reached",
                        policy=self.policy.name,
                        tracked=len(self._buckets),
                    )
                    return RateLimitDecision(
                        False, limit, 0, retry_after=self.policy.window_seconds
                    )
                bucket = deque()
                self._buckets[key] = bucket
            else:
                self._prune(bucket, now)
            if len(bucket) >= limit:
                retry_after = math.ceil(bucket[0] + self.policy.window_seconds - now)
                return RateLimitDecision(False, limit, 0, retry_after=max(1, retry_after))
            bucket.append(now)
            return RateLimitDecision(True, limit, limit - len(bucket))

    def sweep(self) -> int:
        """Prune every bucket and drop the empty ones; returns buckets removed."""
        with self._lock:
            now = self._clock()
            empty = []
            for key, bucket in self._buckets.items():
                self._prune(bucket, now)
                if not bucket:
                    empty.append(key)
            for key in empty:
                del self._buckets[key]
        if empty:
            logger.debug(
                "rate_limit_sweep", policy=self.policy.name, removed=len(empty)
            )
        return len(empty)

    def reset(self) -> None:
        with self._lock:
            self._buckets.clear()
