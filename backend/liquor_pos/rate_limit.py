"""
Token-bucket request limiting.

The limiter owns no globals: the app factory builds one with a clock and a
bucket store and keeps it in app.extensions["rate_limiter"].
"""
from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from typing import Callable, Optional, Protocol


@dataclass
class Bucket:
    tokens: float
    updated_at: float


class BucketStore(Protocol):
    """Storage for per-key buckets. update() must be atomic per key."""

    def update(self, key: str, fn: Callable[[Optional[Bucket]], Bucket]) -> Bucket:
        ...


class InMemoryBucketStore:
    """Process-local store; each worker process limits independently."""

    def __init__(self):
        self._buckets: dict[str, Bucket] = {}
        self._lock = threading.Lock()

    def update(self, key: str, fn: Callable[[Optional[Bucket]], Bucket]) -> Bucket:
        with self._lock:
            bucket = fn(self._buckets.get(key))
            self._buckets[key] = bucket
            return bucket

    def clear(self):
        with self._lock:
            self._buckets.clear()


@dataclass
class RateLimitDecision:
    allowed: bool
    remaining: int
    retry_after: float


class TokenBucketLimiter:
    """
    capacity tokens per key, refilled continuously over window_seconds.

    100 requests per 15 minutes: TokenBucketLimiter(capacity=100, window_seconds=900).
    """

    def __init__(
        self,
        capacity: int,
        window_seconds: float,
        *,
        store: BucketStore | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        if capacity <= 0 or window_seconds <= 0:
            raise ValueError("capacity and window_seconds must be positive")
        self.capacity = capacity
        self.refill_rate = capacity / window_seconds
        self.store = store or InMemoryBucketStore()
        self.clock = clock

    def hit(self, key: str) -> RateLimitDecision:
        now = self.clock()
        outcome = {}

        def _take(bucket: Optional[Bucket]) -> Bucket:
            if bucket is None:
                tokens = float(self.capacity)
            else:
                elapsed = max(0.0, now - bucket.updated_at)
                tokens = min(float(self.capacity), bucket.tokens + elapsed * self.refill_rate)
            outcome["allowed"] = tokens >= 1
            if outcome["allowed"]:
                tokens -= 1
            return Bucket(tokens=tokens, updated_at=now)

        bucket = self.store.update(key, _take)
        if outcome["allowed"]:
            return RateLimitDecision(True, int(bucket.tokens), 0.0)
        return RateLimitDecision(False, 0, (1 - bucket.tokens) / self.refill_rate)
