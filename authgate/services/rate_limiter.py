"""In-process sliding-window rate limiting."""

from __future__ import annotations

import threading
import time
from collections import OrderedDict, deque
from dataclasses import dataclass, field
from typing import Callable, Deque, Optional

from authgate.core.exceptions import RateLimitExceededError


@dataclass
class _Bucket:
    window_seconds: int
    timestamps: Deque[float] = field(default_factory=deque)

    def prune(self, now: float) -> None:
        cutoff = now - self.window_seconds
        while self.timestamps and self.timestamps[0] <= cutoff:
            self.timestamps.popleft()


class InMemoryRateLimiter:
    """
    Sliding-window limiter for a single process.

    Counters are not shared across replicas; this is a throttle, nothing in
    the credential flows relies on it for correctness.

    Storage stays bounded: buckets are dropped once their window is empty,
    idle keys are purged every purge_interval_seconds, and past max_keys the
    least recently used key is evicted.
    """

    def __init__(
        self,
        clock: Optional[Callable[[], float]] = None,
        max_keys: int = 100_000,
        purge_interval_seconds: float = 60.0,
    ) -> None:
        if max_keys < 1:
            raise ValueError("max_keys must be positive")
        self._lock = threading.Lock()
        self._buckets: OrderedDict[str, _Bucket] = OrderedDict()
        self._clock = clock or time.monotonic
        self.max_keys = max_keys
        self.purge_interval_seconds = purge_interval_seconds
        self._next_purge = self._clock() + purge_interval_seconds

    def __len__(self) -> int:
        with self._lock:
            return len(self._buckets)

    def _purge_idle(self, now: float) -> None:
        if now < self._next_purge:
            return
        self._next_purge = now + self.purge_interval_seconds
        for key in list(self._buckets):
            bucket = self._buckets[key]
            bucket.prune(now)
            if not bucket.timestamps:
                del self._buckets[key]

    def _prune(self, key: str, window_seconds: int, now: float) -> Optional[_Bucket]:
        """Live bucket for key, or None once its window holds nothing."""
        self._purge_idle(now)
        bucket = self._buckets.get(key)
        if bucket is None:
            return None
        bucket.window_seconds = window_seconds
        bucket.prune(now)
        if not bucket.timestamps:
            del self._buckets[key]
            return None
        return bucket

    def allow(self, key: str, limit: int, window_seconds: int) -> bool:
        now = self._clock()
        with self._lock:
            bucket = self._prune(key, window_seconds, now)
            if bucket is None:
                if limit <= 0:
                    return False
                bucket = self._buckets[key] = _Bucket(window_seconds)
                while len(self._buckets) > self.max_keys:
                    self._buckets.popitem(last=False)
            elif len(bucket.timestamps) >= limit:
                return False
            bucket.timestamps.append(now)
            self._buckets.move_to_end(key)
            return True

    def hit(self, key: str, limit: int, window_seconds: int) -> None:
        """Record one request; raise once the key is over its limit."""
        if not self.allow(key, limit, window_seconds):
            raise RateLimitExceededError()

    def remaining(self, key: str, limit: int, window_seconds: int) -> int:
        now = self._clock()
        with self._lock:
            bucket = self._prune(key, window_seconds, now)
            used = len(bucket.timestamps) if bucket is not None else 0
            return max(0, limit - used)

    def reset(self, key: Optional[str] = None) -> None:
        with self._lock:
            if key is None:
                self._buckets.clear()
            else:
                self._buckets.pop(key, None)
