"""Rate limiting for location broadcasts and ingest."""

import time
import logging
import threading
from dataclasses import dataclass
from typing import Callable, Dict, Optional

from .config import (
    BROADCAST_MIN_INTERVAL_MS,
    INGEST_BUCKET_CAPACITY,
    INGEST_REFILL_PER_SECOND,
)

logger = logging.getLogger(__name__)


def _now_ms() -> int:
    return int(time.time() * 1000)


class BroadcastThrottler:
    """
    Decides whether a smoothed position may be broadcast now.

    A courier's broadcasts are never closer together than ``min_interval_ms``
    unless force_next() was called in between. Suppressed positions are not
    queued; the caller drops them.
    """

    def __init__(
        self,
        min_interval_ms: int = BROADCAST_MIN_INTERVAL_MS,
        clock: Optional[Callable[[], int]] = None,
    ):
        self.min_interval_ms = min_interval_ms
        self.last_broadcast_at: Optional[int] = None
        self._clock = clock or _now_ms

    def should_broadcast(self) -> bool:
        """Return True and restart the window if the interval has elapsed."""
        now = self._clock()
        if self.last_broadcast_at is None or now - self.last_broadcast_at >= self.min_interval_ms:
            self.last_broadcast_at = now
            return True
        return False

    def force_next(self):
        """Let the next should_broadcast() succeed regardless of elapsed time."""
        self.last_broadcast_at = None

    def set_interval(self, interval_ms: int):
        """Change the minimum interval without restarting the window."""
        self.min_interval_ms = interval_ms


@dataclass
class _Bucket:
    tokens: float
    last_refill_at: float


class IngestRateLimiter:
    """
    Token bucket per courier guarding the ingest path.

    Each courier starts with ``capacity`` tokens, every accepted fix costs
    one, and tokens refill continuously at ``refill_per_second``. Protects the
    filter from devices that flood fixes faster than they can be useful.
    """

    def __init__(
        self,
        capacity: int = INGEST_BUCKET_CAPACITY,
        refill_per_second: float = INGEST_REFILL_PER_SECOND,
        clock: Optional[Callable[[], float]] = None,
    ):
        self.capacity = capacity
        self.refill_per_second = refill_per_second
        self._clock = clock or time.monotonic
        self._buckets: Dict[str, _Bucket] = {}
        self._lock = threading.Lock()

    def allow(self, key: str) -> bool:
        """Consume a token for ``key``; False when the bucket is empty."""
        now = self._clock()
        with self._lock:
            bucket = self._buckets.get(key)
            if bucket is None:
                bucket = _Bucket(tokens=float(self.capacity), last_refill_at=now)
                self._buckets[key] = bucket

            elapsed = now - bucket.last_refill_at
            if elapsed > 0:
                bucket.tokens = min(float(self.capacity), bucket.tokens + elapsed * self.refill_per_second)
                bucket.last_refill_at = now

            if bucket.tokens < 1:
                return False

            bucket.tokens -= 1
            return True

    def forget(self, key: str):
        with self._lock:
            self._buckets.pop(key, None)

    def cleanup(self, ttl_seconds: float) -> int:
        """Drop buckets idle for longer than ``ttl_seconds``. Returns count removed."""
        now = self._clock()
        with self._lock:
            stale = [k for k, b in self._buckets.items() if now - b.last_refill_at > ttl_seconds]
            for key in stale:
                del self._buckets[key]
        return len(stale)
