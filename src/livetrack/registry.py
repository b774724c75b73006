"""In-memory live location registry."""

import time
import logging
import threading
from typing import Callable, Dict, List, Optional

from .config import BROADCAST_MIN_INTERVAL_MS
from .models import RawFix, SmoothedPosition
from .smoothing import LocationSmoother
from .throttle import BroadcastThrottler, IngestRateLimiter

logger = logging.getLogger(__name__)

LocationListener = Callable[[str, SmoothedPosition], None]


def _now_ms() -> int:
    return int(time.time() * 1000)


class RegistryEntry:
    """Filter, throttler and latest position for one courier."""

    def __init__(self, smoother: LocationSmoother, throttler: BroadcastThrottler, created_at: int):
        self.smoother = smoother
        self.throttler = throttler
        self.location: Optional[SmoothedPosition] = None
        self.last_seen_at = created_at
        self.removed = False
        self.lock = threading.Lock()


class LiveLocationRegistry:
    """
    Latest smoothed position per courier.

    Each courier gets its own smoothing filter and broadcast throttler,
    created on the first fix and dropped on remove_location().

    Attributes:
        min_interval_ms: Broadcast interval given to new couriers
        rate_limiter: Optional ingest limiter consulted by allow_ingest()

    Note:
        The map lock only guards inserts and deletes. Smoothing runs under
        the courier's own entry lock, so couriers never wait on each other.
        Nothing expires on its own; call evict_stale() to apply a TTL.
    """

    def __init__(
        self,
        min_interval_ms: int = BROADCAST_MIN_INTERVAL_MS,
        clock: Optional[Callable[[], int]] = None,
        rate_limiter: Optional[IngestRateLimiter] = None,
    ):
        self.min_interval_ms = min_interval_ms
        self.rate_limiter = rate_limiter
        self._clock = clock or _now_ms
        self._entries: Dict[str, RegistryEntry] = {}
        self._lock = threading.Lock()
        self._listeners: List[LocationListener] = []

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, courier_id: str) -> bool:
        with self._lock:
            return courier_id in self._entries

    def _get_or_create(self, courier_id: str) -> RegistryEntry:
        with self._lock:
            entry = self._entries.get(courier_id)
            if entry is None:
                entry = RegistryEntry(
                    smoother=LocationSmoother(clock=self._clock),
                    throttler=BroadcastThrottler(self.min_interval_ms, clock=self._clock),
                    created_at=self._clock(),
                )
                self._entries[courier_id] = entry
                logger.info(f"Registered courier {courier_id}")
            return entry

    def _get(self, courier_id: str) -> Optional[RegistryEntry]:
        with self._lock:
            return self._entries.get(courier_id)

    def add_listener(self, listener: LocationListener):
        """Call ``listener(courier_id, position)`` for every broadcast-eligible update."""
        self._listeners.append(listener)

    def update_location(self, courier_id: str, raw: RawFix) -> Optional[SmoothedPosition]:
        """
        Smooth a fix and decide whether to broadcast it.

        Args:
            courier_id: Courier identity
            raw: Raw GPS fix

        Returns:
            The smoothed position when it may be broadcast now, None when the
            update was stored but throttled.
        """
        while True:
            entry = self._get_or_create(courier_id)
            with entry.lock:
                if entry.removed:
                    # Lost a race with remove_location(); start over on a fresh entry
                    continue
                position = entry.smoother.smooth(raw)
                entry.location = position
                entry.last_seen_at = self._clock()
                broadcast = entry.throttler.should_broadcast()
            break

        if not broadcast:
            logger.debug(f"Throttled update for {courier_id}")
            return None

        for listener in list(self._listeners):
            try:
                listener(courier_id, position)
            except Exception as e:
                logger.error(f"Location listener failed for {courier_id}: {e}")
        return position

    def get_location(self, courier_id: str) -> Optional[SmoothedPosition]:
        """Latest smoothed position regardless of throttling, or None if unknown."""
        entry = self._get(courier_id)
        if entry is None:
            return None
        return entry.location

    def remove_location(self, courier_id: str):
        """Drop a courier; the next fix starts a fresh filter."""
        with self._lock:
            entry = self._entries.pop(courier_id, None)
        if entry is None:
            return
        with entry.lock:
            entry.removed = True
        if self.rate_limiter is not None:
            self.rate_limiter.forget(courier_id)
        logger.info(f"Removed courier {courier_id}")

    def force_broadcast(self, courier_id: str):
        """Let the courier's next update through the throttle. No-op if unknown."""
        entry = self._get(courier_id)
        if entry is None:
            return
        with entry.lock:
            entry.throttler.force_next()

    def set_broadcast_interval(self, courier_id: str, interval_ms: int):
        """Change one courier's broadcast interval. No-op if unknown."""
        entry = self._get(courier_id)
        if entry is None:
            return
        with entry.lock:
            entry.throttler.set_interval(interval_ms)

    def allow_ingest(self, courier_id: str) -> bool:
        """Consult the ingest rate limiter, if one is configured."""
        if self.rate_limiter is None:
            return True
        allowed = self.rate_limiter.allow(courier_id)
        if not allowed:
            logger.warning(f"Ingest rate limit exceeded for {courier_id}")
        return allowed

    def list_active_couriers(self) -> List[str]:
        """Snapshot of registered courier ids, in no particular order."""
        with self._lock:
            return list(self._entries.keys())

    def snapshot(self) -> Dict[str, SmoothedPosition]:
        """Latest position of every courier that has one."""
        with self._lock:
            entries = list(self._entries.items())
        return {cid: e.location for cid, e in entries if e.location is not None}

    def evict_stale(self, max_age_seconds: float) -> List[str]:
        """
        Remove couriers with no update for longer than ``max_age_seconds``.

        Returns:
            Ids of the evicted couriers
        """
        now = self._clock()
        max_age_ms = max_age_seconds * 1000
        evicted = []
        with self._lock:
            for courier_id, entry in list(self._entries.items()):
                if now - entry.last_seen_at <= max_age_ms:
                    continue
                # An update may be refreshing the entry right now
                with entry.lock:
                    if now - entry.last_seen_at <= max_age_ms:
                        continue
                    entry.removed = True
                    del self._entries[courier_id]
                evicted.append(courier_id)

        if self.rate_limiter is not None:
            self.rate_limiter.cleanup(max_age_seconds)

        if evicted:
            logger.info(f"Evicted {len(evicted)} stale couriers")
        return evicted
