"""Road geometry for multi-stop delivery clusters."""

import logging
import threading
from collections import OrderedDict
from concurrent.futures import Future, ThreadPoolExecutor
from functools import partial
from typing import Any, Dict, Iterable, List, NamedTuple, Optional, Sequence

from .config import (
    ROUTE_MAX_WAYPOINTS_PER_REQUEST,
    ROUTE_CACHE_PRECISION,
    ROUTE_CACHE_MAX_ENTRIES,
    ROUTE_WORKERS,
)
from .geo import dedupe_consecutive, is_finite_point, round_coord
from .models import LatLng, RouteGeometry
from .routing import RouteCancelledError

logger = logging.getLogger(__name__)


class Chunk(NamedTuple):
    """A slice of the waypoint list sent in one routing request."""
    start: int  # index of points[0] in the full waypoint list
    points: List[LatLng]


def _usable(future: Future) -> bool:
    """Pending or successfully resolved. Failed entries may linger until their callback runs."""
    if not future.done():
        return True
    return not future.cancelled() and future.exception() is None


def _coerce_waypoint(point: Any) -> Optional[LatLng]:
    if isinstance(point, dict):
        point = (point.get("lat"), point.get("lng", point.get("lon")))
    if not is_finite_point(point):
        return None
    return LatLng(float(point[0]), float(point[1]))


def sanitize_waypoints(waypoints: Optional[Iterable[Any]]) -> List[LatLng]:
    """Drop waypoints without finite coordinates, keeping order."""
    out = []
    for point in waypoints or []:
        latlng = _coerce_waypoint(point)
        if latlng is not None:
            out.append(latlng)
    return out


def build_cache_key(
    cluster_id: str, waypoints: Sequence[LatLng], precision: int = ROUTE_CACHE_PRECISION
) -> str:
    """Cluster id plus rounded waypoints, so float jitter still hits the cache."""
    pts = ";".join(
        f"{round_coord(lat, precision)},{round_coord(lng, precision)}" for lat, lng in waypoints
    )
    return f"{cluster_id}::{pts}"


def chunk_waypoints(
    waypoints: Sequence[LatLng], max_per_request: int = ROUTE_MAX_WAYPOINTS_PER_REQUEST
) -> List[Chunk]:
    """
    Split waypoints into routing-request-sized chunks.

    Consecutive chunks share one waypoint: every chunk after the first begins
    with the last waypoint of the previous one, so the legs stay continuous
    across the boundary.
    """
    if max_per_request < 2:
        raise ValueError("max_per_request must be at least 2")

    points = list(waypoints)
    if len(points) <= max_per_request:
        return [Chunk(0, points)]

    chunks = []
    start = 0
    while start < len(points):
        end = min(len(points), start + max_per_request)
        chunks.append(Chunk(start, points[start:end]))
        if end == len(points):
            break
        start = end - 1
    return chunks


def stitch_legs(chunks: Sequence[Chunk], chunk_legs: Sequence[Sequence[Sequence[LatLng]]]) -> List[List[LatLng]]:
    """
    Join per-chunk legs into one ordered list of legs.

    The first chunk contributes all of its legs. A later chunk skips the
    leading legs that an earlier chunk already produced, so every pair of
    consecutive waypoints ends up with exactly one leg.
    """
    stitched: List[List[LatLng]] = []
    for chunk, legs in zip(chunks, chunk_legs):
        already_covered = max(0, len(stitched) - chunk.start)
        stitched.extend(list(leg) for leg in legs[already_covered:])
    return stitched


def straight_line_geometry(waypoints: Iterable[Any]) -> RouteGeometry:
    """Straight segments between stops, for maps to show when routing fails."""
    points = sanitize_waypoints(waypoints)
    if len(points) < 2:
        return RouteGeometry.empty()
    legs = tuple((a, b) for a, b in zip(points, points[1:]))
    return RouteGeometry(full_path=tuple(dedupe_consecutive(points)), legs=legs)


class RouteGeometryStitcher:
    """
    Resolves and caches road geometry for delivery clusters.

    Long clusters are routed in chunks of at most ``max_per_request``
    waypoints and stitched back together. Resolutions run on a thread pool
    and are cached as Futures keyed by cluster id and rounded waypoints:
    concurrent callers for the same key share one in-flight computation, and a
    resolved Future is the cache entry.

    Attributes:
        oracle: Object with ``fetch_legs(waypoints)``, e.g. OSRMClient
        max_per_request: Waypoint ceiling of the routing service
        cache_max_entries: LRU bound on resolved entries, 0 for unbounded

    Note:
        Failed and cancelled resolutions are removed from the cache so the
        next caller retries. Nothing is retried here.
    """

    def __init__(
        self,
        oracle,
        max_per_request: int = ROUTE_MAX_WAYPOINTS_PER_REQUEST,
        cache_max_entries: int = ROUTE_CACHE_MAX_ENTRIES,
        executor: Optional[ThreadPoolExecutor] = None,
        precision: int = ROUTE_CACHE_PRECISION,
    ):
        if max_per_request < 2:
            raise ValueError("max_per_request must be at least 2")
        self.oracle = oracle
        self.max_per_request = max_per_request
        self.cache_max_entries = cache_max_entries
        self.precision = precision
        self._owns_executor = executor is None
        self._executor = executor or ThreadPoolExecutor(
            max_workers=ROUTE_WORKERS, thread_name_prefix="route"
        )
        self._cache: "OrderedDict[str, Future]" = OrderedDict()
        self._cancel_events: Dict[str, threading.Event] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return sum(1 for f in self._cache.values() if _usable(f))

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()

    def resolve(self, cluster_id: str, waypoints: Iterable[Any]) -> Future:
        """
        Start (or join) the resolution of a cluster's road geometry.

        Args:
            cluster_id: Cluster identity, part of the cache key
            waypoints: Stops in visiting order, as (lat, lng) pairs or dicts

        Returns:
            Future resolving to a RouteGeometry, or raising a RoutingError.
            Fewer than two valid waypoints give an already-resolved empty
            geometry without touching the routing service.
        """
        points = sanitize_waypoints(waypoints)
        if len(points) < 2:
            future: Future = Future()
            future.set_result(RouteGeometry.empty())
            return future

        key = build_cache_key(cluster_id, points, self.precision)
        with self._lock:
            future = self._cache.get(key)
            if future is not None and _usable(future):
                self._cache.move_to_end(key)
                logger.debug(f"Route geometry cache hit for {cluster_id}")
                return future

            self._enforce_capacity(reserve=1)
            cancel_event = threading.Event()
            future = self._executor.submit(self._compute, cluster_id, points, cancel_event)
            self._cache[key] = future
            self._cancel_events[key] = cancel_event

        future.add_done_callback(partial(self._on_done, key))
        return future

    def get_road_geometry(
        self, cluster_id: str, waypoints: Iterable[Any], timeout: Optional[float] = None
    ) -> RouteGeometry:
        """
        Blocking form of resolve().

        Raises:
            RoutingError: Propagated unchanged from the routing service
            concurrent.futures.TimeoutError: ``timeout`` elapsed; the shared
                resolution keeps running for other callers, use cancel() to
                abandon it
        """
        return self.resolve(cluster_id, waypoints).result(timeout=timeout)

    def cancel(self, cluster_id: str, waypoints: Iterable[Any]) -> bool:
        """
        Abandon an in-flight resolution.

        A queued resolution is cancelled outright; a running one fails with
        RouteCancelledError before its next routing request, or once the
        request in progress returns. Either way the entry leaves the cache.

        Returns:
            True if there was an unfinished resolution to cancel
        """
        points = sanitize_waypoints(waypoints)
        key = build_cache_key(cluster_id, points, self.precision)
        with self._lock:
            future = self._cache.get(key)
            cancel_event = self._cancel_events.get(key)
        if future is None or future.done():
            return False
        if future.cancel():
            logger.info(f"Cancelled queued route resolution for {cluster_id}")
            return True
        if cancel_event is not None:
            cancel_event.set()
            logger.info(f"Cancelling running route resolution for {cluster_id}")
        return True

    def has_cached_geometry(self, cluster_id: str, waypoints: Iterable[Any]) -> bool:
        """True if a resolution for these waypoints is cached or in flight."""
        points = sanitize_waypoints(waypoints)
        if len(points) < 2:
            return False
        key = build_cache_key(cluster_id, points, self.precision)
        with self._lock:
            future = self._cache.get(key)
        return future is not None and _usable(future)

    def clear_cache(self):
        with self._lock:
            self._cache.clear()
            self._cancel_events.clear()

    def close(self, wait: bool = True):
        """Shut down the thread pool if this stitcher created it."""
        if self._owns_executor:
            self._executor.shutdown(wait=wait)

    def _compute(self, cluster_id: str, points: List[LatLng], cancel_event: threading.Event) -> RouteGeometry:
        chunks = chunk_waypoints(points, self.max_per_request)
        chunk_legs = []
        for i, chunk in enumerate(chunks):
            if cancel_event.is_set():
                raise RouteCancelledError(f"Route resolution for {cluster_id} cancelled")
            logger.debug(f"Routing chunk {i + 1}/{len(chunks)} of {cluster_id} ({len(chunk.points)} waypoints)")
            chunk_legs.append(self.oracle.fetch_legs(chunk.points))

        # Cancelled while the last request was out
        if cancel_event.is_set():
            raise RouteCancelledError(f"Route resolution for {cluster_id} cancelled")

        legs = stitch_legs(chunks, chunk_legs)
        full_path = dedupe_consecutive(p for leg in legs for p in leg)
        geometry = RouteGeometry(
            full_path=tuple(full_path),
            legs=tuple(tuple(leg) for leg in legs),
        )
        logger.info(
            f"Resolved route for {cluster_id}: {len(points)} stops, "
            f"{len(chunks)} requests, {len(full_path)} points"
        )
        return geometry

    def _on_done(self, key: str, future: Future):
        with self._lock:
            if self._cache.get(key) is not future:
                # Replaced or cleared meanwhile
                return
            self._cancel_events.pop(key, None)
            if not _usable(future):
                del self._cache[key]
                return
            self._enforce_capacity()

    def _enforce_capacity(self, reserve: int = 0):
        # Caller holds self._lock. Only resolved entries count towards the bound.
        if self.cache_max_entries <= 0:
            return
        limit = max(0, self.cache_max_entries - reserve)
        resolved = [k for k, f in self._cache.items() if f.done()]
        for key in resolved[: max(0, len(resolved) - limit)]:
            del self._cache[key]
            self._cancel_events.pop(key, None)
