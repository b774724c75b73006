"""Live tracking service entry point."""

import sys
import json
import time
import signal
import logging
import threading
from typing import Any, Dict, Optional

from .config import (
    LOG_LEVEL,
    COURIER_STALE_TTL_SECONDS,
    STALE_SWEEP_INTERVAL,
    BROADCAST_MIN_INTERVAL_MS,
    MARKER_INTERPOLATION_STEPS,
    MARKER_INTERPOLATION_STEP_MS,
)
from .geo import interpolate_positions, path_length_km
from .models import RawFix, SmoothedPosition
from .registry import LiveLocationRegistry
from .routing import OSRMClient, RoutingError
from .stitcher import RouteGeometryStitcher, straight_line_geometry
from .throttle import IngestRateLimiter

logger = logging.getLogger(__name__)


class TrackingService:
    """
    Wires the location registry and the route stitcher to a transport.

    Components:
        - LiveLocationRegistry: smoothing and broadcast throttling per courier
        - IngestRateLimiter: guards the registry against flooding devices
        - RouteGeometryStitcher: road geometry for delivery clusters

    Threads:
        - Sweeper thread: evicts stale couriers when a TTL is configured (daemon)

    Note:
        The service only builds outbound payloads. Pushing them to viewers is
        up to the transport calling handle_message().
    """

    def __init__(
        self,
        registry: Optional[LiveLocationRegistry] = None,
        stitcher: Optional[RouteGeometryStitcher] = None,
        stale_ttl_seconds: int = COURIER_STALE_TTL_SECONDS,
        sweep_interval: float = STALE_SWEEP_INTERVAL,
    ):
        self.running = False
        self.registry = registry if registry is not None else LiveLocationRegistry(
            min_interval_ms=BROADCAST_MIN_INTERVAL_MS,
            rate_limiter=IngestRateLimiter(),
        )
        self.stitcher = stitcher if stitcher is not None else RouteGeometryStitcher(OSRMClient())
        self.stale_ttl_seconds = stale_ttl_seconds
        self.sweep_interval = sweep_interval
        self.sweeper_thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()
        # Last position pushed to viewers per courier, start of the next smoothPath
        self._last_broadcast: Dict[str, SmoothedPosition] = {}
        self._broadcast_lock = threading.Lock()

    def handle_message(self, msg: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        """
        Handle one inbound transport message.

        Returns:
            Outbound payload to push, or None when there is nothing to send
        """
        msg_type = msg.get("type")
        if msg_type == "location":
            return self._handle_location(msg)
        if msg_type == "offline":
            courier_id = msg.get("courierId")
            if courier_id:
                self.registry.remove_location(courier_id)
                with self._broadcast_lock:
                    self._last_broadcast.pop(courier_id, None)
            return None
        if msg_type == "arrived":
            courier_id = msg.get("courierId")
            if courier_id:
                self.registry.force_broadcast(courier_id)
            return None
        if msg_type == "route":
            return self._handle_route(msg)

        logger.warning(f"Ignoring message with unknown type: {msg_type!r}")
        return None

    def _handle_location(self, msg: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        courier_id = msg.get("courierId")
        if not courier_id:
            logger.warning("Received location without courierId")
            return None

        fix = RawFix.from_dict(msg)
        if fix is None:
            logger.warning(f"Invalid coordinates from {courier_id}: ({msg.get('lat')}, {msg.get('lng')})")
            return None

        if not self.registry.allow_ingest(courier_id):
            return None

        position = self.registry.update_location(courier_id, fix)
        if position is None:
            return None

        with self._broadcast_lock:
            previous = self._last_broadcast.get(courier_id)
            self._last_broadcast[courier_id] = position

        start = previous.point if previous is not None else position.point
        smooth_path = interpolate_positions(
            start,
            position.point,
            steps=MARKER_INTERPOLATION_STEPS,
            start_ms=position.timestamp,
            step_ms=MARKER_INTERPOLATION_STEP_MS,
        )
        return {
            "event": "driver:location:update",
            "driverId": courier_id,
            "lat": position.lat,
            "lng": position.lng,
            "speed": position.speed_kmh,
            "heading": position.heading_deg,
            "smoothPath": smooth_path,
            "timestamp": position.timestamp,
        }

    def _handle_route(self, msg: Dict[str, Any]) -> Dict[str, Any]:
        cluster_id = str(msg.get("clusterId") or "")
        waypoints = msg.get("waypoints") or []
        fallback = False
        try:
            geometry = self.stitcher.get_road_geometry(cluster_id, waypoints)
        except RoutingError as e:
            logger.error(f"Road geometry unavailable for {cluster_id}, using straight lines: {e}")
            geometry = straight_line_geometry(waypoints)
            fallback = True

        payload = {"event": "route:geometry", "clusterId": cluster_id, "fallback": fallback}
        payload.update(geometry.to_dict())
        payload["distanceKm"] = round(path_length_km(geometry.full_path), 3)
        return payload

    def _sweeper_loop(self):
        """Background loop evicting couriers that stopped reporting."""
        logger.info("Sweeper thread started")
        while not self._stop_event.wait(self.sweep_interval):
            try:
                evicted = self.registry.evict_stale(self.stale_ttl_seconds)
                if evicted:
                    with self._broadcast_lock:
                        for courier_id in evicted:
                            self._last_broadcast.pop(courier_id, None)
            except Exception as e:
                logger.error(f"Error in sweeper loop: {e}")
        logger.info("Sweeper thread stopped")

    def start(self):
        """Start background workers."""
        if self.running:
            return
        self.running = True
        self._stop_event.clear()
        if self.stale_ttl_seconds > 0:
            self.sweeper_thread = threading.Thread(target=self._sweeper_loop, daemon=True)
            self.sweeper_thread.start()
        else:
            logger.info("Stale courier eviction disabled")
        logger.info("Tracking service started")

    def stop(self):
        """Stop background workers and release the routing thread pool."""
        if not self.running:
            return

        logger.info("Stopping tracking service...")
        self.running = False
        self._stop_event.set()

        if self.sweeper_thread:
            self.sweeper_thread.join(timeout=5.0)
            self.sweeper_thread = None

        self.stitcher.close(wait=False)
        logger.info("Tracking service stopped")


def run(service: TrackingService, stream=None, out=None) -> int:
    """
    Replay JSON-lines messages through the service.

    Each input line is one message; each outbound payload is written as one
    JSON line. Returns the number of payloads written.
    """
    stream = stream or sys.stdin
    out = out or sys.stdout
    written = 0
    for line_no, line in enumerate(stream, start=1):
        line = line.strip()
        if not line:
            continue
        try:
            msg = json.loads(line)
        except json.JSONDecodeError as e:
            logger.warning(f"Skipping line {line_no}: invalid JSON ({e})")
            continue
        if not isinstance(msg, dict):
            logger.warning(f"Skipping line {line_no}: not an object")
            continue

        payload = service.handle_message(msg)
        if payload is not None:
            out.write(json.dumps(payload) + "\n")
            out.flush()
            written += 1
    return written


def main():
    """Main entry point."""
    logging.basicConfig(
        level=getattr(logging, LOG_LEVEL.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
        stream=sys.stderr,
    )
    # urllib3 logs every connection at DEBUG
    logging.getLogger("urllib3").setLevel(logging.WARNING)

    service = TrackingService()

    def _signal_handler(signum, frame):
        logger.info(f"Received signal {signum}, shutting down...")
        service.stop()
        sys.exit(0)

    signal.signal(signal.SIGINT, _signal_handler)
    signal.signal(signal.SIGTERM, _signal_handler)

    service.start()
    started = time.time()
    try:
        written = run(service)
        logger.info(f"Input exhausted after {time.time() - started:.1f}s, {written} payloads written")
    finally:
        service.stop()


if __name__ == "__main__":
    main()
