#!/usr/bin/env python3
"""Script to check the routing service configuration and response."""

import sys
import time
from pathlib import Path

# Add src to path
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

import logging

from livetrack.config import OSRM_BASE_URL, OSRM_PROFILE, OSRM_TIMEOUT
from livetrack.geo import path_length_km
from livetrack.routing import OSRMClient, RoutingError
from livetrack.stitcher import RouteGeometryStitcher

# Configure logging
logging.basicConfig(
    level=logging.DEBUG,
    format='%(asctime)s [%(levelname)s] %(name)s: %(message)s'
)
logger = logging.getLogger(__name__)

# Hyderabad, two short hops
DEFAULT_WAYPOINTS = [
    (17.3850, 78.4867),
    (17.3900, 78.4900),
    (17.3950, 78.4950),
]


def parse_waypoints(args):
    """Parse "lat,lng" arguments; fall back to the default test route."""
    if not args:
        return DEFAULT_WAYPOINTS
    waypoints = []
    for arg in args:
        try:
            lat, lng = (float(v) for v in arg.split(","))
        except ValueError:
            print(f"ERROR: cannot parse waypoint {arg!r}, expected lat,lng")
            sys.exit(2)
        waypoints.append((lat, lng))
    return waypoints


def main():
    waypoints = parse_waypoints(sys.argv[1:])

    print("\n=== Routing service configuration ===")
    print(f"Base URL: {OSRM_BASE_URL}")
    print(f"Profile:  {OSRM_PROFILE}")
    print(f"Timeout:  {OSRM_TIMEOUT}s")
    print(f"Waypoints: {len(waypoints)}")

    client = OSRMClient()
    print(f"Request:  {client.route_url(waypoints)}")

    with RouteGeometryStitcher(client) as stitcher:
        started = time.time()
        try:
            geometry = stitcher.get_road_geometry("check", waypoints)
        except RoutingError as e:
            print(f"\n✗ Routing failed ({type(e).__name__}): {e}")
            sys.exit(1)
        elapsed = time.time() - started

    print("\n=== Result ===")
    print(f"✓ Route resolved in {elapsed:.2f}s")
    print(f"Legs:        {len(geometry.legs)}")
    print(f"Path points: {len(geometry.full_path)}")
    print(f"Length:      {path_length_km(geometry.full_path):.2f} km")
    for i, leg in enumerate(geometry.legs, start=1):
        print(f"  Leg {i}: {len(leg)} points, {path_length_km(leg):.2f} km")


if __name__ == "__main__":
    main()
