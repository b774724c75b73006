"""Geodesic helpers shared by the filter and the route stitcher."""

import math
from typing import Iterable, List, Optional, Sequence

from .models import LatLng

EARTH_RADIUS_KM = 6371.0


def haversine_km(a: LatLng, b: LatLng) -> float:
    """Great-circle distance between two points in kilometers."""
    lat1, lng1 = map(math.radians, a)
    lat2, lng2 = map(math.radians, b)
    dlat = lat2 - lat1
    dlng = lng2 - lng1
    x = math.sin(dlat / 2) ** 2 + math.cos(lat1) * math.cos(lat2) * math.sin(dlng / 2) ** 2
    return 2 * EARTH_RADIUS_KM * math.atan2(math.sqrt(x), math.sqrt(1 - x))


def initial_bearing(a: LatLng, b: LatLng) -> float:
    """
    Initial bearing from ``a`` towards ``b``.

    Returns:
        Degrees clockwise from true north, in [0, 360)
    """
    lat1 = math.radians(a[0])
    lat2 = math.radians(b[0])
    dlng = math.radians(b[1] - a[1])

    y = math.sin(dlng) * math.cos(lat2)
    x = math.cos(lat1) * math.sin(lat2) - math.sin(lat1) * math.cos(lat2) * math.cos(dlng)

    bearing = (math.degrees(math.atan2(y, x)) + 360.0) % 360.0
    # -0.0 and float rounding can land exactly on 360
    if bearing >= 360.0:
        bearing = 0.0
    return bearing


def is_finite_point(point) -> bool:
    """True if point is a (lat, lng) pair of finite numbers."""
    try:
        lat, lng = point[0], point[1]
    except (TypeError, IndexError, KeyError):
        return False
    if isinstance(lat, bool) or isinstance(lng, bool):
        return False
    try:
        return math.isfinite(lat) and math.isfinite(lng)
    except TypeError:
        return False


def is_valid_coordinate(lat: float, lng: float) -> bool:
    """Finite and within the WGS84 latitude/longitude ranges."""
    if not is_finite_point((lat, lng)):
        return False
    return -90.0 <= lat <= 90.0 and -180.0 <= lng <= 180.0


def round_coord(value: float, precision: int = 5) -> float:
    return round(value, precision)


def dedupe_consecutive(points: Iterable[LatLng]) -> List[LatLng]:
    """Collapse runs of identical adjacent points into one."""
    out: List[LatLng] = []
    for p in points:
        if out and out[-1][0] == p[0] and out[-1][1] == p[1]:
            continue
        out.append(p)
    return out


def interpolate_positions(
    old: LatLng,
    new: LatLng,
    steps: int = 10,
    start_ms: Optional[int] = None,
    step_ms: int = 100,
) -> List[dict]:
    """
    Linear interpolation between two positions for marker animation.

    Produces ``steps + 1`` points, both ends included. When ``start_ms`` is
    given each point carries a timestamp ``step_ms`` apart.
    """
    steps = max(1, int(steps))
    path = []
    for i in range(steps + 1):
        ratio = i / steps
        point = {
            "lat": old[0] + (new[0] - old[0]) * ratio,
            "lng": old[1] + (new[1] - old[1]) * ratio,
        }
        if start_ms is not None:
            point["timestamp"] = start_ms + i * step_ms
        path.append(point)
    return path


def path_length_km(points: Sequence[LatLng]) -> float:
    """Sum of great-circle distances along a polyline."""
    return sum(haversine_km(a, b) for a, b in zip(points, points[1:]))
