"""Data types shared across the location pipeline."""

import math
from dataclasses import dataclass, field
from typing import Any, Dict, NamedTuple, Optional, Tuple


class LatLng(NamedTuple):
    """A coordinate pair in degrees."""
    lat: float
    lng: float


# One stop of a multi-stop route; the list index is the visiting order.
Waypoint = LatLng


def _to_float(value: Any) -> Optional[float]:
    if isinstance(value, bool) or value is None:
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(number):
        return None
    return number


@dataclass
class RawFix:
    """One raw GPS sample as received from a courier device."""
    lat: float
    lng: float
    timestamp: Optional[int] = None  # milliseconds since epoch

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> Optional["RawFix"]:
        """
        Build a fix from a transport payload.

        Accepts ``lat`` and ``lng`` (or ``lon``) plus an optional ``timestamp``
        in milliseconds. Returns None when the coordinates are missing,
        non-numeric, non-finite or out of range.
        """
        if not isinstance(payload, dict):
            return None

        lat = _to_float(payload.get("lat"))
        lng = _to_float(payload.get("lng", payload.get("lon")))
        if lat is None or lng is None:
            return None
        if not (-90.0 <= lat <= 90.0 and -180.0 <= lng <= 180.0):
            return None

        timestamp = _to_float(payload.get("timestamp"))
        return cls(
            lat=lat,
            lng=lng,
            timestamp=int(timestamp) if timestamp is not None else None,
        )


@dataclass(frozen=True)
class SmoothedPosition:
    """Filter output for one fix. Superseded, never mutated."""
    lat: float
    lng: float
    timestamp: int
    speed_kmh: float = 0.0
    heading_deg: float = 0.0

    @property
    def point(self) -> LatLng:
        return LatLng(self.lat, self.lng)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "lat": self.lat,
            "lng": self.lng,
            "timestamp": self.timestamp,
            "speedKmh": self.speed_kmh,
            "headingDeg": self.heading_deg,
        }


@dataclass(frozen=True)
class RouteGeometry:
    """
    Road-following geometry for one multi-stop cluster.

    Attributes:
        full_path: Continuous polyline through every stop, without
            consecutive duplicate points
        legs: One sub-path per consecutive pair of stops
    """
    full_path: Tuple[LatLng, ...] = field(default_factory=tuple)
    legs: Tuple[Tuple[LatLng, ...], ...] = field(default_factory=tuple)

    @classmethod
    def empty(cls) -> "RouteGeometry":
        return cls()

    @property
    def is_empty(self) -> bool:
        return not self.full_path and not self.legs

    def to_dict(self) -> Dict[str, Any]:
        return {
            "fullPath": [{"lat": p.lat, "lng": p.lng} for p in self.full_path],
            "legs": [[{"lat": p.lat, "lng": p.lng} for p in leg] for leg in self.legs],
        }
