"""GPS jitter smoothing for live courier positions."""

import time
import logging
from dataclasses import dataclass, replace
from typing import Callable, Optional, Tuple

from .config import (
    PROCESS_NOISE,
    MEASUREMENT_NOISE,
    INITIAL_ESTIMATE_ERROR,
    MAX_SPEED_KMH,
    FALLBACK_ELAPSED_MS,
)
from .geo import haversine_km, initial_bearing
from .models import RawFix, SmoothedPosition

logger = logging.getLogger(__name__)


def _now_ms() -> int:
    return int(time.time() * 1000)


@dataclass(frozen=True)
class FilterState:
    """
    Filter state for one courier.

    Attributes:
        last_position: Previous smoothed output, None before the first fix
        last_velocity: Per-axis displacement (d_lat, d_lng) between the last
            two smoothed outputs
        estimate_error: Scalar uncertainty shared by both axes
        last_timestamp: Timestamp carried by the previous raw fix, if any
    """
    last_position: Optional[SmoothedPosition] = None
    last_velocity: Tuple[float, float] = (0.0, 0.0)
    estimate_error: float = INITIAL_ESTIMATE_ERROR
    last_timestamp: Optional[int] = None
    process_noise: float = PROCESS_NOISE
    measurement_noise: float = MEASUREMENT_NOISE

    def reset(self) -> "FilterState":
        """Fresh state keeping this state's noise parameters."""
        return FilterState(
            process_noise=self.process_noise,
            measurement_noise=self.measurement_noise,
        )


def _speed_kmh(distance_km: float, elapsed_ms: float) -> float:
    if elapsed_ms <= 0:
        return 0.0
    speed = distance_km / (elapsed_ms / 3_600_000.0)
    return max(0.0, min(speed, MAX_SPEED_KMH))


def smooth_fix(
    state: FilterState, raw: RawFix, now_ms: int
) -> Tuple[FilterState, SmoothedPosition]:
    """
    Run one fix through the filter.

    Constant-velocity prediction followed by a scalar Kalman correction,
    applied to latitude and longitude independently. Pure: the input state is
    left untouched and the successor state is returned with the output.

    Args:
        state: Current filter state
        raw: Incoming raw fix
        now_ms: Clock reading used when the fix carries no timestamp

    Returns:
        (new_state, smoothed_position)
    """
    timestamp = raw.timestamp if raw.timestamp is not None else now_ms

    last = state.last_position
    if last is None:
        position = SmoothedPosition(
            lat=raw.lat,
            lng=raw.lng,
            timestamp=timestamp,
            speed_kmh=0.0,
            heading_deg=0.0,
        )
        new_state = replace(
            state,
            last_position=position,
            last_velocity=(0.0, 0.0),
            last_timestamp=raw.timestamp,
        )
        return new_state, position

    v_lat, v_lng = state.last_velocity
    predicted_lat = last.lat + v_lat
    predicted_lng = last.lng + v_lng

    estimate_error = state.estimate_error + state.process_noise
    gain = estimate_error / (estimate_error + state.measurement_noise)

    lat = predicted_lat + gain * (raw.lat - predicted_lat)
    lng = predicted_lng + gain * (raw.lng - predicted_lng)

    velocity = (lat - last.lat, lng - last.lng)
    estimate_error *= 1 - gain

    if raw.timestamp is not None and state.last_timestamp is not None:
        elapsed_ms = raw.timestamp - state.last_timestamp
    else:
        elapsed_ms = FALLBACK_ELAPSED_MS

    distance_km = haversine_km(last.point, (lat, lng))
    position = SmoothedPosition(
        lat=lat,
        lng=lng,
        timestamp=timestamp,
        speed_kmh=_speed_kmh(distance_km, elapsed_ms),
        heading_deg=initial_bearing(last.point, (lat, lng)),
    )

    new_state = replace(
        state,
        last_position=position,
        last_velocity=velocity,
        estimate_error=estimate_error,
        last_timestamp=raw.timestamp,
    )
    return new_state, position


class LocationSmoother:
    """
    Per-courier smoothing filter.

    Holds a FilterState and advances it with smooth_fix(). One instance per
    courier; not safe for concurrent calls on the same instance, callers
    serialize access (the registry does this with a per-entry lock).
    """

    def __init__(
        self,
        process_noise: float = PROCESS_NOISE,
        measurement_noise: float = MEASUREMENT_NOISE,
        clock: Optional[Callable[[], int]] = None,
    ):
        self._state = FilterState(
            process_noise=process_noise,
            measurement_noise=measurement_noise,
        )
        self._clock = clock or _now_ms

    @property
    def state(self) -> FilterState:
        return self._state

    def smooth(self, raw: RawFix) -> SmoothedPosition:
        """Process a new fix and return the smoothed position."""
        self._state, position = smooth_fix(self._state, raw, self._clock())
        logger.debug(
            f"Smoothed ({raw.lat}, {raw.lng}) -> ({position.lat:.6f}, {position.lng:.6f}) "
            f"speed={position.speed_kmh:.1f}km/h heading={position.heading_deg:.0f}"
        )
        return position

    def reset(self):
        """Forget position, velocity and uncertainty."""
        self._state = self._state.reset()
