"""Road routing through the OSRM HTTP API."""

import math
import logging
import requests
from typing import Any, Dict, List, Optional, Sequence

from .config import OSRM_BASE_URL, OSRM_PROFILE, OSRM_TIMEOUT, OSRM_USER_AGENT
from .geo import dedupe_consecutive
from .models import LatLng

logger = logging.getLogger(__name__)


class RoutingError(Exception):
    """Base class for routing oracle failures."""


class RouteServiceError(RoutingError):
    """The routing service answered, but not with a route."""

    def __init__(self, message: str, code: Optional[str] = None, status_code: Optional[int] = None):
        super().__init__(message)
        self.code = code
        self.status_code = status_code


class MalformedRouteError(RoutingError):
    """The response could not be interpreted as a route."""


class RoutingTransportError(RoutingError):
    """Timeout or connection failure talking to the routing service."""


class RouteCancelledError(RoutingError):
    """The caller cancelled the resolution before it finished."""


class OSRMClient:
    """
    Client for the OSRM ``route`` service.

    Requests a route through every waypoint in order and returns its geometry
    split into legs, one per consecutive pair of waypoints.

    Note:
        Never retries and never returns a default route. Every failure is
        raised as a RoutingError subclass so callers can tell "no route"
        apart from a broken request.
    """

    def __init__(
        self,
        base_url: str = OSRM_BASE_URL,
        profile: str = OSRM_PROFILE,
        timeout: float = OSRM_TIMEOUT,
        session: Optional[requests.Session] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.profile = profile
        self.timeout = timeout
        self.session = session

    def route_url(self, waypoints: Sequence[LatLng]) -> str:
        coords = ";".join(f"{lng},{lat}" for lat, lng in waypoints)
        return f"{self.base_url}/route/v1/{self.profile}/{coords}"

    def fetch_legs(self, waypoints: Sequence[LatLng]) -> List[List[LatLng]]:
        """
        Fetch road geometry for an ordered list of waypoints.

        Args:
            waypoints: At least two (lat, lng) points, in visiting order

        Returns:
            One list of (lat, lng) points per leg, built from the legs' step
            geometries with consecutive duplicates removed

        Raises:
            RouteServiceError: Non-Ok code or HTTP error status
            MalformedRouteError: Payload missing routes or legs
            RoutingTransportError: Timeout or connection failure
        """
        url = self.route_url(waypoints)
        params = {"overview": "full", "geometries": "geojson", "steps": "true"}
        getter = self.session.get if self.session is not None else requests.get

        logger.debug(f"Requesting route through {len(waypoints)} waypoints")

        try:
            response = getter(
                url,
                params=params,
                timeout=self.timeout,
                headers={"User-Agent": OSRM_USER_AGENT},
            )
        except requests.exceptions.Timeout as e:
            logger.error(f"Routing service timeout: {e}")
            raise RoutingTransportError("Routing service timeout") from e
        except requests.exceptions.ConnectionError as e:
            logger.error(f"Routing service connection error: {e}")
            raise RoutingTransportError("Routing service connection error") from e
        except requests.exceptions.RequestException as e:
            logger.error(f"Routing request failed: {e}")
            raise RoutingTransportError(str(e)) from e

        try:
            data = response.json()
        except ValueError:
            data = None

        if response.status_code != 200 or not isinstance(data, dict) or data.get("code") != "Ok":
            code = data.get("code") if isinstance(data, dict) else None
            message = data.get("message") if isinstance(data, dict) else None
            if response.status_code == 200 and code is None:
                logger.error("Routing service returned an unreadable payload")
                raise MalformedRouteError("Routing response is not a route payload")
            message = message or f"Route request failed ({response.status_code})"
            logger.error(f"Routing service error {response.status_code} {code}: {message}")
            raise RouteServiceError(message, code=code, status_code=response.status_code)

        legs = self._parse_legs(data)
        expected = len(waypoints) - 1
        if len(legs) != expected:
            raise MalformedRouteError(f"Expected {expected} legs, got {len(legs)}")
        return legs

    @staticmethod
    def _parse_legs(data: Dict[str, Any]) -> List[List[LatLng]]:
        routes = data.get("routes")
        if not isinstance(routes, list) or not routes or not isinstance(routes[0], dict):
            raise MalformedRouteError("Routing response has no routes")
        raw_legs = routes[0].get("legs")
        if not isinstance(raw_legs, list):
            raise MalformedRouteError("Routing response has no legs")

        legs = []
        for leg in raw_legs:
            points: List[LatLng] = []
            steps = leg.get("steps") if isinstance(leg, dict) else None
            for step in steps or []:
                geometry = step.get("geometry") if isinstance(step, dict) else None
                coords = geometry.get("coordinates") if isinstance(geometry, dict) else None
                for coord in coords or []:
                    try:
                        lng, lat = float(coord[0]), float(coord[1])
                    except (TypeError, ValueError, IndexError):
                        raise MalformedRouteError(f"Bad coordinate in step geometry: {coord!r}") from None
                    if not (math.isfinite(lat) and math.isfinite(lng)):
                        continue
                    points.append(LatLng(lat, lng))
            legs.append(dedupe_consecutive(points))
        return legs
