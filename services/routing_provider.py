"""
Routing Provider Port
Wraps the external directions API behind a small interface so the route
estimator can fall back deterministically whenever the provider is slow,
misconfigured or returns nothing useful.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import List, Optional, Sequence

import requests

from config import Config
from utils.exceptions import RoutingProviderError
from utils.geo import Coordinate

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProviderRoute:
    """Route as returned by an external provider"""
    path: List[List[float]]
    distance_km: float
    duration_min: float


class RoutingProvider(ABC):
    """Port for external routing providers"""

    name = "provider"

    @abstractmethod
    def get_route(
        self,
        origin: Coordinate,
        destination: Coordinate,
        waypoints: Sequence[Coordinate] = (),
    ) -> ProviderRoute:
        """Return a route or raise RoutingProviderError"""


class UnconfiguredRoutingProvider(RoutingProvider):
    """Used when no API key is configured; every call degrades to the fallbacks"""

    name = "unconfigured"

    def get_route(self, origin, destination, waypoints=()):
        raise RoutingProviderError("Routing provider not configured")


def decode_polyline(encoded: str) -> List[List[float]]:
    """Decode an encoded polyline string into [[lat, lng], ...]"""
    points = []
    index = lat = lng = 0
    length = len(encoded)

    while index < length:
        deltas = []
        for _ in range(2):
            shift = result = 0
            while True:
                if index >= length:
                    raise ValueError("Truncated polyline")
                byte = ord(encoded[index]) - 63
                index += 1
                result |= (byte & 0x1F) << shift
                shift += 5
                if byte < 0x20:
                    break
            deltas.append(~(result >> 1) if result & 1 else result >> 1)
        lat += deltas[0]
        lng += deltas[1]
        points.append([lat / 1e5, lng / 1e5])

    return points


class GoogleDirectionsProvider(RoutingProvider):
    """Directions API client (Google Directions JSON format)"""

    name = "google-directions"

    def __init__(
        self,
        api_key: str,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        session: Optional[requests.Session] = None,
    ):
        self.api_key = api_key
        self.base_url = base_url or Config.ROUTING_PROVIDER_URL
        self.timeout = timeout or Config.ROUTING_TIMEOUT_SECONDS
        self.http = session or requests.Session()

    @staticmethod
    def _fmt(point: Coordinate) -> str:
        # ~11m precision keeps request URLs stable for nearby points
        return f"{round(point[0], 4)},{round(point[1], 4)}"

    def get_route(self, origin, destination, waypoints=()):
        params = {
            "origin": self._fmt(origin),
            "destination": self._fmt(destination),
            "key": self.api_key,
            "alternatives": "false",
        }
        if waypoints:
            params["waypoints"] = "|".join(f"via:{self._fmt(w)}" for w in waypoints)

        try:
            response = self.http.get(self.base_url, params=params, timeout=self.timeout)
            response.raise_for_status()
            data = response.json()
        except requests.exceptions.RequestException as e:
            raise RoutingProviderError(f"Directions request failed: {e}") from e
        except ValueError as e:
            raise RoutingProviderError(f"Directions response was not JSON: {e}") from e

        routes = data.get("routes") or []
        if data.get("status") not in (None, "OK") or not routes:
            raise RoutingProviderError(f"Directions returned no route (status={data.get('status')})")

        route = routes[0]
        legs = route.get("legs") or []
        try:
            path = decode_polyline(route["overview_polyline"]["points"])
            distance_m = sum(leg["distance"]["value"] for leg in legs)
            duration_s = sum(leg["duration"]["value"] for leg in legs)
        except (KeyError, TypeError, ValueError) as e:
            raise RoutingProviderError(f"Malformed directions payload: {e}") from e

        if not path or distance_m <= 0:
            raise RoutingProviderError("Directions returned an empty route")

        return ProviderRoute(path=path, distance_km=distance_m / 1000.0, duration_min=duration_s / 60.0)


def get_routing_provider() -> RoutingProvider:
    """Build the provider from configuration"""
    if Config.ROUTING_API_KEY:
        return GoogleDirectionsProvider(api_key=Config.ROUTING_API_KEY)
    logger.warning("⚠️ ROUTING_PROVIDER: No ROUTING_API_KEY configured, using great-circle fallbacks")
    return UnconfiguredRoutingProvider()
