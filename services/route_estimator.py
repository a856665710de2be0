"""
Route Estimator
===============

Produces a path, distance and duration between two points. Strategies are tried
in order and each one either returns an estimate or hands over to the next:

1. external       - the configured routing provider
2. graph-shortest-path - Dijkstra over a complete great-circle graph, only when
                    waypoints are supplied
3. great-circle-fallback - straight line at the assumed average speed
"""

import heapq
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, List, Optional, Sequence

from config import Config
from services.routing_provider import RoutingProvider, get_routing_provider
from utils.exceptions import RoutingProviderError
from utils.geo import Coordinate, haversine_km, travel_minutes

logger = logging.getLogger(__name__)

METHOD_EXTERNAL = "external"
METHOD_GRAPH = "graph-shortest-path"
METHOD_GREAT_CIRCLE = "great-circle-fallback"


@dataclass(frozen=True)
class RouteEstimate:
    path: List[List[float]]
    distance_km: float
    duration_min: float
    method: str
    calculated_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_snapshot(self) -> dict:
        """JSON-safe form stored on the order"""
        return {
            "coordinates": self.path,
            "distance": round(self.distance_km, 3),
            "duration": round(self.duration_min, 1),
            "method": self.method,
            "calculated_at": self.calculated_at.isoformat(),
        }


class RouteEstimator:
    """Ordered routing strategies with deterministic fallbacks"""

    def __init__(self, provider: Optional[RoutingProvider] = None, average_speed_kmh: Optional[float] = None):
        self.provider = provider or get_routing_provider()
        self.average_speed_kmh = average_speed_kmh or Config.AVERAGE_SPEED_KMH

    def estimate(
        self,
        origin_lat: float,
        origin_lng: float,
        dest_lat: float,
        dest_lng: float,
        waypoints: Sequence[Coordinate] = (),
    ) -> RouteEstimate:
        origin = (float(origin_lat), float(origin_lng))
        destination = (float(dest_lat), float(dest_lng))
        points = [(float(lat), float(lng)) for lat, lng in waypoints]

        strategies: List[Callable[[], Optional[RouteEstimate]]] = [
            lambda: self._external(origin, destination, points),
            lambda: self._graph_shortest_path(origin, destination, points),
        ]
        for strategy in strategies:
            estimate = strategy()
            if estimate is not None:
                return estimate

        return self._great_circle(origin, destination)

    def _external(self, origin, destination, waypoints) -> Optional[RouteEstimate]:
        try:
            route = self.provider.get_route(origin, destination, waypoints)
        except RoutingProviderError as e:
            logger.warning(f"⚠️ ROUTE_PROVIDER_DEGRADED: {self.provider.name} failed, falling back: {e.message}")
            return None
        except Exception as e:
            logger.error(f"❌ ROUTE_PROVIDER_ERROR: unexpected {type(e).__name__} from {self.provider.name}: {e}")
            return None

        logger.debug(f"🗺️ ROUTE_EXTERNAL: {route.distance_km:.2f}km via {self.provider.name}")
        return RouteEstimate(
            path=route.path,
            distance_km=route.distance_km,
            duration_min=route.duration_min,
            method=METHOD_EXTERNAL,
        )

    def _graph_shortest_path(self, origin, destination, waypoints) -> Optional[RouteEstimate]:
        if not waypoints:
            return None
        try:
            path, distance = shortest_path(origin, destination, waypoints)
        except Exception as e:
            logger.warning(f"⚠️ ROUTE_GRAPH_FAILED: {e}")
            return None

        return RouteEstimate(
            path=[[lat, lng] for lat, lng in path],
            distance_km=distance,
            duration_min=travel_minutes(distance, self.average_speed_kmh),
            method=METHOD_GRAPH,
        )

    def _great_circle(self, origin, destination) -> RouteEstimate:
        distance = haversine_km(origin[0], origin[1], destination[0], destination[1])
        return RouteEstimate(
            path=[[origin[0], origin[1]], [destination[0], destination[1]]],
            distance_km=distance,
            duration_min=travel_minutes(distance, self.average_speed_kmh),
            method=METHOD_GREAT_CIRCLE,
        )


def shortest_path(origin: Coordinate, destination: Coordinate, waypoints: Sequence[Coordinate]):
    """
    Dijkstra from origin to destination over the complete graph of
    {origin, waypoints..., destination} weighted by great-circle distance.

    Returns (path, distance_km).
    """
    nodes = [origin, *waypoints, destination]
    target = len(nodes) - 1

    dist = [float("inf")] * len(nodes)
    prev: List[Optional[int]] = [None] * len(nodes)
    dist[0] = 0.0
    heap = [(0.0, 0)]
    visited = set()

    while heap:
        d, u = heapq.heappop(heap)
        if u in visited:
            continue
        visited.add(u)
        if u == target:
            break
        for v in range(len(nodes)):
            if v == u or v in visited:
                continue
            weight = haversine_km(nodes[u][0], nodes[u][1], nodes[v][0], nodes[v][1])
            if d + weight < dist[v]:
                dist[v] = d + weight
                prev[v] = u
                heapq.heappush(heap, (dist[v], v))

    if dist[target] == float("inf"):
        raise ValueError("Destination unreachable")

    path = []
    node: Optional[int] = target
    while node is not None:
        path.append(nodes[node])
        node = prev[node]
    path.reverse()
    return path, dist[target]
