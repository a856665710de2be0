"""
Route estimation tests
Strategy order, deterministic fallbacks, polyline decoding and the
external provider adapter (requests session mocked, no network).
"""

import pytest
import requests
from unittest.mock import Mock, patch

from config import Config, _positive_float_env
from services.route_estimator import (
    METHOD_EXTERNAL, METHOD_GRAPH, METHOD_GREAT_CIRCLE, RouteEstimator, shortest_path,
)
from services.routing_provider import GoogleDirectionsProvider, decode_polyline
from tests.fixtures import FailingRoutingProvider, FixedRoutingProvider
from utils.exceptions import RoutingProviderError
from utils.geo import haversine_km, is_valid_coordinate, travel_minutes

ORIGIN = (12.9716, 77.5946)
DESTINATION = (12.9352, 77.6245)


class TestGreatCircle:
    """Haversine helpers"""

    def test_known_distance(self):
        """One degree of latitude is about 111.19 km on a 6371 km sphere"""
        distance = haversine_km(0.0, 0.0, 1.0, 0.0)
        assert distance == pytest.approx(111.195, abs=0.01), "One degree of latitude should be ~111.19km"

    def test_zero_distance(self):
        assert haversine_km(*ORIGIN, *ORIGIN) == pytest.approx(0.0), "Same point should be 0km apart"

    def test_travel_minutes_uses_average_speed(self):
        assert travel_minutes(15.0, 30) == pytest.approx(30.0), "15km at 30km/h should take 30 minutes"

    def test_non_positive_speed_uses_configured_speed(self):
        expected = 15.0 / Config.AVERAGE_SPEED_KMH * 60
        assert travel_minutes(15.0, 0) == pytest.approx(expected), "Zero speed must not divide by zero"
        assert travel_minutes(15.0, -20) == pytest.approx(expected)

    @pytest.mark.parametrize("raw", ["0", "-5", "abc", "nan", "inf"])
    def test_average_speed_setting_rejects_bad_values(self, monkeypatch, raw):
        monkeypatch.setenv("AVERAGE_SPEED_KMH", raw)
        assert _positive_float_env("AVERAGE_SPEED_KMH", 30.0) == 30.0, f"{raw!r} should fall back to 30"

    def test_average_speed_setting_accepts_positive_value(self, monkeypatch):
        monkeypatch.setenv("AVERAGE_SPEED_KMH", "45")
        assert _positive_float_env("AVERAGE_SPEED_KMH", 30.0) == 45.0

    def test_coordinate_validation(self):
        assert is_valid_coordinate(12.9, 77.5)
        assert not is_valid_coordinate(None, 77.5), "Missing latitude is invalid"
        assert not is_valid_coordinate(91, 0), "Latitude above 90 is invalid"
        assert not is_valid_coordinate("north", 0), "Non-numeric latitude is invalid"


class TestRouteFallbacks:
    """Provider failure falls through to graph search, then great-circle"""

    def test_failing_provider_without_waypoints_uses_great_circle(self):
        """Route fallback with no waypoints equals the great-circle distance"""
        provider = FailingRoutingProvider()
        estimate = RouteEstimator(provider=provider).estimate(*ORIGIN, *DESTINATION)

        expected = haversine_km(*ORIGIN, *DESTINATION)
        assert provider.calls == 1, "Provider should be consulted first"
        assert estimate.method == METHOD_GREAT_CIRCLE
        assert estimate.distance_km == pytest.approx(expected, rel=1e-9), "Distance should be great-circle"
        assert estimate.path == [list(ORIGIN), list(DESTINATION)], "Fallback path is the two endpoints"
        assert estimate.duration_min == pytest.approx(expected / Config.AVERAGE_SPEED_KMH * 60)

    def test_failing_provider_with_waypoints_uses_graph_search(self):
        waypoint = (12.95, 77.61)
        estimate = RouteEstimator(provider=FailingRoutingProvider()).estimate(
            *ORIGIN, *DESTINATION, waypoints=[waypoint]
        )

        assert estimate.method == METHOD_GRAPH
        assert estimate.path[0] == list(ORIGIN), "Path should start at the origin"
        assert estimate.path[-1] == list(DESTINATION), "Path should end at the destination"
        assert estimate.distance_km == pytest.approx(haversine_km(*ORIGIN, *DESTINATION)), (
            "Great-circle weights obey the triangle inequality, so the shortest path is the direct edge"
        )

    def test_unexpected_provider_exception_is_absorbed(self):
        provider = Mock()
        provider.name = "broken"
        provider.get_route.side_effect = KeyError("routes")

        estimate = RouteEstimator(provider=provider).estimate(*ORIGIN, *DESTINATION)
        assert estimate.method == METHOD_GREAT_CIRCLE, "Unexpected provider errors must not reach the caller"

    def test_external_provider_result_is_used(self):
        estimate = RouteEstimator(provider=FixedRoutingProvider(distance_km=7.5, duration_min=21.0)).estimate(
            *ORIGIN, *DESTINATION
        )
        assert estimate.method == METHOD_EXTERNAL
        assert estimate.distance_km == 7.5
        assert estimate.duration_min == 21.0

    def test_snapshot_rounding(self):
        estimate = RouteEstimator(provider=FixedRoutingProvider(distance_km=5.123456, duration_min=12.345)).estimate(
            *ORIGIN, *DESTINATION
        )
        snapshot = estimate.to_snapshot()
        assert snapshot["distance"] == 5.123, "Snapshot distance is rounded to 3 decimals"
        assert snapshot["duration"] == 12.3, "Snapshot duration is rounded to 1 decimal"
        assert snapshot["method"] == METHOD_EXTERNAL
        assert "calculated_at" in snapshot


class TestShortestPath:
    """Dijkstra over the complete great-circle graph"""

    def test_direct_edge_is_never_longer_than_detour(self):
        """On a complete metric graph the direct edge wins over a far waypoint"""
        far_waypoint = (13.5, 78.5)
        path, distance = shortest_path(ORIGIN, DESTINATION, [far_waypoint])

        assert path == [ORIGIN, DESTINATION], "Far waypoint should be skipped"
        assert distance == pytest.approx(haversine_km(*ORIGIN, *DESTINATION))

    def test_collinear_waypoint_distance(self):
        origin, mid, destination = (0.0, 0.0), (0.0, 0.5), (0.0, 1.0)
        _, distance = shortest_path(origin, destination, [mid])
        assert distance == pytest.approx(haversine_km(*origin, *destination), rel=1e-6)


class TestPolylineDecoding:
    def test_reference_polyline(self):
        points = decode_polyline("_p~iF~ps|U_ulLnnqC_mqNvxq`@")
        assert points == [[38.5, -120.2], [40.7, -120.95], [43.252, -126.453]]

    def test_empty_polyline(self):
        assert decode_polyline("") == []


class TestGoogleDirectionsProvider:
    """HTTP adapter with a mocked requests session"""

    def _provider(self, response=None, side_effect=None):
        session = Mock()
        if side_effect is not None:
            session.get.side_effect = side_effect
        else:
            session.get.return_value = response
        return GoogleDirectionsProvider(api_key="test-key", base_url="https://routes.test/json", timeout=3, session=session), session

    def test_parses_legs_and_polyline(self):
        response = Mock()
        response.raise_for_status.return_value = None
        response.json.return_value = {
            "status": "OK",
            "routes": [{
                "legs": [
                    {"distance": {"value": 4000}, "duration": {"value": 600}},
                    {"distance": {"value": 2000}, "duration": {"value": 300}},
                ],
                "overview_polyline": {"points": "_p~iF~ps|U_ulLnnqC_mqNvxq`@"},
            }],
        }
        provider, session = self._provider(response)

        route = provider.get_route(ORIGIN, DESTINATION)
        assert route.distance_km == pytest.approx(6.0), "Leg distances are summed and converted to km"
        assert route.duration_min == pytest.approx(15.0), "Leg durations are summed and converted to minutes"
        assert route.path[0] == [38.5, -120.2]
        assert session.get.call_args.kwargs["timeout"] == 3, "Provider calls must carry a bounded timeout"

    def test_network_error_is_routing_provider_error(self):
        provider, _ = self._provider(side_effect=requests.Timeout("timed out"))
        with pytest.raises(RoutingProviderError):
            provider.get_route(ORIGIN, DESTINATION)

    def test_empty_routes_is_routing_provider_error(self):
        response = Mock()
        response.raise_for_status.return_value = None
        response.json.return_value = {"status": "ZERO_RESULTS", "routes": []}
        provider, _ = self._provider(response)
        with pytest.raises(RoutingProviderError):
            provider.get_route(ORIGIN, DESTINATION)

    def test_unconfigured_provider_degrades(self):
        with patch.object(Config, "ROUTING_API_KEY", ""):
            from services.routing_provider import get_routing_provider
            provider = get_routing_provider()
        estimate = RouteEstimator(provider=provider).estimate(*ORIGIN, *DESTINATION)
        assert estimate.method == METHOD_GREAT_CIRCLE
