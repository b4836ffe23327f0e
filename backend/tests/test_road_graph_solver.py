from __future__ import annotations

import asyncio
from typing import Any

import httpx
import pytest

from app.circle_estimator import estimate_circle
from app.geo import lnglat_to_tile
from app.models import RoadGraphState
from app.range_errors import EmptyResult, MissingInput, ProviderDisabled, UpstreamUnavailable
from app.road_graph_provider import RoadEdge, RoadGraphProvider, parse_edge
from app.road_graph_solver import RoadGraphReachability, bounded_shortest_times, edge_seconds
from app.traffic_cache import TrafficSampleCache
from app.vehicles import get_vehicle

LNG, LAT = 2.3522, 48.8566
# Roughly one kilometre of longitude at this latitude.
KM_LNG = 0.013646


def _edge(edge_id: str, a: str, b: str, a_lng: float, b_lng: float, *, oneway: bool = False) -> RoadEdge:
    return RoadEdge(
        id=edge_id,
        from_node_id=a,
        to_node_id=b,
        length_m=1000.0,
        coordinates=((a_lng, LAT), (b_lng, LAT)),
        road_class="primary",
        oneway=oneway,
        speed_limit_kmh=50.0,
    )


class FakeRoadGraph:
    def __init__(
        self,
        edges: list[RoadEdge],
        *,
        snap_error: Exception | None = None,
        failing_neighbours: bool = False,
    ) -> None:
        self.edges = edges
        self.snap_error = snap_error
        self.failing_neighbours = failing_neighbours
        self.available = True
        self.snap_calls = 0
        self.tile_calls: list[tuple[int, int, int, str]] = []
        self.center = lnglat_to_tile(14, LNG, LAT)

    async def snap(self, *, lng: float, lat: float, profile: str) -> tuple[float, float]:
        self.snap_calls += 1
        if self.snap_error is not None:
            raise self.snap_error
        return lng, lat

    async def tile_edges(self, *, z: int, x: int, y: int, profile: str) -> list[RoadEdge]:
        self.tile_calls.append((z, x, y, profile))
        if (x, y) == (self.center.x, self.center.y):
            return list(self.edges)
        if self.failing_neighbours:
            raise UpstreamUnavailable("road-graph 503: sleeping", status_code=503)
        return []


def _solver(provider: Any | None) -> RoadGraphReachability:
    return RoadGraphReachability(provider, TrafficSampleCache(None), zoom=14, clock=lambda: 1_000.0)


def _compute(solver: RoadGraphReachability, elapsed: float, state: RoadGraphState | None = None, vehicle: str = "car"):
    return asyncio.run(
        solver.compute(lng=LNG, lat=LAT, elapsed_s=elapsed, vehicle_type=vehicle, prev_state=state)
    )


def test_bounded_shortest_times_stops_at_budget() -> None:
    adjacency = {"A": [("B", 10.0)], "B": [("C", 10.0)], "C": [("D", 10.0)]}
    assert bounded_shortest_times(adjacency, "A", 25.0) == {"A": 0.0, "B": 10.0, "C": 20.0}
    assert bounded_shortest_times(adjacency, "A", 5.0) == {"A": 0.0}


def test_bounded_shortest_times_prefers_cheaper_path() -> None:
    adjacency = {"A": [("B", 50.0), ("C", 5.0)], "C": [("B", 5.0)]}
    assert bounded_shortest_times(adjacency, "A", 100.0)["B"] == pytest.approx(10.0)


def test_edge_time_uses_capped_effective_speed() -> None:
    edge = _edge("e", "A", "B", LNG, LNG + KM_LNG)
    # Car: min(90, limit 50) x 1.15 overspeed = 57.5 km/h.
    assert edge_seconds(edge, get_vehicle("car"), None) == pytest.approx(1000.0 / (57.5 / 3.6))


def test_one_way_edges_are_not_traversed_backwards() -> None:
    oneway = [
        _edge("e1", "N1", "N0", LNG + KM_LNG, LNG, oneway=True),
        _edge("e2", "N1", "N2", LNG + KM_LNG, LNG + 2 * KM_LNG),
    ]
    result = _compute(_solver(FakeRoadGraph(oneway)), 200)
    assert result.meta["reachedNodes"] == 1
    assert result.meta["reachedEdges"] == 1

    twoway = [
        _edge("e1", "N1", "N0", LNG + KM_LNG, LNG),
        _edge("e2", "N1", "N2", LNG + KM_LNG, LNG + 2 * KM_LNG),
    ]
    result = _compute(_solver(FakeRoadGraph(twoway)), 200)
    assert result.meta["reachedNodes"] == 3
    assert result.meta["reachedEdges"] == 2
    geometry = result.geojson["features"][0]["geometry"]
    assert geometry["type"] == "MultiLineString"


def test_expansion_is_bounded_by_elapsed_budget() -> None:
    edges = [
        _edge("e1", "N0", "N1", LNG, LNG + KM_LNG),
        _edge("e2", "N1", "N2", LNG + KM_LNG, LNG + 2 * KM_LNG),
        _edge("e3", "N2", "N3", LNG + 2 * KM_LNG, LNG + 3 * KM_LNG),
    ]
    # One edge takes ~62.6 s, so 100 s reaches N1 only; e2 touches N1.
    result = _compute(_solver(FakeRoadGraph(edges)), 100)
    assert result.meta["provider"] == "road_graph"
    assert result.meta["mode"] == "graph"
    assert result.meta["reachedNodes"] == 2
    assert result.meta["reachedEdges"] == 2
    assert result.meta["totalEdges"] == 3


def test_zero_edges_everywhere_falls_back_to_the_circle() -> None:
    provider = FakeRoadGraph([])
    result = _compute(_solver(provider), 600)

    circle = estimate_circle(lng=LNG, lat=LAT, elapsed_s=600, vehicle_type="car")
    assert result.geojson == circle.geojson
    assert result.meta["fallback"] is True
    assert result.meta["mode"] == "circle"
    assert result.meta["fallbackReason"] == "EMPTY_RESULT"
    assert len(provider.tile_calls) == 9


def test_disabled_service_falls_back_to_the_circle() -> None:
    result = _compute(_solver(None), 600)
    assert result.meta["fallback"] is True
    assert result.meta["fallbackReason"] == "PROVIDER_DISABLED"
    assert not result.is_empty


def test_snap_failure_continues_unsnapped_and_flags_degraded() -> None:
    edges = [_edge("e1", "N0", "N1", LNG, LNG + KM_LNG)]
    provider = FakeRoadGraph(edges, snap_error=UpstreamUnavailable("road-graph request failed: ConnectError"))
    result = _compute(_solver(provider), 300)

    assert result.meta["snapped"] is False
    assert result.meta["degraded"] is True
    assert result.meta["degradedStage"] == "snap"
    assert result.meta["reachedEdges"] == 1
    state = result.next_state
    assert isinstance(state, RoadGraphState)
    assert state.snapped_origin is not None
    assert state.snapped_origin.lng == LNG


def test_tile_failures_are_collected_without_aborting() -> None:
    edges = [_edge("e1", "N0", "N1", LNG, LNG + KM_LNG)]
    result = _compute(_solver(FakeRoadGraph(edges, failing_neighbours=True)), 300)

    assert result.meta["roadGraphStatus"] == "ready"
    assert len(result.meta["tileErrors"]) == 8
    assert result.meta["degradedStage"] == "tile"
    assert result.meta["reachedEdges"] == 1


def test_snapped_origin_is_reused_between_calls() -> None:
    edges = [_edge("e1", "N0", "N1", LNG, LNG + KM_LNG), _edge("e2", "N1", "N2", LNG + KM_LNG, LNG + 2 * KM_LNG)]
    provider = FakeRoadGraph(edges)
    solver = _solver(provider)

    first = _compute(solver, 70)
    second = _compute(solver, 140, first.next_state)

    assert provider.snap_calls == 1
    center = lnglat_to_tile(14, LNG, LAT)
    before = first.next_state.tiles[center.key].coverage_ratio
    after = second.next_state.tiles[center.key].coverage_ratio
    assert after >= before
    assert after == pytest.approx(1.0)
    assert second.next_state.tiles[center.key].status == "full"


def test_zero_elapsed_and_missing_coordinates() -> None:
    solver = _solver(FakeRoadGraph([]))
    assert _compute(solver, 0).reason == "ZERO_ELAPSED"
    missing = asyncio.run(solver.compute(lng=None, lat=None, elapsed_s=60, vehicle_type="car"))
    assert missing.reason == "MISSING_COORDS"


def test_parse_edge_accepts_camel_case_and_skips_malformed() -> None:
    edge = parse_edge(
        {
            "id": 7,
            "fromNodeId": "a",
            "toNodeId": "b",
            "lengthMeters": 120.5,
            "geometry": {"type": "LineString", "coordinates": [[2.0, 48.0], [2.001, 48.0]]},
            "roadClass": "Motorway",
            "oneway": True,
            "speedLimitKmh": 110,
        }
    )
    assert edge is not None
    assert edge.id == "7"
    assert edge.road_class == "motorway"
    assert edge.oneway is True
    assert edge.speed_limit_kmh == 110.0

    no_length = parse_edge(
        {
            "from_node_id": "a",
            "to_node_id": "b",
            "geometry": {"type": "LineString", "coordinates": [[2.0, 48.0], [2.0, 48.001]]},
        }
    )
    assert no_length is not None
    assert no_length.length_m == pytest.approx(111.2, abs=0.5)

    assert parse_edge({"from_node_id": "a", "to_node_id": "b", "geometry": {"type": "Point"}}) is None
    assert parse_edge({"geometry": {"type": "LineString", "coordinates": [[0, 0], [1, 1]]}}) is None
    assert parse_edge("nope") is None


@pytest.mark.parametrize(
    ("flag", "expected"),
    [("false", False), ("No", False), ("0", False), ("", False), (0, False), ("true", True), ("yes", True), (1, True)],
)
def test_parse_edge_reads_string_oneway_flags(flag: Any, expected: bool) -> None:
    edge = parse_edge(
        {
            "from_node_id": "a",
            "to_node_id": "b",
            "geometry": {"type": "LineString", "coordinates": [[2.0, 48.0], [2.001, 48.0]]},
            "oneway": flag,
        }
    )
    assert edge is not None
    assert edge.oneway is expected


def _graph_service(handler) -> RoadGraphProvider:
    return RoadGraphProvider(base_url="http://road-graph.test/", transport=httpx.MockTransport(handler))


def test_provider_snaps_and_parses_tile_edges() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        if request.url.path == "/snap":
            return httpx.Response(200, json={"lng": 2.3525, "lat": 48.8567})
        return httpx.Response(
            200,
            json={
                "z": 14,
                "x": 1,
                "y": 2,
                "edges": [
                    {
                        "id": "e1",
                        "from_node_id": "a",
                        "to_node_id": "b",
                        "length_m": 80,
                        "geometry": {"type": "LineString", "coordinates": [[2.35, 48.85], [2.351, 48.85]]},
                        "oneway": True,
                    },
                    {"id": "broken"},
                ],
            },
        )

    provider = _graph_service(handler)
    assert asyncio.run(provider.snap(lng=LNG, lat=LAT, profile="car")) == (2.3525, 48.8567)
    edges = asyncio.run(provider.tile_edges(z=14, x=1, y=2, profile="scooter"))

    assert [e.id for e in edges] == ["e1"]
    assert edges[0].oneway is True
    assert seen[0].url.params["profile"] == "car"
    assert seen[1].url.params["x"] == "1"
    assert seen[1].url.params["profile"] == "scooter"


def test_provider_error_mapping() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/snap":
            return httpx.Response(200, json={"message": "no road nearby"})
        return httpx.Response(503, text="waking up")

    provider = _graph_service(handler)
    with pytest.raises(EmptyResult):
        asyncio.run(provider.snap(lng=LNG, lat=LAT, profile="car"))
    with pytest.raises(UpstreamUnavailable):
        asyncio.run(provider.tile_edges(z=14, x=1, y=2, profile="car"))
    with pytest.raises(MissingInput):
        asyncio.run(provider.snap(lng=200.0, lat=LAT, profile="car"))


def test_unconfigured_provider_is_disabled() -> None:
    provider = RoadGraphProvider(base_url="")
    assert provider.available is False
    with pytest.raises(ProviderDisabled):
        asyncio.run(provider.tile_edges(z=14, x=1, y=2, profile="car"))
