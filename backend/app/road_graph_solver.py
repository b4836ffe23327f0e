from __future__ import annotations

import heapq
import time
from collections.abc import Callable
from dataclasses import dataclass
from math import inf
from typing import Any

from shapely.geometry import LineString, MultiLineString, mapping
from shapely.ops import linemerge

from .circle_estimator import estimate_circle
from .geo import TileKey, empty_feature_collection, haversine_m, is_valid_coordinate, lnglat_to_tile
from .logging_utils import log_event
from .models import IsochroneResult, RoadGraphState, RoadGraphTileState, SnappedOrigin
from .range_errors import RangeError
from .road_graph_provider import RoadEdge, RoadGraphProvider
from .traffic_cache import TrafficSampleCache
from .vehicles import VehicleProfile, effective_speed_kmh, get_vehicle

PROVIDER_NAME = "road_graph"
MAX_ELAPSED_S = 3600.0
FULL_COVERAGE = 0.95


@dataclass(frozen=True)
class LoadedEdge:
    edge: RoadEdge
    tile_key: str
    traffic_speed_kmh: float | None


@dataclass(frozen=True)
class SearchResult:
    arrival_s: dict[str, float]
    start_node: str | None


def edge_seconds(edge: RoadEdge, profile: VehicleProfile, traffic_speed_kmh: float | None) -> float:
    speed = effective_speed_kmh(
        profile,
        traffic_speed_kmh=traffic_speed_kmh,
        road_class=edge.road_class,
        speed_limit_kmh=edge.speed_limit_kmh,
    )
    return (edge.length_m / 1000.0) / (speed / 3600.0)


def build_adjacency(
    edges: list[LoadedEdge],
    profile: VehicleProfile,
) -> dict[str, list[tuple[str, float]]]:
    """Directed adjacency; two-way edges get a synthesized reverse twin."""
    adjacency: dict[str, list[tuple[str, float]]] = {}
    for loaded in edges:
        edge = loaded.edge
        seconds = edge_seconds(edge, profile, loaded.traffic_speed_kmh)
        adjacency.setdefault(edge.from_node_id, []).append((edge.to_node_id, seconds))
        if not edge.oneway:
            reverse = edge.reversed()
            adjacency.setdefault(reverse.from_node_id, []).append((reverse.to_node_id, seconds))
    return adjacency


def bounded_shortest_times(
    adjacency: dict[str, list[tuple[str, float]]],
    start: str,
    budget_s: float,
) -> dict[str, float]:
    """Single-source Dijkstra that never relaxes past the time budget."""
    best: dict[str, float] = {start: 0.0}
    heap: list[tuple[float, str]] = [(0.0, start)]
    while heap:
        cost, node = heapq.heappop(heap)
        if cost > best.get(node, inf):
            continue
        for nxt, seconds in adjacency.get(node, ()):
            new_cost = cost + seconds
            if new_cost > budget_s:
                continue
            if new_cost < best.get(nxt, inf):
                best[nxt] = new_cost
                heapq.heappush(heap, (new_cost, nxt))
    return best


def nearest_node(edges: list[LoadedEdge], *, lng: float, lat: float) -> str | None:
    best_node: str | None = None
    best_dist = inf
    for loaded in edges:
        edge = loaded.edge
        for node_id, (n_lng, n_lat) in (
            (edge.from_node_id, edge.coordinates[0]),
            (edge.to_node_id, edge.coordinates[-1]),
        ):
            dist = haversine_m(lat, lng, n_lat, n_lng)
            if dist < best_dist:
                best_dist = dist
                best_node = node_id
    return best_node


def search(edges: list[LoadedEdge], profile: VehicleProfile, *, lng: float, lat: float, budget_s: float) -> SearchResult:
    start = nearest_node(edges, lng=lng, lat=lat)
    if start is None:
        return SearchResult(arrival_s={}, start_node=None)
    adjacency = build_adjacency(edges, profile)
    return SearchResult(arrival_s=bounded_shortest_times(adjacency, start, budget_s), start_node=start)


def reached_network_geometry(edges: list[RoadEdge]) -> dict[str, Any] | None:
    if not edges:
        return None
    merged = linemerge([LineString(edge.coordinates) for edge in edges])
    if isinstance(merged, LineString):
        merged = MultiLineString([merged])
    geometry = mapping(merged)
    return {
        "type": "MultiLineString",
        "coordinates": [[list(point) for point in line] for line in geometry["coordinates"]],
    }


class RoadGraphReachability:
    """Shortest-time search over the road network in a 3x3 tile block.

    The origin is snapped once and remembered in the state. Per-tile failures
    are collected without aborting the call. With no usable edges the result
    is the circle estimate, tagged as a fallback.
    """

    def __init__(
        self,
        provider: RoadGraphProvider | None,
        traffic_cache: TrafficSampleCache,
        *,
        zoom: int = 14,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.provider = provider
        self.traffic_cache = traffic_cache
        self.zoom = int(zoom)
        self._clock = clock

    async def compute(
        self,
        *,
        lng: float | None,
        lat: float | None,
        elapsed_s: float,
        vehicle_type: str | None,
        prev_state: RoadGraphState | None = None,
    ) -> IsochroneResult:
        if lng is None or lat is None or not is_valid_coordinate(lng, lat):
            return IsochroneResult(
                geojson=empty_feature_collection(),
                meta={"provider": PROVIDER_NAME, "reason": "MISSING_COORDS"},
                next_state=RoadGraphState(),
            )
        state = prev_state.model_copy(deep=True) if prev_state is not None else RoadGraphState()

        elapsed = max(0.0, min(float(elapsed_s), MAX_ELAPSED_S))
        if elapsed <= 0:
            return IsochroneResult(
                geojson=empty_feature_collection(),
                meta={"provider": PROVIDER_NAME, "reason": "ZERO_ELAPSED"},
                next_state=state,
            )

        profile = get_vehicle(vehicle_type)
        self.traffic_cache.reset_budget()
        now = self._clock()
        degraded_stage: str | None = None
        snap_error: str | None = None
        tile_errors: dict[str, str] = {}

        provider = self.provider
        if provider is None or not provider.available:
            return self._circle_fallback(
                lng=float(lng),
                lat=float(lat),
                elapsed=elapsed,
                profile=profile,
                state=state,
                reason="PROVIDER_DISABLED",
                extra={"roadGraphStatus": "disabled"},
            )

        origin = state.snapped_origin
        if origin is None:
            origin, snap_error = await self._snap(provider, lng=float(lng), lat=float(lat), profile=profile)
            state.snapped_origin = origin
            if snap_error is not None:
                degraded_stage = "snap"

        center = TileKey(z=origin.tile_z, x=origin.tile_x, y=origin.tile_y)

        loaded: list[LoadedEdge] = []
        seen_ids: set[str] = set()
        edges_per_tile: dict[str, int] = {}
        for dx in (-1, 0, 1):
            for dy in (-1, 0, 1):
                tile = center.offset(dx, dy)
                if tile.key in edges_per_tile:
                    continue
                edges_per_tile[tile.key] = 0
                try:
                    edges = await provider.tile_edges(
                        z=tile.z,
                        x=tile.x,
                        y=tile.y,
                        profile=profile.road_graph_profile,
                    )
                except RangeError as exc:
                    tile_errors[tile.key] = f"{exc.reason_code}: {exc}"
                    continue
                if not edges:
                    continue
                traffic_speed = await self._tile_traffic_speed(state, tile, now=now)
                for edge in edges:
                    if edge.id in seen_ids:
                        continue
                    seen_ids.add(edge.id)
                    loaded.append(LoadedEdge(edge=edge, tile_key=tile.key, traffic_speed_kmh=traffic_speed))
                    edges_per_tile[tile.key] += 1

        if tile_errors:
            log_event(
                "road_graph_tile_failures",
                failed_tiles=len(tile_errors),
                tiles=sorted(tile_errors),
            )

        if not loaded:
            reason = "UPSTREAM_UNAVAILABLE" if tile_errors else "EMPTY_RESULT"
            return self._circle_fallback(
                lng=float(lng),
                lat=float(lat),
                elapsed=elapsed,
                profile=profile,
                state=state,
                reason=reason,
                extra={
                    "roadGraphStatus": "unavailable" if tile_errors else "no_edges",
                    "degradedStage": degraded_stage or "tile",
                    "snapError": snap_error,
                    "tileErrors": tile_errors,
                },
            )

        result = search(loaded, profile, lng=origin.lng, lat=origin.lat, budget_s=elapsed)
        reached: list[RoadEdge] = []
        reached_per_tile: dict[str, int] = {}
        for item in loaded:
            edge = item.edge
            if edge.from_node_id in result.arrival_s or edge.to_node_id in result.arrival_s:
                reached.append(edge)
                reached_per_tile[item.tile_key] = reached_per_tile.get(item.tile_key, 0) + 1

        self._update_tiles(state, edges_per_tile, reached_per_tile)
        geometry = reached_network_geometry(reached)
        features: list[dict[str, Any]] = []
        if geometry is not None:
            features.append(
                {
                    "type": "Feature",
                    "properties": {"reachedEdges": len(reached)},
                    "geometry": geometry,
                }
            )

        origin_tile_sample = state.traffic_cache.get(center.key)
        meta: dict[str, Any] = {
            "provider": PROVIDER_NAME,
            "mode": "graph",
            "roadGraphStatus": "ready",
            "vehicleType": profile.id,
            "elapsedSeconds": elapsed,
            "effectiveSpeedKmh": effective_speed_kmh(
                profile,
                traffic_speed_kmh=origin_tile_sample.avg_speed_kmh if origin_tile_sample else None,
            ),
            "totalEdges": len(loaded),
            "reachedEdges": len(reached),
            "reachedNodes": len(result.arrival_s),
            "snapped": origin.snapped,
            "degraded": degraded_stage is not None or bool(tile_errors),
            "degradedStage": degraded_stage or ("tile" if tile_errors else None),
            "snapError": snap_error,
            "tileErrors": tile_errors,
        }
        if not features:
            meta["reason"] = "EMPTY_RESULT"
        return IsochroneResult(
            geojson={"type": "FeatureCollection", "features": features},
            meta=meta,
            next_state=state,
        )

    async def _snap(
        self, provider: RoadGraphProvider, *, lng: float, lat: float, profile: VehicleProfile
    ) -> tuple[SnappedOrigin, str | None]:
        error: str | None = None
        snapped_lng, snapped_lat, snapped = lng, lat, False
        try:
            snapped_lng, snapped_lat = await provider.snap(lng=lng, lat=lat, profile=profile.road_graph_profile)
            snapped = True
        except RangeError as exc:
            error = f"{exc.reason_code}: {exc}"
            log_event("road_graph_snap_failed", reason_code=exc.reason_code, detail=str(exc))

        tile = lnglat_to_tile(self.zoom, snapped_lng, snapped_lat)
        origin = SnappedOrigin(
            lng=snapped_lng,
            lat=snapped_lat,
            tile_z=tile.z,
            tile_x=tile.x,
            tile_y=tile.y,
            snapped=snapped,
        )
        return origin, error

    async def _tile_traffic_speed(self, state: RoadGraphState, tile: TileKey, *, now: float) -> float | None:
        sample = await self.traffic_cache.get(tile, now)
        if sample is not None:
            state.traffic_cache[tile.key] = sample
            return sample.avg_speed_kmh
        previous = state.traffic_cache.get(tile.key)
        return previous.avg_speed_kmh if previous is not None else None

    def _update_tiles(
        self,
        state: RoadGraphState,
        edges_per_tile: dict[str, int],
        reached_per_tile: dict[str, int],
    ) -> None:
        for key, total in edges_per_tile.items():
            tile = TileKey.parse(key)
            current = state.tiles.get(key) or RoadGraphTileState(z=tile.z, x=tile.x, y=tile.y)
            ratio = current.coverage_ratio
            if total > 0:
                ratio = max(ratio, min(1.0, reached_per_tile.get(key, 0) / total))
            current.coverage_ratio = ratio
            current.status = "full" if ratio >= FULL_COVERAGE else "filling"
            state.tiles[key] = current

    def _circle_fallback(
        self,
        *,
        lng: float,
        lat: float,
        elapsed: float,
        profile: VehicleProfile,
        state: RoadGraphState,
        reason: str,
        extra: dict[str, Any],
    ) -> IsochroneResult:
        circle = estimate_circle(lng=lng, lat=lat, elapsed_s=elapsed, vehicle_type=profile.id)
        meta: dict[str, Any] = {
            **circle.meta,
            "provider": PROVIDER_NAME,
            "mode": "circle",
            "fallback": True,
            "fallbackFrom": PROVIDER_NAME,
            "fallbackReason": reason,
            "elapsedSeconds": elapsed,
            **extra,
        }
        return IsochroneResult(geojson=circle.geojson, meta=meta, next_state=state)
