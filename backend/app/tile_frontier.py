from __future__ import annotations

import time
from collections.abc import Callable
from typing import Any

from .geo import TileKey, empty_feature_collection, is_valid_coordinate, lnglat_to_tile, tile_box_ring
from .models import IsochroneResult, TileFrontierState, TileState
from .traffic_cache import TrafficSampleCache
from .vehicles import get_vehicle

PROVIDER_NAME = "tile_frontier"
MAX_ELAPSED_S = 3600.0
MIN_SPEED_FACTOR = 0.2
MAX_SPEED_FACTOR = 3.0

# (upper speed bound km/h, Chebyshev rings spawned) when a tile fills up.
RING_STEP_TABLE: tuple[tuple[float, int], ...] = ((40.0, 1), (90.0, 2), (140.0, 3))
MAX_RING_STEPS = 4


def ring_steps_for_speed(speed_kmh: float) -> int:
    if not speed_kmh or speed_kmh <= 0:
        return 1
    for upper, steps in RING_STEP_TABLE:
        if speed_kmh <= upper:
            return steps
    return MAX_RING_STEPS


def traversal_seconds(*, base_tile_s: float, base_speed_kmh: float, sample_speed_kmh: float | None) -> float:
    if sample_speed_kmh is None or sample_speed_kmh <= 0 or base_speed_kmh <= 0:
        return base_tile_s
    factor = max(MIN_SPEED_FACTOR, min(MAX_SPEED_FACTOR, sample_speed_kmh / base_speed_kmh))
    return base_tile_s / factor


def coverage_ratio(*, elapsed_s: float, best_arrival_s: float, traversal_s: float) -> float:
    if traversal_s <= 0:
        return 0.0
    return max(0.0, min(1.0, (elapsed_s - best_arrival_s) / traversal_s))


def _chebyshev_ring(step: int) -> list[tuple[int, int]]:
    return [
        (dx, dy)
        for dx in range(-step, step + 1)
        for dy in range(-step, step + 1)
        if max(abs(dx), abs(dy)) == step
    ]


def _tile_feature(tile: TileState) -> dict[str, Any]:
    key = TileKey(z=tile.z, x=tile.x, y=tile.y)
    return {
        "type": "Feature",
        "properties": {
            "z": tile.z,
            "x": tile.x,
            "y": tile.y,
            "coverageRatio": tile.coverage_ratio,
            "status": tile.status,
            "avgSpeedKmh": tile.avg_speed_kmh,
        },
        "geometry": {"type": "Polygon", "coordinates": [tile_box_ring(key)]},
    }


class TileFrontierPropagator:
    """Grows a set of map tiles around the origin at a traffic-informed rate.

    Each tile fills over its traversal time, which is read from the traffic
    cache once and then frozen. A tile that becomes full spawns the rings of
    tiles around it, each due to start filling one traversal later per ring.
    """

    def __init__(
        self,
        traffic_cache: TrafficSampleCache,
        *,
        zoom: int = 15,
        base_tile_s: float = 20.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.traffic_cache = traffic_cache
        self.zoom = int(zoom)
        self.base_tile_s = float(base_tile_s)
        self._clock = clock

    def seed(self, *, lng: float, lat: float) -> TileFrontierState:
        origin = lnglat_to_tile(self.zoom, lng, lat)
        return TileFrontierState(
            tiles={origin.key: TileState(z=origin.z, x=origin.x, y=origin.y, status="new")},
        )

    async def compute(
        self,
        *,
        lng: float | None,
        lat: float | None,
        elapsed_s: float,
        vehicle_type: str | None,
        prev_state: TileFrontierState | None = None,
    ) -> IsochroneResult:
        if lng is None or lat is None or not is_valid_coordinate(lng, lat):
            return IsochroneResult(
                geojson=empty_feature_collection(),
                meta={"provider": PROVIDER_NAME, "reason": "MISSING_COORDS"},
                next_state=TileFrontierState(),
            )

        state = prev_state.model_copy(deep=True) if prev_state is not None and prev_state.tiles else None
        if state is None:
            state = self.seed(lng=float(lng), lat=float(lat))

        elapsed = max(0.0, min(float(elapsed_s), MAX_ELAPSED_S))
        if elapsed <= 0:
            return IsochroneResult(
                geojson=empty_feature_collection(),
                meta={"provider": PROVIDER_NAME, "reason": "ZERO_ELAPSED"},
                next_state=state,
            )

        profile = get_vehicle(vehicle_type)
        base_speed = profile.cruise_speed_kmh
        self.traffic_cache.reset_budget()
        now = self._clock()
        tiles = state.tiles
        features: list[dict[str, Any]] = []
        sampled = 0

        # Tiles spawned during this pass are first evaluated on the next call.
        for key in list(tiles):
            tile = tiles[key]
            if tile.status == "full" and tile.coverage_ratio >= 1.0:
                features.append(_tile_feature(tile))
                continue

            if tile.traversal_s is None or tile.traversal_s <= 0:
                sample = await self.traffic_cache.get(TileKey(z=tile.z, x=tile.x, y=tile.y), now)
                sample_speed = sample.avg_speed_kmh if sample is not None else None
                tile.traversal_s = traversal_seconds(
                    base_tile_s=self.base_tile_s,
                    base_speed_kmh=base_speed,
                    sample_speed_kmh=sample_speed,
                )
                tile.avg_speed_kmh = sample_speed
                if sample is not None:
                    sampled += 1

            was_full = tile.coverage_ratio >= 1.0
            ratio = coverage_ratio(
                elapsed_s=elapsed,
                best_arrival_s=tile.best_arrival_s,
                traversal_s=tile.traversal_s,
            )
            tile.coverage_ratio = max(tile.coverage_ratio, ratio)
            tile.status = "full" if tile.coverage_ratio >= 1.0 else "filling"

            if tile.status == "full" and not was_full:
                self._spawn_rings(tiles, tile, base_speed_kmh=base_speed)

            if tile.coverage_ratio > 0:
                features.append(_tile_feature(tile))

        meta = {
            "provider": PROVIDER_NAME,
            "elapsedSeconds": elapsed,
            "baseSpeedKmh": base_speed,
            "maxDistanceKm": base_speed * elapsed / 3600.0,
            "tilesCount": len(tiles),
            "tilesFull": sum(1 for t in tiles.values() if t.status == "full"),
            "trafficSamples": sampled,
            "zoom": self.zoom,
        }
        return IsochroneResult(
            geojson={"type": "FeatureCollection", "features": features},
            meta=meta,
            next_state=state,
        )

    def _spawn_rings(self, tiles: dict[str, TileState], parent: TileState, *, base_speed_kmh: float) -> None:
        traversal = float(parent.traversal_s or self.base_tile_s)
        approx_speed = (self.base_tile_s / traversal) * base_speed_kmh if traversal > 0 else base_speed_kmh
        origin = TileKey(z=parent.z, x=parent.x, y=parent.y)
        for step in range(1, ring_steps_for_speed(approx_speed) + 1):
            arrival = parent.best_arrival_s + step * traversal
            for dx, dy in _chebyshev_ring(step):
                neighbor = origin.offset(dx, dy)
                existing = tiles.get(neighbor.key)
                if existing is None:
                    tiles[neighbor.key] = TileState(
                        z=neighbor.z,
                        x=neighbor.x,
                        y=neighbor.y,
                        status="filling",
                        best_arrival_s=arrival,
                    )
                elif existing.status != "full" and arrival < existing.best_arrival_s:
                    existing.best_arrival_s = arrival
