from __future__ import annotations

import asyncio
from typing import Any

import pytest

from app.geo import lnglat_to_tile
from app.models import TileFrontierState
from app.tile_frontier import TileFrontierPropagator, ring_steps_for_speed, traversal_seconds
from app.traffic_cache import TrafficSampleCache

LNG, LAT = 2.3522, 48.8566


class FakeTrafficProvider:
    def __init__(self, speed_kmh: float) -> None:
        self.speed_kmh = speed_kmh
        self.calls = 0
        self.available = True

    async def current_speed_kmh(self, *, lng: float, lat: float) -> float:
        self.calls += 1
        return self.speed_kmh


def _propagator(provider: Any | None = None, clock: list[float] | None = None) -> TileFrontierPropagator:
    now = clock if clock is not None else [1_000.0]
    cache = TrafficSampleCache(provider, ttl_s=60, max_calls_per_tick=100)
    return TileFrontierPropagator(cache, zoom=15, base_tile_s=20.0, clock=lambda: now[0])


def _run(prop: TileFrontierPropagator, elapsed: float, state: TileFrontierState | None, vehicle: str = "car"):
    return asyncio.run(prop.compute(lng=LNG, lat=LAT, elapsed_s=elapsed, vehicle_type=vehicle, prev_state=state))


def test_traversal_and_ring_step_tables() -> None:
    assert traversal_seconds(base_tile_s=20, base_speed_kmh=90, sample_speed_kmh=None) == 20
    assert traversal_seconds(base_tile_s=20, base_speed_kmh=90, sample_speed_kmh=45) == pytest.approx(40)
    # Factor is clamped to [0.2, 3].
    assert traversal_seconds(base_tile_s=20, base_speed_kmh=90, sample_speed_kmh=1) == pytest.approx(100)
    assert traversal_seconds(base_tile_s=20, base_speed_kmh=10, sample_speed_kmh=500) == pytest.approx(20 / 3)
    assert [ring_steps_for_speed(s) for s in (0, 30, 40, 60, 120, 200)] == [1, 1, 1, 2, 3, 4]


def test_first_call_seeds_only_the_origin_tile() -> None:
    result = _run(_propagator(), 10, None)

    origin = lnglat_to_tile(15, LNG, LAT)
    state = result.next_state
    assert isinstance(state, TileFrontierState)
    assert list(state.tiles) == [origin.key]
    tile = state.tiles[origin.key]
    assert tile.traversal_s == pytest.approx(20.0)
    assert tile.coverage_ratio == pytest.approx(0.5)
    assert tile.status == "filling"
    assert len(result.geojson["features"]) == 1
    assert result.geojson["features"][0]["properties"]["coverageRatio"] == pytest.approx(0.5)


def test_full_tile_spawns_rings_that_fill_on_later_calls() -> None:
    prop = _propagator()
    first = _run(prop, 20, None)
    state = first.next_state
    assert isinstance(state, TileFrontierState)

    # Car at base speed: approx 90 km/h gives two rings (8 + 16 tiles) around the seed.
    assert len(state.tiles) == 25
    origin = lnglat_to_tile(15, LNG, LAT)
    assert state.tiles[origin.key].status == "full"
    ring1 = [t for k, t in state.tiles.items() if k != origin.key and t.best_arrival_s == pytest.approx(20.0)]
    ring2 = [t for t in state.tiles.values() if t.best_arrival_s == pytest.approx(40.0)]
    assert len(ring1) == 8
    assert len(ring2) == 16
    assert all(t.status == "filling" for t in ring1 + ring2)
    # Spawned tiles are evaluated from the next call onwards.
    assert len(first.geojson["features"]) == 1

    second = _run(prop, 30, state)
    features = second.geojson["features"]
    assert len(features) == 9
    coverages = sorted(f["properties"]["coverageRatio"] for f in features)
    assert coverages[-1] == 1.0
    assert coverages[0] == pytest.approx(0.5)


def test_coverage_never_decreases_across_calls() -> None:
    prop = _propagator()
    state = None
    seen: dict[str, float] = {}
    for elapsed in (5, 5, 12, 19, 30, 31, 55):
        result = _run(prop, elapsed, state)
        state = result.next_state
        for key, tile in state.tiles.items():
            assert tile.coverage_ratio >= seen.get(key, 0.0)
            seen[key] = tile.coverage_ratio


def test_traversal_time_is_frozen_after_first_read() -> None:
    provider = FakeTrafficProvider(45.0)
    clock = [1_000.0]
    prop = _propagator(provider, clock)

    first = _run(prop, 10, None)
    origin = lnglat_to_tile(15, LNG, LAT)
    assert first.next_state.tiles[origin.key].traversal_s == pytest.approx(40.0)
    assert first.next_state.tiles[origin.key].avg_speed_kmh == 45.0

    provider.speed_kmh = 180.0
    clock[0] += 3_600.0
    second = _run(prop, 20, first.next_state)
    tile = second.next_state.tiles[origin.key]
    assert tile.traversal_s == pytest.approx(40.0)
    assert tile.avg_speed_kmh == 45.0
    assert tile.coverage_ratio == pytest.approx(0.5)
    assert provider.calls == 1


def test_previous_state_is_not_mutated() -> None:
    prop = _propagator()
    first = _run(prop, 10, None)
    before = first.next_state.model_dump()
    _run(prop, 25, first.next_state)
    assert first.next_state.model_dump() == before


def test_zero_elapsed_and_missing_coordinates() -> None:
    prop = _propagator()
    zero = _run(prop, 0, None)
    assert zero.is_empty
    assert zero.reason == "ZERO_ELAPSED"
    assert len(zero.next_state.tiles) == 1

    missing = asyncio.run(prop.compute(lng=None, lat=None, elapsed_s=60, vehicle_type="car"))
    assert missing.reason == "MISSING_COORDS"
