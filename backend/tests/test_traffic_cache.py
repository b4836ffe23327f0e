from __future__ import annotations

import asyncio

import httpx
import pytest

from app.geo import TileKey
from app.models import TrafficSample
from app.range_errors import UpstreamUnavailable
from app.traffic_cache import TrafficSampleCache
from app.traffic_provider import TrafficProvider

TILE = TileKey(z=15, x=16594, y=11272)
OTHER = TileKey(z=15, x=16595, y=11272)
THIRD = TileKey(z=15, x=16596, y=11272)


class FakeTrafficProvider:
    def __init__(self, speed_kmh: float = 50.0, *, available: bool = True, error: Exception | None = None) -> None:
        self.speed_kmh = speed_kmh
        self.available = available
        self.error = error
        self.calls: list[tuple[float, float]] = []

    async def current_speed_kmh(self, *, lng: float, lat: float) -> float:
        self.calls.append((lng, lat))
        if self.error is not None:
            raise self.error
        return self.speed_kmh


def test_fresh_sample_is_served_from_cache() -> None:
    provider = FakeTrafficProvider(42.0)
    cache = TrafficSampleCache(provider, ttl_s=60, max_calls_per_tick=10)

    first = asyncio.run(cache.get(TILE, 1_000.0))
    second = asyncio.run(cache.get(TILE, 1_030.0))

    assert first is not None and first.avg_speed_kmh == 42.0
    assert second == first
    assert len(provider.calls) == 1
    assert cache.snapshot()["hits"] == 1


def test_expired_sample_is_refreshed() -> None:
    provider = FakeTrafficProvider(42.0)
    cache = TrafficSampleCache(provider, ttl_s=60, max_calls_per_tick=10)
    asyncio.run(cache.get(TILE, 1_000.0))
    provider.speed_kmh = 70.0

    refreshed = asyncio.run(cache.get(TILE, 1_061.0))
    assert refreshed is not None and refreshed.avg_speed_kmh == 70.0
    assert refreshed.updated_at == 1_061.0
    assert len(provider.calls) == 2


def test_call_budget_limits_lookups_per_tick() -> None:
    provider = FakeTrafficProvider()
    cache = TrafficSampleCache(provider, ttl_s=60, max_calls_per_tick=2)

    assert asyncio.run(cache.get(TILE, 1_000.0)) is not None
    assert asyncio.run(cache.get(OTHER, 1_000.0)) is not None
    assert asyncio.run(cache.get(THIRD, 1_000.0)) is None
    assert len(provider.calls) == 2
    assert cache.snapshot()["budget_exhausted"] == 1

    cache.reset_budget()
    assert asyncio.run(cache.get(THIRD, 1_000.0)) is not None
    assert len(provider.calls) == 3


def test_exhausted_budget_returns_last_known_sample() -> None:
    provider = FakeTrafficProvider(33.0)
    cache = TrafficSampleCache(provider, ttl_s=60, max_calls_per_tick=0)
    stale = TrafficSample(avg_speed_kmh=25.0, updated_at=0.0)
    cache.put(TILE, stale)

    assert asyncio.run(cache.get(TILE, 10_000.0)) == stale
    assert provider.calls == []


def test_disabled_provider_short_circuits_without_calls() -> None:
    provider = FakeTrafficProvider(available=False)
    cache = TrafficSampleCache(provider, ttl_s=60, max_calls_per_tick=10)
    assert asyncio.run(cache.get(TILE, 1_000.0)) is None
    assert provider.calls == []

    assert asyncio.run(TrafficSampleCache(None).get(TILE, 1_000.0)) is None


def test_provider_errors_degrade_to_no_sample() -> None:
    provider = FakeTrafficProvider(error=UpstreamUnavailable("traffic request failed: ReadTimeout"))
    cache = TrafficSampleCache(provider, ttl_s=60, max_calls_per_tick=10)

    assert asyncio.run(cache.get(TILE, 1_000.0)) is None
    assert cache.snapshot()["lookup_failures"] == 1


def test_lookup_queries_the_tile_centroid() -> None:
    provider = FakeTrafficProvider()
    cache = TrafficSampleCache(provider)
    asyncio.run(cache.get(TileKey(z=1, x=0, y=0), 0.0))
    lng, lat = provider.calls[0]
    assert lng == pytest.approx(-90.0)
    assert 0.0 < lat < 85.06


def _tomtom(handler) -> TrafficProvider:
    return TrafficProvider(
        base_url="https://tomtom.test",
        api_key="secret",
        enabled=True,
        transport=httpx.MockTransport(handler),
    )


def test_traffic_provider_reads_flow_segment_speed() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"flowSegmentData": {"currentSpeed": 47, "freeFlowSpeed": 50}})

    provider = _tomtom(handler)
    speed = asyncio.run(provider.current_speed_kmh(lng=2.35, lat=48.85))

    assert speed == 47.0
    assert seen[0].url.params["key"] == "secret"
    assert seen[0].url.params["point"] == "48.85,2.35"
    assert "flowSegmentData" in seen[0].url.path


def test_traffic_cache_swallows_rejected_provider_calls() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(403, json={"detailedError": {"code": "Forbidden", "message": "bad key"}})

    cache = TrafficSampleCache(_tomtom(handler), max_calls_per_tick=5)
    assert asyncio.run(cache.get(TILE, 1_000.0)) is None
    assert cache.snapshot()["lookup_failures"] == 1


def test_traffic_provider_without_key_is_unavailable() -> None:
    provider = TrafficProvider(base_url="https://tomtom.test", api_key="", enabled=True)
    assert provider.available is False
    cache = TrafficSampleCache(provider)
    assert asyncio.run(cache.get(TILE, 1_000.0)) is None
    assert cache.snapshot()["lookups"] == 0
