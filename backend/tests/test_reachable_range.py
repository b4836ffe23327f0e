from __future__ import annotations

import asyncio
from typing import Any

import httpx
import pytest

from app.range_errors import MissingConfig, UpstreamRejected, UpstreamUnavailable
from app.reachable_range import (
    ReachableRangeAdapter,
    ReachableRangeClient,
    UnsupportedModeMemo,
    boundary_to_ring,
    clamp_budget,
    stepped_budget,
)

LNG, LAT = 2.35, 48.85

BOUNDARY = [
    {"latitude": 48.86, "longitude": 2.34},
    {"latitude": 48.86, "longitude": 2.36},
    {"latitude": 48.84, "longitude": 2.36},
    {"latitude": 48.84, "longitude": 2.34},
]


class FakeRangeClient:
    def __init__(self, *, reject: set[str] | None = None, fail: Exception | None = None, config_error: Exception | None = None) -> None:
        self.reject = reject or set()
        self.fail = fail
        self.config_error = config_error
        self.calls: list[tuple[str, int]] = []

    def check_configured(self) -> None:
        if self.config_error is not None:
            raise self.config_error

    async def fetch(self, *, lat: float, lng: float, budget_s: int, travel_mode: str) -> dict[str, Any]:
        self.calls.append((travel_mode, budget_s))
        if self.fail is not None:
            raise self.fail
        if travel_mode in self.reject:
            raise UpstreamRejected(f"reachable-range 400: travelMode {travel_mode} unsupported", status_code=400)
        return {
            "reachableRange": {
                "center": {"latitude": lat, "longitude": lng},
                "boundary": BOUNDARY,
            }
        }


def _compute(adapter: ReachableRangeAdapter, budget: float, vehicle: str):
    return asyncio.run(adapter.compute(lng=LNG, lat=LAT, budget_s=budget, vehicle_type=vehicle))


def test_rejected_mode_falls_back_and_is_remembered() -> None:
    client = FakeRangeClient(reject={"motorcycle"})
    memo = UnsupportedModeMemo()
    adapter = ReachableRangeAdapter(client, memo)

    result = _compute(adapter, 600, "scooter")

    assert client.calls == [("motorcycle", 420), ("car", 360)]
    assert result.meta["travelMode"] == "car"
    assert result.meta["warning"] == "travelMode fallback: motorcycle -> car"
    assert result.meta["budgetSec"] == 600
    assert result.meta["budget"] == {"baseBudgetSec": 600, "appliedBudgetSec": 360, "factor": 0.6}
    assert memo.snapshot() == {"scooter": ["motorcycle"]}

    client.calls.clear()
    _compute(adapter, 600, "scooter")
    assert client.calls == [("car", 360)]


def test_single_mode_rejection_is_not_memoized() -> None:
    client = FakeRangeClient(reject={"car"})
    memo = UnsupportedModeMemo()
    result = _compute(ReachableRangeAdapter(client, memo), 600, "car")

    assert result.is_empty
    assert result.reason == "UPSTREAM_REJECTED"
    assert result.meta["httpStatus"] == 400
    assert memo.snapshot() == {}


def test_all_modes_rejected_reports_exhaustion() -> None:
    client = FakeRangeClient(reject={"motorcycle", "car"})
    memo = UnsupportedModeMemo()
    adapter = ReachableRangeAdapter(client, memo)

    result = _compute(adapter, 600, "motorcycle")
    assert result.reason == "TRAVEL_MODES_EXHAUSTED"
    assert result.meta["attemptedModes"] == ["motorcycle", "car"]

    client.calls.clear()
    again = _compute(adapter, 600, "motorcycle")
    assert client.calls == []
    assert again.reason == "TRAVEL_MODES_EXHAUSTED"


def test_unavailable_upstream_stops_negotiation() -> None:
    client = FakeRangeClient(fail=UpstreamUnavailable("reachable-range 503: busy", status_code=503))
    memo = UnsupportedModeMemo()
    result = _compute(ReachableRangeAdapter(client, memo), 600, "scooter")

    assert result.reason == "UPSTREAM_UNAVAILABLE"
    assert result.meta["attemptedModes"] == ["motorcycle"]
    assert memo.snapshot() == {}


def test_boundary_becomes_closed_polygon() -> None:
    result = _compute(ReachableRangeAdapter(FakeRangeClient(), UnsupportedModeMemo()), 900, "car")

    feature = result.geojson["features"][0]
    ring = feature["geometry"]["coordinates"][0]
    assert feature["geometry"]["type"] == "Polygon"
    assert ring[0] == ring[-1]
    assert len(ring) == 5
    assert result.meta["center"] == {"lng": LNG, "lat": LAT}
    assert "warning" not in result.meta
    assert result.meta["raw"] == {"reachableRange": {"center": {"latitude": LAT, "longitude": LNG}, "boundary": BOUNDARY}}


def test_budget_is_clamped_to_maximum() -> None:
    client = FakeRangeClient()
    _compute(ReachableRangeAdapter(client, UnsupportedModeMemo(), max_budget_s=1800), 99999.9, "car")
    assert client.calls == [("car", 1800)]
    assert clamp_budget(0.4, 7200) == 1
    assert clamp_budget(float("inf"), 7200) == 1


def test_configuration_and_input_reasons() -> None:
    disabled = ReachableRangeAdapter(
        FakeRangeClient(config_error=MissingConfig("reachable-range credentials missing")),
        UnsupportedModeMemo(),
    )
    assert _compute(disabled, 600, "car").reason == "MISSING_CONFIG"

    adapter = ReachableRangeAdapter(FakeRangeClient(), UnsupportedModeMemo())
    assert _compute(adapter, 0, "car").reason == "ZERO_ELAPSED"
    missing = asyncio.run(adapter.compute(lng=None, lat=LAT, budget_s=60, vehicle_type="car"))
    assert missing.reason == "MISSING_COORDS"


def test_boundary_rejects_short_or_invalid_input() -> None:
    assert boundary_to_ring(BOUNDARY[:2]) is None
    assert boundary_to_ring([{"latitude": 95, "longitude": 0}] * 3) is None
    assert boundary_to_ring("nope") is None


@pytest.mark.parametrize(
    ("elapsed", "previous", "cap", "expected"),
    [
        (65, None, 3600, 60),
        (65, 60, 3600, 80),
        (65, 60, 70, 70),
        (5, None, 3600, 20),
    ],
)
def test_stepped_budget(elapsed: float, previous: float | None, cap: int, expected: int) -> None:
    assert stepped_budget(elapsed_s=elapsed, step_s=20, max_duration_s=cap, previous_budget_s=previous) == expected


def _client(handler, *, enabled: bool = True, api_key: str = "k") -> ReachableRangeClient:
    return ReachableRangeClient(
        base_url="https://api.tomtom.test",
        api_key=api_key,
        enabled=enabled,
        transport=httpx.MockTransport(handler),
    )


def test_client_builds_request_and_maps_status_codes() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        mode = request.url.params["travelMode"]
        if mode == "bus":
            return httpx.Response(403, json={"error": "forbidden"})
        if mode == "truck":
            return httpx.Response(429, text="slow down")
        return httpx.Response(200, json={"reachableRange": {"boundary": BOUNDARY}})

    client = _client(handler)

    data = asyncio.run(client.fetch(lat=LAT, lng=LNG, budget_s=300, travel_mode="car"))
    assert "reachableRange" in data
    request = seen[0]
    assert request.url.path == f"/routing/1/calculateReachableRange/{LAT},{LNG}/json"
    assert request.url.params["timeBudgetInSec"] == "300"
    assert request.url.params["routeType"] == "fastest"
    assert request.url.params["traffic"] == "true"

    with pytest.raises(UpstreamRejected):
        asyncio.run(client.fetch(lat=LAT, lng=LNG, budget_s=300, travel_mode="bus"))
    with pytest.raises(UpstreamUnavailable):
        asyncio.run(client.fetch(lat=LAT, lng=LNG, budget_s=300, travel_mode="truck"))


def test_client_configuration_checks() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise AssertionError("no request expected")

    assert _compute(ReachableRangeAdapter(_client(handler, enabled=False), UnsupportedModeMemo()), 60, "car").reason == "PROVIDER_DISABLED"
    assert _compute(ReachableRangeAdapter(_client(handler, api_key=" "), UnsupportedModeMemo()), 60, "car").reason == "MISSING_CONFIG"
