from __future__ import annotations

import math
from typing import Any
from urllib.parse import quote

import httpx

from .geo import close_ring, empty_feature_collection, is_valid_coordinate
from .http_utils import get_json
from .logging_utils import log_event
from .models import IsochroneResult
from .range_errors import MissingConfig, MissingInput, ProviderDisabled, RangeError, UpstreamRejected
from .settings import settings
from .vehicles import VehicleProfile, get_vehicle

PROVIDER_NAME = "reachable_range"
REACHABLE_RANGE_PATH = "/routing/1/calculateReachableRange/{point}/json"


class UnsupportedModeMemo:
    """Travel modes the routing service rejected, remembered per vehicle profile.

    Lives as long as the scheduler that owns it. Not locked; see
    TrafficSampleCache for the concurrency contract.
    """

    def __init__(self) -> None:
        self._rejected: dict[str, set[str]] = {}

    def is_unsupported(self, profile_id: str, travel_mode: str) -> bool:
        return travel_mode in self._rejected.get(profile_id, set())

    def mark(self, profile_id: str, travel_mode: str) -> None:
        self._rejected.setdefault(profile_id, set()).add(travel_mode)

    def snapshot(self) -> dict[str, list[str]]:
        return {profile: sorted(modes) for profile, modes in sorted(self._rejected.items())}


def clamp_budget(seconds: float, max_budget_s: float) -> int:
    ceiling = max_budget_s if math.isfinite(max_budget_s) and max_budget_s > 0 else 7200
    if not math.isfinite(seconds):
        return 1
    return int(max(1, min(ceiling, math.floor(seconds))))


def scaled_budget(base_budget_s: int, factor: float) -> int:
    value = base_budget_s * factor
    if not math.isfinite(value) or value <= 0:
        return 1
    return max(1, int(math.floor(value)))


def stepped_budget(
    *,
    elapsed_s: float,
    step_s: float,
    max_duration_s: float,
    previous_budget_s: float | None = None,
) -> int:
    """Budget aligned on the recompute step, always past the last one, capped."""
    step = max(1, int(step_s))
    stepped = int(math.floor(max(0.0, elapsed_s) / step)) * step
    budget = max(step, stepped)
    if previous_budget_s is not None and budget <= previous_budget_s:
        budget = int(previous_budget_s) + step
    return int(min(max(1, int(max_duration_s)), budget))


def boundary_to_ring(boundary: Any) -> list[list[float]] | None:
    if not isinstance(boundary, list) or len(boundary) < 3:
        return None
    points: list[tuple[float, float]] = []
    for point in boundary:
        if not isinstance(point, dict):
            return None
        lng, lat = point.get("longitude"), point.get("latitude")
        if not is_valid_coordinate(lng, lat):
            return None
        points.append((lng, lat))
    return close_ring(points)


class ReachableRangeClient:
    def __init__(
        self,
        *,
        base_url: str,
        api_key: str,
        enabled: bool,
        timeout_s: float = 10.0,
        traffic: bool = True,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key.strip()
        self.enabled = bool(enabled)
        self.timeout_s = float(timeout_s)
        self.traffic = bool(traffic)
        self._client = httpx.AsyncClient(
            timeout=httpx.Timeout(self.timeout_s, connect=min(5.0, self.timeout_s)),
            headers={"accept": "application/json"},
            transport=transport,
        )

    @classmethod
    def from_settings(cls, *, transport: httpx.AsyncBaseTransport | None = None) -> "ReachableRangeClient":
        return cls(
            base_url=settings.tomtom_base_url,
            api_key=settings.tomtom_api_key,
            enabled=settings.traffic_provider == "tomtom",
            timeout_s=settings.reachable_range_timeout_s,
            traffic=settings.reachable_range_traffic,
            transport=transport,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    def check_configured(self) -> None:
        if not self.enabled:
            raise ProviderDisabled("reachable-range provider disabled")
        if not self.api_key or not self.base_url:
            raise MissingConfig("reachable-range credentials missing")

    async def fetch(self, *, lat: float, lng: float, budget_s: int, travel_mode: str) -> dict[str, Any]:
        self.check_configured()
        if not is_valid_coordinate(lng, lat):
            raise MissingInput("reachable range needs a valid origin")
        point = quote(f"{lat},{lng}", safe="")
        data = await get_json(
            self._client,
            f"{self.base_url}{REACHABLE_RANGE_PATH.format(point=point)}",
            service="reachable-range",
            params={
                "key": self.api_key,
                "timeBudgetInSec": str(int(budget_s)),
                "traffic": "true" if self.traffic else "false",
                "routeType": "fastest",
                "travelMode": travel_mode,
            },
        )
        return data if isinstance(data, dict) else {}


class ReachableRangeAdapter:
    """Routing-service isochrone with per-profile travel-mode negotiation."""

    def __init__(
        self,
        client: ReachableRangeClient,
        memo: UnsupportedModeMemo,
        *,
        max_budget_s: int = 7200,
    ) -> None:
        self.client = client
        self.memo = memo
        self.max_budget_s = int(max_budget_s)

    def _empty(self, reason: str, **extra: Any) -> IsochroneResult:
        return IsochroneResult(
            geojson=empty_feature_collection(),
            meta={"provider": PROVIDER_NAME, "reason": reason, **extra},
        )

    async def compute(
        self,
        *,
        lng: float | None,
        lat: float | None,
        budget_s: float,
        vehicle_type: str | None,
    ) -> IsochroneResult:
        if lng is None or lat is None or not is_valid_coordinate(lng, lat):
            return self._empty("MISSING_COORDS")
        if not math.isfinite(float(budget_s)) or float(budget_s) <= 0:
            return self._empty("ZERO_ELAPSED")
        try:
            self.client.check_configured()
        except RangeError as exc:
            return self._empty(exc.reason_code)

        profile = get_vehicle(vehicle_type)
        base_budget = clamp_budget(float(budget_s), self.max_budget_s)
        candidates = list(profile.travel_modes)
        return await self._negotiate(
            profile,
            lng=float(lng),
            lat=float(lat),
            base_budget=base_budget,
            candidates=candidates,
        )

    async def _negotiate(
        self,
        profile: VehicleProfile,
        *,
        lng: float,
        lat: float,
        base_budget: int,
        candidates: list[str],
    ) -> IsochroneResult:
        can_fall_back = len(candidates) > 1
        attempted: list[str] = []
        last_error: RangeError | None = None

        for travel_mode in candidates:
            if self.memo.is_unsupported(profile.id, travel_mode):
                continue
            factor = profile.budget_factor(travel_mode)
            applied = scaled_budget(base_budget, factor)
            attempted.append(travel_mode)
            try:
                data = await self.client.fetch(lat=lat, lng=lng, budget_s=applied, travel_mode=travel_mode)
            except UpstreamRejected as exc:
                last_error = exc
                if can_fall_back:
                    self.memo.mark(profile.id, travel_mode)
                    log_event(
                        "reachable_range_mode_rejected",
                        vehicle_profile=profile.id,
                        travel_mode=travel_mode,
                        status_code=exc.status_code,
                    )
                    continue
                break
            except RangeError as exc:
                last_error = exc
                break

            return self._to_result(
                data,
                profile=profile,
                lng=lng,
                lat=lat,
                travel_mode=travel_mode,
                primary_mode=candidates[0],
                base_budget=base_budget,
                applied_budget=applied,
                factor=factor,
            )

        extra: dict[str, Any] = {
            "travelModeCandidates": candidates,
            "attemptedModes": attempted,
            "unsupportedModes": self.memo.snapshot().get(profile.id, []),
        }
        if last_error is not None:
            extra["error"] = str(last_error)
            status = (last_error.details or {}).get("status_code")
            if status is not None:
                extra["httpStatus"] = status
        if last_error is None or (isinstance(last_error, UpstreamRejected) and can_fall_back):
            return self._empty("TRAVEL_MODES_EXHAUSTED", **extra)
        return self._empty(last_error.reason_code, **extra)

    def _to_result(
        self,
        data: dict[str, Any],
        *,
        profile: VehicleProfile,
        lng: float,
        lat: float,
        travel_mode: str,
        primary_mode: str,
        base_budget: int,
        applied_budget: int,
        factor: float,
    ) -> IsochroneResult:
        reachable = data.get("reachableRange") if isinstance(data.get("reachableRange"), dict) else {}
        ring = boundary_to_ring(reachable.get("boundary"))
        meta: dict[str, Any] = {
            "provider": PROVIDER_NAME,
            "vehicleType": profile.id,
            "travelMode": travel_mode,
            "budgetSec": base_budget,
            "budget": {
                "baseBudgetSec": base_budget,
                "appliedBudgetSec": applied_budget,
                "factor": factor,
            },
            # Upstream body as received, kept for audit and replay.
            "raw": data,
        }
        if travel_mode != primary_mode:
            meta["warning"] = f"travelMode fallback: {primary_mode} -> {travel_mode}"
        if ring is None:
            meta["reason"] = "EMPTY_RESULT"
            return IsochroneResult(geojson=empty_feature_collection(), meta=meta)

        center = reachable.get("center")
        if isinstance(center, dict) and is_valid_coordinate(center.get("longitude"), center.get("latitude")):
            center_point = {"lng": float(center["longitude"]), "lat": float(center["latitude"])}
        else:
            center_point = {"lng": lng, "lat": lat}
        meta["center"] = center_point
        feature = {
            "type": "Feature",
            "properties": {"budgetSec": applied_budget, "travelMode": travel_mode, "center": center_point},
            "geometry": {"type": "Polygon", "coordinates": [ring]},
        }
        return IsochroneResult(geojson={"type": "FeatureCollection", "features": [feature]}, meta=meta)
