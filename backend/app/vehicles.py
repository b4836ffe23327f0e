from __future__ import annotations

import math
import re
from typing import Any, Literal

from pydantic import BaseModel, Field, field_validator, model_validator

RoadGraphProfile = Literal["car", "motorcycle", "scooter", "truck"]
DEFAULT_VEHICLE_ID = "unknown"
VEHICLE_ID_RE = re.compile(r"^[a-z][a-z0-9_-]{1,47}$")

# Below this measured speed a road counts as severely congested.
STRONG_CONGESTION_KMH = 15.0
MIN_EFFECTIVE_SPEED_KMH = 10.0
HIGHWAY_CLASSES: frozenset[str] = frozenset({"motorway", "trunk"})


class VehicleProfile(BaseModel):
    id: str
    label: str

    cruise_speed_kmh: float = Field(..., gt=0, le=300)
    overspeed_factor: float = Field(default=1.15, ge=1.0, le=2.0)
    max_plausible_speed_kmh: float = Field(..., gt=0, le=400)
    fugitive_factor: float = Field(default=1.10, ge=1.0, le=2.0)
    two_wheeled: bool = False

    road_graph_profile: RoadGraphProfile = "car"
    travel_modes: list[str] = Field(default_factory=lambda: ["car"])
    # Applied to the reachable-range budget when the profile is forced onto a mode.
    mode_budget_factors: dict[str, float] = Field(default_factory=dict)
    aliases: list[str] = Field(default_factory=list)

    @field_validator("id")
    @classmethod
    def _validate_id(cls, value: str) -> str:
        vid = str(value).strip()
        if not VEHICLE_ID_RE.match(vid):
            raise ValueError("vehicle id must match ^[a-z][a-z0-9_-]{1,47}$")
        return vid

    @field_validator("travel_modes", "aliases", mode="before")
    @classmethod
    def _normalize_names(cls, value: Any) -> list[str]:
        if value is None:
            return []
        if not isinstance(value, list):
            raise ValueError("expected a list")
        out: list[str] = []
        for item in value:
            name = str(item).strip().lower()
            if name and name not in out:
                out.append(name)
        return out

    @model_validator(mode="after")
    def _validate_profile(self) -> "VehicleProfile":
        if not self.travel_modes:
            raise ValueError("at least one travel mode is required")
        if self.max_plausible_speed_kmh < MIN_EFFECTIVE_SPEED_KMH:
            raise ValueError("max_plausible_speed_kmh below the effective speed floor")
        for mode, factor in self.mode_budget_factors.items():
            if not (0.0 < float(factor) <= 1.0):
                raise ValueError(f"budget factor for '{mode}' must be in (0, 1]")
        return self

    def budget_factor(self, travel_mode: str) -> float:
        return float(self.mode_budget_factors.get(travel_mode, 1.0))


VEHICLES: dict[str, VehicleProfile] = {
    "car": VehicleProfile(
        id="car",
        label="Car",
        cruise_speed_kmh=90.0,
        overspeed_factor=1.15,
        max_plausible_speed_kmh=160.0,
        road_graph_profile="car",
        travel_modes=["car"],
    ),
    "motorcycle": VehicleProfile(
        id="motorcycle",
        label="Motorcycle",
        cruise_speed_kmh=100.0,
        overspeed_factor=1.25,
        max_plausible_speed_kmh=180.0,
        fugitive_factor=1.15,
        two_wheeled=True,
        road_graph_profile="motorcycle",
        travel_modes=["motorcycle", "car"],
        aliases=["moto", "motorbike"],
    ),
    "scooter": VehicleProfile(
        id="scooter",
        label="Scooter",
        cruise_speed_kmh=45.0,
        overspeed_factor=1.10,
        max_plausible_speed_kmh=120.0,
        two_wheeled=True,
        road_graph_profile="scooter",
        # No dedicated scooter mode upstream: motorcycle first, then car.
        travel_modes=["motorcycle", "car"],
        mode_budget_factors={"motorcycle": 0.7, "car": 0.6},
    ),
    "truck": VehicleProfile(
        id="truck",
        label="Truck",
        cruise_speed_kmh=70.0,
        overspeed_factor=1.05,
        max_plausible_speed_kmh=130.0,
        road_graph_profile="truck",
        travel_modes=["truck", "car"],
        mode_budget_factors={"car": 0.85},
        aliases=["hgv", "lorry"],
    ),
    "bicycle": VehicleProfile(
        id="bicycle",
        label="Bicycle",
        cruise_speed_kmh=20.0,
        overspeed_factor=1.10,
        max_plausible_speed_kmh=45.0,
        two_wheeled=True,
        road_graph_profile="scooter",
        travel_modes=["motorcycle", "car"],
        mode_budget_factors={"motorcycle": 0.45, "car": 0.40},
        aliases=["bike", "velo"],
    ),
    "unknown": VehicleProfile(
        id="unknown",
        label="Unknown vehicle",
        cruise_speed_kmh=80.0,
        overspeed_factor=1.15,
        max_plausible_speed_kmh=160.0,
        road_graph_profile="car",
        travel_modes=["car"],
    ),
}


def _alias_index() -> dict[str, str]:
    index: dict[str, str] = {}
    for vid, profile in VEHICLES.items():
        index[vid] = vid
        for alias in profile.aliases:
            index.setdefault(alias, vid)
    return index


_ALIASES = _alias_index()


def resolve_vehicle_id(vehicle_type: str | None) -> str:
    key = str(vehicle_type or "").strip().lower()
    return _ALIASES.get(key, DEFAULT_VEHICLE_ID)


def get_vehicle(vehicle_type: str | None) -> VehicleProfile:
    return VEHICLES[resolve_vehicle_id(vehicle_type)]


def apply_congestion_resilience(
    profile: VehicleProfile,
    traffic_speed_kmh: float,
    road_class: str | None = None,
) -> float:
    """Let two-wheelers partially filter through severe congestion; cap everyone else low."""
    if not math.isfinite(traffic_speed_kmh) or traffic_speed_kmh <= 0:
        return traffic_speed_kmh
    if traffic_speed_kmh >= STRONG_CONGESTION_KMH:
        return traffic_speed_kmh

    is_highway = (road_class or "").strip().lower() in HIGHWAY_CLASSES
    if profile.two_wheeled:
        if is_highway:
            return min(traffic_speed_kmh * 3.0, 60.0)
        return min(traffic_speed_kmh * 2.0, 45.0)
    if profile.id == "truck":
        return min(traffic_speed_kmh, 15.0 if is_highway else 12.0)
    return min(traffic_speed_kmh, 20.0 if is_highway else 15.0)


def effective_speed_kmh(
    profile: VehicleProfile,
    *,
    traffic_speed_kmh: float | None = None,
    road_class: str | None = None,
    speed_limit_kmh: float | None = None,
) -> float:
    base = profile.cruise_speed_kmh
    if speed_limit_kmh is not None and math.isfinite(speed_limit_kmh) and speed_limit_kmh > 0:
        base = min(base, float(speed_limit_kmh))

    effective = base * profile.overspeed_factor
    if traffic_speed_kmh is not None and math.isfinite(traffic_speed_kmh) and traffic_speed_kmh > 0:
        from_traffic = apply_congestion_resilience(profile, float(traffic_speed_kmh), road_class)
        effective = min(effective, from_traffic * profile.fugitive_factor)

    return max(MIN_EFFECTIVE_SPEED_KMH, min(effective, profile.max_plausible_speed_kmh))
