from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, Field, TypeAdapter, ValidationError, field_validator, model_validator


def utc_now() -> datetime:
    return datetime.now(UTC)


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


class TrackStatus(str, Enum):
    ACTIVE = "active"
    STOPPED = "stopped"
    EXPIRED = "expired"


class Algorithm(str, Enum):
    CIRCLE = "circle"
    TILE_FRONTIER = "tile_frontier"
    ROAD_GRAPH = "road_graph"
    REACHABLE_RANGE = "reachable_range"


_ALGORITHM_ALIASES: dict[str, str] = {
    "mvp_isoline": Algorithm.CIRCLE.value,
    "isoline": Algorithm.CIRCLE.value,
    "tomtom_tiles": Algorithm.TILE_FRONTIER.value,
    "tomtom_reachable_range": Algorithm.REACHABLE_RANGE.value,
}


def parse_algorithm(value: object) -> object:
    if isinstance(value, str):
        key = value.strip().lower()
        return _ALGORITHM_ALIASES.get(key, key)
    return value


class Origin(BaseModel):
    lng: float | None = Field(default=None, ge=-180, le=180)
    lat: float | None = Field(default=None, ge=-90, le=90)
    # When the target was last seen at this origin, if known.
    when: datetime | None = None
    query: str | None = None

    @field_validator("when")
    @classmethod
    def _utc_when(cls, v: datetime | None) -> datetime | None:
        return _as_utc(v) if v is not None else None

    def has_coordinates(self) -> bool:
        return self.lng is not None and self.lat is not None


# ---------------------------------------------------------------------------
# Strategy state carried between ticks inside the track cache.
# ---------------------------------------------------------------------------

TileStatus = Literal["new", "filling", "full"]


class TileState(BaseModel):
    z: int
    x: int
    y: int
    status: TileStatus = "new"
    coverage_ratio: float = Field(default=0.0, ge=0.0, le=1.0)
    best_arrival_s: float = Field(default=0.0, ge=0.0)
    # Frozen on first read; None until computed.
    traversal_s: float | None = None
    avg_speed_kmh: float | None = None


class TrafficSample(BaseModel):
    avg_speed_kmh: float = Field(..., gt=0)
    updated_at: float  # epoch seconds


class TileFrontierState(BaseModel):
    kind: Literal["tile_frontier"] = "tile_frontier"
    version: int = 1
    tiles: dict[str, TileState] = Field(default_factory=dict)


class SnappedOrigin(BaseModel):
    lng: float
    lat: float
    tile_z: int
    tile_x: int
    tile_y: int
    snapped: bool = True


class RoadGraphTileState(BaseModel):
    z: int
    x: int
    y: int
    status: TileStatus = "new"
    coverage_ratio: float = Field(default=0.0, ge=0.0, le=1.0)


class RoadGraphState(BaseModel):
    kind: Literal["road_graph"] = "road_graph"
    version: int = 1
    snapped_origin: SnappedOrigin | None = None
    tiles: dict[str, RoadGraphTileState] = Field(default_factory=dict)
    traffic_cache: dict[str, TrafficSample] = Field(default_factory=dict)


StrategyState = Annotated[Union[TileFrontierState, RoadGraphState], Field(discriminator="kind")]
_STATE_ADAPTER: TypeAdapter[Any] = TypeAdapter(StrategyState)


def load_strategy_state(raw: Any) -> TileFrontierState | RoadGraphState | None:
    """Parse a persisted state blob; anything unreadable means a fresh start."""
    if raw is None:
        return None
    if isinstance(raw, (TileFrontierState, RoadGraphState)):
        return raw
    try:
        return _STATE_ADAPTER.validate_python(raw)
    except ValidationError:
        return None


def dump_strategy_state(state: TileFrontierState | RoadGraphState | None) -> dict[str, Any] | None:
    if state is None:
        return None
    return state.model_dump(mode="json")


# ---------------------------------------------------------------------------
# Tracks
# ---------------------------------------------------------------------------


def _client_meta(meta: dict[str, Any]) -> dict[str, Any]:
    """Strategy meta without raw upstream bodies, which stay in history only."""
    public = {k: v for k, v in meta.items() if k != "raw"}
    failed = public.get("failedMeta")
    if isinstance(failed, dict):
        public["failedMeta"] = _client_meta(failed)
    return public


class TrackCache(BaseModel):
    computed_at: datetime
    elapsed_seconds: float = Field(..., ge=0)
    polygon: dict[str, Any]
    meta: dict[str, Any] = Field(default_factory=dict)
    # Serialized StrategyState; parsed only by the scheduler.
    state: dict[str, Any] | None = None

    def payload(self) -> dict[str, Any]:
        """Client-facing view; the strategy state stays server-side."""
        return {
            "computedAt": _as_utc(self.computed_at).isoformat(),
            "elapsedSeconds": self.elapsed_seconds,
            "polygon": self.polygon,
            "meta": _client_meta(self.meta),
        }


class Track(BaseModel):
    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    mission_id: str
    label: str = ""
    vehicle_type: str = "unknown"
    origin: Origin = Field(default_factory=Origin)
    algorithm: Algorithm = Algorithm.CIRCLE
    started_at: datetime = Field(default_factory=utc_now)
    max_duration_s: int = Field(default=7200, ge=1)
    recompute_interval_s: int = Field(default=60, ge=1)
    status: TrackStatus = TrackStatus.ACTIVE
    last_computed_at: datetime | None = None
    immediate_first_compute: bool = False
    cache: TrackCache | None = None
    created_at: datetime = Field(default_factory=utc_now)

    @field_validator("algorithm", mode="before")
    @classmethod
    def _legacy_algorithm(cls, v: object) -> object:
        return parse_algorithm(v)

    @field_validator("started_at", "created_at")
    @classmethod
    def _utc(cls, v: datetime) -> datetime:
        return _as_utc(v)

    @field_validator("last_computed_at")
    @classmethod
    def _utc_optional(cls, v: datetime | None) -> datetime | None:
        return _as_utc(v) if v is not None else None

    def to_public(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "missionId": self.mission_id,
            "label": self.label,
            "vehicleType": self.vehicle_type,
            "origin": self.origin.model_dump(mode="json"),
            "algorithm": self.algorithm.value,
            "startedAt": self.started_at.isoformat(),
            "maxDurationSeconds": self.max_duration_s,
            "recomputeIntervalSeconds": self.recompute_interval_s,
            "status": self.status.value,
            "lastComputedAt": self.last_computed_at.isoformat() if self.last_computed_at else None,
            "cache": self.cache.payload() if self.cache is not None else None,
        }


@dataclass
class IsochroneResult:
    """Common output of every reachability strategy."""

    geojson: dict[str, Any]
    meta: dict[str, Any] = field(default_factory=dict)
    next_state: TileFrontierState | RoadGraphState | None = None

    @property
    def is_empty(self) -> bool:
        return not self.geojson.get("features")

    @property
    def reason(self) -> str | None:
        reason = self.meta.get("reason")
        return str(reason) if reason else None


# ---------------------------------------------------------------------------
# API payloads
# ---------------------------------------------------------------------------


class TrackCreateRequest(BaseModel):
    label: str = Field(default="", max_length=200)
    vehicle_type: str = "unknown"
    origin: Origin
    algorithm: Algorithm = Algorithm.CIRCLE
    started_at: datetime | None = None
    max_duration_s: int | None = None
    recompute_interval_s: int | None = None
    immediate_first_compute: bool = False

    @field_validator("algorithm", mode="before")
    @classmethod
    def _legacy_algorithm(cls, v: object) -> object:
        return parse_algorithm(v)

    @model_validator(mode="before")
    @classmethod
    def accept_camel_case(cls, value: object) -> object:
        if not isinstance(value, dict):
            return value
        data = dict(value)
        for camel, snake in (
            ("vehicleType", "vehicle_type"),
            ("startedAt", "started_at"),
            ("maxDurationSeconds", "max_duration_s"),
            ("recomputeIntervalSeconds", "recompute_interval_s"),
            ("trafficRefreshSeconds", "recompute_interval_s"),
            ("immediateFirstCompute", "immediate_first_compute"),
        ):
            if snake not in data and camel in data:
                data[snake] = data[camel]
        return data


class TrackPatchRequest(BaseModel):
    status: Literal["stopped"] | None = None
    label: str | None = Field(default=None, max_length=200)
    max_duration_s: int | None = None
    recompute_interval_s: int | None = None

    @model_validator(mode="before")
    @classmethod
    def accept_camel_case(cls, value: object) -> object:
        if not isinstance(value, dict):
            return value
        data = dict(value)
        for camel, snake in (
            ("maxDurationSeconds", "max_duration_s"),
            ("recomputeIntervalSeconds", "recompute_interval_s"),
            ("trafficRefreshSeconds", "recompute_interval_s"),
        ):
            if snake not in data and camel in data:
                data[snake] = data[camel]
        return data


class TrackResponse(BaseModel):
    track: dict[str, Any]


class TrackListResponse(BaseModel):
    tracks: list[dict[str, Any]]


class HistoryResponse(BaseModel):
    track_id: str
    records: list[dict[str, Any]]
