from __future__ import annotations

import os
from pathlib import Path

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


def _running_in_docker() -> bool:
    """Best-effort check for container execution.

    Used only to pick sensible defaults. Environment variables always win.
    """
    return Path("/.dockerenv").exists() or os.environ.get("RUNNING_IN_DOCKER") == "1"


def _default_out_dir() -> str:
    # Keep logs and isochrone history in backend/out when running on the host.
    if _running_in_docker():
        return "/app/out"
    return str(Path(__file__).resolve().parents[1] / "out")


class Settings(BaseSettings):
    """Validated settings (env-driven), read once per call site."""

    model_config = SettingsConfigDict(
        # Support both "repo root/.env" (docker compose) and "backend/.env" (local dev)
        env_file=(".env", "../.env"),
        env_file_encoding="utf-8",
        extra="ignore",
    )

    out_dir: str = Field(default_factory=_default_out_dir, alias="OUT_DIR")
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")

    # Scheduler cadence and duration limits
    scheduler_enabled: bool = Field(default=True, alias="SCHEDULER_ENABLED")
    scheduler_interval_s: float = Field(default=20.0, ge=1.0, le=3600.0, alias="SCHEDULER_INTERVAL_S")
    elapsed_ceiling_s: int = Field(default=3600, ge=60, le=86_400, alias="ELAPSED_CEILING_S")
    default_recompute_interval_s: int = Field(
        default=60,
        ge=10,
        le=3600,
        alias="DEFAULT_RECOMPUTE_INTERVAL_S",
    )
    min_recompute_interval_s: int = Field(default=10, ge=1, le=3600, alias="MIN_RECOMPUTE_INTERVAL_S")
    max_recompute_interval_s: int = Field(default=3600, ge=10, le=86_400, alias="MAX_RECOMPUTE_INTERVAL_S")
    default_max_duration_s: int = Field(default=7200, ge=60, le=86_400, alias="DEFAULT_MAX_DURATION_S")
    min_max_duration_s: int = Field(default=60, ge=1, alias="MIN_MAX_DURATION_S")
    max_max_duration_s: int = Field(default=7200, ge=60, le=86_400, alias="MAX_MAX_DURATION_S")
    first_compute_min_elapsed_s: int = Field(
        default=40,
        ge=1,
        le=3600,
        alias="FIRST_COMPUTE_MIN_ELAPSED_S",
    )

    # Live traffic samples (flow segment lookups at tile centroids)
    traffic_provider: str = Field(default="none", alias="TRAFFIC_PROVIDER")
    tomtom_api_key: str = Field(default="", alias="TOMTOM_API_KEY")
    tomtom_base_url: str = Field(default="https://api.tomtom.com", alias="TOMTOM_BASE_URL")
    traffic_cache_ttl_s: float = Field(default=60.0, ge=1.0, le=86_400.0, alias="TRAFFIC_CACHE_TTL_S")
    traffic_max_calls_per_tick: int = Field(
        default=30,
        ge=0,
        le=10_000,
        alias="TRAFFIC_MAX_CALLS_PER_TICK",
    )
    traffic_request_timeout_s: float = Field(
        default=10.0,
        ge=0.5,
        le=120.0,
        alias="TRAFFIC_REQUEST_TIMEOUT_S",
    )

    # Road-graph service (snap + tile edges). Empty base URL disables it.
    road_graph_base_url: str = Field(default="", alias="ROAD_GRAPH_BASE_URL")
    # Generous default so a sleeping free-tier service has time to wake up.
    road_graph_timeout_s: float = Field(default=120.0, ge=1.0, le=600.0, alias="ROAD_GRAPH_TIMEOUT_S")
    road_graph_tile_zoom: int = Field(default=14, ge=8, le=18, alias="ROAD_GRAPH_TILE_ZOOM")

    # Tile frontier propagation
    tile_frontier_zoom: int = Field(default=15, ge=8, le=18, alias="TILE_FRONTIER_ZOOM")
    tile_frontier_base_tile_s: float = Field(
        default=20.0,
        gt=0.0,
        le=3600.0,
        alias="TILE_FRONTIER_BASE_TILE_S",
    )

    # Reachable-range routing endpoint (shares the TomTom key and base URL)
    reachable_range_timeout_s: float = Field(default=10.0, alias="REACHABLE_RANGE_TIMEOUT_S")
    reachable_range_traffic: bool = Field(default=True, alias="REACHABLE_RANGE_TRAFFIC")
    reachable_range_max_budget_s: int = Field(
        default=7200,
        ge=1,
        le=86_400,
        alias="REACHABLE_RANGE_MAX_BUDGET_S",
    )

    # Append-only isochrone history
    history_persist_enabled: bool = Field(default=True, alias="HISTORY_PERSIST_ENABLED")

    @model_validator(mode="after")
    def _normalize(self) -> "Settings":
        provider = str(self.traffic_provider or "none").strip().lower()
        self.traffic_provider = provider if provider in {"tomtom", "none"} else "none"
        self.tomtom_api_key = str(self.tomtom_api_key or "").strip()
        self.tomtom_base_url = str(self.tomtom_base_url or "").strip().rstrip("/")
        self.road_graph_base_url = str(self.road_graph_base_url or "").strip().rstrip("/")
        self.reachable_range_timeout_s = max(0.5, min(30.0, float(self.reachable_range_timeout_s)))
        if self.max_recompute_interval_s < self.min_recompute_interval_s:
            self.max_recompute_interval_s = self.min_recompute_interval_s
        if self.max_max_duration_s < self.min_max_duration_s:
            self.max_max_duration_s = self.min_max_duration_s
        return self


settings = Settings()
