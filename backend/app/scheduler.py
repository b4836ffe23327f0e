from __future__ import annotations

import asyncio
import math
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from .circle_estimator import estimate_circle
from .history_store import IsochroneHistoryStore
from .logging_utils import log_error, log_event
from .metrics_store import METRICS, MetricsStore
from .models import (
    Algorithm,
    IsochroneResult,
    RoadGraphState,
    TileFrontierState,
    Track,
    TrackCache,
    TrackStatus,
    dump_strategy_state,
    load_strategy_state,
    utc_now,
)
from .notifications import MissionNotifier
from .range_errors import INPUT_REASON_CODES, normalize_reason_code
from .reachable_range import ReachableRangeAdapter, ReachableRangeClient, UnsupportedModeMemo, stepped_budget
from .road_graph_provider import RoadGraphProvider
from .road_graph_solver import RoadGraphReachability
from .settings import settings
from .tile_frontier import TileFrontierPropagator
from .traffic_cache import TrafficSampleCache
from .track_store import InMemoryTrackStore

StrategyState = TileFrontierState | RoadGraphState
StrategyFn = Callable[[Track, float, float, StrategyState | None], Awaitable[IsochroneResult]]


class SchedulerState(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    STOPPED = "stopped"


@dataclass
class TickSummary:
    started_at: str
    active: int = 0
    processed: int = 0
    recomputed: int = 0
    fallbacks: int = 0
    skipped_cadence: int = 0
    skipped_stale: int = 0
    expired: int = 0
    force_stopped: int = 0
    failed: int = 0
    duration_ms: float = 0.0
    errors: list[str] = field(default_factory=list)

    def as_dict(self) -> dict[str, Any]:
        return {
            "started_at": self.started_at,
            "active": self.active,
            "processed": self.processed,
            "recomputed": self.recomputed,
            "fallbacks": self.fallbacks,
            "skipped_cadence": self.skipped_cadence,
            "skipped_stale": self.skipped_stale,
            "expired": self.expired,
            "force_stopped": self.force_stopped,
            "failed": self.failed,
            "duration_ms": round(self.duration_ms, 3),
            "errors": list(self.errors),
        }


def clamp_recompute_interval(seconds: int | float | None) -> int:
    if seconds is None or not math.isfinite(float(seconds)):
        return settings.default_recompute_interval_s
    return int(max(settings.min_recompute_interval_s, min(settings.max_recompute_interval_s, int(seconds))))


def effective_max_duration_s(track: Track) -> float:
    return float(min(track.max_duration_s, settings.elapsed_ceiling_s))


def clamp_elapsed(seconds: float, max_seconds: float) -> float:
    if not math.isfinite(seconds) or seconds <= 0:
        return 0.0
    return max(0.0, min(max_seconds, seconds))


def _state_for(algorithm: Algorithm, raw: Any) -> StrategyState | None:
    state = load_strategy_state(raw)
    if algorithm == Algorithm.TILE_FRONTIER and isinstance(state, TileFrontierState):
        return state
    if algorithm == Algorithm.ROAD_GRAPH and isinstance(state, RoadGraphState):
        return state
    return None


def _previous_budget(track: Track) -> float | None:
    """Last requested base budget, before any per-mode scaling."""
    if track.cache is None:
        return None
    detail = track.cache.meta.get("budget")
    budget = detail.get("baseBudgetSec") if isinstance(detail, dict) else None
    if budget is None:
        budget = track.cache.meta.get("budgetSec")
    if isinstance(budget, (int, float)) and math.isfinite(budget):
        return float(budget)
    return float(track.cache.elapsed_seconds)


class TrackScheduler:
    """Periodic recompute of every active pursuit track.

    Ticks never overlap: a tick fired while another is running is dropped,
    logged and counted. Targets inside a tick are processed one at a time,
    and `compute_now` takes the same lock, so the traffic cache and the
    unsupported-mode memo only ever see one caller.
    """

    def __init__(
        self,
        *,
        store: InMemoryTrackStore,
        notifier: MissionNotifier,
        history: IsochroneHistoryStore,
        traffic_cache: TrafficSampleCache,
        memo: UnsupportedModeMemo,
        road_graph_provider: RoadGraphProvider | None = None,
        reachable_range_client: ReachableRangeClient | None = None,
        metrics: MetricsStore = METRICS,
        interval_s: float | None = None,
        clock: Callable[[], datetime] = utc_now,
        boot_time: datetime | None = None,
    ) -> None:
        self.store = store
        self.notifier = notifier
        self.history = history
        self.traffic_cache = traffic_cache
        self.memo = memo
        self.metrics = metrics
        self.interval_s = float(interval_s if interval_s is not None else settings.scheduler_interval_s)
        self._clock = clock
        self.boot_time = boot_time or clock()

        self.tile_frontier = TileFrontierPropagator(
            traffic_cache,
            zoom=settings.tile_frontier_zoom,
            base_tile_s=settings.tile_frontier_base_tile_s,
        )
        self.road_graph = RoadGraphReachability(road_graph_provider, traffic_cache, zoom=settings.road_graph_tile_zoom)
        self.reachable_range = (
            ReachableRangeAdapter(reachable_range_client, memo, max_budget_s=settings.reachable_range_max_budget_s)
            if reachable_range_client is not None
            else None
        )
        self._strategies: dict[Algorithm, StrategyFn] = {
            Algorithm.CIRCLE: self._run_circle,
            Algorithm.TILE_FRONTIER: self._run_tile_frontier,
            Algorithm.ROAD_GRAPH: self._run_road_graph,
            Algorithm.REACHABLE_RANGE: self._run_reachable_range,
        }

        self._state = SchedulerState.IDLE
        self._stopping = False
        self._work_lock = asyncio.Lock()
        self._timer_task: asyncio.Task[None] | None = None
        self._tick_tasks: set[asyncio.Task[bool]] = set()

        self._ticks_started = 0
        self._ticks_completed = 0
        self._ticks_dropped = 0
        self._ticks_failed = 0
        self._last_tick: TickSummary | None = None
        self._last_tick_finished_at: str | None = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def state(self) -> SchedulerState:
        return self._state

    def register_strategy(self, algorithm: Algorithm, fn: StrategyFn) -> None:
        self._strategies[algorithm] = fn

    def repair_stale_tracks(self) -> int:
        stopped = self.store.stop_active_started_before(self.boot_time)
        log_event(
            "scheduler_stale_tracks_repaired",
            boot_time=self.boot_time.isoformat(),
            stopped=len(stopped),
            track_ids=[t.id for t in stopped],
        )
        return len(stopped)

    def start(self) -> None:
        if self._timer_task is not None and not self._timer_task.done():
            return
        self._stopping = False
        if self._state == SchedulerState.STOPPED:
            self._state = SchedulerState.IDLE
        self._timer_task = asyncio.create_task(self._timer())
        log_event("scheduler_started", interval_s=self.interval_s, boot_time=self.boot_time.isoformat())

    async def stop(self) -> None:
        self._stopping = True
        if self._timer_task is not None:
            self._timer_task.cancel()
            try:
                await self._timer_task
            except asyncio.CancelledError:
                pass
            self._timer_task = None
        if self._tick_tasks:
            await asyncio.gather(*list(self._tick_tasks), return_exceptions=True)
        self._state = SchedulerState.STOPPED
        log_event("scheduler_stopped", ticks_completed=self._ticks_completed, ticks_dropped=self._ticks_dropped)

    async def _timer(self) -> None:
        while True:
            await asyncio.sleep(self.interval_s)
            # Fire and forget so an overlapping tick is observed and dropped.
            task = asyncio.create_task(self.tick())
            self._tick_tasks.add(task)
            task.add_done_callback(self._tick_tasks.discard)

    # ------------------------------------------------------------------
    # Tick
    # ------------------------------------------------------------------

    async def tick(self) -> bool:
        """Run one tick. Returns False when the tick was dropped."""
        if self._state == SchedulerState.STOPPED or self._stopping:
            return False
        if self._state == SchedulerState.RUNNING:
            self._ticks_dropped += 1
            self.metrics.increment("tick_dropped")
            log_event("scheduler_tick_dropped", ticks_dropped=self._ticks_dropped)
            return False

        self._state = SchedulerState.RUNNING
        self._ticks_started += 1
        now = self._clock()
        summary = TickSummary(started_at=now.isoformat())
        t0 = time.perf_counter()
        failed = False
        log_event("scheduler_tick_started", tick=self._ticks_started)
        try:
            await self._run_tick(now, summary)
        except Exception as exc:
            failed = True
            self._ticks_failed += 1
            log_error("scheduler_tick_failed", exc=exc, tick=self._ticks_started)
        finally:
            summary.duration_ms = (time.perf_counter() - t0) * 1000.0
            self.metrics.record("tick", duration_ms=summary.duration_ms, error=failed)
            self._last_tick = summary
            self._last_tick_finished_at = self._clock().isoformat()
            self._ticks_completed += 1
            self._state = SchedulerState.STOPPED if self._stopping else SchedulerState.IDLE
            log_event("scheduler_tick_finished", tick=self._ticks_started, **summary.as_dict())
        return True

    async def _run_tick(self, now: datetime, summary: TickSummary) -> None:
        self.traffic_cache.reset_budget()
        active = self.store.find_active(started_at_or_after=self.boot_time)
        summary.active = len(active)

        by_mission: dict[str, list[Track]] = {}
        for track in active:
            by_mission.setdefault(track.mission_id, []).append(track)

        survivors: list[Track] = []
        for mission_id, tracks in by_mission.items():
            tracks.sort(key=lambda t: t.started_at, reverse=True)
            latest, *older = tracks
            survivors.append(latest)
            for old in older:
                if self.force_stop(old.id, reason="superseded", superseded_by=latest.id) is not None:
                    summary.force_stopped += 1

        for track in survivors:
            try:
                async with self._work_lock:
                    outcome = await self._process_track(track.id, now)
            except Exception as exc:
                summary.failed += 1
                summary.errors.append(f"{track.id}: {type(exc).__name__}")
                log_error(
                    "scheduler_track_failed",
                    exc=exc,
                    track_id=track.id,
                    mission_id=track.mission_id,
                    algorithm=track.algorithm.value,
                )
                continue
            summary.processed += 1
            if outcome == "recomputed":
                summary.recomputed += 1
            elif outcome == "fallback":
                summary.recomputed += 1
                summary.fallbacks += 1
            elif outcome == "cadence":
                summary.skipped_cadence += 1
            elif outcome == "stale":
                summary.skipped_stale += 1
            elif outcome == "expired":
                summary.expired += 1

    def force_stop(self, track_id: str, *, reason: str, superseded_by: str | None = None) -> Track | None:
        updated = self.store.update_if_status(
            track_id,
            TrackStatus.ACTIVE,
            {"status": TrackStatus.STOPPED, "cache": None},
        )
        if updated is None:
            return None
        log_event(
            "track_force_stopped",
            track_id=updated.id,
            mission_id=updated.mission_id,
            reason=reason,
            superseded_by=superseded_by,
        )
        self.notifier.track_updated(mission_id=updated.mission_id, track_id=updated.id, status=updated.status.value)
        return updated

    async def _process_track(self, track_id: str, now: datetime) -> str:
        fresh = self.store.get(track_id)
        if fresh is None or fresh.status != TrackStatus.ACTIVE:
            return "stale"

        max_s = effective_max_duration_s(fresh)
        elapsed = clamp_elapsed((now - fresh.started_at).total_seconds(), max_s)
        if elapsed >= max_s:
            self._expire(fresh, elapsed=elapsed)
            return "expired"

        interval = clamp_recompute_interval(fresh.recompute_interval_s)
        reference = fresh.last_computed_at or fresh.started_at
        if (now - reference).total_seconds() < interval:
            return "cadence"

        result, budget, fell_back = await self._compute(fresh, elapsed=elapsed, step_s=interval)
        if self._persist(fresh, result, now=now, elapsed=elapsed, budget=budget) is None:
            return "stale"
        return "fallback" if fell_back else "recomputed"

    def _expire(self, track: Track, *, elapsed: float) -> None:
        updated = self.store.update_if_status(track.id, TrackStatus.ACTIVE, {"status": TrackStatus.EXPIRED})
        if updated is None:
            return
        log_event(
            "track_expired",
            track_id=track.id,
            mission_id=track.mission_id,
            algorithm=track.algorithm.value,
            elapsed_s=elapsed,
            max_duration_s=track.max_duration_s,
        )
        self.notifier.track_expired(mission_id=track.mission_id, track_id=track.id)

    # ------------------------------------------------------------------
    # Strategy dispatch
    # ------------------------------------------------------------------

    async def _compute(
        self, track: Track, *, elapsed: float, step_s: int, first: bool = False
    ) -> tuple[IsochroneResult, float, bool]:
        algorithm = track.algorithm
        prev_state = _state_for(algorithm, track.cache.state if track.cache is not None else None)
        budget = elapsed
        if algorithm == Algorithm.REACHABLE_RANGE:
            previous = _previous_budget(track)
            if first and previous is None:
                # The first shape covers exactly the first-compute elapsed time.
                budget = float(max(1, min(int(elapsed), track.max_duration_s)))
            else:
                budget = float(
                    stepped_budget(
                        elapsed_s=elapsed,
                        step_s=step_s,
                        max_duration_s=track.max_duration_s,
                        previous_budget_s=previous,
                    )
                )

        strategy = self._strategies.get(algorithm, self._run_circle)
        t0 = time.perf_counter()
        fallback_reason: str | None = None
        try:
            result = await strategy(track, elapsed, budget, prev_state)
        except Exception as exc:
            log_error(
                "strategy_failed",
                exc=exc,
                track_id=track.id,
                mission_id=track.mission_id,
                algorithm=algorithm.value,
                elapsed_s=elapsed,
            )
            result = IsochroneResult(
                geojson={"type": "FeatureCollection", "features": []},
                meta={"provider": algorithm.value, "reason": "STRATEGY_FAILED", "error": str(exc) or repr(exc)},
                next_state=prev_state,
            )
            fallback_reason = "STRATEGY_FAILED"

        if fallback_reason is None and algorithm != Algorithm.CIRCLE and result.is_empty:
            reason = normalize_reason_code(result.reason or "", default="EMPTY_RESULT")
            if reason not in INPUT_REASON_CODES:
                fallback_reason = reason

        if fallback_reason is not None:
            result = self._circle_fallback(track, elapsed=elapsed, budget=budget, failed=result, reason=fallback_reason)
            log_event(
                "strategy_fallback",
                track_id=track.id,
                mission_id=track.mission_id,
                algorithm=algorithm.value,
                elapsed_s=elapsed,
                reason=fallback_reason,
            )

        self.metrics.record(
            f"strategy:{algorithm.value}",
            duration_ms=(time.perf_counter() - t0) * 1000.0,
            error=fallback_reason is not None,
        )
        return result, budget, fallback_reason is not None

    def _circle_fallback(
        self,
        track: Track,
        *,
        elapsed: float,
        budget: float,
        failed: IsochroneResult,
        reason: str,
    ) -> IsochroneResult:
        circle = estimate_circle(
            lng=track.origin.lng,
            lat=track.origin.lat,
            elapsed_s=elapsed,
            vehicle_type=track.vehicle_type,
        )
        meta: dict[str, Any] = {
            **circle.meta,
            "provider": f"{track.algorithm.value}_fallback_circle",
            "fallback": True,
            "fallbackFrom": track.algorithm.value,
            "fallbackReason": reason,
            "failedMeta": failed.meta,
        }
        if track.algorithm == Algorithm.REACHABLE_RANGE:
            meta["budgetSec"] = budget
        return IsochroneResult(geojson=circle.geojson, meta=meta, next_state=failed.next_state)

    async def _run_circle(
        self, track: Track, elapsed: float, budget: float, prev_state: StrategyState | None
    ) -> IsochroneResult:
        return estimate_circle(
            lng=track.origin.lng,
            lat=track.origin.lat,
            elapsed_s=elapsed,
            vehicle_type=track.vehicle_type,
        )

    async def _run_tile_frontier(
        self, track: Track, elapsed: float, budget: float, prev_state: StrategyState | None
    ) -> IsochroneResult:
        return await self.tile_frontier.compute(
            lng=track.origin.lng,
            lat=track.origin.lat,
            elapsed_s=elapsed,
            vehicle_type=track.vehicle_type,
            prev_state=prev_state if isinstance(prev_state, TileFrontierState) else None,
        )

    async def _run_road_graph(
        self, track: Track, elapsed: float, budget: float, prev_state: StrategyState | None
    ) -> IsochroneResult:
        return await self.road_graph.compute(
            lng=track.origin.lng,
            lat=track.origin.lat,
            elapsed_s=elapsed,
            vehicle_type=track.vehicle_type,
            prev_state=prev_state if isinstance(prev_state, RoadGraphState) else None,
        )

    async def _run_reachable_range(
        self, track: Track, elapsed: float, budget: float, prev_state: StrategyState | None
    ) -> IsochroneResult:
        if self.reachable_range is None:
            return IsochroneResult(
                geojson={"type": "FeatureCollection", "features": []},
                meta={"provider": "reachable_range", "reason": "PROVIDER_DISABLED"},
            )
        if elapsed <= 0:
            return IsochroneResult(
                geojson={"type": "FeatureCollection", "features": []},
                meta={"provider": "reachable_range", "reason": "ZERO_ELAPSED"},
            )
        return await self.reachable_range.compute(
            lng=track.origin.lng,
            lat=track.origin.lat,
            budget_s=budget,
            vehicle_type=track.vehicle_type,
        )

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def _persist(
        self,
        track: Track,
        result: IsochroneResult,
        *,
        now: datetime,
        elapsed: float,
        budget: float,
    ) -> Track | None:
        cache = TrackCache(
            computed_at=now,
            elapsed_seconds=elapsed,
            polygon=result.geojson,
            meta=result.meta,
            state=dump_strategy_state(result.next_state),
        )
        updated = self.store.update_if_status(
            track.id,
            TrackStatus.ACTIVE,
            {"cache": cache, "last_computed_at": now},
        )
        if updated is None:
            log_event("track_recompute_discarded", track_id=track.id, mission_id=track.mission_id)
            return None

        self.history.append(
            track_id=track.id,
            mission_id=track.mission_id,
            budget_s=budget,
            geojson=result.geojson,
            provider_meta=result.meta,
            ts=now,
        )
        self.notifier.track_updated(
            mission_id=track.mission_id,
            track_id=track.id,
            status=updated.status.value,
            cache=cache.payload(),
        )
        log_event(
            "track_recomputed",
            track_id=track.id,
            mission_id=track.mission_id,
            algorithm=track.algorithm.value,
            elapsed_s=elapsed,
            budget_s=budget,
            provider=result.meta.get("provider"),
            reason=result.reason,
            features=len(result.geojson.get("features") or []),
        )
        return updated

    # ------------------------------------------------------------------
    # Immediate first compute
    # ------------------------------------------------------------------

    def first_compute_elapsed(self, track: Track) -> float:
        floor_s = float(settings.first_compute_min_elapsed_s)
        lead = 0.0
        if track.origin.when is not None:
            delta = (track.started_at - track.origin.when).total_seconds()
            if delta > 0:
                step = max(1.0, self.interval_s)
                lead = math.floor(delta / step) * step
        return min(max(floor_s, lead), effective_max_duration_s(track))

    async def compute_now(self, track_id: str) -> Track | None:
        """Compute one isochrone right away, bypassing the cadence gate."""
        async with self._work_lock:
            fresh = self.store.get(track_id)
            if fresh is None or fresh.status != TrackStatus.ACTIVE:
                return None
            now = self._clock()
            elapsed = self.first_compute_elapsed(fresh)
            interval = clamp_recompute_interval(fresh.recompute_interval_s)
            log_event(
                "track_immediate_compute",
                track_id=fresh.id,
                mission_id=fresh.mission_id,
                algorithm=fresh.algorithm.value,
                elapsed_s=elapsed,
            )
            result, budget, _ = await self._compute(fresh, elapsed=elapsed, step_s=interval, first=True)
            return self._persist(fresh, result, now=now, elapsed=elapsed, budget=budget)

    # ------------------------------------------------------------------
    # Observability
    # ------------------------------------------------------------------

    def snapshot(self) -> dict[str, Any]:
        return {
            "state": self._state.value,
            "boot_time": self.boot_time.isoformat(),
            "interval_s": self.interval_s,
            "timer_running": self._timer_task is not None and not self._timer_task.done(),
            "ticks_started": self._ticks_started,
            "ticks_completed": self._ticks_completed,
            "ticks_dropped": self._ticks_dropped,
            "ticks_failed": self._ticks_failed,
            "last_tick": self._last_tick.as_dict() if self._last_tick is not None else None,
            "last_tick_finished_at": self._last_tick_finished_at,
            "traffic_cache": self.traffic_cache.snapshot(),
            "unsupported_travel_modes": self.memo.snapshot(),
        }
