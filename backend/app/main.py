from __future__ import annotations

import asyncio
import time
from contextlib import asynccontextmanager
from typing import Annotated, Any

from fastapi import Depends, FastAPI, HTTPException, Request, Response, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware

from .history_store import IsochroneHistoryStore, history_path
from .logging_utils import log_event
from .metrics_store import METRICS, metrics_snapshot
from .models import (
    HistoryResponse,
    Track,
    TrackCreateRequest,
    TrackListResponse,
    TrackPatchRequest,
    TrackResponse,
    TrackStatus,
    utc_now,
)
from .notifications import MissionNotifier
from .reachable_range import ReachableRangeClient, UnsupportedModeMemo
from .road_graph_provider import RoadGraphProvider
from .scheduler import TrackScheduler, clamp_recompute_interval
from .settings import settings
from .traffic_cache import TrafficSampleCache
from .traffic_provider import TrafficProvider
from .track_store import InMemoryTrackStore


def clamp_max_duration(seconds: int | None) -> int:
    value = settings.default_max_duration_s if seconds is None else int(seconds)
    return max(settings.min_max_duration_s, min(settings.max_max_duration_s, value))


@asynccontextmanager
async def lifespan(app: FastAPI):
    traffic_provider = TrafficProvider.from_settings()
    road_graph = RoadGraphProvider.from_settings() if settings.road_graph_base_url else None
    reachable_range = ReachableRangeClient.from_settings()

    app.state.store = InMemoryTrackStore()
    app.state.notifier = MissionNotifier()
    app.state.history = IsochroneHistoryStore(
        path=history_path(settings.out_dir),
        persist=settings.history_persist_enabled,
    )
    app.state.scheduler = TrackScheduler(
        store=app.state.store,
        notifier=app.state.notifier,
        history=app.state.history,
        traffic_cache=TrafficSampleCache(
            traffic_provider,
            ttl_s=settings.traffic_cache_ttl_s,
            max_calls_per_tick=settings.traffic_max_calls_per_tick,
        ),
        memo=UnsupportedModeMemo(),
        road_graph_provider=road_graph,
        reachable_range_client=reachable_range,
        metrics=METRICS,
    )
    app.state.scheduler.repair_stale_tracks()
    if settings.scheduler_enabled:
        app.state.scheduler.start()
    yield
    await app.state.scheduler.stop()
    await traffic_provider.aclose()
    await reachable_range.aclose()
    if road_graph is not None:
        await road_graph.aclose()


app = FastAPI(title="Pursuit Reachable Range", version="0.1.0", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)


def _state_attr(request: Request, name: str) -> Any:
    value = getattr(request.app.state, name, None)  # type: ignore[attr-defined]
    if value is None:
        raise HTTPException(status_code=503, detail=f"{name} not initialised")
    return value


def track_store(request: Request) -> InMemoryTrackStore:
    return _state_attr(request, "store")


def track_scheduler(request: Request) -> TrackScheduler:
    return _state_attr(request, "scheduler")


def mission_notifier(request: Request) -> MissionNotifier:
    return _state_attr(request, "notifier")


def isochrone_history(request: Request) -> IsochroneHistoryStore:
    return _state_attr(request, "history")


StoreDep = Annotated[InMemoryTrackStore, Depends(track_store)]
SchedulerDep = Annotated[TrackScheduler, Depends(track_scheduler)]
NotifierDep = Annotated[MissionNotifier, Depends(mission_notifier)]
HistoryDep = Annotated[IsochroneHistoryStore, Depends(isochrone_history)]


def _get_track_or_404(store: InMemoryTrackStore, track_id: str) -> Track:
    track = store.get(track_id)
    if track is None:
        raise HTTPException(status_code=404, detail="track not found")
    return track


@app.get("/")
async def root() -> dict[str, str]:
    return {"message": "Backend is running. Visit /docs for the API UI.", "docs": "/docs"}


@app.get("/health")
async def health() -> dict[str, str]:
    return {"status": "ok"}


@app.get("/scheduler")
async def scheduler_status(scheduler: SchedulerDep) -> dict[str, Any]:
    return scheduler.snapshot()


@app.get("/metrics")
async def metrics() -> dict[str, object]:
    return metrics_snapshot()


@app.post("/missions/{mission_id}/tracks", response_model=TrackResponse, status_code=201)
async def create_track(
    mission_id: str,
    req: TrackCreateRequest,
    store: StoreDep,
    scheduler: SchedulerDep,
    notifier: NotifierDep,
) -> TrackResponse:
    t0 = time.perf_counter()
    now = utc_now()
    if req.origin.when is not None and req.origin.when > now:
        raise HTTPException(status_code=400, detail="origin.when must not be in the future")

    # One active track per mission: the new one supersedes the rest.
    replaced = [
        t.id
        for t in store.list_for_mission(mission_id)
        if t.status == TrackStatus.ACTIVE and scheduler.force_stop(t.id, reason="replaced") is not None
    ]

    track = store.insert(
        Track(
            mission_id=mission_id,
            label=req.label,
            vehicle_type=req.vehicle_type,
            origin=req.origin,
            algorithm=req.algorithm,
            started_at=req.started_at or now,
            max_duration_s=clamp_max_duration(req.max_duration_s),
            recompute_interval_s=clamp_recompute_interval(
                req.recompute_interval_s
                if req.recompute_interval_s is not None
                else settings.default_recompute_interval_s
            ),
            immediate_first_compute=req.immediate_first_compute,
        )
    )
    notifier.track_created(mission_id=mission_id, track_id=track.id, status=track.status.value)

    if track.immediate_first_compute:
        computed = await scheduler.compute_now(track.id)
        if computed is not None:
            track = computed

    log_event(
        "track_created",
        track_id=track.id,
        mission_id=mission_id,
        vehicle_type=track.vehicle_type,
        algorithm=track.algorithm.value,
        replaced=replaced,
        immediate_first_compute=track.immediate_first_compute,
        duration_ms=round((time.perf_counter() - t0) * 1000, 2),
    )
    return TrackResponse(track=track.to_public())


@app.get("/missions/{mission_id}/tracks", response_model=TrackListResponse)
async def list_tracks(mission_id: str, store: StoreDep) -> TrackListResponse:
    return TrackListResponse(tracks=[t.to_public() for t in store.list_for_mission(mission_id)])


@app.get("/tracks/{track_id}", response_model=TrackResponse)
async def get_track(track_id: str, store: StoreDep) -> TrackResponse:
    return TrackResponse(track=_get_track_or_404(store, track_id).to_public())


@app.patch("/tracks/{track_id}", response_model=TrackResponse)
async def patch_track(
    track_id: str,
    req: TrackPatchRequest,
    store: StoreDep,
    notifier: NotifierDep,
) -> TrackResponse:
    track = _get_track_or_404(store, track_id)

    patch: dict[str, Any] = {}
    if req.label is not None:
        patch["label"] = req.label
    if req.max_duration_s is not None:
        patch["max_duration_s"] = clamp_max_duration(req.max_duration_s)
    if req.recompute_interval_s is not None:
        patch["recompute_interval_s"] = clamp_recompute_interval(req.recompute_interval_s)

    if req.status == "stopped":
        if track.status != TrackStatus.ACTIVE:
            raise HTTPException(status_code=409, detail=f"track is {track.status.value}")
        updated = store.update_if_status(track_id, TrackStatus.ACTIVE, {**patch, "status": TrackStatus.STOPPED})
        if updated is None:
            raise HTTPException(status_code=409, detail="track changed concurrently")
        notifier.track_updated(mission_id=updated.mission_id, track_id=updated.id, status=updated.status.value)
        log_event("track_stopped", track_id=track_id, mission_id=updated.mission_id, reason="user")
        return TrackResponse(track=updated.to_public())

    updated = store.update(track_id, patch) if patch else track
    if updated is None:
        raise HTTPException(status_code=404, detail="track not found")
    return TrackResponse(track=updated.to_public())


@app.delete("/tracks/{track_id}", status_code=204)
async def delete_track(track_id: str, store: StoreDep) -> Response:
    track = _get_track_or_404(store, track_id)
    store.delete(track_id)
    log_event("track_deleted", track_id=track_id, mission_id=track.mission_id)
    return Response(status_code=204)


@app.get("/tracks/{track_id}/history", response_model=HistoryResponse)
async def track_history(track_id: str, store: StoreDep, history: HistoryDep) -> HistoryResponse:
    _get_track_or_404(store, track_id)
    return HistoryResponse(track_id=track_id, records=history.for_track(track_id))


@app.websocket("/missions/{mission_id}/events")
async def mission_events(websocket: WebSocket, mission_id: str) -> None:
    notifier: MissionNotifier = websocket.app.state.notifier
    # Subscribe before accepting so no event published after the handshake is missed.
    queue = notifier.subscribe(mission_id)
    await websocket.accept()

    async def forward() -> None:
        while True:
            await websocket.send_json(await queue.get())

    async def drain() -> None:
        # Client messages are ignored; receiving is how a disconnect surfaces.
        while True:
            await websocket.receive_text()

    tasks = [asyncio.create_task(forward()), asyncio.create_task(drain())]
    try:
        done, pending = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
        for task in pending:
            task.cancel()
        for task in done:
            exc = task.exception()
            if exc is not None and not isinstance(exc, WebSocketDisconnect):
                raise exc
    finally:
        for task in tasks:
            task.cancel()
        notifier.unsubscribe(mission_id, queue)
