from __future__ import annotations

from datetime import datetime
from threading import Lock
from typing import Any

from .models import Track, TrackStatus


class InMemoryTrackStore:
    """Track persistence with compare-and-swap updates on lifecycle status.

    Callers always get deep copies; mutate through `update_if_status`.
    """

    def __init__(self) -> None:
        self._lock = Lock()
        self._items: dict[str, Track] = {}

    def insert(self, track: Track) -> Track:
        with self._lock:
            if track.id in self._items:
                raise KeyError(f"track {track.id} already exists")
            self._items[track.id] = track.model_copy(deep=True)
            return track.model_copy(deep=True)

    def get(self, track_id: str) -> Track | None:
        with self._lock:
            track = self._items.get(track_id)
            return track.model_copy(deep=True) if track is not None else None

    def delete(self, track_id: str) -> bool:
        with self._lock:
            return self._items.pop(track_id, None) is not None

    def list_for_mission(self, mission_id: str) -> list[Track]:
        with self._lock:
            tracks = [t.model_copy(deep=True) for t in self._items.values() if t.mission_id == mission_id]
        return sorted(tracks, key=lambda t: t.started_at, reverse=True)

    def find_active(self, *, started_at_or_after: datetime | None = None) -> list[Track]:
        with self._lock:
            return [
                t.model_copy(deep=True)
                for t in self._items.values()
                if t.status == TrackStatus.ACTIVE
                and (started_at_or_after is None or t.started_at >= started_at_or_after)
            ]

    def _apply(self, track: Track, patch: dict[str, Any]) -> Track:
        data = track.model_dump()
        data.update(patch)
        return Track.model_validate(data)

    def update_if_status(
        self,
        track_id: str,
        expected: TrackStatus,
        patch: dict[str, Any],
    ) -> Track | None:
        """Apply `patch` only when the stored status still equals `expected`."""
        with self._lock:
            current = self._items.get(track_id)
            if current is None or current.status != expected:
                return None
            updated = self._apply(current, patch)
            self._items[track_id] = updated
            return updated.model_copy(deep=True)

    def update(self, track_id: str, patch: dict[str, Any]) -> Track | None:
        with self._lock:
            current = self._items.get(track_id)
            if current is None:
                return None
            updated = self._apply(current, patch)
            self._items[track_id] = updated
            return updated.model_copy(deep=True)

    def stop_active_started_before(self, boot_time: datetime) -> list[Track]:
        """One-time repair of tracks left active by a previous process."""
        stopped: list[Track] = []
        with self._lock:
            for track_id, track in list(self._items.items()):
                if track.status == TrackStatus.ACTIVE and track.started_at < boot_time:
                    updated = self._apply(track, {"status": TrackStatus.STOPPED, "cache": None})
                    self._items[track_id] = updated
                    stopped.append(updated.model_copy(deep=True))
        return stopped

    def count(self) -> int:
        with self._lock:
            return len(self._items)
