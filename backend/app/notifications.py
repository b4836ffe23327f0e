from __future__ import annotations

import asyncio
from collections import deque
from threading import Lock
from typing import Any

from .logging_utils import log_event

TRACK_CREATED = "vehicle-track:created"
TRACK_UPDATED = "vehicle-track:updated"
TRACK_EXPIRED = "vehicle-track:expired"


class MissionNotifier:
    """Mission-scoped fan-out of track events to subscriber queues.

    Publishing never blocks: a subscriber whose queue is full loses its
    oldest pending event.
    """

    def __init__(self, *, queue_size: int = 256, recent_size: int = 500) -> None:
        self._lock = Lock()
        self._queue_size = max(1, int(queue_size))
        self._subscribers: dict[str, list[asyncio.Queue[dict[str, Any]]]] = {}
        self._recent: deque[dict[str, Any]] = deque(maxlen=max(1, int(recent_size)))

    def subscribe(self, mission_id: str) -> asyncio.Queue[dict[str, Any]]:
        queue: asyncio.Queue[dict[str, Any]] = asyncio.Queue(maxsize=self._queue_size)
        with self._lock:
            self._subscribers.setdefault(mission_id, []).append(queue)
        return queue

    def unsubscribe(self, mission_id: str, queue: asyncio.Queue[dict[str, Any]]) -> None:
        with self._lock:
            queues = self._subscribers.get(mission_id, [])
            if queue in queues:
                queues.remove(queue)
            if not queues:
                self._subscribers.pop(mission_id, None)

    def subscriber_count(self, mission_id: str | None = None) -> int:
        with self._lock:
            if mission_id is not None:
                return len(self._subscribers.get(mission_id, []))
            return sum(len(q) for q in self._subscribers.values())

    def publish(self, event: str, payload: dict[str, Any]) -> int:
        mission_id = str(payload.get("missionId", ""))
        message = {"event": event, "data": payload}
        with self._lock:
            self._recent.append(message)
            queues = list(self._subscribers.get(mission_id, []))
        for queue in queues:
            if queue.full():
                queue.get_nowait()
            queue.put_nowait(message)
        log_event(
            "track_event_published",
            track_event=event,
            mission_id=mission_id,
            track_id=payload.get("trackId"),
            subscribers=len(queues),
        )
        return len(queues)

    def recent(self, mission_id: str | None = None) -> list[dict[str, Any]]:
        with self._lock:
            items = list(self._recent)
        if mission_id is None:
            return items
        return [m for m in items if m["data"].get("missionId") == mission_id]

    # Convenience wrappers for the three lifecycle events.

    def track_created(self, *, mission_id: str, track_id: str, status: str) -> int:
        return self.publish(TRACK_CREATED, {"missionId": mission_id, "trackId": track_id, "status": status})

    def track_updated(
        self,
        *,
        mission_id: str,
        track_id: str,
        status: str,
        cache: dict[str, Any] | None = None,
    ) -> int:
        payload: dict[str, Any] = {"missionId": mission_id, "trackId": track_id, "status": status}
        if cache is not None:
            payload["cache"] = cache
        return self.publish(TRACK_UPDATED, payload)

    def track_expired(self, *, mission_id: str, track_id: str) -> int:
        return self.publish(TRACK_EXPIRED, {"missionId": mission_id, "trackId": track_id, "status": "expired"})
