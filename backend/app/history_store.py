from __future__ import annotations

import json
from datetime import UTC, datetime
from pathlib import Path
from threading import Lock
from typing import Any

from .logging_utils import log_error


def history_path(out_dir: str) -> Path:
    return Path(out_dir) / "history" / "isochrones.jsonl"


class IsochroneHistoryStore:
    """Append-only audit trail of every persisted isochrone."""

    def __init__(self, *, path: Path | None = None, persist: bool = True, max_in_memory: int = 5000) -> None:
        self._lock = Lock()
        self._records: list[dict[str, Any]] = []
        self._path = path
        self._persist = bool(persist and path is not None)
        self._max_in_memory = max(1, int(max_in_memory))

    @property
    def path(self) -> Path | None:
        return self._path

    def append(
        self,
        *,
        track_id: str,
        mission_id: str,
        budget_s: float,
        geojson: dict[str, Any],
        provider_meta: dict[str, Any],
        ts: datetime | None = None,
    ) -> dict[str, Any]:
        record = {
            "track_id": track_id,
            "mission_id": mission_id,
            "ts": (ts or datetime.now(UTC)).isoformat(),
            "budget_s": float(budget_s),
            "geojson": geojson,
            "provider_meta": provider_meta,
        }
        with self._lock:
            self._records.append(record)
            if len(self._records) > self._max_in_memory:
                del self._records[: len(self._records) - self._max_in_memory]
            if self._persist and self._path is not None:
                self._write(self._path, record)
        return record

    def _write(self, path: Path, record: dict[str, Any]) -> None:
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            with path.open("a", encoding="utf-8") as fh:
                fh.write(json.dumps(record, default=str) + "\n")
        except OSError as exc:
            # The in-memory record stands; a read-only disk must not stop the scheduler.
            log_error("history_write_failed", exc=exc, path=str(path))

    def for_track(self, track_id: str) -> list[dict[str, Any]]:
        with self._lock:
            return [dict(r) for r in self._records if r["track_id"] == track_id]

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)
