from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime
from threading import Lock


@dataclass
class OperationStats:
    count: int = 0
    error_count: int = 0
    total_duration_ms: float = 0.0
    max_duration_ms: float = 0.0

    def add(self, duration_ms: float, *, error: bool) -> None:
        self.count += 1
        self.error_count += int(error)
        self.total_duration_ms += duration_ms
        self.max_duration_ms = max(self.max_duration_ms, duration_ms)

    def as_dict(self) -> dict[str, float | int]:
        avg = self.total_duration_ms / self.count if self.count else 0.0
        return {
            "count": self.count,
            "error_count": self.error_count,
            "total_duration_ms": round(self.total_duration_ms, 3),
            "avg_duration_ms": round(avg, 3),
            "max_duration_ms": round(self.max_duration_ms, 3),
        }


class MetricsStore:
    """Timings per scheduler operation plus plain event counters.

    Operations are `tick` and `strategy:<algorithm>`; a strategy that fell
    back to the circle counts as an error. Counters hold events with no
    duration, such as dropped ticks.
    """

    def __init__(self) -> None:
        self._lock = Lock()
        self._created_at = datetime.now(UTC).isoformat()
        self._operations: dict[str, OperationStats] = {}
        self._counters: dict[str, int] = {}

    def record(self, operation: str, *, duration_ms: float, error: bool = False) -> None:
        name = operation.strip() or "unknown"
        with self._lock:
            self._operations.setdefault(name, OperationStats()).add(max(float(duration_ms), 0.0), error=error)

    def increment(self, counter: str, amount: int = 1) -> None:
        with self._lock:
            self._counters[counter] = self._counters.get(counter, 0) + int(amount)

    def snapshot(self) -> dict[str, object]:
        with self._lock:
            operations = {name: self._operations[name].as_dict() for name in sorted(self._operations)}
            return {
                "created_at": self._created_at,
                "total_count": sum(s.count for s in self._operations.values()),
                "total_errors": sum(s.error_count for s in self._operations.values()),
                "operations": operations,
                "counters": dict(sorted(self._counters.items())),
            }

    def reset(self) -> None:
        with self._lock:
            self._created_at = datetime.now(UTC).isoformat()
            self._operations.clear()
            self._counters.clear()


METRICS = MetricsStore()


def metrics_snapshot() -> dict[str, object]:
    return METRICS.snapshot()


def reset_metrics() -> None:
    METRICS.reset()
