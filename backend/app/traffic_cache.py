from __future__ import annotations

from collections import OrderedDict

from .geo import TileKey, tile_center
from .logging_utils import log_event
from .models import TrafficSample
from .range_errors import RangeError
from .traffic_provider import TrafficProvider


class TrafficSampleCache:
    """Per-tile average-speed cache with a TTL and a per-tick external call budget.

    Owned by the scheduler and shared by every strategy. It is not locked:
    ticks never overlap and targets are processed one at a time, so only one
    coroutine touches it at any moment. Parallel targets would need a lock
    or one cache per target.
    """

    def __init__(
        self,
        provider: TrafficProvider | None,
        *,
        ttl_s: float = 60.0,
        max_calls_per_tick: int = 30,
        max_entries: int = 4096,
    ) -> None:
        self._provider = provider
        self._ttl_s = max(1.0, float(ttl_s))
        self._max_calls = max(0, int(max_calls_per_tick))
        self._max_entries = max(1, int(max_entries))
        self._items: OrderedDict[str, TrafficSample] = OrderedDict()
        self._calls_this_tick = 0

        self._hits = 0
        self._misses = 0
        self._lookups = 0
        self._lookup_failures = 0
        self._budget_exhausted = 0

    def reset_budget(self) -> None:
        self._calls_this_tick = 0

    def put(self, tile: TileKey, sample: TrafficSample) -> None:
        key = tile.key
        if key in self._items:
            self._items.move_to_end(key)
        self._items[key] = sample
        while len(self._items) > self._max_entries:
            self._items.popitem(last=False)

    def _fresh(self, sample: TrafficSample, *, now: float, ttl_s: float) -> bool:
        return (now - sample.updated_at) <= ttl_s

    async def get(self, tile: TileKey, now: float, ttl_s: float | None = None) -> TrafficSample | None:
        """Return a sample for the tile, or None. Never raises."""
        ttl = self._ttl_s if ttl_s is None else max(0.0, float(ttl_s))
        cached = self._items.get(tile.key)
        if cached is not None and self._fresh(cached, now=now, ttl_s=ttl):
            self._hits += 1
            return cached

        self._misses += 1
        if self._provider is None or not self._provider.available:
            return cached
        if self._calls_this_tick >= self._max_calls:
            self._budget_exhausted += 1
            return cached

        self._calls_this_tick += 1
        self._lookups += 1
        lng, lat = tile_center(tile)
        try:
            speed = await self._provider.current_speed_kmh(lng=lng, lat=lat)
        except RangeError as exc:
            self._lookup_failures += 1
            log_event(
                "traffic_sample_unavailable",
                tile=tile.key,
                reason_code=exc.reason_code,
                detail=str(exc),
            )
            return cached

        sample = TrafficSample(avg_speed_kmh=speed, updated_at=now)
        self.put(tile, sample)
        return sample

    def snapshot(self) -> dict[str, int | float | bool]:
        return {
            "size": len(self._items),
            "hits": self._hits,
            "misses": self._misses,
            "lookups": self._lookups,
            "lookup_failures": self._lookup_failures,
            "budget_exhausted": self._budget_exhausted,
            "calls_this_tick": self._calls_this_tick,
            "max_calls_per_tick": self._max_calls,
            "ttl_s": self._ttl_s,
            "provider_available": bool(self._provider is not None and self._provider.available),
        }
