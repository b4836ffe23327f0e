from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Any

import httpx

from .geo import haversine_m, is_valid_coordinate
from .http_utils import get_json
from .range_errors import EmptyResult, MissingInput, ProviderDisabled
from .settings import settings


@dataclass(frozen=True)
class RoadEdge:
    id: str
    from_node_id: str
    to_node_id: str
    length_m: float
    coordinates: tuple[tuple[float, float], ...]
    road_class: str | None = None
    oneway: bool = False
    speed_limit_kmh: float | None = None

    def reversed(self) -> "RoadEdge":
        return RoadEdge(
            id=self.id,
            from_node_id=self.to_node_id,
            to_node_id=self.from_node_id,
            length_m=self.length_m,
            coordinates=tuple(reversed(self.coordinates)),
            road_class=self.road_class,
            oneway=self.oneway,
            speed_limit_kmh=self.speed_limit_kmh,
        )


def _pick(raw: dict[str, Any], *names: str) -> Any:
    for name in names:
        if name in raw and raw[name] is not None:
            return raw[name]
    return None


_FALSE_FLAGS = frozenset({"", "0", "false", "no", "n", "off"})


def _flag(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() not in _FALSE_FLAGS
    return bool(value)


def _line_length_m(coords: tuple[tuple[float, float], ...]) -> float:
    total = 0.0
    for (lng1, lat1), (lng2, lat2) in zip(coords, coords[1:]):
        total += haversine_m(lat1, lng1, lat2, lng2)
    return total


def parse_edge(raw: Any) -> RoadEdge | None:
    """Parse one edge from the tile payload; None when unusable."""
    if not isinstance(raw, dict):
        return None
    from_node = _pick(raw, "from_node_id", "fromNodeId")
    to_node = _pick(raw, "to_node_id", "toNodeId")
    geometry = raw.get("geometry")
    if from_node is None or to_node is None or not isinstance(geometry, dict):
        return None
    if geometry.get("type") != "LineString":
        return None

    coords: list[tuple[float, float]] = []
    for point in geometry.get("coordinates") or []:
        if not isinstance(point, (list, tuple)) or len(point) < 2:
            return None
        lng, lat = point[0], point[1]
        if not is_valid_coordinate(lng, lat):
            return None
        coords.append((float(lng), float(lat)))
    if len(coords) < 2:
        return None
    coord_tuple = tuple(coords)

    try:
        length_m = float(_pick(raw, "length_m", "lengthMeters"))
    except (TypeError, ValueError):
        length_m = float("nan")
    if not math.isfinite(length_m) or length_m <= 0:
        length_m = _line_length_m(coord_tuple)
    if length_m <= 0:
        return None

    try:
        speed_limit = float(_pick(raw, "speed_limit_kmh", "speedLimitKmh"))
    except (TypeError, ValueError):
        speed_limit = None
    if speed_limit is not None and (not math.isfinite(speed_limit) or speed_limit <= 0):
        speed_limit = None

    road_class = _pick(raw, "road_class", "roadClass")
    edge_id = _pick(raw, "id")
    return RoadEdge(
        id=str(edge_id) if edge_id is not None else f"{from_node}->{to_node}",
        from_node_id=str(from_node),
        to_node_id=str(to_node),
        length_m=length_m,
        coordinates=coord_tuple,
        road_class=str(road_class).lower() if road_class else None,
        oneway=_flag(_pick(raw, "oneway", "oneWay")),
        speed_limit_kmh=speed_limit,
    )


class RoadGraphProvider:
    """HTTP client for the road-graph service (snap to road, edges per tile)."""

    def __init__(
        self,
        *,
        base_url: str,
        timeout_s: float = 120.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout_s = float(timeout_s)
        # trust_env=False keeps proxy env vars away from docker service names.
        self._client = httpx.AsyncClient(
            timeout=httpx.Timeout(self.timeout_s, connect=min(10.0, self.timeout_s)),
            trust_env=False,
            headers={"accept": "application/json"},
            transport=transport,
        )

    @classmethod
    def from_settings(cls, *, transport: httpx.AsyncBaseTransport | None = None) -> "RoadGraphProvider":
        return cls(
            base_url=settings.road_graph_base_url,
            timeout_s=settings.road_graph_timeout_s,
            transport=transport,
        )

    @property
    def available(self) -> bool:
        return bool(self.base_url)

    async def aclose(self) -> None:
        await self._client.aclose()

    async def snap(self, *, lng: float, lat: float, profile: str) -> tuple[float, float]:
        if not self.available:
            raise ProviderDisabled("road-graph service not configured")
        if not is_valid_coordinate(lng, lat):
            raise MissingInput("snap needs a valid origin")
        data = await get_json(
            self._client,
            f"{self.base_url}/snap",
            service="road-graph",
            params={"lng": str(lng), "lat": str(lat), "profile": profile},
        )
        if not isinstance(data, dict) or not is_valid_coordinate(data.get("lng"), data.get("lat")):
            raise EmptyResult("road-graph snap returned no coordinates")
        return float(data["lng"]), float(data["lat"])

    async def tile_edges(self, *, z: int, x: int, y: int, profile: str) -> list[RoadEdge]:
        if not self.available:
            raise ProviderDisabled("road-graph service not configured")
        data = await get_json(
            self._client,
            f"{self.base_url}/tile",
            service="road-graph",
            params={"z": str(z), "x": str(x), "y": str(y), "profile": profile},
        )
        if not isinstance(data, dict) or not isinstance(data.get("edges"), list):
            raise EmptyResult(f"road-graph tile {z}/{x}/{y} returned no edge list")
        edges: list[RoadEdge] = []
        for raw in data["edges"]:
            edge = parse_edge(raw)
            if edge is not None:
                edges.append(edge)
        return edges
