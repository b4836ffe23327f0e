from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Any

EARTH_RADIUS_M = 6_371_000.0
# Web-Mercator is undefined at the poles; tile maths clamps latitude here.
MAX_MERCATOR_LAT = 85.05112878


@dataclass(frozen=True)
class TileKey:
    z: int
    x: int
    y: int

    @property
    def key(self) -> str:
        return f"{self.z}/{self.x}/{self.y}"

    @classmethod
    def parse(cls, raw: str) -> "TileKey":
        z, x, y = (int(part) for part in str(raw).split("/"))
        return cls(z=z, x=x, y=y)

    def offset(self, dx: int, dy: int) -> "TileKey":
        n = 2**self.z
        # x wraps around the antimeridian, y does not.
        return TileKey(z=self.z, x=(self.x + dx) % n, y=max(0, min(n - 1, self.y + dy)))


def is_valid_coordinate(lng: Any, lat: Any) -> bool:
    if isinstance(lng, bool) or isinstance(lat, bool):
        return False
    if not isinstance(lng, (int, float)) or not isinstance(lat, (int, float)):
        return False
    if not (math.isfinite(lng) and math.isfinite(lat)):
        return False
    return -180.0 <= float(lng) <= 180.0 and -90.0 <= float(lat) <= 90.0


def haversine_m(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    dphi = phi2 - phi1
    dlambda = math.radians(lon2 - lon1)
    a = (
        math.sin(dphi / 2.0) ** 2
        + (math.cos(phi1) * math.cos(phi2) * (math.sin(dlambda / 2.0) ** 2))
    )
    return 2.0 * EARTH_RADIUS_M * math.asin(min(1.0, math.sqrt(max(0.0, a))))


def destination_point(lng: float, lat: float, *, distance_m: float, bearing_deg: float) -> tuple[float, float]:
    """Great-circle offset of (lng, lat) by distance along bearing. Returns (lng, lat)."""
    d_by_r = distance_m / EARTH_RADIUS_M
    bearing = math.radians(bearing_deg)
    lat1 = math.radians(lat)
    lon1 = math.radians(lng)
    lat2 = math.asin(
        math.sin(lat1) * math.cos(d_by_r) + math.cos(lat1) * math.sin(d_by_r) * math.cos(bearing)
    )
    lon2 = lon1 + math.atan2(
        math.sin(bearing) * math.sin(d_by_r) * math.cos(lat1),
        math.cos(d_by_r) - math.sin(lat1) * math.sin(lat2),
    )
    lon2_deg = (math.degrees(lon2) + 540.0) % 360.0 - 180.0
    return lon2_deg, math.degrees(lat2)


def lnglat_to_tile(z: int, lng: float, lat: float) -> TileKey:
    n = 2**z
    lat_c = max(-MAX_MERCATOR_LAT, min(MAX_MERCATOR_LAT, float(lat)))
    x = int(math.floor(((float(lng) + 180.0) / 360.0) * n))
    lat_rad = math.radians(lat_c)
    y = int(math.floor(((1.0 - math.log(math.tan(lat_rad) + 1.0 / math.cos(lat_rad)) / math.pi) / 2.0) * n))
    return TileKey(z=z, x=max(0, min(n - 1, x)), y=max(0, min(n - 1, y)))


def _tile_lat(z: int, y: float) -> float:
    n = 2**z
    return math.degrees(math.atan(math.sinh(math.pi * (1.0 - 2.0 * y / n))))


def tile_bbox(tile: TileKey) -> tuple[float, float, float, float]:
    """(west, south, east, north) in degrees."""
    n = 2**tile.z
    west = (tile.x / n) * 360.0 - 180.0
    east = ((tile.x + 1) / n) * 360.0 - 180.0
    north = _tile_lat(tile.z, tile.y)
    south = _tile_lat(tile.z, tile.y + 1)
    return west, south, east, north


def tile_center(tile: TileKey) -> tuple[float, float]:
    """Tile centroid as (lng, lat)."""
    n = 2**tile.z
    lng = ((tile.x + 0.5) / n) * 360.0 - 180.0
    return lng, _tile_lat(tile.z, tile.y + 0.5)


def empty_feature_collection() -> dict[str, Any]:
    return {"type": "FeatureCollection", "features": []}


def close_ring(points: list[tuple[float, float]]) -> list[list[float]]:
    ring = [[float(lng), float(lat)] for lng, lat in points]
    if ring and ring[0] != ring[-1]:
        ring.append(list(ring[0]))
    return ring


def tile_box_ring(tile: TileKey) -> list[list[float]]:
    west, south, east, north = tile_bbox(tile)
    return [[west, south], [east, south], [east, north], [west, north], [west, south]]
