from __future__ import annotations

from typing import Any

from .geo import destination_point, empty_feature_collection, is_valid_coordinate
from .models import IsochroneResult
from .vehicles import get_vehicle

CIRCLE_STEPS = 180
MAX_CIRCLE_ELAPSED_S = 3600.0
PROVIDER_NAME = "fallback_circle"


def circle_radius_km(speed_kmh: float, elapsed_s: float) -> float:
    elapsed = max(0.0, min(float(elapsed_s), MAX_CIRCLE_ELAPSED_S))
    return max(0.0, float(speed_kmh)) * (elapsed / 3600.0)


def circle_ring(lng: float, lat: float, radius_km: float, *, steps: int = CIRCLE_STEPS) -> list[list[float]]:
    """Closed ring of `steps` bearing samples at `radius_km` around (lng, lat)."""
    ring: list[list[float]] = []
    distance_m = radius_km * 1000.0
    for i in range(steps):
        p_lng, p_lat = destination_point(lng, lat, distance_m=distance_m, bearing_deg=(360.0 / steps) * i)
        ring.append([p_lng, p_lat])
    if ring:
        ring.append(list(ring[0]))
    return ring


def estimate_circle(
    *,
    lng: float | None,
    lat: float | None,
    elapsed_s: float,
    vehicle_type: str | None,
    steps: int = CIRCLE_STEPS,
) -> IsochroneResult:
    """Disk of radius cruise-speed x elapsed hours. Degenerate inputs give an empty result."""
    if lng is None or lat is None or not is_valid_coordinate(lng, lat):
        return IsochroneResult(geojson=empty_feature_collection(), meta={"reason": "MISSING_COORDS"})

    profile = get_vehicle(vehicle_type)
    elapsed = max(0.0, min(float(elapsed_s), MAX_CIRCLE_ELAPSED_S))
    radius_km = circle_radius_km(profile.cruise_speed_kmh, elapsed)
    meta: dict[str, Any] = {
        "provider": PROVIDER_NAME,
        "vehicleType": profile.id,
        "speedKmh": profile.cruise_speed_kmh,
        "elapsedSeconds": elapsed,
        "radiusKm": radius_km,
    }
    if elapsed <= 0 or radius_km <= 0:
        meta["reason"] = "ZERO_ELAPSED"
        return IsochroneResult(geojson=empty_feature_collection(), meta=meta)

    feature = {
        "type": "Feature",
        "properties": {"radiusKm": radius_km},
        "geometry": {"type": "Polygon", "coordinates": [circle_ring(float(lng), float(lat), radius_km, steps=steps)]},
    }
    return IsochroneResult(geojson={"type": "FeatureCollection", "features": [feature]}, meta=meta)
