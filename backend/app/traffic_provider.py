from __future__ import annotations

import math

import httpx

from .http_utils import get_json
from .range_errors import EmptyResult, MissingConfig, ProviderDisabled
from .settings import settings

FLOW_SEGMENT_PATH = "/traffic/services/4/flowSegmentData/absolute/10/json"


class TrafficProvider:
    """Point lookup of the current average speed (km/h) on the nearest road segment."""

    def __init__(
        self,
        *,
        base_url: str,
        api_key: str,
        enabled: bool,
        timeout_s: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key.strip()
        self.enabled = bool(enabled)
        self.timeout_s = float(timeout_s)
        self._client = httpx.AsyncClient(
            timeout=httpx.Timeout(self.timeout_s, connect=min(5.0, self.timeout_s)),
            headers={"accept": "application/json"},
            transport=transport,
        )

    @classmethod
    def from_settings(cls, *, transport: httpx.AsyncBaseTransport | None = None) -> "TrafficProvider":
        return cls(
            base_url=settings.tomtom_base_url,
            api_key=settings.tomtom_api_key,
            enabled=settings.traffic_provider == "tomtom",
            timeout_s=settings.traffic_request_timeout_s,
            transport=transport,
        )

    @property
    def available(self) -> bool:
        return self.enabled and bool(self.api_key) and bool(self.base_url)

    async def aclose(self) -> None:
        await self._client.aclose()

    async def current_speed_kmh(self, *, lng: float, lat: float) -> float:
        if not self.enabled:
            raise ProviderDisabled("traffic provider disabled")
        if not self.api_key or not self.base_url:
            raise MissingConfig("traffic provider credentials missing")

        data = await get_json(
            self._client,
            f"{self.base_url}{FLOW_SEGMENT_PATH}",
            service="traffic",
            params={"key": self.api_key, "point": f"{lat},{lng}"},
        )
        segment = (data or {}).get("flowSegmentData") if isinstance(data, dict) else None
        try:
            speed = float((segment or {}).get("currentSpeed"))
        except (TypeError, ValueError):
            speed = float("nan")
        if not math.isfinite(speed) or speed <= 0:
            raise EmptyResult("traffic provider returned no current speed")
        return speed
