"""
Road metrics providers.

* ``GoogleDistanceMatrixClient`` -- live-traffic distance / duration from the
  Google Distance Matrix API (``departure_time=now``, ``best_guess``).
* ``GreatCircleRouter`` -- haversine distance at an assumed average speed.
* ``ResilientRouter`` -- tries the primary provider and falls back to the
  great-circle estimate on *any* failure, so pricing never blocks on routing.
"""

from __future__ import annotations

import logging
from typing import Optional

import httpx

from src.domain.distance import haversine_km
from src.domain.entities import GeoPoint
from src.domain.errors import RoutingError
from src.domain.ports import RoadMetrics, RoutingProvider

logger = logging.getLogger(__name__)

DISTANCE_MATRIX_URL = "https://maps.googleapis.com/maps/api/distancematrix/json"


class GoogleDistanceMatrixClient(RoutingProvider):
    def __init__(
        self,
        api_key: str,
        region: str = "",
        components: str = "",
        timeout: float = 5.0,
        client: Optional[httpx.AsyncClient] = None,
        base_url: str = DISTANCE_MATRIX_URL,
    ):
        self.api_key = api_key
        self.region = region
        self.components = components
        self.timeout = timeout
        self.base_url = base_url
        self._client = client or httpx.AsyncClient(timeout=timeout)

    async def road_metrics(self, origin: GeoPoint, destination: GeoPoint) -> RoadMetrics:
        params = {
            "origins": f"{origin.lat},{origin.lng}",
            "destinations": f"{destination.lat},{destination.lng}",
            "key": self.api_key,
            "departure_time": "now",
            "traffic_model": "best_guess",
            "mode": "driving",
        }
        if self.region:
            params["region"] = self.region
        if self.components:
            params["components"] = self.components

        try:
            response = await self._client.get(self.base_url, params=params)
            response.raise_for_status()
            data = response.json()
        except httpx.TimeoutException as e:
            raise RoutingError(f"Distance Matrix timed out after {self.timeout}s") from e
        except (httpx.HTTPError, ValueError) as e:
            raise RoutingError(f"Distance Matrix request failed: {e}") from e

        try:
            element = data["rows"][0]["elements"][0]
        except (KeyError, IndexError, TypeError) as e:
            raise RoutingError("Distance Matrix returned no element") from e
        if element.get("status") != "OK":
            raise RoutingError(f"Distance Matrix element status {element.get('status')}")

        distance_m = (element.get("distance") or {}).get("value") or 0
        duration_sec = (element.get("duration") or {}).get("value") or 0
        in_traffic = (element.get("duration_in_traffic") or {}).get("value")
        traffic_sec = max(1, in_traffic if in_traffic is not None else duration_sec)

        return RoadMetrics(
            distance_km=distance_m / 1000,
            duration_sec=duration_sec,
            traffic_duration_sec=traffic_sec,
            traffic_factor=max(1.0, traffic_sec / max(1, duration_sec)),
        )

    async def aclose(self) -> None:
        await self._client.aclose()


class GreatCircleRouter(RoutingProvider):
    def __init__(self, speed_kmh: float = 35.0):
        self.speed_kmh = speed_kmh

    async def road_metrics(self, origin: GeoPoint, destination: GeoPoint) -> RoadMetrics:
        km = haversine_km(origin.lat, origin.lng, destination.lat, destination.lng)
        duration = round(km / self.speed_kmh * 3600)
        return RoadMetrics(
            distance_km=km,
            duration_sec=duration,
            traffic_duration_sec=duration,
            traffic_factor=1.0,
            source="great_circle",
        )


class ResilientRouter(RoutingProvider):
    def __init__(self, primary: Optional[RoutingProvider], fallback: RoutingProvider):
        self.primary = primary
        self.fallback = fallback

    async def road_metrics(self, origin: GeoPoint, destination: GeoPoint) -> RoadMetrics:
        if self.primary is None:
            return await self.fallback.road_metrics(origin, destination)
        try:
            return await self.primary.road_metrics(origin, destination)
        except Exception as e:
            logger.warning("Routing provider failed (%s); using great-circle estimate", e)
            return await self.fallback.road_metrics(origin, destination)

    async def aclose(self) -> None:
        close = getattr(self.primary, "aclose", None)
        if close is not None:
            await close()
