"""
Path Capture -- throttled, append-only breadcrumbs per trip.

A fix is admitted when it is at least ``min_interval_s`` after the last
admitted point for the trip OR at least ``min_distance_m`` away from it
(the first point is always admitted).  That bounds the write rate and the
path size regardless of how often vehicles report.

Writes are best-effort: a failed append is logged and the gate is left
untouched so the next fix retries.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Callable

from .distance import haversine_m
from .entities import GeoPoint, PathPoint, utcnow
from .ports import TripStore

logger = logging.getLogger(__name__)

MIN_INTERVAL_S = 2.5
MIN_DISTANCE_M = 8.0


@dataclass(frozen=True)
class _LastAdmitted:
    point: GeoPoint
    at: float


class PathCapture:
    def __init__(
        self,
        trips: TripStore,
        min_interval_s: float = MIN_INTERVAL_S,
        min_distance_m: float = MIN_DISTANCE_M,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.trips = trips
        self.min_interval_s = min_interval_s
        self.min_distance_m = min_distance_m
        self._clock = clock
        self._last: dict[int, _LastAdmitted] = {}

    def admits(self, trip_id: int, point: GeoPoint, now: float) -> bool:
        prev = self._last.get(trip_id)
        if prev is None:
            return True
        fast_enough = now - prev.at >= self.min_interval_s
        far_enough = haversine_m(prev.point, point) >= self.min_distance_m
        return fast_enough or far_enough

    async def append(self, trip_id: int, lat: float, lng: float, label: str = "") -> bool:
        """Record the fix if it clears the gate.  Never raises."""
        point = GeoPoint(lat, lng)
        now = self._clock()
        if not self.admits(trip_id, point, now):
            return False

        try:
            await self.trips.append_path_point(
                trip_id, PathPoint(lat=lat, lng=lng, recorded_at=utcnow())
            )
        except Exception as exc:
            logger.warning("append path point failed for trip %s: %s", trip_id, exc)
            return False

        self._last[trip_id] = _LastAdmitted(point, now)
        if label:
            logger.info(
                "PATH %s trip=%s lat=%.6f lng=%.6f", label, trip_id, lat, lng
            )
        return True

    def forget(self, trip_id: int) -> None:
        self._last.pop(trip_id, None)
