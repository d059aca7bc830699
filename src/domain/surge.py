"""
Surge Estimator
===============

    demand  = pending / payment-pending trips created in the trailing
              window whose pickup lies within ``radius_km``
    drivers = available vehicles within ``radius_km``

* drivers == 0 and demand > 0  ->  1.5
* otherwise ratio = demand / max(1, drivers):
  >= 3 -> 1.8, >= 2 -> 1.5, >= 1.2 -> 1.2, else 1.0
* result clamped to ``[floor, ceiling]`` (default [1.0, 2.0])

Any failure reading supply or demand degrades to 1.0.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Optional

from .entities import GeoPoint, utcnow
from .ports import FleetRegistry, TripStore

logger = logging.getLogger(__name__)

NO_SUPPLY_SURGE = 1.5
SURGE_TIERS: tuple[tuple[float, float], ...] = (
    (3.0, 1.8),
    (2.0, 1.5),
    (1.2, 1.2),
)


def surge_multiplier(
    demand: int, drivers: int, floor: float = 1.0, ceiling: float = 2.0
) -> float:
    if drivers <= 0 and demand > 0:
        surge = NO_SUPPLY_SURGE
    else:
        ratio = demand / max(1, drivers)
        surge = 1.0
        for threshold, multiplier in SURGE_TIERS:
            if ratio >= threshold:
                surge = multiplier
                break
    return min(ceiling, max(floor, surge))


class SurgeEstimator:
    def __init__(
        self,
        fleet: FleetRegistry,
        trips: TripStore,
        radius_km: float = 8.0,
        window_minutes: float = 15.0,
        floor: float = 1.0,
        ceiling: float = 2.0,
    ):
        self.fleet = fleet
        self.trips = trips
        self.radius_km = radius_km
        self.window = timedelta(minutes=window_minutes)
        self.floor = floor
        self.ceiling = ceiling

    async def surge_near(
        self, point: GeoPoint, as_of: Optional[datetime] = None
    ) -> float:
        since = (as_of or utcnow()) - self.window
        try:
            drivers = len(await self.fleet.available_near(point, self.radius_km))
            demand = await self.trips.count_recent_demand(
                point, self.radius_km, since
            )
        except Exception:
            logger.warning("Surge inputs unavailable near %s; using 1.0", point)
            return 1.0

        surge = surge_multiplier(demand, drivers, self.floor, self.ceiling)
        logger.debug(
            "surge near (%.5f, %.5f): demand=%d drivers=%d -> %.2f",
            point.lat,
            point.lng,
            demand,
            drivers,
            surge,
        )
        return surge
