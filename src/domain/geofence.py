"""
Geofence Event Detector
=======================

Thresholds (metres, fixed domain constants):

* arrival at pickup          <= 35   (one-shot per trip)
* at drop-off                <= 20   (status tier)
* approaching drop-off       <= 200  (status tier)
* completion enabled         <= 60
* completion needs override  >  120

Only the arrival check has side effects; the tiers and the completion check
are pure functions of the current position.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from .distance import haversine_m
from .entities import GeoPoint, Trip, utcnow
from .enums import ProximityTier, TripStatus
from .events import EventBus, VehicleArrived
from .ports import TripStore

logger = logging.getLogger(__name__)

ARRIVAL_RADIUS_M = 35.0
AT_DROPOFF_RADIUS_M = 20.0
APPROACHING_RADIUS_M = 200.0
COMPLETION_ENABLED_M = 60.0
COMPLETION_OVERRIDE_M = 120.0


class ArrivalRegistry:
    """Trip ids whose arrival event has already fired."""

    def __init__(self) -> None:
        self._announced: set[int] = set()

    def claim(self, trip_id: int) -> bool:
        """Mark *trip_id* announced; False if it already was."""
        if trip_id in self._announced:
            return False
        self._announced.add(trip_id)
        return True

    def discard(self, trip_id: int) -> None:
        self._announced.discard(trip_id)

    def __contains__(self, trip_id: int) -> bool:
        return trip_id in self._announced

    def __len__(self) -> int:
        return len(self._announced)


def proximity_tier(distance_m: float) -> ProximityTier:
    if distance_m <= AT_DROPOFF_RADIUS_M:
        return ProximityTier.AT_DROPOFF
    if distance_m <= APPROACHING_RADIUS_M:
        return ProximityTier.APPROACHING
    return ProximityTier.EN_ROUTE


@dataclass(frozen=True)
class CompletionCheck:
    distance_m: Optional[float]
    within_dropoff: bool
    requires_confirmation: bool


def completion_check(
    vehicle_location: Optional[GeoPoint], destination: GeoPoint
) -> CompletionCheck:
    """Whether an operator may finish the trip from *vehicle_location*.

    With no known position the operator is trusted and nothing is asked.
    """
    if vehicle_location is None:
        return CompletionCheck(None, within_dropoff=False, requires_confirmation=False)
    distance = haversine_m(vehicle_location, destination)
    return CompletionCheck(
        distance_m=distance,
        within_dropoff=distance <= COMPLETION_ENABLED_M,
        requires_confirmation=distance > COMPLETION_OVERRIDE_M,
    )


@dataclass(frozen=True)
class GeofenceReading:
    arrived: bool = False
    tier: Optional[ProximityTier] = None


class GeofenceDetector:
    def __init__(self, announced: ArrivalRegistry, trips: TripStore, bus: EventBus):
        self.announced = announced
        self.trips = trips
        self.bus = bus

    async def observe(
        self, trip: Trip, vehicle_id: int, point: GeoPoint
    ) -> GeofenceReading:
        if trip.is_terminal:
            return GeofenceReading()

        if trip.status is TripStatus.ACCEPTED and trip.picked_at is None:
            if trip.id in self.announced:
                return GeofenceReading()
            if haversine_m(point, trip.pickup) > ARRIVAL_RADIUS_M:
                return GeofenceReading()
            if not self.announced.claim(trip.id):
                return GeofenceReading()
            try:
                await self.trips.update(trip.id, arrived_at=utcnow())
            except Exception:
                logger.warning("Could not stamp arrival on trip %s", trip.id)
            logger.info("Vehicle %s arrived at pickup of trip %s", vehicle_id, trip.id)
            self.bus.publish(VehicleArrived(trip_id=trip.id, vehicle_id=vehicle_id))
            return GeofenceReading(arrived=True)

        if trip.status is TripStatus.ENROUTE:
            return GeofenceReading(
                tier=proximity_tier(haversine_m(point, trip.destination))
            )
        return GeofenceReading()
