"""
Event-bus subscribers that talk to the outside world.

* ``LoggingNotifier``       -- default ``Notifier``; logs offers and notices
  (a bot or push gateway replaces it in deployments that have one).
* ``RiderVehicleNotices``   -- plain-language notices for "no vehicle" and
  cancellations, the only failures riders and drivers are told about.
* ``ActivityRecorder``      -- persists every event to ``trip_activities``.
* ``LifecycleBroadcaster``  -- forwards every event to ``trip:{id}:events``.

All handlers run as bus tasks; their failures are logged by the bus and
never reach the code that published the event.
"""

from __future__ import annotations

import logging
from typing import Optional

from src.domain.entities import Trip, Vehicle
from src.domain.events import (
    EventBus,
    NoVehicleAvailable,
    OfferDeclined,
    PaymentConfirmed,
    RiderPickedUp,
    TripAccepted,
    TripCancelled,
    TripEvent,
    TripRequested,
    TripStarted,
    VehicleArrived,
)
from src.domain.ports import Broadcaster, Notifier, TripStore, trip_events_channel
from .repositories import ActivityRepository

logger = logging.getLogger(__name__)

NO_VEHICLE_MESSAGE = "Sorry, no drivers are available right now. Please try again shortly."


class LoggingNotifier(Notifier):
    async def offer_trip(self, vehicle: Vehicle, trip: Trip, estimate: int) -> None:
        logger.info(
            "Offer: trip %s -> vehicle %s (estimate %s)", trip.id, vehicle.id, estimate
        )

    async def notify_rider(self, trip: Trip, message: str) -> None:
        logger.info("Rider notice for trip %s: %s", trip.id, message)

    async def notify_vehicle(self, vehicle_id: int, message: str) -> None:
        logger.info("Vehicle notice for %s: %s", vehicle_id, message)


class RiderVehicleNotices:
    def __init__(self, trips: TripStore, notifier: Notifier):
        self.trips = trips
        self.notifier = notifier

    def register(self, bus: EventBus) -> None:
        bus.subscribe(NoVehicleAvailable, self.on_no_vehicle)
        bus.subscribe(TripCancelled, self.on_cancelled)

    async def on_no_vehicle(self, event: NoVehicleAvailable) -> None:
        trip = await self.trips.get(event.trip_id)
        await self.notifier.notify_rider(trip, NO_VEHICLE_MESSAGE)

    async def on_cancelled(self, event: TripCancelled) -> None:
        trip = await self.trips.get(event.trip_id)
        reason = f" ({event.reason})" if event.reason else ""
        if event.cancelled_by != "rider":
            await self.notifier.notify_rider(
                trip, f"Your trip was cancelled by the {event.cancelled_by}{reason}."
            )
        if trip.vehicle_id is not None and event.cancelled_by != "driver":
            await self.notifier.notify_vehicle(
                trip.vehicle_id,
                f"Trip {trip.id} was cancelled by the {event.cancelled_by}{reason}.",
            )


def _actor(event: TripEvent) -> tuple[str, Optional[str]]:
    if isinstance(event, TripCancelled):
        return event.cancelled_by, None
    if isinstance(event, (TripRequested, PaymentConfirmed)):
        return "rider", None
    vehicle_id = getattr(event, "vehicle_id", None)
    if isinstance(
        event, (TripAccepted, OfferDeclined, VehicleArrived, TripStarted, RiderPickedUp)
    ):
        return "driver", str(vehicle_id) if vehicle_id is not None else None
    return "system", None


_MESSAGES = {
    "request": "Trip requested",
    "payment": "Payment confirmed",
    "assigned": "Offer sent to vehicle",
    "no_vehicle": "No vehicle available",
    "ignored": "Vehicle declined the offer",
    "accepted": "Vehicle accepted",
    "arrived": "Vehicle arrived at pickup",
    "picked": "Rider picked up",
    "started": "Trip started",
    "cancelled": "Trip cancelled",
    "completed": "Trip completed",
}


class ActivityRecorder:
    def __init__(self, activities: ActivityRepository):
        self.activities = activities

    def register(self, bus: EventBus) -> None:
        bus.subscribe(TripEvent, self.on_event)

    async def on_event(self, event: TripEvent) -> None:
        actor_type, actor_id = _actor(event)
        meta = event.payload()
        for key in ("trip_id", "type", "occurred_at"):
            meta.pop(key, None)
        await self.activities.record(
            event.trip_id,
            event.kind,
            actor_type=actor_type,
            actor_id=actor_id,
            message=_MESSAGES.get(event.kind),
            meta=meta or None,
        )


class LifecycleBroadcaster:
    def __init__(self, broadcaster: Broadcaster):
        self.broadcaster = broadcaster

    def register(self, bus: EventBus) -> None:
        bus.subscribe(TripEvent, self.on_event)

    async def on_event(self, event: TripEvent) -> None:
        await self.broadcaster.publish(trip_events_channel(event.trip_id), event.payload())
