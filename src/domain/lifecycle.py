"""
Trip State Machine service.

Every status change goes through the trip store's compare-and-set
(``transition``) so concurrent callers cannot double-accept, double-complete
or revive a terminal trip.  A rejected compare-and-set mutates nothing and
surfaces as ``StateConflict``.

Also home of the read-side tracking visibility gate.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Optional, Union

from .entities import GeoPoint, Trip, utcnow
from .enums import (
    CancelledBy,
    PaymentMethod,
    PaymentStatus,
    TripStatus,
    sources_for,
)
from .errors import CompletionNeedsConfirmation, NotFound, StateConflict
from .events import (
    EventBus,
    PaymentConfirmed,
    RiderPickedUp,
    TripAccepted,
    TripCancelled,
    TripCompleted,
    TripRequested,
    TripStarted,
)
from .geofence import ArrivalRegistry, CompletionCheck, completion_check
from .path_capture import PathCapture
from .ports import TripStore
from .pricing import FareEngine

if TYPE_CHECKING:
    from .relay import LocationRelay

logger = logging.getLogger(__name__)

EXPIRED_STATUSES = frozenset(
    {TripStatus.CANCELLED, TripStatus.COMPLETED, TripStatus.PAYMENT_PENDING}
)


# ── Visibility gate ───────────────────────────────────────────────────


@dataclass(frozen=True)
class Visibility:
    expired: bool
    reason: Optional[str] = None
    expires_at: Optional[datetime] = None


def tracking_visibility(
    trip: Trip, now: datetime, ttl_hours: float = 24.0
) -> Visibility:
    """Whether a tracking observer may still read *trip*."""
    if trip.status in EXPIRED_STATUSES:
        return Visibility(True, trip.status.value)
    if ttl_hours > 0 and trip.created_at is not None:
        expires_at = trip.created_at + timedelta(hours=ttl_hours)
        if now > expires_at:
            return Visibility(True, "ttl", expires_at)
        return Visibility(False, expires_at=expires_at)
    return Visibility(False)


@dataclass(frozen=True)
class TripTracking:
    trip_id: int
    pickup: GeoPoint
    destination: GeoPoint
    status: TripStatus
    vehicle_id: Optional[int]
    vehicle_location: Optional[GeoPoint]
    created_at: Optional[datetime]
    accepted_at: Optional[datetime]
    arrived_at: Optional[datetime]
    picked_at: Optional[datetime]
    completed_at: Optional[datetime]
    expires_at: Optional[datetime]


@dataclass(frozen=True)
class TripExpired:
    trip_id: int
    status: TripStatus
    reason: str
    created_at: Optional[datetime]
    cancelled_at: Optional[datetime]
    completed_at: Optional[datetime]
    expires_at: Optional[datetime]


# ── Lifecycle service ─────────────────────────────────────────────────


class TripLifecycle:
    def __init__(
        self,
        trips: TripStore,
        fares: FareEngine,
        bus: EventBus,
        path_capture: PathCapture,
        arrivals: ArrivalRegistry,
        relay: "LocationRelay",
        tracking_ttl_hours: float = 24.0,
    ):
        self.trips = trips
        self.fares = fares
        self.bus = bus
        self.path_capture = path_capture
        self.arrivals = arrivals
        self.relay = relay
        self.tracking_ttl_hours = tracking_ttl_hours

    async def request(self, trip: Trip) -> Trip:
        """Persist a new trip; online payments wait for confirmation."""
        trip.status = (
            TripStatus.PAYMENT_PENDING
            if trip.payment_method is PaymentMethod.ONLINE
            else TripStatus.PENDING
        )
        trip.created_at = trip.created_at or utcnow()
        trip = await self.trips.create(trip)
        logger.info("Trip %s requested (%s)", trip.id, trip.status.value)
        self.bus.publish(TripRequested(trip_id=trip.id))
        return trip

    async def confirm_payment(self, trip_id: int) -> bool:
        """``payment_pending -> pending``; False (no-op) from any other status."""
        await self.trips.get(trip_id)
        now = utcnow()
        moved = await self.trips.transition(
            trip_id,
            {TripStatus.PAYMENT_PENDING},
            TripStatus.PENDING,
            payment_status=PaymentStatus.PAID,
            paid_at=now,
        )
        if moved:
            logger.info("Payment confirmed for trip %s", trip_id)
            self.bus.publish(PaymentConfirmed(trip_id=trip_id))
        return moved

    async def accept(self, trip_id: int, vehicle_id: int) -> Trip:
        trip = await self.trips.get(trip_id)
        if trip.offered_vehicle_id is not None and trip.offered_vehicle_id != vehicle_id:
            raise StateConflict(trip_id, trip.status, "accept")

        moved = await self.trips.transition(
            trip_id,
            {TripStatus.PENDING},
            TripStatus.ACCEPTED,
            vehicle_id=vehicle_id,
            offered_vehicle_id=None,
            accepted_at=utcnow(),
        )
        if not moved:
            raise StateConflict(trip_id, (await self.trips.get(trip_id)).status, "accept")

        logger.info("Trip %s accepted by vehicle %s", trip_id, vehicle_id)
        self.bus.publish(TripAccepted(trip_id=trip_id, vehicle_id=vehicle_id))
        return await self.trips.get(trip_id)

    async def start(self, trip_id: int) -> Trip:
        return await self._go_enroute(trip_id, "started_at", TripStarted)

    async def picked_up(self, trip_id: int) -> Trip:
        return await self._go_enroute(trip_id, "picked_at", RiderPickedUp)

    async def complete(
        self,
        trip_id: int,
        payment_method: Optional[PaymentMethod] = None,
        confirm_far: bool = False,
        surge: Optional[float] = None,
    ) -> Trip:
        trip = await self.trips.get(trip_id)
        if trip.is_terminal:
            raise StateConflict(trip_id, trip.status, "complete")

        location = await self._vehicle_location(trip)
        check = completion_check(location, trip.destination)
        if check.requires_confirmation and not confirm_far:
            raise CompletionNeedsConfirmation(trip_id, check.distance_m)

        if location is not None:
            await self.path_capture.append(trip_id, location.lat, location.lng, "FINISH")
            trip = await self.trips.get(trip_id)

        completed_at = utcnow()
        fare = await self.fares.final_fare(trip, completed_at, surge=surge)
        method = payment_method or trip.payment_method
        changes = dict(completed_at=completed_at, payment_method=method, fare=fare)
        if method is PaymentMethod.CASH and trip.payment_status is not PaymentStatus.PAID:
            changes.update(payment_status=PaymentStatus.PAID, paid_at=completed_at)

        moved = await self.trips.transition(
            trip_id, sources_for(TripStatus.COMPLETED), TripStatus.COMPLETED, **changes
        )
        if not moved:
            raise StateConflict(trip_id, (await self.trips.get(trip_id)).status, "complete")

        self._forget(trip_id)
        logger.info(
            "Trip %s completed: %s %d, %.2f km, %ds",
            trip_id,
            method.value,
            fare.price,
            fare.distance_km,
            fare.duration_sec,
        )
        self.bus.publish(
            TripCompleted(
                trip_id=trip_id,
                price=fare.price,
                distance_km=fare.distance_km,
                payment_method=method.value,
            )
        )
        return await self.trips.get(trip_id)

    async def cancel(
        self,
        trip_id: int,
        cancelled_by: CancelledBy,
        reason: Optional[str] = None,
        note: Optional[str] = None,
    ) -> Trip:
        trip = await self.trips.get(trip_id)
        if trip.is_terminal:
            raise StateConflict(trip_id, trip.status, "cancel")

        location = await self._vehicle_location(trip)
        if location is not None:
            await self.path_capture.append(trip_id, location.lat, location.lng, "CANCEL")

        moved = await self.trips.transition(
            trip_id,
            sources_for(TripStatus.CANCELLED),
            TripStatus.CANCELLED,
            cancelled_at=utcnow(),
            cancelled_by=cancelled_by,
            cancellation_reason=reason,
            cancellation_note=note,
            offered_vehicle_id=None,
        )
        if not moved:
            raise StateConflict(trip_id, (await self.trips.get(trip_id)).status, "cancel")

        self._forget(trip_id)
        logger.info(
            "Trip %s cancelled by %s (%s)", trip_id, cancelled_by.value, reason or "unspecified"
        )
        self.bus.publish(
            TripCancelled(
                trip_id=trip_id,
                cancelled_by=cancelled_by.value,
                reason=reason,
                note=note,
            )
        )
        return await self.trips.get(trip_id)

    # ── Read side ─────────────────────────────────────────────────────

    async def track(
        self, trip_id: int, now: Optional[datetime] = None
    ) -> Union[TripTracking, TripExpired]:
        trip = await self.trips.get(trip_id)
        visibility = tracking_visibility(trip, now or utcnow(), self.tracking_ttl_hours)
        if visibility.expired:
            return TripExpired(
                trip_id=trip_id,
                status=trip.status,
                reason=visibility.reason,
                created_at=trip.created_at,
                cancelled_at=trip.cancelled_at,
                completed_at=trip.completed_at,
                expires_at=visibility.expires_at,
            )
        return TripTracking(
            trip_id=trip_id,
            pickup=trip.pickup,
            destination=trip.destination,
            status=trip.status,
            vehicle_id=trip.vehicle_id,
            vehicle_location=await self._vehicle_location(trip),
            created_at=trip.created_at,
            accepted_at=trip.accepted_at,
            arrived_at=trip.arrived_at,
            picked_at=trip.picked_at or trip.started_at,
            completed_at=trip.completed_at,
            expires_at=visibility.expires_at,
        )

    async def completion_status(self, trip_id: int) -> CompletionCheck:
        trip = await self.trips.get(trip_id)
        return completion_check(await self._vehicle_location(trip), trip.destination)

    # ── Internals ─────────────────────────────────────────────────────

    async def _go_enroute(self, trip_id: int, stamp: str, event_cls) -> Trip:
        trip = await self.trips.get(trip_id)
        boardable = {TripStatus.ACCEPTED, TripStatus.ENROUTE}
        if trip.status not in boardable:
            raise StateConflict(trip_id, trip.status, "start")

        changes = {}
        if getattr(trip, stamp) is None:
            changes[stamp] = utcnow()
        moved = await self.trips.transition(
            trip_id, boardable, TripStatus.ENROUTE, **changes
        )
        if not moved:
            raise StateConflict(trip_id, (await self.trips.get(trip_id)).status, "start")

        self.arrivals.discard(trip_id)
        if changes:
            self.bus.publish(event_cls(trip_id=trip_id))
        return await self.trips.get(trip_id)

    async def _vehicle_location(self, trip: Trip) -> Optional[GeoPoint]:
        if trip.vehicle_id is None:
            return None
        try:
            return await self.relay.last_location(trip.vehicle_id)
        except NotFound:
            return None

    def _forget(self, trip_id: int) -> None:
        self.arrivals.discard(trip_id)
        self.path_capture.forget(trip_id)
