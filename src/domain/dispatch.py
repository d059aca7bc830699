"""
Dispatch Coordinator
====================

``dispatch(trip_id, excluded)``

1. Eligible vehicles: available, located, class-matching (when the trip
   names a class) and not in the exclusion set.
2. Great-circle distance to the pickup; drop anything beyond the optional
   radius.
3. Nearest wins; ties keep query order (stable sort).
4. Nothing left -> ``NoVehicleAvailable`` and stop.  The core never
   schedules a retry on its own.
5. Otherwise record a non-binding offer on the still-``pending`` trip,
   price an estimate and hand the accept/decline prompt to the notifier.

Re-dispatch
-----------
A decline calls ``dispatch`` again with ``excluded | {decliner}`` passed as
a value.  Inside one call, a candidate whose prompt cannot be delivered is
excluded and the loop moves on to the next one.  The exclusion set only
grows, so the cycle ends once the eligible pool is exhausted.
While a declined trip is being re-dispatched the offer book holds a
vehicle-less placeholder, so no vehicle (the decliner included) can accept
in between.

Accept is gated on the trip still being ``pending`` (atomic in the trip
store), so at most one vehicle can win a trip.
"""

from __future__ import annotations

import asyncio
import enum
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Iterable, Optional

from .distance import haversine_km
from .entities import GeoPoint, Trip, Vehicle, utcnow
from .enums import TripStatus
from .errors import StateConflict
from .events import (
    EventBus,
    NoVehicleAvailable,
    OfferDeclined,
    TripCancelled,
    TripCompleted,
    TripEvent,
    VehicleAssigned,
)
from .ports import FleetRegistry, Notifier, TripStore
from .pricing import FareEngine

logger = logging.getLogger(__name__)


class DispatchOutcome(str, enum.Enum):
    OFFERED = "offered"
    NO_VEHICLE = "no_vehicle"
    SKIPPED = "skipped"


@dataclass(frozen=True)
class DispatchResult:
    outcome: DispatchOutcome
    trip_id: int
    vehicle_id: Optional[int] = None
    estimate: Optional[int] = None
    distance_km: Optional[float] = None
    excluded: frozenset[int] = frozenset()


@dataclass
class Offer:
    trip_id: int
    vehicle_id: Optional[int]
    excluded: frozenset[int]
    estimate: Optional[int]
    offered_at: datetime = field(default_factory=utcnow)
    timeout_task: Optional[asyncio.Task] = None


class OfferBook:
    """Outstanding offers keyed by trip id (one per trip)."""

    def __init__(self) -> None:
        self._offers: dict[int, Offer] = {}

    def get(self, trip_id: int) -> Optional[Offer]:
        return self._offers.get(trip_id)

    def put(self, offer: Offer) -> None:
        previous = self._offers.get(offer.trip_id)
        if previous is not None:
            _cancel_timeout(previous)
        self._offers[offer.trip_id] = offer

    def pop(self, trip_id: int) -> Optional[Offer]:
        offer = self._offers.pop(trip_id, None)
        if offer is not None:
            _cancel_timeout(offer)
        return offer

    def clear(self) -> None:
        for trip_id in list(self._offers):
            self.pop(trip_id)

    def __len__(self) -> int:
        return len(self._offers)


def _cancel_timeout(offer: Offer) -> None:
    task = offer.timeout_task
    if task is not None and not task.done() and task is not asyncio.current_task():
        task.cancel()


def rank_candidates(
    vehicles: Iterable[Vehicle],
    pickup: GeoPoint,
    radius_km: Optional[float] = None,
) -> list[tuple[Vehicle, float]]:
    """Located vehicles by ascending distance to *pickup*; O(n log n)."""
    ranked = []
    for vehicle in vehicles:
        if vehicle.location is None:
            continue
        distance = haversine_km(
            vehicle.location.lat, vehicle.location.lng, pickup.lat, pickup.lng
        )
        if radius_km is not None and distance > radius_km:
            continue
        ranked.append((vehicle, distance))
    ranked.sort(key=lambda pair: pair[1])
    return ranked


class DispatchCoordinator:
    def __init__(
        self,
        trips: TripStore,
        fleet: FleetRegistry,
        fares: FareEngine,
        notifier: Notifier,
        bus: EventBus,
        lifecycle,
        offers: OfferBook,
        radius_km: Optional[float] = None,
        offer_timeout_seconds: Optional[float] = None,
    ):
        self.trips = trips
        self.fleet = fleet
        self.fares = fares
        self.notifier = notifier
        self.bus = bus
        self.lifecycle = lifecycle
        self.offers = offers
        self.radius_km = radius_km
        self.offer_timeout_seconds = offer_timeout_seconds

        bus.subscribe(TripCancelled, self._on_trip_closed)
        bus.subscribe(TripCompleted, self._on_trip_closed)

    # ── Public API ────────────────────────────────────────────────────

    async def dispatch(
        self, trip_id: int, excluded: Iterable[int] = frozenset()
    ) -> DispatchResult:
        trip = await self.trips.get(trip_id)
        excluded = frozenset(excluded)
        if trip.status is not TripStatus.PENDING:
            logger.info("Trip %s is %s; not dispatching", trip_id, trip.status.value)
            self.offers.pop(trip_id)
            return DispatchResult(DispatchOutcome.SKIPPED, trip_id, excluded=excluded)

        vehicles = await self.fleet.find_eligible(trip.vehicle_class, excluded)
        for vehicle, distance_km in rank_candidates(
            vehicles, trip.pickup, self.radius_km
        ):
            if vehicle.id in excluded:
                continue

            estimate = await self.fares.estimate(
                trip.pickup,
                trip.destination,
                trip.vehicle_class or vehicle.vehicle_class,
                vehicle.location,
                vehicle.rate_override,
            )
            recorded = await self.trips.transition(
                trip_id,
                {TripStatus.PENDING},
                TripStatus.PENDING,
                offered_vehicle_id=vehicle.id,
                estimate=estimate.price,
                pickup_distance_km=distance_km,
            )
            if not recorded:
                logger.info("Trip %s left pending while dispatching", trip_id)
                self.offers.pop(trip_id)
                return DispatchResult(DispatchOutcome.SKIPPED, trip_id, excluded=excluded)

            trip.offered_vehicle_id = vehicle.id
            trip.estimate = estimate.price
            trip.pickup_distance_km = distance_km
            try:
                await self.notifier.offer_trip(vehicle, trip, estimate.price)
            except Exception as exc:
                logger.warning(
                    "Offer for trip %s could not reach vehicle %s: %s",
                    trip_id,
                    vehicle.id,
                    exc,
                )
                excluded = excluded | {vehicle.id}
                continue

            current = await self.trips.get(trip_id)
            if (
                current.status is not TripStatus.PENDING
                or current.offered_vehicle_id != vehicle.id
            ):
                logger.info(
                    "Trip %s changed while offering to vehicle %s; offer dropped",
                    trip_id,
                    vehicle.id,
                )
                self.offers.pop(trip_id)
                return DispatchResult(DispatchOutcome.SKIPPED, trip_id, excluded=excluded)

            offer = Offer(trip_id, vehicle.id, excluded, estimate.price)
            self.offers.put(offer)
            if self.offer_timeout_seconds:
                offer.timeout_task = asyncio.create_task(
                    self._expire(trip_id, vehicle.id, self.offer_timeout_seconds)
                )

            logger.info(
                "Trip %s offered to vehicle %s (%.2f km away, estimate %d)",
                trip_id,
                vehicle.id,
                distance_km,
                estimate.price,
            )
            self.bus.publish(
                VehicleAssigned(
                    trip_id=trip_id,
                    vehicle_id=vehicle.id,
                    estimate=estimate.price,
                    pickup_distance_km=round(distance_km, 3),
                )
            )
            return DispatchResult(
                DispatchOutcome.OFFERED,
                trip_id,
                vehicle_id=vehicle.id,
                estimate=estimate.price,
                distance_km=distance_km,
                excluded=excluded,
            )

        self.offers.pop(trip_id)
        await self.trips.transition(
            trip_id, {TripStatus.PENDING}, TripStatus.PENDING, offered_vehicle_id=None
        )
        logger.info(
            "No eligible vehicle for trip %s (%d excluded)", trip_id, len(excluded)
        )
        self.bus.publish(
            NoVehicleAvailable(trip_id=trip_id, excluded=tuple(sorted(excluded)))
        )
        return DispatchResult(DispatchOutcome.NO_VEHICLE, trip_id, excluded=excluded)

    async def decline(
        self, trip_id: int, vehicle_id: int, timed_out: bool = False
    ) -> DispatchResult:
        """The offered vehicle passed; re-dispatch excluding it."""
        offer = self.offers.get(trip_id)
        if offer is not None and offer.vehicle_id == vehicle_id:
            excluded = offer.excluded | {vehicle_id}
        else:
            trip = await self.trips.get(trip_id)
            if trip.offered_vehicle_id != vehicle_id or trip.status is not TripStatus.PENDING:
                raise StateConflict(trip_id, trip.status, "decline")
            excluded = frozenset({vehicle_id})

        # Vehicle-less placeholder: no accept succeeds until the next offer lands.
        self.offers.put(Offer(trip_id, None, excluded, None))
        await self.trips.transition(
            trip_id, {TripStatus.PENDING}, TripStatus.PENDING, offered_vehicle_id=None
        )
        self.bus.publish(
            OfferDeclined(trip_id=trip_id, vehicle_id=vehicle_id, timed_out=timed_out)
        )
        return await self.dispatch(trip_id, excluded)

    async def accept(self, trip_id: int, vehicle_id: int) -> Trip:
        """Finalize the offer; raises ``StateConflict`` if someone else won."""
        offer = self.offers.get(trip_id)
        if offer is not None and offer.vehicle_id != vehicle_id:
            trip = await self.trips.get(trip_id)
            raise StateConflict(trip_id, trip.status, "accept")

        trip = await self.lifecycle.accept(trip_id, vehicle_id)
        self.offers.pop(trip_id)
        return trip

    # ── Internals ─────────────────────────────────────────────────────

    async def _expire(self, trip_id: int, vehicle_id: int, delay: float) -> None:
        await asyncio.sleep(delay)
        offer = self.offers.get(trip_id)
        if offer is None or offer.vehicle_id != vehicle_id:
            return
        logger.info("Offer of trip %s to vehicle %s timed out", trip_id, vehicle_id)
        try:
            await self.decline(trip_id, vehicle_id, timed_out=True)
        except Exception:
            logger.exception("Re-dispatch after offer timeout failed for trip %s", trip_id)

    async def _on_trip_closed(self, event: TripEvent) -> None:
        self.offers.pop(event.trip_id)
