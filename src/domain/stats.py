"""Per-vehicle earnings / distance summary recomputed from completed trips."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, Optional

from .distance import path_length_km
from .entities import GeoPoint, Trip
from .enums import PaymentMethod


@dataclass(frozen=True)
class LastTrip:
    trip_id: int
    created_at: Optional[datetime]
    picked_at: Optional[datetime]
    finished_at: Optional[datetime]
    duration_sec: int
    distance_m: int
    amount: int
    payment_method: PaymentMethod
    pickup: GeoPoint
    destination: GeoPoint


@dataclass(frozen=True)
class VehicleStats:
    total_trips: int = 0
    total_distance_m: int = 0
    total_earnings: int = 0
    cash_count: int = 0
    online_count: int = 0
    last_trip: Optional[LastTrip] = None


def _amount(trip: Trip) -> float:
    if trip.fare is not None:
        return trip.fare.price
    return trip.estimate or 0


def _distance_m(trip: Trip) -> float:
    if trip.fare is not None:
        return trip.fare.distance_km * 1000
    return path_length_km(trip.path) * 1000


def _duration_sec(trip: Trip) -> int:
    if trip.fare is not None:
        return trip.fare.duration_sec
    if len(trip.path) >= 2:
        span = trip.path[-1].recorded_at - trip.path[0].recorded_at
        return max(0, round(span.total_seconds()))
    return 0


def summarize_vehicle_trips(trips: Iterable[Trip]) -> VehicleStats:
    """*trips* are completed trips, most recent first."""
    trips = list(trips)
    if not trips:
        return VehicleStats()

    total_distance = 0.0
    total_earnings = 0.0
    cash = online = 0
    for trip in trips:
        total_distance += _distance_m(trip)
        total_earnings += _amount(trip)
        if trip.payment_method is PaymentMethod.CASH:
            cash += 1
        elif trip.payment_method is PaymentMethod.ONLINE:
            online += 1

    last = trips[0]
    return VehicleStats(
        total_trips=len(trips),
        total_distance_m=round(total_distance),
        total_earnings=round(total_earnings),
        cash_count=cash,
        online_count=online,
        last_trip=LastTrip(
            trip_id=last.id,
            created_at=last.created_at,
            picked_at=last.picked_at,
            finished_at=last.completed_at or last.updated_at,
            duration_sec=_duration_sec(last),
            distance_m=round(_distance_m(last)),
            amount=round(_amount(last)),
            payment_method=last.payment_method,
            pickup=last.pickup,
            destination=last.destination,
        ),
    )
