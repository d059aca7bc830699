"""
Fare Engine
===========

Formula
-------
    raw     = base_fare + per_km x trip_km + pickup_per_km x pickup_km
    price   = round( max(min_charge, raw) x max(1, traffic) x max(1, surge) )

* No free-distance allowance: every km contributes.
* ``min_charge`` floors the pre-multiplier subtotal, not the final price.
* Rounding is half-up to a whole currency unit.

Final fare at completion
------------------------
* distance  = captured breadcrumb length (>= 2 points), otherwise the
  straight line inflated by ``DETOUR_FACTOR`` for road geometry;
* traffic   = max(1, actual_duration / expected_duration) where the
  expected duration comes from the routing provider (floor 60 s);
* surge     = local demand/supply multiplier at completion time;
* optional waiting fee for the arrival -> pickup gap.

Complexity: O(1) per price, O(n) in path length for the final fare.
"""

from __future__ import annotations

import math
from collections import defaultdict
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Iterable, Mapping, Optional

from .distance import haversine_km, path_length_km
from .entities import FareSnapshot, GeoPoint, Trip, Vehicle
from .enums import VehicleClass
from .ports import RoutingProvider

DETOUR_FACTOR = 1.25
ACTUAL_SPEED_FALLBACK_KMH = 30.0
MIN_EXPECTED_DURATION_SEC = 60


@dataclass(frozen=True)
class RateCard:
    base_fare: float = 0.0
    per_km: float = 0.0
    min_charge: float = 0.0
    pickup_per_km: float = 0.0


DEFAULT_RATE_TABLE: dict[VehicleClass, RateCard] = {
    VehicleClass.NORMAL: RateCard(base_fare=0, per_km=7, min_charge=30),
    VehicleClass.COMFORT: RateCard(base_fare=0, per_km=8, min_charge=30),
    VehicleClass.LUXURY: RateCard(base_fare=0, per_km=12, min_charge=45),
    VehicleClass.XL: RateCard(base_fare=0, per_km=10, min_charge=39),
}


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def _sanitize(value, fallback: float, *, allow_zero: bool = True) -> float:
    try:
        number = float(value)
    except (TypeError, ValueError):
        return fallback
    if not math.isfinite(number):
        return fallback
    if number < 0 or (number == 0 and not allow_zero):
        return fallback
    return number


def resolve_rate(
    vehicle_class: Optional[VehicleClass],
    override: Optional[Mapping] = None,
    pickup_per_km: float = 0.0,
) -> RateCard:
    """Class defaults merged with a per-vehicle override, sanitised.

    ``per_km`` must stay strictly positive so long trips never collapse to
    the flat minimum.
    """
    default = replace(
        DEFAULT_RATE_TABLE.get(vehicle_class or VehicleClass.NORMAL)
        or DEFAULT_RATE_TABLE[VehicleClass.NORMAL],
        pickup_per_km=pickup_per_km,
    )
    if not override:
        return default
    return RateCard(
        base_fare=_sanitize(override.get("base_fare"), default.base_fare),
        per_km=_sanitize(override.get("per_km"), default.per_km, allow_zero=False),
        min_charge=_sanitize(override.get("min_charge"), default.min_charge),
        pickup_per_km=_sanitize(override.get("pickup_per_km"), default.pickup_per_km),
    )


def price_with_rate(
    trip_km: float,
    rate: RateCard,
    pickup_km: float = 0.0,
    traffic_factor: float = 1.0,
    surge: float = 1.0,
) -> int:
    distance_cost = rate.per_km * max(0.0, trip_km)
    pickup_fee = rate.pickup_per_km * max(0.0, pickup_km)

    raw = rate.base_fare + distance_cost + pickup_fee
    with_minimum = max(rate.min_charge, raw)
    adjusted = with_minimum * max(1.0, traffic_factor) * max(1.0, surge)
    return max(0, _round_half_up(adjusted))


# ── Results ───────────────────────────────────────────────────────────


@dataclass(frozen=True)
class FareEstimate:
    price: int
    distance_km: float
    pickup_km: float
    traffic_factor: float
    surge: float


@dataclass(frozen=True)
class VehicleQuote:
    vehicle_class: VehicleClass
    price: int
    distance_km: float
    vehicle_ids: tuple[int, ...]
    vehicle_count: int


# ── Engine facade ─────────────────────────────────────────────────────


class FareEngine:
    """High-level API used by dispatch, completion and the quote endpoint."""

    def __init__(
        self,
        routing: RoutingProvider,
        surge,
        pickup_per_km: float = 0.0,
        wait_per_min: float = 0.0,
        bill_pickup_distance: bool = False,
        fallback_speed_kmh: float = 35.0,
    ):
        self.routing = routing
        self.surge = surge
        self.pickup_per_km = pickup_per_km
        self.wait_per_min = wait_per_min
        self.bill_pickup_distance = bill_pickup_distance
        self.fallback_speed_kmh = fallback_speed_kmh

    def rate_for(
        self,
        vehicle_class: Optional[VehicleClass],
        override: Optional[Mapping] = None,
    ) -> RateCard:
        return resolve_rate(vehicle_class, override, self.pickup_per_km)

    async def estimate(
        self,
        pickup: GeoPoint,
        destination: GeoPoint,
        vehicle_class: Optional[VehicleClass] = None,
        vehicle_location: Optional[GeoPoint] = None,
        rate_override: Optional[Mapping] = None,
    ) -> FareEstimate:
        """Price presented with an offer: road distance, pickup leg, surge."""
        metrics = await self.routing.road_metrics(pickup, destination)
        pickup_km = (
            haversine_km(
                vehicle_location.lat, vehicle_location.lng, pickup.lat, pickup.lng
            )
            if vehicle_location
            else 0.0
        )
        surge = await self.surge.surge_near(pickup)
        rate = self.rate_for(vehicle_class, rate_override)
        price = price_with_rate(
            metrics.distance_km,
            rate,
            pickup_km=pickup_km,
            traffic_factor=metrics.traffic_factor,
            surge=surge,
        )
        return FareEstimate(
            price=price,
            distance_km=metrics.distance_km,
            pickup_km=pickup_km,
            traffic_factor=metrics.traffic_factor,
            surge=surge,
        )

    async def final_fare(
        self,
        trip: Trip,
        completed_at: datetime,
        surge: Optional[float] = None,
    ) -> FareSnapshot:
        """Deterministic for the same stored path, timestamps and surge."""
        if len(trip.path) >= 2:
            trip_km = path_length_km(trip.path)
        else:
            trip_km = DETOUR_FACTOR * haversine_km(
                trip.pickup.lat,
                trip.pickup.lng,
                trip.destination.lat,
                trip.destination.lng,
            )

        started = trip.ride_started_at
        if started is not None and completed_at >= started:
            actual_sec = max(
                1, _round_half_up((completed_at - started).total_seconds())
            )
        else:
            actual_sec = max(
                1, _round_half_up(trip_km / ACTUAL_SPEED_FALLBACK_KMH * 3600)
            )

        metrics = await self.routing.road_metrics(trip.pickup, trip.destination)
        expected_sec = max(
            MIN_EXPECTED_DURATION_SEC,
            metrics.traffic_duration_sec
            or _round_half_up(trip_km / self.fallback_speed_kmh * 3600),
        )
        traffic_factor = max(1.0, actual_sec / expected_sec)

        if surge is None:
            surge = await self.surge.surge_near(trip.pickup, as_of=completed_at)

        pickup_km = 0.0
        if self.bill_pickup_distance:
            pickup_km = trip.pickup_distance_km or 0.0
        price = price_with_rate(
            trip_km,
            self.rate_for(trip.vehicle_class),
            pickup_km=pickup_km,
            traffic_factor=traffic_factor,
            surge=surge,
        )

        waiting_fee = 0
        if self.wait_per_min > 0 and trip.arrived_at and trip.picked_at:
            waited_sec = max(
                0, _round_half_up((trip.picked_at - trip.arrived_at).total_seconds())
            )
            waiting_fee = max(0, _round_half_up(waited_sec / 60 * self.wait_per_min))

        return FareSnapshot(
            price=price + waiting_fee,
            distance_km=round(trip_km, 3),
            duration_sec=actual_sec,
            traffic_factor=round(traffic_factor, 4),
            surge=surge,
            expected_duration_sec=expected_sec,
            waiting_fee=waiting_fee,
        )

    async def quote_vehicle_classes(
        self,
        pickup: GeoPoint,
        destination: GeoPoint,
        vehicles: Iterable[Vehicle],
    ) -> list[VehicleQuote]:
        """Cheapest price per vehicle class among the given nearby vehicles."""
        metrics = await self.routing.road_metrics(pickup, destination)
        surge = await self.surge.surge_near(pickup)

        by_class: dict[VehicleClass, list[Vehicle]] = defaultdict(list)
        for vehicle in vehicles:
            by_class[vehicle.vehicle_class].append(vehicle)

        quotes: list[VehicleQuote] = []
        for vehicle_class, members in by_class.items():
            best_price: Optional[int] = None
            best_ids: list[int] = []
            for vehicle in members:
                rate = self.rate_for(vehicle_class, vehicle.rate_override)
                pickup_km = (
                    haversine_km(
                        vehicle.location.lat,
                        vehicle.location.lng,
                        pickup.lat,
                        pickup.lng,
                    )
                    if vehicle.location
                    else 0.0
                )
                price = price_with_rate(
                    metrics.distance_km,
                    rate,
                    pickup_km=pickup_km,
                    traffic_factor=metrics.traffic_factor,
                    surge=surge,
                )
                if best_price is None or price < best_price:
                    best_price, best_ids = price, [vehicle.id]
                elif price == best_price:
                    best_ids.append(vehicle.id)

            if best_price is None:
                continue
            quotes.append(
                VehicleQuote(
                    vehicle_class=vehicle_class,
                    price=best_price,
                    distance_km=metrics.distance_km,
                    vehicle_ids=tuple(best_ids),
                    vehicle_count=len(members),
                )
            )

        quotes.sort(key=lambda q: q.price)
        return quotes
