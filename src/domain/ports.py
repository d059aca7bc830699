"""
Collaborator interfaces the core depends on.

The domain services only talk to these abstractions; the SQLAlchemy,
Redis and HTTP adapters under ``src.infrastructure`` implement them, and
the tests swap in in-memory fakes.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import AsyncIterator, Iterable, Optional

from .entities import GeoPoint, PathPoint, Trip, Vehicle
from .enums import TripStatus, VehicleClass


@dataclass(frozen=True)
class RoadMetrics:
    distance_km: float
    duration_sec: int
    traffic_duration_sec: int
    traffic_factor: float
    source: str = "provider"


class TripStore(ABC):
    @abstractmethod
    async def create(self, trip: Trip) -> Trip: ...

    @abstractmethod
    async def get(self, trip_id: int) -> Trip:
        """Return the trip with its path; raise ``TripNotFound``."""

    @abstractmethod
    async def update(self, trip_id: int, **changes) -> None: ...

    @abstractmethod
    async def transition(
        self,
        trip_id: int,
        expected: Iterable[TripStatus],
        new_status: TripStatus,
        **changes,
    ) -> bool:
        """Atomically set *new_status* only if the current status is expected.

        Returns False (and changes nothing) when the status did not match.
        """

    @abstractmethod
    async def append_path_point(self, trip_id: int, point: PathPoint) -> None: ...

    @abstractmethod
    async def active_trip_for_vehicle(self, vehicle_id: int) -> Optional[Trip]: ...

    @abstractmethod
    async def count_recent_demand(
        self, point: GeoPoint, radius_km: float, since: datetime
    ) -> int:
        """Pending / payment-pending trips created since *since* near *point*."""

    @abstractmethod
    async def completed_for_vehicle(self, vehicle_id: int) -> list[Trip]:
        """Completed trips for a vehicle, most recent first."""


class FleetRegistry(ABC):
    @abstractmethod
    async def get(self, vehicle_id: int) -> Vehicle:
        """Raise ``VehicleNotFound`` for unknown ids."""

    @abstractmethod
    async def register(self, vehicle: Vehicle) -> Vehicle: ...

    @abstractmethod
    async def find_eligible(
        self,
        vehicle_class: Optional[VehicleClass] = None,
        exclude: Iterable[int] = (),
    ) -> list[Vehicle]:
        """Available, located vehicles in a stable order."""

    @abstractmethod
    async def available_near(
        self, point: GeoPoint, radius_km: float
    ) -> list[Vehicle]: ...

    @abstractmethod
    async def update_location(
        self, vehicle_id: int, point: GeoPoint, seen_at: datetime
    ) -> None: ...

    @abstractmethod
    async def set_availability(self, vehicle_id: int, available: bool) -> None: ...


class RoutingProvider(ABC):
    @abstractmethod
    async def road_metrics(
        self, origin: GeoPoint, destination: GeoPoint
    ) -> RoadMetrics: ...


class Broadcaster(ABC):
    """Fan-out of JSON payloads to named channels."""

    @abstractmethod
    async def publish(self, channel: str, payload: dict) -> None: ...

    @abstractmethod
    def subscribe(self, channel: str) -> AsyncIterator[dict]: ...


class Notifier(ABC):
    """Bots / dashboards that talk to riders and drivers."""

    @abstractmethod
    async def offer_trip(self, vehicle: Vehicle, trip: Trip, estimate: int) -> None:
        """Present an accept/decline prompt; raise if it cannot be delivered."""

    @abstractmethod
    async def notify_rider(self, trip: Trip, message: str) -> None: ...

    @abstractmethod
    async def notify_vehicle(self, vehicle_id: int, message: str) -> None: ...


# ── Channel naming ────────────────────────────────────────────────────


def vehicle_channel(vehicle_id: int) -> str:
    return f"vehicle:{vehicle_id}:location"


def trip_location_channel(trip_id: int) -> str:
    return f"trip:{trip_id}:vehicle-location"


def trip_events_channel(trip_id: int) -> str:
    return f"trip:{trip_id}:events"
