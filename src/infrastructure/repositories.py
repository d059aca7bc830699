"""
Repository Pattern -- SQLAlchemy implementations of the domain stores.

Each repository receives the ``async_sessionmaker`` and opens one short
unit-of-work per operation, so a repository can be shared by the HTTP
handlers, the location relay and background tasks alike.

Concurrency
-----------
``SqlTripStore.transition`` is the only way a status changes.  It issues a
single ``UPDATE ... WHERE id = :id AND status IN (:expected)`` and checks the
affected row count, so two racing accepts (or an accept racing a cancel)
resolve to exactly one winner without holding row locks across awaits.

Radius queries (surge demand, quotes) first narrow rows by H3 cell
(B-Tree index lookup) and only then apply the exact haversine check.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Iterable, Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from .models import TripActivityModel, TripModel, TripPathPointModel, VehicleModel
from src.domain.distance import cells_within_radius, haversine_km, point_h3_cell
from src.domain.entities import (
    FareSnapshot,
    GeoPoint,
    PathPoint,
    Trip,
    Vehicle,
    utcnow,
)
from src.domain.enums import ACTIVE_STATUSES, TripStatus, VehicleClass
from src.domain.errors import TripNotFound, VehicleNotFound
from src.domain.ports import FleetRegistry, TripStore

logger = logging.getLogger(__name__)

DEMAND_STATUSES = (TripStatus.PENDING, TripStatus.PAYMENT_PENDING)


def _aware(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite hands back naive datetimes; everything stored is UTC."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


# ── Row <-> entity mapping ────────────────────────────────────────────


def _fare_from_row(row: TripModel) -> Optional[FareSnapshot]:
    if row.final_amount is None:
        return None
    return FareSnapshot(
        price=row.final_amount,
        distance_km=row.final_distance_km or 0.0,
        duration_sec=row.final_duration_sec or 0,
        traffic_factor=row.final_traffic_factor or 1.0,
        surge=row.final_surge or 1.0,
        expected_duration_sec=row.final_expected_duration_sec or 0,
        waiting_fee=row.final_waiting_fee or 0,
    )


def _fare_columns(fare: Optional[FareSnapshot]) -> dict:
    if fare is None:
        return {
            "final_amount": None,
            "final_distance_km": None,
            "final_duration_sec": None,
            "final_expected_duration_sec": None,
            "final_traffic_factor": None,
            "final_surge": None,
            "final_waiting_fee": None,
        }
    return {
        "final_amount": fare.price,
        "final_distance_km": fare.distance_km,
        "final_duration_sec": fare.duration_sec,
        "final_expected_duration_sec": fare.expected_duration_sec,
        "final_traffic_factor": fare.traffic_factor,
        "final_surge": fare.surge,
        "final_waiting_fee": fare.waiting_fee,
    }


def _trip_from_row(row: TripModel, path: list[PathPoint]) -> Trip:
    return Trip(
        id=row.id,
        rider_ref=row.rider_ref,
        pickup=GeoPoint(row.pickup_lat, row.pickup_lng),
        destination=GeoPoint(row.destination_lat, row.destination_lng),
        vehicle_class=row.vehicle_class,
        status=row.status,
        payment_method=row.payment_method,
        payment_status=row.payment_status,
        paid_at=_aware(row.paid_at),
        vehicle_id=row.vehicle_id,
        offered_vehicle_id=row.offered_vehicle_id,
        estimate=row.estimate,
        pickup_distance_km=row.pickup_distance_km,
        created_at=_aware(row.created_at),
        updated_at=_aware(row.updated_at),
        accepted_at=_aware(row.accepted_at),
        arrived_at=_aware(row.arrived_at),
        started_at=_aware(row.started_at),
        picked_at=_aware(row.picked_at),
        completed_at=_aware(row.completed_at),
        cancelled_at=_aware(row.cancelled_at),
        cancelled_by=row.cancelled_by,
        cancellation_reason=row.cancellation_reason,
        cancellation_note=row.cancellation_note,
        path=path,
        fare=_fare_from_row(row),
    )


def _vehicle_from_row(row: VehicleModel) -> Vehicle:
    location = None
    if row.lat is not None and row.lng is not None:
        location = GeoPoint(row.lat, row.lng)
    return Vehicle(
        id=row.id,
        name=row.name,
        vehicle_class=row.vehicle_class,
        location=location,
        is_available=row.is_available,
        last_seen_at=_aware(row.last_seen_at),
        rate_override=row.rate_override,
    )


_TRIP_COLUMNS = frozenset(c.key for c in TripModel.__table__.columns)


def _trip_columns(changes: dict) -> dict:
    """Translate entity-level changes into column values."""
    values = {}
    for key, value in changes.items():
        if key == "fare":
            values.update(_fare_columns(value))
        elif key == "pickup":
            values.update(pickup_lat=value.lat, pickup_lng=value.lng)
        elif key == "destination":
            values.update(destination_lat=value.lat, destination_lng=value.lng)
        elif key in _TRIP_COLUMNS:
            values[key] = value
        else:
            raise ValueError(f"Unknown trip field: {key}")
    values["updated_at"] = utcnow()
    return values


# ── Trips ─────────────────────────────────────────────────────────────


class SqlTripStore(TripStore):
    def __init__(
        self, session_factory: async_sessionmaker[AsyncSession], h3_resolution: int = 7
    ):
        self._sessions = session_factory
        self.h3_resolution = h3_resolution

    async def create(self, trip: Trip) -> Trip:
        row = TripModel(
            rider_ref=trip.rider_ref,
            pickup_lat=trip.pickup.lat,
            pickup_lng=trip.pickup.lng,
            pickup_h3_cell=point_h3_cell(
                trip.pickup.lat, trip.pickup.lng, self.h3_resolution
            ),
            destination_lat=trip.destination.lat,
            destination_lng=trip.destination.lng,
            vehicle_class=trip.vehicle_class,
            status=trip.status,
            payment_method=trip.payment_method,
            payment_status=trip.payment_status,
            estimate=trip.estimate,
            created_at=trip.created_at or utcnow(),
            updated_at=utcnow(),
        )
        async with self._sessions() as session:
            async with session.begin():
                session.add(row)
                await session.flush()
                trip_id = row.id
        return await self.get(trip_id)

    async def get(self, trip_id: int) -> Trip:
        async with self._sessions() as session:
            row = await session.get(TripModel, trip_id)
            if row is None:
                raise TripNotFound(trip_id)
            paths = await self._paths(session, [trip_id])
        return _trip_from_row(row, paths.get(trip_id, []))

    async def update(self, trip_id: int, **changes) -> None:
        async with self._sessions() as session:
            async with session.begin():
                result = await session.execute(
                    update(TripModel)
                    .where(TripModel.id == trip_id)
                    .values(**_trip_columns(changes))
                )
        if result.rowcount == 0:
            raise TripNotFound(trip_id)

    async def transition(
        self,
        trip_id: int,
        expected: Iterable[TripStatus],
        new_status: TripStatus,
        **changes,
    ) -> bool:
        values = _trip_columns(changes)
        values["status"] = new_status
        async with self._sessions() as session:
            async with session.begin():
                result = await session.execute(
                    update(TripModel)
                    .where(
                        TripModel.id == trip_id,
                        TripModel.status.in_(list(expected)),
                    )
                    .values(**values)
                )
        moved = result.rowcount == 1
        if not moved:
            logger.debug(
                "Transition of trip %s to %s rejected", trip_id, new_status.value
            )
        return moved

    async def append_path_point(self, trip_id: int, point: PathPoint) -> None:
        async with self._sessions() as session:
            async with session.begin():
                session.add(
                    TripPathPointModel(
                        trip_id=trip_id,
                        lat=point.lat,
                        lng=point.lng,
                        recorded_at=point.recorded_at,
                    )
                )

    async def active_trip_for_vehicle(self, vehicle_id: int) -> Optional[Trip]:
        async with self._sessions() as session:
            result = await session.execute(
                select(TripModel)
                .where(
                    TripModel.vehicle_id == vehicle_id,
                    TripModel.status.in_(list(ACTIVE_STATUSES)),
                )
                .order_by(TripModel.accepted_at.desc(), TripModel.id.desc())
                .limit(1)
            )
            row = result.scalar_one_or_none()
            if row is None:
                return None
            paths = await self._paths(session, [row.id])
        return _trip_from_row(row, paths.get(row.id, []))

    async def count_recent_demand(
        self, point: GeoPoint, radius_km: float, since: datetime
    ) -> int:
        cells = cells_within_radius(point.lat, point.lng, radius_km, self.h3_resolution)
        async with self._sessions() as session:
            result = await session.execute(
                select(TripModel.pickup_lat, TripModel.pickup_lng).where(
                    TripModel.status.in_(DEMAND_STATUSES),
                    TripModel.created_at >= since,
                    TripModel.pickup_h3_cell.in_(cells),
                )
            )
            rows = result.all()
        return sum(
            1
            for lat, lng in rows
            if haversine_km(point.lat, point.lng, lat, lng) <= radius_km
        )

    async def completed_for_vehicle(self, vehicle_id: int) -> list[Trip]:
        async with self._sessions() as session:
            result = await session.execute(
                select(TripModel)
                .where(
                    TripModel.vehicle_id == vehicle_id,
                    TripModel.status == TripStatus.COMPLETED,
                )
                .order_by(TripModel.completed_at.desc(), TripModel.id.desc())
            )
            rows = list(result.scalars().all())
            paths = await self._paths(session, [row.id for row in rows])
        return [_trip_from_row(row, paths.get(row.id, [])) for row in rows]

    @staticmethod
    async def _paths(
        session: AsyncSession, trip_ids: list[int]
    ) -> dict[int, list[PathPoint]]:
        if not trip_ids:
            return {}
        result = await session.execute(
            select(TripPathPointModel)
            .where(TripPathPointModel.trip_id.in_(trip_ids))
            .order_by(TripPathPointModel.trip_id, TripPathPointModel.id)
        )
        paths: dict[int, list[PathPoint]] = {}
        for row in result.scalars():
            paths.setdefault(row.trip_id, []).append(
                PathPoint(row.lat, row.lng, _aware(row.recorded_at))
            )
        return paths


# ── Vehicles ──────────────────────────────────────────────────────────


class SqlFleetRegistry(FleetRegistry):
    def __init__(
        self, session_factory: async_sessionmaker[AsyncSession], h3_resolution: int = 7
    ):
        self._sessions = session_factory
        self.h3_resolution = h3_resolution

    async def get(self, vehicle_id: int) -> Vehicle:
        async with self._sessions() as session:
            row = await session.get(VehicleModel, vehicle_id)
        if row is None:
            raise VehicleNotFound(vehicle_id)
        return _vehicle_from_row(row)

    async def register(self, vehicle: Vehicle) -> Vehicle:
        row = VehicleModel(
            name=vehicle.name,
            vehicle_class=vehicle.vehicle_class,
            is_available=vehicle.is_available,
            rate_override=vehicle.rate_override,
            last_seen_at=vehicle.last_seen_at,
        )
        if vehicle.location is not None:
            row.lat = vehicle.location.lat
            row.lng = vehicle.location.lng
            row.h3_cell = point_h3_cell(
                vehicle.location.lat, vehicle.location.lng, self.h3_resolution
            )
        async with self._sessions() as session:
            async with session.begin():
                session.add(row)
                await session.flush()
                vehicle_id = row.id
        logger.info("Registered vehicle %s (%s)", vehicle_id, vehicle.vehicle_class.value)
        return await self.get(vehicle_id)

    async def find_eligible(
        self,
        vehicle_class: Optional[VehicleClass] = None,
        exclude: Iterable[int] = (),
    ) -> list[Vehicle]:
        query = select(VehicleModel).where(
            VehicleModel.is_available.is_(True),
            VehicleModel.lat.is_not(None),
            VehicleModel.lng.is_not(None),
        )
        if vehicle_class is not None:
            query = query.where(VehicleModel.vehicle_class == vehicle_class)
        excluded = list(exclude)
        if excluded:
            query = query.where(VehicleModel.id.not_in(excluded))
        async with self._sessions() as session:
            result = await session.execute(query.order_by(VehicleModel.id))
            return [_vehicle_from_row(row) for row in result.scalars()]

    async def available_near(self, point: GeoPoint, radius_km: float) -> list[Vehicle]:
        cells = cells_within_radius(point.lat, point.lng, radius_km, self.h3_resolution)
        async with self._sessions() as session:
            result = await session.execute(
                select(VehicleModel)
                .where(
                    VehicleModel.is_available.is_(True),
                    VehicleModel.h3_cell.in_(cells),
                )
                .order_by(VehicleModel.id)
            )
            rows = list(result.scalars())
        return [
            _vehicle_from_row(row)
            for row in rows
            if haversine_km(point.lat, point.lng, row.lat, row.lng) <= radius_km
        ]

    async def update_location(
        self, vehicle_id: int, point: GeoPoint, seen_at: datetime
    ) -> None:
        async with self._sessions() as session:
            async with session.begin():
                result = await session.execute(
                    update(VehicleModel)
                    .where(VehicleModel.id == vehicle_id)
                    .values(
                        lat=point.lat,
                        lng=point.lng,
                        h3_cell=point_h3_cell(point.lat, point.lng, self.h3_resolution),
                        last_seen_at=seen_at,
                    )
                )
        if result.rowcount == 0:
            raise VehicleNotFound(vehicle_id)

    async def set_availability(self, vehicle_id: int, available: bool) -> None:
        async with self._sessions() as session:
            async with session.begin():
                result = await session.execute(
                    update(VehicleModel)
                    .where(VehicleModel.id == vehicle_id)
                    .values(is_available=available)
                )
        if result.rowcount == 0:
            raise VehicleNotFound(vehicle_id)


# ── Activity feed ─────────────────────────────────────────────────────


@dataclass(frozen=True)
class ActivityEntry:
    trip_id: int
    kind: str
    actor_type: str
    actor_id: Optional[str]
    message: Optional[str]
    meta: Optional[dict]
    created_at: Optional[datetime]


class ActivityRepository:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._sessions = session_factory

    async def record(
        self,
        trip_id: int,
        kind: str,
        actor_type: str = "system",
        actor_id: Optional[str] = None,
        message: Optional[str] = None,
        meta: Optional[dict] = None,
    ) -> None:
        async with self._sessions() as session:
            async with session.begin():
                session.add(
                    TripActivityModel(
                        trip_id=trip_id,
                        kind=kind,
                        actor_type=actor_type,
                        actor_id=actor_id,
                        message=message,
                        meta=meta,
                        created_at=utcnow(),
                    )
                )

    async def for_trip(self, trip_id: int) -> list[ActivityEntry]:
        async with self._sessions() as session:
            result = await session.execute(
                select(TripActivityModel)
                .where(TripActivityModel.trip_id == trip_id)
                .order_by(TripActivityModel.id)
            )
            return [
                ActivityEntry(
                    trip_id=row.trip_id,
                    kind=row.kind,
                    actor_type=row.actor_type,
                    actor_id=row.actor_id,
                    message=row.message,
                    meta=row.meta,
                    created_at=_aware(row.created_at),
                )
                for row in result.scalars()
            ]
