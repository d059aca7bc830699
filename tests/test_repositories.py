"""
SQL repository tests against a file-backed SQLite database (aiosqlite).

They cover the column mapping and the compare-and-set ``transition`` the
domain relies on for double-accept / double-complete protection.
"""

from datetime import timedelta

import pytest

from src.domain.entities import FareSnapshot, GeoPoint, PathPoint, Trip, Vehicle, utcnow
from src.domain.enums import (
    CancelledBy,
    PaymentMethod,
    TripStatus,
    VehicleClass,
)
from src.domain.errors import TripNotFound, VehicleNotFound
from src.infrastructure.repositories import (
    ActivityRepository,
    SqlFleetRegistry,
    SqlTripStore,
)
from tests.fakes import offset_point

CBD = GeoPoint(-33.9249, 18.4241)
WATERFRONT = GeoPoint(-33.9057, 18.4197)
JOBURG = GeoPoint(-26.2041, 28.0473)
# Far from an icosahedron face centre, where H3 cells are most distorted.
SUBANTARCTIC = GeoPoint(-64.1666, -171.9021)


@pytest.fixture
def trips(session_factory):
    return SqlTripStore(session_factory)


@pytest.fixture
def fleet(session_factory):
    return SqlFleetRegistry(session_factory)


@pytest.fixture
def activities(session_factory):
    return ActivityRepository(session_factory)


async def _trip(trips, pickup=CBD, **kwargs) -> Trip:
    values = dict(pickup=pickup, destination=WATERFRONT, created_at=utcnow())
    values.update(kwargs)
    return await trips.create(Trip(**values))


class TestSqlTripStore:
    @pytest.mark.asyncio
    async def test_create_and_get(self, trips):
        created = await _trip(
            trips,
            rider_ref="rider-1",
            vehicle_class=VehicleClass.COMFORT,
            payment_method=PaymentMethod.ONLINE,
            status=TripStatus.PAYMENT_PENDING,
        )
        loaded = await trips.get(created.id)

        assert loaded.id is not None
        assert loaded.rider_ref == "rider-1"
        assert loaded.pickup == CBD
        assert loaded.destination == WATERFRONT
        assert loaded.vehicle_class is VehicleClass.COMFORT
        assert loaded.status is TripStatus.PAYMENT_PENDING
        assert loaded.payment_method is PaymentMethod.ONLINE
        assert loaded.created_at.tzinfo is not None
        assert loaded.path == []
        assert loaded.fare is None

    @pytest.mark.asyncio
    async def test_unknown_trip(self, trips):
        with pytest.raises(TripNotFound):
            await trips.get(42)
        with pytest.raises(TripNotFound):
            await trips.update(42, estimate=10)

    @pytest.mark.asyncio
    async def test_update_rejects_unknown_fields(self, trips):
        trip = await _trip(trips)
        with pytest.raises(ValueError):
            await trips.update(trip.id, colour="red")

    @pytest.mark.asyncio
    async def test_transition_is_compare_and_set(self, trips):
        trip = await _trip(trips)

        assert await trips.transition(
            trip.id, {TripStatus.PENDING}, TripStatus.ACCEPTED, vehicle_id=3
        )
        assert not await trips.transition(
            trip.id, {TripStatus.PENDING}, TripStatus.ACCEPTED, vehicle_id=4
        )

        loaded = await trips.get(trip.id)
        assert loaded.status is TripStatus.ACCEPTED
        assert loaded.vehicle_id == 3

    @pytest.mark.asyncio
    async def test_transition_of_missing_trip_is_false(self, trips):
        assert not await trips.transition(99, {TripStatus.PENDING}, TripStatus.ACCEPTED)

    @pytest.mark.asyncio
    async def test_fare_and_cancellation_columns_round_trip(self, trips):
        trip = await _trip(trips)
        fare = FareSnapshot(
            price=87,
            distance_km=12.496,
            duration_sec=600,
            traffic_factor=1.0,
            surge=1.2,
            expected_duration_sec=900,
            waiting_fee=4,
        )
        now = utcnow()
        await trips.transition(
            trip.id, {TripStatus.PENDING}, TripStatus.COMPLETED, fare=fare, completed_at=now
        )
        loaded = await trips.get(trip.id)
        assert loaded.fare == fare
        assert loaded.completed_at == now

        other = await _trip(trips)
        await trips.transition(
            other.id,
            {TripStatus.PENDING},
            TripStatus.CANCELLED,
            cancelled_by=CancelledBy.DRIVER,
            cancellation_reason="rider_no_show",
            cancellation_note="gone",
        )
        loaded = await trips.get(other.id)
        assert loaded.cancelled_by is CancelledBy.DRIVER
        assert loaded.cancellation_reason == "rider_no_show"

    @pytest.mark.asyncio
    async def test_path_points_keep_order(self, trips):
        trip = await _trip(trips)
        start = utcnow()
        for i in range(3):
            await trips.append_path_point(
                trip.id, PathPoint(-33.92 + i * 0.001, 18.42, start + timedelta(seconds=3 * i))
            )
        path = (await trips.get(trip.id)).path
        assert [p.lat for p in path] == pytest.approx([-33.92, -33.919, -33.918])
        assert path[0].recorded_at.tzinfo is not None

    @pytest.mark.asyncio
    async def test_active_trip_for_vehicle(self, trips):
        pending = await _trip(trips)
        await trips.update(pending.id, vehicle_id=7)
        assert await trips.active_trip_for_vehicle(7) is None

        active = await _trip(trips)
        await trips.transition(
            active.id, {TripStatus.PENDING}, TripStatus.ACCEPTED, vehicle_id=7, accepted_at=utcnow()
        )
        found = await trips.active_trip_for_vehicle(7)
        assert found.id == active.id

    @pytest.mark.asyncio
    async def test_count_recent_demand(self, trips):
        await _trip(trips)
        await _trip(trips, status=TripStatus.PAYMENT_PENDING)
        await _trip(trips, status=TripStatus.ACCEPTED)
        await _trip(trips, created_at=utcnow() - timedelta(hours=1))
        await _trip(trips, pickup=JOBURG)

        since = utcnow() - timedelta(minutes=15)
        assert await trips.count_recent_demand(CBD, 8.0, since) == 2

    @pytest.mark.asyncio
    @pytest.mark.parametrize("centre", [CBD, SUBANTARCTIC])
    async def test_count_recent_demand_at_the_radius_edge(self, trips, centre):
        for bearing in range(0, 360, 30):
            await _trip(trips, pickup=offset_point(centre, 7.992, bearing))
        await _trip(trips, pickup=offset_point(centre, 8.05, 45))

        since = utcnow() - timedelta(minutes=15)
        assert await trips.count_recent_demand(centre, 8.0, since) == 12

    @pytest.mark.asyncio
    async def test_completed_for_vehicle_most_recent_first(self, trips):
        now = utcnow()
        ids = []
        for minutes_ago in (30, 5, 60):
            trip = await _trip(trips)
            await trips.transition(
                trip.id,
                {TripStatus.PENDING},
                TripStatus.COMPLETED,
                vehicle_id=2,
                completed_at=now - timedelta(minutes=minutes_ago),
            )
            ids.append(trip.id)

        done = await trips.completed_for_vehicle(2)
        assert [t.id for t in done] == [ids[1], ids[0], ids[2]]


class TestSqlFleetRegistry:
    async def _add(self, fleet, location, vehicle_class=VehicleClass.NORMAL, available=True):
        return await fleet.register(
            Vehicle(vehicle_class=vehicle_class, location=location, is_available=available)
        )

    @pytest.mark.asyncio
    async def test_register_and_get(self, fleet):
        vehicle = await fleet.register(
            Vehicle(
                name="CA 123",
                vehicle_class=VehicleClass.LUXURY,
                location=CBD,
                is_available=True,
                rate_override={"per_km": 11},
            )
        )
        loaded = await fleet.get(vehicle.id)
        assert loaded.name == "CA 123"
        assert loaded.vehicle_class is VehicleClass.LUXURY
        assert loaded.location == CBD
        assert loaded.rate_override == {"per_km": 11}

    @pytest.mark.asyncio
    async def test_unknown_vehicle(self, fleet):
        with pytest.raises(VehicleNotFound):
            await fleet.get(5)
        with pytest.raises(VehicleNotFound):
            await fleet.update_location(5, CBD, utcnow())
        with pytest.raises(VehicleNotFound):
            await fleet.set_availability(5, True)

    @pytest.mark.asyncio
    async def test_find_eligible_filters(self, fleet):
        a = await self._add(fleet, CBD)
        await self._add(fleet, CBD, available=False)
        await self._add(fleet, None)
        lux = await self._add(fleet, CBD, VehicleClass.LUXURY)
        d = await self._add(fleet, WATERFRONT)

        assert [v.id for v in await fleet.find_eligible()] == [a.id, lux.id, d.id]
        assert [v.id for v in await fleet.find_eligible(VehicleClass.LUXURY)] == [lux.id]
        assert [v.id for v in await fleet.find_eligible(exclude={a.id, lux.id})] == [d.id]

    @pytest.mark.asyncio
    async def test_available_near(self, fleet):
        near = await self._add(fleet, WATERFRONT)
        await self._add(fleet, JOBURG)
        await self._add(fleet, CBD, available=False)

        found = await fleet.available_near(CBD, 8.0)
        assert [v.id for v in found] == [near.id]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("centre", [CBD, SUBANTARCTIC])
    async def test_available_near_includes_vehicles_at_the_radius_edge(self, fleet, centre):
        edge = [
            await self._add(fleet, offset_point(centre, 7.992, bearing))
            for bearing in range(0, 360, 30)
        ]
        await self._add(fleet, offset_point(centre, 8.05, 45))

        found = await fleet.available_near(centre, 8.0)
        assert [v.id for v in found] == [v.id for v in edge]

    @pytest.mark.asyncio
    async def test_location_and_availability_updates(self, fleet):
        vehicle = await self._add(fleet, None, available=False)
        seen = utcnow()
        await fleet.update_location(vehicle.id, WATERFRONT, seen)
        await fleet.set_availability(vehicle.id, True)

        loaded = await fleet.get(vehicle.id)
        assert loaded.location == WATERFRONT
        assert loaded.last_seen_at == seen
        assert loaded.is_available
        assert [v.id for v in await fleet.available_near(WATERFRONT, 1.0)] == [vehicle.id]


class TestActivityRepository:
    @pytest.mark.asyncio
    async def test_record_and_list_in_order(self, trips, activities):
        trip = await _trip(trips)
        await activities.record(trip.id, "request", actor_type="rider")
        await activities.record(
            trip.id, "accepted", actor_type="driver", actor_id="3", meta={"vehicle_id": 3}
        )

        feed = await activities.for_trip(trip.id)
        assert [e.kind for e in feed] == ["request", "accepted"]
        assert feed[1].actor_id == "3"
        assert feed[1].meta == {"vehicle_id": 3}
        assert feed[0].created_at is not None
