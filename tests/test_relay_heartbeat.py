"""
Location relay and heartbeat rebroadcast tests.

Heartbeat timing runs on a short real interval; staleness is driven by a
fake monotonic clock so nothing waits two minutes.
"""

import asyncio
import math

import pytest

from src.domain.entities import GeoPoint, Trip
from src.domain.events import VehicleArrived
from src.domain.ports import trip_location_channel, vehicle_channel
from src.domain.relay import parse_fix
from src.workers.heartbeat import HeartbeatRegistry
from tests.fakes import EventLog, FakeClock

PICKUP = GeoPoint(-33.9249, 18.4241)
DESTINATION = GeoPoint(-33.9057, 18.4197)


async def _accepted_trip(services, vehicle_id: int) -> Trip:
    trip = await services.lifecycle.request(Trip(pickup=PICKUP, destination=DESTINATION))
    return await services.lifecycle.accept(trip.id, vehicle_id)


def _heartbeat_tasks(vehicle_id: int) -> list:
    return [
        t
        for t in asyncio.all_tasks()
        if t.get_name() == f"heartbeat-{vehicle_id}" and not t.done()
    ]


class TestParseFix:
    def test_numeric_fix(self):
        assert parse_fix(-33.9, 18) == GeoPoint(-33.9, 18.0)

    @pytest.mark.parametrize(
        "lat, lng",
        [
            ("-33.9", 18.4),
            (None, 18.4),
            (-33.9, math.nan),
            (math.inf, 18.4),
            (True, 18.4),
            (91.0, 18.4),
            (-33.9, 181.0),
        ],
    )
    def test_malformed_fix(self, lat, lng):
        assert parse_fix(lat, lng) is None


class TestLocationRelay:
    @pytest.mark.asyncio
    async def test_fix_goes_to_vehicle_channel_only_without_trip(self, services):
        vehicle = services.fleet.add(-33.93, 18.42)

        assert await services.relay.ingest(vehicle.id, -33.9301, 18.4201) is True

        published = services.broadcaster.on(vehicle_channel(vehicle.id))
        assert published[0]["lat"] == -33.9301
        assert published[0]["lng"] == 18.4201
        assert all(ch.startswith("vehicle:") for ch, _ in services.broadcaster.published)
        stored = await services.fleet.get(vehicle.id)
        assert stored.location == GeoPoint(-33.9301, 18.4201)
        assert stored.last_seen_at is not None

    @pytest.mark.asyncio
    async def test_fix_reaches_active_trip_channel(self, services):
        vehicle = services.fleet.add(-33.93, 18.42)
        trip = await _accepted_trip(services, vehicle.id)

        await services.relay.ingest(vehicle.id, -33.929, 18.421)

        assert services.broadcaster.on(trip_location_channel(trip.id))[0]["lat"] == -33.929
        assert len((await services.trips.get(trip.id)).path) == 1

    @pytest.mark.asyncio
    async def test_pending_trip_does_not_receive_positions(self, services):
        vehicle = services.fleet.add(-33.93, 18.42)
        trip = await services.lifecycle.request(Trip(pickup=PICKUP, destination=DESTINATION))
        await services.trips.update(trip.id, vehicle_id=vehicle.id)

        await services.relay.ingest(vehicle.id, -33.929, 18.421)

        assert services.broadcaster.on(trip_location_channel(trip.id)) == []

    @pytest.mark.asyncio
    async def test_malformed_fix_is_dropped_silently(self, services):
        vehicle = services.fleet.add(-33.93, 18.42)
        assert await services.relay.ingest(vehicle.id, "north", 18.42) is False
        assert services.broadcaster.published == []
        assert services.heartbeats.get(vehicle.id) is None
        assert not services.heartbeats.is_running(vehicle.id)

    @pytest.mark.asyncio
    async def test_unknown_vehicle_is_dropped(self, services):
        assert await services.relay.ingest(404, -33.93, 18.42) is False
        assert services.broadcaster.published == []

    @pytest.mark.asyncio
    async def test_unknown_vehicles_leave_no_lock_behind(self, services):
        for vehicle_id in range(10_000, 10_200):
            assert await services.relay.ingest(vehicle_id, -33.93, 18.42) is False
        assert services.heartbeats._locks == {}

        vehicle = services.fleet.add(-33.93, 18.42)
        assert await services.relay.ingest(vehicle.id, -33.93, 18.42) is True
        assert list(services.heartbeats._locks) == [vehicle.id]

    @pytest.mark.asyncio
    async def test_bearing_follows_movement(self, services):
        vehicle = services.fleet.add(-33.93, 18.42)
        await services.relay.ingest(vehicle.id, -33.9300, 18.4200)
        await services.relay.ingest(vehicle.id, -33.9290, 18.4200)

        last = services.broadcaster.on(vehicle_channel(vehicle.id))[-1]
        assert last["bearing"] == pytest.approx(0.0, abs=0.1)

    @pytest.mark.asyncio
    async def test_arrival_fires_once_through_the_relay(self, services):
        vehicle = services.fleet.add(-33.93, 18.42)
        trip = await _accepted_trip(services, vehicle.id)
        log = EventLog(services.bus)

        for _ in range(5):
            await services.relay.ingest(vehicle.id, PICKUP.lat + 0.00027, PICKUP.lng)
        await services.bus.drain()

        assert len(log.of_type(VehicleArrived)) == 1
        assert (await services.trips.get(trip.id)).arrived_at is not None

    @pytest.mark.asyncio
    async def test_path_store_outage_does_not_break_relay(self, services):
        vehicle = services.fleet.add(-33.93, 18.42)
        trip = await _accepted_trip(services, vehicle.id)
        services.trips.fail_path_appends = True

        assert await services.relay.ingest(vehicle.id, -33.929, 18.421) is True
        assert services.broadcaster.on(trip_location_channel(trip.id))

    @pytest.mark.asyncio
    async def test_one_ticker_per_vehicle(self, services):
        a = services.fleet.add(-33.93, 18.42)
        b = services.fleet.add(-33.94, 18.43)
        for i in range(5):
            await services.relay.ingest(a.id, -33.93 + i * 0.0001, 18.42)
        await services.relay.ingest(b.id, -33.94, 18.43)

        assert len(_heartbeat_tasks(a.id)) == 1
        assert len(_heartbeat_tasks(b.id)) == 1

    @pytest.mark.asyncio
    async def test_heartbeat_rebroadcasts_last_fix(self, services):
        vehicle = services.fleet.add(-33.93, 18.42)
        await services.relay.ingest(vehicle.id, -33.9301, 18.4201)
        await asyncio.sleep(0.05)

        published = services.broadcaster.on(vehicle_channel(vehicle.id))
        assert len(published) > 1
        assert all(p["lat"] == -33.9301 for p in published)

    @pytest.mark.asyncio
    async def test_offline_stops_heartbeat_and_dispatch_eligibility(self, services):
        vehicle = services.fleet.add(-33.93, 18.42)
        await services.relay.ingest(vehicle.id, -33.93, 18.42)

        await services.relay.go_offline(vehicle.id)
        await asyncio.sleep(0)

        assert not services.heartbeats.is_running(vehicle.id)
        assert (await services.fleet.get(vehicle.id)).is_available is False
        await services.relay.go_online(vehicle.id)
        assert (await services.fleet.get(vehicle.id)).is_available is True

    @pytest.mark.asyncio
    async def test_last_location_prefers_heartbeat_then_registry(self, services):
        vehicle = services.fleet.add(-33.93, 18.42)
        assert await services.relay.last_location(vehicle.id) == GeoPoint(-33.93, 18.42)
        await services.relay.ingest(vehicle.id, -33.91, 18.41)
        assert await services.relay.last_location(vehicle.id) == GeoPoint(-33.91, 18.41)


class TestHeartbeatRegistry:
    def setup_method(self):
        self.clock = FakeClock()
        self.registry = HeartbeatRegistry(interval=0.01, stale_after=120, clock=self.clock)
        self.published = []

    async def _publish(self, vehicle_id, point, bearing):
        self.published.append((vehicle_id, point))

    @pytest.mark.asyncio
    async def test_ensure_running_is_idempotent(self):
        self.registry.record(1, GeoPoint(0, 0))
        assert self.registry.ensure_running(1, self._publish) is True
        assert self.registry.ensure_running(1, self._publish) is False
        assert len(_heartbeat_tasks(1)) == 1
        await self.registry.stop_all()

    @pytest.mark.asyncio
    async def test_no_ticker_without_a_fix(self):
        assert self.registry.ensure_running(1, self._publish) is False

    @pytest.mark.asyncio
    async def test_stops_once_stale(self):
        self.registry.record(1, GeoPoint(0, 0))
        self.registry.ensure_running(1, self._publish)
        await asyncio.sleep(0.05)
        assert self.published

        self.clock.advance(121)
        await asyncio.sleep(0.05)
        count = len(self.published)
        await asyncio.sleep(0.05)

        assert len(self.published) == count
        assert not self.registry.is_running(1)
        assert self.registry.get(1) is None

    @pytest.mark.asyncio
    async def test_fresh_fix_keeps_ticker_alive(self):
        self.registry.record(1, GeoPoint(0, 0))
        self.registry.ensure_running(1, self._publish)
        self.clock.advance(100)
        self.registry.record(1, GeoPoint(0.001, 0))
        self.clock.advance(100)
        await asyncio.sleep(0.05)

        assert self.registry.is_running(1)
        assert self.published[-1] == (1, GeoPoint(0.001, 0))
        await self.registry.stop_all()

    @pytest.mark.asyncio
    async def test_failing_publish_does_not_kill_ticker(self):
        async def boom(vehicle_id, point, bearing):
            raise ConnectionError("broker gone")

        self.registry.record(1, GeoPoint(0, 0))
        self.registry.ensure_running(1, boom)
        await asyncio.sleep(0.05)
        assert self.registry.is_running(1)
        await self.registry.stop_all()

    @pytest.mark.asyncio
    async def test_locks_are_per_vehicle(self):
        assert self.registry.lock_for(1) is self.registry.lock_for(1)
        assert self.registry.lock_for(1) is not self.registry.lock_for(2)

    @pytest.mark.asyncio
    async def test_release_lock_keeps_locks_of_tracked_or_busy_vehicles(self):
        self.registry.lock_for(1)
        self.registry.release_lock(1)
        assert 1 not in self.registry._locks

        self.registry.record(2, GeoPoint(0, 0))
        lock = self.registry.lock_for(2)
        self.registry.release_lock(2)
        assert self.registry.lock_for(2) is lock

        async with self.registry.lock_for(3):
            self.registry.release_lock(3)
            assert 3 in self.registry._locks

    @pytest.mark.asyncio
    async def test_stop_all(self):
        for vid in (1, 2, 3):
            self.registry.record(vid, GeoPoint(0, 0))
            self.registry.ensure_running(vid, self._publish)
        await self.registry.stop_all()
        assert len(self.registry) == 0
        assert not any(_heartbeat_tasks(vid) for vid in (1, 2, 3))
