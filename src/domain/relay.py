"""
Location Relay
==============

``ingest(vehicle_id, lat, lng)``

1. Drop malformed fixes (non-numeric, NaN/inf, out of range) with a debug
   log; nothing is raised into the shared pipeline.
2. Persist the latest fix in the fleet registry and the heartbeat entry.
3. Publish ``{lat, lng, bearing}`` on the vehicle channel and, when the
   vehicle serves an accepted/enroute trip, on that trip's channel.
4. Feed the fix to path capture and the geofence detector.
5. Make sure the vehicle has a heartbeat ticker.

Fixes of one vehicle are handled under that vehicle's lock so observers
see them in arrival order; other vehicles are never blocked.
"""

from __future__ import annotations

import logging
import math
from typing import TYPE_CHECKING, Optional

from .distance import bearing_deg, haversine_m
from .entities import GeoPoint, Trip, utcnow
from .errors import VehicleNotFound
from .geofence import GeofenceDetector
from .path_capture import PathCapture
from .ports import (
    Broadcaster,
    FleetRegistry,
    TripStore,
    trip_location_channel,
    vehicle_channel,
)

if TYPE_CHECKING:
    from src.workers.heartbeat import HeartbeatRegistry

logger = logging.getLogger(__name__)

# Below this displacement the heading is GPS noise; keep the previous one.
MIN_HEADING_MOVE_M = 2.0


def parse_fix(lat, lng) -> Optional[GeoPoint]:
    """Return a ``GeoPoint`` for a usable fix, else None."""
    for value in (lat, lng):
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            return None
        if not math.isfinite(value):
            return None
    if not (-90.0 <= lat <= 90.0 and -180.0 <= lng <= 180.0):
        return None
    return GeoPoint(float(lat), float(lng))


def position_payload(point: GeoPoint, bearing: Optional[float]) -> dict:
    return {
        "lat": point.lat,
        "lng": point.lng,
        "bearing": round(bearing, 1) if bearing is not None else None,
    }


class LocationRelay:
    def __init__(
        self,
        fleet: FleetRegistry,
        trips: TripStore,
        broadcaster: Broadcaster,
        heartbeats: "HeartbeatRegistry",
        path_capture: PathCapture,
        geofence: GeofenceDetector,
    ):
        self.fleet = fleet
        self.trips = trips
        self.broadcaster = broadcaster
        self.heartbeats = heartbeats
        self.path_capture = path_capture
        self.geofence = geofence

    # ── Public API ────────────────────────────────────────────────────

    async def ingest(self, vehicle_id: int, lat, lng) -> bool:
        """Relay one fix.  Returns False when the fix was dropped."""
        point = parse_fix(lat, lng)
        if point is None:
            logger.debug("Dropping malformed fix for vehicle %s: %r, %r", vehicle_id, lat, lng)
            return False

        async with self.heartbeats.lock_for(vehicle_id):
            relayed = await self._relay_in_order(vehicle_id, point)
        if not relayed:
            # unknown ids must not leave a lock behind
            self.heartbeats.release_lock(vehicle_id)
            return False

        self.heartbeats.ensure_running(vehicle_id, self._rebroadcast)
        return True

    async def go_online(self, vehicle_id: int) -> None:
        await self.fleet.set_availability(vehicle_id, True)
        logger.info("Vehicle %s is online", vehicle_id)

    async def go_offline(self, vehicle_id: int) -> None:
        """Stop the heartbeat and take the vehicle out of dispatch."""
        await self.fleet.set_availability(vehicle_id, False)
        self.heartbeats.stop(vehicle_id)
        logger.info("Vehicle %s is offline", vehicle_id)

    async def last_location(self, vehicle_id: int) -> Optional[GeoPoint]:
        entry = self.heartbeats.get(vehicle_id)
        if entry is not None:
            return entry.location
        vehicle = await self.fleet.get(vehicle_id)
        return vehicle.location

    # ── Internals ─────────────────────────────────────────────────────

    async def _relay_in_order(self, vehicle_id: int, point: GeoPoint) -> bool:
        """Body of ``ingest``; runs under the vehicle's lock."""
        try:
            await self.fleet.update_location(vehicle_id, point, utcnow())
        except VehicleNotFound:
            logger.warning("Fix for unknown vehicle %s dropped", vehicle_id)
            return False
        except Exception:
            logger.exception("Could not persist fix for vehicle %s", vehicle_id)

        prev = self.heartbeats.get(vehicle_id)
        bearing = None
        if prev is not None and haversine_m(prev.location, point) >= MIN_HEADING_MOVE_M:
            bearing = bearing_deg(prev.location, point)
        entry = self.heartbeats.record(vehicle_id, point, bearing)

        trip = await self._active_trip(vehicle_id)
        await self._publish(vehicle_id, point, entry.bearing, trip)

        if trip is not None:
            await self.path_capture.append(trip.id, point.lat, point.lng)
            try:
                await self.geofence.observe(trip, vehicle_id, point)
            except Exception:
                logger.exception("Geofence evaluation failed for trip %s", trip.id)
        return True

    async def _active_trip(self, vehicle_id: int) -> Optional[Trip]:
        try:
            return await self.trips.active_trip_for_vehicle(vehicle_id)
        except Exception:
            logger.exception("Active trip lookup failed for vehicle %s", vehicle_id)
            return None

    async def _publish(
        self,
        vehicle_id: int,
        point: GeoPoint,
        bearing: Optional[float],
        trip: Optional[Trip],
    ) -> None:
        payload = position_payload(point, bearing)
        channels = [vehicle_channel(vehicle_id)]
        if trip is not None:
            channels.append(trip_location_channel(trip.id))
        for channel in channels:
            try:
                await self.broadcaster.publish(channel, payload)
            except Exception:
                logger.warning("Broadcast to %s failed", channel)

    async def _rebroadcast(
        self, vehicle_id: int, point: GeoPoint, bearing: Optional[float]
    ) -> None:
        trip = await self._active_trip(vehicle_id)
        await self._publish(vehicle_id, point, bearing, trip)
