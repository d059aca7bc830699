"""
Per-vehicle Heartbeat Rebroadcast
=================================

Upstream fix frequency is irregular, so each vehicle that has reported a
fix gets one ticker task that re-publishes its last known position every
``interval`` seconds (default 1 s).  The ticker stops by itself once the
last real fix is older than ``stale_after`` seconds (default 120 s); no
explicit "vehicle offline" signal is needed.

Concurrency
-----------
* At most one ticker per vehicle id: ``ensure_running`` is a no-op when a
  live task already exists.
* Each vehicle also owns an ``asyncio.Lock`` used by the relay to keep one
  vehicle's fixes in arrival order.  Distinct vehicles never share a lock.
* The registry is an explicit object handed to the relay at construction so
  it can be replaced by a shared cache in a multi-instance deployment.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional

from src.domain.entities import GeoPoint

logger = logging.getLogger(__name__)

HEARTBEAT_INTERVAL_SECONDS = 1.0
HEARTBEAT_STALE_SECONDS = 120.0

Publish = Callable[[int, GeoPoint, Optional[float]], Awaitable[None]]


@dataclass
class HeartbeatEntry:
    location: GeoPoint
    updated_at: float
    bearing: Optional[float] = None
    task: Optional[asyncio.Task] = None


class HeartbeatRegistry:
    def __init__(
        self,
        interval: float = HEARTBEAT_INTERVAL_SECONDS,
        stale_after: float = HEARTBEAT_STALE_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.interval = interval
        self.stale_after = stale_after
        self._clock = clock
        self._entries: dict[int, HeartbeatEntry] = {}
        self._locks: dict[int, asyncio.Lock] = {}

    # ── Public API ────────────────────────────────────────────────────

    def lock_for(self, vehicle_id: int) -> asyncio.Lock:
        lock = self._locks.get(vehicle_id)
        if lock is None:
            lock = self._locks[vehicle_id] = asyncio.Lock()
        return lock

    def record(
        self, vehicle_id: int, location: GeoPoint, bearing: Optional[float] = None
    ) -> HeartbeatEntry:
        entry = self._entries.get(vehicle_id)
        if entry is None:
            entry = self._entries[vehicle_id] = HeartbeatEntry(
                location=location, updated_at=self._clock(), bearing=bearing
            )
        else:
            entry.location = location
            entry.updated_at = self._clock()
            if bearing is not None:
                entry.bearing = bearing
        return entry

    def get(self, vehicle_id: int) -> Optional[HeartbeatEntry]:
        return self._entries.get(vehicle_id)

    def is_running(self, vehicle_id: int) -> bool:
        entry = self._entries.get(vehicle_id)
        return bool(entry and entry.task and not entry.task.done())

    def ensure_running(self, vehicle_id: int, publish: Publish) -> bool:
        """Start a ticker for *vehicle_id* unless one is alive.  True if started."""
        entry = self._entries.get(vehicle_id)
        if entry is None or self.is_running(vehicle_id):
            return False
        entry.task = asyncio.create_task(
            self._tick_loop(vehicle_id, publish),
            name=f"heartbeat-{vehicle_id}",
        )
        logger.debug("Heartbeat started for vehicle %s", vehicle_id)
        return True

    def stop(self, vehicle_id: int) -> None:
        entry = self._discard(vehicle_id)
        if entry and entry.task and entry.task is not asyncio.current_task():
            entry.task.cancel()

    async def stop_all(self) -> None:
        tasks = [e.task for e in self._entries.values() if e.task]
        for vehicle_id in list(self._entries):
            self.stop(vehicle_id)
        for task in tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        logger.info("Heartbeat tickers stopped (%d)", len(tasks))

    def release_lock(self, vehicle_id: int) -> None:
        """Drop the lock of a vehicle that has no heartbeat entry."""
        if vehicle_id in self._entries:
            return
        lock = self._locks.get(vehicle_id)
        if lock is not None and not lock.locked():
            del self._locks[vehicle_id]

    def __len__(self) -> int:
        return len(self._entries)

    # ── Internals ─────────────────────────────────────────────────────

    def _discard(self, vehicle_id: int) -> Optional[HeartbeatEntry]:
        lock = self._locks.get(vehicle_id)
        if lock is not None and not lock.locked():
            del self._locks[vehicle_id]
        return self._entries.pop(vehicle_id, None)

    async def _tick_loop(self, vehicle_id: int, publish: Publish) -> None:
        while True:
            await asyncio.sleep(self.interval)
            entry = self._entries.get(vehicle_id)
            if entry is None or entry.task is not asyncio.current_task():
                return

            stale_for = self._clock() - entry.updated_at
            if stale_for > self.stale_after:
                logger.info(
                    "Vehicle %s silent for %.0fs; heartbeat stopped",
                    vehicle_id,
                    stale_for,
                )
                self._discard(vehicle_id)
                return

            try:
                await publish(vehicle_id, entry.location, entry.bearing)
            except Exception:
                logger.exception("Heartbeat rebroadcast failed for vehicle %s", vehicle_id)
