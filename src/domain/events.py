"""
Typed trip lifecycle events and the in-process publish/subscribe bus.

The dispatch coordinator, geofence detector and lifecycle service publish
here; notification, activity-feed and channel-broadcast collaborators
subscribe.  Publishing never waits on a subscriber: each handler runs as
its own task and a failing handler is logged, never re-raised into the
publisher.
"""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Awaitable, Callable, ClassVar, Optional

from .entities import utcnow

logger = logging.getLogger(__name__)


@dataclass(frozen=True, kw_only=True)
class TripEvent:
    kind: ClassVar[str] = "event"

    trip_id: int
    occurred_at: datetime = field(default_factory=utcnow)

    def payload(self) -> dict:
        data = asdict(self)
        data["type"] = self.kind
        data["occurred_at"] = self.occurred_at.isoformat()
        return data


@dataclass(frozen=True, kw_only=True)
class TripRequested(TripEvent):
    kind: ClassVar[str] = "request"


@dataclass(frozen=True, kw_only=True)
class PaymentConfirmed(TripEvent):
    kind: ClassVar[str] = "payment"


@dataclass(frozen=True, kw_only=True)
class VehicleAssigned(TripEvent):
    kind: ClassVar[str] = "assigned"

    vehicle_id: int
    estimate: int
    pickup_distance_km: float


@dataclass(frozen=True, kw_only=True)
class NoVehicleAvailable(TripEvent):
    kind: ClassVar[str] = "no_vehicle"

    excluded: tuple[int, ...] = ()


@dataclass(frozen=True, kw_only=True)
class OfferDeclined(TripEvent):
    kind: ClassVar[str] = "ignored"

    vehicle_id: int
    timed_out: bool = False


@dataclass(frozen=True, kw_only=True)
class TripAccepted(TripEvent):
    kind: ClassVar[str] = "accepted"

    vehicle_id: int


@dataclass(frozen=True, kw_only=True)
class VehicleArrived(TripEvent):
    kind: ClassVar[str] = "arrived"

    vehicle_id: int


@dataclass(frozen=True, kw_only=True)
class RiderPickedUp(TripEvent):
    kind: ClassVar[str] = "picked"


@dataclass(frozen=True, kw_only=True)
class TripStarted(TripEvent):
    kind: ClassVar[str] = "started"


@dataclass(frozen=True, kw_only=True)
class TripCancelled(TripEvent):
    kind: ClassVar[str] = "cancelled"

    cancelled_by: str
    reason: Optional[str] = None
    note: Optional[str] = None


@dataclass(frozen=True, kw_only=True)
class TripCompleted(TripEvent):
    kind: ClassVar[str] = "completed"

    price: int
    distance_km: float
    payment_method: str


Handler = Callable[[TripEvent], Awaitable[None]]


class EventBus:
    def __init__(self) -> None:
        self._handlers: dict[type, list[Handler]] = defaultdict(list)
        self._pending: set[asyncio.Task] = set()

    def subscribe(self, event_type: type[TripEvent], handler: Handler) -> None:
        """Register *handler* for *event_type* and all of its subclasses."""
        self._handlers[event_type].append(handler)

    def publish(self, event: TripEvent) -> int:
        """Schedule every matching handler; returns how many were scheduled."""
        scheduled = 0
        for event_type in type(event).__mro__:
            for handler in self._handlers.get(event_type, ()):
                task = asyncio.create_task(self._run(handler, event))
                self._pending.add(task)
                task.add_done_callback(self._pending.discard)
                scheduled += 1
        return scheduled

    async def drain(self) -> None:
        """Wait until every scheduled handler (and any they schedule) is done."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    @staticmethod
    async def _run(handler: Handler, event: TripEvent) -> None:
        try:
            await handler(event)
        except Exception:
            logger.exception(
                "Handler %s failed for %s (trip %s)",
                getattr(handler, "__qualname__", handler),
                event.kind,
                event.trip_id,
            )
