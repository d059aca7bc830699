"""
Domain entities with business logic.

Patterns used
-------------
- **State Pattern** on ``Trip``: enforces valid lifecycle transitions
  (PAYMENT_PENDING -> PENDING -> ACCEPTED -> ENROUTE -> COMPLETED, with
  CANCELLED reachable from any non-terminal status).
- ``FareSnapshot`` is an immutable value object written once at completion.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional

from .enums import (
    ACTIVE_STATUSES,
    TERMINAL_STATUSES,
    TRIP_TRANSITIONS,
    CancelledBy,
    PaymentMethod,
    PaymentStatus,
    TripStatus,
    VehicleClass,
)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class InvalidStateTransition(Exception):
    """Raised when a trip status change violates the state machine."""


# ── Value Objects ─────────────────────────────────────────────────────


@dataclass(frozen=True)
class GeoPoint:
    lat: float
    lng: float


@dataclass(frozen=True)
class PathPoint:
    lat: float
    lng: float
    recorded_at: datetime


@dataclass(frozen=True)
class FareSnapshot:
    price: int
    distance_km: float
    duration_sec: int
    traffic_factor: float
    surge: float
    expected_duration_sec: int = 0
    waiting_fee: int = 0


# ── Entities ──────────────────────────────────────────────────────────


@dataclass
class Trip:
    id: Optional[int] = None
    rider_ref: Optional[str] = None
    pickup: GeoPoint = field(default_factory=lambda: GeoPoint(0, 0))
    destination: GeoPoint = field(default_factory=lambda: GeoPoint(0, 0))
    vehicle_class: Optional[VehicleClass] = None
    status: TripStatus = TripStatus.PENDING
    payment_method: PaymentMethod = PaymentMethod.CASH
    payment_status: PaymentStatus = PaymentStatus.UNPAID
    paid_at: Optional[datetime] = None

    vehicle_id: Optional[int] = None
    offered_vehicle_id: Optional[int] = None
    estimate: Optional[int] = None
    pickup_distance_km: Optional[float] = None

    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    accepted_at: Optional[datetime] = None
    arrived_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    picked_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None

    cancelled_by: Optional[CancelledBy] = None
    cancellation_reason: Optional[str] = None
    cancellation_note: Optional[str] = None

    path: list[PathPoint] = field(default_factory=list)
    fare: Optional[FareSnapshot] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_STATUSES

    @property
    def ride_started_at(self) -> Optional[datetime]:
        """When the rider was on board: picked-up, else started, else created."""
        return self.picked_at or self.started_at or self.created_at

    def transition_to(self, new_status: TripStatus) -> None:
        """Move to *new_status* if the transition is legal, else raise."""
        allowed = TRIP_TRANSITIONS.get(self.status, set())
        if new_status not in allowed:
            raise InvalidStateTransition(
                f"Cannot transition from {self.status} to {new_status}"
            )
        self.status = new_status


@dataclass
class Vehicle:
    id: Optional[int] = None
    name: str = ""
    vehicle_class: VehicleClass = VehicleClass.NORMAL
    location: Optional[GeoPoint] = None
    is_available: bool = False
    last_seen_at: Optional[datetime] = None
    rate_override: Optional[dict] = None
