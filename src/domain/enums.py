"""Domain enumerations and state-transition rules."""

import enum


class TripStatus(str, enum.Enum):
    PAYMENT_PENDING = "payment_pending"
    PENDING = "pending"
    ACCEPTED = "accepted"
    ENROUTE = "enroute"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


TERMINAL_STATUSES: frozenset[TripStatus] = frozenset(
    {TripStatus.COMPLETED, TripStatus.CANCELLED}
)

# Trips a vehicle is actively serving (position is relayed to the trip).
ACTIVE_STATUSES: frozenset[TripStatus] = frozenset(
    {TripStatus.ACCEPTED, TripStatus.ENROUTE}
)

# State machine: maps current status -> set of valid next statuses
TRIP_TRANSITIONS: dict[TripStatus, set[TripStatus]] = {
    TripStatus.PAYMENT_PENDING: {
        TripStatus.PENDING,
        TripStatus.COMPLETED,
        TripStatus.CANCELLED,
    },
    TripStatus.PENDING: {
        TripStatus.ACCEPTED,
        TripStatus.COMPLETED,
        TripStatus.CANCELLED,
    },
    TripStatus.ACCEPTED: {
        TripStatus.ENROUTE,
        TripStatus.COMPLETED,
        TripStatus.CANCELLED,
    },
    TripStatus.ENROUTE: {
        TripStatus.ENROUTE,
        TripStatus.COMPLETED,
        TripStatus.CANCELLED,
    },
    TripStatus.COMPLETED: set(),
    TripStatus.CANCELLED: set(),
}


def sources_for(target: TripStatus) -> set[TripStatus]:
    """Every status from which *target* may be entered."""
    return {src for src, dests in TRIP_TRANSITIONS.items() if target in dests}


class VehicleClass(str, enum.Enum):
    NORMAL = "normal"
    COMFORT = "comfort"
    LUXURY = "luxury"
    XL = "xl"


class PaymentMethod(str, enum.Enum):
    CASH = "cash"
    ONLINE = "online"


class PaymentStatus(str, enum.Enum):
    UNPAID = "unpaid"
    PAID = "paid"


class CancelledBy(str, enum.Enum):
    DRIVER = "driver"
    RIDER = "rider"
    SYSTEM = "system"


class ProximityTier(str, enum.Enum):
    """Drop-off approach tiers shown to observers (not state changes)."""

    AT_DROPOFF = "at_dropoff"
    APPROACHING = "approaching"
    EN_ROUTE = "en_route"
