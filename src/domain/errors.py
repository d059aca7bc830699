"""Domain error taxonomy shared by the services and the API layer."""

from __future__ import annotations


class NotFound(Exception):
    """A trip or vehicle id does not exist."""


class TripNotFound(NotFound):
    def __init__(self, trip_id: int):
        super().__init__(f"Trip {trip_id} not found")
        self.trip_id = trip_id


class VehicleNotFound(NotFound):
    def __init__(self, vehicle_id: int):
        super().__init__(f"Vehicle {vehicle_id} not found")
        self.vehicle_id = vehicle_id


class StateConflict(Exception):
    """The trip is no longer in the status the action expects.

    Nothing was mutated; the caller is told the action was a no-op.
    """

    def __init__(self, trip_id: int, status, action: str):
        super().__init__(f"Cannot {action} trip {trip_id} in status {status}")
        self.trip_id = trip_id
        self.status = status
        self.action = action


class CompletionNeedsConfirmation(Exception):
    """The vehicle is far from the drop-off and no override was given."""

    def __init__(self, trip_id: int, distance_m: float):
        super().__init__(
            f"Vehicle is {distance_m:.0f} m from the drop-off of trip {trip_id}"
        )
        self.trip_id = trip_id
        self.distance_m = distance_m


class RoutingError(Exception):
    """The routing provider failed or returned no usable element."""
