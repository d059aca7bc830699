"""Pydantic request / response schemas for the REST API."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, Field

from src.domain.entities import Trip, Vehicle
from src.domain.enums import (
    CancelledBy,
    PaymentMethod,
    PaymentStatus,
    ProximityTier,
    TripStatus,
    VehicleClass,
)


# ── Requests ──────────────────────────────────────────────────────────


class TripCreateRequest(BaseModel):
    rider_ref: Optional[str] = Field(None, max_length=120)
    pickup_lat: float = Field(..., ge=-90, le=90)
    pickup_lng: float = Field(..., ge=-180, le=180)
    destination_lat: float = Field(..., ge=-90, le=90)
    destination_lng: float = Field(..., ge=-180, le=180)
    vehicle_class: Optional[VehicleClass] = None
    payment_method: PaymentMethod = PaymentMethod.CASH


class VehicleActionRequest(BaseModel):
    vehicle_id: int


class CancelRequest(BaseModel):
    cancelled_by: CancelledBy = CancelledBy.RIDER
    reason: Optional[str] = Field(None, max_length=255)
    note: Optional[str] = Field(None, max_length=1000)


class FinishRequest(BaseModel):
    payment_method: Optional[PaymentMethod] = None
    confirm_far: bool = Field(
        False,
        description="Complete even though the vehicle is far from the drop-off.",
    )


class VehicleCreateRequest(BaseModel):
    name: str = Field("", max_length=120)
    vehicle_class: VehicleClass = VehicleClass.NORMAL
    lat: Optional[float] = Field(None, ge=-90, le=90)
    lng: Optional[float] = Field(None, ge=-180, le=180)
    is_available: bool = False
    rate_override: Optional[dict[str, Any]] = Field(
        None,
        description="Optional base_fare / per_km / min_charge / pickup_per_km.",
    )


class LocationFix(BaseModel):
    # Untyped on purpose: malformed fixes are dropped, not rejected with 422.
    lat: Any = None
    lng: Any = None


# ── Responses ─────────────────────────────────────────────────────────


class PointResponse(BaseModel):
    lat: float
    lng: float


class FareResponse(BaseModel):
    price: int
    distance_km: float
    duration_sec: int
    expected_duration_sec: int
    traffic_factor: float
    surge: float
    waiting_fee: int


class TripResponse(BaseModel):
    id: int
    rider_ref: Optional[str] = None
    status: TripStatus
    pickup: PointResponse
    destination: PointResponse
    vehicle_class: Optional[VehicleClass] = None
    payment_method: PaymentMethod
    payment_status: PaymentStatus
    vehicle_id: Optional[int] = None
    offered_vehicle_id: Optional[int] = None
    estimate: Optional[int] = None
    pickup_distance_km: Optional[float] = None
    created_at: Optional[datetime] = None
    accepted_at: Optional[datetime] = None
    arrived_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    picked_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    cancelled_by: Optional[CancelledBy] = None
    cancellation_reason: Optional[str] = None
    fare: Optional[FareResponse] = None

    @classmethod
    def from_trip(cls, trip: Trip) -> "TripResponse":
        fare = None
        if trip.fare is not None:
            fare = FareResponse(
                price=trip.fare.price,
                distance_km=trip.fare.distance_km,
                duration_sec=trip.fare.duration_sec,
                expected_duration_sec=trip.fare.expected_duration_sec,
                traffic_factor=trip.fare.traffic_factor,
                surge=trip.fare.surge,
                waiting_fee=trip.fare.waiting_fee,
            )
        return cls(
            id=trip.id,
            rider_ref=trip.rider_ref,
            status=trip.status,
            pickup=PointResponse(lat=trip.pickup.lat, lng=trip.pickup.lng),
            destination=PointResponse(
                lat=trip.destination.lat, lng=trip.destination.lng
            ),
            vehicle_class=trip.vehicle_class,
            payment_method=trip.payment_method,
            payment_status=trip.payment_status,
            vehicle_id=trip.vehicle_id,
            offered_vehicle_id=trip.offered_vehicle_id,
            estimate=trip.estimate,
            pickup_distance_km=trip.pickup_distance_km,
            created_at=trip.created_at,
            accepted_at=trip.accepted_at,
            arrived_at=trip.arrived_at,
            started_at=trip.started_at,
            picked_at=trip.picked_at,
            completed_at=trip.completed_at,
            cancelled_at=trip.cancelled_at,
            cancelled_by=trip.cancelled_by,
            cancellation_reason=trip.cancellation_reason,
            fare=fare,
        )


class DispatchResponse(BaseModel):
    outcome: str
    trip_id: int
    vehicle_id: Optional[int] = None
    estimate: Optional[int] = None
    distance_km: Optional[float] = None


class TripCreatedResponse(BaseModel):
    trip: TripResponse
    dispatch: Optional[DispatchResponse] = None


class TrackingResponse(BaseModel):
    trip_id: int
    status: TripStatus
    pickup: PointResponse
    destination: PointResponse
    vehicle_id: Optional[int] = None
    vehicle_location: Optional[PointResponse] = None
    created_at: Optional[datetime] = None
    accepted_at: Optional[datetime] = None
    arrived_at: Optional[datetime] = None
    picked_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None


class TrackingExpiredResponse(BaseModel):
    expired: bool = True
    trip_id: int
    status: TripStatus
    reason: str
    created_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None


class PaymentConfirmedResponse(BaseModel):
    confirmed: bool
    trip: TripResponse
    dispatch: Optional[DispatchResponse] = None


class CompletionCheckResponse(BaseModel):
    distance_m: Optional[float] = None
    within_dropoff: bool
    requires_confirmation: bool
    tier: Optional[ProximityTier] = None


class ActivityResponse(BaseModel):
    kind: str
    actor_type: str
    actor_id: Optional[str] = None
    message: Optional[str] = None
    meta: Optional[dict[str, Any]] = None
    created_at: Optional[datetime] = None


class VehicleResponse(BaseModel):
    id: int
    name: str
    vehicle_class: VehicleClass
    is_available: bool
    location: Optional[PointResponse] = None
    last_seen_at: Optional[datetime] = None

    @classmethod
    def from_vehicle(cls, vehicle: Vehicle) -> "VehicleResponse":
        location = None
        if vehicle.location is not None:
            location = PointResponse(lat=vehicle.location.lat, lng=vehicle.location.lng)
        return cls(
            id=vehicle.id,
            name=vehicle.name,
            vehicle_class=vehicle.vehicle_class,
            is_available=vehicle.is_available,
            location=location,
            last_seen_at=vehicle.last_seen_at,
        )


class LocationAck(BaseModel):
    accepted: bool


class LastLocationResponse(BaseModel):
    vehicle_id: int
    location: Optional[PointResponse] = None
    bearing: Optional[float] = None


class LastTripResponse(BaseModel):
    trip_id: int
    created_at: Optional[datetime] = None
    picked_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    duration_sec: int
    distance_m: int
    amount: int
    payment_method: PaymentMethod
    pickup: PointResponse
    destination: PointResponse


class VehicleStatsResponse(BaseModel):
    vehicle_id: int
    total_trips: int
    total_distance_m: int
    total_earnings: int
    cash_count: int
    online_count: int
    currency: str
    last_trip: Optional[LastTripResponse] = None


class QuoteResponse(BaseModel):
    vehicle_class: VehicleClass
    price: int
    currency: str
    distance_km: float
    vehicle_count: int
    vehicle_ids: list[int]


class HealthResponse(BaseModel):
    status: str = "ok"
    heartbeats: int = 0
    pending_offers: int = 0


class ErrorResponse(BaseModel):
    detail: str
