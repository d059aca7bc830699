"""
Trip endpoints
==============

POST /api/v1/trips                          -- request a trip (cash: dispatch now)
GET  /api/v1/trips/{id}                     -- tracking view, 410 once expired
POST /api/v1/trips/{id}/payment-confirmed   -- online payment settled; dispatch
POST /api/v1/trips/{id}/accept              -- offered vehicle takes the trip
POST /api/v1/trips/{id}/decline             -- offered vehicle passes; re-dispatch
POST /api/v1/trips/{id}/start               -- trip started (enroute)
POST /api/v1/trips/{id}/picked              -- rider on board (enroute)
POST /api/v1/trips/{id}/cancel              -- cancel from any non-terminal status
POST /api/v1/trips/{id}/finish              -- complete and settle the final fare
GET  /api/v1/trips/{id}/completion-check    -- distance to the drop-off
GET  /api/v1/trips/{id}/activity            -- lifecycle activity feed

Domain errors are mapped by the app: unknown id -> 404, stale status -> 409.
"""

from typing import Optional

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from src.api.dependencies import get_services
from src.api.middleware import DEFAULT_LIMIT, limiter
from src.api.schemas import (
    ActivityResponse,
    CancelRequest,
    CompletionCheckResponse,
    DispatchResponse,
    FinishRequest,
    PaymentConfirmedResponse,
    PointResponse,
    TrackingExpiredResponse,
    TrackingResponse,
    TripCreatedResponse,
    TripCreateRequest,
    TripResponse,
    VehicleActionRequest,
)
from src.container import Services
from src.domain.dispatch import DispatchResult
from src.domain.entities import GeoPoint, Trip
from src.domain.enums import TripStatus
from src.domain.geofence import proximity_tier
from src.domain.lifecycle import TripExpired

router = APIRouter(prefix="/trips", tags=["trips"])


def _dispatch_response(result: Optional[DispatchResult]) -> Optional[DispatchResponse]:
    if result is None:
        return None
    return DispatchResponse(
        outcome=result.outcome.value,
        trip_id=result.trip_id,
        vehicle_id=result.vehicle_id,
        estimate=result.estimate,
        distance_km=result.distance_km,
    )


@router.post(
    "",
    status_code=201,
    response_model=TripCreatedResponse,
    summary="Request a trip",
    description=(
        "Cash trips are dispatched immediately; online trips wait in "
        "payment_pending until the payment is confirmed."
    ),
)
@limiter.limit(DEFAULT_LIMIT)
async def create_trip(
    request: Request,
    body: TripCreateRequest,
    services: Services = Depends(get_services),
):
    trip = await services.lifecycle.request(
        Trip(
            rider_ref=body.rider_ref,
            pickup=GeoPoint(body.pickup_lat, body.pickup_lng),
            destination=GeoPoint(body.destination_lat, body.destination_lng),
            vehicle_class=body.vehicle_class,
            payment_method=body.payment_method,
        )
    )
    result = None
    if trip.status is TripStatus.PENDING:
        result = await services.dispatch.dispatch(trip.id)
        trip = await services.trips.get(trip.id)
    return TripCreatedResponse(
        trip=TripResponse.from_trip(trip), dispatch=_dispatch_response(result)
    )


@router.get(
    "/{trip_id}",
    response_model=TrackingResponse,
    summary="Track a trip",
    responses={410: {"model": TrackingExpiredResponse}},
)
@limiter.limit(DEFAULT_LIMIT)
async def track_trip(
    request: Request,
    trip_id: int,
    services: Services = Depends(get_services),
):
    view = await services.lifecycle.track(trip_id)
    if isinstance(view, TripExpired):
        body = TrackingExpiredResponse(
            trip_id=view.trip_id,
            status=view.status,
            reason=view.reason,
            created_at=view.created_at,
            cancelled_at=view.cancelled_at,
            completed_at=view.completed_at,
            expires_at=view.expires_at,
        )
        return JSONResponse(status_code=410, content=body.model_dump(mode="json"))

    location = None
    if view.vehicle_location is not None:
        location = PointResponse(
            lat=view.vehicle_location.lat, lng=view.vehicle_location.lng
        )
    return TrackingResponse(
        trip_id=view.trip_id,
        status=view.status,
        pickup=PointResponse(lat=view.pickup.lat, lng=view.pickup.lng),
        destination=PointResponse(lat=view.destination.lat, lng=view.destination.lng),
        vehicle_id=view.vehicle_id,
        vehicle_location=location,
        created_at=view.created_at,
        accepted_at=view.accepted_at,
        arrived_at=view.arrived_at,
        picked_at=view.picked_at,
        completed_at=view.completed_at,
        expires_at=view.expires_at,
    )


@router.post(
    "/{trip_id}/payment-confirmed",
    response_model=PaymentConfirmedResponse,
    summary="Confirm an online payment",
    description="No-op (confirmed=false) unless the trip is payment_pending.",
)
@limiter.limit(DEFAULT_LIMIT)
async def confirm_payment(
    request: Request,
    trip_id: int,
    services: Services = Depends(get_services),
):
    confirmed = await services.lifecycle.confirm_payment(trip_id)
    result = None
    if confirmed:
        result = await services.dispatch.dispatch(trip_id)
    trip = await services.trips.get(trip_id)
    return PaymentConfirmedResponse(
        confirmed=confirmed,
        trip=TripResponse.from_trip(trip),
        dispatch=_dispatch_response(result),
    )


@router.post("/{trip_id}/accept", response_model=TripResponse, summary="Accept an offer")
@limiter.limit(DEFAULT_LIMIT)
async def accept_trip(
    request: Request,
    trip_id: int,
    body: VehicleActionRequest,
    services: Services = Depends(get_services),
):
    trip = await services.dispatch.accept(trip_id, body.vehicle_id)
    return TripResponse.from_trip(trip)


@router.post(
    "/{trip_id}/decline",
    response_model=DispatchResponse,
    summary="Decline an offer and re-dispatch",
)
@limiter.limit(DEFAULT_LIMIT)
async def decline_trip(
    request: Request,
    trip_id: int,
    body: VehicleActionRequest,
    services: Services = Depends(get_services),
):
    result = await services.dispatch.decline(trip_id, body.vehicle_id)
    return _dispatch_response(result)


@router.post("/{trip_id}/start", response_model=TripResponse, summary="Start the trip")
@limiter.limit(DEFAULT_LIMIT)
async def start_trip(
    request: Request,
    trip_id: int,
    services: Services = Depends(get_services),
):
    return TripResponse.from_trip(await services.lifecycle.start(trip_id))


@router.post(
    "/{trip_id}/picked", response_model=TripResponse, summary="Rider picked up"
)
@limiter.limit(DEFAULT_LIMIT)
async def rider_picked_up(
    request: Request,
    trip_id: int,
    services: Services = Depends(get_services),
):
    return TripResponse.from_trip(await services.lifecycle.picked_up(trip_id))


@router.post("/{trip_id}/cancel", response_model=TripResponse, summary="Cancel a trip")
@limiter.limit(DEFAULT_LIMIT)
async def cancel_trip(
    request: Request,
    trip_id: int,
    body: CancelRequest,
    services: Services = Depends(get_services),
):
    trip = await services.lifecycle.cancel(
        trip_id, body.cancelled_by, reason=body.reason, note=body.note
    )
    return TripResponse.from_trip(trip)


@router.post(
    "/{trip_id}/finish",
    response_model=TripResponse,
    summary="Complete a trip",
    description=(
        "Computes and stores the final fare.  Returns 409 with the distance "
        "when the vehicle is more than 120 m from the drop-off, unless "
        "confirm_far is set."
    ),
)
@limiter.limit(DEFAULT_LIMIT)
async def finish_trip(
    request: Request,
    trip_id: int,
    body: Optional[FinishRequest] = None,
    services: Services = Depends(get_services),
):
    body = body or FinishRequest()
    trip = await services.lifecycle.complete(
        trip_id, payment_method=body.payment_method, confirm_far=body.confirm_far
    )
    return TripResponse.from_trip(trip)


@router.get(
    "/{trip_id}/completion-check",
    response_model=CompletionCheckResponse,
    summary="Distance from the vehicle to the drop-off",
)
@limiter.limit(DEFAULT_LIMIT)
async def completion_check(
    request: Request,
    trip_id: int,
    services: Services = Depends(get_services),
):
    check = await services.lifecycle.completion_status(trip_id)
    return CompletionCheckResponse(
        distance_m=round(check.distance_m, 1) if check.distance_m is not None else None,
        within_dropoff=check.within_dropoff,
        requires_confirmation=check.requires_confirmation,
        tier=proximity_tier(check.distance_m) if check.distance_m is not None else None,
    )


@router.get(
    "/{trip_id}/activity",
    response_model=list[ActivityResponse],
    summary="Lifecycle activity feed",
)
@limiter.limit(DEFAULT_LIMIT)
async def trip_activity(
    request: Request,
    trip_id: int,
    services: Services = Depends(get_services),
):
    await services.trips.get(trip_id)
    if services.activities is None:
        return []
    entries = await services.activities.for_trip(trip_id)
    return [
        ActivityResponse(
            kind=e.kind,
            actor_type=e.actor_type,
            actor_id=e.actor_id,
            message=e.message,
            meta=e.meta,
            created_at=e.created_at,
        )
        for e in entries
    ]
