"""
Vehicle endpoints
=================

POST /api/v1/vehicles                  -- register a vehicle
POST /api/v1/vehicles/{id}/location    -- ingest one GPS fix (always 202)
GET  /api/v1/vehicles/{id}/location    -- last known position
POST /api/v1/vehicles/{id}/online      -- make the vehicle dispatchable
POST /api/v1/vehicles/{id}/offline     -- stop heartbeat, leave dispatch pool
GET  /api/v1/vehicles/{id}/stats       -- earnings / distance summary
"""

from fastapi import APIRouter, Depends, Request

from src.api.dependencies import get_services
from src.api.middleware import DEFAULT_LIMIT, LOCATION_LIMIT, limiter
from src.api.schemas import (
    LastLocationResponse,
    LastTripResponse,
    LocationAck,
    LocationFix,
    PointResponse,
    VehicleCreateRequest,
    VehicleResponse,
    VehicleStatsResponse,
)
from src.container import Services
from src.domain.entities import GeoPoint, Vehicle
from src.domain.stats import summarize_vehicle_trips

router = APIRouter(prefix="/vehicles", tags=["vehicles"])


@router.post(
    "", status_code=201, response_model=VehicleResponse, summary="Register a vehicle"
)
@limiter.limit(DEFAULT_LIMIT)
async def register_vehicle(
    request: Request,
    body: VehicleCreateRequest,
    services: Services = Depends(get_services),
):
    location = None
    if body.lat is not None and body.lng is not None:
        location = GeoPoint(body.lat, body.lng)
    vehicle = await services.fleet.register(
        Vehicle(
            name=body.name,
            vehicle_class=body.vehicle_class,
            location=location,
            is_available=body.is_available,
            rate_override=body.rate_override,
        )
    )
    return VehicleResponse.from_vehicle(vehicle)


@router.post(
    "/{vehicle_id}/location",
    status_code=202,
    response_model=LocationAck,
    summary="Ingest a GPS fix",
    description=(
        "Malformed fixes and fixes for unknown vehicles are dropped; the "
        "response reports whether the fix was relayed."
    ),
)
@limiter.limit(LOCATION_LIMIT)
async def ingest_location(
    request: Request,
    vehicle_id: int,
    body: LocationFix,
    services: Services = Depends(get_services),
):
    accepted = await services.relay.ingest(vehicle_id, body.lat, body.lng)
    return LocationAck(accepted=accepted)


@router.get(
    "/{vehicle_id}/location",
    response_model=LastLocationResponse,
    summary="Last known position",
)
@limiter.limit(DEFAULT_LIMIT)
async def last_location(
    request: Request,
    vehicle_id: int,
    services: Services = Depends(get_services),
):
    point = await services.relay.last_location(vehicle_id)
    entry = services.heartbeats.get(vehicle_id)
    return LastLocationResponse(
        vehicle_id=vehicle_id,
        location=PointResponse(lat=point.lat, lng=point.lng) if point else None,
        bearing=entry.bearing if entry is not None else None,
    )


@router.post(
    "/{vehicle_id}/online", response_model=VehicleResponse, summary="Go online"
)
@limiter.limit(DEFAULT_LIMIT)
async def go_online(
    request: Request,
    vehicle_id: int,
    services: Services = Depends(get_services),
):
    await services.relay.go_online(vehicle_id)
    return VehicleResponse.from_vehicle(await services.fleet.get(vehicle_id))


@router.post(
    "/{vehicle_id}/offline", response_model=VehicleResponse, summary="Go offline"
)
@limiter.limit(DEFAULT_LIMIT)
async def go_offline(
    request: Request,
    vehicle_id: int,
    services: Services = Depends(get_services),
):
    await services.relay.go_offline(vehicle_id)
    return VehicleResponse.from_vehicle(await services.fleet.get(vehicle_id))


@router.get(
    "/{vehicle_id}/stats",
    response_model=VehicleStatsResponse,
    summary="Completed-trip summary",
)
@limiter.limit(DEFAULT_LIMIT)
async def vehicle_stats(
    request: Request,
    vehicle_id: int,
    services: Services = Depends(get_services),
):
    await services.fleet.get(vehicle_id)
    stats = summarize_vehicle_trips(await services.trips.completed_for_vehicle(vehicle_id))
    last = None
    if stats.last_trip is not None:
        t = stats.last_trip
        last = LastTripResponse(
            trip_id=t.trip_id,
            created_at=t.created_at,
            picked_at=t.picked_at,
            finished_at=t.finished_at,
            duration_sec=t.duration_sec,
            distance_m=t.distance_m,
            amount=t.amount,
            payment_method=t.payment_method,
            pickup=PointResponse(lat=t.pickup.lat, lng=t.pickup.lng),
            destination=PointResponse(lat=t.destination.lat, lng=t.destination.lng),
        )
    return VehicleStatsResponse(
        vehicle_id=vehicle_id,
        total_trips=stats.total_trips,
        total_distance_m=stats.total_distance_m,
        total_earnings=stats.total_earnings,
        cash_count=stats.cash_count,
        online_count=stats.online_count,
        currency=services.settings.currency,
        last_trip=last,
    )
