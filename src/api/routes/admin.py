"""
Admin / observability endpoints
===============================

GET  /api/v1/admin/health                    -- simple health check
POST /api/v1/admin/trips/{trip_id}/dispatch  -- operator retry after "no vehicle"
"""

from fastapi import APIRouter, Depends, Request

from src.api.dependencies import get_services
from src.api.middleware import DEFAULT_LIMIT, limiter
from src.api.schemas import DispatchResponse, HealthResponse
from src.container import Services

router = APIRouter(prefix="/admin", tags=["admin"])


@router.get("/health", response_model=HealthResponse, summary="Health check")
async def health(services: Services = Depends(get_services)):
    return HealthResponse(
        heartbeats=len(services.heartbeats),
        pending_offers=len(services.offers),
    )


@router.post(
    "/trips/{trip_id}/dispatch",
    response_model=DispatchResponse,
    summary="Dispatch a pending trip again",
    description=(
        "The core never retries a dispatch cycle on its own; an operator can "
        "start a fresh one (empty exclusion set) here."
    ),
)
@limiter.limit(DEFAULT_LIMIT)
async def redispatch(
    request: Request,
    trip_id: int,
    services: Services = Depends(get_services),
):
    result = await services.dispatch.dispatch(trip_id)
    return DispatchResponse(
        outcome=result.outcome.value,
        trip_id=result.trip_id,
        vehicle_id=result.vehicle_id,
        estimate=result.estimate,
        distance_km=result.distance_km,
    )
