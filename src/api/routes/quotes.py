"""
Quote endpoint
==============

GET /api/v1/quotes -- cheapest price per vehicle class near a pickup
"""

from fastapi import APIRouter, Depends, Query, Request

from src.api.dependencies import get_services
from src.api.middleware import DEFAULT_LIMIT, limiter
from src.api.schemas import QuoteResponse
from src.container import Services
from src.domain.entities import GeoPoint

router = APIRouter(prefix="/quotes", tags=["quotes"])


@router.get(
    "",
    response_model=list[QuoteResponse],
    summary="Per-class fare quotes",
    description=(
        "Prices every available vehicle within the quote radius of the pickup "
        "and returns the cheapest per class, cheapest class first."
    ),
)
@limiter.limit(DEFAULT_LIMIT)
async def get_quotes(
    request: Request,
    pickup_lat: float = Query(..., ge=-90, le=90),
    pickup_lng: float = Query(..., ge=-180, le=180),
    destination_lat: float = Query(..., ge=-90, le=90),
    destination_lng: float = Query(..., ge=-180, le=180),
    services: Services = Depends(get_services),
):
    pickup = GeoPoint(pickup_lat, pickup_lng)
    nearby = await services.fleet.available_near(pickup, services.settings.quote_radius_km)
    quotes = await services.fares.quote_vehicle_classes(
        pickup, GeoPoint(destination_lat, destination_lng), nearby
    )
    return [
        QuoteResponse(
            vehicle_class=q.vehicle_class,
            price=q.price,
            currency=services.settings.currency,
            distance_km=round(q.distance_km, 3),
            vehicle_count=q.vehicle_count,
            vehicle_ids=list(q.vehicle_ids),
        )
        for q in quotes
    ]
