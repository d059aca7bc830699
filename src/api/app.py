"""
FastAPI application factory.

* Registers routes for trips, vehicles, quotes, admin and live streams.
* Builds the service container on startup (unless one is injected) and
  stops heartbeat tickers / drains the event bus on shutdown.
* Maps domain errors to HTTP status codes.
* Applies rate-limiting middleware.
* Swagger / OpenAPI UI available at ``/docs``.
"""

from contextlib import asynccontextmanager
import logging
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from src.api.middleware import limiter
from src.api.routes import admin, quotes, streams, trips, vehicles
from src.config import settings
from src.container import Services, build_services
from src.domain.entities import InvalidStateTransition
from src.domain.errors import CompletionNeedsConfirmation, NotFound, StateConflict

logging.basicConfig(
    level=settings.log_level.upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build services on startup if none were injected; shut them down after."""
    if getattr(app.state, "services", None) is None:
        app.state.services = await build_services()
    yield
    await app.state.services.shutdown()


# ── Error mapping ─────────────────────────────────────────────────────


async def _not_found(request: Request, exc: NotFound) -> JSONResponse:
    return JSONResponse(status_code=404, content={"detail": str(exc)})


async def _state_conflict(request: Request, exc: StateConflict) -> JSONResponse:
    status = getattr(exc.status, "value", exc.status)
    return JSONResponse(
        status_code=409,
        content={"detail": str(exc), "status": status, "action": exc.action},
    )


async def _needs_confirmation(
    request: Request, exc: CompletionNeedsConfirmation
) -> JSONResponse:
    return JSONResponse(
        status_code=409,
        content={
            "detail": str(exc),
            "requires_confirmation": True,
            "distance_m": round(exc.distance_m, 1),
        },
    )


async def _invalid_transition(
    request: Request, exc: InvalidStateTransition
) -> JSONResponse:
    return JSONResponse(status_code=409, content={"detail": str(exc)})


def create_app(services: Optional[Services] = None) -> FastAPI:
    app = FastAPI(
        title="Trip Coordination API",
        description=(
            "Dispatches ride-hailing trips to the nearest available vehicle, "
            "relays live vehicle positions, detects arrival at pickup and "
            "settles a dynamic final fare."
        ),
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.services = services

    # Rate limiter
    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

    # Domain errors
    app.add_exception_handler(NotFound, _not_found)
    app.add_exception_handler(StateConflict, _state_conflict)
    app.add_exception_handler(CompletionNeedsConfirmation, _needs_confirmation)
    app.add_exception_handler(InvalidStateTransition, _invalid_transition)

    # Routers
    app.include_router(trips.router, prefix="/api/v1")
    app.include_router(vehicles.router, prefix="/api/v1")
    app.include_router(quotes.router, prefix="/api/v1")
    app.include_router(admin.router, prefix="/api/v1")
    app.include_router(streams.router)

    return app
