"""
Service wiring.

``build_services`` assembles the registries, adapters and domain services
once per process.  The API keeps the result on ``app.state.services``;
tests build their own with in-memory collaborators.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncEngine

from src.config import Settings, settings as default_settings
from src.domain.dispatch import DispatchCoordinator, OfferBook
from src.domain.events import EventBus
from src.domain.geofence import ArrivalRegistry, GeofenceDetector
from src.domain.lifecycle import TripLifecycle
from src.domain.path_capture import PathCapture
from src.domain.ports import (
    Broadcaster,
    FleetRegistry,
    Notifier,
    RoutingProvider,
    TripStore,
)
from src.domain.pricing import FareEngine
from src.domain.relay import LocationRelay
from src.domain.surge import SurgeEstimator
from src.infrastructure.broadcast import InMemoryBroadcaster, RedisBroadcaster
from src.infrastructure.database import Base, build_engine, build_session_factory
from src.infrastructure.notifications import (
    ActivityRecorder,
    LifecycleBroadcaster,
    LoggingNotifier,
    RiderVehicleNotices,
)
from src.infrastructure.redis_client import build_redis
from src.infrastructure.repositories import (
    ActivityRepository,
    SqlFleetRegistry,
    SqlTripStore,
)
from src.infrastructure.routing import (
    GoogleDistanceMatrixClient,
    GreatCircleRouter,
    ResilientRouter,
)
from src.workers.heartbeat import HeartbeatRegistry

logger = logging.getLogger(__name__)


@dataclass
class Services:
    settings: Settings
    engine: Optional[AsyncEngine]
    trips: TripStore
    fleet: FleetRegistry
    activities: Optional[ActivityRepository]
    broadcaster: Broadcaster
    routing: RoutingProvider
    notifier: Notifier
    bus: EventBus
    surge: SurgeEstimator
    fares: FareEngine
    heartbeats: HeartbeatRegistry
    path_capture: PathCapture
    arrivals: ArrivalRegistry
    geofence: GeofenceDetector
    relay: LocationRelay
    lifecycle: TripLifecycle
    offers: OfferBook
    dispatch: DispatchCoordinator

    async def shutdown(self) -> None:
        await self.heartbeats.stop_all()
        self.offers.clear()
        await self.bus.drain()
        for resource in (self.broadcaster, self.routing):
            close = getattr(resource, "aclose", None)
            if close is not None:
                await close()
        if self.engine is not None:
            await self.engine.dispose()
        logger.info("Services shut down")


def build_routing(cfg: Settings) -> RoutingProvider:
    fallback = GreatCircleRouter(cfg.fallback_speed_kmh)
    primary = None
    if cfg.google_maps_api_key:
        primary = GoogleDistanceMatrixClient(
            cfg.google_maps_api_key,
            region=cfg.google_maps_region,
            components=cfg.google_maps_components,
            timeout=cfg.routing_timeout_seconds,
        )
    return ResilientRouter(primary, fallback)


def build_broadcaster(cfg: Settings) -> Broadcaster:
    if cfg.broadcast_backend == "redis":
        return RedisBroadcaster(build_redis(cfg.redis_url))
    return InMemoryBroadcaster()


def wire_services(
    cfg: Settings,
    trips: TripStore,
    fleet: FleetRegistry,
    broadcaster: Broadcaster,
    routing: RoutingProvider,
    notifier: Notifier,
    activities: Optional[ActivityRepository] = None,
    engine: Optional[AsyncEngine] = None,
) -> Services:
    """Build the domain services around already-constructed adapters."""
    bus = EventBus()
    surge = SurgeEstimator(
        fleet,
        trips,
        radius_km=cfg.surge_radius_km,
        window_minutes=cfg.surge_window_minutes,
        floor=cfg.surge_min,
        ceiling=cfg.surge_max,
    )
    fares = FareEngine(
        routing,
        surge,
        pickup_per_km=cfg.pickup_per_km,
        wait_per_min=cfg.wait_per_min,
        bill_pickup_distance=cfg.bill_pickup_distance,
        fallback_speed_kmh=cfg.fallback_speed_kmh,
    )
    heartbeats = HeartbeatRegistry(
        interval=cfg.heartbeat_interval_seconds,
        stale_after=cfg.heartbeat_stale_seconds,
    )
    path_capture = PathCapture(trips)
    arrivals = ArrivalRegistry()
    geofence = GeofenceDetector(arrivals, trips, bus)
    relay = LocationRelay(fleet, trips, broadcaster, heartbeats, path_capture, geofence)
    lifecycle = TripLifecycle(
        trips,
        fares,
        bus,
        path_capture,
        arrivals,
        relay,
        tracking_ttl_hours=cfg.track_link_ttl_hours,
    )
    offers = OfferBook()
    dispatch = DispatchCoordinator(
        trips,
        fleet,
        fares,
        notifier,
        bus,
        lifecycle,
        offers,
        radius_km=cfg.dispatch_radius_km,
        offer_timeout_seconds=cfg.dispatch_offer_timeout_seconds,
    )

    RiderVehicleNotices(trips, notifier).register(bus)
    LifecycleBroadcaster(broadcaster).register(bus)
    if activities is not None:
        ActivityRecorder(activities).register(bus)

    return Services(
        settings=cfg,
        engine=engine,
        trips=trips,
        fleet=fleet,
        activities=activities,
        broadcaster=broadcaster,
        routing=routing,
        notifier=notifier,
        bus=bus,
        surge=surge,
        fares=fares,
        heartbeats=heartbeats,
        path_capture=path_capture,
        arrivals=arrivals,
        geofence=geofence,
        relay=relay,
        lifecycle=lifecycle,
        offers=offers,
        dispatch=dispatch,
    )


async def build_services(
    cfg: Optional[Settings] = None,
    *,
    create_schema: bool = False,
    broadcaster: Optional[Broadcaster] = None,
    routing: Optional[RoutingProvider] = None,
    notifier: Optional[Notifier] = None,
) -> Services:
    """Production wiring: SQL stores plus the configured adapters."""
    cfg = cfg or default_settings
    engine = build_engine(cfg.database_url)
    if create_schema:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
    sessions = build_session_factory(engine)

    services = wire_services(
        cfg,
        trips=SqlTripStore(sessions, cfg.h3_resolution),
        fleet=SqlFleetRegistry(sessions, cfg.h3_resolution),
        broadcaster=broadcaster or build_broadcaster(cfg),
        routing=routing or build_routing(cfg),
        notifier=notifier or LoggingNotifier(),
        activities=ActivityRepository(sessions),
        engine=engine,
    )
    logger.info(
        "Services ready (broadcast=%s, routing=%s)",
        cfg.broadcast_backend,
        "google" if cfg.google_maps_api_key else "great-circle",
    )
    return services
