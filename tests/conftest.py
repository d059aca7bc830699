"""
Shared test fixtures.

Domain tests wire the real services around in-memory fakes (see
``tests/fakes.py``).  Repository and API tests use a file-backed SQLite
database (via aiosqlite) in ``tmp_path`` so they run without Docker /
PostgreSQL / Redis.
"""

from typing import AsyncGenerator

import pytest
import pytest_asyncio

from src.api.middleware import limiter
from src.config import Settings
from src.container import Services, wire_services
from src.infrastructure.database import Base, build_engine, build_session_factory
from tests.fakes import (
    FakeFleet,
    FakeTripStore,
    FixedRouter,
    FixedSurge,
    RecordingBroadcaster,
    RecordingNotifier,
)


def make_settings(**overrides) -> Settings:
    values = dict(
        broadcast_backend="memory",
        google_maps_api_key="",
        heartbeat_interval_seconds=0.01,
        dispatch_offer_timeout_seconds=None,
    )
    values.update(overrides)
    return Settings(**values)


@pytest.fixture(autouse=True)
def _reset_rate_limits():
    limiter.reset()
    yield


@pytest_asyncio.fixture
async def services() -> AsyncGenerator[Services, None]:
    """Real domain services around in-memory stores, fixed routing and surge."""
    svc = wire_services(
        make_settings(),
        trips=FakeTripStore(),
        fleet=FakeFleet(),
        broadcaster=RecordingBroadcaster(),
        routing=FixedRouter(),
        notifier=RecordingNotifier(),
    )
    svc.fares.surge = FixedSurge(1.0)
    yield svc
    await svc.shutdown()


@pytest_asyncio.fixture
async def session_factory(tmp_path):
    """Fresh SQLite file database with the production schema."""
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield build_session_factory(engine)
    await engine.dispose()
