"""
Integration tests for the REST API endpoints.

The app runs on the real SQL repositories over a SQLite file (aiosqlite)
with the in-memory broadcaster; routing and rider/driver notifications are
replaced by fixed fakes so prices and offers are predictable.
"""

from __future__ import annotations

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from src.api.app import create_app
from src.container import build_services
from tests.conftest import make_settings
from tests.fakes import FixedRouter, RecordingNotifier

PICKUP = {"pickup_lat": -33.9249, "pickup_lng": 18.4241}
DESTINATION = {"destination_lat": -33.9057, "destination_lng": 18.4197}
TRIP = {**PICKUP, **DESTINATION}


@pytest_asyncio.fixture
async def services(tmp_path):
    svc = await build_services(
        make_settings(database_url=f"sqlite+aiosqlite:///{tmp_path / 'api.db'}"),
        create_schema=True,
        routing=FixedRouter(distance_km=10.0),
        notifier=RecordingNotifier(),
    )
    yield svc
    await svc.shutdown()


@pytest_asyncio.fixture
async def client(services):
    app = create_app(services)
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


async def _vehicle(client, lat=-33.925, lng=18.4242, **extra) -> int:
    body = {"name": "CA 123-456", "lat": lat, "lng": lng, "is_available": True, **extra}
    resp = await client.post("/api/v1/vehicles", json=body)
    assert resp.status_code == 201
    return resp.json()["id"]


# ── Health / lookups ─────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_health(client: AsyncClient):
    resp = await client.get("/api/v1/admin/health")
    assert resp.status_code == 200
    assert resp.json() == {"status": "ok", "heartbeats": 0, "pending_offers": 0}


@pytest.mark.asyncio
async def test_unknown_trip_is_404(client: AsyncClient):
    resp = await client.get("/api/v1/trips/999")
    assert resp.status_code == 404


@pytest.mark.asyncio
async def test_invalid_coordinates_are_422(client: AsyncClient):
    resp = await client.post("/api/v1/trips", json={**TRIP, "pickup_lat": 123})
    assert resp.status_code == 422


# ── Request and dispatch ─────────────────────────────────────────────


@pytest.mark.asyncio
async def test_cash_trip_is_dispatched_to_nearest(client: AsyncClient, services):
    await _vehicle(client, -33.95, 18.42)
    near = await _vehicle(client)

    resp = await client.post("/api/v1/trips", json={**TRIP, "rider_ref": "rider-1"})

    assert resp.status_code == 201
    data = resp.json()
    assert data["trip"]["status"] == "pending"
    assert data["trip"]["offered_vehicle_id"] == near
    assert data["dispatch"]["outcome"] == "offered"
    assert data["dispatch"]["vehicle_id"] == near
    assert data["dispatch"]["estimate"] == 70
    assert services.notifier.offers == [(data["trip"]["id"], near, 70)]


@pytest.mark.asyncio
async def test_no_vehicle(client: AsyncClient, services):
    resp = await client.post("/api/v1/trips", json=TRIP)
    await services.bus.drain()

    assert resp.json()["dispatch"]["outcome"] == "no_vehicle"
    assert len(services.notifier.rider_messages) == 1


@pytest.mark.asyncio
async def test_decline_redispatches(client: AsyncClient):
    first = await _vehicle(client)
    second = await _vehicle(client, -33.93, 18.42)
    trip_id = (await client.post("/api/v1/trips", json=TRIP)).json()["trip"]["id"]

    resp = await client.post(f"/api/v1/trips/{trip_id}/decline", json={"vehicle_id": first})
    assert resp.status_code == 200
    assert resp.json()["vehicle_id"] == second

    resp = await client.post(f"/api/v1/trips/{trip_id}/decline", json={"vehicle_id": second})
    assert resp.json()["outcome"] == "no_vehicle"


@pytest.mark.asyncio
async def test_operator_can_restart_dispatch(client: AsyncClient):
    trip_id = (await client.post("/api/v1/trips", json=TRIP)).json()["trip"]["id"]
    vehicle = await _vehicle(client)

    resp = await client.post(f"/api/v1/admin/trips/{trip_id}/dispatch")
    assert resp.status_code == 200
    assert resp.json()["vehicle_id"] == vehicle


@pytest.mark.asyncio
async def test_wrong_vehicle_cannot_accept(client: AsyncClient):
    await _vehicle(client)
    other = await _vehicle(client, -33.93, 18.42)
    trip_id = (await client.post("/api/v1/trips", json=TRIP)).json()["trip"]["id"]

    resp = await client.post(f"/api/v1/trips/{trip_id}/accept", json={"vehicle_id": other})
    assert resp.status_code == 409
    assert resp.json()["action"] == "accept"


# ── Online payment ───────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_online_trip_waits_for_payment(client: AsyncClient):
    vehicle = await _vehicle(client)
    resp = await client.post("/api/v1/trips", json={**TRIP, "payment_method": "online"})
    trip_id = resp.json()["trip"]["id"]
    assert resp.json()["trip"]["status"] == "payment_pending"
    assert resp.json()["dispatch"] is None

    resp = await client.get(f"/api/v1/trips/{trip_id}")
    assert resp.status_code == 410
    assert resp.json()["reason"] == "payment_pending"

    resp = await client.post(f"/api/v1/trips/{trip_id}/payment-confirmed")
    data = resp.json()
    assert data["confirmed"] is True
    assert data["trip"]["payment_status"] == "paid"
    assert data["dispatch"]["vehicle_id"] == vehicle

    resp = await client.post(f"/api/v1/trips/{trip_id}/payment-confirmed")
    assert resp.json()["confirmed"] is False
    assert resp.json()["dispatch"] is None


# ── Full trip ────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_full_trip_flow(client: AsyncClient, services):
    vehicle = await _vehicle(client)
    trip_id = (await client.post("/api/v1/trips", json=TRIP)).json()["trip"]["id"]

    resp = await client.post(f"/api/v1/trips/{trip_id}/accept", json={"vehicle_id": vehicle})
    assert resp.status_code == 200
    assert resp.json()["status"] == "accepted"

    # vehicle reaches the pickup
    resp = await client.post(
        f"/api/v1/vehicles/{vehicle}/location", json={"lat": -33.92492, "lng": 18.42412}
    )
    assert resp.status_code == 202
    assert resp.json() == {"accepted": True}

    resp = await client.get(f"/api/v1/trips/{trip_id}")
    assert resp.status_code == 200
    tracking = resp.json()
    assert tracking["status"] == "accepted"
    assert tracking["vehicle_location"] == {"lat": -33.92492, "lng": 18.42412}
    assert tracking["arrived_at"] is not None

    resp = await client.post(f"/api/v1/trips/{trip_id}/picked")
    assert resp.json()["status"] == "enroute"

    # still at the pickup, ~2 km from the drop-off
    resp = await client.get(f"/api/v1/trips/{trip_id}/completion-check")
    assert resp.json()["requires_confirmation"] is True
    assert resp.json()["tier"] == "en_route"

    resp = await client.post(f"/api/v1/trips/{trip_id}/finish")
    assert resp.status_code == 409
    assert resp.json()["requires_confirmation"] is True
    assert resp.json()["distance_m"] > 120

    resp = await client.post(f"/api/v1/trips/{trip_id}/finish", json={"confirm_far": True})
    assert resp.status_code == 200
    done = resp.json()
    assert done["status"] == "completed"
    assert done["payment_status"] == "paid"
    assert done["fare"]["price"] >= 30

    resp = await client.get(f"/api/v1/trips/{trip_id}")
    assert resp.status_code == 410
    assert resp.json()["reason"] == "completed"

    resp = await client.post(f"/api/v1/trips/{trip_id}/cancel", json={"cancelled_by": "rider"})
    assert resp.status_code == 409

    resp = await client.get(f"/api/v1/vehicles/{vehicle}/stats")
    stats = resp.json()
    assert stats["total_trips"] == 1
    assert stats["total_earnings"] == done["fare"]["price"]
    assert stats["cash_count"] == 1
    assert stats["currency"] == "ZAR"
    assert stats["last_trip"]["trip_id"] == trip_id

    await services.bus.drain()
    resp = await client.get(f"/api/v1/trips/{trip_id}/activity")
    kinds = [a["kind"] for a in resp.json()]
    for kind in ("request", "assigned", "accepted", "arrived", "picked", "completed"):
        assert kind in kinds


@pytest.mark.asyncio
async def test_cancel_by_driver(client: AsyncClient, services):
    vehicle = await _vehicle(client)
    trip_id = (await client.post("/api/v1/trips", json=TRIP)).json()["trip"]["id"]
    await client.post(f"/api/v1/trips/{trip_id}/accept", json={"vehicle_id": vehicle})

    resp = await client.post(
        f"/api/v1/trips/{trip_id}/cancel",
        json={"cancelled_by": "driver", "reason": "rider_no_show"},
    )
    await services.bus.drain()

    assert resp.status_code == 200
    assert resp.json()["status"] == "cancelled"
    assert resp.json()["cancellation_reason"] == "rider_no_show"
    assert len(services.notifier.rider_messages) == 1

    resp = await client.get(f"/api/v1/trips/{trip_id}")
    assert resp.status_code == 410
    assert resp.json()["reason"] == "cancelled"


@pytest.mark.asyncio
async def test_start_requires_accepted_trip(client: AsyncClient):
    trip_id = (await client.post("/api/v1/trips", json=TRIP)).json()["trip"]["id"]
    resp = await client.post(f"/api/v1/trips/{trip_id}/start")
    assert resp.status_code == 409
    assert resp.json()["status"] == "pending"


# ── Vehicles ─────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_malformed_fix_is_acknowledged_but_dropped(client: AsyncClient):
    vehicle = await _vehicle(client)
    resp = await client.post(
        f"/api/v1/vehicles/{vehicle}/location", json={"lat": "north", "lng": 18.42}
    )
    assert resp.status_code == 202
    assert resp.json() == {"accepted": False}


@pytest.mark.asyncio
async def test_fix_for_unknown_vehicle_is_dropped(client: AsyncClient):
    resp = await client.post("/api/v1/vehicles/77/location", json={"lat": -33.9, "lng": 18.4})
    assert resp.status_code == 202
    assert resp.json() == {"accepted": False}


@pytest.mark.asyncio
async def test_last_location_and_offline(client: AsyncClient, services):
    vehicle = await _vehicle(client)
    await client.post(f"/api/v1/vehicles/{vehicle}/location", json={"lat": -33.92, "lng": 18.42})
    await client.post(f"/api/v1/vehicles/{vehicle}/location", json={"lat": -33.91, "lng": 18.42})

    resp = await client.get(f"/api/v1/vehicles/{vehicle}/location")
    data = resp.json()
    assert data["location"] == {"lat": -33.91, "lng": 18.42}
    assert data["bearing"] == pytest.approx(0.0, abs=0.1)

    resp = await client.post(f"/api/v1/vehicles/{vehicle}/offline")
    assert resp.json()["is_available"] is False
    assert not services.heartbeats.is_running(vehicle)

    resp = await client.post(f"/api/v1/vehicles/{vehicle}/online")
    assert resp.json()["is_available"] is True


@pytest.mark.asyncio
async def test_unknown_vehicle_stats_is_404(client: AsyncClient):
    resp = await client.get("/api/v1/vehicles/5/stats")
    assert resp.status_code == 404


# ── Quotes ───────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_quotes_cheapest_class_first(client: AsyncClient):
    await _vehicle(client, vehicle_class="luxury")
    await _vehicle(client, -33.926, 18.425)
    await _vehicle(client, -33.926, 18.425, rate_override={"per_km": 5})

    resp = await client.get("/api/v1/quotes", params=TRIP)

    assert resp.status_code == 200
    quotes = resp.json()
    assert [q["vehicle_class"] for q in quotes] == ["normal", "luxury"]
    assert quotes[0]["price"] == 50
    assert quotes[0]["vehicle_count"] == 2
    assert quotes[1]["price"] == 120
    assert quotes[0]["currency"] == "ZAR"
