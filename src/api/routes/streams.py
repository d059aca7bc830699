"""
Live WebSocket streams
======================

/ws/trips/{trip_id}        -- vehicle position + lifecycle events of one trip
/ws/vehicles/{vehicle_id}  -- position of one vehicle, independent of trips

Each socket only sees the channels of the entity in its path.  Messages are
``{"type": "location" | "event", "data": {...}}``.
"""

import asyncio
import contextlib
import logging
from typing import AsyncIterator

from fastapi import APIRouter, WebSocket, WebSocketDisconnect
from fastapi.websockets import WebSocketState

from src.domain.errors import NotFound
from src.domain.lifecycle import TripExpired
from src.domain.ports import trip_events_channel, trip_location_channel, vehicle_channel
from src.domain.relay import position_payload

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/ws", tags=["streams"])

# Application close codes (4000-4999 range)
CLOSE_NOT_FOUND = 4404
CLOSE_EXPIRED = 4410


async def _pump(websocket: WebSocket, stream: AsyncIterator[dict], kind: str) -> None:
    async for payload in stream:
        if websocket.application_state != WebSocketState.CONNECTED:
            return
        await websocket.send_json({"type": kind, "data": payload})


async def _serve(websocket: WebSocket, streams: dict[str, AsyncIterator[dict]]) -> None:
    tasks = [
        asyncio.create_task(_pump(websocket, stream, kind))
        for kind, stream in streams.items()
    ]
    try:
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect:
        pass
    finally:
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        for stream in streams.values():
            with contextlib.suppress(Exception):
                await stream.aclose()


@router.websocket("/trips/{trip_id}")
async def trip_stream(websocket: WebSocket, trip_id: int) -> None:
    services = websocket.app.state.services
    try:
        view = await services.lifecycle.track(trip_id)
    except NotFound:
        await websocket.close(code=CLOSE_NOT_FOUND)
        return
    if isinstance(view, TripExpired):
        await websocket.close(code=CLOSE_EXPIRED, reason=view.reason)
        return

    await websocket.accept()
    if view.vehicle_location is not None:
        await websocket.send_json(
            {"type": "location", "data": position_payload(view.vehicle_location, None)}
        )
    logger.debug("Trip stream opened for trip %s", trip_id)
    await _serve(
        websocket,
        {
            "location": services.broadcaster.subscribe(trip_location_channel(trip_id)),
            "event": services.broadcaster.subscribe(trip_events_channel(trip_id)),
        },
    )


@router.websocket("/vehicles/{vehicle_id}")
async def vehicle_stream(websocket: WebSocket, vehicle_id: int) -> None:
    services = websocket.app.state.services
    try:
        point = await services.relay.last_location(vehicle_id)
    except NotFound:
        await websocket.close(code=CLOSE_NOT_FOUND)
        return

    await websocket.accept()
    if point is not None:
        entry = services.heartbeats.get(vehicle_id)
        bearing = entry.bearing if entry is not None else None
        await websocket.send_json(
            {"type": "location", "data": position_payload(point, bearing)}
        )
    await _serve(
        websocket,
        {"location": services.broadcaster.subscribe(vehicle_channel(vehicle_id))},
    )
