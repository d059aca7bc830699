"""
Live channel fan-out.

``RedisBroadcaster`` publishes JSON payloads over Redis pub/sub so every API
process (and any external dashboard) sees the same vehicle positions and
trip events.  ``InMemoryBroadcaster`` keeps the same contract inside one
process and is used for single-node deployments and tests.

Publishing never raises on a transport failure; a lost position update is
superseded by the next heartbeat tick.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections import defaultdict
from typing import AsyncIterator

import redis.asyncio as aioredis
from redis.exceptions import ConnectionError as RedisConnectionError

from src.domain.ports import Broadcaster

logger = logging.getLogger(__name__)


class RedisBroadcaster(Broadcaster):
    def __init__(self, client: aioredis.Redis):
        self._client = client

    async def publish(self, channel: str, payload: dict) -> None:
        try:
            await self._client.publish(channel, json.dumps(payload, default=str))
        except RedisConnectionError as e:
            logger.error("Failed to publish to channel %s: %s", channel, e)

    async def subscribe(self, channel: str) -> AsyncIterator[dict]:
        pubsub = self._client.pubsub()
        await pubsub.subscribe(channel)
        try:
            async for message in pubsub.listen():
                if message["type"] != "message":
                    continue
                try:
                    yield json.loads(message["data"])
                except json.JSONDecodeError:
                    logger.warning("Invalid JSON on %s: %r", channel, message["data"])
        finally:
            await pubsub.unsubscribe(channel)
            await pubsub.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()


class InMemoryBroadcaster(Broadcaster):
    def __init__(self, max_queue: int = 256):
        self.max_queue = max_queue
        self._subscribers: dict[str, set[asyncio.Queue]] = defaultdict(set)

    async def publish(self, channel: str, payload: dict) -> None:
        for queue in list(self._subscribers.get(channel, ())):
            if queue.full():
                # Slow consumer: drop its oldest message
                queue.get_nowait()
            queue.put_nowait(payload)

    async def subscribe(self, channel: str) -> AsyncIterator[dict]:
        queue: asyncio.Queue = asyncio.Queue(maxsize=self.max_queue)
        self._subscribers[channel].add(queue)
        try:
            while True:
                yield await queue.get()
        finally:
            subscribers = self._subscribers.get(channel)
            if subscribers is not None:
                subscribers.discard(queue)
                if not subscribers:
                    del self._subscribers[channel]

    def subscriber_count(self, channel: str) -> int:
        return len(self._subscribers.get(channel, ()))

    async def aclose(self) -> None:
        self._subscribers.clear()
