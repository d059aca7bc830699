"""Redis async connection pool."""

import redis.asyncio as aioredis


def build_redis(url: str) -> aioredis.Redis:
    """Return a Redis client backed by its own connection pool."""
    pool = aioredis.ConnectionPool.from_url(url, decode_responses=True)
    return aioredis.Redis(connection_pool=pool)
