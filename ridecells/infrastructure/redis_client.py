"""
Redis async connection pool.

One pool per process.  Watchers each take a dedicated Pub/Sub connection
from it for as long as they are subscribed, so the pool is sized for the
number of concurrent watchers rather than for request throughput, and idle
subscriber connections are health-checked.
"""

import logging

import redis.asyncio as aioredis

from ridecells.config import settings

logger = logging.getLogger(__name__)

_pool = aioredis.ConnectionPool.from_url(
    settings.redis_url,
    decode_responses=True,
    max_connections=settings.redis_max_connections,
    health_check_interval=settings.redis_health_check_interval,
)


async def get_redis() -> aioredis.Redis:
    """Return a Redis client backed by the shared connection pool."""
    return aioredis.Redis(connection_pool=_pool)


async def close_redis(client: aioredis.Redis) -> None:
    """Close ``client`` and drop every pooled connection, subscribers included."""
    await client.aclose()
    await _pool.disconnect()
    logger.info("Redis connection pool closed")
