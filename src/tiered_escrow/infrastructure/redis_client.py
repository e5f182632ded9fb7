"""Redis client used to fan committed domain events out to subscribers.

Usage:
    from tiered_escrow.infrastructure.redis_client import get_redis, init_redis

    await init_redis()
    await get_redis().publish("tiered_escrow.events", payload)
"""

from __future__ import annotations

import redis.asyncio as aioredis

from tiered_escrow.config import get_settings
from tiered_escrow.logging_config import get_logger

logger = get_logger(__name__)

_redis_client: aioredis.Redis | None = None


async def init_redis() -> aioredis.Redis:
    """Initialize and return the Redis client. Called during app startup."""
    global _redis_client
    settings = get_settings()
    client = aioredis.from_url(settings.redis_url, decode_responses=True)
    await client.ping()
    _redis_client = client
    logger.info("redis.connected", url=settings.redis_url)
    return _redis_client


def get_redis() -> aioredis.Redis:
    """Return the Redis client singleton. Must call init_redis() first."""
    if _redis_client is None:
        raise RuntimeError("Redis not initialized. Call init_redis() first.")
    return _redis_client


def redis_available() -> bool:
    return _redis_client is not None


async def close_redis() -> None:
    """Close the Redis connection. Called during app shutdown."""
    global _redis_client
    if _redis_client is not None:
        await _redis_client.aclose()
        logger.info("redis.disconnected")
        _redis_client = None
