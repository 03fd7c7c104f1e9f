"""Redis pub/sub: push channel for agent events.

Redis pub/sub is fire-and-forget. If no one is listening, the message is
lost. That's fine: agents can always fall back to polling the events API
with a `since` cursor, and dispatches themselves never live in Redis.

Channel naming: switchboard:agents:{agent_name}
"""

import json
from typing import Any, Optional

import redis.asyncio as aioredis

from switchboard.config import settings

# Global Redis connection pool (initialized in lifespan / worker startup)
_redis: Optional[aioredis.Redis] = None


async def init_redis() -> aioredis.Redis:
    """Initialize the Redis connection pool."""
    global _redis
    _redis = aioredis.from_url(
        settings.redis_url,
        encoding="utf-8",
        decode_responses=True,
    )
    # Verify connection
    await _redis.ping()
    return _redis


async def close_redis() -> None:
    """Close the Redis connection pool."""
    global _redis
    if _redis:
        await _redis.aclose()
        _redis = None


def get_redis() -> aioredis.Redis:
    """Get the Redis connection (must be initialized first)."""
    if _redis is None:
        raise RuntimeError("Redis not initialized. Call init_redis() first.")
    return _redis


def redis_available() -> bool:
    return _redis is not None


def agent_channel(agent_name: str) -> str:
    return f"switchboard:agents:{agent_name.lower()}"


async def publish_agent_event(agent_name: str, data: dict[str, Any]) -> None:
    """Publish an agent event to the agent's Redis channel."""
    r = get_redis()
    await r.publish(agent_channel(agent_name), json.dumps(data, default=str))
