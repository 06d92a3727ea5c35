"""Redis connection pool.

Used for the inbound HTTP rate limit counters and the scheduled scan
request channel consumed by ``ScanRequestBridge``.
"""

import json
from typing import Any

import redis.asyncio as redis

_pool: redis.Redis | None = None


async def init_redis(url: str) -> None:
    """Initialize the Redis connection pool."""
    global _pool  # noqa: PLW0603
    _pool = redis.from_url(  # type: ignore[no-untyped-call]
        url,
        encoding="utf-8",
        decode_responses=True,
        max_connections=50,
    )


async def close_redis() -> None:
    """Close the Redis connection pool."""
    global _pool  # noqa: PLW0603
    if _pool:
        await _pool.aclose()
        _pool = None


def get_redis() -> redis.Redis:
    """Get the Redis client (FastAPI dependency)."""
    if _pool is None:
        msg = "Redis not initialized. Call init_redis() first."
        raise RuntimeError(msg)
    return _pool


async def publish_json(client: redis.Redis, channel: str, payload: dict[str, Any]) -> int:
    """Publish a JSON payload on a pub/sub channel. Returns the receiver count."""
    receivers: int = await client.publish(channel, json.dumps(payload))
    return receivers
