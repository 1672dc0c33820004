"""Process-wide Redis client. Only the rate limiter's window counters live here."""

import redis.asyncio as redis
import structlog

from pourline.core.config import get_settings

logger = structlog.get_logger(__name__)

_client: redis.Redis | None = None


async def init_redis(url: str | None = None) -> None:
    """Connect once at startup.

    A failed ping only warns. Limits fail open, so orders keep flowing while
    Redis is down.
    """
    global _client
    if _client is not None:
        return

    _client = redis.from_url(
        url or get_settings().redis_url,
        decode_responses=True,
        socket_connect_timeout=2,
        socket_timeout=2,
        health_check_interval=30,
    )
    try:
        await _client.ping()
    except redis.RedisError as exc:
        logger.warning("redis_unavailable_at_startup", error=str(exc))


async def close_redis() -> None:
    global _client
    if _client is not None:
        await _client.aclose()
        _client = None


def get_redis() -> redis.Redis:
    if _client is None:
        raise RuntimeError("Redis not initialized. Call init_redis() first.")
    return _client
