"""Fixed-window rate limiting backed by Redis.

Counters live in Redis so every API instance shares them. The limiter is
best effort: when Redis is unreachable the request is allowed and a warning
is logged.
"""

import time

import structlog
from redis.asyncio import Redis
from redis.exceptions import RedisError

from pourline.core.exceptions import RateLimitedError

logger = structlog.get_logger(__name__)

CREATE_PAYMENT_INTENT = "create-payment-intent"
VERIFY_TOKEN = "verify-token"


class RateLimiter:
    """Count requests per (operation, principal) in fixed windows."""

    def __init__(self, redis: Redis | None):
        self.redis = redis

    @staticmethod
    def _key(operation: str, principal: str, window_index: int) -> str:
        return f"ratelimit:{operation}:{principal}:{window_index}"

    async def hit(
        self,
        operation: str,
        principal: str,
        limit: int,
        window_seconds: int,
        now: float | None = None,
    ) -> int:
        """Record one request and enforce the limit.

        Args:
            operation: Operation name (e.g. "create-payment-intent")
            principal: Caller identity (buyer id, terminal id)
            limit: Maximum requests per window
            window_seconds: Window length
            now: Current epoch seconds (for deterministic testing)

        Returns:
            Request count in the current window

        Raises:
            RateLimitedError: if the count exceeds ``limit``
        """
        now = time.time() if now is None else now
        window_index = int(now // window_seconds)
        key = self._key(operation, principal, window_index)

        if self.redis is None:
            logger.warning("rate_limiter_unavailable", operation=operation, reason="no_redis_client")
            return 0

        try:
            count = await self.redis.incr(key)
            if count == 1:
                await self.redis.expire(key, window_seconds)
        except RedisError as exc:
            logger.warning("rate_limiter_unavailable", operation=operation, error=str(exc))
            return 0

        if count > limit:
            retry_after = max(1, int((window_index + 1) * window_seconds - now))
            logger.info(
                "rate_limited",
                operation=operation,
                principal=principal,
                count=count,
                limit=limit,
                retry_after_seconds=retry_after,
            )
            raise RateLimitedError(operation, retry_after)

        return count
