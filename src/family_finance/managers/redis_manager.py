"""
Redis manager for handling Redis connections and related utilities.

Redis backs the shared rate-limit counters so limits hold across every API worker.
The connection is created lazily on first use.
"""

from typing import Optional

import redis.asyncio as redis_async
from redis.exceptions import RedisError

from family_finance.config import settings
from family_finance.managers.logging_manager import get_logger
from family_finance.utils.error_handling import UpstreamFailure

logger = get_logger(prefix="[RedisManager]")

REDIS_UNAVAILABLE_MSG: str = "Rate limiting service unavailable. Please try again later."


class RedisManager:
    """
    Manages a single Redis connection for the application.

    Attributes:
        redis_url: The Redis connection URL.
        _redis: The cached Redis connection instance.
    """

    def __init__(self, redis_url: Optional[str] = None) -> None:
        self.redis_url = redis_url or settings.REDIS_URL
        self._redis: Optional[redis_async.Redis] = None
        self.logger = logger

    async def get_redis(self) -> redis_async.Redis:
        """
        Get or create the Redis connection.

        Raises:
            UpstreamFailure: If Redis is unavailable.
        """
        if self._redis is None:
            try:
                self.logger.info("Connecting to Redis at %s", self.redis_url.split("@")[-1])
                client = redis_async.from_url(self.redis_url, decode_responses=True)
                await client.ping()
                self._redis = client
            except (RedisError, OSError) as conn_exc:
                self.logger.error("Failed to create async Redis connection: %s", conn_exc, exc_info=True)
                raise UpstreamFailure(REDIS_UNAVAILABLE_MSG, "REDIS_UNAVAILABLE") from conn_exc
        return self._redis

    async def close(self) -> None:
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None


redis_manager = RedisManager()
