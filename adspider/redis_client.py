import asyncio
import logging
from typing import Callable, Optional

import redis.asyncio as redis
from redis.exceptions import RedisError

from .config import settings

logger = logging.getLogger(__name__)

# Reconnect backoff: attempt * STEP, never more than MAX_DELAY
BACKOFF_STEP = 0.1  # seconds
MAX_BACKOFF_DELAY = 3.0  # seconds


class RedisConnection:
    """
    Owns the Redis client shared by the job store and the scheduler.

    The client is built lazily from a single connection pool and checked with
    PING before it is handed out. A client that failed an operation is
    discarded by the caller and rebuilt on the next get_client(). Each
    reconnect round is capped at max_attempts so a dead server never turns
    into a tight retry loop; after a failed round the handle reports itself
    unavailable and returns None.
    """
    def __init__(
        self,
        url: Optional[str] = None,
        max_connections: Optional[int] = None,
        max_attempts: Optional[int] = None,
        client_factory: Optional[Callable[[], redis.Redis]] = None,
    ):
        self.url = url or settings.redis_url
        self.max_connections = max_connections or settings.redis_max_connections
        self.max_attempts = max_attempts or settings.redis_reconnect_attempts
        self._client_factory = client_factory
        self._pool: Optional[redis.ConnectionPool] = None
        self._client: Optional[redis.Redis] = None
        self._lock = asyncio.Lock()
        self.available = False

    def _build_client(self) -> redis.Redis:
        if self._client_factory is not None:
            return self._client_factory()
        if self._pool is None:
            self._pool = redis.ConnectionPool.from_url(
                self.url,
                max_connections=self.max_connections,
                decode_responses=True,
            )
        return redis.Redis(connection_pool=self._pool)

    async def get_client(self) -> Optional[redis.Redis]:
        if self._client is not None:
            return self._client

        async with self._lock:
            # Another coroutine may have reconnected while we waited
            if self._client is not None:
                return self._client

            for attempt in range(1, self.max_attempts + 1):
                try:
                    client = self._build_client()
                    await client.ping()
                    self._client = client
                    if not self.available:
                        logger.info("Redis connected.")
                    self.available = True
                    return client
                except (RedisError, OSError) as e:
                    delay = min(attempt * BACKOFF_STEP, MAX_BACKOFF_DELAY)
                    logger.warning(
                        f"Redis connection attempt {attempt}/{self.max_attempts} failed: {e}. "
                        f"Retrying in {delay:.1f}s."
                    )
                    if attempt < self.max_attempts:
                        await asyncio.sleep(delay)

            logger.error(f"Redis unavailable after {self.max_attempts} attempts.")
            self.available = False
            return None

    def discard(self) -> None:
        """Forgets the current client so the next call reconnects."""
        if self._client is not None:
            logger.warning("Discarding Redis client; it will be rebuilt on next use.")
        self._client = None
        self.available = False

    async def check(self) -> bool:
        client = await self.get_client()
        if client is None:
            return False
        try:
            return bool(await client.ping())
        except RedisError as e:
            logger.error(f"Redis ping failed: {e}")
            self.discard()
            return False

    async def close(self) -> None:
        client, self._client = self._client, None
        if client is not None:
            try:
                await client.aclose()
            except RedisError as e:
                logger.warning(f"Error closing Redis client: {e}")
        if self._pool is not None:
            await self._pool.disconnect()
            self._pool = None
        self.available = False
