"""
Optional Redis connection for shared rate limit windows.

Redis is only used when ``REDIS_URL`` is set. Without it, or while the server
is unreachable, the manager reports itself unhealthy and callers fall back to
their process-local stores.
"""

from typing import Optional

from redis.asyncio import ConnectionPool, Redis
from redis.exceptions import RedisError

from .config import RedisConfig, get_config
from .logging import get_logger

logger = get_logger(__name__)


class RedisManager:
    """Owns the pool and tracks whether the last PING succeeded."""

    def __init__(self, config: Optional[RedisConfig] = None) -> None:
        self._config = config
        self.pool: Optional[ConnectionPool] = None
        self.client: Optional[Redis] = None
        self._healthy = False

    @property
    def config(self) -> RedisConfig:
        return self._config or get_config().redis

    @property
    def is_configured(self) -> bool:
        return bool(self.config.url)

    @property
    def is_healthy(self) -> bool:
        return self._healthy

    async def initialize(self) -> None:
        """
        Open the pool and PING once.

        Raises:
            RedisError: If a URL is configured but the server does not answer
        """
        config = self.config
        if not config.url:
            logger.info("Redis not configured, using in-memory stores")
            return

        self.pool = ConnectionPool.from_url(
            config.url,
            max_connections=config.max_connections,
            socket_timeout=config.socket_timeout,
            socket_connect_timeout=config.socket_connect_timeout,
            decode_responses=True,
        )
        self.client = Redis(connection_pool=self.pool)
        if not await self.check_health():
            raise RedisError("Redis did not answer PING")
        logger.info("Redis connection established")

    async def check_health(self) -> bool:
        """PING the server and remember the outcome."""
        if self.client is None:
            self._healthy = False
            return False
        try:
            self._healthy = bool(await self.client.ping())
        except RedisError as e:
            logger.warning("Redis health check failed", error=str(e))
            self._healthy = False
        return self._healthy

    def get_client(self) -> Redis:
        """
        Return the client for a healthy connection.

        Raises:
            RedisError: If Redis is not configured or the last PING failed
        """
        if self.client is None or not self._healthy:
            raise RedisError("Redis connection not available")
        return self.client

    async def close(self) -> None:
        client, pool = self.client, self.pool
        self.client = None
        self.pool = None
        self._healthy = False
        try:
            if client is not None:
                await client.aclose()
            if pool is not None:
                await pool.disconnect()
        except RedisError as e:
            logger.warning("Error closing Redis connection", error=str(e))


redis_manager = RedisManager()


async def initialize_redis() -> None:
    await redis_manager.initialize()


async def close_redis() -> None:
    await redis_manager.close()
