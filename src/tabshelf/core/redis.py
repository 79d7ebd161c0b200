"""Redis client with connection pooling for the shared key-value store."""
import logging

from redis.asyncio import ConnectionPool, Redis
from redis.asyncio.client import PubSub
from redis.exceptions import RedisError

logger = logging.getLogger(__name__)


class RedisUnavailableError(Exception):
    """Raised when an operation is attempted without a live Redis connection."""

    def __init__(self, operation: str) -> None:
        self.operation = operation
        super().__init__(f"Redis unavailable for {operation}")


class RedisClient:
    """
    Async Redis client with connection pooling.

    Connection failures at startup are logged and leave the client disconnected
    (``is_connected`` is False). Unlike a cache, the key-value store is the
    source of truth, so individual operations raise instead of falling back:
    ``RedisUnavailableError`` when disconnected, ``RedisError`` when a command fails.
    """

    def __init__(self, url: str, enabled: bool = True, pool_size: int = 10) -> None:
        self._url = url
        self._enabled = enabled
        self._pool_size = pool_size
        self._pool: ConnectionPool | None = None
        self._client: Redis | None = None

    async def connect(self) -> None:
        """Initialize connection pool and verify connectivity."""
        if not self._enabled:
            logger.info("Redis disabled by configuration")
            return
        try:
            self._pool = ConnectionPool.from_url(self._url, max_connections=self._pool_size)
            self._client = Redis(connection_pool=self._pool)
            await self._client.ping()
            logger.info("Redis connected successfully")
        except RedisError as e:
            logger.warning("Redis connection failed: %s", e)
            self._client = None
            self._pool = None

    async def close(self) -> None:
        """Close connection pool."""
        if self._client:
            await self._client.aclose()
            self._client = None
            self._pool = None
            logger.info("Redis connection closed")

    @property
    def is_connected(self) -> bool:
        """Check if client is connected."""
        return self._client is not None

    def _require(self, operation: str) -> Redis:
        if self._client is None:
            raise RedisUnavailableError(operation)
        return self._client

    async def ping(self) -> bool:
        """Check Redis connectivity."""
        if not self._client:
            return False
        try:
            return await self._client.ping()
        except RedisError:
            return False

    async def mget(self, keys: list[str]) -> list[bytes | None]:
        """Get several values in one round trip."""
        client = self._require("MGET")
        if not keys:
            return []
        return await client.mget(keys)

    async def mset(self, mapping: dict[str, str]) -> None:
        """Set several values atomically."""
        client = self._require("MSET")
        if mapping:
            await client.mset(mapping)

    async def delete(self, *keys: str) -> None:
        """Delete key(s)."""
        client = self._require("DELETE")
        if keys:
            await client.delete(*keys)

    async def publish(self, channel: str, message: str) -> int:
        """Publish a message, returns the number of receivers."""
        client = self._require("PUBLISH")
        return await client.publish(channel, message)

    def pubsub(self) -> PubSub:
        """Create a pub/sub handle bound to this client's pool."""
        return self._require("PUBSUB").pubsub()

    async def flushdb(self) -> None:
        """Flush current database (for testing)."""
        await self._require("FLUSHDB").flushdb()


# Global Redis client state using a container to avoid global statement
class _RedisState:
    """Container for global Redis client state."""

    client: RedisClient | None = None


_state = _RedisState()


def get_redis_client() -> RedisClient | None:
    """Get the global Redis client instance."""
    return _state.client


def set_redis_client(client: RedisClient | None) -> None:
    """Set the global Redis client instance."""
    _state.client = client
