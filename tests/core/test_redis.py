"""
Tests for the Redis client module.

The client is the source of truth for the shared store, so the interesting
behavior is how it reports an unavailable server: connect never raises, and
every later operation raises RedisUnavailableError instead of pretending.
"""
from unittest.mock import AsyncMock, patch

import pytest
from redis.exceptions import RedisError

from tabshelf.core.redis import RedisClient, RedisUnavailableError, get_redis_client, set_redis_client


class TestRedisClientDisabled:
    """Tests for disabled Redis client."""

    async def test__disabled_client__not_connected(self) -> None:
        client = RedisClient("redis://localhost:6379", enabled=False)
        await client.connect()

        assert client.is_connected is False
        assert await client.ping() is False

        await client.close()

    async def test__disabled_client__operations_raise(self) -> None:
        client = RedisClient("redis://localhost:6379", enabled=False)
        await client.connect()

        with pytest.raises(RedisUnavailableError, match="MGET"):
            await client.mget(["a"])
        with pytest.raises(RedisUnavailableError, match="MSET"):
            await client.mset({"a": "1"})
        with pytest.raises(RedisUnavailableError, match="PUBLISH"):
            await client.publish("channel", "message")
        with pytest.raises(RedisUnavailableError, match="PUBSUB"):
            client.pubsub()


class TestRedisClientUnavailable:
    """Tests for Redis client when server is unavailable."""

    async def test__unavailable_server__connect_fails_gracefully(self) -> None:
        client = RedisClient("redis://localhost:59999", enabled=True)
        await client.connect()

        assert client.is_connected is False
        with pytest.raises(RedisUnavailableError):
            await client.delete("key")

        await client.close()


class TestRedisClientConnected:
    """Tests against a patched connection."""

    @pytest.fixture
    def client(self) -> RedisClient:
        client = RedisClient("redis://localhost:6379")
        client._client = AsyncMock()
        return client

    async def test__mget__empty_keys_skip_round_trip(self, client: RedisClient) -> None:
        assert await client.mget([]) == []
        client._client.mget.assert_not_called()

    async def test__mset__passes_mapping(self, client: RedisClient) -> None:
        await client.mset({"a": "1"})
        client._client.mset.assert_awaited_once_with({"a": "1"})

    async def test__ping__false_on_redis_error(self, client: RedisClient) -> None:
        with patch.object(
            client._client, "ping",
            new_callable=AsyncMock,
            side_effect=RedisError("Connection lost"),
        ):
            assert await client.ping() is False

    async def test__mget__propagates_redis_error(self, client: RedisClient) -> None:
        client._client.mget.side_effect = RedisError("Connection lost")

        with pytest.raises(RedisError):
            await client.mget(["a"])

    async def test__close__releases_connection(self, client: RedisClient) -> None:
        inner = client._client

        await client.close()

        inner.aclose.assert_awaited_once()
        assert client.is_connected is False


def test__global_client_state() -> None:
    client = RedisClient("redis://localhost:6379", enabled=False)
    previous = get_redis_client()
    try:
        set_redis_client(client)
        assert get_redis_client() is client
    finally:
        set_redis_client(previous)
