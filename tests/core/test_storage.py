"""Tests for the key-value storage backends."""
import json
import logging
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest
from redis.exceptions import RedisError

from tabshelf.core.config import AppConfig
from tabshelf.core.redis import RedisClient, RedisUnavailableError
from tabshelf.core.storage import (
    MemoryStorage,
    RedisStorage,
    StorageChange,
    StorageError,
    StorageKey,
    create_storage,
    logged_storage_errors,
)


# =============================================================================
# MemoryStorage Tests
# =============================================================================


class TestMemoryStorage:

    async def test__get__omits_missing_keys(self) -> None:
        storage = MemoryStorage({"a": 1})

        assert await storage.get(["a", "b"]) == {"a": 1}
        assert await storage.get_value("b", "fallback") == "fallback"

    async def test__values_are_copied_in_and_out(self) -> None:
        storage = MemoryStorage()
        value = {"items": [1]}
        await storage.set({"k": value})
        value["items"].append(2)

        read = await storage.get_value("k")
        read["items"].append(3)

        assert await storage.get_value("k") == {"items": [1]}

    async def test__set__notifies_with_old_and_new_value(self) -> None:
        storage = MemoryStorage({"k": 1})
        received: list[dict[str, StorageChange]] = []

        async def listener(changes: dict[str, StorageChange]) -> None:
            received.append(changes)

        storage.subscribe(listener)
        await storage.set({"k": 2})
        await storage.wait_for_notifications()

        assert received == [{"k": StorageChange(old_value=1, new_value=2)}]

    async def test__remove__notifies_and_ignores_missing_keys(self) -> None:
        storage = MemoryStorage({"k": 1})
        received: list[dict[str, StorageChange]] = []

        async def listener(changes: dict[str, StorageChange]) -> None:
            received.append(changes)

        storage.subscribe(listener)
        await storage.remove(["k", "missing"])
        await storage.remove("missing")
        await storage.wait_for_notifications()

        assert received == [{"k": StorageChange(old_value=1)}]
        assert storage.snapshot() == {}

    async def test__failing_listener_does_not_block_others(self, caplog: pytest.LogCaptureFixture) -> None:
        storage = MemoryStorage()
        seen: list[str] = []

        async def broken(changes: dict[str, StorageChange]) -> None:
            raise RuntimeError("nope")

        async def working(changes: dict[str, StorageChange]) -> None:
            seen.extend(changes)

        storage.subscribe(broken)
        storage.subscribe(working)
        await storage.set({"k": 1})
        await storage.wait_for_notifications()

        assert seen == ["k"]
        assert "listener failed" in caplog.text

    async def test__unsubscribe__stops_notifications(self) -> None:
        storage = MemoryStorage()
        listener = AsyncMock()

        unsubscribe = storage.subscribe(listener)
        unsubscribe()
        unsubscribe()
        await storage.set({"k": 1})
        await storage.wait_for_notifications()

        listener.assert_not_called()


def test__storage_change__wire_shape() -> None:
    change = StorageChange(old_value=None, new_value={"a": 1})

    assert change.to_dict() == {"newValue": {"a": 1}}
    assert StorageChange.from_dict({"oldValue": 1}) == StorageChange(old_value=1)


# =============================================================================
# RedisStorage Tests
# =============================================================================


class FakeRedis:
    """Stand-in for RedisClient backed by a dict."""

    def __init__(self) -> None:
        self.data: dict[str, str] = {}
        self.published: list[tuple[str, str]] = []
        self.close = AsyncMock()

    async def mget(self, keys: list[str]) -> list[Any]:
        return [self.data.get(k) for k in keys]

    async def mset(self, mapping: dict[str, str]) -> None:
        self.data.update(mapping)

    async def delete(self, *keys: str) -> None:
        for key in keys:
            self.data.pop(key, None)

    async def publish(self, channel: str, message: str) -> int:
        self.published.append((channel, message))
        return 1


@pytest.fixture
def fake_redis() -> FakeRedis:
    return FakeRedis()


@pytest.fixture
def redis_storage(fake_redis: FakeRedis) -> RedisStorage:
    return RedisStorage(fake_redis, prefix="t:", channel="t:changes")


class TestRedisStorage:

    async def test__set_and_get__json_under_prefix(
        self,
        fake_redis: FakeRedis,
        redis_storage: RedisStorage,
    ) -> None:
        await redis_storage.set({StorageKey.VIEW_MODE: "custom"})

        assert fake_redis.data == {"t:viewMode": '"custom"'}
        assert await redis_storage.get([StorageKey.VIEW_MODE, "missing"]) == {"viewMode": "custom"}

    async def test__set__publishes_change(self, fake_redis: FakeRedis, redis_storage: RedisStorage) -> None:
        await redis_storage.set({"k": 1})
        await redis_storage.set({"k": 2})

        channel, payload = fake_redis.published[-1]
        assert channel == "t:changes"
        assert json.loads(payload) == {"k": {"oldValue": 1, "newValue": 2}}

    async def test__remove__publishes_old_value(self, fake_redis: FakeRedis, redis_storage: RedisStorage) -> None:
        await redis_storage.set({"k": 1})

        await redis_storage.remove("k")

        assert fake_redis.data == {}
        assert json.loads(fake_redis.published[-1][1]) == {"k": {"oldValue": 1}}

    async def test__undecodable_value_is_skipped(self, fake_redis: FakeRedis, redis_storage: RedisStorage) -> None:
        fake_redis.data["t:k"] = "{broken"

        assert await redis_storage.get("k") == {}

    @pytest.mark.parametrize("error", [RedisError("down"), RedisUnavailableError("MGET")])
    async def test__read_failure_raises_storage_error(
        self,
        fake_redis: FakeRedis,
        redis_storage: RedisStorage,
        error: Exception,
    ) -> None:
        fake_redis.mget = AsyncMock(side_effect=error)

        with pytest.raises(StorageError):
            await redis_storage.get("k")

    async def test__publish_failure_keeps_write(self, fake_redis: FakeRedis, redis_storage: RedisStorage) -> None:
        fake_redis.publish = AsyncMock(side_effect=RedisError("down"))

        await redis_storage.set({"k": 1})

        assert fake_redis.data == {"t:k": "1"}

    async def test__close__closes_owned_client_only(self, fake_redis: FakeRedis) -> None:
        await RedisStorage(fake_redis, prefix="t:", channel="c").close()
        fake_redis.close.assert_not_awaited()

        await RedisStorage(fake_redis, prefix="t:", channel="c", owns_client=True).close()
        fake_redis.close.assert_awaited_once()


# =============================================================================
# create_storage Tests
# =============================================================================


async def test__create_storage__memory_backend() -> None:
    storage = await create_storage(AppConfig(_env_file=None, storage_backend="memory"))

    assert isinstance(storage, MemoryStorage)


async def test__create_storage__redis_backend(monkeypatch: pytest.MonkeyPatch) -> None:
    client = MagicMock(spec=RedisClient)
    client.connect = AsyncMock()
    monkeypatch.setattr("tabshelf.core.storage.RedisClient", MagicMock(return_value=client))
    set_global = MagicMock()
    monkeypatch.setattr("tabshelf.core.storage.set_redis_client", set_global)

    storage = await create_storage(AppConfig(_env_file=None, storage_backend="redis", key_prefix="x:"))

    assert isinstance(storage, RedisStorage)
    client.connect.assert_awaited_once()
    set_global.assert_called_once_with(client)
    assert storage._channel == "x:changes"


# =============================================================================
# logged_storage_errors Tests
# =============================================================================


def test__logged_storage_errors__logs_and_reraises(caplog: pytest.LogCaptureFixture) -> None:
    log = logging.getLogger("tabshelf.test")

    with pytest.raises(StorageError), logged_storage_errors(log, "write %s", "savedTabs"):
        raise StorageError("boom")

    (record,) = caplog.records
    assert record.levelno == logging.ERROR
    assert record.getMessage() == "Storage failure: write savedTabs"
    assert record.exc_info is not None


def test__logged_storage_errors__ignores_other_errors(caplog: pytest.LogCaptureFixture) -> None:
    with pytest.raises(ValueError), logged_storage_errors(logging.getLogger("tabshelf.test"), "write"):
        raise ValueError("not storage")

    assert caplog.records == []
