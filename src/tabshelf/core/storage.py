"""
Key-value storage primitive.

Every persisted collection lives under one key and is read and written whole.
Backends provide get / set / remove and per-key change notifications with
``{oldValue, newValue}`` semantics. There are no transactions: the last write
to a key wins.
"""
import asyncio
import copy
import json
import logging
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable, Iterable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any

from redis.exceptions import RedisError

from tabshelf.core.config import AppConfig
from tabshelf.core.redis import (
    RedisClient,
    RedisUnavailableError,
    get_redis_client,
    set_redis_client,
)

logger = logging.getLogger(__name__)


class StorageKey:
    """Logical key space."""

    USER_SETTINGS = "userSettings"
    SAVED_TABS = "savedTabs"
    CUSTOM_PROJECTS = "customProjects"
    CUSTOM_PROJECT_ORDER = "customProjectOrder"
    PARENT_CATEGORIES = "parentCategories"
    VIEW_MODE = "viewMode"
    DOMAIN_CATEGORY_SETTINGS = "domainCategorySettings"
    DOMAIN_CATEGORY_MAPPINGS = "domainCategoryMappings"
    URLS = "urls"
    URLS_MIGRATION_COMPLETED = "urlsMigrationCompleted"


class StorageError(Exception):
    """Raised when the underlying store fails to read or write."""


@contextmanager
def logged_storage_errors(log: logging.Logger, operation: str, *args: Any) -> Iterator[None]:
    """
    Log a ``StorageError`` raised inside the block, then re-raise it.

    ``operation`` is a %-style message naming what was being done.
    """
    try:
        yield
    except StorageError:
        log.exception("Storage failure: " + operation, *args)
        raise


@dataclass(frozen=True)
class StorageChange:
    """One key's change. ``new_value`` is None when the key was removed."""

    old_value: Any = None
    new_value: Any = None

    def to_dict(self) -> dict[str, Any]:
        """Serialize in the wire shape used by change notifications."""
        result: dict[str, Any] = {}
        if self.old_value is not None:
            result["oldValue"] = self.old_value
        if self.new_value is not None:
            result["newValue"] = self.new_value
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "StorageChange":
        return cls(old_value=data.get("oldValue"), new_value=data.get("newValue"))


ChangeListener = Callable[[dict[str, StorageChange]], Awaitable[None]]


class KeyValueStore(ABC):
    """Interface shared by storage backends."""

    def __init__(self) -> None:
        self._listeners: list[ChangeListener] = []

    @abstractmethod
    async def get(self, keys: str | Iterable[str]) -> dict[str, Any]:
        """Return stored values for the given keys; missing keys are omitted."""

    @abstractmethod
    async def set(self, items: dict[str, Any]) -> None:
        """Write each key's value, replacing whatever was stored."""

    @abstractmethod
    async def remove(self, keys: str | Iterable[str]) -> None:
        """Delete keys. Removing a missing key is a no-op."""

    async def get_value(self, key: str, default: Any = None) -> Any:
        """Read a single key."""
        data = await self.get(key)
        return data.get(key, default)

    def subscribe(self, listener: ChangeListener) -> Callable[[], None]:
        """
        Register a change listener.

        Returns a callable that unsubscribes the listener. Notifications are
        delivered asynchronously and may arrive after the writer's own call returns.
        """
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    async def _notify(self, changes: dict[str, StorageChange]) -> None:
        for listener in list(self._listeners):
            try:
                await listener(changes)
            except Exception:
                # One failing listener must not starve the others
                logger.exception("Storage change listener failed")

    async def close(self) -> None:  # noqa: B027 - optional hook
        """Release backend resources."""


def _as_key_list(keys: str | Iterable[str]) -> list[str]:
    if isinstance(keys, str):
        return [keys]
    return list(keys)


class MemoryStorage(KeyValueStore):
    """
    In-process store.

    Values are deep-copied on the way in and out so callers never share
    mutable state with the store, mirroring JSON serialization in real backends.
    """

    def __init__(self, initial: dict[str, Any] | None = None) -> None:
        super().__init__()
        self._data: dict[str, Any] = copy.deepcopy(initial) if initial else {}
        self._pending: set[asyncio.Task] = set()

    async def get(self, keys: str | Iterable[str]) -> dict[str, Any]:
        return {
            key: copy.deepcopy(self._data[key])
            for key in _as_key_list(keys)
            if key in self._data
        }

    async def set(self, items: dict[str, Any]) -> None:
        changes: dict[str, StorageChange] = {}
        for key, value in items.items():
            new_value = copy.deepcopy(value)
            changes[key] = StorageChange(
                old_value=self._data.get(key),
                new_value=copy.deepcopy(new_value),
            )
            self._data[key] = new_value
        self._schedule(changes)

    async def remove(self, keys: str | Iterable[str]) -> None:
        changes = {
            key: StorageChange(old_value=self._data.pop(key))
            for key in _as_key_list(keys)
            if key in self._data
        }
        if changes:
            self._schedule(changes)

    def snapshot(self) -> dict[str, Any]:
        """Return a deep copy of everything stored (for tests and diagnostics)."""
        return copy.deepcopy(self._data)

    def _schedule(self, changes: dict[str, StorageChange]) -> None:
        if not changes or not self._listeners:
            return
        task = asyncio.get_running_loop().create_task(self._notify(changes))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def wait_for_notifications(self) -> None:
        """Wait until every scheduled change notification has been delivered."""
        while self._pending:
            await asyncio.gather(*list(self._pending))

    async def close(self) -> None:
        await self.wait_for_notifications()


class RedisStorage(KeyValueStore):
    """
    Redis-backed store.

    Values are JSON documents under ``{prefix}{key}``. Writes publish a JSON
    change message on the configured channel so every surface sharing the
    database (including this one) receives notifications.
    """

    def __init__(
        self,
        client: RedisClient,
        prefix: str,
        channel: str,
        owns_client: bool = False,
    ) -> None:
        super().__init__()
        self._client = client
        self._owns_client = owns_client
        self._prefix = prefix
        self._channel = channel
        self._listen_task: asyncio.Task | None = None

    def _full_key(self, key: str) -> str:
        return f"{self._prefix}{key}"

    async def _read(self, keys: list[str]) -> dict[str, Any]:
        try:
            raw_values = await self._client.mget([self._full_key(k) for k in keys])
        except (RedisError, RedisUnavailableError) as e:
            raise StorageError(f"Failed to read {keys}: {e}") from e
        result: dict[str, Any] = {}
        for key, raw in zip(keys, raw_values, strict=True):
            if raw is None:
                continue
            try:
                result[key] = json.loads(raw)
            except json.JSONDecodeError:
                logger.warning("Ignoring undecodable value stored under %s", key)
        return result

    async def get(self, keys: str | Iterable[str]) -> dict[str, Any]:
        return await self._read(_as_key_list(keys))

    async def set(self, items: dict[str, Any]) -> None:
        if not items:
            return
        old_values = await self._read(list(items))
        try:
            await self._client.mset(
                {self._full_key(k): json.dumps(v) for k, v in items.items()},
            )
        except (RedisError, RedisUnavailableError) as e:
            raise StorageError(f"Failed to write {list(items)}: {e}") from e
        changes = {
            key: StorageChange(old_value=old_values.get(key), new_value=value)
            for key, value in items.items()
        }
        await self._publish(changes)

    async def remove(self, keys: str | Iterable[str]) -> None:
        key_list = _as_key_list(keys)
        old_values = await self._read(key_list)
        try:
            await self._client.delete(*[self._full_key(k) for k in key_list])
        except (RedisError, RedisUnavailableError) as e:
            raise StorageError(f"Failed to remove {key_list}: {e}") from e
        changes = {key: StorageChange(old_value=value) for key, value in old_values.items()}
        if changes:
            await self._publish(changes)

    async def _publish(self, changes: dict[str, StorageChange]) -> None:
        payload = json.dumps({key: change.to_dict() for key, change in changes.items()})
        try:
            await self._client.publish(self._channel, payload)
        except (RedisError, RedisUnavailableError) as e:
            # The write itself succeeded; other surfaces will resync on their next read
            logger.warning("Failed to publish change notification: %s", e)

    def subscribe(self, listener: ChangeListener) -> Callable[[], None]:
        unsubscribe = super().subscribe(listener)
        if self._listen_task is None:
            self._listen_task = asyncio.get_running_loop().create_task(self._listen())
        return unsubscribe

    async def _listen(self) -> None:
        pubsub = self._client.pubsub()
        try:
            await pubsub.subscribe(self._channel)
            async for message in pubsub.listen():
                if message.get("type") != "message":
                    continue
                try:
                    data = json.loads(message["data"])
                except (TypeError, json.JSONDecodeError):
                    logger.warning("Ignoring malformed change notification")
                    continue
                changes = {
                    key: StorageChange.from_dict(change) for key, change in data.items()
                }
                await self._notify(changes)
        except RedisError as e:
            logger.warning("Change notification listener stopped: %s", e)
        finally:
            await pubsub.aclose()

    async def close(self) -> None:
        if self._listen_task is not None:
            self._listen_task.cancel()
            try:
                await self._listen_task
            except asyncio.CancelledError:
                pass
            self._listen_task = None
        if self._owns_client:
            await self._client.close()
            if get_redis_client() is self._client:
                set_redis_client(None)


async def create_storage(config: AppConfig) -> KeyValueStore:
    """Build the storage backend selected by configuration."""
    if config.storage_backend == "redis":
        client = RedisClient(
            config.redis_url,
            enabled=config.redis_enabled,
            pool_size=config.redis_pool_size,
        )
        await client.connect()
        set_redis_client(client)
        return RedisStorage(
            client,
            prefix=config.key_prefix,
            channel=config.changes_channel,
            owns_client=True,
        )
    return MemoryStorage()
