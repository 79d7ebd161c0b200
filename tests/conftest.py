"""Shared fixtures for the tabshelf test suite."""
import itertools
from collections.abc import Iterable
from typing import Any

import pytest

from tabshelf.core.messages import Message, MessageBus
from tabshelf.core.storage import MemoryStorage, StorageError, StorageKey
from tabshelf.services.domain_store import DomainStore
from tabshelf.services.parent_category_service import ParentCategoryService
from tabshelf.services.project_store import ProjectStore
from tabshelf.services.sync_service import CrossViewSynchronizer
from tabshelf.services.url_records import UrlRecordStore

# 2024-01-01T00:00:00Z
START_MS = 1_704_067_200_000

DAY_MS = 24 * 60 * 60 * 1000


class FakeClock:
    """Controllable epoch-millisecond clock."""

    def __init__(self, start: int = START_MS) -> None:
        self.now = start

    def __call__(self) -> int:
        return self.now

    def advance(self, millis: int) -> None:
        self.now += millis


class SequentialIds:
    """Deterministic id factory: id-1, id-2, ..."""

    def __init__(self, prefix: str = "id") -> None:
        self._prefix = prefix
        self._counter = itertools.count(1)

    def __call__(self) -> str:
        return f"{self._prefix}-{next(self._counter)}"


class FailingStorage(MemoryStorage):
    """Memory store whose writes to selected keys fail."""

    def __init__(self, initial: dict[str, Any] | None = None, fail_keys: Iterable[str] = ()) -> None:
        super().__init__(initial)
        self.fail_keys = set(fail_keys)
        self.fail_reads = False

    async def get(self, keys):  # noqa: ANN001
        if self.fail_reads:
            raise StorageError("read failed")
        return await super().get(keys)

    async def set(self, items: dict[str, Any]) -> None:
        failing = self.fail_keys & set(items)
        if failing:
            raise StorageError(f"write failed for {sorted(failing)}")
        await super().set(items)


class RecordingHandler:
    """Message handler that records what it receives."""

    def __init__(self, response: Any = None) -> None:
        self.messages: list[Message] = []
        self.response = response

    async def __call__(self, message: Message) -> Any:
        self.messages.append(message)
        return self.response


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def ids() -> SequentialIds:
    return SequentialIds()


@pytest.fixture
def storage() -> MemoryStorage:
    return MemoryStorage()


@pytest.fixture
def bus() -> MessageBus:
    return MessageBus()


@pytest.fixture
def emptied(bus: MessageBus) -> RecordingHandler:
    """Records every groupEmptied broadcast."""
    handler = RecordingHandler()
    bus.subscribe("groupEmptied", handler)
    return handler


@pytest.fixture
def url_records(storage: MemoryStorage, clock: FakeClock, ids: SequentialIds) -> UrlRecordStore:
    return UrlRecordStore(storage, clock=clock, id_factory=ids)


@pytest.fixture
def categories(storage: MemoryStorage, ids: SequentialIds) -> ParentCategoryService:
    return ParentCategoryService(storage, id_factory=ids)


@pytest.fixture
def domains(
    storage: MemoryStorage,
    bus: MessageBus,
    url_records: UrlRecordStore,
    categories: ParentCategoryService,
    clock: FakeClock,
    ids: SequentialIds,
) -> DomainStore:
    return DomainStore(
        storage,
        bus=bus,
        url_records=url_records,
        categories=categories,
        clock=clock,
        id_factory=ids,
    )


@pytest.fixture
def sync(storage: MemoryStorage, domains: DomainStore) -> CrossViewSynchronizer:
    return CrossViewSynchronizer(storage, domains)


@pytest.fixture
def projects(
    storage: MemoryStorage,
    sync: CrossViewSynchronizer,
    url_records: UrlRecordStore,
    clock: FakeClock,
    ids: SequentialIds,
) -> ProjectStore:
    return ProjectStore(storage, sync, url_records=url_records, clock=clock, id_factory=ids)


async def mark_migrated(storage: MemoryStorage) -> None:
    """Switch new aggregates to the referenced URL encoding."""
    await storage.set({StorageKey.URLS_MIGRATION_COMPLETED: True})


def legacy_group(
    group_id: str,
    domain: str,
    urls: list[dict[str, Any]],
    **extra: Any,
) -> dict[str, Any]:
    """A tab group in the legacy inline shape, as stored."""
    return {"id": group_id, "domain": domain, "urls": urls, **extra}
