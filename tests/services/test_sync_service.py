"""Tests for the cross-view membership mirror."""
from unittest.mock import AsyncMock

from tabshelf.core.storage import MemoryStorage, StorageKey
from tabshelf.services.domain_store import DomainStore
from tabshelf.services.sync_service import CrossViewSynchronizer
from tests.conftest import legacy_group


async def test__mirror_insert__creates_group_once(sync: CrossViewSynchronizer, domains: DomainStore) -> None:
    first = await sync.mirror_insert("https://a.com/1", "A", 5)
    second = await sync.mirror_insert("https://a.com/1", "A")

    assert first.ok and second.ok
    assert first.group_ids == second.group_ids
    (group,) = await domains.get()
    (entry,) = await domains.resolve_urls(group)
    assert entry.saved_at == 5


async def test__mirror_insert__invalid_url_becomes_warning(sync: CrossViewSynchronizer) -> None:
    result = await sync.mirror_insert("not a url", "Broken")

    assert not result.ok
    assert result.warning.startswith("Could not add not a url to the domain view")


async def test__mirror_remove__removes_from_every_group(
    storage: MemoryStorage,
    sync: CrossViewSynchronizer,
) -> None:
    await storage.set(
        {
            StorageKey.SAVED_TABS: [
                legacy_group("g1", "https://a.com", [{"url": "https://a.com/1"}, {"url": "https://a.com/2"}]),
                legacy_group("g2", "https://a.com", [{"url": "https://a.com/1"}]),
            ],
        },
    )

    result = await sync.mirror_remove("https://a.com/1")

    assert result.ok
    assert result.emptied_group_ids == ["g2"]
    groups = await storage.get_value(StorageKey.SAVED_TABS)
    assert [[u["url"] for u in g["urls"]] for g in groups] == [["https://a.com/2"], []]


async def test__mirror_remove__unexpected_failure_is_contained(storage: MemoryStorage) -> None:
    domains = AsyncMock(spec=DomainStore)
    domains.drop_url.side_effect = RuntimeError("boom")
    sync = CrossViewSynchronizer(storage, domains)

    result = await sync.mirror_remove("https://a.com/1")

    assert result.warning == "Could not remove https://a.com/1 from the domain view: boom"


async def test__find_unmirrored__reports_project_urls_missing_from_domain_view(
    storage: MemoryStorage,
    sync: CrossViewSynchronizer,
) -> None:
    await storage.set(
        {
            StorageKey.SAVED_TABS: [legacy_group("g1", "https://a.com", [{"url": "https://a.com/1"}])],
            StorageKey.CUSTOM_PROJECTS: [
                {
                    "id": "p1",
                    "name": "P",
                    "urls": [{"url": "https://a.com/1"}, {"url": "https://b.com/1"}],
                    "categories": [],
                    "createdAt": 1,
                    "updatedAt": 1,
                },
            ],
        },
    )

    missing = await sync.find_unmirrored()

    assert [(m.project_id, m.url) for m in missing] == [("p1", "https://b.com/1")]
