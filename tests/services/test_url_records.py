"""Tests for the URL record list, the encoding accessor and the migration pass."""
from tabshelf.core.storage import MemoryStorage, StorageKey
from tabshelf.schemas.storage import CustomProject, TabGroup, UrlEncoding, UrlEntry
from tabshelf.services.url_records import UrlRecordStore
from tests.conftest import START_MS, FakeClock, SequentialIds, legacy_group


def make_store(storage: MemoryStorage) -> UrlRecordStore:
    return UrlRecordStore(storage, clock=FakeClock(), id_factory=SequentialIds("rec"))


# =============================================================================
# upsert Tests
# =============================================================================


async def test__upsert__creates_records_in_entry_order(storage: MemoryStorage) -> None:
    store = make_store(storage)

    records = await store.upsert(
        [UrlEntry(url="https://a.com/1", title="One"), UrlEntry(url="https://a.com/2", title="Two")],
    )

    assert [r.id for r in records] == ["rec-1", "rec-2"]
    assert [r.saved_at for r in records] == [START_MS, START_MS]
    stored = await storage.get_value(StorageKey.URLS)
    assert [r["url"] for r in stored] == ["https://a.com/1", "https://a.com/2"]


async def test__upsert__updates_existing_record_by_url(storage: MemoryStorage) -> None:
    store = make_store(storage)
    await store.upsert([UrlEntry(url="https://a.com/1", title="Old", saved_at=1)])

    records = await store.upsert([UrlEntry(url="https://a.com/1", title="New", saved_at=2)])

    assert records[0].id == "rec-1"
    assert records[0].title == "New"
    assert len(await store.get_all()) == 1


async def test__find_by_url_and_get_by_ids(storage: MemoryStorage) -> None:
    store = make_store(storage)
    await store.upsert([UrlEntry(url="https://a.com/1"), UrlEntry(url="https://a.com/2")])

    assert (await store.find_by_url("https://a.com/2")).id == "rec-2"
    assert await store.find_by_url("https://missing.com") is None
    assert [r.id for r in await store.get_by_ids(["rec-2", "nope", "rec-1"])] == ["rec-2", "rec-1"]


# =============================================================================
# Accessor Tests
# =============================================================================


async def test__resolve_group_urls__legacy_inline(storage: MemoryStorage) -> None:
    store = make_store(storage)
    group = TabGroup.model_validate(
        legacy_group("g1", "https://a.com", [{"url": "https://a.com/1", "title": "One", "subCategory": "docs"}]),
    )

    entries = await store.resolve_group_urls(group)

    assert group.encoding is UrlEncoding.INLINE
    assert entries == [UrlEntry(url="https://a.com/1", title="One", sub_category="docs")]


async def test__resolve_group_urls__referenced(storage: MemoryStorage) -> None:
    store = make_store(storage)
    await store.upsert([UrlEntry(url="https://a.com/1", title="One")])
    group = TabGroup(id="g1", domain="https://a.com", url_ids=["rec-1", "missing"], url_sub_categories={"rec-1": "docs"})

    entries = await store.resolve_group_urls(group)

    assert group.encoding is UrlEncoding.REFERENCED
    assert [(e.url, e.sub_category) for e in entries] == [("https://a.com/1", "docs")]


async def test__encode_group_urls__keeps_the_group_encoding(storage: MemoryStorage) -> None:
    store = make_store(storage)
    inline = TabGroup.model_validate(legacy_group("g1", "https://a.com", []))
    referenced = TabGroup(id="g2", domain="https://b.com", url_ids=[])

    await store.encode_group_urls(inline, [UrlEntry(url="https://a.com/1", sub_category="x")])
    await store.encode_group_urls(referenced, [UrlEntry(url="https://b.com/1", sub_category="y")])

    assert inline.to_storage()["urls"] == [{"url": "https://a.com/1", "title": "", "subCategory": "x"}]
    assert "urlIds" not in inline.to_storage()
    assert referenced.to_storage()["urlIds"] == ["rec-1"]
    assert referenced.to_storage()["urlSubCategories"] == {"rec-1": "y"}
    assert "urls" not in referenced.to_storage()


async def test__resolve_project_urls__referenced_metadata(storage: MemoryStorage) -> None:
    store = make_store(storage)
    await store.upsert([UrlEntry(url="https://a.com/1", title="One")])
    project = CustomProject.model_validate(
        {
            "id": "p1",
            "name": "P",
            "urlIds": ["rec-1"],
            "urlMetadata": {"rec-1": {"notes": "read later", "category": "work"}},
            "createdAt": 1,
            "updatedAt": 1,
        },
    )

    entries = await store.resolve_project_urls(project)

    assert entries[0].notes == "read later"
    assert entries[0].category == "work"


async def test__read_only_access__does_not_rewrite_legacy_records(storage: MemoryStorage) -> None:
    raw = legacy_group("g1", "https://a.com", [{"url": "https://a.com/1", "title": "One", "customField": 7}])
    await storage.set({StorageKey.SAVED_TABS: [raw]})
    store = make_store(storage)

    group = TabGroup.model_validate((await storage.get_value(StorageKey.SAVED_TABS))[0])
    await store.resolve_group_urls(group)

    assert await storage.get_value(StorageKey.SAVED_TABS) == [raw]
    assert group.to_storage() == raw


# =============================================================================
# migrate Tests
# =============================================================================


async def test__migrate__converts_groups_and_projects_once(storage: MemoryStorage) -> None:
    await storage.set(
        {
            StorageKey.SAVED_TABS: [
                legacy_group(
                    "g1",
                    "https://a.com",
                    [
                        {"url": "https://a.com/1", "title": "Short", "subCategory": "docs", "savedAt": 10},
                        {"url": "https://a.com/2", "title": "Two"},
                    ],
                    savedAt=5,
                ),
            ],
            StorageKey.CUSTOM_PROJECTS: [
                {
                    "id": "p1",
                    "name": "P",
                    "urls": [{"url": "https://a.com/1", "title": "A much longer title", "notes": "n"}],
                    "categories": [],
                    "createdAt": 1,
                    "updatedAt": 1,
                },
            ],
        },
    )
    store = make_store(storage)

    result = await store.migrate()

    assert result.already_done is False
    assert (result.records, result.groups, result.projects) == (2, 1, 1)
    data = storage.snapshot()
    assert data[StorageKey.URLS_MIGRATION_COMPLETED] is True
    group = data[StorageKey.SAVED_TABS][0]
    assert "urls" not in group
    assert group["urlIds"] == ["rec-1", "rec-2"]
    assert group["urlSubCategories"] == {"rec-1": "docs"}
    project = data[StorageKey.CUSTOM_PROJECTS][0]
    assert project["urlIds"] == ["rec-1"]
    assert project["urlMetadata"] == {"rec-1": {"notes": "n"}}
    records = {r["id"]: r for r in data[StorageKey.URLS]}
    assert records["rec-1"]["title"] == "A much longer title"
    assert records["rec-1"]["savedAt"] == 10
    # Entry without its own saved time takes the group's
    assert records["rec-2"]["savedAt"] == 5

    again = await store.migrate()
    assert again.already_done is True
    assert storage.snapshot() == data


async def test__migrate__carries_favicons_into_records(storage: MemoryStorage) -> None:
    await storage.set(
        {
            StorageKey.SAVED_TABS: [
                legacy_group("g1", "https://a.com", [{"url": "https://a.com/1", "title": "One", "savedAt": 1}]),
            ],
            StorageKey.CUSTOM_PROJECTS: [
                {
                    "id": "p1",
                    "name": "P",
                    "urls": [{"url": "https://a.com/1", "favIconUrl": "https://a.com/f.ico"}],
                    "createdAt": 1,
                    "updatedAt": 1,
                },
            ],
        },
    )
    store = make_store(storage)

    await store.migrate()

    (record,) = await store.get_all()
    assert record.fav_icon_url == "https://a.com/f.ico"


async def test__encoding_for_new_records__follows_migration_flag(storage: MemoryStorage) -> None:
    store = make_store(storage)
    assert await store.encoding_for_new_records() is UrlEncoding.INLINE

    await store.migrate()

    assert await store.encoding_for_new_records() is UrlEncoding.REFERENCED


# =============================================================================
# cleanup_unreferenced Tests
# =============================================================================


async def test__cleanup_unreferenced__deletes_orphans(storage: MemoryStorage) -> None:
    store = make_store(storage)
    await store.upsert([UrlEntry(url="https://a.com/1"), UrlEntry(url="https://a.com/2")])
    await storage.set(
        {StorageKey.SAVED_TABS: [{"id": "g1", "domain": "https://a.com", "urlIds": ["rec-2"]}]},
    )

    assert await store.cleanup_unreferenced() == 1
    assert [r.id for r in await store.get_all()] == ["rec-2"]
