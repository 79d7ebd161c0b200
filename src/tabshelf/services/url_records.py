"""
URL encodings and the shared URL record list.

Groups and projects store their URLs in one of two shapes:

* inline (legacy): full entries embedded in the aggregate (``urls``);
* referenced: ids into the shared ``urls`` record list (``urlIds``), with
  per-aggregate metadata keyed by record id.

Both shapes are resolved through one accessor into ``UrlEntry`` objects and
written back in the shape they were read. Only the explicit migration pass
converts inline aggregates to referenced ones.
"""
import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any
from uuid import uuid4

from tabshelf.core.storage import KeyValueStore, StorageKey
from tabshelf.schemas.storage import (
    CustomProject,
    ProjectUrl,
    TabGroup,
    TabUrl,
    UrlEncoding,
    UrlEntry,
    UrlMetadata,
    UrlRecord,
    dump_records,
)
from tabshelf.services.period import now_ms

logger = logging.getLogger(__name__)


def new_id() -> str:
    return str(uuid4())


@dataclass
class MigrationResult:
    """Counts from a migration pass."""

    records: int = 0
    groups: int = 0
    projects: int = 0
    already_done: bool = False


class UrlRecordStore:
    """Access to the shared URL record list and the encoding accessor."""

    def __init__(
        self,
        storage: KeyValueStore,
        clock: Callable[[], int] = now_ms,
        id_factory: Callable[[], str] = new_id,
    ) -> None:
        self._storage = storage
        self._clock = clock
        self._id_factory = id_factory

    async def get_all(self) -> list[UrlRecord]:
        raw = await self._storage.get_value(StorageKey.URLS, [])
        return [UrlRecord.model_validate(item) for item in raw]

    async def save_all(self, records: list[UrlRecord]) -> None:
        await self._storage.set({StorageKey.URLS: dump_records(records)})
        logger.debug("Saved %d URL records", len(records))

    async def record_map(self) -> dict[str, UrlRecord]:
        return {record.id: record for record in await self.get_all()}

    async def get_by_ids(self, ids: list[str]) -> list[UrlRecord]:
        """Records for the given ids in id order; unknown ids are skipped."""
        records = await self.record_map()
        return [records[i] for i in ids if i in records]

    async def find_by_url(self, url: str) -> UrlRecord | None:
        for record in await self.get_all():
            if record.url == url:
                return record
        return None

    async def upsert(self, entries: list[UrlEntry]) -> list[UrlRecord]:
        """
        Create or update one record per entry in a single read-modify-write.

        An existing record (matched by URL) takes the entry's title, favicon and
        saved time; missing saved times are stamped with the current time.

        Returns:
            The records, in entry order.
        """
        records = await self.get_all()
        by_url = {record.url: record for record in records}
        result: list[UrlRecord] = []
        changed = False
        for entry in entries:
            record = by_url.get(entry.url)
            saved_at = entry.saved_at if entry.saved_at is not None else self._clock()
            if record is None:
                record = UrlRecord(
                    id=self._id_factory(),
                    url=entry.url,
                    title=entry.title,
                    saved_at=saved_at,
                    fav_icon_url=entry.fav_icon_url,
                )
                records.append(record)
                by_url[entry.url] = record
                changed = True
            elif (
                record.title != entry.title
                or record.saved_at != saved_at
                or (entry.fav_icon_url is not None and record.fav_icon_url != entry.fav_icon_url)
            ):
                record.title = entry.title
                record.saved_at = saved_at
                if entry.fav_icon_url is not None:
                    record.fav_icon_url = entry.fav_icon_url
                changed = True
            result.append(record)
        if changed:
            await self.save_all(records)
        return result

    async def is_migrated(self) -> bool:
        return bool(await self._storage.get_value(StorageKey.URLS_MIGRATION_COMPLETED, False))

    async def encoding_for_new_records(self) -> UrlEncoding:
        """New aggregates use the referenced shape once the migration has run."""
        if await self.is_migrated():
            return UrlEncoding.REFERENCED
        return UrlEncoding.INLINE

    # ------------------------------------------------------------------
    # Accessor
    # ------------------------------------------------------------------

    async def resolve_group_urls(
        self,
        group: TabGroup,
        records: dict[str, UrlRecord] | None = None,
    ) -> list[UrlEntry]:
        """Normalize a group's URLs regardless of encoding."""
        if group.encoding is UrlEncoding.INLINE:
            return [
                UrlEntry(
                    url=item.url,
                    title=item.title,
                    saved_at=item.saved_at,
                    sub_category=item.sub_category,
                    fav_icon_url=item.fav_icon_url,
                )
                for item in group.urls or []
            ]
        if records is None:
            records = await self.record_map()
        sub_categories = group.url_sub_categories or {}
        entries = []
        for url_id in group.url_ids or []:
            record = records.get(url_id)
            if record is None:
                logger.warning("Group %s references missing URL record %s", group.id, url_id)
                continue
            entries.append(
                UrlEntry(
                    url=record.url,
                    title=record.title,
                    saved_at=record.saved_at,
                    fav_icon_url=record.fav_icon_url,
                    sub_category=sub_categories.get(url_id),
                ),
            )
        return entries

    async def resolve_project_urls(
        self,
        project: CustomProject,
        records: dict[str, UrlRecord] | None = None,
    ) -> list[UrlEntry]:
        """Normalize a project's URLs regardless of encoding."""
        if project.encoding is UrlEncoding.INLINE:
            return [
                UrlEntry(
                    url=item.url,
                    title=item.title,
                    saved_at=item.saved_at,
                    notes=item.notes,
                    category=item.category,
                    fav_icon_url=item.fav_icon_url,
                )
                for item in project.urls or []
            ]
        if records is None:
            records = await self.record_map()
        metadata = project.url_metadata or {}
        entries = []
        for url_id in project.url_ids or []:
            record = records.get(url_id)
            if record is None:
                logger.warning("Project %s references missing URL record %s", project.id, url_id)
                continue
            meta = metadata.get(url_id, UrlMetadata())
            entries.append(
                UrlEntry(
                    url=record.url,
                    title=record.title,
                    saved_at=record.saved_at,
                    fav_icon_url=record.fav_icon_url,
                    notes=meta.notes,
                    category=meta.category,
                ),
            )
        return entries

    async def encode_group_urls(self, group: TabGroup, entries: list[UrlEntry]) -> None:
        """Write ``entries`` into ``group`` using the group's own encoding."""
        if group.encoding is UrlEncoding.INLINE:
            extras = _extras_by_url(group.urls)
            group.urls = [
                TabUrl(
                    url=e.url,
                    title=e.title,
                    sub_category=e.sub_category,
                    saved_at=e.saved_at,
                    fav_icon_url=e.fav_icon_url,
                    **extras.get(e.url, {}),
                )
                for e in entries
            ]
            return
        records = await self.upsert(entries)
        group.url_ids = [record.id for record in records]
        sub_categories = {
            record.id: entry.sub_category
            for record, entry in zip(records, entries, strict=True)
            if entry.sub_category
        }
        group.url_sub_categories = sub_categories or None

    async def encode_project_urls(self, project: CustomProject, entries: list[UrlEntry]) -> None:
        """Write ``entries`` into ``project`` using the project's own encoding."""
        if project.encoding is UrlEncoding.INLINE:
            extras = _extras_by_url(project.urls)
            project.urls = [
                ProjectUrl(
                    url=e.url,
                    title=e.title,
                    notes=e.notes,
                    saved_at=e.saved_at,
                    category=e.category,
                    fav_icon_url=e.fav_icon_url,
                    **extras.get(e.url, {}),
                )
                for e in entries
            ]
            return
        records = await self.upsert(entries)
        project.url_ids = [record.id for record in records]
        metadata = {
            record.id: UrlMetadata(notes=entry.notes, category=entry.category)
            for record, entry in zip(records, entries, strict=True)
            if entry.notes or entry.category
        }
        project.url_metadata = metadata or None

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    async def migrate(self) -> MigrationResult:
        """
        Convert every inline group and project to the referenced encoding.

        Runs once: a completion flag is stored together with the converted
        collections in a single write. URLs shared between aggregates map to
        one record; when titles differ the longer one is kept.
        """
        if await self.is_migrated():
            logger.info("URL record migration already completed")
            return MigrationResult(already_done=True)

        data = await self._storage.get(
            [StorageKey.URLS, StorageKey.SAVED_TABS, StorageKey.CUSTOM_PROJECTS],
        )
        records = [UrlRecord.model_validate(item) for item in data.get(StorageKey.URLS, [])]
        by_url = {record.url: record for record in records}
        groups = [TabGroup.model_validate(item) for item in data.get(StorageKey.SAVED_TABS, [])]
        projects = [
            CustomProject.model_validate(item)
            for item in data.get(StorageKey.CUSTOM_PROJECTS, [])
        ]

        def record_for(item: TabUrl | ProjectUrl, saved_at: int | None) -> UrlRecord:
            record = by_url.get(item.url)
            if record is None:
                record = UrlRecord(
                    id=self._id_factory(),
                    url=item.url,
                    title=item.title,
                    saved_at=saved_at if saved_at is not None else self._clock(),
                    fav_icon_url=item.fav_icon_url,
                )
                records.append(record)
                by_url[item.url] = record
            else:
                if item.title and len(item.title) > len(record.title):
                    record.title = item.title
                if record.fav_icon_url is None and item.fav_icon_url:
                    record.fav_icon_url = item.fav_icon_url
            return record

        result = MigrationResult()
        for group in groups:
            if group.encoding is UrlEncoding.REFERENCED:
                continue
            url_ids = []
            sub_categories: dict[str, str] = {}
            for item in group.urls or []:
                record = record_for(item, item.saved_at or group.saved_at)
                url_ids.append(record.id)
                if item.sub_category:
                    sub_categories[record.id] = item.sub_category
            group.url_ids = url_ids
            group.url_sub_categories = sub_categories or None
            group.urls = None
            result.groups += 1

        for project in projects:
            if project.encoding is UrlEncoding.REFERENCED:
                continue
            url_ids = []
            metadata: dict[str, UrlMetadata] = {}
            for item in project.urls or []:
                record = record_for(item, item.saved_at)
                url_ids.append(record.id)
                if item.notes or item.category:
                    metadata[record.id] = UrlMetadata(notes=item.notes, category=item.category)
            project.url_ids = url_ids
            project.url_metadata = metadata or None
            project.urls = None
            result.projects += 1

        result.records = len(records)
        await self._storage.set(
            {
                StorageKey.URLS: dump_records(records),
                StorageKey.SAVED_TABS: dump_records(groups),
                StorageKey.CUSTOM_PROJECTS: dump_records(projects),
                StorageKey.URLS_MIGRATION_COMPLETED: True,
            },
        )
        logger.info(
            "URL record migration complete: %d records, %d groups, %d projects converted",
            result.records,
            result.groups,
            result.projects,
        )
        return result

    async def cleanup_unreferenced(self) -> int:
        """
        Delete records no group or project references.

        Returns:
            Number of records deleted.
        """
        data = await self._storage.get(
            [StorageKey.URLS, StorageKey.SAVED_TABS, StorageKey.CUSTOM_PROJECTS],
        )
        referenced: set[str] = set()
        for item in data.get(StorageKey.SAVED_TABS, []):
            referenced.update(item.get("urlIds") or [])
        for item in data.get(StorageKey.CUSTOM_PROJECTS, []):
            referenced.update(item.get("urlIds") or [])
        records = [UrlRecord.model_validate(item) for item in data.get(StorageKey.URLS, [])]
        kept = [record for record in records if record.id in referenced]
        deleted = len(records) - len(kept)
        if deleted:
            await self.save_all(kept)
            logger.info("Cleaned up %d unreferenced URL records", deleted)
        return deleted


def _extras_by_url(items: list[TabUrl] | list[ProjectUrl] | None) -> dict[str, dict[str, Any]]:
    """Unknown fields of inline entries, keyed by URL, so a rewrite keeps them."""
    return {item.url: dict(item.model_extra or {}) for item in items or []}
