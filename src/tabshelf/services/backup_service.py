"""
Service layer for backup export and import.

A backup always carries URLs inline, whatever encoding the live data uses.
Imported data is validated in full before anything is written.
"""
import json
import logging
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any

from pydantic import ValidationError as PydanticValidationError

from tabshelf.core.storage import KeyValueStore, StorageKey
from tabshelf.schemas.backup import (
    BACKUP_VERSION,
    BackupData,
    BackupKeyword,
    BackupParentCategory,
    BackupProject,
    BackupSettings,
    BackupTabGroup,
    BackupUrl,
    ImportResult,
)
from tabshelf.schemas.storage import (
    CustomProject,
    ParentCategory,
    SubCategoryKeyword,
    TabGroup,
    UrlEncoding,
    UrlEntry,
    UserSettings,
    dump_records,
)
from tabshelf.schemas.validators import validate_exclude_patterns
from tabshelf.services.exceptions import BackupValidationError
from tabshelf.services.period import is_period, now_ms
from tabshelf.services.settings_service import default_settings, get_user_settings, save_user_settings
from tabshelf.services.url_records import UrlRecordStore, new_id

logger = logging.getLogger(__name__)


async def export_backup(
    storage: KeyValueStore,
    version: str = BACKUP_VERSION,
) -> BackupData:
    """
    Collect settings, parent categories, tab groups and projects into a backup.

    Empty tab groups are left out.
    """
    records = UrlRecordStore(storage)
    record_map = await records.record_map()
    settings = await get_user_settings(storage)
    data = await storage.get(
        [StorageKey.PARENT_CATEGORIES, StorageKey.SAVED_TABS, StorageKey.CUSTOM_PROJECTS],
    )

    categories = [
        BackupParentCategory(
            id=category.id,
            name=category.name,
            domains=category.domains,
            domain_names=category.domain_names,
        )
        for category in (
            ParentCategory.model_validate(item) for item in data.get(StorageKey.PARENT_CATEGORIES, [])
        )
    ]

    groups = []
    for item in data.get(StorageKey.SAVED_TABS, []):
        group = TabGroup.model_validate(item)
        if group.is_empty:
            continue
        entries = await records.resolve_group_urls(group, record_map)
        groups.append(
            BackupTabGroup(
                id=group.id,
                domain=group.domain,
                urls=[
                    BackupUrl(
                        url=e.url,
                        title=e.title,
                        fav_icon_url=e.fav_icon_url,
                        saved_at=e.saved_at,
                        sub_category=e.sub_category,
                    )
                    for e in entries
                ],
                parent_category_id=group.parent_category_id,
                sub_categories=group.sub_categories or [],
                category_keywords=[
                    kw.model_dump(by_alias=True) for kw in group.category_keywords or []
                ],
                sub_category_order=group.sub_category_order,
                saved_at=group.saved_at,
            ),
        )

    projects = []
    for item in data.get(StorageKey.CUSTOM_PROJECTS, []):
        try:
            project = CustomProject.model_validate(item)
        except PydanticValidationError:
            logger.warning("Skipping unreadable project in export: %s", item.get("id"))
            continue
        entries = await records.resolve_project_urls(project, record_map)
        projects.append(
            BackupProject(
                id=project.id,
                name=project.name,
                description=project.description,
                urls=[
                    BackupUrl(
                        url=e.url,
                        title=e.title,
                        fav_icon_url=e.fav_icon_url,
                        saved_at=e.saved_at,
                        notes=e.notes,
                        category=e.category,
                    )
                    for e in entries
                ],
                categories=project.categories,
                category_order=project.category_order,
                created_at=project.created_at,
                updated_at=project.updated_at,
            ),
        )

    backup = BackupData(
        version=version,
        timestamp=datetime.now(UTC).isoformat(),
        user_settings=BackupSettings.model_validate(settings.to_storage()),
        parent_categories=categories,
        saved_tabs=groups,
        custom_projects=projects,
    )
    logger.info(
        "Exported backup: %d categories, %d groups, %d projects",
        len(categories),
        len(groups),
        len(projects),
    )
    return backup


async def export_backup_json(storage: KeyValueStore) -> str:
    backup = await export_backup(storage)
    return json.dumps(backup.to_json_dict(), indent=2, ensure_ascii=False)


def parse_backup(raw: str | bytes | dict[str, Any]) -> BackupData:
    """
    Parse and validate a backup document.

    Raises:
        BackupValidationError: If the document is not JSON or does not match the backup shape.
    """
    if isinstance(raw, (str, bytes)):
        try:
            raw = json.loads(raw)
        except json.JSONDecodeError as e:
            raise BackupValidationError(f"Backup is not valid JSON: {e}") from e
    try:
        return BackupData.model_validate(raw)
    except PydanticValidationError as e:
        raise BackupValidationError(f"Backup data has an invalid format: {e}") from e


async def import_backup(
    storage: KeyValueStore,
    raw: str | bytes | dict[str, Any],
    merge: bool = True,
    clock: Callable[[], int] = now_ms,
    id_factory: Callable[[], str] = new_id,
) -> ImportResult:
    """
    Import a backup, merging it into the current data or replacing it.

    Merge overlays settings (exclusion patterns are unioned), merges parent
    categories by id with their domain lists unioned, merges tab groups by
    domain with URLs deduplicated, and merges projects by id (or by name).
    Replace overwrites settings, categories and tab groups, and projects when
    the backup contains them.

    Raises:
        BackupValidationError: If the backup is malformed. Nothing is written.
        PatternValidationError: If an imported exclusion pattern is invalid. Nothing is written.
    """
    backup = parse_backup(raw)
    importer = _Importer(storage, clock, id_factory)
    if merge:
        return await importer.merge(backup)
    return await importer.replace(backup)


class _Importer:
    def __init__(
        self,
        storage: KeyValueStore,
        clock: Callable[[], int],
        id_factory: Callable[[], str],
    ) -> None:
        self._storage = storage
        self._clock = clock
        self._id_factory = id_factory
        self._records = UrlRecordStore(storage, clock=clock, id_factory=id_factory)

    async def merge(self, backup: BackupData) -> ImportResult:
        current_settings = await get_user_settings(self._storage)
        overrides = backup.user_settings.overrides()
        overrides["excludePatterns"] = list(
            dict.fromkeys([*current_settings.exclude_patterns, *backup.user_settings.exclude_patterns]),
        )
        settings = self._settings_from({**current_settings.to_storage(), **overrides})

        data = await self._storage.get(
            [StorageKey.PARENT_CATEGORIES, StorageKey.SAVED_TABS, StorageKey.CUSTOM_PROJECTS],
        )
        categories = [ParentCategory.model_validate(i) for i in data.get(StorageKey.PARENT_CATEGORIES, [])]
        groups = [TabGroup.model_validate(i) for i in data.get(StorageKey.SAVED_TABS, [])]
        projects = [CustomProject.model_validate(i) for i in data.get(StorageKey.CUSTOM_PROJECTS, [])]

        by_id = {category.id: category for category in categories}
        added_categories = 0
        for imported in backup.parent_categories:
            existing = by_id.get(imported.id)
            if existing is None:
                category = ParentCategory(
                    id=imported.id,
                    name=imported.name,
                    domains=list(imported.domains),
                    domain_names=list(imported.domain_names),
                )
                categories.append(category)
                by_id[category.id] = category
                added_categories += 1
                continue
            existing.name = imported.name
            existing.domains = _union(existing.domains, imported.domains)
            existing.domain_names = _union(existing.domain_names, imported.domain_names)

        encoding = await self._records.encoding_for_new_records()
        record_map = await self._records.record_map()
        added_domains = 0
        for imported in backup.saved_tabs:
            existing = next((g for g in groups if g.domain == imported.domain), None)
            if existing is None:
                group = self._new_group(imported, encoding, taken={g.id for g in groups})
                await self._records.encode_group_urls(group, _group_entries(imported))
                groups.append(group)
                added_domains += 1
                continue
            entries = await self._records.resolve_group_urls(existing, record_map)
            known = {entry.url for entry in entries}
            entries += [e for e in _group_entries(imported) if e.url not in known]
            existing.sub_categories = _union(existing.sub_categories or [], imported.sub_categories)
            order = existing.sub_category_order
            if order is not None:
                existing.sub_category_order = _union(order, existing.sub_categories)
            existing.category_keywords = _merge_keywords(
                existing.category_keywords or [],
                imported.category_keywords,
            )
            existing.parent_category_id = imported.parent_category_id or existing.parent_category_id
            if existing.saved_at is not None and imported.saved_at is not None:
                existing.saved_at = min(existing.saved_at, imported.saved_at)
            elif imported.saved_at is not None:
                existing.saved_at = imported.saved_at
            await self._records.encode_group_urls(existing, entries)
            record_map = await self._records.record_map()

        added_projects = 0
        for imported in backup.custom_projects:
            existing = next(
                (
                    p
                    for p in projects
                    if p.id == imported.id or p.name.lower() == imported.name.lower()
                ),
                None,
            )
            if existing is None:
                project = self._new_project(imported, encoding)
                await self._records.encode_project_urls(project, _project_entries(imported))
                projects.append(project)
                added_projects += 1
                continue
            entries = await self._records.resolve_project_urls(existing, record_map)
            known = {entry.url for entry in entries}
            entries += [e for e in _project_entries(imported) if e.url not in known]
            existing.categories = _union(existing.categories, imported.categories)
            if existing.category_order is not None:
                existing.category_order = _union(existing.category_order, existing.categories)
            existing.updated_at = max(self._clock(), existing.updated_at + 1)
            await self._records.encode_project_urls(existing, entries)
            record_map = await self._records.record_map()

        await save_user_settings(self._storage, settings)
        await self._storage.set(
            {
                StorageKey.PARENT_CATEGORIES: dump_records(categories),
                StorageKey.SAVED_TABS: dump_records(groups),
                StorageKey.CUSTOM_PROJECTS: dump_records(projects),
            },
        )
        message = (
            f"Merged backup ({added_categories} categories, {added_domains} domains, "
            f"{added_projects} projects added)"
        )
        logger.info(message)
        return ImportResult(
            merged=True,
            added_categories=added_categories,
            added_domains=added_domains,
            added_projects=added_projects,
            message=message,
        )

    async def replace(self, backup: BackupData) -> ImportResult:
        settings = self._settings_from(
            {**default_settings().to_storage(), **backup.user_settings.overrides()},
        )
        categories = [
            ParentCategory(
                id=imported.id,
                name=imported.name,
                domains=list(imported.domains),
                domain_names=list(imported.domain_names),
            )
            for imported in backup.parent_categories
        ]

        encoding = await self._records.encoding_for_new_records()
        groups: list[TabGroup] = []
        for imported in backup.saved_tabs:
            group = self._new_group(imported, encoding, taken={g.id for g in groups})
            await self._records.encode_group_urls(group, _group_entries(imported))
            groups.append(group)

        items: dict[str, Any] = {
            StorageKey.PARENT_CATEGORIES: dump_records(categories),
            StorageKey.SAVED_TABS: dump_records(groups),
        }
        if "custom_projects" in backup.model_fields_set:
            projects = []
            for imported in backup.custom_projects:
                project = self._new_project(imported, encoding)
                await self._records.encode_project_urls(project, _project_entries(imported))
                projects.append(project)
            items[StorageKey.CUSTOM_PROJECTS] = dump_records(projects)
            items[StorageKey.CUSTOM_PROJECT_ORDER] = [p.id for p in projects]

        await save_user_settings(self._storage, settings)
        await self._storage.set(items)
        message = f"Replaced data with backup version {backup.version} from {backup.timestamp}"
        logger.info(message)
        return ImportResult(
            merged=False,
            added_categories=len(categories),
            added_domains=len(groups),
            added_projects=len(items.get(StorageKey.CUSTOM_PROJECTS, [])),
            message=message,
        )

    def _settings_from(self, data: dict[str, Any]) -> UserSettings:
        try:
            settings = UserSettings.model_validate(data)
        except PydanticValidationError as e:
            raise BackupValidationError(f"Backup settings are invalid: {e}") from e
        if not is_period(settings.auto_delete_period):
            raise BackupValidationError(
                f"Backup settings have an unknown auto-delete period: {settings.auto_delete_period!r}",
            )
        settings.exclude_patterns = validate_exclude_patterns(settings.exclude_patterns)
        return settings

    def _new_group(self, imported: BackupTabGroup, encoding: UrlEncoding, taken: set[str]) -> TabGroup:
        group = TabGroup(
            id=imported.id if imported.id not in taken else self._id_factory(),
            domain=imported.domain,
            sub_categories=list(imported.sub_categories),
            sub_category_order=(
                _union(imported.sub_category_order, imported.sub_categories)
                if imported.sub_category_order is not None
                else list(imported.sub_categories)
            ),
            category_keywords=[
                SubCategoryKeyword(category_name=kw.category_name, keywords=list(kw.keywords))
                for kw in imported.category_keywords
            ],
        )
        if imported.parent_category_id:
            group.parent_category_id = imported.parent_category_id
        if imported.saved_at is not None:
            group.saved_at = imported.saved_at
        if encoding is UrlEncoding.REFERENCED:
            group.url_ids = []
        else:
            group.urls = []
        return group

    def _new_project(self, imported: BackupProject, encoding: UrlEncoding) -> CustomProject:
        now = self._clock()
        project = CustomProject(
            id=imported.id,
            name=imported.name,
            categories=list(imported.categories),
            category_order=(
                _union(imported.category_order, imported.categories)
                if imported.category_order is not None
                else list(imported.categories)
            ),
            created_at=imported.created_at or now,
            updated_at=imported.updated_at or now,
        )
        if imported.description is not None:
            project.description = imported.description
        if encoding is UrlEncoding.REFERENCED:
            project.url_ids = []
        else:
            project.urls = []
        return project


def _group_entries(imported: BackupTabGroup) -> list[UrlEntry]:
    entries: list[UrlEntry] = []
    seen: set[str] = set()
    for u in imported.urls:
        if u.url in seen:
            continue
        seen.add(u.url)
        entries.append(
            UrlEntry(
                url=u.url,
                title=u.title,
                saved_at=u.saved_at,
                fav_icon_url=u.fav_icon_url,
                sub_category=u.sub_category,
            ),
        )
    return entries


def _project_entries(imported: BackupProject) -> list[UrlEntry]:
    entries: list[UrlEntry] = []
    seen: set[str] = set()
    for u in imported.urls:
        if u.url in seen:
            continue
        seen.add(u.url)
        entries.append(
            UrlEntry(
                url=u.url,
                title=u.title,
                saved_at=u.saved_at,
                fav_icon_url=u.fav_icon_url,
                notes=u.notes,
                category=u.category,
            ),
        )
    return entries


def _union(first: list[str], second: list[str]) -> list[str]:
    return list(dict.fromkeys([*first, *second]))


def _merge_keywords(
    existing: list[SubCategoryKeyword],
    imported: list[BackupKeyword],
) -> list[SubCategoryKeyword]:
    merged = {kw.category_name: kw.model_copy(deep=True) for kw in existing}
    for kw in imported:
        if kw.category_name in merged:
            current = merged[kw.category_name]
            current.keywords = _union(current.keywords, kw.keywords)
        else:
            merged[kw.category_name] = SubCategoryKeyword(
                category_name=kw.category_name,
                keywords=list(kw.keywords),
            )
    return list(merged.values())
