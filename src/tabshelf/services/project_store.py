"""
Project store: user-named collections of URLs.

Projects are persisted as one list under ``customProjects``; their display
order lives separately under ``customProjectOrder``. Every mutator re-stamps
``updatedAt``. Unknown project ids raise ``NotFoundError``.
"""
import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from pydantic import ValidationError as PydanticValidationError

from tabshelf.core.storage import KeyValueStore, StorageKey, logged_storage_errors
from tabshelf.schemas.storage import (
    DEFAULT_VIEW_MODE,
    CustomProject,
    UrlEncoding,
    UrlEntry,
    ViewMode,
    dump_records,
)
from tabshelf.schemas.validators import validate_name
from tabshelf.services.category_ledger import CategoryLedger, cascade_remove, cascade_rename
from tabshelf.services.domain_store import derive_domain
from tabshelf.services.exceptions import DuplicateNameError, NotFoundError, ValidationError
from tabshelf.services.period import now_ms
from tabshelf.services.sync_service import CrossViewSynchronizer, MirrorResult
from tabshelf.services.url_records import UrlRecordStore, new_id

logger = logging.getLogger(__name__)

VIEW_MODES = ("domain", "custom")


@dataclass
class AddUrlResult:
    """Outcome of adding a URL to a project."""

    project: CustomProject
    created: bool
    mirror: MirrorResult | None = None


@dataclass
class RemoveUrlResult:
    """Outcome of removing a URL from a project. ``warning`` carries a mirror failure."""

    project: CustomProject
    removed: bool
    warning: str | None = None


class ProjectStore:
    """Owns the project collection, its order and the view mode."""

    def __init__(
        self,
        storage: KeyValueStore,
        sync: CrossViewSynchronizer,
        url_records: UrlRecordStore | None = None,
        clock: Callable[[], int] = now_ms,
        id_factory: Callable[[], str] = new_id,
    ) -> None:
        self._storage = storage
        self._sync = sync
        self._clock = clock
        self._id_factory = id_factory
        self.url_records = url_records or UrlRecordStore(storage, clock=clock, id_factory=id_factory)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get(self) -> list[CustomProject]:
        """
        All projects, sorted by the stored project order.

        Projects missing from the order come last in stored order. Malformed
        records (not an object, or without id / name) are left out; ``repair``
        removes them from storage.
        """
        with logged_storage_errors(logger, "read projects"):
            projects = await self._load()
            order = await self._load_order()
        if not order:
            return projects
        position = {project_id: index for index, project_id in enumerate(order)}
        return sorted(projects, key=lambda p: position.get(p.id, len(order)))

    async def get_project(self, project_id: str) -> CustomProject:
        """
        Raises:
            NotFoundError: If no project has this id.
        """
        with logged_storage_errors(logger, "read project %s", project_id):
            projects = await self._load()
        return _find(projects, project_id)

    async def get_project_order(self) -> list[str]:
        with logged_storage_errors(logger, "read project order"):
            return await self._load_order()

    async def resolve_urls(self, project: CustomProject) -> list[UrlEntry]:
        with logged_storage_errors(logger, "resolve URLs of project %s", project.id):
            return await self.url_records.resolve_project_urls(project)

    # ------------------------------------------------------------------
    # Project lifecycle
    # ------------------------------------------------------------------

    async def create(self, name: str, description: str | None = None) -> CustomProject:
        """
        Create an empty project.

        Raises:
            NameValidationError: If the name is empty.
            DuplicateNameError: If a project with the same name exists (case-insensitive).
        """
        name = validate_name(name, "Project")
        with logged_storage_errors(logger, "create project %s", name):
            projects = await self._load()
            if any(p.name.lower() == name.lower() for p in projects):
                raise DuplicateNameError("Project", name)
            now = self._clock()
            project = CustomProject(
                id=self._id_factory(),
                name=name,
                categories=[],
                category_order=[],
                created_at=now,
                updated_at=now,
            )
            if description is not None:
                project.description = description
            if await self.url_records.encoding_for_new_records() is UrlEncoding.REFERENCED:
                project.url_ids = []
            else:
                project.urls = []
            await self._save([*projects, project])
        logger.info("Created project %s (%s)", project.name, project.id)
        return project

    async def rename(self, project_id: str, name: str) -> CustomProject:
        """
        Raises:
            NameValidationError: If the name is empty.
            NotFoundError: If the project does not exist.
            DuplicateNameError: If another project already uses the name.
        """
        name = validate_name(name, "Project")
        with logged_storage_errors(logger, "rename project %s", project_id):
            projects = await self._load()
            project = _find(projects, project_id)
            if any(p.name.lower() == name.lower() and p.id != project_id for p in projects):
                raise DuplicateNameError("Project", name)
            project.name = name
            self._touch(project)
            await self._save(projects)
        return project

    async def delete(self, project_id: str) -> None:
        """
        Delete a project. Its URLs stay in the domain view.

        Raises:
            NotFoundError: If the project does not exist.
        """
        with logged_storage_errors(logger, "delete project %s", project_id):
            projects = await self._load()
            remaining = [p for p in projects if p.id != project_id]
            if len(remaining) == len(projects):
                raise NotFoundError("Project", project_id)
            await self._save(remaining)
            order = await self._load_order()
            if project_id in order:
                await self._storage.set(
                    {StorageKey.CUSTOM_PROJECT_ORDER: [i for i in order if i != project_id]},
                )
        logger.info("Deleted project %s", project_id)

    # ------------------------------------------------------------------
    # URL membership
    # ------------------------------------------------------------------

    async def add_url(
        self,
        project_id: str,
        url: str,
        title: str,
        notes: str | None = None,
        category: str | None = None,
    ) -> AddUrlResult:
        """
        Add a URL to a project, or update it in place if already present.

        A newly added URL is then mirrored into its domain group. The project
        write comes first; a failed mirror is reported on the result and the
        project keeps the URL.

        Raises:
            InvalidUrlError: If no domain can be derived from ``url``.
            NotFoundError: If the project does not exist.
        """
        derive_domain(url)
        with logged_storage_errors(logger, "add %s to project %s", url, project_id):
            projects = await self._load()
            project = _find(projects, project_id)
            entries = await self.url_records.resolve_project_urls(project)
            now = self._clock()

            existing = next((e for e in entries if e.url == url), None)
            if existing is not None:
                existing.title = title
                existing.saved_at = now
                if notes is not None:
                    existing.notes = notes
                if category is not None:
                    existing.category = category
            else:
                entries.append(
                    UrlEntry(url=url, title=title, saved_at=now, notes=notes, category=category),
                )
            await self.url_records.encode_project_urls(project, entries)
            self._touch(project)
            await self._save(projects)

        if existing is not None:
            logger.debug("Updated %s in project %s", url, project_id)
            return AddUrlResult(project=project, created=False)

        logger.info("Added %s to project %s", url, project_id)
        mirror = await self._sync.mirror_insert(url, title, now)
        return AddUrlResult(project=project, created=True, mirror=mirror)

    async def remove_url(self, project_id: str, url: str) -> RemoveUrlResult:
        """
        Remove a URL from a project, then remove it from the domain view.

        The mirrored removal is best effort: its failure is logged and
        returned as ``warning`` while the project removal stands.

        Raises:
            NotFoundError: If the project does not exist.
        """
        with logged_storage_errors(logger, "remove %s from project %s", url, project_id):
            projects = await self._load()
            project = _find(projects, project_id)
            entries = await self.url_records.resolve_project_urls(project)
            kept = [e for e in entries if e.url != url]
            if len(kept) == len(entries):
                return RemoveUrlResult(project=project, removed=False)

            await self.url_records.encode_project_urls(project, kept)
            self._touch(project)
            await self._save(projects)
        logger.info("Removed %s from project %s", url, project_id)

        mirror = await self._sync.mirror_remove(url)
        return RemoveUrlResult(project=project, removed=True, warning=mirror.warning)

    async def set_url_category(self, project_id: str, url: str, category: str | None) -> CustomProject:
        """
        Assign (or with None, clear) the category of one URL in a project.

        Raises:
            NotFoundError: If the project does not exist.
            ValidationError: If ``category`` is not one of the project's categories.
        """

        def apply(project: CustomProject, entries: list[UrlEntry]) -> None:
            if category is not None and category not in project.categories:
                raise ValidationError(f"Category '{category}' does not exist in project {project.id}")
            for entry in entries:
                if entry.url == url:
                    entry.category = category

        return await self._mutate(project_id, apply)

    async def reorder_project_urls(self, project_id: str, urls: list[str]) -> CustomProject:
        """
        Reorder a project's URLs.

        URLs not listed keep their relative order after the listed ones;
        listed URLs that are not in the project are ignored.
        """

        def apply(project: CustomProject, entries: list[UrlEntry]) -> None:
            by_url = {entry.url: entry for entry in entries}
            ordered = [by_url.pop(u) for u in dict.fromkeys(urls) if u in by_url]
            ordered += [entry for entry in entries if entry.url in by_url]
            entries[:] = ordered

        return await self._mutate(project_id, apply)

    # ------------------------------------------------------------------
    # Categories
    # ------------------------------------------------------------------

    async def add_category(self, project_id: str, name: str) -> CustomProject:
        """Add a category. Adding an existing name changes nothing."""
        name = validate_name(name, "Category")

        def apply(project: CustomProject, entries: list[UrlEntry]) -> bool:
            ledger = CategoryLedger.of(project.categories, project.category_order)
            if not ledger.add(name):
                return False
            project.categories, project.category_order = ledger.categories, ledger.order
            return True

        return await self._mutate(project_id, apply)

    async def remove_category(self, project_id: str, name: str) -> CustomProject:
        """Remove a category; every URL referencing it becomes uncategorized."""

        def apply(project: CustomProject, entries: list[UrlEntry]) -> None:
            ledger = CategoryLedger.of(project.categories, project.category_order)
            ledger.remove(name)
            project.categories, project.category_order = ledger.categories, ledger.order
            cascade_remove(entries, name, "category")

        return await self._mutate(project_id, apply)

    async def rename_category(self, project_id: str, old: str, new: str) -> CustomProject:
        """
        Rename a category and every URL reference to it.

        Raises:
            NotFoundError: If the project does not exist.
            DuplicateNameError: If ``new`` already exists on the project. Nothing is written.
        """
        new = validate_name(new, "Category")

        def apply(project: CustomProject, entries: list[UrlEntry]) -> bool:
            ledger = CategoryLedger.of(project.categories, project.category_order)
            if not ledger.rename(old, new):
                return False
            project.categories, project.category_order = ledger.categories, ledger.order
            cascade_rename(entries, old, new, "category")
            return True

        return await self._mutate(project_id, apply)

    async def update_category_order(self, project_id: str, order: list[str]) -> CustomProject:

        def apply(project: CustomProject, entries: list[UrlEntry]) -> None:
            ledger = CategoryLedger.of(project.categories, project.category_order)
            ledger.reorder(order)
            project.category_order = ledger.order

        return await self._mutate(project_id, apply)

    # ------------------------------------------------------------------
    # Order and view mode
    # ------------------------------------------------------------------

    async def update_project_order(self, project_ids: list[str]) -> None:
        """
        Persist the project display order and touch every project.

        Reordering is not a content change, but ``updatedAt`` of every project
        still advances so downstream caches invalidate.
        """
        with logged_storage_errors(logger, "save project order"):
            projects = await self._load()
            if not projects:
                return
            await self._storage.set({StorageKey.CUSTOM_PROJECT_ORDER: list(project_ids)})
            for project in projects:
                self._touch(project)
            await self._save(projects)
        logger.debug("Saved project order: %s", project_ids)

    async def get_view_mode(self) -> ViewMode:
        with logged_storage_errors(logger, "read view mode"):
            mode = await self._storage.get_value(StorageKey.VIEW_MODE, DEFAULT_VIEW_MODE)
        if mode not in VIEW_MODES:
            logger.warning("Unknown view mode %r, using %s", mode, DEFAULT_VIEW_MODE)
            return DEFAULT_VIEW_MODE
        return mode

    async def save_view_mode(self, mode: ViewMode) -> None:
        if mode not in VIEW_MODES:
            raise ValidationError(f"Unknown view mode: {mode!r}")
        with logged_storage_errors(logger, "save view mode"):
            await self._storage.set({StorageKey.VIEW_MODE: mode})

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    async def repair(self) -> int:
        """
        Remove malformed project records from storage.

        Reads skip such records without writing; this makes the removal
        permanent and stores the defaults filled in for missing timestamps
        and categories.

        Returns:
            Number of records removed.
        """
        with logged_storage_errors(logger, "repair projects"):
            raw = await self._storage.get_value(StorageKey.CUSTOM_PROJECTS, [])
            projects = self._parse_all(raw)
            dropped = len(raw) - len(projects)
            if dropped:
                await self._save(projects)
        if dropped:
            logger.warning("Removed %d malformed project records", dropped)
        return dropped

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _load(self) -> list[CustomProject]:
        raw = await self._storage.get_value(StorageKey.CUSTOM_PROJECTS, [])
        projects = self._parse_all(raw)
        if len(projects) != len(raw):
            logger.debug("Skipping %d malformed project records", len(raw) - len(projects))
        return projects

    async def _load_order(self) -> list[str]:
        return list(await self._storage.get_value(StorageKey.CUSTOM_PROJECT_ORDER, []))

    async def _save(self, projects: list[CustomProject]) -> None:
        await self._storage.set({StorageKey.CUSTOM_PROJECTS: dump_records(projects)})

    async def _mutate(
        self,
        project_id: str,
        apply: Callable[[CustomProject, list[UrlEntry]], bool | None],
    ) -> CustomProject:
        with logged_storage_errors(logger, "update project %s", project_id):
            projects = await self._load()
            project = _find(projects, project_id)
            entries = await self.url_records.resolve_project_urls(project)
            if apply(project, entries) is False:
                return project
            await self.url_records.encode_project_urls(project, entries)
            self._touch(project)
            await self._save(projects)
        return project

    def _parse_all(self, raw: list[Any]) -> list[CustomProject]:
        return [project for project in map(self._parse, raw) if project is not None]

    def _parse(self, item: Any) -> CustomProject | None:
        if not isinstance(item, dict) or not item.get("id") or not item.get("name"):
            return None
        data = dict(item)
        # Missing timestamps and categories are completed rather than treated as malformed
        for key in ("createdAt", "updatedAt"):
            if not data.get(key):
                data[key] = self._clock()
        if data.get("categories") is None:
            data["categories"] = []
        try:
            return CustomProject.model_validate(data)
        except PydanticValidationError as e:
            logger.warning("Dropping unreadable project %s: %s", item.get("id"), e)
            return None

    def _touch(self, project: CustomProject) -> None:
        # Strictly increasing even when the clock has not advanced
        project.updated_at = max(self._clock(), project.updated_at + 1)


def _find(projects: list[CustomProject], project_id: str) -> CustomProject:
    for project in projects:
        if project.id == project_id:
            return project
    raise NotFoundError("Project", project_id)

