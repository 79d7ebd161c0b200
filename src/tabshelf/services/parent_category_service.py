"""
Service layer for parent categories and the per-domain side tables.

Parent categories group domains. Two side tables let a domain's
categorization outlive its tab group:

* domain category settings: sub-categories and keywords per domain;
* domain mappings: the parent category a domain last belonged to.

Cross references are plain string handles kept consistent by the explicit
cascades below.
"""
import logging
from collections.abc import Callable

from tabshelf.core.storage import KeyValueStore, StorageKey
from tabshelf.schemas.storage import (
    DomainCategorySettings,
    DomainParentCategoryMapping,
    ParentCategory,
    SubCategoryKeyword,
    TabGroup,
    dump_records,
)
from tabshelf.schemas.validators import validate_parent_category_name
from tabshelf.services.exceptions import DuplicateNameError, NotFoundError
from tabshelf.services.url_records import new_id

logger = logging.getLogger(__name__)


class ParentCategoryService:
    """Parent categories plus the domain side tables."""

    def __init__(
        self,
        storage: KeyValueStore,
        id_factory: Callable[[], str] = new_id,
    ) -> None:
        self._storage = storage
        self._id_factory = id_factory

    # ------------------------------------------------------------------
    # Parent categories
    # ------------------------------------------------------------------

    async def get_all(self) -> list[ParentCategory]:
        raw = await self._storage.get_value(StorageKey.PARENT_CATEGORIES, [])
        return [ParentCategory.model_validate(item) for item in raw]

    async def save_all(self, categories: list[ParentCategory]) -> None:
        await self._storage.set({StorageKey.PARENT_CATEGORIES: dump_records(categories)})

    async def get(self, category_id: str) -> ParentCategory | None:
        for category in await self.get_all():
            if category.id == category_id:
                return category
        return None

    async def create(self, name: str) -> ParentCategory:
        """
        Create a parent category.

        Raises:
            NameValidationError: If the name is empty or longer than 25 characters.
            DuplicateNameError: If a category with the same name exists (case-insensitive).
        """
        name = validate_parent_category_name(name)
        categories = await self.get_all()
        if any(c.name.lower() == name.lower() for c in categories):
            raise DuplicateNameError("Category", name)
        category = ParentCategory(id=self._id_factory(), name=name, domains=[], domain_names=[])
        await self.save_all([*categories, category])
        logger.info("Created parent category %s (%s)", category.name, category.id)
        return category

    async def rename(self, category_id: str, name: str) -> ParentCategory:
        """
        Rename a parent category.

        Raises:
            NameValidationError: If the name is invalid.
            NotFoundError: If the category does not exist.
            DuplicateNameError: If another category already uses the name.
        """
        name = validate_parent_category_name(name)
        categories = await self.get_all()
        target = next((c for c in categories if c.id == category_id), None)
        if target is None:
            raise NotFoundError("Category", category_id)
        if any(c.name.lower() == name.lower() and c.id != category_id for c in categories):
            raise DuplicateNameError("Category", name)
        target.name = name
        await self.save_all(categories)
        return target

    async def delete(self, category_id: str) -> None:
        """
        Delete a parent category.

        Cascades: domain mappings pointing at it are removed and tab groups
        assigned to it become unassigned.

        Raises:
            NotFoundError: If the category does not exist.
        """
        categories = await self.get_all()
        remaining = [c for c in categories if c.id != category_id]
        if len(remaining) == len(categories):
            raise NotFoundError("Category", category_id)
        await self.save_all(remaining)

        mappings = await self.get_mappings()
        kept = [m for m in mappings if m.category_id != category_id]
        if len(kept) != len(mappings):
            await self.save_mappings(kept)

        raw_groups = await self._storage.get_value(StorageKey.SAVED_TABS, [])
        groups = [TabGroup.model_validate(item) for item in raw_groups]
        touched = False
        for group in groups:
            if group.parent_category_id == category_id:
                group.parent_category_id = None
                touched = True
        if touched:
            await self._storage.set({StorageKey.SAVED_TABS: dump_records(groups)})
        logger.info("Deleted parent category %s", category_id)

    async def find_by_domain_name(self, domain: str) -> ParentCategory | None:
        for category in await self.get_all():
            if domain in category.domain_names:
                return category
        return None

    async def assign_group(self, group: TabGroup, category_id: str | None) -> None:
        """
        Assign a tab group's domain to a parent category, or unassign it with None.

        A domain belongs to at most one category, so it is removed from every
        other category's ``domains`` and ``domainNames``. The mapping side table
        follows the assignment.

        Raises:
            NotFoundError: If ``category_id`` does not exist.
        """
        categories = await self.get_all()
        if category_id is not None and not any(c.id == category_id for c in categories):
            raise NotFoundError("Category", category_id)

        for category in categories:
            if category.id == category_id:
                if group.id not in category.domains:
                    category.domains = [*category.domains, group.id]
                if group.domain not in category.domain_names:
                    category.domain_names = [*category.domain_names, group.domain]
            else:
                category.domains = [d for d in category.domains if d != group.id]
                category.domain_names = [d for d in category.domain_names if d != group.domain]
        await self.save_all(categories)
        await self.update_mapping(group.domain, category_id)

    async def remember_domain(self, category_id: str, group: TabGroup) -> None:
        """
        Record that ``group.domain`` belongs to a category, without a live group.

        Idempotent append to ``domainNames``; the group id is dropped from
        ``domains`` because the group is going away.
        """
        categories = await self.get_all()
        changed = False
        for category in categories:
            if group.id in category.domains:
                category.domains = [d for d in category.domains if d != group.id]
                changed = True
            if category.id == category_id and group.domain not in category.domain_names:
                category.domain_names = [*category.domain_names, group.domain]
                changed = True
        if changed:
            await self.save_all(categories)

    async def attach_new_group(self, category: ParentCategory, group: TabGroup) -> None:
        """Link a freshly created group to the category it was restored into."""
        categories = await self.get_all()
        for existing in categories:
            if existing.id != category.id:
                continue
            if group.id not in existing.domains:
                existing.domains = [*existing.domains, group.id]
            if group.domain not in existing.domain_names:
                existing.domain_names = [*existing.domain_names, group.domain]
        await self.save_all(categories)
        await self.update_mapping(group.domain, category.id)

    async def backfill_domain_names(self) -> int:
        """
        Fill ``domainNames`` from live group ids and the mapping table.

        Returns:
            Number of categories whose ``domainNames`` grew.
        """
        categories = await self.get_all()
        raw_groups = await self._storage.get_value(StorageKey.SAVED_TABS, [])
        domains_by_group = {item["id"]: item["domain"] for item in raw_groups if "id" in item}
        mappings = await self.get_mappings()
        updated = 0
        for category in categories:
            names = list(category.domain_names)
            candidates = [domains_by_group.get(group_id) for group_id in category.domains]
            candidates += [m.domain for m in mappings if m.category_id == category.id]
            for domain in candidates:
                if domain and domain not in names:
                    names.append(domain)
            if names != category.domain_names:
                category.domain_names = names
                updated += 1
        if updated:
            await self.save_all(categories)
            logger.info("Backfilled domainNames on %d parent categories", updated)
        return updated

    # ------------------------------------------------------------------
    # Domain mappings
    # ------------------------------------------------------------------

    async def get_mappings(self) -> list[DomainParentCategoryMapping]:
        raw = await self._storage.get_value(StorageKey.DOMAIN_CATEGORY_MAPPINGS, [])
        return [DomainParentCategoryMapping.model_validate(item) for item in raw]

    async def save_mappings(self, mappings: list[DomainParentCategoryMapping]) -> None:
        await self._storage.set({StorageKey.DOMAIN_CATEGORY_MAPPINGS: dump_records(mappings)})

    async def update_mapping(self, domain: str, category_id: str | None) -> None:
        """Set (or with None, drop) the remembered parent category of a domain."""
        mappings = await self.get_mappings()
        existing = next((m for m in mappings if m.domain == domain), None)
        if category_id is None:
            if existing is not None:
                await self.save_mappings([m for m in mappings if m.domain != domain])
            return
        if existing is not None:
            if existing.category_id == category_id:
                return
            existing.category_id = category_id
        else:
            mappings.append(DomainParentCategoryMapping(domain=domain, category_id=category_id))
        await self.save_mappings(mappings)

    async def find_category_for_domain(self, domain: str) -> ParentCategory | None:
        """
        Find the parent category a domain should be restored into.

        The mapping table wins; ``domainNames`` is the fallback.
        """
        categories = await self.get_all()
        mapping = next((m for m in await self.get_mappings() if m.domain == domain), None)
        if mapping is not None:
            found = next((c for c in categories if c.id == mapping.category_id), None)
            if found is not None:
                return found
        return next((c for c in categories if domain in c.domain_names), None)

    # ------------------------------------------------------------------
    # Domain category settings
    # ------------------------------------------------------------------

    async def get_domain_settings(self) -> list[DomainCategorySettings]:
        raw = await self._storage.get_value(StorageKey.DOMAIN_CATEGORY_SETTINGS, [])
        return [DomainCategorySettings.model_validate(item) for item in raw]

    async def save_domain_settings(self, settings: list[DomainCategorySettings]) -> None:
        await self._storage.set({StorageKey.DOMAIN_CATEGORY_SETTINGS: dump_records(settings)})

    async def find_domain_settings(self, domain: str) -> DomainCategorySettings | None:
        for entry in await self.get_domain_settings():
            if entry.domain == domain:
                return entry
        return None

    async def update_domain_settings(
        self,
        domain: str,
        sub_categories: list[str],
        category_keywords: list[SubCategoryKeyword],
    ) -> None:
        """Replace (or create) the remembered categorization of a domain."""
        settings = await self.get_domain_settings()
        replacement = DomainCategorySettings(
            domain=domain,
            sub_categories=list(sub_categories),
            category_keywords=[kw.model_copy(deep=True) for kw in category_keywords],
        )
        for index, entry in enumerate(settings):
            if entry.domain == domain:
                settings[index] = replacement
                break
        else:
            settings.append(replacement)
        await self.save_domain_settings(settings)
