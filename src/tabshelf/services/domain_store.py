"""
Domain store: saved tabs grouped by origin domain.

Groups are persisted as one list under ``savedTabs``. A group whose URL list
becomes empty stays in storage and is invisible to consumers; only
``remove_group`` (explicit user deletion) physically deletes a group.
"""
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from urllib.parse import urlsplit

from tabshelf.core.messages import GroupEmptiedMessage, MessageBus
from tabshelf.core.storage import KeyValueStore, StorageKey, logged_storage_errors
from tabshelf.schemas.storage import (
    BrowserTab,
    SubCategoryKeyword,
    TabGroup,
    UrlEncoding,
    UrlEntry,
    UserSettings,
    dump_records,
)
from tabshelf.services.category_ledger import (
    CategoryLedger,
    cascade_remove,
    cascade_rename,
    remove_from_combined,
    rename_in_combined,
)
from tabshelf.services.exceptions import InvalidUrlError
from tabshelf.services.parent_category_service import ParentCategoryService
from tabshelf.services.period import expiration_cutoff, now_ms
from tabshelf.services.settings_service import is_excluded
from tabshelf.services.url_records import UrlRecordStore, new_id

logger = logging.getLogger(__name__)

# Saved times are pushed this far into the past when a test period is applied
TEST_PERIOD_BACKDATE_MS = {"30sec": 40_000, "1min": 70_000}


def derive_domain(url: str) -> str:
    """
    Derive the group key ``scheme://hostname`` from a URL.

    Raises:
        InvalidUrlError: If the URL has no scheme or hostname.
    """
    try:
        parts = urlsplit(url.strip())
    except ValueError as e:
        raise InvalidUrlError(url) from e
    if not parts.scheme or not parts.hostname:
        raise InvalidUrlError(url)
    return f"{parts.scheme}://{parts.hostname}"


def categorize_by_keywords(
    entries: list[UrlEntry],
    keywords: list[SubCategoryKeyword],
) -> int:
    """
    Assign sub-categories from keyword matches on the lowercased title.

    The first keyword set with a match wins; entries without a match keep
    their current sub-category.

    Returns:
        Number of entries whose sub-category changed.
    """
    changed = 0
    for entry in entries:
        title = entry.title.lower()
        for rule in keywords:
            if any(keyword.lower() in title for keyword in rule.keywords if keyword):
                if entry.sub_category != rule.category_name:
                    entry.sub_category = rule.category_name
                    changed += 1
                break
    return changed


@dataclass
class SaveTabsResult:
    """Outcome of the domain-only save flow."""

    saved: int = 0
    skipped: int = 0
    created_groups: list[str] = field(default_factory=list)


@dataclass
class SweepResult:
    """Outcome of an expiry sweep."""

    removed_urls: int = 0
    emptied_groups: list[str] = field(default_factory=list)


class DomainStore:
    """Owns the tab group collection and its per-group categorization."""

    def __init__(
        self,
        storage: KeyValueStore,
        bus: MessageBus | None = None,
        url_records: UrlRecordStore | None = None,
        categories: ParentCategoryService | None = None,
        clock: Callable[[], int] = now_ms,
        id_factory: Callable[[], str] = new_id,
    ) -> None:
        self._storage = storage
        self._bus = bus
        self._clock = clock
        self._id_factory = id_factory
        self.url_records = url_records or UrlRecordStore(storage, clock=clock, id_factory=id_factory)
        self.categories = categories or ParentCategoryService(storage, id_factory=id_factory)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get(self) -> list[TabGroup]:
        """Every stored group in its stored shape, empty groups included."""
        with logged_storage_errors(logger, "read saved tabs"):
            return await self._load()

    async def get_visible(self) -> list[TabGroup]:
        """Groups that still hold at least one URL."""
        return [group for group in await self.get() if not group.is_empty]

    async def get_group(self, group_id: str) -> TabGroup | None:
        return next((g for g in await self.get() if g.id == group_id), None)

    async def find_by_domain(self, domain: str) -> TabGroup | None:
        return _find_by_domain(await self.get(), domain)

    async def resolve_urls(self, group: TabGroup) -> list[UrlEntry]:
        with logged_storage_errors(logger, "resolve URLs of group %s", group.id):
            return await self.url_records.resolve_group_urls(group)

    async def save(self, groups: list[TabGroup]) -> None:
        with logged_storage_errors(logger, "write %d saved tab groups", len(groups)):
            await self._save(groups)

    async def contains_url(self, url: str) -> bool:
        with logged_storage_errors(logger, "look up %s", url):
            records = await self.url_records.record_map()
            for group in await self._load():
                entries = await self.url_records.resolve_group_urls(group, records)
                if any(entry.url == url for entry in entries):
                    return True
            return False

    # ------------------------------------------------------------------
    # URL membership
    # ------------------------------------------------------------------

    async def upsert_group_urls(self, group_id: str, urls: list[UrlEntry]) -> TabGroup | None:
        """
        Replace the URLs of one group.

        An empty list keeps the group (invisible) and broadcasts ``groupEmptied``.
        An unknown group id is logged and ignored, since this is reached from
        background timers with nobody to report to.

        Returns:
            The updated group, or None if the id is unknown.
        """
        with logged_storage_errors(logger, "replace URLs of group %s", group_id):
            groups = await self._load()
            group = next((g for g in groups if g.id == group_id), None)
            if group is None:
                logger.warning("upsert_group_urls: group %s not found, ignoring", group_id)
                return None
            was_empty = group.is_empty
            await self.url_records.encode_group_urls(group, list(urls))
            await self._save(groups)
        if group.is_empty and not was_empty:
            await self._announce_emptied([group.id])
        return group

    async def ensure_url(
        self,
        url: str,
        title: str,
        saved_at: int | None = None,
    ) -> tuple[TabGroup, bool]:
        """
        Make sure ``url`` is a member of its domain's group, creating the group if needed.

        An existing (possibly empty) group for the domain is reused. New groups
        get their remembered categorization restored.

        Returns:
            The group and whether the URL was added (False when already present).

        Raises:
            InvalidUrlError: If no domain can be derived from ``url``.
        """
        domain = derive_domain(url)
        with logged_storage_errors(logger, "add %s to its domain group", url):
            groups = await self._load()
            group = _find_by_domain(groups, domain)
            created = group is None
            if group is None:
                group = await self._new_group(domain)
                groups.append(group)
            entries = await self.url_records.resolve_group_urls(group)
            if any(entry.url == url for entry in entries):
                return group, False
            entries.append(UrlEntry(url=url, title=title, saved_at=saved_at or self._clock()))
            await self.url_records.encode_group_urls(group, entries)
            await self._save(groups)
            if created:
                await self._link_restored_category(group)
                logger.info("Created domain group %s for %s", group.id, domain)
        return group, True

    async def drop_url(self, url: str) -> list[str]:
        """
        Remove ``url`` from every group containing it.

        Groups left empty are kept and announced with ``groupEmptied``.
        Projects are never touched.

        Returns:
            Ids of the groups that became empty.
        """
        with logged_storage_errors(logger, "remove %s from domain groups", url):
            groups = await self._load()
            records = await self.url_records.record_map()
            emptied: list[str] = []
            changed = False
            for group in groups:
                entries = await self.url_records.resolve_group_urls(group, records)
                kept = [entry for entry in entries if entry.url != url]
                if len(kept) == len(entries):
                    continue
                changed = True
                await self.url_records.encode_group_urls(group, kept)
                if group.is_empty:
                    emptied.append(group.id)
            if changed:
                await self._save(groups)
        if changed:
            await self._announce_emptied(emptied)
        return emptied

    async def remove_url(self, url: str) -> list[str]:
        """Domain-view removal of a URL. Does not cascade to projects."""
        return await self.drop_url(url)

    async def remove_group(self, group_id: str) -> bool:
        """
        Delete a group on explicit user request.

        Before deletion the group's sub-categories and keywords are written to
        the domain category settings table, and its parent category (if any)
        keeps the domain in ``domainNames`` with the mapping table recording
        it, so the categorization comes back when the domain is saved again.

        Returns:
            False if the group does not exist.
        """
        with logged_storage_errors(logger, "remove group %s", group_id):
            groups = await self._load()
            group = next((g for g in groups if g.id == group_id), None)
            if group is None:
                logger.warning("remove_group: group %s not found", group_id)
                return False

            await self.categories.update_domain_settings(
                group.domain,
                group.sub_categories or [],
                group.category_keywords or [],
            )
            if group.parent_category_id:
                await self.categories.remember_domain(group.parent_category_id, group)
                await self.categories.update_mapping(group.domain, group.parent_category_id)

            await self._save([g for g in groups if g.id != group_id])
        logger.info("Removed domain group %s (%s)", group_id, group.domain)
        return True

    async def save_tabs(self, tabs: list[BrowserTab], settings: UserSettings) -> SaveTabsResult:
        """
        Save browser tabs into their domain groups (domain-only flow).

        Tabs matching an exclusion pattern (or pinned, when excluded by
        settings) are skipped. Missing groups are created with their
        remembered categorization. This never creates project membership.
        """
        result = SaveTabsResult()
        with logged_storage_errors(logger, "save %d tabs", len(tabs)):
            groups = await self._load()
            records = await self.url_records.record_map()
            now = self._clock()
            entries_by_group: dict[str, list[UrlEntry]] = {}
            new_groups: list[TabGroup] = []

            for tab in tabs:
                if is_excluded(tab, settings):
                    result.skipped += 1
                    continue
                try:
                    domain = derive_domain(tab.url)
                except InvalidUrlError:
                    logger.warning("Skipping tab with invalid URL: %s", tab.url)
                    result.skipped += 1
                    continue
                group = _find_by_domain(groups, domain)
                if group is None:
                    group = await self._new_group(domain)
                    groups.append(group)
                    new_groups.append(group)
                if group.id not in entries_by_group:
                    entries_by_group[group.id] = await self.url_records.resolve_group_urls(group, records)
                entries = entries_by_group[group.id]
                if any(entry.url == tab.url for entry in entries):
                    continue
                entries.append(
                    UrlEntry(
                        url=tab.url,
                        title=tab.title,
                        saved_at=now,
                        fav_icon_url=tab.fav_icon_url,
                    ),
                )
                result.saved += 1

            for group in groups:
                entries = entries_by_group.get(group.id)
                if entries is None:
                    continue
                if group.category_keywords:
                    categorize_by_keywords(entries, group.category_keywords)
                await self.url_records.encode_group_urls(group, entries)

            if entries_by_group:
                await self._save(groups)
            for group in new_groups:
                await self._link_restored_category(group)
                result.created_groups.append(group.id)
        logger.info(
            "Saved %d tabs (%d skipped, %d new groups)",
            result.saved,
            result.skipped,
            len(result.created_groups),
        )
        return result

    # ------------------------------------------------------------------
    # Sub-categories
    # ------------------------------------------------------------------

    async def add_sub_category(self, group_id: str, name: str) -> bool:
        """Add a sub-category to a group; False if the group is unknown or it exists."""

        def apply(group: TabGroup, entries: list[UrlEntry]) -> bool:
            ledger = CategoryLedger.of(group.sub_categories, group.sub_category_order)
            added = ledger.add(name)
            group.sub_categories, group.sub_category_order = ledger.categories, ledger.order
            return added

        return await self._mutate_group(group_id, apply, remember=True)

    async def remove_sub_category(self, group_id: str, name: str) -> bool:
        """Remove a sub-category; its URLs become uncategorized and its keywords go."""

        def apply(group: TabGroup, entries: list[UrlEntry]) -> bool:
            ledger = CategoryLedger.of(group.sub_categories, group.sub_category_order)
            removed = ledger.remove(name)
            group.sub_categories, group.sub_category_order = ledger.categories, ledger.order
            cascade_remove(entries, name, "sub_category")
            if group.category_keywords:
                group.category_keywords = [
                    kw for kw in group.category_keywords if kw.category_name != name
                ]
            group.sub_category_order_with_uncategorized = remove_from_combined(
                group.sub_category_order_with_uncategorized, name,
            )
            return removed

        return await self._mutate_group(group_id, apply, remember=True)

    async def rename_sub_category(self, group_id: str, old: str, new: str) -> bool:
        """
        Rename a sub-category and every reference to it.

        Raises:
            DuplicateNameError: If ``new`` already exists on the group.
        """

        def apply(group: TabGroup, entries: list[UrlEntry]) -> bool:
            ledger = CategoryLedger.of(group.sub_categories, group.sub_category_order)
            if not ledger.rename(old, new, kind="Sub-category"):
                return False
            group.sub_categories, group.sub_category_order = ledger.categories, ledger.order
            cascade_rename(entries, old, new, "sub_category")
            cascade_rename(group.category_keywords or [], old, new, "category_name")
            group.sub_category_order_with_uncategorized = rename_in_combined(
                group.sub_category_order_with_uncategorized, old, new,
            )
            return True

        return await self._mutate_group(group_id, apply, remember=True)

    async def reorder_sub_categories(
        self,
        group_id: str,
        order: list[str],
        order_with_uncategorized: list[str] | None = None,
    ) -> bool:
        """Persist a new sub-category display order (and optionally the combined one)."""

        def apply(group: TabGroup, entries: list[UrlEntry]) -> bool:
            ledger = CategoryLedger.of(group.sub_categories, group.sub_category_order)
            ledger.reorder(order)
            group.sub_category_order = ledger.order
            if order_with_uncategorized is not None:
                group.sub_category_order_with_uncategorized = list(order_with_uncategorized)
            return True

        return await self._mutate_group(group_id, apply)

    async def set_url_sub_category(
        self,
        group_id: str,
        url: str,
        sub_category: str | None,
    ) -> bool:
        """Assign (or with None, clear) the sub-category of one URL in a group."""

        def apply(group: TabGroup, entries: list[UrlEntry]) -> bool:
            changed = False
            for entry in entries:
                if entry.url == url and entry.sub_category != sub_category:
                    entry.sub_category = sub_category
                    changed = True
            return changed

        return await self._mutate_group(group_id, apply)

    async def set_category_keywords(
        self,
        group_id: str,
        category_name: str,
        keywords: list[str],
    ) -> bool:
        """Set the keywords of one sub-category, then re-categorize the group's URLs."""

        def apply(group: TabGroup, entries: list[UrlEntry]) -> bool:
            rules = list(group.category_keywords or [])
            for rule in rules:
                if rule.category_name == category_name:
                    rule.keywords = list(keywords)
                    break
            else:
                rules.append(SubCategoryKeyword(category_name=category_name, keywords=list(keywords)))
            group.category_keywords = rules
            categorize_by_keywords(entries, rules)
            return True

        return await self._mutate_group(group_id, apply, remember=True)

    async def auto_categorize(self, group_id: str) -> int:
        """
        Re-apply a group's keyword rules to its URLs.

        Returns:
            Number of URLs whose sub-category changed.
        """
        changed = 0

        def apply(group: TabGroup, entries: list[UrlEntry]) -> bool:
            nonlocal changed
            if not group.category_keywords:
                return False
            changed = categorize_by_keywords(entries, group.category_keywords)
            return changed > 0

        await self._mutate_group(group_id, apply)
        return changed

    # ------------------------------------------------------------------
    # Expiry
    # ------------------------------------------------------------------

    async def sweep_expired(self, period: str, now: int | None = None) -> SweepResult:
        """
        Drop URL entries saved at or before the period's cutoff.

        An entry without its own saved time falls back to the group's; with
        neither it is treated as saved now. Emptied groups are kept and announced.
        """
        result = SweepResult()
        now = now if now is not None else self._clock()
        cutoff = expiration_cutoff(period, now)
        if cutoff is None:
            return result
        with logged_storage_errors(logger, "sweep entries expired under %s", period):
            groups = await self._load()
            records = await self.url_records.record_map()
            changed = False
            for group in groups:
                if group.is_empty:
                    continue
                entries = await self.url_records.resolve_group_urls(group, records)
                kept = [
                    entry
                    for entry in entries
                    if _effective_saved_at(entry, group, now) > cutoff
                ]
                if len(kept) == len(entries):
                    continue
                for entry in entries:
                    if entry not in kept:
                        logger.info("Expired %s (%s)", entry.url, group.domain)
                result.removed_urls += len(entries) - len(kept)
                await self.url_records.encode_group_urls(group, kept)
                changed = True
                if group.is_empty:
                    result.emptied_groups.append(group.id)
            if changed:
                await self._save(groups)
        if changed:
            await self._announce_emptied(result.emptied_groups)
        return result

    async def update_timestamps(self, period: str | None, now: int | None = None) -> int:
        """
        Re-stamp every saved time.

        For the short test periods the stamp is pushed just past the period
        so the next sweep shows the effect; otherwise it is the current time.

        Returns:
            The timestamp written, or 0 when nothing is saved.
        """
        now = now if now is not None else self._clock()
        with logged_storage_errors(logger, "re-stamp saved times"):
            groups = await self._load()
            if not groups:
                return 0
            timestamp = now - TEST_PERIOD_BACKDATE_MS.get(period or "", 0)
            records = await self.url_records.record_map()
            for group in groups:
                entries = await self.url_records.resolve_group_urls(group, records)
                for entry in entries:
                    entry.saved_at = timestamp
                await self.url_records.encode_group_urls(group, entries)
                group.saved_at = timestamp
            await self._save(groups)
        logger.info("Re-stamped %d groups to %d", len(groups), timestamp)
        return timestamp

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _load(self) -> list[TabGroup]:
        raw = await self._storage.get_value(StorageKey.SAVED_TABS, [])
        return [TabGroup.model_validate(item) for item in raw]

    async def _save(self, groups: list[TabGroup]) -> None:
        await self._storage.set({StorageKey.SAVED_TABS: dump_records(groups)})

    async def _mutate_group(
        self,
        group_id: str,
        apply: Callable[[TabGroup, list[UrlEntry]], bool],
        remember: bool = False,
    ) -> bool:
        with logged_storage_errors(logger, "update group %s", group_id):
            groups = await self._load()
            group = next((g for g in groups if g.id == group_id), None)
            if group is None:
                logger.warning("Group %s not found", group_id)
                return False
            entries = await self.url_records.resolve_group_urls(group)
            if not apply(group, entries):
                return False
            await self.url_records.encode_group_urls(group, entries)
            await self._save(groups)
            if remember:
                await self.categories.update_domain_settings(
                    group.domain,
                    group.sub_categories or [],
                    group.category_keywords or [],
                )
        return True

    async def _new_group(self, domain: str) -> TabGroup:
        encoding = await self.url_records.encoding_for_new_records()
        group = TabGroup(id=self._id_factory(), domain=domain, saved_at=self._clock())
        if encoding is UrlEncoding.REFERENCED:
            group.url_ids = []
        else:
            group.urls = []

        remembered = await self.categories.find_domain_settings(domain)
        if remembered is not None:
            group.sub_categories = list(remembered.sub_categories)
            group.sub_category_order = list(remembered.sub_categories)
            group.category_keywords = [kw.model_copy(deep=True) for kw in remembered.category_keywords]
        else:
            group.sub_categories = []

        category = await self.categories.find_category_for_domain(domain)
        if category is not None:
            group.parent_category_id = category.id
        return group

    async def _link_restored_category(self, group: TabGroup) -> None:
        if not group.parent_category_id:
            return
        category = await self.categories.get(group.parent_category_id)
        if category is not None:
            await self.categories.attach_new_group(category, group)
            logger.info("Restored %s into parent category %s", group.domain, category.name)

    async def _announce_emptied(self, group_ids: list[str]) -> None:
        if self._bus is None:
            return
        for group_id in group_ids:
            await self._bus.broadcast(GroupEmptiedMessage(group_id=group_id))


def _find_by_domain(groups: list[TabGroup], domain: str) -> TabGroup | None:
    """Prefer the visible group for a domain, fall back to an empty one."""
    matches = [g for g in groups if g.domain == domain]
    for group in matches:
        if not group.is_empty:
            return group
    return matches[0] if matches else None


def _effective_saved_at(entry: UrlEntry, group: TabGroup, now: int) -> int:
    if entry.saved_at is not None:
        return entry.saved_at
    if group.saved_at is not None:
        return group.saved_at
    return now
