"""
Cross-view membership mirror.

Mirroring is one-directional: inserting a URL into a project makes it a
member of its domain group, and removing it from a project removes it from
every domain group. Domain-only flows never touch projects. Only membership
is mirrored; titles and categories may diverge between the views.

The primary write always happens first and is never rolled back. A crash or
a concurrent writer between the two writes can leave a project URL without
a domain group entry; ``find_unmirrored`` reports such URLs.
"""
import logging
from dataclasses import dataclass, field

from tabshelf.core.storage import KeyValueStore, StorageKey
from tabshelf.schemas.storage import CustomProject
from tabshelf.services.domain_store import DomainStore

logger = logging.getLogger(__name__)


@dataclass
class MirrorResult:
    """Outcome of a mirror attempt. ``warning`` is set when the attempt failed."""

    url: str
    group_ids: list[str] = field(default_factory=list)
    emptied_group_ids: list[str] = field(default_factory=list)
    warning: str | None = None

    @property
    def ok(self) -> bool:
        return self.warning is None


@dataclass(frozen=True)
class UnmirroredUrl:
    project_id: str
    url: str


class CrossViewSynchronizer:
    """Propagates project membership changes into the domain view."""

    def __init__(self, storage: KeyValueStore, domains: DomainStore) -> None:
        self._storage = storage
        self._domains = domains

    async def mirror_insert(self, url: str, title: str, saved_at: int | None = None) -> MirrorResult:
        """
        Find or create the URL's domain group and append the URL if absent.

        Never raises: the project-side insert has already been committed, so a
        failure is logged and carried back as a warning.
        """
        try:
            group, added = await self._domains.ensure_url(url, title, saved_at)
        except Exception as e:
            logger.warning("Mirrored insert of %s failed: %s", url, e)
            return MirrorResult(url=url, warning=f"Could not add {url} to the domain view: {e}")
        if added:
            logger.debug("Mirrored %s into domain group %s", url, group.id)
        return MirrorResult(url=url, group_ids=[group.id])

    async def mirror_remove(self, url: str) -> MirrorResult:
        """
        Remove the URL from every domain group, never raising.

        Emptied groups are kept. A failure is logged and carried back as a
        warning because the project-side removal has already been committed.
        """
        try:
            emptied = await self._domains.drop_url(url)
        except Exception as e:
            logger.warning("Mirrored removal of %s failed: %s", url, e)
            return MirrorResult(url=url, warning=f"Could not remove {url} from the domain view: {e}")
        return MirrorResult(url=url, emptied_group_ids=emptied)

    async def find_unmirrored(self) -> list[UnmirroredUrl]:
        """
        Project URLs that are not a member of any domain group.

        Diagnostic for interrupted mirrors; nothing is repaired.
        """
        records = await self._domains.url_records.record_map()
        domain_urls: set[str] = set()
        for group in await self._domains.get():
            for entry in await self._domains.url_records.resolve_group_urls(group, records):
                domain_urls.add(entry.url)

        raw_projects = await self._storage.get_value(StorageKey.CUSTOM_PROJECTS, [])
        missing = []
        for item in raw_projects:
            project = CustomProject.model_validate(item)
            for entry in await self._domains.url_records.resolve_project_urls(project, records):
                if entry.url not in domain_urls:
                    missing.append(UnmirroredUrl(project_id=project.id, url=entry.url))
        if missing:
            logger.info("%d project URLs are missing from the domain view", len(missing))
        return missing
