"""
Pydantic models for records persisted in the key-value store.

Field names on disk are camelCase; attributes are snake_case. Unknown fields
are kept so a record written by a newer version survives a round trip
through an older one. Records are dumped with ``exclude_unset`` so a record
that was only read is written back in exactly the shape it was read.
"""
from enum import Enum
from typing import Any, Literal, TypeVar

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

ViewMode = Literal["domain", "custom"]
DEFAULT_VIEW_MODE: ViewMode = "domain"

ClickBehavior = Literal[
    "saveCurrentTab",
    "saveWindowTabs",
    "saveSameDomainTabs",
    "saveAllWindowsTabs",
]

# Virtual bucket for entries without a category. Never stored in a category list.
UNCATEGORIZED_KEY = "__uncategorized"


class StoredModel(BaseModel):
    """Base for persisted records."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="allow",
    )

    def to_storage(self) -> dict[str, Any]:
        """Serialize for the key-value store."""
        return self.model_dump(by_alias=True, exclude_unset=True, exclude_none=True)


ModelT = TypeVar("ModelT", bound=StoredModel)


def dump_records(records: list[StoredModel]) -> list[dict[str, Any]]:
    """Serialize a collection for the key-value store."""
    return [record.to_storage() for record in records]


class UrlEncoding(str, Enum):
    """How an aggregate stores its URLs."""

    INLINE = "inline"  # legacy: full entries embedded in the aggregate
    REFERENCED = "referenced"  # ids into the shared `urls` record list


class UrlRecord(StoredModel):
    """Shared URL record referenced by id from groups and projects."""

    id: str
    url: str
    title: str = ""
    saved_at: int
    fav_icon_url: str | None = None


class TabUrl(StoredModel):
    """Legacy inline URL entry embedded in a tab group."""

    url: str
    title: str = ""
    sub_category: str | None = None
    saved_at: int | None = None
    fav_icon_url: str | None = None


class ProjectUrl(StoredModel):
    """Legacy inline URL entry embedded in a custom project."""

    url: str
    title: str = ""
    notes: str | None = None
    saved_at: int | None = None
    category: str | None = None
    fav_icon_url: str | None = None


class UrlMetadata(StoredModel):
    """Per-project metadata for a referenced URL."""

    notes: str | None = None
    category: str | None = None


class UrlEntry(StoredModel):
    """
    Normalized in-memory shape of a URL in either view.

    Produced from both encodings by the URL accessor; never persisted as is.
    """

    url: str
    title: str = ""
    saved_at: int | None = None
    fav_icon_url: str | None = None
    sub_category: str | None = None
    notes: str | None = None
    category: str | None = None


class SubCategoryKeyword(StoredModel):
    """Keywords that auto-assign URLs to a sub-category by title."""

    category_name: str
    keywords: list[str] = []


class TabGroup(StoredModel):
    """Domain-view aggregate: the saved URLs of one origin."""

    id: str
    domain: str
    parent_category_id: str | None = None
    url_ids: list[str] | None = None
    urls: list[TabUrl] | None = None
    url_sub_categories: dict[str, str] | None = None
    sub_categories: list[str] | None = None
    category_keywords: list[SubCategoryKeyword] | None = None
    sub_category_order: list[str] | None = None
    sub_category_order_with_uncategorized: list[str] | None = None
    saved_at: int | None = None

    @property
    def encoding(self) -> UrlEncoding:
        if self.url_ids is not None:
            return UrlEncoding.REFERENCED
        return UrlEncoding.INLINE

    @property
    def url_count(self) -> int:
        if self.url_ids is not None:
            return len(self.url_ids)
        return len(self.urls or [])

    @property
    def is_empty(self) -> bool:
        """Empty groups stay in storage but are invisible to consumers."""
        return self.url_count == 0


class ParentCategory(StoredModel):
    """User-defined label spanning several domains."""

    id: str
    name: str
    domains: list[str] = []
    # Append-only with respect to group deletion
    domain_names: list[str] = []


class DomainCategorySettings(StoredModel):
    """Sub-category configuration remembered per domain across group deletion."""

    domain: str
    sub_categories: list[str] = []
    category_keywords: list[SubCategoryKeyword] = []


class DomainParentCategoryMapping(StoredModel):
    """Remembered parent category of a domain."""

    domain: str
    category_id: str


class CustomProject(StoredModel):
    """Project-view aggregate: a curated, user-named collection of URLs."""

    id: str
    name: str
    description: str | None = None
    url_ids: list[str] | None = None
    urls: list[ProjectUrl] | None = None
    url_metadata: dict[str, UrlMetadata] | None = None
    categories: list[str] = []
    category_order: list[str] | None = None
    created_at: int
    updated_at: int

    @property
    def encoding(self) -> UrlEncoding:
        if self.url_ids is not None:
            return UrlEncoding.REFERENCED
        return UrlEncoding.INLINE


class UserSettings(StoredModel):
    """
    Process-wide user preferences.

    Every field has a default so a stored value missing newer fields is
    completed on read without a migration step.
    """

    remove_tab_after_open: bool = True
    exclude_patterns: list[str] = Field(
        default_factory=lambda: ["chrome-extension://", "chrome://"],
    )
    enable_categories: bool = True
    auto_delete_period: str = "never"
    show_saved_time: bool = False
    click_behavior: ClickBehavior = "saveSameDomainTabs"
    exclude_pinned_tabs: bool = True
    open_url_in_background: bool = True
    open_all_in_new_window: bool = False
    confirm_delete_all: bool = False
    confirm_delete_each: bool = False
    colors: dict[str, str] = {}

    def to_storage(self) -> dict[str, Any]:
        # Settings are always written complete
        return self.model_dump(by_alias=True, exclude_none=True)


class BrowserTab(BaseModel):
    """A tab handed over by the browser integration for the domain-only save flow."""

    url: str
    title: str = ""
    pinned: bool = False
    fav_icon_url: str | None = None
