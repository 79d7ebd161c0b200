"""Pydantic schemas for backup export and import."""
from typing import Any

from pydantic import BaseModel, ConfigDict, field_validator
from pydantic.alias_generators import to_camel

from tabshelf.schemas.storage import ClickBehavior

BACKUP_VERSION = "1.0.0"


class BackupModel(BaseModel):
    """Base for backup records: camelCase on the wire, unknown keys ignored."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
    )

    def to_json_dict(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


def normalize_sub_categories(items: Any) -> list[str]:
    """
    Normalize sub-categories to a list of unique names.

    Older backups stored ``{"name": ...}`` objects instead of plain strings;
    anything else is skipped.
    """
    if not isinstance(items, list):
        return []
    names: list[str] = []
    for item in items:
        name = item.get("name") if isinstance(item, dict) else item
        if isinstance(name, str) and name not in names:
            names.append(name)
    return names


def normalize_keywords(items: Any) -> list[dict[str, Any]]:
    """Keep keyword entries that name a category; a non-list keyword field becomes empty."""
    if not isinstance(items, list):
        return []
    result = []
    for item in items:
        if not isinstance(item, dict) or not isinstance(item.get("categoryName"), str):
            continue
        keywords = item.get("keywords")
        result.append(
            {
                "categoryName": item["categoryName"],
                "keywords": [k for k in keywords if isinstance(k, str)] if isinstance(keywords, list) else [],
            },
        )
    return result


class BackupUrl(BackupModel):
    """A URL with its per-view metadata, always inline in a backup."""

    url: str
    title: str = ""
    fav_icon_url: str | None = None
    saved_at: int | None = None
    sub_category: str | None = None
    notes: str | None = None
    category: str | None = None

    @field_validator("title", mode="before")
    @classmethod
    def default_title(cls, v: Any) -> Any:
        return "" if v is None else v


class BackupKeyword(BackupModel):
    category_name: str
    keywords: list[str] = []


class BackupTabGroup(BackupModel):
    id: str
    domain: str
    urls: list[BackupUrl]
    parent_category_id: str | None = None
    sub_categories: list[str] = []
    category_keywords: list[BackupKeyword] = []
    sub_category_order: list[str] | None = None
    saved_at: int | None = None

    @field_validator("sub_categories", mode="before")
    @classmethod
    def coerce_sub_categories(cls, v: Any) -> list[str]:
        return normalize_sub_categories(v)

    @field_validator("category_keywords", mode="before")
    @classmethod
    def coerce_keywords(cls, v: Any) -> list[dict[str, Any]]:
        return normalize_keywords(v)


class BackupParentCategory(BackupModel):
    id: str
    name: str
    domains: list[str]
    domain_names: list[str]


class BackupProject(BackupModel):
    id: str
    name: str
    description: str | None = None
    urls: list[BackupUrl] = []
    categories: list[str] = []
    category_order: list[str] | None = None
    created_at: int | None = None
    updated_at: int | None = None


class BackupSettings(BackupModel):
    """
    User settings as found in a backup.

    The fields every backup has carried are required; newer fields are
    optional and fall back to the current values or defaults on import.
    """

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="allow",
    )

    remove_tab_after_open: bool
    exclude_patterns: list[str]
    enable_categories: bool
    show_saved_time: bool
    click_behavior: ClickBehavior
    auto_delete_period: str | None = None

    def overrides(self) -> dict[str, Any]:
        """Stored-shape keys present in the backup."""
        return self.model_dump(by_alias=True, exclude_none=True)


class BackupData(BackupModel):
    """A full backup document."""

    version: str
    timestamp: str
    user_settings: BackupSettings
    parent_categories: list[BackupParentCategory]
    saved_tabs: list[BackupTabGroup]
    custom_projects: list[BackupProject] = []


class ImportResult(BaseModel):
    """Outcome of an import."""

    merged: bool
    added_categories: int = 0
    added_domains: int = 0
    added_projects: int = 0
    message: str = ""
