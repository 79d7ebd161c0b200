"""Service layer for user settings and the settings gate."""
import fnmatch
import logging
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from typing import Any

from pydantic import ValidationError as PydanticValidationError

from tabshelf.core.messages import CheckExpiredTabsMessage, MessageBus
from tabshelf.core.storage import KeyValueStore, StorageChange, StorageError, StorageKey
from tabshelf.schemas.storage import BrowserTab, UserSettings
from tabshelf.schemas.validators import is_glob_pattern, validate_exclude_patterns
from tabshelf.services.exceptions import ValidationError
from tabshelf.services.period import TEST_PERIODS, is_period, is_shortening

logger = logging.getLogger(__name__)


def default_settings() -> UserSettings:
    return UserSettings()


async def get_user_settings(storage: KeyValueStore) -> UserSettings:
    """
    Get user settings merged over the defaults.

    Fields missing from the stored value (e.g. added in a newer version) take
    their default. A storage failure or an unreadable stored value is logged
    and the defaults are returned.
    """
    try:
        stored = await storage.get_value(StorageKey.USER_SETTINGS)
    except StorageError:
        logger.exception("Failed to load user settings, using defaults")
        return default_settings()
    if not stored:
        return default_settings()
    try:
        return UserSettings.model_validate({**default_settings().to_storage(), **stored})
    except PydanticValidationError as e:
        logger.warning("Stored user settings are invalid, using defaults: %s", e)
        return default_settings()


async def save_user_settings(
    storage: KeyValueStore,
    settings: UserSettings | Mapping[str, Any],
) -> UserSettings:
    """
    Validate and persist user settings.

    A mapping may be partial; missing fields take their defaults.

    Raises:
        PatternValidationError: If an exclusion pattern is invalid.
        ValidationError: If the auto-delete period is unknown.
        StorageError: If the write fails (logged, then re-raised).
    """
    if not isinstance(settings, UserSettings):
        settings = UserSettings.model_validate({**default_settings().to_storage(), **settings})
    settings = settings.model_copy(
        update={"exclude_patterns": validate_exclude_patterns(settings.exclude_patterns)},
    )
    if not is_period(settings.auto_delete_period):
        raise ValidationError(f"Unknown auto-delete period: {settings.auto_delete_period!r}")
    try:
        await storage.set({StorageKey.USER_SETTINGS: settings.to_storage()})
    except StorageError:
        logger.exception("Failed to save user settings")
        raise
    return settings


def matches_exclusion(url: str, settings: UserSettings) -> bool:
    """
    Whether ``url`` matches any exclusion pattern.

    Patterns with a ``*`` wildcard must match the whole URL; other patterns
    match as substrings. ``?`` and ``[`` are literal in both, so stored
    substring patterns such as ``google.com/search?`` keep matching.
    """
    for pattern in settings.exclude_patterns:
        if not pattern:
            continue
        if is_glob_pattern(pattern):
            if fnmatch.fnmatchcase(url, _star_only(pattern)):
                return True
        elif pattern in url:
            return True
    return False


def _star_only(pattern: str) -> str:
    """Escape every fnmatch special character except ``*``."""
    return pattern.replace("[", "[[]").replace("?", "[?]")


def is_excluded(tab: BrowserTab, settings: UserSettings) -> bool:
    """Whether a browser tab should be skipped by the save flow."""
    if settings.exclude_pinned_tabs and tab.pinned:
        return True
    return matches_exclusion(tab.url, settings)


@dataclass(frozen=True)
class PeriodChange:
    """Result of applying a new auto-delete period."""

    previous: str
    period: str
    shortening: bool


class SettingsGate:
    """
    Single owner of the user settings lifecycle.

    Holds the loaded value, which callers pass explicitly into the operations
    that need it. Once attached, it follows ``userSettings`` change
    notifications from any surface; a deleted key reverts to the defaults.
    """

    def __init__(self, storage: KeyValueStore, bus: MessageBus | None = None) -> None:
        self._storage = storage
        self._bus = bus
        self._settings: UserSettings | None = None
        self._unsubscribe: Callable[[], None] | None = None

    @property
    def current(self) -> UserSettings:
        """The loaded settings, or the defaults before the first load."""
        if self._settings is None:
            return default_settings()
        return self._settings

    @property
    def loaded(self) -> bool:
        return self._settings is not None

    async def load(self) -> UserSettings:
        """Load the settings. On first use, when nothing is stored, the defaults are written."""
        settings = await get_user_settings(self._storage)
        try:
            absent = await self._storage.get_value(StorageKey.USER_SETTINGS) is None
        except StorageError:
            absent = False
        if absent:
            try:
                await self._storage.set({StorageKey.USER_SETTINGS: settings.to_storage()})
            except StorageError:
                logger.exception("Failed to write default user settings")
        self._settings = settings
        return settings

    async def save(self, settings: UserSettings | Mapping[str, Any]) -> UserSettings:
        self._settings = await save_user_settings(self._storage, settings)
        return self._settings

    async def update(self, **changes: Any) -> UserSettings:
        """Save the current settings with some fields replaced."""
        current = self._settings if self._settings is not None else await self.load()
        return await self.save({**current.to_storage(), **_aliased(changes)})

    def attach(self) -> None:
        """Start following change notifications. Idempotent."""
        if self._unsubscribe is None:
            self._unsubscribe = self._storage.subscribe(self._on_change)

    def detach(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None

    async def _on_change(self, changes: dict[str, StorageChange]) -> None:
        change = changes.get(StorageKey.USER_SETTINGS)
        if change is None:
            return
        if change.new_value is None:
            logger.info("User settings removed, reverting to defaults")
            self._settings = default_settings()
            return
        try:
            self._settings = UserSettings.model_validate(
                {**default_settings().to_storage(), **change.new_value},
            )
        except PydanticValidationError as e:
            logger.warning("Ignoring invalid user settings notification: %s", e)

    def needs_confirmation(self, period: str) -> bool:
        """Whether switching to ``period`` shortens retention and should be confirmed."""
        return is_shortening(self.current.auto_delete_period, period)

    async def apply_auto_delete_period(self, period: str) -> PeriodChange:
        """
        Save a new auto-delete period and ask the expiry engine to run.

        The broadcast asks for saved times to be re-stamped when a short test
        period is chosen.

        Raises:
            ValidationError: If ``period`` is not a known period token.
        """
        if not is_period(period):
            raise ValidationError(f"Unknown auto-delete period: {period!r}")
        previous = self.current.auto_delete_period
        change = PeriodChange(
            previous=previous,
            period=period,
            shortening=is_shortening(previous, period),
        )
        await self.update(auto_delete_period=period)
        logger.info("Auto-delete period set to %s (was %s)", period, previous)
        if self._bus is not None:
            await self._bus.broadcast(
                CheckExpiredTabsMessage(
                    update_timestamps=period in TEST_PERIODS,
                    period=period,
                    force_reload=True,
                ),
            )
        return change


def _aliased(changes: dict[str, Any]) -> dict[str, Any]:
    """Map snake_case field names to their stored camelCase aliases."""
    fields = UserSettings.model_fields
    return {
        (fields[name].alias or name) if name in fields else name: value
        for name, value in changes.items()
    }
