"""
Auto-delete task.

Removes saved URLs older than the configured auto-delete period from the
domain view. Projects are curated collections and are never swept.

Usage:
    tabshelf-expiry            # one check against the configured storage
    python -m tabshelf.tasks.expiry

Long-running surfaces use ``ExpiryPoller`` instead, which repeats the check on
a fixed interval until stopped.
"""
import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from tabshelf.core.config import get_config
from tabshelf.core.messages import CheckExpiredTabsMessage, Message, MessageBus
from tabshelf.core.storage import KeyValueStore, create_storage
from tabshelf.schemas.storage import UserSettings
from tabshelf.services.domain_store import DomainStore
from tabshelf.services.period import NEVER, expiration_cutoff, now_ms
from tabshelf.services.settings_service import get_user_settings

logger = logging.getLogger(__name__)


@dataclass
class ExpiryStats:
    """Statistics from an expiry check."""

    period: str = NEVER
    removed_urls: int = 0
    emptied_groups: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        """Convert to simple dict for logging/return."""
        return {
            "period": self.period,
            "removed_urls": self.removed_urls,
            "emptied_groups": len(self.emptied_groups),
        }


class ExpiryService:
    """Runs expiry checks and answers ``checkExpiredTabs`` messages."""

    def __init__(
        self,
        storage: KeyValueStore,
        domains: DomainStore,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        self._storage = storage
        self._domains = domains
        self._clock = clock

    async def check_expired(
        self,
        settings: UserSettings | None = None,
        now: int | None = None,
    ) -> ExpiryStats:
        """
        Remove expired URL entries from every domain group.

        Args:
            settings: Settings to use. Defaults to a fresh read, so a period
                changed by another surface takes effect on the next check.
            now: Current time in epoch milliseconds. Inject a specific time
                for testing boundary conditions.

        Returns:
            ExpiryStats for the check; nothing is removed under ``never``.
        """
        if settings is None:
            settings = await get_user_settings(self._storage)
        if now is None:
            now = self._clock()
        stats = ExpiryStats(period=settings.auto_delete_period)
        if expiration_cutoff(settings.auto_delete_period, now) is None:
            logger.debug("Auto-delete disabled (%s)", settings.auto_delete_period)
            return stats

        result = await self._domains.sweep_expired(settings.auto_delete_period, now)
        stats.removed_urls = result.removed_urls
        stats.emptied_groups = result.emptied_groups
        if stats.removed_urls:
            logger.info("Expiry check complete: %s", stats.to_dict())
        return stats

    async def handle_message(self, message: Message) -> dict[str, Any]:
        """
        Answer a ``checkExpiredTabs`` message.

        Saved times are re-stamped first when the message asks for it.
        """
        if not isinstance(message, CheckExpiredTabsMessage):
            message = CheckExpiredTabsMessage.model_validate(message.model_dump())
        logger.info("Explicit expiry check requested (period=%s)", message.period)
        try:
            if message.update_timestamps:
                await self._domains.update_timestamps(message.period)
            stats = await self.check_expired()
        except Exception as e:
            logger.exception("Expiry check failed")
            return {"status": "error", "error": str(e)}
        return {"status": "completed", "success": True, **stats.to_dict()}

    def attach(self, bus: MessageBus) -> Callable[[], None]:
        """Subscribe to ``checkExpiredTabs``. Returns the unsubscribe callable."""
        return bus.subscribe("checkExpiredTabs", self.handle_message)


class ExpiryPoller:
    """
    Repeats the expiry check on a fixed interval.

    ``stop()`` cancels the pending check and is safe to call more than once,
    so the owner can tear it down without leaking a timer.
    """

    def __init__(self, service: ExpiryService, interval: float) -> None:
        if interval <= 0:
            raise ValueError("Poll interval must be positive")
        self._service = service
        self._interval = interval
        self._task: asyncio.Task | None = None
        self.runs = 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        """Start polling. Starting a running poller is a no-op."""
        if self.running:
            return
        self._task = asyncio.get_running_loop().create_task(self._run())
        logger.info("Expiry poller started (every %ss)", self._interval)

    async def stop(self) -> None:
        if self._task is None:
            return
        task, self._task = self._task, None
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        logger.info("Expiry poller stopped after %d checks", self.runs)

    async def _run(self) -> None:
        while True:
            try:
                await self._service.check_expired()
            except Exception:
                # Keep polling; the next tick retries
                logger.exception("Scheduled expiry check failed")
            self.runs += 1
            await asyncio.sleep(self._interval)


async def run_expiry_check(
    storage: KeyValueStore | None = None,
    now: int | None = None,
) -> ExpiryStats:
    """
    Run one expiry check.

    Args:
        storage: Store to sweep. If None, one is created from configuration.
        now: Current time in epoch milliseconds.
    """
    logger.info("Starting expiry task")
    owned = storage is None
    if storage is None:
        storage = await create_storage(get_config())
    try:
        service = ExpiryService(storage, DomainStore(storage))
        stats = await service.check_expired(now=now)
    finally:
        if owned:
            await storage.close()
    logger.info("Expiry task complete: %s", stats.to_dict())
    return stats


def main() -> None:
    """Entry point for running the expiry check as a script."""
    logging.basicConfig(
        level=get_config().log_level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    asyncio.run(run_expiry_check())


if __name__ == "__main__":
    main()
