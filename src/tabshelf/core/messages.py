"""
One-shot messages broadcast to the other active surfaces of the application.

Messages are fire-and-forget: a message nobody listens for is not an error,
and a failing handler does not stop delivery to the remaining handlers.
"""
import logging
from collections import deque
from collections.abc import Awaitable, Callable
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

logger = logging.getLogger(__name__)


class Message(BaseModel):
    """Base for broadcast messages. Serializes with camelCase keys."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    action: str

    def to_payload(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True)


class CheckExpiredTabsMessage(Message):
    """Ask the expiry engine to run now, optionally re-stamping saved times first."""

    action: Literal["checkExpiredTabs"] = "checkExpiredTabs"
    update_timestamps: bool = False
    period: str | None = None
    force_reload: bool = False


class GroupEmptiedMessage(Message):
    """A domain group lost its last URL and is now invisible."""

    action: Literal["groupEmptied"] = "groupEmptied"
    group_id: str = Field(...)


MessageHandler = Callable[[Message], Awaitable[Any]]


class MessageBus:
    """Async broadcast keyed by message action."""

    HISTORY_CAPACITY = 50

    def __init__(self) -> None:
        self._handlers: dict[str, list[MessageHandler]] = {}
        self._sent: deque[Message] = deque(maxlen=self.HISTORY_CAPACITY)

    def subscribe(self, action: str, handler: MessageHandler) -> Callable[[], None]:
        """Register a handler for one action. Returns an unsubscribe callable."""
        self._handlers.setdefault(action, []).append(handler)

        def unsubscribe() -> None:
            bucket = self._handlers.get(action, [])
            if handler in bucket:
                bucket.remove(handler)

        return unsubscribe

    async def broadcast(self, message: Message) -> list[Any]:
        """
        Deliver a message to every handler registered for its action.

        Returns the responses of the handlers that succeeded (empty when
        nobody is listening).
        """
        self._sent.append(message)
        handlers = list(self._handlers.get(message.action, []))
        if not handlers:
            logger.debug("No listener for %s message", message.action)
            return []
        responses = []
        for handler in handlers:
            try:
                responses.append(await handler(message))
            except Exception:
                logger.exception("Handler for %s message failed", message.action)
        return responses

    @property
    def sent(self) -> list[Message]:
        """Most recent broadcast messages, oldest first."""
        return list(self._sent)
