"""Event Bus and typed event definitions for user-facing session output.

The Session and the Commands facade publish here; control planes
subscribe and present notices, connection changes and UI requests.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, AsyncIterator, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class EventBus:
    """Simple in-process asyncio pub/sub event bus.

    Publishers call publish(event). Subscribers receive events via
    subscribe() which returns an asyncio.Queue, or iter_events() for
    convenient async iteration.
    """

    def __init__(self) -> None:
        self._subscribers: dict[type, list[asyncio.Queue]] = {}

    def subscribe(self, event_type: type[T]) -> asyncio.Queue[T]:
        """Subscribe to events of a specific type. Returns a Queue."""
        queue: asyncio.Queue = asyncio.Queue()
        self._subscribers.setdefault(event_type, []).append(queue)
        return queue

    def unsubscribe(self, event_type: type[T], queue: asyncio.Queue) -> None:
        """Remove a subscription."""
        queues = self._subscribers.get(event_type, [])
        if queue in queues:
            queues.remove(queue)

    def publish(self, event: object) -> None:
        """Publish an event to all subscribers of its type."""
        for queue in self._subscribers.get(type(event), []):
            try:
                queue.put_nowait(event)
            except asyncio.QueueFull:
                logger.warning("Event queue full, dropping %s", type(event).__name__)

    async def iter_events(self, event_type: type[T]) -> AsyncIterator[T]:
        """Async iterator for events of a specific type."""
        queue = self.subscribe(event_type)
        try:
            while True:
                yield await queue.get()
        finally:
            self.unsubscribe(event_type, queue)


# ---------------------------------------------------------------------------
# Notice level
# ---------------------------------------------------------------------------

class NoticeLevel(Enum):
    """Severity of a user-facing notice. Control planes map it to their UI."""
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"


# ---------------------------------------------------------------------------
# Event types
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class SessionNoticeEvent:
    """Something the user should be told about (failures, extension notify)."""
    message: str
    level: NoticeLevel = NoticeLevel.INFO


@dataclass(frozen=True)
class SessionConnectedEvent:
    """A session connected to an agent."""
    host: str
    port: int


@dataclass(frozen=True)
class SessionDisconnectedEvent:
    """The agent connection was lost. Published once per connection."""
    port: int | None


@dataclass(frozen=True)
class SessionRenderEvent:
    """A throttled render of session state, as seen by a renderer."""
    snapshot: dict[str, Any]
    disconnected: bool = False


@dataclass(frozen=True)
class ExtensionUIRequestEvent:
    """An agent extension asks the user for a choice, confirmation or text."""
    request_id: str
    method: str
    title: str = ""
    message: str | None = None
    options: list[str] = field(default_factory=list)
    placeholder: str | None = None
    prefill: str | None = None
    timeout_ms: int | None = None
