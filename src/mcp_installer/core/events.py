"""
Event types and delivery for MCP Installer.

All components report through an ``EventBus``. Each consumer subscribes with
its own bounded ``EventChannel``; when a consumer lags, older progress events
are dropped to make room, while state, error and terminal events are always
delivered.
"""

import asyncio
from collections import deque
from enum import Enum
from typing import Any, AsyncIterator, Callable, Deque, Dict, List, Optional

from pydantic import BaseModel, Field

from mcp_installer.core.models import utcnow
from mcp_installer.utils.logging import get_logger

logger = get_logger(__name__)


class EventType(str, Enum):
    """Event channel payload types."""

    PLAN_PROGRESS = "plan.progress"
    SERVER_STATE = "server.state"
    BACKUP_PROGRESS = "backup.progress"
    RESTORE_PROGRESS = "restore.progress"
    UPDATE_STATUS = "update.status"
    UPDATE_PROGRESS = "update.progress"
    ERROR = "error"
    DONE = "done"
    CANCELLED = "cancelled"


TERMINAL_TYPES = {EventType.DONE, EventType.ERROR, EventType.CANCELLED}


class Event(BaseModel):
    """A typed event."""

    type: EventType
    task_id: Optional[str] = None
    payload: Dict[str, Any] = Field(default_factory=dict)
    timestamp: Any = Field(default_factory=utcnow)

    @property
    def droppable(self) -> bool:
        """Progress events may be discarded under back-pressure."""
        if not self.type.value.endswith(".progress"):
            return False
        return self.payload.get("phase") != "error"

    @property
    def terminal(self) -> bool:
        return self.type in TERMINAL_TYPES


# Callback signature used by components that only emit
Emit = Callable[[Event], None]


def null_emit(event: Event) -> None:
    """Emit sink that discards events."""


class EventChannel:
    """Bounded per-consumer event queue."""

    def __init__(self, capacity: int = 256):
        if capacity < 1:
            raise ValueError("capacity must be at least 1")
        self.capacity = capacity
        self.dropped = 0
        self._items: Deque[Event] = deque()
        self._ready = asyncio.Event()
        self._closed = False

    def __len__(self) -> int:
        return len(self._items)

    @property
    def closed(self) -> bool:
        return self._closed

    def put(self, event: Event) -> None:
        """Enqueue without blocking, dropping the oldest progress event if full."""
        if self._closed:
            return
        if len(self._items) >= self.capacity:
            if event.droppable and not any(e.droppable for e in self._items):
                self.dropped += 1
                return
            for queued in self._items:
                if queued.droppable:
                    self._items.remove(queued)
                    self.dropped += 1
                    break
        self._items.append(event)
        self._ready.set()

    def get_nowait(self) -> Optional[Event]:
        """Pop the next event, or None if the channel is empty."""
        if not self._items:
            self._ready.clear()
            return None
        event = self._items.popleft()
        if not self._items:
            self._ready.clear()
        return event

    async def get(self) -> Optional[Event]:
        """Wait for the next event. Returns None once closed and drained."""
        while not self._items:
            if self._closed:
                return None
            self._ready.clear()
            await self._ready.wait()
        return self.get_nowait()

    def drain(self) -> List[Event]:
        """Pop everything currently queued."""
        events = list(self._items)
        self._items.clear()
        self._ready.clear()
        return events

    def close(self) -> None:
        self._closed = True
        self._ready.set()

    async def __aiter__(self) -> AsyncIterator[Event]:
        while True:
            event = await self.get()
            if event is None:
                return
            yield event


class EventBus:
    """Fans events out to every subscribed channel."""

    def __init__(self, default_capacity: int = 256):
        self.default_capacity = default_capacity
        self._channels: List[EventChannel] = []

    def subscribe(self, capacity: Optional[int] = None) -> EventChannel:
        channel = EventChannel(capacity or self.default_capacity)
        self._channels.append(channel)
        return channel

    def unsubscribe(self, channel: EventChannel) -> None:
        if channel in self._channels:
            self._channels.remove(channel)
        channel.close()

    def publish(self, event: Event) -> None:
        logger.debug(f"event {event.type.value} task={event.task_id} {event.payload}")
        for channel in list(self._channels):
            channel.put(event)

    def emitter(self, task_id: Optional[str] = None) -> Emit:
        """Return an emit callback that stamps events with ``task_id``."""

        def emit(event: Event) -> None:
            if task_id is not None and event.task_id is None:
                event.task_id = task_id
            self.publish(event)

        return emit
