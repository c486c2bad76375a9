"""
Event models and channels.

Components publish typed events on an EventChannel. Listeners either connect
a callback (invoked synchronously on emit) or subscribe a queue and await
the next event.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable

logger = logging.getLogger(__name__)


class KeystoreEvent(str, Enum):
    LOADED = "loaded"
    CHANGED = "changed"
    UNLOCKED = "unlocked"
    LOCKED = "locked"
    ERROR = "error"


class DaemonEvent(str, Enum):
    STATE_CHANGED = "state_changed"
    READY = "ready"
    WALLET_UNLOCKED = "wallet_unlocked"
    WALLET_LOCKED = "wallet_locked"
    ERROR = "error"
    CIRCUIT_BREAKER_TRIPPED = "circuit_breaker_tripped"


class SessionEvent(str, Enum):
    UNLOCKED = "unlocked"
    LOCKED = "locked"
    SESSION_ADDED = "session_added"
    SESSION_REMOVED = "session_removed"
    AUTO_LOCK = "auto_lock"


@dataclass
class Event:
    """A single published event."""
    kind: Enum
    data: dict = field(default_factory=dict)
    timestamp: float = field(default_factory=time.time)


Handler = Callable[[Event], Any]


class EventChannel:
    """Fan-out of typed events to callbacks and queue subscribers."""

    def __init__(self, name: str = ""):
        self.name = name
        self._handlers: list[Handler] = []
        self._queues: list[asyncio.Queue] = []

    def connect(self, handler: Handler) -> None:
        """Register a callback invoked on every emit."""
        if handler not in self._handlers:
            self._handlers.append(handler)

    def disconnect(self, handler: Handler) -> None:
        if handler in self._handlers:
            self._handlers.remove(handler)

    def subscribe(self) -> asyncio.Queue:
        """Return a queue receiving every subsequent event."""
        queue: asyncio.Queue = asyncio.Queue()
        self._queues.append(queue)
        return queue

    def unsubscribe(self, queue: asyncio.Queue) -> None:
        if queue in self._queues:
            self._queues.remove(queue)

    def emit(self, kind: Enum, **data) -> Event:
        """Publish an event to all callbacks and subscribed queues."""
        event = Event(kind=kind, data=data)
        for handler in list(self._handlers):
            try:
                handler(event)
            except Exception:
                logger.exception(f"{self.name or 'event'} handler failed for {kind.value}")
        for queue in self._queues:
            queue.put_nowait(event)
        return event

    def clear(self) -> None:
        self._handlers.clear()
        self._queues.clear()
