"""Typed change events and a small publish/subscribe bus.

The cache, resolver and orchestrator publish events here instead of calling
into any particular consumer. A tree view subscribes and re-renders the
paths named in ``NodeUpdated``.
"""

from __future__ import annotations

import threading
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum

import structlog

from flaketree.tree.paths import AttrPath

logger = structlog.get_logger()


class StatusLevel(Enum):
    INFO = "info"
    SUCCESS = "success"
    ERROR = "error"


@dataclass(frozen=True, slots=True)
class NodeUpdated:
    """The listing or value at ``path`` changed."""

    path: AttrPath


@dataclass(frozen=True, slots=True)
class StatusChanged:
    """Out-of-band status line (failures that were masked by last-good data)."""

    level: StatusLevel
    message: str
    path: AttrPath | None = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))


@dataclass(frozen=True, slots=True)
class TreeReset:
    """Everything was dropped. Consumers re-request what they show."""


@dataclass(frozen=True, slots=True)
class RefreshCompleted:
    refreshed: tuple[AttrPath, ...]
    evicted: tuple[AttrPath, ...]


TreeEvent = NodeUpdated | StatusChanged | TreeReset | RefreshCompleted
Subscriber = Callable[[TreeEvent], None]


class EventBus:
    """Synchronous fan-out to subscribers.

    A failing subscriber is logged and skipped; it never breaks the
    publisher or the other subscribers.
    """

    def __init__(self) -> None:
        self._subscribers: list[Subscriber] = []
        self._lock = threading.Lock()

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        """Register ``callback``. Returns a function that unsubscribes it."""
        with self._lock:
            self._subscribers.append(callback)

        def unsubscribe() -> None:
            with self._lock:
                if callback in self._subscribers:
                    self._subscribers.remove(callback)

        return unsubscribe

    def publish(self, event: TreeEvent) -> None:
        with self._lock:
            subscribers = list(self._subscribers)
        for callback in subscribers:
            try:
                callback(event)
            except Exception as e:
                logger.error(
                    "event_subscriber_failed",
                    event=type(event).__name__,
                    error=str(e),
                )

    def status(
        self,
        level: StatusLevel,
        message: str,
        path: AttrPath | None = None,
    ) -> None:
        self.publish(StatusChanged(level=level, message=message, path=path))

    def __len__(self) -> int:
        with self._lock:
            return len(self._subscribers)
