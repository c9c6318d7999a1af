"""Typed change events for the social graph and an in-process publish/subscribe bus."""
from __future__ import annotations

import itertools
import logging
import threading
from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Any, Callable, Iterable

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class FriendEvent:
    """Base class for graph change events."""

    @property
    def type(self) -> str:
        return type(self).__name__

    @property
    def audience(self) -> frozenset[str]:
        """User ids whose views are affected by this event."""

        return frozenset()

    def to_payload(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["type"] = self.type
        return payload


@dataclass(frozen=True, slots=True)
class RequestCreated(FriendEvent):
    request_id: str
    sender_uid: str
    receiver_uid: str
    created_at: datetime

    @property
    def audience(self) -> frozenset[str]:
        return frozenset({self.sender_uid, self.receiver_uid})


@dataclass(frozen=True, slots=True)
class RequestResolved(FriendEvent):
    request_id: str
    sender_uid: str
    receiver_uid: str
    status: str
    responded_at: datetime

    @property
    def audience(self) -> frozenset[str]:
        return frozenset({self.sender_uid, self.receiver_uid})


@dataclass(frozen=True, slots=True)
class RequestCancelled(FriendEvent):
    request_id: str
    sender_uid: str
    receiver_uid: str

    @property
    def audience(self) -> frozenset[str]:
        return frozenset({self.sender_uid, self.receiver_uid})


@dataclass(frozen=True, slots=True)
class FriendshipEstablished(FriendEvent):
    uid_a: str
    uid_b: str
    since: datetime

    @property
    def audience(self) -> frozenset[str]:
        return frozenset({self.uid_a, self.uid_b})


@dataclass(frozen=True, slots=True)
class FriendshipRemoved(FriendEvent):
    uid_a: str
    uid_b: str
    removed_by: str

    @property
    def audience(self) -> frozenset[str]:
        return frozenset({self.uid_a, self.uid_b})


@dataclass(frozen=True, slots=True)
class PresenceChanged(FriendEvent):
    uid: str
    is_online: bool
    last_seen: datetime

    @property
    def audience(self) -> frozenset[str]:
        return frozenset({self.uid})


EventHandler = Callable[[FriendEvent], None]


class EventBus:
    """Fan events out to any number of independent handlers."""

    def __init__(self) -> None:
        self._handlers: dict[int, tuple[EventHandler, tuple[type[FriendEvent], ...] | None]] = {}
        self._keys = itertools.count(1)
        self._lock = threading.Lock()

    def subscribe(
        self,
        handler: EventHandler,
        event_types: Iterable[type[FriendEvent]] | None = None,
    ) -> Callable[[], None]:
        """Register ``handler`` and return an idempotent unsubscribe callable."""

        kinds = tuple(event_types) if event_types is not None else None
        with self._lock:
            key = next(self._keys)
            self._handlers[key] = (handler, kinds)

        def _unsubscribe() -> None:
            with self._lock:
                self._handlers.pop(key, None)

        return _unsubscribe

    def publish(self, event: FriendEvent) -> None:
        with self._lock:
            handlers = list(self._handlers.values())
        for handler, kinds in handlers:
            if kinds is not None and not isinstance(event, kinds):
                continue
            try:
                handler(event)
            except Exception:
                logger.exception("Event handler failed for %s", event.type)

    def __len__(self) -> int:
        with self._lock:
            return len(self._handlers)


event_bus = EventBus()


__all__ = [
    "FriendEvent",
    "RequestCreated",
    "RequestResolved",
    "RequestCancelled",
    "FriendshipEstablished",
    "FriendshipRemoved",
    "PresenceChanged",
    "EventHandler",
    "EventBus",
    "event_bus",
]
