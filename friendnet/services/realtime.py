"""WebSocket fan-out of friend graph events to the users they concern."""
from __future__ import annotations

import asyncio
import json
import logging
from typing import Callable, Iterable

from fastapi import WebSocket

from .document_store import DocumentStore
from .errors import StoreUnavailable
from .events import EventBus, FriendEvent, PresenceChanged
from .friendship_service import list_friends

logger = logging.getLogger(__name__)


class FriendStreamManager:
    """Tracks per-user WebSocket connections and broadcasts payloads."""

    def __init__(self) -> None:
        self._channels: dict[str, set[WebSocket]] = {}
        self._connections: dict[WebSocket, str] = {}
        self._lock = asyncio.Lock()

    async def connect(self, uid: str, websocket: WebSocket) -> None:
        await websocket.accept()
        async with self._lock:
            self._channels.setdefault(uid, set()).add(websocket)
            self._connections[websocket] = uid

    async def disconnect(self, websocket: WebSocket) -> None:
        async with self._lock:
            uid = self._connections.pop(websocket, None)
            if not uid:
                return
            group = self._channels.get(uid)
            if group is None:
                return
            group.discard(websocket)
            if not group:
                self._channels.pop(uid, None)

    def connected_users(self) -> set[str]:
        return set(self._channels)

    async def broadcast(self, users: str | Iterable[str], payload: dict[str, object]) -> int:
        if isinstance(users, str):
            target_ids = [users]
        else:
            target_ids = [user for user in users if user]
        if not target_ids:
            return 0
        serialized = json.dumps(payload, default=str)
        async with self._lock:
            targets: list[WebSocket] = []
            for uid in target_ids:
                targets.extend(self._channels.get(uid, ()))
        delivered = 0
        for ws in targets:
            try:
                await ws.send_text(serialized)
                delivered += 1
            except Exception:
                logger.info("Dropping friend stream socket after failed send")
                await self.disconnect(ws)
        return delivered

    def attach(
        self,
        bus: EventBus,
        loop: asyncio.AbstractEventLoop,
        *,
        store: DocumentStore | None = None,
    ) -> Callable[[], None]:
        """Forward every bus event to its audience; returns the detach callable.

        Events may be published from worker threads, so delivery is scheduled
        onto ``loop``. With a ``store``, presence changes also reach the
        user's friends.
        """

        def _forward(event: FriendEvent) -> None:
            if loop.is_closed():
                return
            audience = set(event.audience)
            if store is not None and isinstance(event, PresenceChanged):
                try:
                    audience.update(edge.uid for edge in list_friends(store, uid=event.uid))
                except StoreUnavailable:
                    logger.warning("Could not load friends of %s; presence sent to self only", event.uid)
            if not audience:
                return
            asyncio.run_coroutine_threadsafe(self.broadcast(audience, event.to_payload()), loop)

        return bus.subscribe(_forward)


friend_stream_manager = FriendStreamManager()


__all__ = ["friend_stream_manager", "FriendStreamManager"]
