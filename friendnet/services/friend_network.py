"""Per-user client session over the friend network: live views plus mutations."""
from __future__ import annotations

import logging
import threading
from datetime import timedelta

from .document_store import DocumentSnapshot, DocumentStore, Subscription
from .errors import Unauthenticated
from .events import EventBus, event_bus
from .friendship_service import (
    FriendRequestRecord,
    FriendshipEdge,
    SendResult,
    cancel_request,
    friends_query,
    incoming_query,
    outgoing_query,
    remove_friend,
    respond_to_request,
    send_friend_request,
)
from .presence_service import PRESENCE_COLLECTION, PresenceHeartbeat, PresenceRecord

logger = logging.getLogger(__name__)


class FriendNetwork:
    """Live friend graph for one signed-in user.

    ``open`` starts four subscriptions (own friendship edges, incoming and
    outgoing requests, global presence); ``close`` cancels them and may be
    called any number of times. Views are refreshed only by whole post-commit
    snapshots, so an accepted request and both friendship edges appear
    together.
    """

    def __init__(self, store: DocumentStore, uid: str | None, *, bus: EventBus = event_bus) -> None:
        self._store = store
        self.uid = uid or None
        self._bus = bus
        self._lock = threading.RLock()
        self._friends: list[FriendshipEdge] = []
        self._incoming: list[FriendRequestRecord] = []
        self._outgoing: list[FriendRequestRecord] = []
        self._presence: dict[str, PresenceRecord] = {}
        self._subscriptions: list[Subscription] = []
        self._heartbeat: PresenceHeartbeat | None = None
        self.stale = False
        self.last_error: Exception | None = None

    # -- lifecycle ---------------------------------------------------------------

    @property
    def is_open(self) -> bool:
        return bool(self._subscriptions)

    def open(self) -> "FriendNetwork":
        if self._subscriptions:
            return self
        store = self._store
        subscriptions = [store.subscribe(store.collection(PRESENCE_COLLECTION), self._on_presence, self._on_error)]
        if self.uid:
            subscriptions.extend(
                [
                    store.subscribe(friends_query(store, self.uid), self._on_friends, self._on_error),
                    store.subscribe(incoming_query(store, self.uid), self._on_incoming, self._on_error),
                    store.subscribe(outgoing_query(store, self.uid), self._on_outgoing, self._on_error),
                ]
            )
        self._subscriptions = subscriptions
        return self

    def close(self) -> None:
        """Cancel subscriptions and halt the heartbeat; prefer :meth:`aclose` inside a loop."""

        heartbeat, self._heartbeat = self._heartbeat, None
        if heartbeat is not None:
            heartbeat.cancel()
        subscriptions, self._subscriptions = self._subscriptions, []
        for subscription in subscriptions:
            subscription.unsubscribe()
        with self._lock:
            self._friends = []
            self._incoming = []
            self._outgoing = []

    async def aclose(self) -> None:
        """Mark the user offline, then close."""

        await self.stop_presence()
        self.close()

    def __enter__(self) -> "FriendNetwork":
        return self.open()

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    async def __aenter__(self) -> "FriendNetwork":
        return self.open()

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    # -- listeners ---------------------------------------------------------------

    def _on_friends(self, snapshots: list[DocumentSnapshot]) -> None:
        with self._lock:
            self._friends = [FriendshipEdge.from_snapshot(self.uid, snap) for snap in snapshots]
            self.stale = False

    def _on_incoming(self, snapshots: list[DocumentSnapshot]) -> None:
        with self._lock:
            self._incoming = [FriendRequestRecord.from_snapshot(snap) for snap in snapshots]
            self.stale = False

    def _on_outgoing(self, snapshots: list[DocumentSnapshot]) -> None:
        with self._lock:
            self._outgoing = [FriendRequestRecord.from_snapshot(snap) for snap in snapshots]
            self.stale = False

    def _on_presence(self, snapshots: list[DocumentSnapshot]) -> None:
        with self._lock:
            self._presence = {snap.id: PresenceRecord.from_snapshot(snap) for snap in snapshots}

    def _on_error(self, exc: Exception) -> None:
        logger.error("Friend network listener for %s failed: %s", self.uid, exc)
        self.stale = True
        self.last_error = exc

    # -- views -------------------------------------------------------------------

    def friends(self) -> list[FriendshipEdge]:
        with self._lock:
            return list(self._friends)

    def friends_map(self) -> dict[str, FriendshipEdge]:
        with self._lock:
            return {edge.uid: edge for edge in self._friends}

    def incoming_requests(self) -> list[FriendRequestRecord]:
        with self._lock:
            return list(self._incoming)

    def outgoing_requests(self) -> list[FriendRequestRecord]:
        with self._lock:
            return list(self._outgoing)

    def incoming_pending(self) -> list[FriendRequestRecord]:
        return [request for request in self.incoming_requests() if request.is_pending]

    def outgoing_pending(self) -> list[FriendRequestRecord]:
        return [request for request in self.outgoing_requests() if request.is_pending]

    def presence(self, uid: str) -> PresenceRecord | None:
        with self._lock:
            return self._presence.get(uid)

    def online_users(self) -> dict[str, PresenceRecord]:
        with self._lock:
            return dict(self._presence)

    def is_friend(self, uid: str) -> bool:
        return uid in self.friends_map()

    def has_pending_incoming(self, uid: str) -> bool:
        return any(request.sender_uid == uid for request in self.incoming_pending())

    # -- mutations ---------------------------------------------------------------

    def _require_uid(self) -> str:
        if not self.uid:
            raise Unauthenticated()
        return self.uid

    def send_friend_request(self, target_uid: str, *, raise_if_exists: bool = False) -> SendResult:
        return send_friend_request(
            self._store,
            requester_uid=self._require_uid(),
            target_uid=target_uid,
            raise_if_exists=raise_if_exists,
            bus=self._bus,
        )

    def respond_to_request(self, request_id: str, accept: bool) -> FriendRequestRecord:
        return respond_to_request(
            self._store,
            request_id=request_id,
            responder_uid=self._require_uid(),
            accept=accept,
            bus=self._bus,
        )

    def cancel_request(self, request_id: str) -> None:
        cancel_request(self._store, request_id=request_id, canceller_uid=self._require_uid(), bus=self._bus)

    def remove_friend(self, other_uid: str) -> bool:
        return remove_friend(self._store, initiator_uid=self._require_uid(), other_uid=other_uid, bus=self._bus)

    # -- presence ----------------------------------------------------------------

    async def start_presence(self, *, interval: timedelta) -> PresenceHeartbeat:
        uid = self._require_uid()
        if self._heartbeat is None:
            self._heartbeat = PresenceHeartbeat(self._store, uid, interval=interval, bus=self._bus)
        await self._heartbeat.start()
        return self._heartbeat

    async def set_visibility(self, hidden: bool) -> None:
        if self._heartbeat is not None:
            await self._heartbeat.set_visibility(hidden)

    async def stop_presence(self) -> None:
        heartbeat, self._heartbeat = self._heartbeat, None
        if heartbeat is not None:
            await heartbeat.stop()


__all__ = ["FriendNetwork"]
