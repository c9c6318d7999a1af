"""Read model joining student profiles with friendship, request and presence streams."""
from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Literal, Mapping

from .document_store import DocumentSnapshot, DocumentStore, Subscription
from .friendship_service import (
    FriendRequestRecord,
    FriendshipEdge,
    friends_query,
    incoming_query,
    outgoing_query,
)
from .presence_service import (
    DEFAULT_HEARTBEAT_WINDOW,
    PRESENCE_COLLECTION,
    STUDENTS_COLLECTION,
    PresenceRecord,
    is_effectively_online,
)

logger = logging.getLogger(__name__)

DirectoryRelationship = Literal["friend", "incoming", "outgoing", "none"]


def _first(data: Mapping[str, Any], *keys: str) -> Any:
    for key in keys:
        value = data.get(key)
        if value is not None:
            return value
    return None


@dataclass(frozen=True, slots=True)
class StudentProfile:
    uid: str
    full_name: str
    department: str | None = None
    batch: str | None = None
    email: str | None = None
    headline: str | None = None
    photo_url: str | None = None
    status: str | None = None
    last_seen: datetime | None = None
    profile_completed: bool = False

    @classmethod
    def from_snapshot(cls, snapshot: DocumentSnapshot) -> "StudentProfile":
        data = snapshot.data or {}
        last_seen = data.get("lastSeen")
        return cls(
            uid=snapshot.id,
            full_name=_first(data, "fullName", "name") or "Unknown",
            department=_first(data, "department", "major"),
            batch=_first(data, "batch", "cohort"),
            email=_first(data, "email", "contactEmail"),
            headline=_first(data, "headline", "bio"),
            photo_url=_first(data, "avatarUrl", "photoURL", "photo"),
            status=data.get("status"),
            last_seen=last_seen if isinstance(last_seen, datetime) else None,
            profile_completed=bool(data.get("profileCompleted")),
        )


@dataclass(frozen=True, slots=True)
class DirectoryEntry:
    profile: StudentProfile
    relationship: DirectoryRelationship
    friends_since: datetime | None = None
    request_id: str | None = None
    presence: PresenceRecord | None = None
    online: bool = False

    @property
    def uid(self) -> str:
        return self.profile.uid

    @property
    def last_seen(self) -> datetime | None:
        if self.presence is not None and self.presence.last_seen is not None:
            return self.presence.last_seen
        return self.profile.last_seen


class DirectoryProjection:
    """Denormalized per-viewer directory maintained from five live streams.

    Each stream keeps its own keyed map; an update only recomputes the rows
    whose inputs changed. Listener errors mark the projection ``stale``
    instead of propagating.
    """

    def __init__(
        self,
        store: DocumentStore,
        viewer_uid: str,
        *,
        window: timedelta = DEFAULT_HEARTBEAT_WINDOW,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._store = store
        self._viewer = viewer_uid
        self._window = window
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._lock = threading.RLock()
        self._profiles: dict[str, StudentProfile] = {}
        self._friends: dict[str, FriendshipEdge] = {}
        self._incoming: dict[str, FriendRequestRecord] = {}
        self._outgoing: dict[str, FriendRequestRecord] = {}
        self._presence: dict[str, PresenceRecord] = {}
        self._rows: dict[str, DirectoryEntry] = {}
        self._subscriptions: list[Subscription] = []
        self._listeners: list[Callable[["DirectoryProjection"], None]] = []
        self.stale = False
        self.last_error: Exception | None = None

    # -- lifecycle ---------------------------------------------------------------

    def open(self) -> "DirectoryProjection":
        if self._subscriptions:
            return self
        store = self._store
        self._subscriptions = [
            store.subscribe(store.collection(STUDENTS_COLLECTION), self._on_profiles, self._on_error),
            store.subscribe(friends_query(store, self._viewer), self._on_friends, self._on_error),
            store.subscribe(incoming_query(store, self._viewer), self._on_incoming, self._on_error),
            store.subscribe(outgoing_query(store, self._viewer), self._on_outgoing, self._on_error),
            store.subscribe(store.collection(PRESENCE_COLLECTION), self._on_presence, self._on_error),
        ]
        return self

    def close(self) -> None:
        subscriptions, self._subscriptions = self._subscriptions, []
        for subscription in subscriptions:
            subscription.unsubscribe()

    def __enter__(self) -> "DirectoryProjection":
        return self.open()

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def add_listener(self, callback: Callable[["DirectoryProjection"], None]) -> Callable[[], None]:
        self._listeners.append(callback)

        def _remove() -> None:
            if callback in self._listeners:
                self._listeners.remove(callback)

        return _remove

    # -- stream handlers -----------------------------------------------------------

    def _on_profiles(self, snapshots: list[DocumentSnapshot]) -> None:
        self._apply("_profiles", {snap.id: StudentProfile.from_snapshot(snap) for snap in snapshots})

    def _on_friends(self, snapshots: list[DocumentSnapshot]) -> None:
        self._apply("_friends", {snap.id: FriendshipEdge.from_snapshot(self._viewer, snap) for snap in snapshots})

    def _on_incoming(self, snapshots: list[DocumentSnapshot]) -> None:
        records = (FriendRequestRecord.from_snapshot(snap) for snap in snapshots)
        self._apply("_incoming", {record.sender_uid: record for record in records if record.is_pending})

    def _on_outgoing(self, snapshots: list[DocumentSnapshot]) -> None:
        records = (FriendRequestRecord.from_snapshot(snap) for snap in snapshots)
        self._apply("_outgoing", {record.receiver_uid: record for record in records if record.is_pending})

    def _on_presence(self, snapshots: list[DocumentSnapshot]) -> None:
        self._apply("_presence", {snap.id: PresenceRecord.from_snapshot(snap) for snap in snapshots})

    def _on_error(self, exc: Exception) -> None:
        logger.warning("Directory stream for %s degraded: %s", self._viewer, exc)
        self.stale = True
        self.last_error = exc

    def _apply(self, source: str, new_map: dict[str, Any]) -> None:
        with self._lock:
            old_map: dict[str, Any] = getattr(self, source)
            changed = {uid for uid in old_map.keys() | new_map.keys() if old_map.get(uid) != new_map.get(uid)}
            setattr(self, source, new_map)
            for uid in changed:
                self._recompute(uid)
            self.stale = False
        if changed:
            for callback in list(self._listeners):
                try:
                    callback(self)
                except Exception:
                    logger.exception("Directory listener failed")

    def _recompute(self, uid: str) -> None:
        profile = self._profiles.get(uid)
        if uid == self._viewer or profile is None:
            self._rows.pop(uid, None)
            return

        edge = self._friends.get(uid)
        incoming = self._incoming.get(uid)
        outgoing = self._outgoing.get(uid)
        relationship: DirectoryRelationship
        request_id = None
        if edge is not None:
            relationship = "friend"
        elif incoming is not None:
            relationship, request_id = "incoming", incoming.id
        elif outgoing is not None:
            relationship, request_id = "outgoing", outgoing.id
        else:
            relationship = "none"

        self._rows[uid] = DirectoryEntry(
            profile=profile,
            relationship=relationship,
            friends_since=edge.since if edge is not None else None,
            request_id=request_id,
            presence=self._presence.get(uid),
        )

    # -- read side ---------------------------------------------------------------

    def _with_online(self, entry: DirectoryEntry, now: datetime) -> DirectoryEntry:
        return replace(entry, online=is_effectively_online(entry.presence, now=now, window=self._window))

    def entries(self, *, now: datetime | None = None) -> list[DirectoryEntry]:
        current = now or self._clock()
        with self._lock:
            rows = list(self._rows.values())
        rows.sort(key=lambda entry: (entry.profile.full_name.casefold(), entry.uid))
        return [self._with_online(entry, current) for entry in rows]

    def entry(self, uid: str, *, now: datetime | None = None) -> DirectoryEntry | None:
        with self._lock:
            row = self._rows.get(uid)
        if row is None:
            return None
        return self._with_online(row, now or self._clock())

    def friends(self, *, now: datetime | None = None) -> list[DirectoryEntry]:
        return [entry for entry in self.entries(now=now) if entry.relationship == "friend"]

    def has_pending_incoming(self, uid: str) -> bool:
        with self._lock:
            return uid in self._incoming


__all__ = ["StudentProfile", "DirectoryEntry", "DirectoryProjection", "DirectoryRelationship"]
