"""Presence tracking: liveness records, staleness checks and heartbeats."""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from .document_store import SERVER_TIMESTAMP, DocumentSnapshot, DocumentStore, PreconditionFailed, StoreUnavailableError
from .errors import StoreUnavailable, Unauthenticated
from .events import EventBus, PresenceChanged, event_bus

logger = logging.getLogger(__name__)

PRESENCE_COLLECTION = "onlineUsers"
STUDENTS_COLLECTION = "students"

DEFAULT_HEARTBEAT_WINDOW = timedelta(seconds=90)


@dataclass(frozen=True, slots=True)
class PresenceRecord:
    uid: str
    is_online: bool
    last_seen: datetime | None = None

    @classmethod
    def from_snapshot(cls, snapshot: DocumentSnapshot) -> "PresenceRecord":
        return cls(uid=snapshot.id, is_online=bool(snapshot.get("isOnline")), last_seen=snapshot.get("lastSeen"))


def presence_path(uid: str) -> str:
    return f"{PRESENCE_COLLECTION}/{uid}"


def student_path(uid: str) -> str:
    return f"{STUDENTS_COLLECTION}/{uid}"


def _as_aware(value: datetime) -> datetime:
    return value if value.tzinfo is not None else value.replace(tzinfo=timezone.utc)


def is_effectively_online(
    record: PresenceRecord | None,
    *,
    now: datetime | None = None,
    window: timedelta = DEFAULT_HEARTBEAT_WINDOW,
) -> bool:
    """Treat ``isOnline`` as advisory: it only counts while ``lastSeen`` is fresh."""

    if record is None or not record.is_online or record.last_seen is None:
        return False
    current = _as_aware(now or datetime.now(timezone.utc))
    return current - _as_aware(record.last_seen) < window


def mark_presence(
    store: DocumentStore,
    *,
    uid: str | None,
    is_online: bool,
    bus: EventBus = event_bus,
) -> PresenceRecord:
    """Upsert the caller's presence record and mirror the status on their student profile."""

    if not uid or not uid.strip() or "/" in uid:
        raise Unauthenticated()
    owner = uid.strip()

    batch = store.batch()
    batch.set(presence_path(owner), {"isOnline": is_online, "lastSeen": SERVER_TIMESTAMP}, merge=True)
    batch.set(
        student_path(owner),
        {"status": "online" if is_online else "offline", "lastSeen": SERVER_TIMESTAMP},
        merge=True,
    )
    try:
        last_seen = batch.commit()
    except StoreUnavailableError as exc:
        raise StoreUnavailable() from exc

    logger.debug("Presence for %s set to %s", owner, "online" if is_online else "offline")
    bus.publish(PresenceChanged(owner, is_online, last_seen))
    return PresenceRecord(owner, is_online, last_seen)


def get_presence(store: DocumentStore, uid: str) -> PresenceRecord | None:
    try:
        snapshot = store.get(presence_path(uid))
    except StoreUnavailableError as exc:
        raise StoreUnavailable() from exc
    if not snapshot.exists:
        return None
    return PresenceRecord.from_snapshot(snapshot)


def list_presence(store: DocumentStore) -> dict[str, PresenceRecord]:
    try:
        snapshots = store.query(PRESENCE_COLLECTION)
    except StoreUnavailableError as exc:
        raise StoreUnavailable() from exc
    return {snap.id: PresenceRecord.from_snapshot(snap) for snap in snapshots}


def sweep_stale_presence(
    store: DocumentStore,
    *,
    window: timedelta = DEFAULT_HEARTBEAT_WINDOW,
    now: datetime | None = None,
    bus: EventBus = event_bus,
) -> int:
    """Mark records whose heartbeat expired as offline; returns how many were flipped.

    ``lastSeen`` is left untouched so "last seen" badges stay accurate. A record
    refreshed between the read and the write fails its precondition and is skipped.
    """

    current = now or datetime.now(timezone.utc)
    query = store.collection(PRESENCE_COLLECTION).where("isOnline", "==", True)
    flipped = 0
    for snapshot in store.query(query):
        record = PresenceRecord.from_snapshot(snapshot)
        if is_effectively_online(record, now=current, window=window):
            continue
        batch = store.batch()
        batch.update(
            presence_path(record.uid),
            {"isOnline": False},
            expected={"isOnline": True, "lastSeen": record.last_seen},
        )
        batch.set(student_path(record.uid), {"status": "offline"}, merge=True)
        try:
            batch.commit()
        except PreconditionFailed:
            logger.debug("Presence for %s refreshed during sweep; skipping", record.uid)
            continue
        flipped += 1
        bus.publish(PresenceChanged(record.uid, False, record.last_seen or current))

    if flipped:
        logger.info("Presence sweep marked %d stale users offline", flipped)
    return flipped


class PresenceHeartbeat:
    """Periodic liveness writer for one signed-in client.

    ``start`` marks the user online and keeps refreshing ``lastSeen`` every
    ``interval`` while visible; ``set_visibility`` mirrors page visibility
    changes; ``stop`` is the best-effort teardown write.
    """

    def __init__(
        self,
        store: DocumentStore,
        uid: str,
        *,
        interval: timedelta,
        bus: EventBus = event_bus,
    ) -> None:
        if interval <= timedelta(0):
            raise ValueError("interval must be a positive duration")
        self._store = store
        self._uid = uid
        self._interval = interval
        self._bus = bus
        self._hidden = False
        self._stop = asyncio.Event()
        self._task: asyncio.Task[None] | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def hidden(self) -> bool:
        return self._hidden

    async def _beat(self, is_online: bool) -> bool:
        try:
            await asyncio.to_thread(mark_presence, self._store, uid=self._uid, is_online=is_online, bus=self._bus)
        except Exception:
            logger.warning("Presence update failed for %s", self._uid, exc_info=True)
            return False
        return True

    async def _loop(self) -> None:
        while not self._stop.is_set():
            try:
                await asyncio.wait_for(self._stop.wait(), timeout=self._interval.total_seconds())
            except asyncio.TimeoutError:
                if not self._hidden:
                    await self._beat(True)

    async def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        self._hidden = False
        await self._beat(True)
        self._task = asyncio.create_task(self._loop())

    async def set_visibility(self, hidden: bool) -> None:
        self._hidden = hidden
        await self._beat(not hidden)

    def cancel(self) -> None:
        """Stop heartbeats immediately without the final offline write.

        For synchronous teardown; the record then expires through the
        staleness window. A write already in flight may still land.
        """

        self._stop.set()
        if self._task is not None:
            self._task.cancel()
            self._task = None

    async def stop(self) -> None:
        self._stop.set()
        if self._task is not None:
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        await self._beat(False)


__all__ = [
    "PRESENCE_COLLECTION",
    "STUDENTS_COLLECTION",
    "DEFAULT_HEARTBEAT_WINDOW",
    "PresenceRecord",
    "PresenceHeartbeat",
    "presence_path",
    "student_path",
    "is_effectively_online",
    "mark_presence",
    "get_presence",
    "list_presence",
    "sweep_stale_presence",
]
