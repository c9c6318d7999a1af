"""Tests for presence records, the stale sweep and the client heartbeat."""
from __future__ import annotations

import asyncio
import os
from datetime import datetime, timedelta, timezone
from typing import Iterator

import pytest
from sqlalchemy import delete

os.environ.setdefault("DATABASE_URL", "sqlite+pysqlite:///./test_friendnet.db")
os.environ.setdefault("JWT_SECRET_KEY", "test-secret-key")
os.environ.setdefault("DISABLE_PRESENCE_SWEEP", "true")

from friendnet.database import Base, SessionLocal, engine  # noqa: E402
from friendnet.models import Document  # noqa: E402
from friendnet.services.document_store import DocumentStore  # noqa: E402
from friendnet.services.errors import Unauthenticated  # noqa: E402
from friendnet.services.events import EventBus, PresenceChanged  # noqa: E402
from friendnet.services.presence_service import (  # noqa: E402
    PresenceHeartbeat,
    PresenceRecord,
    get_presence,
    is_effectively_online,
    list_presence,
    mark_presence,
    sweep_stale_presence,
)

T0 = datetime(2026, 5, 10, 8, 0, tzinfo=timezone.utc)


@pytest.fixture(scope="module", autouse=True)
def _create_schema() -> Iterator[None]:
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)


@pytest.fixture(autouse=True)
def _clean_database() -> Iterator[None]:
    with SessionLocal() as session:
        session.execute(delete(Document))
        session.commit()
    yield


@pytest.fixture
def now():
    return {"value": T0}


@pytest.fixture
def store(now) -> DocumentStore:
    return DocumentStore(SessionLocal, clock=lambda: now["value"])


@pytest.fixture
def bus():
    events: list[PresenceChanged] = []
    bus = EventBus()
    bus.subscribe(events.append, [PresenceChanged])
    return bus, events


def test_mark_presence_mirrors_student_status(store, bus):
    event_bus, events = bus
    store.set("students/ada", {"fullName": "Ada Lovelace", "department": "Maths"})

    record = mark_presence(store, uid="ada", is_online=True, bus=event_bus)

    assert record == PresenceRecord("ada", True, T0)
    presence = store.get("onlineUsers/ada")
    assert presence.data == {"isOnline": True, "lastSeen": T0}
    student = store.get("students/ada")
    assert student.get("status") == "online"
    assert student.get("lastSeen") == T0
    assert student.get("fullName") == "Ada Lovelace"
    assert events == [PresenceChanged("ada", True, T0)]


def test_mark_offline_keeps_last_seen_fresh(store, now):
    mark_presence(store, uid="ada", is_online=True)
    now["value"] = T0 + timedelta(minutes=5)
    mark_presence(store, uid="ada", is_online=False)

    record = get_presence(store, "ada")
    assert record is not None
    assert record.is_online is False
    assert record.last_seen == T0 + timedelta(minutes=5)
    assert store.get("students/ada").get("status") == "offline"


def test_mark_presence_requires_identity(store):
    with pytest.raises(Unauthenticated):
        mark_presence(store, uid=None, is_online=True)
    with pytest.raises(Unauthenticated):
        mark_presence(store, uid="", is_online=True)


def test_get_presence_for_unknown_user(store):
    assert get_presence(store, "nobody") is None


def test_is_effectively_online_window():
    record = PresenceRecord("ada", True, T0)
    window = timedelta(seconds=90)

    assert is_effectively_online(record, now=T0 + timedelta(seconds=30), window=window) is True
    assert is_effectively_online(record, now=T0 + timedelta(seconds=90), window=window) is False
    assert is_effectively_online(PresenceRecord("ada", False, T0), now=T0, window=window) is False
    assert is_effectively_online(PresenceRecord("ada", True, None), now=T0, window=window) is False
    assert is_effectively_online(None, now=T0, window=window) is False


def test_naive_timestamps_are_treated_as_utc():
    record = PresenceRecord("ada", True, T0.replace(tzinfo=None))
    assert is_effectively_online(record, now=T0 + timedelta(seconds=10)) is True


def test_list_presence(store):
    mark_presence(store, uid="ada", is_online=True)
    mark_presence(store, uid="bob", is_online=False)

    records = list_presence(store)
    assert set(records) == {"ada", "bob"}
    assert records["ada"].is_online is True
    assert records["bob"].is_online is False


def test_sweep_flips_only_expired_heartbeats(store, now, bus):
    event_bus, events = bus
    mark_presence(store, uid="stale", is_online=True)
    now["value"] = T0 + timedelta(seconds=80)
    mark_presence(store, uid="fresh", is_online=True)
    mark_presence(store, uid="away", is_online=False)

    flipped = sweep_stale_presence(
        store, window=timedelta(seconds=90), now=T0 + timedelta(seconds=120), bus=event_bus
    )

    assert flipped == 1
    stale = get_presence(store, "stale")
    assert stale is not None
    assert stale.is_online is False
    assert stale.last_seen == T0
    assert store.get("students/stale").get("status") == "offline"
    assert get_presence(store, "fresh").is_online is True
    assert events == [PresenceChanged("stale", False, T0)]


def test_sweep_skips_record_refreshed_mid_sweep(store, now, monkeypatch):
    mark_presence(store, uid="ada", is_online=True)
    original_query = store.query

    def _query_then_refresh(query):
        snapshots = original_query(query)
        now["value"] = T0 + timedelta(minutes=10)
        mark_presence(store, uid="ada", is_online=True)
        return snapshots

    monkeypatch.setattr(store, "query", _query_then_refresh)

    flipped = sweep_stale_presence(store, window=timedelta(seconds=90), now=T0 + timedelta(minutes=5))

    assert flipped == 0
    assert get_presence(store, "ada").is_online is True


def test_heartbeat_rejects_non_positive_interval(store):
    with pytest.raises(ValueError):
        PresenceHeartbeat(store, "ada", interval=timedelta(0))


def test_heartbeat_lifecycle(store, bus):
    event_bus, events = bus

    async def _scenario() -> None:
        heartbeat = PresenceHeartbeat(store, "ada", interval=timedelta(milliseconds=20), bus=event_bus)
        await heartbeat.start()
        assert heartbeat.running
        await asyncio.sleep(0.15)

        await heartbeat.set_visibility(True)
        assert heartbeat.hidden
        hidden_count = len(events)
        await asyncio.sleep(0.1)
        assert len(events) == hidden_count

        await heartbeat.set_visibility(False)
        await heartbeat.stop()
        assert not heartbeat.running

    asyncio.run(_scenario())

    states = [event.is_online for event in events]
    assert states[0] is True
    assert states.count(True) >= 3
    assert False in states
    assert states[-1] is False
    assert get_presence(store, "ada").is_online is False


def test_heartbeat_survives_store_failures(bus, caplog):
    event_bus, events = bus

    class _BrokenStore:
        def batch(self):
            raise RuntimeError("network down")

    async def _scenario() -> None:
        heartbeat = PresenceHeartbeat(_BrokenStore(), "ada", interval=timedelta(milliseconds=20), bus=event_bus)  # type: ignore[arg-type]
        await heartbeat.start()
        await asyncio.sleep(0.05)
        await heartbeat.stop()

    asyncio.run(_scenario())

    assert events == []
    assert "Presence update failed" in caplog.text
