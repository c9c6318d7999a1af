"""Tests for the per-user live friend network session."""
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
from friendnet.services.document_store import DocumentStore, StoreUnavailableError  # noqa: E402
from friendnet.services.errors import InvalidState, Unauthenticated  # noqa: E402
from friendnet.services.events import EventBus, FriendEvent, PresenceChanged  # noqa: E402
from friendnet.services.friend_network import FriendNetwork  # noqa: E402

T0 = datetime(2026, 7, 4, 18, 0, tzinfo=timezone.utc)


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
def store() -> DocumentStore:
    ticks = {"now": T0}

    def _clock() -> datetime:
        ticks["now"] += timedelta(seconds=1)
        return ticks["now"]

    return DocumentStore(SessionLocal, clock=_clock)


@pytest.fixture
def bus() -> EventBus:
    return EventBus()


@pytest.fixture
def alice(store, bus) -> Iterator[FriendNetwork]:
    with FriendNetwork(store, "alice", bus=bus) as network:
        yield network


@pytest.fixture
def bob(store, bus) -> Iterator[FriendNetwork]:
    with FriendNetwork(store, "bob", bus=bus) as network:
        yield network


def test_request_flow_is_visible_to_both_sides(alice, bob):
    result = alice.send_friend_request("bob")

    assert [request.id for request in alice.outgoing_pending()] == [result.request.id]
    assert [request.sender_uid for request in bob.incoming_pending()] == ["alice"]
    assert bob.has_pending_incoming("alice") is True
    assert alice.incoming_pending() == []


def test_accept_updates_both_views_atomically(alice, bob, store):
    snapshots: list[tuple[bool, bool]] = []
    result = alice.send_friend_request("bob")

    # Every friends-view delivery for alice must agree with the request status.
    def _check(_snaps) -> None:
        stored = store.get(f"friendRequests/{result.request.id}")
        snapshots.append((alice.is_friend("bob"), stored.get("status") == "accepted"))

    subscription = store.subscribe(store.collection("users/alice/friends"), _check)
    bob.respond_to_request(result.request.id, accept=True)
    subscription.unsubscribe()

    assert alice.is_friend("bob") is True
    assert bob.is_friend("alice") is True
    assert alice.friends_map()["bob"].since == bob.friends_map()["alice"].since
    assert bob.incoming_pending() == []
    assert [request.status for request in bob.incoming_requests()] == ["accepted"]
    assert snapshots[-1] == (True, True)


def test_reject_and_cancel(alice, bob, store, bus):
    with FriendNetwork(store, "carol", bus=bus) as carol:
        first = alice.send_friend_request("bob")
        bob.respond_to_request(first.request.id, accept=False)
        assert alice.is_friend("bob") is False
        assert alice.outgoing_pending() == []

        second = alice.send_friend_request("carol")
        assert carol.has_pending_incoming("alice") is True
        alice.cancel_request(second.request.id)
        assert carol.incoming_requests() == []

        with pytest.raises(InvalidState):
            bob.respond_to_request(first.request.id, accept=True)


def test_remove_friend_clears_both_views(alice, bob):
    result = bob.send_friend_request("alice")
    alice.respond_to_request(result.request.id, accept=True)

    assert bob.remove_friend("alice") is True
    assert alice.friends() == []
    assert bob.friends() == []
    assert bob.remove_friend("alice") is False


def test_friends_ordered_by_recency(alice, store, bus):
    for other in ("bob", "carol", "dan"):
        with FriendNetwork(store, other, bus=bus) as network:
            result = network.send_friend_request("alice")
        alice.respond_to_request(result.request.id, accept=True)

    assert [edge.uid for edge in alice.friends()] == ["dan", "carol", "bob"]


def test_anonymous_session_sees_presence_only(store, bus):
    with FriendNetwork(store, None, bus=bus) as anonymous:
        assert store.active_subscriptions == 1
        with pytest.raises(Unauthenticated):
            anonymous.send_friend_request("bob")
        with pytest.raises(Unauthenticated):
            anonymous.remove_friend("bob")
        with pytest.raises(Unauthenticated):
            asyncio.run(anonymous.start_presence(interval=timedelta(seconds=30)))
    assert store.active_subscriptions == 0


def test_close_is_idempotent_and_stops_updates(store, bus):
    network = FriendNetwork(store, "alice", bus=bus).open()
    assert network.is_open
    assert store.active_subscriptions == 4

    network.close()
    network.close()
    assert not network.is_open
    assert store.active_subscriptions == 0

    with FriendNetwork(store, "bob", bus=bus) as bob:
        bob.send_friend_request("alice")
    assert network.incoming_requests() == []


def test_listener_errors_mark_session_stale(alice, bob, store, monkeypatch):
    def _unavailable(query):
        raise StoreUnavailableError("document store unavailable")

    monkeypatch.setattr(store, "query", _unavailable)
    store.set("users/alice/friends/zed", {"uid": "zed"})

    assert alice.stale is True
    assert isinstance(alice.last_error, StoreUnavailableError)
    assert bob.stale is False


def test_presence_session_marks_online_and_offline(alice, bob, bus):
    events: list[FriendEvent] = []
    bus.subscribe(events.append)

    async def _scenario() -> None:
        heartbeat = await alice.start_presence(interval=timedelta(seconds=30))
        assert heartbeat.running
        assert bob.presence("alice").is_online is True
        await alice.set_visibility(True)
        assert bob.presence("alice").is_online is False
        await alice.stop_presence()

    asyncio.run(_scenario())

    assert "alice" in bob.online_users()
    assert bob.presence("alice").is_online is False
    assert [event.type for event in events] == ["PresenceChanged"] * 3


def test_close_halts_the_heartbeat(store, bus):
    events: list[PresenceChanged] = []
    bus.subscribe(events.append, [PresenceChanged])

    async def _scenario() -> int:
        network = FriendNetwork(store, "carol", bus=bus).open()
        await network.start_presence(interval=timedelta(milliseconds=20))
        await asyncio.sleep(0.08)
        network.close()
        # Let a write that was already in flight finish before counting.
        await asyncio.sleep(0.05)
        settled = len(events)
        await asyncio.sleep(0.2)
        return settled

    settled = asyncio.run(_scenario())

    assert len(events) == settled
    assert store.active_subscriptions == 0


def test_async_exit_marks_user_offline(store, bus):
    events: list[PresenceChanged] = []
    bus.subscribe(events.append, [PresenceChanged])

    async def _scenario() -> None:
        async with FriendNetwork(store, "carol", bus=bus) as network:
            await network.start_presence(interval=timedelta(milliseconds=20))
            await asyncio.sleep(0.05)
        count = len(events)
        await asyncio.sleep(0.1)
        assert len(events) == count

    asyncio.run(_scenario())

    assert events[-1].is_online is False
    assert store.get("onlineUsers/carol").get("isOnline") is False
    assert store.active_subscriptions == 0
