"""Tests for the SQLAlchemy-backed document store."""
from __future__ import annotations

import os
from datetime import datetime, timedelta, timezone
from typing import Iterator

import pytest
from sqlalchemy import delete
from sqlalchemy.exc import OperationalError

os.environ.setdefault("DATABASE_URL", "sqlite+pysqlite:///./test_friendnet.db")
os.environ.setdefault("JWT_SECRET_KEY", "test-secret-key")
os.environ.setdefault("DISABLE_PRESENCE_SWEEP", "true")

from friendnet.database import Base, SessionLocal, engine  # noqa: E402
from friendnet.models import Document  # noqa: E402
from friendnet.services.document_store import (  # noqa: E402
    SERVER_TIMESTAMP,
    DocumentAlreadyExists,
    DocumentNotFound,
    DocumentStore,
    PreconditionFailed,
    StoreUnavailableError,
    split_path,
)

T0 = datetime(2026, 1, 5, 12, 0, tzinfo=timezone.utc)


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
    return DocumentStore(SessionLocal, clock=lambda: T0)


def test_split_path_validates_document_paths():
    assert split_path("friendRequests/a_b") == ("friendRequests", "a_b")
    assert split_path("users/a/friends/b") == ("users/a/friends", "b")
    for bad in ("friendRequests", "users/a/friends", "users//friends/b", ""):
        with pytest.raises(ValueError):
            split_path(bad)


def test_set_get_and_server_timestamp(store):
    committed = store.set("students/s1", {"fullName": "Ada", "lastSeen": SERVER_TIMESTAMP})
    snapshot = store.get("students/s1")

    assert committed == T0
    assert snapshot.exists
    assert snapshot.id == "s1"
    assert snapshot.get("fullName") == "Ada"
    assert snapshot.get("lastSeen") == T0


def test_missing_document_snapshot(store):
    snapshot = store.get("students/ghost")
    assert snapshot.exists is False
    assert snapshot.get("fullName", "n/a") == "n/a"


def test_merge_set_keeps_other_fields(store):
    store.set("students/s1", {"fullName": "Ada", "status": "offline"})
    store.set("students/s1", {"status": "online"}, merge=True)
    assert store.get("students/s1").data == {"fullName": "Ada", "status": "online"}

    store.set("students/s1", {"status": "offline"})
    assert store.get("students/s1").data == {"status": "offline"}


def test_create_refuses_existing_document(store):
    store.create("friendRequests/a_b", {"status": "pending"})
    with pytest.raises(DocumentAlreadyExists):
        store.create("friendRequests/a_b", {"status": "accepted"})
    assert store.get("friendRequests/a_b").get("status") == "pending"


def test_update_requires_existing_document(store):
    with pytest.raises(DocumentNotFound):
        store.update("friendRequests/a_b", {"status": "accepted"})


def test_update_precondition(store):
    store.create("friendRequests/a_b", {"status": "rejected"})
    with pytest.raises(PreconditionFailed):
        store.update("friendRequests/a_b", {"status": "accepted"}, expected={"status": "pending"})
    assert store.get("friendRequests/a_b").get("status") == "rejected"


def test_delete_missing_document_is_noop(store):
    store.delete("friendRequests/none")
    assert store.get("friendRequests/none").exists is False


def test_batch_is_all_or_nothing(store):
    store.create("friendRequests/a_b", {"status": "accepted"})

    batch = store.batch()
    batch.set("users/a/friends/b", {"uid": "b"})
    batch.set("users/b/friends/a", {"uid": "a"})
    batch.update("friendRequests/a_b", {"status": "accepted"}, expected={"status": "pending"})
    with pytest.raises(PreconditionFailed):
        batch.commit()

    assert store.get("users/a/friends/b").exists is False
    assert store.get("users/b/friends/a").exists is False


def test_batch_cannot_be_committed_twice(store):
    batch = store.batch().set("students/s1", {"fullName": "Ada"})
    batch.commit()
    with pytest.raises(RuntimeError):
        batch.commit()


def test_commit_failure_is_wrapped_and_rolled_back():
    def _failing_session():
        session = SessionLocal()

        def _boom() -> None:
            raise OperationalError("COMMIT", {}, Exception("database is locked"))

        session.commit = _boom  # type: ignore[method-assign]
        return session

    failing = DocumentStore(_failing_session)
    with pytest.raises(StoreUnavailableError):
        failing.set("students/s1", {"fullName": "Ada"})

    assert DocumentStore(SessionLocal).get("students/s1").exists is False


def test_query_filters_and_orders(store):
    clock = iter([T0, T0 + timedelta(minutes=1), T0 + timedelta(minutes=2)])
    ordered = DocumentStore(SessionLocal, clock=lambda: next(clock))
    ordered.set("users/a/friends/b", {"uid": "b", "since": SERVER_TIMESTAMP})
    ordered.set("users/a/friends/c", {"uid": "c", "since": SERVER_TIMESTAMP})
    ordered.set("users/a/friends/d", {"uid": "d"})

    query = store.collection("users/a/friends").order_by("since", descending=True)
    assert [snap.id for snap in store.query(query)] == ["c", "b"]

    store.set("friendRequests/a_b", {"senderUid": "a", "receiverUid": "b"})
    store.set("friendRequests/a_c", {"senderUid": "a", "receiverUid": "c"})
    store.set("friendRequests/b_c", {"senderUid": "c", "receiverUid": "b"})
    incoming = store.collection("friendRequests").where("receiverUid", "==", "b")
    assert sorted(snap.id for snap in store.query(incoming)) == ["a_b", "b_c"]
    assert len(store.query(incoming.limit(1))) == 1


def test_query_subscription_sees_whole_batches(store):
    seen: list[list[str]] = []
    subscription = store.subscribe(
        store.collection("users/a/friends"),
        lambda snaps: seen.append(sorted(snap.id for snap in snaps)),
    )
    assert seen == [[]]

    batch = store.batch()
    batch.set("users/a/friends/b", {"uid": "b"})
    batch.set("users/a/friends/c", {"uid": "c"})
    batch.commit()

    assert seen == [[], ["b", "c"]]

    store.set("users/z/friends/y", {"uid": "y"})
    assert len(seen) == 2

    subscription.unsubscribe()
    subscription.unsubscribe()
    store.delete("users/a/friends/b")
    assert len(seen) == 2
    assert store.active_subscriptions == 0


def test_document_subscription_and_listener_errors(store):
    errors: list[Exception] = []

    def _explode(snapshot):
        if snapshot.exists:
            raise ValueError("listener bug")

    subscription = store.subscribe("students/s1", _explode, errors.append)
    store.set("students/s1", {"fullName": "Ada"})

    assert len(errors) == 1
    assert isinstance(errors[0], ValueError)
    subscription.unsubscribe()


def _interleaving_store(competing_write):
    """Store whose commits run ``competing_write`` after the batch has read its rows."""

    def _session():
        session = SessionLocal()
        commit = session.commit

        def _commit() -> None:
            competing_write()
            commit()

        session.commit = _commit  # type: ignore[method-assign]
        return session

    return DocumentStore(_session, clock=lambda: T0)


def test_concurrent_change_fails_guarded_write(store):
    store.create("friendRequests/a_b", {"status": "pending"})
    racing = _interleaving_store(lambda: store.update("friendRequests/a_b", {"status": "rejected"}))

    with pytest.raises(PreconditionFailed):
        racing.update("friendRequests/a_b", {"status": "accepted"}, expected={"status": "pending"})
    assert store.get("friendRequests/a_b").get("status") == "rejected"


def test_concurrent_delete_fails_guarded_delete(store):
    store.create("friendRequests/a_b", {"status": "pending"})
    racing = _interleaving_store(lambda: store.update("friendRequests/a_b", {"status": "accepted"}))

    with pytest.raises(PreconditionFailed):
        racing.delete("friendRequests/a_b", expected={"status": "pending"})
    assert store.get("friendRequests/a_b").get("status") == "accepted"


def test_concurrent_change_to_unguarded_write_is_retryable(store):
    store.set("onlineUsers/ada", {"isOnline": True})
    racing = _interleaving_store(lambda: store.set("onlineUsers/ada", {"isOnline": False}, merge=True))

    with pytest.raises(StoreUnavailableError):
        racing.set("onlineUsers/ada", {"isOnline": True, "lastSeen": SERVER_TIMESTAMP}, merge=True)
    assert store.get("onlineUsers/ada").get("isOnline") is False
