"""Business logic for friend requests and friendships."""
from __future__ import annotations

import logging
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import Iterator, Literal

from fastapi import HTTPException, status

from .document_store import (
    SERVER_TIMESTAMP,
    DocumentAlreadyExists,
    DocumentNotFound,
    DocumentSnapshot,
    DocumentStore,
    PreconditionFailed,
    Query,
    StoreUnavailableError,
)
from .errors import (
    AlreadyFriends,
    AlreadyPending,
    InvalidState,
    RequestNotFound,
    SelfRequestError,
    StoreUnavailable,
    Unauthenticated,
    Unauthorized,
)
from .events import (
    EventBus,
    FriendshipEstablished,
    FriendshipRemoved,
    RequestCancelled,
    RequestCreated,
    RequestResolved,
    event_bus,
)

logger = logging.getLogger(__name__)

REQUESTS_COLLECTION = "friendRequests"

RequestStatus = Literal["pending", "accepted", "rejected"]
Relationship = Literal["self", "friend", "incoming", "outgoing", "rejected", "none"]


@dataclass(frozen=True, slots=True)
class FriendRequestRecord:
    id: str
    sender_uid: str
    receiver_uid: str
    status: RequestStatus
    created_at: datetime | None = None
    responded_at: datetime | None = None

    @classmethod
    def from_snapshot(cls, snapshot: DocumentSnapshot) -> "FriendRequestRecord":
        return cls(
            id=snapshot.id,
            sender_uid=snapshot.get("senderUid"),
            receiver_uid=snapshot.get("receiverUid"),
            status=snapshot.get("status"),
            created_at=snapshot.get("createdAt"),
            responded_at=snapshot.get("respondedAt"),
        )

    @property
    def is_pending(self) -> bool:
        return self.status == "pending"

    def involves(self, uid: str) -> bool:
        return uid in {self.sender_uid, self.receiver_uid}


@dataclass(frozen=True, slots=True)
class FriendshipEdge:
    owner_uid: str
    uid: str
    since: datetime | None = None

    @classmethod
    def from_snapshot(cls, owner_uid: str, snapshot: DocumentSnapshot) -> "FriendshipEdge":
        return cls(owner_uid=owner_uid, uid=snapshot.get("uid", snapshot.id), since=snapshot.get("since"))


@dataclass(frozen=True, slots=True)
class SendResult:
    request: FriendRequestRecord
    created: bool


def request_id_for(first_uid: str, second_uid: str) -> str:
    """Deterministic id for the unordered pair ``{first_uid, second_uid}``."""

    smaller, larger = sorted((first_uid, second_uid))
    return f"{smaller}_{larger}"


def request_path(request_id: str) -> str:
    return f"{REQUESTS_COLLECTION}/{request_id}"


def friends_collection(owner_uid: str) -> str:
    return f"users/{owner_uid}/friends"


def edge_path(owner_uid: str, other_uid: str) -> str:
    return f"{friends_collection(owner_uid)}/{other_uid}"


def friends_query(store: DocumentStore, uid: str) -> Query:
    return store.collection(friends_collection(uid)).order_by("since", descending=True)


def incoming_query(store: DocumentStore, uid: str) -> Query:
    return store.collection(REQUESTS_COLLECTION).where("receiverUid", "==", uid)


def outgoing_query(store: DocumentStore, uid: str) -> Query:
    return store.collection(REQUESTS_COLLECTION).where("senderUid", "==", uid)


def _actor(uid: str | None) -> str:
    if not uid or not uid.strip():
        raise Unauthenticated()
    return _clean_uid(uid)


def _clean_uid(uid: str) -> str:
    candidate = (uid or "").strip()
    if not candidate or "/" in candidate:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid user id")
    return candidate


def _clean_request_id(request_id: str) -> str:
    candidate = (request_id or "").strip()
    if not candidate or "/" in candidate:
        raise RequestNotFound()
    return candidate


@contextmanager
def _store_errors() -> Iterator[None]:
    try:
        yield
    except StoreUnavailableError as exc:
        raise StoreUnavailable() from exc


def get_request(store: DocumentStore, request_id: str) -> FriendRequestRecord | None:
    with _store_errors():
        snapshot = store.get(request_path(_clean_request_id(request_id)))
    if not snapshot.exists:
        return None
    return FriendRequestRecord.from_snapshot(snapshot)


def _require_request(store: DocumentStore, request_id: str) -> FriendRequestRecord:
    record = get_request(store, request_id)
    if record is None:
        raise RequestNotFound()
    return record


def is_friend(store: DocumentStore, uid: str, other_uid: str) -> bool:
    with _store_errors():
        return store.get(edge_path(_clean_uid(uid), _clean_uid(other_uid))).exists


def list_friends(store: DocumentStore, *, uid: str) -> list[FriendshipEdge]:
    owner = _clean_uid(uid)
    with _store_errors():
        snapshots = store.query(friends_query(store, owner))
    return [FriendshipEdge.from_snapshot(owner, snap) for snap in snapshots]


def _sorted_requests(snapshots: list[DocumentSnapshot], pending_only: bool) -> list[FriendRequestRecord]:
    records = [FriendRequestRecord.from_snapshot(snap) for snap in snapshots]
    if pending_only:
        records = [record for record in records if record.is_pending]
    return sorted(records, key=lambda record: (record.created_at is None, record.created_at or datetime.min))


def list_friend_requests(
    store: DocumentStore, *, uid: str, pending_only: bool = True
) -> tuple[list[FriendRequestRecord], list[FriendRequestRecord]]:
    owner = _clean_uid(uid)
    with _store_errors():
        incoming = store.query(incoming_query(store, owner))
        outgoing = store.query(outgoing_query(store, owner))
    return _sorted_requests(incoming, pending_only), _sorted_requests(outgoing, pending_only)


def relationship_status(store: DocumentStore, *, viewer_uid: str, other_uid: str) -> Relationship:
    viewer = _actor(viewer_uid)
    other = _clean_uid(other_uid)
    if viewer == other:
        return "self"
    if is_friend(store, viewer, other):
        return "friend"
    record = get_request(store, request_id_for(viewer, other))
    if record is None:
        return "none"
    if record.status == "rejected":
        return "rejected"
    if record.is_pending:
        return "outgoing" if record.sender_uid == viewer else "incoming"
    return "none"


def send_friend_request(
    store: DocumentStore,
    *,
    requester_uid: str | None,
    target_uid: str,
    raise_if_exists: bool = False,
    bus: EventBus = event_bus,
) -> SendResult:
    """Propose a friendship; an existing request for the pair is left untouched.

    Returns a :class:`SendResult` whose ``created`` flag is ``False`` when the
    call was absorbed as a no-op. With ``raise_if_exists`` the no-op surfaces
    as :class:`AlreadyPending` (or :class:`InvalidState` for a rejected pair).
    """

    sender = _actor(requester_uid)
    target = _clean_uid(target_uid)
    if sender == target:
        raise SelfRequestError()
    if is_friend(store, sender, target):
        raise AlreadyFriends()

    request_id = request_id_for(sender, target)
    existing = get_request(store, request_id)
    if existing is None:
        try:
            with _store_errors():
                created_at = store.create(
                    request_path(request_id),
                    {
                        "senderUid": sender,
                        "receiverUid": target,
                        "status": "pending",
                        "createdAt": SERVER_TIMESTAMP,
                    },
                )
        except DocumentAlreadyExists:
            logger.info("Friend request %s created concurrently; absorbing", request_id)
            existing = _require_request(store, request_id)
        else:
            record = FriendRequestRecord(request_id, sender, target, "pending", created_at)
            logger.info("Friend request %s sent by %s", request_id, sender)
            bus.publish(RequestCreated(request_id, sender, target, created_at))
            return SendResult(record, True)

    logger.info("Friend request %s already exists (%s); no-op", request_id, existing.status)
    if raise_if_exists:
        if existing.is_pending:
            raise AlreadyPending()
        raise InvalidState(f"Request already {existing.status}")
    return SendResult(existing, False)


def respond_to_request(
    store: DocumentStore,
    *,
    request_id: str,
    responder_uid: str | None,
    accept: bool,
    bus: EventBus = event_bus,
) -> FriendRequestRecord:
    """Accept or reject a pending request addressed to ``responder_uid``.

    Acceptance writes both friendship edges and the request status in one
    batch guarded by a ``status == pending`` precondition, so a duplicate
    accept fails with :class:`InvalidState` instead of re-creating edges.
    """

    responder = _actor(responder_uid)
    record = _require_request(store, request_id)
    if record.receiver_uid != responder:
        raise Unauthorized()
    if not record.is_pending:
        raise InvalidState(f"Request already {record.status}")

    new_status: RequestStatus = "accepted" if accept else "rejected"
    batch = store.batch()
    if accept:
        batch.set(edge_path(responder, record.sender_uid), {"uid": record.sender_uid, "since": SERVER_TIMESTAMP})
        batch.set(edge_path(record.sender_uid, responder), {"uid": responder, "since": SERVER_TIMESTAMP})
    batch.update(
        request_path(record.id),
        {"status": new_status, "respondedAt": SERVER_TIMESTAMP},
        expected={"status": "pending"},
    )
    try:
        with _store_errors():
            responded_at = batch.commit()
    except PreconditionFailed as exc:
        raise InvalidState("Request is no longer pending") from exc
    except DocumentNotFound as exc:
        raise RequestNotFound() from exc

    logger.info("Friend request %s %s by %s", record.id, new_status, responder)
    bus.publish(RequestResolved(record.id, record.sender_uid, responder, new_status, responded_at))
    if accept:
        bus.publish(FriendshipEstablished(record.sender_uid, responder, responded_at))

    return FriendRequestRecord(
        id=record.id,
        sender_uid=record.sender_uid,
        receiver_uid=record.receiver_uid,
        status=new_status,
        created_at=record.created_at,
        responded_at=responded_at,
    )


def accept_request(store: DocumentStore, *, request_id: str, responder_uid: str | None, bus: EventBus = event_bus) -> FriendRequestRecord:
    return respond_to_request(store, request_id=request_id, responder_uid=responder_uid, accept=True, bus=bus)


def reject_request(store: DocumentStore, *, request_id: str, responder_uid: str | None, bus: EventBus = event_bus) -> FriendRequestRecord:
    return respond_to_request(store, request_id=request_id, responder_uid=responder_uid, accept=False, bus=bus)


def cancel_request(
    store: DocumentStore,
    *,
    request_id: str,
    canceller_uid: str | None,
    bus: EventBus = event_bus,
) -> None:
    canceller = _actor(canceller_uid)
    record = _require_request(store, request_id)
    if record.sender_uid != canceller:
        raise Unauthorized("Not allowed to cancel this request")
    if not record.is_pending:
        raise InvalidState("Cannot cancel a request that is not pending")

    try:
        with _store_errors():
            store.delete(request_path(record.id), expected={"status": "pending"})
    except PreconditionFailed as exc:
        raise InvalidState("Request is no longer pending") from exc

    logger.info("Friend request %s cancelled by %s", record.id, canceller)
    bus.publish(RequestCancelled(record.id, record.sender_uid, record.receiver_uid))


def remove_friend(
    store: DocumentStore,
    *,
    initiator_uid: str | None,
    other_uid: str,
    bus: EventBus = event_bus,
) -> bool:
    """Delete both friendship edges and the pair's resolved request in one batch.

    Returns ``True`` when a friendship existed. Removing a non-friend is a
    no-op; a still pending request is left to cancel/respond.
    """

    initiator = _actor(initiator_uid)
    other = _clean_uid(other_uid)
    if initiator == other:
        return False

    request_id = request_id_for(initiator, other)
    with _store_errors():
        forward = store.get(edge_path(initiator, other))
        backward = store.get(edge_path(other, initiator))
        request = store.get(request_path(request_id))

    existed = forward.exists or backward.exists
    batch = store.batch()
    batch.delete(edge_path(initiator, other))
    batch.delete(edge_path(other, initiator))
    if request.exists and request.get("status") != "pending":
        batch.delete(request_path(request_id))
    with _store_errors():
        batch.commit()

    if existed:
        logger.info("Friendship between %s and %s removed by %s", initiator, other, initiator)
        bus.publish(FriendshipRemoved(initiator, other, initiator))
    else:
        logger.debug("remove_friend(%s, %s) found no friendship", initiator, other)
    return existed


__all__ = [
    "REQUESTS_COLLECTION",
    "FriendRequestRecord",
    "FriendshipEdge",
    "SendResult",
    "request_id_for",
    "request_path",
    "friends_collection",
    "edge_path",
    "friends_query",
    "incoming_query",
    "outgoing_query",
    "get_request",
    "is_friend",
    "list_friends",
    "list_friend_requests",
    "relationship_status",
    "send_friend_request",
    "respond_to_request",
    "accept_request",
    "reject_request",
    "cancel_request",
    "remove_friend",
]
