"""Friend management API routes."""
from __future__ import annotations

from fastapi import APIRouter, Depends, status

from ..config import get_settings
from ..schemas.friends import (
    DirectoryEntryResponse,
    DirectoryResponse,
    FriendRequestPayload,
    FriendRequestResponse,
    FriendsOverviewResponse,
    FriendStatusResponse,
    FriendSummary,
    RemoveFriendResponse,
    SendFriendRequestResponse,
)
from ..services import (
    DirectoryEntry,
    DirectoryProjection,
    DocumentStore,
    FriendRequestRecord,
    cancel_request,
    get_current_uid,
    get_store,
    list_friend_requests,
    list_friends,
    relationship_status,
    remove_friend,
    respond_to_request,
    send_friend_request,
)

router = APIRouter(prefix="/friends", tags=["friends"])
directory_router = APIRouter(prefix="/directory", tags=["directory"])


def _request_response(record: FriendRequestRecord) -> FriendRequestResponse:
    return FriendRequestResponse.model_validate(record)


def _directory_entry(entry: DirectoryEntry) -> DirectoryEntryResponse:
    profile = entry.profile
    return DirectoryEntryResponse(
        uid=profile.uid,
        full_name=profile.full_name,
        department=profile.department,
        batch=profile.batch,
        email=profile.email,
        headline=profile.headline,
        photo_url=profile.photo_url,
        profile_completed=profile.profile_completed,
        relationship=entry.relationship,
        request_id=entry.request_id,
        friends_since=entry.friends_since,
        online=entry.online,
        last_seen=entry.last_seen,
    )


@router.get("/", response_model=FriendsOverviewResponse)
async def friends_overview(
    current_uid: str = Depends(get_current_uid),
    store: DocumentStore = Depends(get_store),
) -> FriendsOverviewResponse:
    edges = list_friends(store, uid=current_uid)
    incoming, outgoing = list_friend_requests(store, uid=current_uid)
    return FriendsOverviewResponse(
        friends=[FriendSummary.model_validate(edge) for edge in edges],
        incoming_requests=[_request_response(item) for item in incoming],
        outgoing_requests=[_request_response(item) for item in outgoing],
    )


@router.post("/requests", response_model=SendFriendRequestResponse, status_code=status.HTTP_201_CREATED)
async def send_friend_request_endpoint(
    payload: FriendRequestPayload,
    current_uid: str = Depends(get_current_uid),
    store: DocumentStore = Depends(get_store),
) -> SendFriendRequestResponse:
    result = send_friend_request(store, requester_uid=current_uid, target_uid=payload.target_uid)
    return SendFriendRequestResponse(created=result.created, request=_request_response(result.request))


@router.post("/requests/{request_id}/accept", response_model=FriendRequestResponse)
async def accept_friend_request(
    request_id: str,
    current_uid: str = Depends(get_current_uid),
    store: DocumentStore = Depends(get_store),
) -> FriendRequestResponse:
    record = respond_to_request(store, request_id=request_id, responder_uid=current_uid, accept=True)
    return _request_response(record)


@router.post("/requests/{request_id}/reject", response_model=FriendRequestResponse)
async def reject_friend_request(
    request_id: str,
    current_uid: str = Depends(get_current_uid),
    store: DocumentStore = Depends(get_store),
) -> FriendRequestResponse:
    record = respond_to_request(store, request_id=request_id, responder_uid=current_uid, accept=False)
    return _request_response(record)


@router.delete("/requests/{request_id}", status_code=status.HTTP_204_NO_CONTENT)
async def cancel_friend_request(
    request_id: str,
    current_uid: str = Depends(get_current_uid),
    store: DocumentStore = Depends(get_store),
) -> None:
    cancel_request(store, request_id=request_id, canceller_uid=current_uid)


@router.get("/{uid}/status", response_model=FriendStatusResponse)
async def friend_status(
    uid: str,
    current_uid: str = Depends(get_current_uid),
    store: DocumentStore = Depends(get_store),
) -> FriendStatusResponse:
    label = relationship_status(store, viewer_uid=current_uid, other_uid=uid)
    return FriendStatusResponse(uid=uid, is_friend=label == "friend", relationship=label)


@router.delete("/{uid}", response_model=RemoveFriendResponse)
async def remove_friend_endpoint(
    uid: str,
    current_uid: str = Depends(get_current_uid),
    store: DocumentStore = Depends(get_store),
) -> RemoveFriendResponse:
    removed = remove_friend(store, initiator_uid=current_uid, other_uid=uid)
    return RemoveFriendResponse(uid=uid, status="removed" if removed else "noop")


@directory_router.get("/", response_model=DirectoryResponse)
async def directory(
    current_uid: str = Depends(get_current_uid),
    store: DocumentStore = Depends(get_store),
) -> DirectoryResponse:
    settings = get_settings()
    with DirectoryProjection(store, current_uid, window=settings.heartbeat_window) as projection:
        entries = projection.entries()
        stale = projection.stale
    return DirectoryResponse(stale=stale, entries=[_directory_entry(entry) for entry in entries])


__all__ = ["router", "directory_router"]
