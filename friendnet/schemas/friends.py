"""Schemas for friend requests, friendships and the student directory."""
from __future__ import annotations

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field


class FriendRequestPayload(BaseModel):
    target_uid: str = Field(..., min_length=1, max_length=255)


class FriendRequestResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    sender_uid: str
    receiver_uid: str
    status: Literal["pending", "accepted", "rejected"]
    created_at: datetime | None = None
    responded_at: datetime | None = None


class SendFriendRequestResponse(BaseModel):
    created: bool
    request: FriendRequestResponse


class FriendSummary(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    uid: str = Field(..., description="Friend user ID")
    since: datetime | None = None


class FriendsOverviewResponse(BaseModel):
    friends: list[FriendSummary]
    incoming_requests: list[FriendRequestResponse]
    outgoing_requests: list[FriendRequestResponse]


class FriendStatusResponse(BaseModel):
    uid: str
    is_friend: bool
    relationship: Literal["self", "friend", "incoming", "outgoing", "rejected", "none"]


class RemoveFriendResponse(BaseModel):
    uid: str
    status: Literal["removed", "noop"]


class DirectoryEntryResponse(BaseModel):
    uid: str
    full_name: str
    department: str | None = None
    batch: str | None = None
    email: str | None = None
    headline: str | None = None
    photo_url: str | None = None
    profile_completed: bool = False
    relationship: Literal["friend", "incoming", "outgoing", "none"]
    request_id: str | None = None
    friends_since: datetime | None = None
    online: bool
    last_seen: datetime | None = None


class DirectoryResponse(BaseModel):
    stale: bool
    entries: list[DirectoryEntryResponse]


__all__ = [
    "FriendRequestPayload",
    "FriendRequestResponse",
    "SendFriendRequestResponse",
    "FriendSummary",
    "FriendsOverviewResponse",
    "FriendStatusResponse",
    "RemoveFriendResponse",
    "DirectoryEntryResponse",
    "DirectoryResponse",
]
