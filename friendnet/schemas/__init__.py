"""Convenience exports for schema layer."""
from .friends import (
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
from .presence import PresenceResponse, PresenceUpdate

__all__ = [
    "DirectoryEntryResponse",
    "DirectoryResponse",
    "FriendRequestPayload",
    "FriendRequestResponse",
    "FriendsOverviewResponse",
    "FriendStatusResponse",
    "FriendSummary",
    "RemoveFriendResponse",
    "SendFriendRequestResponse",
    "PresenceResponse",
    "PresenceUpdate",
]
