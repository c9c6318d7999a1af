"""Convenience exports for service layer."""
from .auth_service import create_access_token, decode_access_token, get_current_uid
from .directory import DirectoryEntry, DirectoryProjection, StudentProfile
from .document_store import SERVER_TIMESTAMP, DocumentStore, get_store
from .errors import (
    AlreadyFriends,
    AlreadyPending,
    FriendNetworkError,
    InvalidState,
    RequestNotFound,
    SelfRequestError,
    StoreUnavailable,
    Unauthenticated,
    Unauthorized,
)
from .events import EventBus, event_bus
from .friend_network import FriendNetwork
from .friendship_service import (
    FriendRequestRecord,
    FriendshipEdge,
    SendResult,
    accept_request,
    cancel_request,
    get_request,
    is_friend,
    list_friend_requests,
    list_friends,
    reject_request,
    relationship_status,
    remove_friend,
    request_id_for,
    respond_to_request,
    send_friend_request,
)
from .presence_service import (
    PresenceHeartbeat,
    PresenceRecord,
    get_presence,
    is_effectively_online,
    mark_presence,
    sweep_stale_presence,
)

__all__ = [
    "create_access_token",
    "decode_access_token",
    "get_current_uid",
    "DirectoryEntry",
    "DirectoryProjection",
    "StudentProfile",
    "SERVER_TIMESTAMP",
    "DocumentStore",
    "get_store",
    "FriendNetworkError",
    "Unauthenticated",
    "Unauthorized",
    "RequestNotFound",
    "InvalidState",
    "AlreadyPending",
    "AlreadyFriends",
    "SelfRequestError",
    "StoreUnavailable",
    "EventBus",
    "event_bus",
    "FriendNetwork",
    "FriendRequestRecord",
    "FriendshipEdge",
    "SendResult",
    "request_id_for",
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
    "PresenceRecord",
    "PresenceHeartbeat",
    "mark_presence",
    "get_presence",
    "is_effectively_online",
    "sweep_stale_presence",
]
