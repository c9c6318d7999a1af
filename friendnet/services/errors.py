"""HTTP-aware error taxonomy raised by the friend network services."""
from __future__ import annotations

from typing import ClassVar

from fastapi import HTTPException, status


class FriendNetworkError(HTTPException):
    """Base error carrying a stable machine readable ``code``."""

    status_code_default: ClassVar[int] = status.HTTP_400_BAD_REQUEST
    code: ClassVar[str] = "FRIEND_NETWORK_ERROR"
    default_detail: ClassVar[str] = "Friend network error"

    def __init__(self, detail: str | None = None) -> None:
        super().__init__(status_code=self.status_code_default, detail=detail or self.default_detail)


class Unauthenticated(FriendNetworkError):
    status_code_default = status.HTTP_401_UNAUTHORIZED
    code = "UNAUTHENTICATED"
    default_detail = "Authentication required"


class Unauthorized(FriendNetworkError):
    status_code_default = status.HTTP_403_FORBIDDEN
    code = "UNAUTHORIZED"
    default_detail = "Not allowed to act on this request"


class RequestNotFound(FriendNetworkError):
    status_code_default = status.HTTP_404_NOT_FOUND
    code = "NOT_FOUND"
    default_detail = "Request not found"


class InvalidState(FriendNetworkError):
    status_code_default = status.HTTP_409_CONFLICT
    code = "INVALID_STATE"
    default_detail = "Request already processed"


class AlreadyPending(FriendNetworkError):
    status_code_default = status.HTTP_409_CONFLICT
    code = "ALREADY_PENDING"
    default_detail = "Pending request already exists"


class AlreadyFriends(FriendNetworkError):
    status_code_default = status.HTTP_409_CONFLICT
    code = "ALREADY_FRIENDS"
    default_detail = "Already friends"


class SelfRequestError(FriendNetworkError):
    status_code_default = status.HTTP_400_BAD_REQUEST
    code = "SELF_REQUEST"
    default_detail = "Cannot befriend yourself"


class StoreUnavailable(FriendNetworkError):
    status_code_default = status.HTTP_503_SERVICE_UNAVAILABLE
    code = "STORE_UNAVAILABLE"
    default_detail = "Document store unavailable, retry later"


__all__ = [
    "FriendNetworkError",
    "Unauthenticated",
    "Unauthorized",
    "RequestNotFound",
    "InvalidState",
    "AlreadyPending",
    "AlreadyFriends",
    "SelfRequestError",
    "StoreUnavailable",
]
