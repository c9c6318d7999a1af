"""Aggregate router exports."""
from .friends import directory_router
from .friends import router as friends_router
from .presence import router as presence_router
from .realtime import router as realtime_router

__all__ = [
    "directory_router",
    "friends_router",
    "presence_router",
    "realtime_router",
]
