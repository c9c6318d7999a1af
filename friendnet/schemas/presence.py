"""Schemas supporting presence APIs."""
from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel


class PresenceUpdate(BaseModel):
    is_online: bool = True


class PresenceResponse(BaseModel):
    uid: str
    is_online: bool
    last_seen: datetime | None = None
    effectively_online: bool


__all__ = ["PresenceUpdate", "PresenceResponse"]
