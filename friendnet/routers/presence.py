"""Presence API routes."""
from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, status

from ..config import get_settings
from ..schemas.presence import PresenceResponse, PresenceUpdate
from ..services import (
    DocumentStore,
    PresenceRecord,
    get_current_uid,
    get_presence,
    get_store,
    is_effectively_online,
    mark_presence,
)

router = APIRouter(prefix="/presence", tags=["presence"])


def _presence_response(record: PresenceRecord) -> PresenceResponse:
    window = get_settings().heartbeat_window
    return PresenceResponse(
        uid=record.uid,
        is_online=record.is_online,
        last_seen=record.last_seen,
        effectively_online=is_effectively_online(record, window=window),
    )


@router.put("", response_model=PresenceResponse)
async def update_presence(
    payload: PresenceUpdate,
    current_uid: str = Depends(get_current_uid),
    store: DocumentStore = Depends(get_store),
) -> PresenceResponse:
    """Record a heartbeat or visibility change for the caller."""

    record = mark_presence(store, uid=current_uid, is_online=payload.is_online)
    return _presence_response(record)


@router.get("/{uid}", response_model=PresenceResponse)
async def read_presence(
    uid: str,
    current_uid: str = Depends(get_current_uid),
    store: DocumentStore = Depends(get_store),
) -> PresenceResponse:
    record = get_presence(store, uid)
    if record is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Presence not found")
    return _presence_response(record)


__all__ = ["router"]
