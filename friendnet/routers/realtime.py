"""WebSocket endpoint streaming friend graph changes to the signed-in user."""
from __future__ import annotations

import json
import logging

from fastapi import APIRouter, Query, WebSocket, WebSocketDisconnect, status

from ..services import FriendNetworkError, decode_access_token
from ..services.realtime import friend_stream_manager

router = APIRouter()
logger = logging.getLogger(__name__)


@router.websocket("/ws/friends")
async def friend_updates(
    websocket: WebSocket,
    token: str = Query(..., alias="token"),
) -> None:
    """Maintain a long-lived connection that pushes request, friendship and presence events."""

    try:
        uid = decode_access_token(token)
    except FriendNetworkError:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    await friend_stream_manager.connect(uid, websocket)
    logger.info("Friend socket connected for %s", uid)
    await websocket.send_text(json.dumps({"type": "ready"}))
    try:
        while True:
            try:
                raw = await websocket.receive_text()
            except WebSocketDisconnect:
                break

            try:
                payload = json.loads(raw)
            except json.JSONDecodeError:
                payload = {"type": raw}
            if not isinstance(payload, dict):
                continue

            message_type = str(payload.get("type") or "").strip().lower()
            if message_type == "ping":
                await websocket.send_text(json.dumps({"type": "pong"}))
    finally:
        await friend_stream_manager.disconnect(websocket)
        logger.info("Friend socket disconnected for %s", uid)


__all__ = ["router"]
