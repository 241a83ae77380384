"""WebSocket gateway for the messaging live channel.

Each authenticated user holds at most one live connection; a newer
connection replaces the older one. The REST send route pushes
``new_message`` through the registry, and typing indicators are relayed
between the two participants.

Protocol (JSON frames, ``{"event": ..., "data": {...}}``):
    Client → Server: {"event": "typing", "data": {"recipient_id": "...", "is_typing": true}}

    Server → Client: {"event": "new_message", "data": {<Message>, "sender_id": "...", "recipient_id": "..."}}
    Server → Client: {"event": "user_typing", "data": {"sender_id": "...", "is_typing": true}}
    Server → Client: {"event": "error", "data": {"message": "..."}}
"""

from __future__ import annotations

import json
import logging
from typing import Any

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from fleexpert.security import parse_bearer

logger = logging.getLogger(__name__)

router = APIRouter()


async def _send_frame(ws: WebSocket, event: str, data: dict[str, Any]) -> bool:
    """Send a JSON frame. Returns False if the connection is broken."""
    try:
        await ws.send_json({"event": event, "data": data})
    except Exception as exc:
        logger.debug("Dropping %s frame on broken connection: %s", event, exc)
        return False
    return True


class ConnectionRegistry:
    """Maps user ids to their live WebSocket connection."""

    def __init__(self) -> None:
        self._sockets: dict[str, WebSocket] = {}

    def register(self, user_id: str, ws: WebSocket) -> None:
        self._sockets[user_id] = ws

    def unregister(self, user_id: str, ws: WebSocket) -> None:
        """Forget the connection unless it was already replaced by a newer one."""
        if self._sockets.get(user_id) is ws:
            del self._sockets[user_id]

    def is_connected(self, user_id: str) -> bool:
        return user_id in self._sockets

    async def send_to_user(self, user_id: str, event: str, data: dict[str, Any]) -> bool:
        """Push an event to a user. Users without a connection are skipped."""
        ws = self._sockets.get(user_id)
        if ws is None:
            return False
        return await _send_frame(ws, event, data)


def _token_from(websocket: WebSocket) -> str | None:
    return (
        parse_bearer(websocket.headers.get("authorization"))
        or websocket.query_params.get("token")
    )


@router.websocket("/ws/messaging")
async def messaging_websocket(websocket: WebSocket) -> None:
    """Live channel for one user.

    The bearer credential is checked before the handshake completes;
    unknown tokens are refused with close code 4401.
    """
    state = websocket.app.state

    token = _token_from(websocket)
    user = state.user_repo.get_by_token(token) if token else None
    if user is None:
        await websocket.close(code=4401, reason="Invalid credentials")
        return

    user_id = user["id"]
    registry: ConnectionRegistry = state.connections

    await websocket.accept()
    registry.register(user_id, websocket)
    logger.info("Live channel connected for user %s", user_id)

    try:
        while True:
            raw = await websocket.receive_text()
            try:
                frame = json.loads(raw)
            except json.JSONDecodeError:
                await _send_frame(websocket, "error", {"message": "Invalid JSON frame"})
                continue

            if not isinstance(frame, dict):
                await _send_frame(websocket, "error", {"message": "Frame must be an object"})
                continue

            event = frame.get("event")
            data = frame.get("data") or {}

            if event == "typing":
                recipient_id = data.get("recipient_id")
                if not recipient_id:
                    await _send_frame(websocket, "error", {"message": "recipient_id is required"})
                    continue
                await registry.send_to_user(recipient_id, "user_typing", {
                    "sender_id": user_id,
                    "is_typing": bool(data.get("is_typing")),
                })
            else:
                await _send_frame(websocket, "error", {"message": f"Unknown event: {event}"})

    except WebSocketDisconnect:
        logger.info("Live channel disconnected for user %s", user_id)
    finally:
        registry.unregister(user_id, websocket)
