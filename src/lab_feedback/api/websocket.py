"""WebSocket transport for the conversation gateway."""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING
from uuid import uuid4

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from lab_feedback.realtime.gateway import UNAUTHORIZED_CLOSE_CODE, extract_token

if TYPE_CHECKING:
    from lab_feedback.containers import AppContainer
    from lab_feedback.domain.models import Identity

logger = logging.getLogger(__name__)

router = APIRouter()


@dataclass
class WebSocketConnection:
    """Adapts a Starlette WebSocket to the event-envelope protocol."""

    websocket: WebSocket
    id: str = field(default_factory=lambda: uuid4().hex)

    async def emit(self, event: str, data: object) -> None:
        await self.websocket.send_json({"event": event, "data": data})

    async def close(self, code: int = 1000, reason: str = "") -> None:
        await self.websocket.close(code=code, reason=reason)


@router.websocket("/ws/conversations")
async def conversations_socket(websocket: WebSocket) -> None:
    """Authenticate, then relay client events.

    Clients sending the token as a header or query parameter are connected
    at once; everyone else must open with an ``auth`` frame.
    """
    container: AppContainer = websocket.app.state.container
    gateway = container.gateway
    await websocket.accept()
    connection = WebSocketConnection(websocket)

    auth: dict[str, object] | None = None
    if extract_token(None, websocket.headers, websocket.query_params) is None:
        try:
            first = await asyncio.wait_for(
                websocket.receive_text(),
                timeout=container.settings.handshake_timeout_seconds,
            )
        except TimeoutError:
            await connection.close(UNAUTHORIZED_CLOSE_CODE, "Authentication timed out")
            return
        except WebSocketDisconnect:
            return
        auth = _auth_payload(first)

    identity: Identity | None = await gateway.connect(
        connection, auth, websocket.headers, websocket.query_params
    )
    if identity is None:
        return

    try:
        while True:
            raw = await websocket.receive_text()
            frame = _decode(raw)
            if frame is None:
                await connection.emit(
                    "error", {"message": "Frames must be JSON objects with an event"}
                )
                continue
            event, data = frame
            if event == "auth":
                logger.debug("Ignoring auth frame on authenticated %s", connection.id)
                continue
            await gateway.handle_event(connection, identity, event, data)
    except WebSocketDisconnect:
        pass
    finally:
        gateway.disconnect(connection, identity)


def _decode(raw: str) -> tuple[str, object] | None:
    try:
        frame = json.loads(raw)
    except json.JSONDecodeError:
        return None
    if not isinstance(frame, dict) or not isinstance(frame.get("event"), str):
        return None
    return frame["event"], frame.get("data")


def _auth_payload(raw: str) -> dict[str, object] | None:
    frame = _decode(raw)
    if frame is None:
        return None
    event, data = frame
    if event != "auth" or not isinstance(data, dict):
        logger.debug("First frame was %s, not auth", event)
        return None
    return data
