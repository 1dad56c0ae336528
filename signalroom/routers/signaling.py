"""Signaling WebSocket endpoint."""
from __future__ import annotations

import logging

from fastapi import APIRouter, WebSocket, WebSocketDisconnect
from starlette.websockets import WebSocketState

from ..services.relay import RelayConnection
from ..services.rooms import registry

logger = logging.getLogger(__name__)

router = APIRouter()


@router.websocket("/ws")
@router.websocket("/")
async def signaling_endpoint(websocket: WebSocket) -> None:
    """Relay join/offer/answer/candidate/leave messages between room members."""

    await websocket.accept()

    def is_writable() -> bool:
        return (
            websocket.client_state is WebSocketState.CONNECTED
            and websocket.application_state is WebSocketState.CONNECTED
        )

    connection = RelayConnection(registry, websocket.send_json, is_writable=is_writable)
    logger.info("New signaling connection %s", connection.connection_id)

    try:
        while True:
            message = await websocket.receive()
            if message["type"] == "websocket.disconnect":
                break
            # Binary frames carry the same JSON as text frames.
            raw = message.get("text")
            if raw is None:
                raw = message.get("bytes")
            if raw is None:
                continue
            await connection.handle_text(raw)
    except WebSocketDisconnect:
        pass
    finally:
        await connection.close()
