"""
Websocket route for realtime notifications.

    WS /ws/notifications/{user_id}

Each connection joins the group ``user:<id>``, which is where the realtime
channel delivers. The socket is receive-only for alerts; the one client
action is ``{"action": "ping"}`` (answered with ``Pong``). Anything else,
including frames that are not JSON objects, gets an ``Error`` event and
the connection stays open.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Dict

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

logger = logging.getLogger(__name__)

router = APIRouter(tags=["realtime"])


def _event(name: str, **payload: Any) -> Dict[str, Any]:
    return {"event": name, "payload": payload}


@router.websocket("/ws/notifications/{user_id}")
async def notifications_socket(websocket: WebSocket, user_id: int) -> None:
    connections = websocket.app.state.container.connections
    connection_id = await connections.connect(user_id, websocket)
    await websocket.send_json(_event("Connected", connection_id=connection_id))
    try:
        while True:
            message = await websocket.receive()
            if message["type"] == "websocket.disconnect":
                break
            try:
                frame = json.loads(message.get("text") or message.get("bytes") or "")
                action = frame.get("action")
            except (ValueError, AttributeError):
                logger.debug("Ignoring malformed frame on connection %s", connection_id)
                await websocket.send_json(_event("Error", message="Frames must be JSON objects"))
                continue

            if action == "ping":
                await websocket.send_json(_event("Pong"))
            else:
                await websocket.send_json(_event("Error", message=f"Unsupported action: {action}"))
    except WebSocketDisconnect:
        pass
    finally:
        connections.disconnect(connection_id)
        logger.info("Realtime connection %s closed for user %s", connection_id, user_id)
