"""
realtime.py — In-app realtime broadcast over websockets.

Delivery mechanism:
    • Each websocket connection joins the group ``user:<id>`` on connect
    • The adapter broadcasts an event name chosen per category plus a JSON
      payload to the recipient's group (or one connection)
    • No delivery receipt: a broadcast to an empty group still succeeds

Every user has an implicit realtime endpoint (their user group), so the
channel is never skipped for lack of a registered address.
"""

from __future__ import annotations

import logging
import uuid
from collections import defaultdict
from typing import Any, DefaultDict, Dict, Mapping, Optional, Set

from fastapi import WebSocket

from backend.app.notifications.channels.base import ChannelAdapter, RealtimeProvider
from backend.app.notifications.models import (
    AlertCategory,
    ChannelEndpoint,
    ChannelType,
    DeliveryPayload,
)

logger = logging.getLogger(__name__)

DEFAULT_EVENT_NAME = "ReceiveNotification"

EVENT_NAMES: Dict[str, str] = {
    AlertCategory.URGENT_MISSING.value:       "ReceiveUrgentAlert",
    AlertCategory.SPECIAL_NEEDS_URGENT.value: "ReceiveUrgentAlert",
    AlertCategory.MEDICAL_EMERGENCY.value:    "ReceiveMedicalAlert",
    AlertCategory.SIGHTING_REPORT.value:      "ReceiveSightingReport",
    AlertCategory.CASE_FOUND.value:           "ReceiveFoundNotification",
    AlertCategory.ROUTINE_UPDATE.value:       "ReceiveCaseUpdate",
}

CONNECTION_PLATFORM = "connection"


def user_group(user_id: int) -> str:
    return f"user:{user_id}"


def event_name_for(category: str) -> str:
    return EVENT_NAMES.get(category, DEFAULT_EVENT_NAME)


class ConnectionManager:
    """Active websocket connections, addressable by id and by group."""

    def __init__(self) -> None:
        self._connections: Dict[str, WebSocket] = {}
        self._groups: DefaultDict[str, Set[str]] = defaultdict(set)

    async def connect(self, user_id: int, websocket: WebSocket) -> str:
        """Accept ``websocket`` and join it to the user's group."""
        await websocket.accept()
        connection_id = uuid.uuid4().hex
        self._connections[connection_id] = websocket
        self._groups[user_group(user_id)].add(connection_id)
        logger.info("Realtime connection %s opened for user %s", connection_id, user_id)
        return connection_id

    def disconnect(self, connection_id: str) -> None:
        self._connections.pop(connection_id, None)
        for group in [g for g, members in self._groups.items() if connection_id in members]:
            self._groups[group].discard(connection_id)
            if not self._groups[group]:
                del self._groups[group]

    def group_size(self, group_key: str) -> int:
        return len(self._groups.get(group_key, ()))

    @property
    def connection_count(self) -> int:
        return len(self._connections)

    async def broadcast_to_group(self, group_key: str, event_name: str, payload: Mapping[str, Any]) -> int:
        sent = 0
        for connection_id in list(self._groups.get(group_key, ())):
            sent += await self.broadcast_to_connection(connection_id, event_name, payload)
        return sent

    async def broadcast_to_connection(
        self, connection_id: str, event_name: str, payload: Mapping[str, Any],
    ) -> int:
        websocket = self._connections.get(connection_id)
        if websocket is None:
            return 0
        try:
            await websocket.send_json({"event": event_name, "payload": dict(payload)})
        except Exception as exc:
            logger.info("Dropping realtime connection %s: %s", connection_id, exc)
            self.disconnect(connection_id)
            return 0
        return 1


class RealtimeAdapter(ChannelAdapter):
    channel = ChannelType.REALTIME

    def __init__(self, provider: RealtimeProvider):
        self._provider = provider

    async def _send(self, endpoint: ChannelEndpoint, payload: DeliveryPayload) -> Optional[str]:
        event_name = event_name_for(payload.category)
        message = {
            "event_id": payload.event_id,
            "title": payload.title,
            "body": payload.body,
            "category": payload.category,
            "priority": payload.priority.name.lower(),
            "data": dict(payload.data),
        }
        if endpoint.platform == CONNECTION_PLATFORM:
            reached = await self._provider.broadcast_to_connection(endpoint.address, event_name, message)
        else:
            reached = await self._provider.broadcast_to_group(endpoint.address, event_name, message)
        logger.debug(
            "[REALTIME] %s → %s reached %d connection(s)", event_name, endpoint.address, reached,
        )
        return None

    def implicit_endpoint(self, user_id: int) -> Optional[ChannelEndpoint]:
        return ChannelEndpoint(
            endpoint_id=f"realtime-{user_group(user_id)}",
            user_id=user_id,
            channel=ChannelType.REALTIME,
            address=user_group(user_id),
        )
