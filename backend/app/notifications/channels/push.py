"""
push.py — Mobile / web push notification channel.

Delivery mechanism:
    • Endpoint address is the device registration token
    • Payload: title + body + string-valued data map (FCM data messages
      only carry strings)
    • Provider returns a message id on acceptance

═══════════════════════════════════════════════════════════════════════════
PUSH DATA MAP
═══════════════════════════════════════════════════════════════════════════

    event_id   EVT-…
    category   urgent_missing | case_found | …
    priority   low | normal | high | urgent
    case_id    present when the event is about a case
    …          structured_data of the event, stringified
"""

from __future__ import annotations

import json
import logging
from typing import Dict, Optional

from backend.app.notifications.channels.base import ChannelAdapter, PushProvider
from backend.app.notifications.models import (
    ChannelEndpoint,
    ChannelType,
    DeliveryPayload,
)

logger = logging.getLogger(__name__)


def build_push_data(payload: DeliveryPayload) -> Dict[str, str]:
    data: Dict[str, str] = {}
    for key, value in payload.data.items():
        if value is None:
            continue
        data[key] = value if isinstance(value, str) else json.dumps(value, default=str)
    data["event_id"] = payload.event_id
    data["category"] = payload.category
    data["priority"] = payload.priority.name.lower()
    return data


class PushAdapter(ChannelAdapter):
    channel = ChannelType.PUSH

    def __init__(self, provider: PushProvider):
        self._provider = provider

    async def _send(self, endpoint: ChannelEndpoint, payload: DeliveryPayload) -> Optional[str]:
        return await self._provider.send_push(
            endpoint.address, payload.title, payload.body, build_push_data(payload),
        )
