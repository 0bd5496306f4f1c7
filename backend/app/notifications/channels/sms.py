"""
sms.py — SMS delivery channel.

Delivery mechanism:
    • Endpoint address is an E.164 phone number
    • Text is trimmed to one GSM-7 segment (160 chars)

    SMS (≤160 chars):
        "[URGENT] {title}: {body}"
"""

from __future__ import annotations

import logging
from typing import Optional

from backend.app.notifications.channels.base import ChannelAdapter, SmsProvider
from backend.app.notifications.models import (
    ChannelEndpoint,
    ChannelType,
    DeliveryPayload,
)

logger = logging.getLogger(__name__)

SMS_MAX_GSM7 = 160


def format_sms(payload: DeliveryPayload) -> str:
    text = f"[{payload.priority.name}] {payload.title}: {payload.body}"
    if len(text) > SMS_MAX_GSM7:
        text = text[: SMS_MAX_GSM7 - 3] + "..."
    return text


class SmsAdapter(ChannelAdapter):
    channel = ChannelType.SMS

    def __init__(self, provider: SmsProvider):
        self._provider = provider

    async def _send(self, endpoint: ChannelEndpoint, payload: DeliveryPayload) -> Optional[str]:
        return await self._provider.send_sms(endpoint.address, format_sms(payload))
