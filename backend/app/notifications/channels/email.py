"""
email.py — Email alert delivery channel.

Delivery mechanism:
    • Endpoint address is the recipient's email address
    • Subject carries a priority prefix so urgent alerts stand out
    • HTML body stays minimal: title, body, case reference

═══════════════════════════════════════════════════════════════════════════
EMAIL TEMPLATE STRUCTURE
═══════════════════════════════════════════════════════════════════════════

    Subject: 🚨 [URGENT] {title}
    Body:
        ┌─────────────────────────────────────────┐
        │  {title}                                 │
        ├─────────────────────────────────────────┤
        │  {body}                                  │
        │  Case #{case_id}                         │
        └─────────────────────────────────────────┘
"""

from __future__ import annotations

import html
import logging
from typing import Optional

from backend.app.notifications.channels.base import ChannelAdapter, EmailProvider
from backend.app.notifications.models import (
    AlertPriority,
    ChannelEndpoint,
    ChannelType,
    DeliveryPayload,
)

logger = logging.getLogger(__name__)

_PRIORITY_ICONS = {
    AlertPriority.LOW:    "ℹ️",
    AlertPriority.NORMAL: "📢",
    AlertPriority.HIGH:   "⚠️",
    AlertPriority.URGENT: "🚨",
}

_PRIORITY_COLOURS = {
    AlertPriority.LOW:    "#4CAF50",
    AlertPriority.NORMAL: "#2196F3",
    AlertPriority.HIGH:   "#FF9800",
    AlertPriority.URGENT: "#B71C1C",
}


def build_subject(payload: DeliveryPayload) -> str:
    icon = _PRIORITY_ICONS.get(payload.priority, "📢")
    return f"{icon} [{payload.priority.name}] {payload.title}"


def build_html_body(payload: DeliveryPayload) -> str:
    colour = _PRIORITY_COLOURS.get(payload.priority, "#2196F3")
    case_id = payload.data.get("case_id")
    case_line = f"<p><strong>Case #{html.escape(str(case_id))}</strong></p>" if case_id is not None else ""
    return (
        '<div style="font-family:Arial,sans-serif;max-width:600px;margin:auto;">'
        f'<div style="background:{colour};color:white;padding:16px;">'
        f'<h2 style="margin:0;">{html.escape(payload.title)}</h2></div>'
        '<div style="border:1px solid #ddd;border-top:none;padding:16px;">'
        f"<p>{html.escape(payload.body)}</p>{case_line}"
        "</div></div>"
    )


class EmailAdapter(ChannelAdapter):
    channel = ChannelType.EMAIL

    def __init__(self, provider: EmailProvider):
        self._provider = provider

    async def _send(self, endpoint: ChannelEndpoint, payload: DeliveryPayload) -> Optional[str]:
        return await self._provider.send_email(
            endpoint.address, build_subject(payload), build_html_body(payload),
        )
