"""
channels — Per-channel delivery adapters.

Each adapter exposes:
    await deliver(endpoint, payload) → DeliveryOutcome

Adapters never raise for provider failures. Concurrency limits, timeouts
and retries live in the dispatcher and the retry scheduler.
"""

from __future__ import annotations

import logging
from typing import Dict, Optional

from backend.app.core.config import settings
from backend.app.notifications.channels.base import (
    ChannelAdapter,
    EmailProvider,
    ProviderError,
    PushProvider,
    RealtimeProvider,
    SmsProvider,
    classify_exception,
    classify_status,
)
from backend.app.notifications.channels.email import EmailAdapter
from backend.app.notifications.channels.providers import (
    HttpRelayProvider,
    SimulationEmailProvider,
    SimulationPushProvider,
    SimulationSmsProvider,
)
from backend.app.notifications.channels.push import PushAdapter
from backend.app.notifications.channels.realtime import ConnectionManager, RealtimeAdapter
from backend.app.notifications.channels.sms import SmsAdapter
from backend.app.notifications.models import ChannelType

logger = logging.getLogger(__name__)

__all__ = [
    "ChannelAdapter",
    "ConnectionManager",
    "EmailAdapter",
    "ProviderError",
    "PushAdapter",
    "RealtimeAdapter",
    "SmsAdapter",
    "build_default_adapters",
    "classify_exception",
    "classify_status",
]


def _select(kind: str, relay: Optional[HttpRelayProvider], simulation):
    if kind == "http":
        if relay is None:
            raise ValueError("PROVIDER_RELAY_URL must be set when a provider is 'http'")
        return relay
    if kind != "simulation":
        raise ValueError(f"Unknown provider: {kind}")
    return simulation


def build_default_adapters(
    connections: RealtimeProvider,
    *,
    push: Optional[PushProvider] = None,
    email: Optional[EmailProvider] = None,
    sms: Optional[SmsProvider] = None,
) -> Dict[ChannelType, ChannelAdapter]:
    """Adapters for every channel, with providers chosen from settings."""
    relay = (
        HttpRelayProvider(settings.PROVIDER_RELAY_URL, api_key=settings.PROVIDER_RELAY_API_KEY)
        if settings.PROVIDER_RELAY_URL else None
    )
    push = push or _select(settings.PUSH_PROVIDER, relay, SimulationPushProvider())
    email = email or _select(settings.EMAIL_PROVIDER, relay, SimulationEmailProvider())
    sms = sms or _select(settings.SMS_PROVIDER, relay, SimulationSmsProvider())
    logger.info(
        "Channel providers: push=%s email=%s sms=%s",
        type(push).__name__, type(email).__name__, type(sms).__name__,
    )
    return {
        ChannelType.REALTIME: RealtimeAdapter(connections),
        ChannelType.PUSH: PushAdapter(push),
        ChannelType.EMAIL: EmailAdapter(email),
        ChannelType.SMS: SmsAdapter(sms),
    }
