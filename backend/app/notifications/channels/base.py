"""
base.py — Channel adapter contract and provider error classification.

Every adapter exposes:

    await adapter.deliver(endpoint, payload) → DeliveryOutcome

``deliver`` never raises for provider failures. Whatever the collaborator
throws is classified into the delivery error taxonomy:

═══════════════════════════════════════════════════════════════════════════
ERROR CLASSIFICATION
═══════════════════════════════════════════════════════════════════════════

    ProviderError(kind)                 → kind
    HTTP 404 / 410                      → INVALID_ENDPOINT
    HTTP 400 with invalid-token hints   → INVALID_ENDPOINT
    HTTP 429                            → RATE_LIMITED
    HTTP 5xx                            → PROVIDER_UNAVAILABLE
    httpx timeout / transport error     → PROVIDER_UNAVAILABLE
    TimeoutError / ConnectionError      → PROVIDER_UNAVAILABLE
    anything else                       → UNKNOWN
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Any, Mapping, Optional, Protocol

import httpx

from backend.app.notifications.models import (
    ChannelEndpoint,
    ChannelType,
    DeliveryErrorKind,
    DeliveryOutcome,
    DeliveryPayload,
)

logger = logging.getLogger(__name__)


class ProviderError(Exception):
    """Raised by providers that already know how to classify a failure."""

    def __init__(
        self,
        kind: DeliveryErrorKind,
        message: str = "",
        *,
        status_code: Optional[int] = None,
    ):
        super().__init__(message or kind.value)
        self.kind = kind
        self.status_code = status_code


def classify_status(status_code: int, body: str = "") -> DeliveryErrorKind:
    if status_code in (404, 410):
        return DeliveryErrorKind.INVALID_ENDPOINT
    if status_code == 400 and any(
        hint in body.lower() for hint in ("invalid token", "invalid registration", "unregistered")
    ):
        return DeliveryErrorKind.INVALID_ENDPOINT
    if status_code == 429:
        return DeliveryErrorKind.RATE_LIMITED
    if 500 <= status_code < 600:
        return DeliveryErrorKind.PROVIDER_UNAVAILABLE
    return DeliveryErrorKind.UNKNOWN


def classify_exception(exc: BaseException) -> DeliveryErrorKind:
    if isinstance(exc, ProviderError):
        return exc.kind
    if isinstance(exc, httpx.HTTPStatusError):
        return classify_status(exc.response.status_code, exc.response.text)
    if isinstance(exc, (httpx.TimeoutException, httpx.TransportError)):
        return DeliveryErrorKind.PROVIDER_UNAVAILABLE
    if isinstance(exc, (asyncio.TimeoutError, TimeoutError, ConnectionError)):
        return DeliveryErrorKind.PROVIDER_UNAVAILABLE
    return DeliveryErrorKind.UNKNOWN


# ═══════════════════════════════════════════════════════════════════════════
# Collaborator protocols
# ═══════════════════════════════════════════════════════════════════════════

class PushProvider(Protocol):
    async def send_push(
        self, endpoint: str, title: str, body: str, data: Mapping[str, str],
    ) -> Optional[str]:
        ...


class EmailProvider(Protocol):
    async def send_email(self, to_address: str, subject: str, html_body: str) -> Optional[str]:
        ...


class SmsProvider(Protocol):
    async def send_sms(self, to_phone_number: str, text: str) -> Optional[str]:
        ...


class RealtimeProvider(Protocol):
    async def broadcast_to_group(self, group_key: str, event_name: str, payload: Mapping[str, Any]) -> int:
        ...

    async def broadcast_to_connection(
        self, connection_id: str, event_name: str, payload: Mapping[str, Any],
    ) -> int:
        ...


# ═══════════════════════════════════════════════════════════════════════════
# Adapter base
# ═══════════════════════════════════════════════════════════════════════════

class ChannelAdapter(ABC):
    """Translate a ``DeliveryPayload`` into one collaborator call."""

    channel: ChannelType

    async def deliver(self, endpoint: ChannelEndpoint, payload: DeliveryPayload) -> DeliveryOutcome:
        try:
            message_id = await self._send(endpoint, payload)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            kind = classify_exception(exc)
            logger.warning(
                "[%s] Delivery to user %s failed (%s): %s",
                self.channel.value.upper(), endpoint.user_id, kind.value, exc,
                extra={
                    "event_id": payload.event_id,
                    "recipient_id": endpoint.user_id,
                    "channel": self.channel.value,
                    "error_kind": kind.value,
                },
            )
            return DeliveryOutcome.failed(kind, str(exc) or type(exc).__name__)
        return DeliveryOutcome.ok(message_id)

    @abstractmethod
    async def _send(self, endpoint: ChannelEndpoint, payload: DeliveryPayload) -> Optional[str]:
        """Perform the provider call; return its message id."""

    def implicit_endpoint(self, user_id: int) -> Optional[ChannelEndpoint]:
        """Endpoint to use when the directory has none registered."""
        return None

    async def close(self) -> None:
        """Release the provider's connections, if it holds any."""
        close = getattr(getattr(self, "_provider", None), "close", None)
        if close is not None:
            await close()
