"""
providers.py — Delivery provider implementations behind the adapters.

    simulation   logs the message and returns a fake message id (default)
    http         POSTs JSON to a notification relay service with httpx

The relay contract is deliberately generic:

    POST {relay}/push   {"token", "title", "body", "data"}
    POST {relay}/email  {"to", "from", "subject", "html"}
    POST {relay}/sms    {"to", "from", "text"}
    → 2xx {"id": "<provider message id>"}

Non-2xx responses surface as ``httpx.HTTPStatusError`` and are classified
by ``channels.base.classify_exception``.
"""

from __future__ import annotations

import logging
import uuid
from typing import Any, Dict, Mapping, Optional

import httpx

from backend.app.core.config import settings

logger = logging.getLogger(__name__)


def _simulated_id(prefix: str) -> str:
    return f"sim-{prefix}-{uuid.uuid4().hex[:12]}"


class SimulationPushProvider:
    async def send_push(
        self, endpoint: str, title: str, body: str, data: Mapping[str, str],
    ) -> Optional[str]:
        logger.info("[PUSH] → %s…: %s", endpoint[:12], title)
        return _simulated_id("push")


class SimulationEmailProvider:
    async def send_email(self, to_address: str, subject: str, html_body: str) -> Optional[str]:
        logger.info("[EMAIL] → %s: %s (%d bytes)", to_address, subject, len(html_body))
        return _simulated_id("email")


class SimulationSmsProvider:
    async def send_sms(self, to_phone_number: str, text: str) -> Optional[str]:
        logger.info(
            "[SMS] → %s: %d chars → '%s'",
            to_phone_number, len(text), text[:80] + ("..." if len(text) > 80 else ""),
        )
        return _simulated_id("sms")


class HttpRelayProvider:
    """Push / email / SMS provider backed by an HTTP relay."""

    def __init__(
        self,
        base_url: str,
        *,
        api_key: Optional[str] = None,
        timeout_seconds: Optional[float] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self._base_url = base_url.rstrip("/")
        self._api_key = api_key
        self._timeout = timeout_seconds or settings.DELIVERY_TIMEOUT_SECONDS
        self._http_client = client

    async def _get_client(self) -> httpx.AsyncClient:
        if self._http_client is None or self._http_client.is_closed:
            headers = {"Authorization": f"Bearer {self._api_key}"} if self._api_key else None
            self._http_client = httpx.AsyncClient(timeout=self._timeout, headers=headers)
        return self._http_client

    async def close(self) -> None:
        if self._http_client and not self._http_client.is_closed:
            await self._http_client.aclose()

    async def _post(self, path: str, body: Dict[str, Any]) -> Optional[str]:
        client = await self._get_client()
        response = await client.post(f"{self._base_url}/{path}", json=body)
        response.raise_for_status()
        if not response.content:
            return None
        return response.json().get("id")

    async def send_push(
        self, endpoint: str, title: str, body: str, data: Mapping[str, str],
    ) -> Optional[str]:
        return await self._post("push", {"token": endpoint, "title": title, "body": body, "data": dict(data)})

    async def send_email(self, to_address: str, subject: str, html_body: str) -> Optional[str]:
        return await self._post("email", {
            "to": to_address,
            "from": f"{settings.EMAIL_FROM_NAME} <{settings.EMAIL_FROM_ADDRESS}>",
            "subject": subject,
            "html": html_body,
        })

    async def send_sms(self, to_phone_number: str, text: str) -> Optional[str]:
        return await self._post("sms", {"to": to_phone_number, "from": settings.SMS_FROM_NUMBER, "text": text})
