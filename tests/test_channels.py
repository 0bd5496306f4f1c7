"""
test_channels.py — Channel adapters, message formatting and error taxonomy.

Covers:
    • HTTP status / exception → DeliveryErrorKind classification
    • SMS trimming, email subject & body, push data map
    • HTTP relay provider against a mocked transport, and its shutdown
    • Realtime broadcast over the connection manager
    • Adapter wiring from settings

Run with:
    pytest tests/test_channels.py -v
"""

from __future__ import annotations

import asyncio
import json

import httpx
import pytest

from backend.app.core.config import settings
from backend.app.notifications.channels import (
    ConnectionManager,
    EmailAdapter,
    ProviderError,
    PushAdapter,
    RealtimeAdapter,
    SmsAdapter,
    build_default_adapters,
    classify_exception,
    classify_status,
)
from backend.app.notifications.channels.email import build_html_body, build_subject
from backend.app.notifications.channels.providers import (
    HttpRelayProvider,
    SimulationEmailProvider,
    SimulationPushProvider,
)
from backend.app.notifications.channels.push import build_push_data
from backend.app.notifications.channels.realtime import event_name_for, user_group
from backend.app.notifications.channels.sms import SMS_MAX_GSM7, format_sms
from backend.app.notifications.models import (
    AlertPriority,
    ChannelEndpoint,
    ChannelType,
    DeliveryErrorKind,
    DeliveryPayload,
)


def _make_payload(
    title: str = "Missing Person Alert - Jane Doe",
    body: str = "Jane Doe reported missing at Main St.",
    priority: AlertPriority = AlertPriority.URGENT,
    category: str = "urgent_missing",
    **data,
) -> DeliveryPayload:
    return DeliveryPayload(
        title=title, body=body, category=category, priority=priority,
        data=data or {"case_id": 100}, event_id="EVT-TEST",
    )


def _endpoint(channel: ChannelType, address: str, user_id: int = 7) -> ChannelEndpoint:
    return ChannelEndpoint(endpoint_id=f"{channel.value}-1", user_id=user_id, channel=channel, address=address)


class FakeWebSocket:
    def __init__(self, fail: bool = False):
        self.accepted = False
        self.sent = []
        self.fail = fail

    async def accept(self):
        self.accepted = True

    async def send_json(self, data):
        if self.fail:
            raise RuntimeError("socket closed")
        self.sent.append(data)


class ExplodingEmailProvider:
    async def send_email(self, to_address, subject, html_body):
        raise ConnectionError("smtp relay refused connection")


# ═══════════════════════════════════════════════════════════════════════════
# Section 1: Error classification
# ═══════════════════════════════════════════════════════════════════════════

class TestClassification:

    @pytest.mark.parametrize("status,body,expected", [
        (404, "", DeliveryErrorKind.INVALID_ENDPOINT),
        (410, "", DeliveryErrorKind.INVALID_ENDPOINT),
        (400, "Invalid registration token", DeliveryErrorKind.INVALID_ENDPOINT),
        (400, "bad json", DeliveryErrorKind.UNKNOWN),
        (429, "", DeliveryErrorKind.RATE_LIMITED),
        (500, "", DeliveryErrorKind.PROVIDER_UNAVAILABLE),
        (503, "", DeliveryErrorKind.PROVIDER_UNAVAILABLE),
        (401, "", DeliveryErrorKind.UNKNOWN),
    ])
    def test_classify_status(self, status, body, expected):
        assert classify_status(status, body) == expected

    def test_provider_error_keeps_its_kind(self):
        exc = ProviderError(DeliveryErrorKind.RATE_LIMITED, "slow down")
        assert classify_exception(exc) == DeliveryErrorKind.RATE_LIMITED

    def test_http_status_error(self):
        request = httpx.Request("POST", "https://relay.test/push")
        response = httpx.Response(429, request=request)
        exc = httpx.HTTPStatusError("429", request=request, response=response)
        assert classify_exception(exc) == DeliveryErrorKind.RATE_LIMITED

    @pytest.mark.parametrize("exc", [
        httpx.ConnectTimeout("timed out"),
        httpx.ConnectError("refused"),
        TimeoutError(),
        ConnectionError("reset"),
    ])
    def test_transport_failures_are_transient(self, exc):
        assert classify_exception(exc) == DeliveryErrorKind.PROVIDER_UNAVAILABLE

    def test_anything_else_is_unknown(self):
        assert classify_exception(KeyError("x")) == DeliveryErrorKind.UNKNOWN

    def test_retryable_kinds(self):
        assert DeliveryErrorKind.RATE_LIMITED.is_retryable
        assert DeliveryErrorKind.PROVIDER_UNAVAILABLE.is_retryable
        assert not DeliveryErrorKind.INVALID_ENDPOINT.is_retryable
        assert not DeliveryErrorKind.UNKNOWN.is_retryable


# ═══════════════════════════════════════════════════════════════════════════
# Section 2: Message formatting
# ═══════════════════════════════════════════════════════════════════════════

class TestFormatting:

    def test_short_sms_is_untouched(self):
        text = format_sms(_make_payload(title="Alert", body="Short body"))
        assert text == "[URGENT] Alert: Short body"

    def test_long_sms_is_trimmed_to_one_segment(self):
        text = format_sms(_make_payload(body="x" * 400))
        assert len(text) == SMS_MAX_GSM7
        assert text.endswith("...")

    def test_email_subject_has_priority_prefix(self):
        subject = build_subject(_make_payload(title="Jane Doe"))
        assert subject == "🚨 [URGENT] Jane Doe"
        assert build_subject(_make_payload(title="x", priority=AlertPriority.LOW)).endswith("[LOW] x")

    def test_email_body_escapes_html(self):
        html_body = build_html_body(_make_payload(title="<script>alert(1)</script>"))
        assert "<script>" not in html_body
        assert "&lt;script&gt;" in html_body
        assert "Case #100" in html_body

    def test_push_data_is_string_valued(self):
        data = build_push_data(_make_payload(case_id=100, tags=["a", "b"], note="hi", empty=None))
        assert data["case_id"] == "100"
        assert json.loads(data["tags"]) == ["a", "b"]
        assert data["note"] == "hi"
        assert "empty" not in data
        assert data["event_id"] == "EVT-TEST"
        assert data["priority"] == "urgent"
        assert all(isinstance(v, str) for v in data.values())

    def test_realtime_event_names(self):
        assert event_name_for("urgent_missing") == "ReceiveUrgentAlert"
        assert event_name_for("case_found") == "ReceiveFoundNotification"
        assert event_name_for("daily_digest") == "ReceiveNotification"


# ═══════════════════════════════════════════════════════════════════════════
# Section 3: Adapters
# ═══════════════════════════════════════════════════════════════════════════

class TestAdapters:

    def test_simulation_push_succeeds(self):
        adapter = PushAdapter(SimulationPushProvider())
        outcome = asyncio.run(adapter.deliver(_endpoint(ChannelType.PUSH, "token-abc"), _make_payload()))
        assert outcome.success is True
        assert outcome.provider_message_id.startswith("sim-push-")

    def test_adapter_never_raises(self):
        adapter = EmailAdapter(ExplodingEmailProvider())
        outcome = asyncio.run(adapter.deliver(_endpoint(ChannelType.EMAIL, "a@b.org"), _make_payload()))
        assert outcome.success is False
        assert outcome.error_kind == DeliveryErrorKind.PROVIDER_UNAVAILABLE
        assert "refused" in outcome.error_message
        assert outcome.is_retryable is True

    def test_only_realtime_has_implicit_endpoint(self):
        realtime = RealtimeAdapter(ConnectionManager())
        endpoint = realtime.implicit_endpoint(7)
        assert endpoint.address == "user:7"
        assert endpoint.channel == ChannelType.REALTIME
        assert PushAdapter(SimulationPushProvider()).implicit_endpoint(7) is None
        assert EmailAdapter(SimulationEmailProvider()).implicit_endpoint(7) is None


class TestHttpRelay:

    def _provider(self, status_code: int, body=None, seen=None) -> HttpRelayProvider:
        def handler(request: httpx.Request) -> httpx.Response:
            if seen is not None:
                seen.append(request)
            return httpx.Response(status_code, json=body if body is not None else {})

        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        return HttpRelayProvider("https://relay.test/", api_key="k", client=client)

    def test_accepted_push_returns_id(self):
        seen = []
        adapter = PushAdapter(self._provider(200, {"id": "msg-1"}, seen))
        outcome = asyncio.run(adapter.deliver(_endpoint(ChannelType.PUSH, "token-abc"), _make_payload()))
        assert outcome.success is True
        assert outcome.provider_message_id == "msg-1"
        assert str(seen[0].url) == "https://relay.test/push"
        assert json.loads(seen[0].content)["token"] == "token-abc"

    def test_rate_limited_sms(self):
        adapter = SmsAdapter(self._provider(429))
        outcome = asyncio.run(adapter.deliver(_endpoint(ChannelType.SMS, "+15555550100"), _make_payload()))
        assert outcome.error_kind == DeliveryErrorKind.RATE_LIMITED

    def test_gone_token_is_invalid_endpoint(self):
        adapter = PushAdapter(self._provider(410))
        outcome = asyncio.run(adapter.deliver(_endpoint(ChannelType.PUSH, "stale"), _make_payload()))
        assert outcome.error_kind == DeliveryErrorKind.INVALID_ENDPOINT

    def test_close_releases_shared_client(self):
        async def scenario():
            provider = self._provider(200)
            push, sms = PushAdapter(provider), SmsAdapter(provider)
            await push.deliver(_endpoint(ChannelType.PUSH, "token-abc"), _make_payload())
            client = provider._http_client

            await push.close()
            await sms.close()
            assert client.is_closed is True
            await RealtimeAdapter(ConnectionManager()).close()

        asyncio.run(scenario())


class TestRealtime:

    def test_broadcast_reaches_user_group(self):
        async def scenario():
            manager = ConnectionManager()
            ws = FakeWebSocket()
            await manager.connect(7, ws)
            assert ws.accepted is True
            assert manager.group_size(user_group(7)) == 1

            adapter = RealtimeAdapter(manager)
            outcome = await adapter.deliver(adapter.implicit_endpoint(7), _make_payload())
            assert outcome.success is True
            assert ws.sent[0]["event"] == "ReceiveUrgentAlert"
            assert ws.sent[0]["payload"]["event_id"] == "EVT-TEST"

        asyncio.run(scenario())

    def test_empty_group_still_succeeds(self):
        adapter = RealtimeAdapter(ConnectionManager())
        outcome = asyncio.run(adapter.deliver(adapter.implicit_endpoint(99), _make_payload()))
        assert outcome.success is True

    def test_broken_socket_is_dropped(self):
        async def scenario():
            manager = ConnectionManager()
            connection_id = await manager.connect(7, FakeWebSocket(fail=True))
            reached = await manager.broadcast_to_group(user_group(7), "ReceiveNotification", {})
            assert reached == 0
            assert manager.connection_count == 0
            assert manager.group_size(user_group(7)) == 0
            assert await manager.broadcast_to_connection(connection_id, "x", {}) == 0

        asyncio.run(scenario())

    def test_disconnect_clears_user_group(self):
        async def scenario():
            manager = ConnectionManager()
            first = await manager.connect(7, FakeWebSocket())
            await manager.connect(7, FakeWebSocket())
            assert await manager.broadcast_to_group(user_group(7), "ReceiveCaseUpdate", {"a": 1}) == 2
            manager.disconnect(first)
            assert manager.group_size(user_group(7)) == 1
            assert manager.connection_count == 1

        asyncio.run(scenario())


class TestAdapterWiring:

    def test_simulation_defaults(self):
        adapters = build_default_adapters(ConnectionManager())
        assert set(adapters) == set(ChannelType)
        assert all(a.channel == ch for ch, a in adapters.items())

    def test_unknown_provider_rejected(self, monkeypatch):
        monkeypatch.setattr(settings, "SMS_PROVIDER", "carrier-pigeon")
        with pytest.raises(ValueError):
            build_default_adapters(ConnectionManager())

    def test_http_provider_needs_relay_url(self, monkeypatch):
        monkeypatch.setattr(settings, "PUSH_PROVIDER", "http")
        monkeypatch.setattr(settings, "PROVIDER_RELAY_URL", None)
        with pytest.raises(ValueError):
            build_default_adapters(ConnectionManager())
