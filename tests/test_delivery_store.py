"""
test_delivery_store.py — Delivery record state machine (in-memory backend).

Covers:
    • dedupe on (idempotency_key, recipient, channel)
    • allowed state transitions
    • compare-and-set retry claims
    • expiry making records read-only
    • late error receipts and reaping of stranded in_flight records
    • per-user listing and analytics

Run with:
    pytest tests/test_delivery_store.py -v
"""

from __future__ import annotations

import asyncio
from datetime import timedelta
from typing import Optional

import pytest

from backend.app.core.config import settings
from backend.app.core.errors import RecordExpiredError
from backend.app.notifications.delivery_store import InMemoryDeliveryRecordStore, default_expiry
from backend.app.notifications.models import (
    AlertCategory,
    ChannelType,
    DeliveryErrorKind,
    DeliveryRecord,
    DeliveryState,
    utcnow,
)


def _make_record(
    user_id: int = 7,
    channel: ChannelType = ChannelType.PUSH,
    idempotency_key: Optional[str] = None,
    **overrides,
) -> DeliveryRecord:
    fields = dict(
        recipient_user_id=user_id,
        channel=channel,
        title="Missing Person Alert",
        body="Jane Doe reported missing.",
        category="urgent_missing",
        event_id="EVT-1",
        idempotency_key=idempotency_key,
        expires_at=default_expiry(),
    )
    fields.update(overrides)
    return DeliveryRecord(**fields)


async def _failed_record(store, **overrides) -> int:
    record_id = await store.create(_make_record(**overrides))
    await store.mark_errored(record_id, DeliveryErrorKind.PROVIDER_UNAVAILABLE, "503")
    return record_id


# ═══════════════════════════════════════════════════════════════════════════
# Section 1: Creation & dedupe
# ═══════════════════════════════════════════════════════════════════════════

class TestCreate:

    def test_create_assigns_ids(self):
        async def scenario():
            store = InMemoryDeliveryRecordStore()
            first = await store.create(_make_record())
            second = await store.create(_make_record())
            assert (first, second) == (1, 2)
            record = await store.get(first)
            assert record.state == DeliveryState.PENDING
            assert record.retry_count == 0

        asyncio.run(scenario())

    def test_duplicate_dedupe_key_rejected(self):
        async def scenario():
            store = InMemoryDeliveryRecordStore()
            await store.create(_make_record(idempotency_key="k1"))
            with pytest.raises(ValueError):
                await store.create(_make_record(idempotency_key="k1"))
            # Same key, other channel is a different record
            await store.create(_make_record(idempotency_key="k1", channel=ChannelType.SMS))

        asyncio.run(scenario())

    def test_create_if_absent_returns_existing(self):
        async def scenario():
            store = InMemoryDeliveryRecordStore()
            first, created = await store.create_if_absent(_make_record(idempotency_key="k1"))
            again, created_again = await store.create_if_absent(_make_record(idempotency_key="k1"))
            assert created is True
            assert created_again is False
            assert again.id == first.id
            assert [r.id for r in await store.find_by_idempotency_key("k1")] == [first.id]

        asyncio.run(scenario())

    def test_default_expiry_disabled(self, monkeypatch):
        monkeypatch.setattr(settings, "DELIVERY_RECORD_TTL_HOURS", 0)
        assert default_expiry() is None

    def test_default_expiry_from_ttl(self, monkeypatch):
        monkeypatch.setattr(settings, "DELIVERY_RECORD_TTL_HOURS", 2)
        now = utcnow()
        assert default_expiry(now) == now + timedelta(hours=2)


# ═══════════════════════════════════════════════════════════════════════════
# Section 2: State transitions
# ═══════════════════════════════════════════════════════════════════════════

class TestTransitions:

    def test_pending_to_sent(self):
        async def scenario():
            store = InMemoryDeliveryRecordStore()
            record_id = await store.create(_make_record())
            assert await store.mark_in_flight(record_id) is True
            assert await store.mark_sent(record_id, "msg-1") is True
            record = await store.get(record_id)
            assert record.state == DeliveryState.SENT
            assert record.is_sent is True
            assert record.sent_at is not None
            assert record.provider_message_id == "msg-1"

        asyncio.run(scenario())

    def test_transient_error_is_failed(self):
        async def scenario():
            store = InMemoryDeliveryRecordStore()
            record_id = await _failed_record(store)
            record = await store.get(record_id)
            assert record.state == DeliveryState.FAILED
            assert record.error_kind == DeliveryErrorKind.PROVIDER_UNAVAILABLE

        asyncio.run(scenario())

    @pytest.mark.parametrize("kind", [DeliveryErrorKind.INVALID_ENDPOINT, DeliveryErrorKind.UNKNOWN])
    def test_permanent_error_kinds(self, kind):
        async def scenario():
            store = InMemoryDeliveryRecordStore()
            record_id = await store.create(_make_record())
            await store.mark_errored(record_id, kind)
            record = await store.get(record_id)
            assert record.state == DeliveryState.PERMANENTLY_FAILED
            assert record.error_message == kind.value

        asyncio.run(scenario())

    def test_terminal_states_are_final(self):
        async def scenario():
            store = InMemoryDeliveryRecordStore()
            record_id = await store.create(_make_record())
            assert await store.mark_cancelled(record_id) is True
            assert await store.mark_sent(record_id) is False
            assert await store.mark_in_flight(record_id) is False
            assert (await store.get(record_id)).state == DeliveryState.CANCELLED

        asyncio.run(scenario())

    def test_cancel_only_from_pending(self):
        async def scenario():
            store = InMemoryDeliveryRecordStore()
            record_id = await store.create(_make_record())
            await store.mark_in_flight(record_id)
            assert await store.mark_cancelled(record_id) is False

        asyncio.run(scenario())

    def test_error_receipt_reopens_sent(self):
        async def scenario():
            store = InMemoryDeliveryRecordStore()
            bounced = await store.create(_make_record(user_id=1))
            revoked = await store.create(_make_record(user_id=2))
            await store.mark_sent(bounced)
            await store.mark_sent(revoked)

            assert await store.mark_errored(bounced, DeliveryErrorKind.RATE_LIMITED) is False
            assert await store.record_error_receipt(bounced, DeliveryErrorKind.RATE_LIMITED, "429") is True
            record = await store.get(bounced)
            assert record.state == DeliveryState.FAILED
            assert record.is_sent is False

            assert await store.record_error_receipt(revoked, DeliveryErrorKind.INVALID_ENDPOINT) is True
            assert (await store.get(revoked)).state == DeliveryState.PERMANENTLY_FAILED

            cancelled = await store.create(_make_record(user_id=3))
            await store.mark_cancelled(cancelled)
            assert await store.record_error_receipt(cancelled, DeliveryErrorKind.UNKNOWN) is False

        asyncio.run(scenario())

    def test_opened_implies_delivered(self):
        async def scenario():
            store = InMemoryDeliveryRecordStore()
            record_id = await store.create(_make_record())
            await store.mark_sent(record_id)
            assert await store.mark_opened(record_id) is True
            record = await store.get(record_id)
            assert record.is_opened is True
            assert record.is_delivered is True
            assert record.delivered_at == record.opened_at

        asyncio.run(scenario())

    def test_missing_record(self):
        async def scenario():
            store = InMemoryDeliveryRecordStore()
            assert await store.mark_sent(999) is False
            assert await store.mark_opened(999) is False
            assert await store.claim_for_retry(999) is None

        asyncio.run(scenario())


# ═══════════════════════════════════════════════════════════════════════════
# Section 3: Retry claims & expiry
# ═══════════════════════════════════════════════════════════════════════════

class TestRetryClaims:

    def test_claim_is_compare_and_set(self):
        async def scenario():
            store = InMemoryDeliveryRecordStore()
            record_id = await _failed_record(store)
            claims = await asyncio.gather(*(store.claim_for_retry(record_id) for _ in range(5)))
            winners = [c for c in claims if c is not None]
            assert len(winners) == 1
            assert winners[0].state == DeliveryState.IN_FLIGHT
            assert winners[0].retry_count == 1

        asyncio.run(scenario())

    def test_find_retryable_filters(self):
        async def scenario():
            store = InMemoryDeliveryRecordStore()
            transient = await _failed_record(store, user_id=1)
            exhausted = await _failed_record(store, user_id=2, retry_count=3)
            permanent = await store.create(_make_record(user_id=3))
            await store.mark_errored(permanent, DeliveryErrorKind.INVALID_ENDPOINT)
            await store.create(_make_record(user_id=4))

            later = utcnow() + timedelta(minutes=5)
            found = await store.find_retryable(older_than=later, max_retry=3)
            assert [r.id for r in found] == [transient]
            assert exhausted not in [r.id for r in found]

            earlier = utcnow() - timedelta(minutes=5)
            assert await store.find_retryable(older_than=earlier, max_retry=3) == []

        asyncio.run(scenario())

    def test_reap_stale_in_flight(self):
        async def scenario():
            store = InMemoryDeliveryRecordStore()
            fresh = await store.create(_make_record(user_id=1))
            stranded = await store.create(_make_record(user_id=2))
            spent = await store.create(_make_record(user_id=3, retry_count=3))
            for record_id in (fresh, stranded, spent):
                await store.mark_in_flight(record_id)
            cutoff = utcnow()
            (await store.get(fresh)).last_attempt_at = cutoff + timedelta(minutes=1)

            summary = await store.reap_stale_in_flight(older_than=cutoff, max_retry=3)
            assert summary == {"requeued": 1, "permanently_failed": 1}
            assert (await store.get(fresh)).state == DeliveryState.IN_FLIGHT
            requeued = await store.get(stranded)
            assert requeued.state == DeliveryState.FAILED
            assert requeued.error_kind == DeliveryErrorKind.PROVIDER_UNAVAILABLE
            assert (await store.get(spent)).state == DeliveryState.PERMANENTLY_FAILED

        asyncio.run(scenario())

    def test_expired_record_is_read_only(self):
        async def scenario():
            store = InMemoryDeliveryRecordStore()
            record_id = await _failed_record(store)
            (await store.get(record_id)).expires_at = utcnow() - timedelta(seconds=1)

            with pytest.raises(RecordExpiredError):
                await store.mark_sent(record_id)
            assert await store.claim_for_retry(record_id) is None
            later = utcnow() + timedelta(minutes=5)
            assert await store.find_retryable(older_than=later, max_retry=3) == []

        asyncio.run(scenario())


# ═══════════════════════════════════════════════════════════════════════════
# Section 4: Listing & analytics
# ═══════════════════════════════════════════════════════════════════════════

class TestListingAndStats:

    def test_list_for_user_newest_first(self):
        async def scenario():
            store = InMemoryDeliveryRecordStore()
            old = await store.create(_make_record(created_at=utcnow() - timedelta(hours=1)))
            new = await store.create(_make_record())
            await store.create(_make_record(user_id=8))
            await store.mark_opened(new)

            assert [r.id for r in await store.list_for_user(7)] == [new, old]
            assert [r.id for r in await store.list_for_user(7, unread_only=True)] == [old]
            assert len(await store.list_for_user(7, limit=1)) == 1

        asyncio.run(scenario())

    def test_stats(self):
        async def scenario():
            store = InMemoryDeliveryRecordStore()
            sent = await store.create(_make_record())
            await store.mark_sent(sent)
            await store.mark_opened(sent)
            other = await store.create(_make_record(channel=ChannelType.EMAIL))
            await store.mark_sent(other)
            await _failed_record(store, channel=ChannelType.SMS)

            stats = await store.stats()
            assert stats["total"] == 3
            assert stats["sent"] == 2
            assert stats["delivered"] == 1
            assert stats["opened"] == 1
            assert stats["by_state"] == {"sent": 2, "failed": 1}
            assert stats["by_channel"] == {"push": 1, "email": 1, "sms": 1}
            assert stats["by_error_kind"] == {"provider_unavailable": 1}
            assert stats["delivery_rate"] == 0.5
            assert stats["open_rate"] == 1.0

            future = await store.stats(since=utcnow() + timedelta(hours=1))
            assert future["total"] == 0
            assert future["delivery_rate"] == 0.0

        asyncio.run(scenario())

    def test_active_case_ids_excludes_found_cases(self):
        async def scenario():
            store = InMemoryDeliveryRecordStore()
            await store.create(_make_record(user_id=1, data={"case_id": 100}))
            await store.create(_make_record(user_id=2, data={"case_id": 101}))
            await store.create(_make_record(
                user_id=2, category=AlertCategory.CASE_FOUND.value, data={"case_id": 101},
            ))
            await store.create(_make_record(user_id=3))
            await store.create(_make_record(
                user_id=4, data={"case_id": 102}, created_at=utcnow() - timedelta(days=3),
            ))

            assert await store.active_case_ids() == [100, 102]
            assert await store.active_case_ids(since=utcnow() - timedelta(days=1)) == [100]

        asyncio.run(scenario())
