"""
test_background_jobs.py — Retry sweep, subscription cleanup and job manager.

Covers:
    • exponential backoff schedule
    • bounded retries: one initial send + MAX_DELIVERY_RETRIES, then
      permanently_failed
    • recovery on a later retry
    • reaping of records stranded in_flight
    • the daily digest and its once-per-day key
    • job manager run tracking

Run with:
    pytest tests/test_background_jobs.py -v
"""

from __future__ import annotations

import asyncio
from datetime import timedelta

import pytest

from backend.app.notifications.audience import AudienceResolver
from backend.app.notifications.background_jobs import (
    MAX_BACKOFF_SECONDS,
    BackgroundJobManager,
    DailyDigestJob,
    JobStatus,
    RetryScheduler,
    SubscriptionCleanupJob,
    compute_backoff,
)
from backend.app.notifications.channels.base import ChannelAdapter
from backend.app.notifications.delivery_store import InMemoryDeliveryRecordStore
from backend.app.notifications.directory import InMemoryUserDirectory
from backend.app.notifications.dispatcher import FanoutDispatcher
from backend.app.notifications.escalation import EscalationPolicy
from backend.app.notifications.models import (
    AlertCategory,
    AlertEvent,
    ChannelType,
    DeliveryRecord,
    DeliveryState,
    utcnow,
)
from backend.app.notifications.subscription_store import InMemorySubscriptionStore

MAX_RETRIES = 3


class ScriptedSmsAdapter(ChannelAdapter):
    """Fails ``failures`` times with a transient error, then succeeds."""

    channel = ChannelType.SMS

    def __init__(self, failures: int):
        self.failures = failures
        self.attempts = 0

    async def _send(self, endpoint, payload):
        self.attempts += 1
        if self.attempts <= self.failures:
            raise ConnectionError("carrier unavailable")
        return f"sms-{self.attempts}"


def _setup(adapter):
    directory = InMemoryUserDirectory()
    directory.add_user(1)
    directory.register_endpoint(1, ChannelType.SMS, "+15555550100")
    subs = InMemorySubscriptionStore()
    records = InMemoryDeliveryRecordStore()
    dispatcher = FanoutDispatcher(
        policy=EscalationPolicy({"sms_only": {"channels": ["sms"], "audience": [{"kind": "explicit"}]}}),
        resolver=AudienceResolver(subs, directory),
        adapters={ChannelType.SMS: adapter},
        directory=directory,
        subscriptions=subs,
        records=records,
        max_retries=MAX_RETRIES,
    )
    scheduler = RetryScheduler(
        dispatcher, records, max_retries=MAX_RETRIES, backoff_base_seconds=30.0, batch_size=10,
    )
    event = AlertEvent(category="sms_only", title="t", body="b", explicit_recipients=(1,))
    return dispatcher, scheduler, records, event


def _later():
    return utcnow() + timedelta(hours=2)


# ═══════════════════════════════════════════════════════════════════════════
# Section 1: Backoff
# ═══════════════════════════════════════════════════════════════════════════

class TestBackoff:

    def test_doubles_per_attempt(self):
        assert compute_backoff(1, 30.0) == 30.0
        assert compute_backoff(2, 30.0) == 60.0
        assert compute_backoff(3, 30.0) == 120.0

    def test_capped(self):
        assert compute_backoff(20, 30.0) == MAX_BACKOFF_SECONDS

    def test_attempt_zero_treated_as_first(self):
        assert compute_backoff(0, 10.0) == 10.0


# ═══════════════════════════════════════════════════════════════════════════
# Section 2: Retry sweep
# ═══════════════════════════════════════════════════════════════════════════

class TestRetryScheduler:

    def test_retries_are_bounded(self):
        async def scenario():
            adapter = ScriptedSmsAdapter(failures=100)
            dispatcher, scheduler, records, event = _setup(adapter)

            result = await dispatcher.dispatch(event)
            record_id = result.recipient_outcomes[0].record_id
            assert (await records.get(record_id)).state == DeliveryState.FAILED

            summaries = [await scheduler.run_once(now=_later()) for _ in range(MAX_RETRIES + 2)]

            record = await records.get(record_id)
            assert adapter.attempts == 1 + MAX_RETRIES
            assert record.retry_count == MAX_RETRIES
            assert record.state == DeliveryState.PERMANENTLY_FAILED
            assert [s["claimed"] for s in summaries] == [1, 1, 1, 0, 0]
            assert summaries[MAX_RETRIES - 1]["permanently_failed"] == 1

        asyncio.run(scenario())

    def test_recovers_on_retry(self):
        async def scenario():
            adapter = ScriptedSmsAdapter(failures=2)
            dispatcher, scheduler, records, event = _setup(adapter)
            result = await dispatcher.dispatch(event)
            record_id = result.recipient_outcomes[0].record_id

            first = await scheduler.run_once(now=_later())
            second = await scheduler.run_once(now=_later())

            assert first["failed"] == 1
            assert second["sent"] == 1
            record = await records.get(record_id)
            assert record.state == DeliveryState.SENT
            assert record.retry_count == 2
            assert record.provider_message_id == "sms-3"

        asyncio.run(scenario())

    def test_backoff_not_elapsed(self):
        async def scenario():
            adapter = ScriptedSmsAdapter(failures=100)
            dispatcher, scheduler, records, event = _setup(adapter)
            await dispatcher.dispatch(event)
            summary = await scheduler.run_once(now=utcnow())
            assert summary["claimed"] == 0
            assert adapter.attempts == 1

        asyncio.run(scenario())

    def test_is_due_uses_retry_count(self):
        async def scenario():
            adapter = ScriptedSmsAdapter(failures=100)
            dispatcher, scheduler, records, event = _setup(adapter)
            result = await dispatcher.dispatch(event)
            record = await records.get(result.recipient_outcomes[0].record_id)
            last = record.last_attempt_at
            assert scheduler.is_due(record, last + timedelta(seconds=30)) is True
            record.retry_count = 2
            assert scheduler.is_due(record, last + timedelta(seconds=60)) is False
            assert scheduler.is_due(record, last + timedelta(seconds=120)) is True

        asyncio.run(scenario())

    def test_stale_in_flight_is_requeued_and_retried(self):
        async def scenario():
            adapter = ScriptedSmsAdapter(failures=0)
            _, scheduler, records, _ = _setup(adapter)
            record_id = await records.create(DeliveryRecord(
                recipient_user_id=1, channel=ChannelType.SMS, title="t", body="b", category="sms_only",
            ))
            await records.mark_in_flight(record_id)

            assert (await scheduler.run_once(now=utcnow()))["reaped"] == 0

            summary = await scheduler.run_once(now=_later())
            assert summary["reaped"] == 1
            assert summary["sent"] == 1
            record = await records.get(record_id)
            assert record.state == DeliveryState.SENT
            assert record.retry_count == 1

        asyncio.run(scenario())

    def test_stale_in_flight_without_budget_fails_permanently(self):
        async def scenario():
            _, scheduler, records, _ = _setup(ScriptedSmsAdapter(failures=0))
            record_id = await records.create(DeliveryRecord(
                recipient_user_id=1, channel=ChannelType.SMS, title="t", body="b", category="sms_only",
                retry_count=MAX_RETRIES,
            ))
            await records.mark_in_flight(record_id)

            summary = await scheduler.run_once(now=_later())
            assert summary["reaped"] == 1
            assert summary["claimed"] == 0
            assert (await records.get(record_id)).state == DeliveryState.PERMANENTLY_FAILED

        asyncio.run(scenario())


# ═══════════════════════════════════════════════════════════════════════════
# Section 3: Cleanup & job manager
# ═══════════════════════════════════════════════════════════════════════════

class TestJobs:

    def test_cleanup_job(self):
        async def scenario():
            subs = InMemorySubscriptionStore()
            await subs.subscribe(1, "case:1")
            await subs.unsubscribe(1, "case:1")
            (await subs.get(1, "case:1")).updated_at = utcnow() - timedelta(days=400)
            job = SubscriptionCleanupJob(subs, older_than_days=90)
            assert await job.run_once() == {"deleted": 1}

        asyncio.run(scenario())

    def test_run_now_records_success_and_failure(self):
        async def ok():
            return {"n": 1}

        async def boom():
            raise RuntimeError("boom")

        async def scenario():
            manager = BackgroundJobManager()
            manager.register("ok", 60, ok)
            manager.register("boom", 60, boom)

            good = await manager.run_now("ok")
            bad = await manager.run_now("boom")

            assert good.status == JobStatus.COMPLETED
            assert good.result == {"n": 1}
            assert bad.status == JobStatus.FAILED
            assert bad.error == "boom"
            status = {s["name"]: s for s in manager.status()}
            assert status["ok"]["run_count"] == 1
            assert status["boom"]["last_run"]["status"] == "failed"

        asyncio.run(scenario())

    def test_duplicate_registration_rejected(self):
        async def noop():
            return {}

        manager = BackgroundJobManager()
        manager.register("x", 1, noop)
        with pytest.raises(ValueError):
            manager.register("x", 1, noop)

    def test_start_runs_periodically_and_stops(self):
        runs = []

        async def tick():
            runs.append(1)
            return {}

        async def scenario():
            manager = BackgroundJobManager()
            manager.register("tick", 0.01, tick)
            await manager.start()
            assert manager.running is True
            await asyncio.sleep(0.1)
            await manager.stop()
            assert manager.running is False
            assert all(not s["active"] for s in manager.status())

        asyncio.run(scenario())
        assert len(runs) >= 1


# ═══════════════════════════════════════════════════════════════════════════
# Section 4: Daily digest
# ═══════════════════════════════════════════════════════════════════════════

class RecordingEmailAdapter(ChannelAdapter):
    channel = ChannelType.EMAIL

    def __init__(self):
        self.sent = []

    async def _send(self, endpoint, payload):
        self.sent.append((endpoint.address, payload.title, payload.data.get("case_ids")))
        return f"email-{len(self.sent)}"


def _digest_setup():
    directory = InMemoryUserDirectory()
    directory.add_user(9, "admin")
    directory.register_endpoint(9, ChannelType.EMAIL, "admin@example.org")
    subs = InMemorySubscriptionStore()
    records = InMemoryDeliveryRecordStore()
    adapter = RecordingEmailAdapter()
    dispatcher = FanoutDispatcher(
        policy=EscalationPolicy(),
        resolver=AudienceResolver(subs, directory),
        adapters={ChannelType.EMAIL: adapter},
        directory=directory,
        subscriptions=subs,
        records=records,
    )
    return DailyDigestJob(dispatcher, records, lookback_hours=24), records, adapter


async def _case_record(records, case_id, category=AlertCategory.URGENT_MISSING.value):
    await records.create(DeliveryRecord(
        recipient_user_id=1, channel=ChannelType.PUSH, title="t", body="b",
        category=category, data={"case_id": case_id},
    ))


class TestDailyDigest:

    def test_no_active_cases_sends_nothing(self):
        async def scenario():
            job, _, adapter = _digest_setup()
            assert await job.run_once() == {"case_count": 0, "sent": 0, "replayed": False}
            assert adapter.sent == []

        asyncio.run(scenario())

    def test_digest_lists_open_cases_once_per_day(self):
        async def scenario():
            job, records, adapter = _digest_setup()
            await _case_record(records, 100)
            await _case_record(records, 101)
            await _case_record(records, 101, AlertCategory.SIGHTING_REPORT.value)
            await _case_record(records, 102)
            await _case_record(records, 102, AlertCategory.CASE_FOUND.value)

            first = await job.run_once()
            assert first == {"case_count": 2, "sent": 1, "replayed": False}
            address, title, case_ids = adapter.sent[0]
            assert address == "admin@example.org"
            assert title.startswith("Daily Case Digest")
            assert case_ids == [100, 101]

            second = await job.run_once()
            assert second["replayed"] is True
            assert len(adapter.sent) == 1

        asyncio.run(scenario())
