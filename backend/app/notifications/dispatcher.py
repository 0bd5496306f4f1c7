"""
dispatcher.py — Fanout orchestrator.

Pipeline (per event):
    1. EscalationPolicy.plan(category)       → channels × audience sources
    2. AudienceResolver.resolve_plan(plan)   → recipient set (+ topic that
                                                reached each recipient)
    3. For every (recipient, channel) with an endpoint:
         create a pending DeliveryRecord (unique per idempotency key,
         recipient, channel) → deliver through the channel's bounded pool
    4. Settle each record: sent / failed / permanently_failed / cancelled
    5. Return a FanoutResult with per-channel counts

═══════════════════════════════════════════════════════════════════════════
CONCURRENCY MODEL
═══════════════════════════════════════════════════════════════════════════

    • One asyncio.Semaphore per channel (REALTIME/PUSH/EMAIL/SMS_POOL_SIZE)
    • Every provider call is wrapped in asyncio.wait_for(DELIVERY_TIMEOUT);
      a timeout is recorded as PROVIDER_UNAVAILABLE
    • A set cancel event stops work items that have not started yet; their
      records become ``cancelled``. Accepted sends are not rolled back.
    • One (recipient, channel) failure never affects its siblings.

═══════════════════════════════════════════════════════════════════════════
IDEMPOTENCY
═══════════════════════════════════════════════════════════════════════════

    dispatch(event, idempotency_key="k")   first call: sends, records
    dispatch(event, idempotency_key="k")   replay: no sends, no new rows,
                                           stored outcomes, replayed=True
                                           under the replaying event_id

Concurrent calls with the same key race on ``create_if_absent``; the loser
of each (recipient, channel) race reports the winner's record.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import OrderedDict
from typing import Dict, List, Mapping, Optional, Sequence

from backend.app.core.config import settings
from backend.app.notifications.audience import AudienceResolver
from backend.app.notifications.channels.base import ChannelAdapter
from backend.app.notifications.delivery_store import DeliveryRecordStore, default_expiry
from backend.app.notifications.directory import UserDirectory
from backend.app.notifications.escalation import EscalationPolicy
from backend.app.notifications.models import (
    AlertEvent,
    ChannelEndpoint,
    ChannelType,
    DeliveryErrorKind,
    DeliveryOutcome,
    DeliveryPayload,
    DeliveryRecord,
    DeliveryState,
    DispatchPlan,
    FanoutResult,
    RecipientOutcome,
    utcnow,
)
from backend.app.notifications.subscription_store import SubscriptionStore

logger = logging.getLogger(__name__)

MAX_STORED_RESULTS = 1000

# When every endpoint of a work item fails, report the most actionable kind
_ERROR_PRECEDENCE = (
    DeliveryErrorKind.RATE_LIMITED,
    DeliveryErrorKind.PROVIDER_UNAVAILABLE,
    DeliveryErrorKind.UNKNOWN,
    DeliveryErrorKind.INVALID_ENDPOINT,
)


def default_pool_sizes() -> Dict[ChannelType, int]:
    return {
        ChannelType.REALTIME: settings.REALTIME_POOL_SIZE,
        ChannelType.PUSH: settings.PUSH_POOL_SIZE,
        ChannelType.EMAIL: settings.EMAIL_POOL_SIZE,
        ChannelType.SMS: settings.SMS_POOL_SIZE,
    }


class FanoutDispatcher:
    """
    Deliver an ``AlertEvent`` to its audience across channels.

    All collaborators are injected; the dispatcher holds no global state
    besides its own bounded map of recent results.
    """

    def __init__(
        self,
        *,
        policy: EscalationPolicy,
        resolver: AudienceResolver,
        adapters: Mapping[ChannelType, ChannelAdapter],
        directory: UserDirectory,
        subscriptions: SubscriptionStore,
        records: DeliveryRecordStore,
        pool_sizes: Optional[Mapping[ChannelType, int]] = None,
        delivery_timeout: Optional[float] = None,
        max_retries: Optional[int] = None,
    ):
        self.policy = policy
        self.resolver = resolver
        self.adapters = dict(adapters)
        self.directory = directory
        self.subscriptions = subscriptions
        self.records = records
        sizes = {**default_pool_sizes(), **(pool_sizes or {})}
        self._semaphores: Dict[ChannelType, asyncio.Semaphore] = {
            channel: asyncio.Semaphore(max(1, size)) for channel, size in sizes.items()
        }
        self.delivery_timeout = delivery_timeout or settings.DELIVERY_TIMEOUT_SECONDS
        self.max_retries = settings.MAX_DELIVERY_RETRIES if max_retries is None else max_retries

        self._results: "OrderedDict[str, FanoutResult]" = OrderedDict()
        self._tasks: Dict[str, asyncio.Task] = {}
        self._cancel_events: Dict[str, asyncio.Event] = {}

    # ═══════════════════════════════════════════════════════════════════════
    # Public API
    # ═══════════════════════════════════════════════════════════════════════

    async def dispatch(
        self,
        event: AlertEvent,
        idempotency_key: Optional[str] = None,
        cancel: Optional[asyncio.Event] = None,
    ) -> FanoutResult:
        """
        Fan ``event`` out to its audience.

        Parameters
        ----------
        event : AlertEvent
        idempotency_key : str | None
            Replaying a key returns the stored outcomes without sending.
        cancel : asyncio.Event | None
            When set, work items that have not started are cancelled.

        Returns
        -------
        FanoutResult
            Always returned; provider failures are counted, not raised.

        Raises
        ------
        UnknownCategoryError
            If the category has no escalation rule.
        """
        started = time.monotonic()
        plan = self.policy.plan(event.category, event)
        log_extra = {"event_id": event.event_id, "category": event.category, "idempotency_key": idempotency_key}

        if idempotency_key:
            stored = await self.records.find_by_idempotency_key(idempotency_key)
            if stored:
                result = self._replay(event, plan, idempotency_key, stored)
                logger.info(
                    "Replayed dispatch for idempotency key %s (%d records)",
                    idempotency_key, len(stored), extra=log_extra,
                )
                self._remember(result)
                return result

        result = FanoutResult(event_id=event.event_id, category=event.category,
                              idempotency_key=idempotency_key, plan=plan)
        for channel in plan.channels:
            result.counts_for(channel)

        audience = await self.resolver.resolve_plan(plan, event)
        result.total_recipients = len(audience)
        payload = DeliveryPayload.from_event(event)

        items = [
            self._run_item(event, payload, uid, channel, audience.recipients[uid], idempotency_key, cancel, result)
            for uid in sorted(audience.recipients)
            for channel in sorted(plan.channels, key=lambda c: c.value)
            if channel in self.adapters
        ]
        outcomes = await asyncio.gather(*items)

        for outcome in outcomes:
            if outcome is None:
                continue
            result.tally(outcome)
            result.recipient_outcomes.append(outcome)

        result.cancelled = bool(cancel is not None and cancel.is_set())
        result.completed_at = utcnow()
        self._remember(result)

        logger.info(
            "Dispatched %s to %d recipients: %d sent, %d failed",
            event.category, result.total_recipients, result.total_succeeded, result.total_failed,
            extra={**log_extra, "recipient_count": result.total_recipients,
                   "duration_ms": round((time.monotonic() - started) * 1000, 1)},
        )
        return result

    def dispatch_in_background(
        self,
        event: AlertEvent,
        idempotency_key: Optional[str] = None,
    ) -> str:
        """Start ``dispatch`` as a task; poll with ``get_result(event_id)``."""
        cancel = asyncio.Event()
        self._cancel_events[event.event_id] = cancel
        task = asyncio.create_task(
            self.dispatch(event, idempotency_key, cancel), name=f"dispatch-{event.event_id}",
        )
        self._tasks[event.event_id] = task
        task.add_done_callback(lambda t, eid=event.event_id: self._task_done(eid, t))
        return event.event_id

    def get_result(self, event_id: str) -> Optional[FanoutResult]:
        return self._results.get(event_id)

    def is_running(self, event_id: str) -> bool:
        task = self._tasks.get(event_id)
        return task is not None and not task.done()

    def cancel(self, event_id: str) -> bool:
        """Signal cancellation to a background dispatch."""
        cancel = self._cancel_events.get(event_id)
        if cancel is None or not self.is_running(event_id):
            return False
        cancel.set()
        return True

    async def wait_for_background(self) -> None:
        """Await every in-flight background dispatch (shutdown, tests)."""
        tasks = [t for t in self._tasks.values() if not t.done()]
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    async def redeliver(self, record: DeliveryRecord) -> RecipientOutcome:
        """
        Re-send a record already claimed for retry (state ``in_flight``).

        Used by the retry scheduler; settles the record like a first attempt
        but marks it permanently failed once the retry budget is spent.
        """
        payload = DeliveryPayload.from_record(record)
        try:
            endpoints = await self._endpoints_for(record.recipient_user_id, record.channel)
            if not endpoints:
                await self.records.mark_errored(
                    record.id, DeliveryErrorKind.INVALID_ENDPOINT, "No active endpoint", permanent=True,
                )
                return RecipientOutcome(
                    record.recipient_user_id, record.channel, DeliveryState.PERMANENTLY_FAILED,
                    record_id=record.id, error_kind=DeliveryErrorKind.INVALID_ENDPOINT,
                    error_message="No active endpoint",
                )
            async with self._semaphores[record.channel]:
                outcome = await self._attempt(record.channel, endpoints, payload)
            return await self._settle(record, outcome, record.topic, exhausted=record.retry_count >= self.max_retries)
        except Exception as exc:
            logger.exception("Retry of record %s failed", record.id, extra={"record_id": record.id})
            return await self._abandon(record, exc)

    # ═══════════════════════════════════════════════════════════════════════
    # Work items
    # ═══════════════════════════════════════════════════════════════════════

    async def _run_item(
        self,
        event: AlertEvent,
        payload: DeliveryPayload,
        user_id: int,
        channel: ChannelType,
        topic: Optional[str],
        idempotency_key: Optional[str],
        cancel: Optional[asyncio.Event],
        result: FanoutResult,
    ) -> Optional[RecipientOutcome]:
        record: Optional[DeliveryRecord] = None
        try:
            endpoints = await self._endpoints_for(user_id, channel)
            if not endpoints:
                result.counts_for(channel).skipped_no_endpoint += 1
                return None

            record = DeliveryRecord(
                recipient_user_id=user_id,
                channel=channel,
                title=event.title,
                body=event.body,
                category=event.category,
                event_id=event.event_id,
                topic=topic,
                idempotency_key=idempotency_key,
                priority=event.priority,
                data=dict(payload.data),
                expires_at=default_expiry(),
            )
            if idempotency_key:
                record, created = await self.records.create_if_absent(record)
                if not created:
                    return RecipientOutcome.from_record(record)
            else:
                await self.records.create(record)

            async with self._semaphores[channel]:
                if cancel is not None and cancel.is_set():
                    await self.records.mark_cancelled(record.id)
                    return RecipientOutcome(user_id, channel, DeliveryState.CANCELLED, record_id=record.id)
                await self.records.mark_in_flight(record.id)
                outcome = await self._attempt(channel, endpoints, payload)

            return await self._settle(record, outcome, topic, exhausted=self.max_retries <= 0)

        except Exception as exc:
            logger.exception(
                "Delivery work item failed for user %s via %s", user_id, channel.value,
                extra={"event_id": event.event_id, "recipient_id": user_id, "channel": channel.value},
            )
            if record is None or record.id is None:
                return RecipientOutcome(
                    user_id, channel, DeliveryState.FAILED,
                    error_kind=DeliveryErrorKind.UNKNOWN, error_message=str(exc) or type(exc).__name__,
                )
            return await self._abandon(record, exc)

    async def _endpoints_for(self, user_id: int, channel: ChannelType) -> List[ChannelEndpoint]:
        adapter = self.adapters.get(channel)
        if adapter is None:
            return []
        try:
            endpoints = list(await self.directory.get_active_endpoints(user_id, channel))
        except Exception as exc:
            logger.warning(
                "Endpoint lookup failed for user %s via %s: %s", user_id, channel.value, exc,
                extra={"recipient_id": user_id, "channel": channel.value},
            )
            endpoints = []
        if not endpoints:
            implicit = adapter.implicit_endpoint(user_id)
            if implicit is not None:
                endpoints = [implicit]
        return endpoints

    async def _attempt(
        self,
        channel: ChannelType,
        endpoints: Sequence[ChannelEndpoint],
        payload: DeliveryPayload,
    ) -> DeliveryOutcome:
        """Deliver to every endpoint of one recipient; success if any accepts."""
        outcomes = await asyncio.gather(*(self._deliver_one(channel, e, payload) for e in endpoints))

        for endpoint, outcome in zip(endpoints, outcomes):
            if outcome.error_kind == DeliveryErrorKind.INVALID_ENDPOINT:
                await self._deactivate(endpoint)

        successes = [o for o in outcomes if o.success]
        if successes:
            return successes[0]
        for kind in _ERROR_PRECEDENCE:
            for outcome in outcomes:
                if outcome.error_kind == kind:
                    return outcome
        return outcomes[0]

    async def _deliver_one(
        self, channel: ChannelType, endpoint: ChannelEndpoint, payload: DeliveryPayload,
    ) -> DeliveryOutcome:
        adapter = self.adapters[channel]
        try:
            return await asyncio.wait_for(adapter.deliver(endpoint, payload), timeout=self.delivery_timeout)
        except asyncio.TimeoutError:
            logger.warning(
                "[%s] Delivery to user %s timed out after %.1fs",
                channel.value.upper(), endpoint.user_id, self.delivery_timeout,
                extra={"event_id": payload.event_id, "recipient_id": endpoint.user_id,
                       "channel": channel.value, "error_kind": DeliveryErrorKind.PROVIDER_UNAVAILABLE.value},
            )
            return DeliveryOutcome.failed(
                DeliveryErrorKind.PROVIDER_UNAVAILABLE, f"Timed out after {self.delivery_timeout}s",
            )

    async def _deactivate(self, endpoint: ChannelEndpoint) -> None:
        try:
            await self.directory.deactivate_endpoint(endpoint.endpoint_id)
        except Exception as exc:
            logger.warning("Could not deactivate endpoint %s: %s", endpoint.endpoint_id, exc)

    async def _settle(
        self,
        record: DeliveryRecord,
        outcome: DeliveryOutcome,
        topic: Optional[str],
        *,
        exhausted: bool = False,
    ) -> RecipientOutcome:
        uid, channel = record.recipient_user_id, record.channel

        if outcome.success:
            await self.records.mark_sent(record.id, outcome.provider_message_id)
            if topic:
                try:
                    await self.subscriptions.record_notification(uid, topic)
                except Exception as exc:
                    logger.warning("Could not record notification for user %s on %s: %s", uid, topic, exc)
            return RecipientOutcome(
                uid, channel, DeliveryState.SENT, record_id=record.id,
                provider_message_id=outcome.provider_message_id,
            )

        kind = outcome.error_kind or DeliveryErrorKind.UNKNOWN
        permanent = exhausted or not kind.is_retryable
        await self.records.mark_errored(record.id, kind, outcome.error_message, permanent=permanent)
        return RecipientOutcome(
            uid, channel,
            DeliveryState.PERMANENTLY_FAILED if permanent else DeliveryState.FAILED,
            record_id=record.id, error_kind=kind, error_message=outcome.error_message,
        )

    async def _abandon(self, record: DeliveryRecord, exc: Exception) -> RecipientOutcome:
        """Close out a record whose attempt raised so it cannot stay in_flight."""
        message = str(exc) or type(exc).__name__
        try:
            await self.records.mark_errored(record.id, DeliveryErrorKind.UNKNOWN, message, permanent=True)
        except Exception as store_exc:
            # still in_flight; the retry sweep reaps it once stale
            logger.warning(
                "Could not close out record %s: %s", record.id, store_exc, extra={"record_id": record.id},
            )
        return RecipientOutcome(
            record.recipient_user_id, record.channel, DeliveryState.PERMANENTLY_FAILED,
            record_id=record.id, error_kind=DeliveryErrorKind.UNKNOWN, error_message=message,
        )

    # ═══════════════════════════════════════════════════════════════════════
    # Results
    # ═══════════════════════════════════════════════════════════════════════

    def _replay(
        self,
        event: AlertEvent,
        plan: DispatchPlan,
        idempotency_key: str,
        stored: Sequence[DeliveryRecord],
    ) -> FanoutResult:
        result = FanoutResult(
            event_id=event.event_id,
            category=stored[0].category,
            idempotency_key=idempotency_key,
            plan=plan,
            replayed=True,
        )
        for channel in plan.channels:
            result.counts_for(channel)
        for record in stored:
            outcome = RecipientOutcome.from_record(record)
            result.tally(outcome)
            result.recipient_outcomes.append(outcome)
        result.total_recipients = len({r.recipient_user_id for r in stored})
        result.completed_at = utcnow()
        return result

    def _remember(self, result: FanoutResult) -> None:
        self._results[result.event_id] = result
        self._results.move_to_end(result.event_id)
        while len(self._results) > MAX_STORED_RESULTS:
            self._results.popitem(last=False)

    def _task_done(self, event_id: str, task: asyncio.Task) -> None:
        self._tasks.pop(event_id, None)
        self._cancel_events.pop(event_id, None)
        if task.cancelled():
            logger.warning("Background dispatch %s was cancelled", event_id, extra={"event_id": event_id})
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Background dispatch %s failed: %s", event_id, exc, extra={"event_id": event_id})
