"""
Background jobs for the alert fanout engine.

═══════════════════════════════════════════════════════════════════════════
BACKGROUND TASKS
═══════════════════════════════════════════════════════════════════════════

1. RETRY SWEEP (every RETRY_SCAN_INTERVAL_SECONDS)
   - Requeue ``in_flight`` records older than STALE_IN_FLIGHT_SECONDS
   - Pick up ``failed`` delivery records with a transient error kind
   - Wait out an exponential backoff per record
   - Claim with compare-and-set (failed → in_flight) and re-send
   - Close out as ``permanently_failed`` once MAX_DELIVERY_RETRIES is spent

2. SUBSCRIPTION CLEANUP (every SUBSCRIPTION_GC_INTERVAL_SECONDS)
   - Delete subscriptions unsubscribed for more than SUBSCRIPTION_GC_DAYS

3. DAILY DIGEST (every DIGEST_INTERVAL_SECONDS)
   - List cases alerted on in the last DIGEST_LOOKBACK_HOURS, minus found ones
   - Dispatch one ``daily_digest`` event, keyed by date

Jobs run as asyncio tasks inside the API process, started and stopped by
the application lifespan. Each run is tracked as a ``JobRun``.

═══════════════════════════════════════════════════════════════════════════
BACKOFF
═══════════════════════════════════════════════════════════════════════════

    delay(n) = RETRY_BACKOFF_BASE_SECONDS · 2^(n−1), capped at 1 hour

    attempt   base=30s
    ───────   ────────
       1         30s
       2         60s
       3        120s
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional

from backend.app.core.config import settings
from backend.app.notifications.delivery_store import DeliveryRecordStore
from backend.app.notifications.events import daily_digest_event
from backend.app.notifications.models import DeliveryRecord, DeliveryState, utcnow
from backend.app.notifications.subscription_store import SubscriptionStore

logger = logging.getLogger(__name__)

MAX_BACKOFF_SECONDS = 3600.0


# ═══════════════════════════════════════════════════════════════════════════
# Job Status Model
# ═══════════════════════════════════════════════════════════════════════════

class JobStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass
class JobRun:
    """One execution of a periodic job."""
    job_name: str
    status: JobStatus = JobStatus.PENDING
    run_id: str = field(default_factory=lambda: str(uuid.uuid4())[:8])
    started_at: datetime = field(default_factory=utcnow)
    completed_at: Optional[datetime] = None
    error: Optional[str] = None
    result: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "run_id": self.run_id,
            "job_name": self.job_name,
            "status": self.status.value,
            "started_at": self.started_at.isoformat(),
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "elapsed_seconds": ((self.completed_at or utcnow()) - self.started_at).total_seconds(),
            "error": self.error,
            "result": self.result,
        }


# ═══════════════════════════════════════════════════════════════════════════
# Retry sweep
# ═══════════════════════════════════════════════════════════════════════════

def compute_backoff(attempt: int, base_seconds: Optional[float] = None) -> float:
    """
    Delay before retry number ``attempt`` (1-based).

    Returns
    -------
    float
        Delay in seconds.
    """
    base = settings.RETRY_BACKOFF_BASE_SECONDS if base_seconds is None else base_seconds
    return min(base * (2 ** (max(attempt, 1) - 1)), MAX_BACKOFF_SECONDS)


class RetryScheduler:
    """Re-dispatch transient delivery failures with bounded backoff."""

    def __init__(
        self,
        dispatcher: Any,
        records: DeliveryRecordStore,
        *,
        max_retries: Optional[int] = None,
        backoff_base_seconds: Optional[float] = None,
        batch_size: Optional[int] = None,
        stale_after_seconds: Optional[float] = None,
    ):
        self._dispatcher = dispatcher
        self._records = records
        self.max_retries = settings.MAX_DELIVERY_RETRIES if max_retries is None else max_retries
        self.backoff_base = (
            settings.RETRY_BACKOFF_BASE_SECONDS if backoff_base_seconds is None else backoff_base_seconds
        )
        self.batch_size = batch_size or settings.RETRY_BATCH_SIZE
        self.stale_after = (
            settings.STALE_IN_FLIGHT_SECONDS if stale_after_seconds is None else stale_after_seconds
        )

    def is_due(self, record: DeliveryRecord, now: datetime) -> bool:
        last = record.last_attempt_at or record.created_at
        return last + timedelta(seconds=compute_backoff(record.retry_count + 1, self.backoff_base)) <= now

    async def run_once(self, now: Optional[datetime] = None) -> Dict[str, int]:
        now = now or utcnow()
        reaped = await self._records.reap_stale_in_flight(
            older_than=now - timedelta(seconds=self.stale_after), max_retry=self.max_retries,
        )
        candidates = await self._records.find_retryable(
            older_than=now - timedelta(seconds=self.backoff_base),
            max_retry=self.max_retries,
            limit=self.batch_size,
        )
        summary = {"candidates": len(candidates), "claimed": 0, "sent": 0, "failed": 0, "permanently_failed": 0,
                   "reaped": sum(reaped.values())}

        claimed: List[DeliveryRecord] = []
        for record in candidates:
            if not self.is_due(record, now):
                continue
            record = await self._records.claim_for_retry(record.id)
            if record is not None:
                claimed.append(record)
        summary["claimed"] = len(claimed)

        outcomes = await asyncio.gather(*(self._dispatcher.redeliver(r) for r in claimed))
        for outcome in outcomes:
            if outcome.state == DeliveryState.SENT:
                summary["sent"] += 1
            elif outcome.state == DeliveryState.PERMANENTLY_FAILED:
                summary["permanently_failed"] += 1
            else:
                summary["failed"] += 1

        if claimed:
            logger.info(
                "Retry sweep: %d claimed, %d sent, %d failed, %d permanently failed",
                summary["claimed"], summary["sent"], summary["failed"], summary["permanently_failed"],
            )
        return summary


class SubscriptionCleanupJob:

    def __init__(self, subscriptions: SubscriptionStore, *, older_than_days: Optional[int] = None):
        self._subscriptions = subscriptions
        self.older_than_days = older_than_days or settings.SUBSCRIPTION_GC_DAYS

    async def run_once(self) -> Dict[str, int]:
        deleted = await self._subscriptions.cleanup_inactive(self.older_than_days)
        return {"deleted": deleted}


class DailyDigestJob:
    """
    Send the ``daily_digest`` alert listing cases alerted on recently.

    The idempotency key is derived from the date, so a second run on the
    same day replays instead of re-sending.
    """

    def __init__(self, dispatcher: Any, records: DeliveryRecordStore, *, lookback_hours: Optional[int] = None):
        self._dispatcher = dispatcher
        self._records = records
        self.lookback_hours = lookback_hours or settings.DIGEST_LOOKBACK_HOURS

    async def run_once(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        now = now or utcnow()
        case_ids = await self._records.active_case_ids(since=now - timedelta(hours=self.lookback_hours))
        if not case_ids:
            logger.info("Daily digest skipped: no active cases")
            return {"case_count": 0, "sent": 0, "replayed": False}

        day = now.date()
        result = await self._dispatcher.dispatch(
            daily_digest_event(case_ids, day=day), idempotency_key=f"daily-digest-{day.isoformat()}",
        )
        return {"case_count": len(case_ids), "sent": result.total_succeeded, "replayed": result.replayed}


# ═══════════════════════════════════════════════════════════════════════════
# Job Manager
# ═══════════════════════════════════════════════════════════════════════════

JobFn = Callable[[], Awaitable[Dict[str, Any]]]


@dataclass
class _PeriodicJob:
    name: str
    interval_seconds: float
    fn: JobFn
    task: Optional[asyncio.Task] = None
    last_run: Optional[JobRun] = None
    run_count: int = 0


class BackgroundJobManager:
    """
    Runs named periodic jobs and tracks their last run.

    Usage:
        manager = BackgroundJobManager()
        manager.register("retry_sweep", 60, retry_scheduler.run_once)
        await manager.start()
        ...
        await manager.stop()
    """

    def __init__(self) -> None:
        self._jobs: Dict[str, _PeriodicJob] = {}
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    def register(self, name: str, interval_seconds: float, fn: JobFn) -> None:
        if name in self._jobs:
            raise ValueError(f"Job already registered: {name}")
        self._jobs[name] = _PeriodicJob(name, interval_seconds, fn)

    async def run_now(self, name: str) -> JobRun:
        """Execute one run of ``name`` immediately and record it."""
        job = self._jobs[name]
        run = JobRun(job_name=name, status=JobStatus.RUNNING)
        job.last_run = run
        job.run_count += 1
        try:
            run.result = await job.fn()
            run.status = JobStatus.COMPLETED
        except asyncio.CancelledError:
            run.status = JobStatus.CANCELLED
            raise
        except Exception as e:
            logger.exception("Background job %s failed", name)
            run.status = JobStatus.FAILED
            run.error = str(e)
        finally:
            run.completed_at = utcnow()
        return run

    async def _loop(self, job: _PeriodicJob) -> None:
        while self._running:
            try:
                await asyncio.sleep(job.interval_seconds)
                await self.run_now(job.name)
            except asyncio.CancelledError:
                break

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        for job in self._jobs.values():
            job.task = asyncio.create_task(self._loop(job), name=f"job-{job.name}")
        logger.info("Background jobs started: %s", ", ".join(self._jobs) or "none")

    async def stop(self) -> None:
        self._running = False
        for job in self._jobs.values():
            if job.task:
                job.task.cancel()
                try:
                    await job.task
                except asyncio.CancelledError:
                    pass
                job.task = None
        logger.info("Background jobs stopped")

    def status(self) -> List[Dict[str, Any]]:
        return [
            {
                "name": job.name,
                "interval_seconds": job.interval_seconds,
                "run_count": job.run_count,
                "active": job.task is not None and not job.task.done(),
                "last_run": job.last_run.to_dict() if job.last_run else None,
            }
            for job in self._jobs.values()
        ]
