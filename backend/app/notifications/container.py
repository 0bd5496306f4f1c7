"""
container.py — Explicit wiring of the fanout engine.

Everything the API and background jobs need is built once per process by
``build_container`` and hung on ``app.state.container``. Nothing here is a
module-level singleton; tests build their own containers.

    settings.STORE_BACKEND = "memory"   → in-memory stores (dev, tests)
    settings.STORE_BACKEND = "sql"      → SQLAlchemy stores on DATABASE_URL
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, Optional

from sqlalchemy.ext.asyncio import AsyncEngine

from backend.app.core.cache import RedisCache
from backend.app.core.config import settings
from backend.app.core.database import create_engine, init_db, make_session_factory
from backend.app.notifications.audience import AudienceResolver
from backend.app.notifications.background_jobs import (
    BackgroundJobManager,
    DailyDigestJob,
    RetryScheduler,
    SubscriptionCleanupJob,
)
from backend.app.notifications.channels import ConnectionManager, build_default_adapters
from backend.app.notifications.channels.base import ChannelAdapter
from backend.app.notifications.delivery_store import (
    DeliveryRecordStore,
    InMemoryDeliveryRecordStore,
    SqlDeliveryRecordStore,
)
from backend.app.notifications.directory import InMemoryUserDirectory, UserDirectory
from backend.app.notifications.dispatcher import FanoutDispatcher
from backend.app.notifications.escalation import EscalationPolicy
from backend.app.notifications.models import ChannelType
from backend.app.notifications.subscription_store import (
    InMemorySubscriptionStore,
    SqlSubscriptionStore,
    SubscriptionStore,
)

logger = logging.getLogger(__name__)


@dataclass
class NotificationContainer:
    subscriptions: SubscriptionStore
    records: DeliveryRecordStore
    directory: UserDirectory
    connections: ConnectionManager
    adapters: Dict[ChannelType, ChannelAdapter]
    policy: EscalationPolicy
    resolver: AudienceResolver
    dispatcher: FanoutDispatcher
    retry_scheduler: RetryScheduler
    cleanup_job: SubscriptionCleanupJob
    digest_job: DailyDigestJob
    jobs: BackgroundJobManager = field(default_factory=BackgroundJobManager)
    cache: Optional[RedisCache] = None
    engine: Optional[AsyncEngine] = None

    async def start_jobs(self) -> None:
        await self.jobs.start()

    async def close(self) -> None:
        await self.jobs.stop()
        await self.dispatcher.wait_for_background()
        for adapter in self.adapters.values():
            try:
                await adapter.close()
            except Exception as exc:
                logger.warning("Could not close %s adapter: %s", adapter.channel.value, exc)
        if self.cache is not None:
            await self.cache.close()
        if self.engine is not None:
            await self.engine.dispose()
            logger.info("Database connections closed")


def load_policy() -> EscalationPolicy:
    if settings.ESCALATION_TABLE_PATH:
        return EscalationPolicy.from_json(settings.ESCALATION_TABLE_PATH)
    return EscalationPolicy()


async def build_container(
    *,
    store_backend: Optional[str] = None,
    database_url: Optional[str] = None,
    directory: Optional[UserDirectory] = None,
    adapters: Optional[Dict[ChannelType, ChannelAdapter]] = None,
    policy: Optional[EscalationPolicy] = None,
    cache: Optional[RedisCache] = None,
) -> NotificationContainer:
    """
    Assemble stores, directory, adapters, dispatcher and jobs.

    Parameters
    ----------
    store_backend : str | None
        "memory" or "sql"; defaults to settings.STORE_BACKEND.
    database_url : str | None
        Overrides settings.DATABASE_URL for the sql backend.
    directory, adapters, policy, cache
        Injected collaborators; built from settings when omitted.
    """
    backend = (store_backend or settings.STORE_BACKEND).lower()
    if cache is None and settings.SUBSCRIBER_CACHE_ENABLED:
        cache = RedisCache.from_url(settings.REDIS_URL)

    engine: Optional[AsyncEngine] = None
    if backend == "sql":
        engine = create_engine(database_url or settings.DATABASE_URL, echo=settings.DATABASE_ECHO)
        await init_db(engine)
        sessions = make_session_factory(engine)
        subscriptions: SubscriptionStore = SqlSubscriptionStore(sessions, cache=cache)
        records: DeliveryRecordStore = SqlDeliveryRecordStore(sessions)
    elif backend == "memory":
        subscriptions = InMemorySubscriptionStore(cache=cache)
        records = InMemoryDeliveryRecordStore()
    else:
        raise ValueError(f"Unknown STORE_BACKEND: {backend}")

    directory = directory or InMemoryUserDirectory()
    connections = ConnectionManager()
    adapters = adapters or build_default_adapters(connections)
    policy = policy or load_policy()
    resolver = AudienceResolver(subscriptions, directory)
    dispatcher = FanoutDispatcher(
        policy=policy,
        resolver=resolver,
        adapters=adapters,
        directory=directory,
        subscriptions=subscriptions,
        records=records,
    )
    retry_scheduler = RetryScheduler(dispatcher, records, max_retries=dispatcher.max_retries)
    cleanup_job = SubscriptionCleanupJob(subscriptions)
    digest_job = DailyDigestJob(dispatcher, records)

    jobs = BackgroundJobManager()
    jobs.register("retry_sweep", settings.RETRY_SCAN_INTERVAL_SECONDS, retry_scheduler.run_once)
    jobs.register("subscription_cleanup", settings.SUBSCRIPTION_GC_INTERVAL_SECONDS, cleanup_job.run_once)
    jobs.register("daily_digest", settings.DIGEST_INTERVAL_SECONDS, digest_job.run_once)

    logger.info("Notification container built (store=%s, categories=%d)", backend, len(policy.categories))
    return NotificationContainer(
        subscriptions=subscriptions,
        records=records,
        directory=directory,
        connections=connections,
        adapters=adapters,
        policy=policy,
        resolver=resolver,
        dispatcher=dispatcher,
        retry_scheduler=retry_scheduler,
        cleanup_job=cleanup_job,
        digest_job=digest_job,
        jobs=jobs,
        cache=cache,
        engine=engine,
    )
