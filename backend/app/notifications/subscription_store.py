"""
subscription_store.py — Durable (user, topic) subscription state.

Two backends share one contract (``SubscriptionStore``):

    InMemorySubscriptionStore   dict + asyncio.Lock (dev, tests)
    SqlSubscriptionStore        SQLAlchemy async session per operation

The base class owns topic validation, logging and the optional Redis
subscriber-set cache; backends implement the ``_``-prefixed primitives.

Invariants:
    • at most one row per (user_id, topic)
    • unsubscribe flips is_subscribed, never deletes
    • re-subscribe reactivates the original row
    • rows unsubscribed for longer than the GC window are deleted by
      ``cleanup_inactive``
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from datetime import datetime, timedelta
from typing import Dict, Iterable, List, Optional, Set, Tuple

from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from backend.app.core.cache import RedisCache
from backend.app.core.config import settings
from backend.app.core.errors import InvalidTopicError
from backend.app.notifications.db_models import TopicSubscriptionRow
from backend.app.notifications.models import ServiceResult, Subscription, utcnow
from backend.app.notifications.topics import default_topics, validate_topic

logger = logging.getLogger(__name__)

DEFAULT_REASON = "user_requested"
AUTO_REASON = "auto_subscribed"


class SubscriptionStore(ABC):
    """Contract + shared behaviour for subscription backends."""

    def __init__(self, cache: Optional[RedisCache] = None):
        self._cache = cache

    # ── Backend primitives ──

    @abstractmethod
    async def _get(self, user_id: int, topic: str) -> Optional[Subscription]:
        ...

    @abstractmethod
    async def _upsert_active(self, user_id: int, topic: str, reason: str) -> Tuple[Subscription, str]:
        """Create or reactivate. Returns (row, "created" | "reactivated" | "unchanged")."""

    @abstractmethod
    async def _deactivate(self, user_id: int, topic: str) -> Optional[Tuple[Subscription, bool]]:
        """Returns None when absent, else (row, changed)."""

    @abstractmethod
    async def _active_subscribers(self, topic: str) -> Set[int]:
        ...

    @abstractmethod
    async def _active_for_user(self, user_id: int) -> List[Subscription]:
        ...

    @abstractmethod
    async def _bump_count(self, user_id: int, topic: str) -> bool:
        ...

    @abstractmethod
    async def _delete_inactive_before(self, cutoff: datetime) -> List[str]:
        """Delete stale unsubscribed rows; return the topics touched."""

    @abstractmethod
    async def _active_counts(self) -> Dict[str, int]:
        ...

    # ── Public API ──

    async def subscribe(self, user_id: int, topic: str, reason: Optional[str] = None) -> ServiceResult:
        validate_topic(topic)
        sub, change = await self._upsert_active(user_id, topic, reason or DEFAULT_REASON)
        if change == "unchanged":
            return ServiceResult.ok(f"Already subscribed to topic: {topic}", sub)
        await self._invalidate(topic)
        logger.info(
            "User %s subscribed to topic %s (%s)", user_id, topic, change,
            extra={"topic": topic},
        )
        return ServiceResult.ok(f"Successfully subscribed to topic: {topic}", sub)

    async def unsubscribe(self, user_id: int, topic: str) -> ServiceResult:
        validate_topic(topic)
        result = await self._deactivate(user_id, topic)
        if result is None:
            return ServiceResult.fail(f"Not subscribed to topic: {topic}")
        sub, changed = result
        if not changed:
            return ServiceResult.ok(f"Already unsubscribed from topic: {topic}", sub)
        await self._invalidate(topic)
        logger.info("User %s unsubscribed from topic %s", user_id, topic, extra={"topic": topic})
        return ServiceResult.ok(f"Successfully unsubscribed from topic: {topic}", sub)

    async def is_subscribed(self, user_id: int, topic: str) -> bool:
        sub = await self._get(user_id, topic)
        return bool(sub and sub.is_subscribed)

    async def get(self, user_id: int, topic: str) -> Optional[Subscription]:
        return await self._get(user_id, topic)

    async def subscribers_of(self, topic: str) -> Set[int]:
        validate_topic(topic)
        if self._cache is not None:
            cached = await self._cache.get_subscribers(topic)
            if cached is not None:
                return cached
        subscribers = await self._active_subscribers(topic)
        if self._cache is not None:
            await self._cache.set_subscribers(topic, subscribers)
        return subscribers

    async def subscribe_defaults(self, user_id: int, role: str) -> ServiceResult:
        subscribed = []
        for topic in default_topics(role):
            result = await self.subscribe(user_id, topic, AUTO_REASON)
            if result.success:
                subscribed.append(topic)
        logger.info(
            "User %s with role %s subscribed to %d default topics",
            user_id, role, len(subscribed),
        )
        return ServiceResult.ok(f"Subscribed to {len(subscribed)} default topics", subscribed)

    async def bulk_subscribe(
        self, user_id: int, topics: Iterable[str], reason: Optional[str] = None,
    ) -> ServiceResult:
        subscribed: List[str] = []
        failed: List[str] = []
        for topic in dict.fromkeys(topics):
            try:
                await self.subscribe(user_id, topic, reason)
                subscribed.append(topic)
            except InvalidTopicError:
                failed.append(topic)
        return ServiceResult(
            success=not failed,
            message=f"Subscribed to {len(subscribed)} topics, {len(failed)} failed",
            data={"subscribed": subscribed, "failed": failed},
        )

    async def subscriptions_for(self, user_id: int) -> List[Subscription]:
        return sorted(await self._active_for_user(user_id), key=lambda s: s.topic)

    async def record_notification(self, user_id: int, topic: str) -> bool:
        """notification_count += 1 and stamp last_notification_sent_at."""
        return await self._bump_count(user_id, topic)

    async def cleanup_inactive(self, older_than_days: Optional[int] = None) -> int:
        days = older_than_days if older_than_days is not None else settings.SUBSCRIPTION_GC_DAYS
        cutoff = utcnow() - timedelta(days=days)
        topics = await self._delete_inactive_before(cutoff)
        for topic in set(topics):
            await self._invalidate(topic)
        logger.info("Cleaned up %d inactive subscriptions", len(topics))
        return len(topics)

    async def topic_stats(self) -> Dict[str, int]:
        return await self._active_counts()

    async def _invalidate(self, topic: str) -> None:
        if self._cache is not None:
            await self._cache.invalidate_topic(topic)


# ═══════════════════════════════════════════════════════════════════════════
# In-memory backend
# ═══════════════════════════════════════════════════════════════════════════

class InMemorySubscriptionStore(SubscriptionStore):

    def __init__(self, cache: Optional[RedisCache] = None):
        super().__init__(cache)
        self._rows: Dict[Tuple[int, str], Subscription] = {}
        self._lock = asyncio.Lock()
        self._next_id = 1

    async def _get(self, user_id: int, topic: str) -> Optional[Subscription]:
        return self._rows.get((user_id, topic))

    async def _upsert_active(self, user_id: int, topic: str, reason: str) -> Tuple[Subscription, str]:
        async with self._lock:
            sub = self._rows.get((user_id, topic))
            if sub is None:
                sub = Subscription(user_id=user_id, topic=topic, reason=reason, id=self._next_id)
                self._next_id += 1
                self._rows[(user_id, topic)] = sub
                return sub, "created"
            if sub.is_subscribed:
                return sub, "unchanged"
            sub.is_subscribed = True
            sub.reason = reason or sub.reason
            sub.updated_at = utcnow()
            return sub, "reactivated"

    async def _deactivate(self, user_id: int, topic: str) -> Optional[Tuple[Subscription, bool]]:
        async with self._lock:
            sub = self._rows.get((user_id, topic))
            if sub is None:
                return None
            if not sub.is_subscribed:
                return sub, False
            sub.is_subscribed = False
            sub.updated_at = utcnow()
            return sub, True

    async def _active_subscribers(self, topic: str) -> Set[int]:
        return {
            uid for (uid, t), sub in list(self._rows.items())
            if t == topic and sub.is_subscribed
        }

    async def _active_for_user(self, user_id: int) -> List[Subscription]:
        return [
            sub for (uid, _), sub in list(self._rows.items())
            if uid == user_id and sub.is_subscribed
        ]

    async def _bump_count(self, user_id: int, topic: str) -> bool:
        async with self._lock:
            sub = self._rows.get((user_id, topic))
            if sub is None or not sub.is_subscribed:
                return False
            now = utcnow()
            sub.notification_count += 1
            sub.last_notification_sent_at = now
            sub.updated_at = now
            return True

    async def _delete_inactive_before(self, cutoff: datetime) -> List[str]:
        async with self._lock:
            stale = [
                key for key, sub in self._rows.items()
                if not sub.is_subscribed and (sub.updated_at or sub.created_at) < cutoff
            ]
            for key in stale:
                del self._rows[key]
            return [topic for _, topic in stale]

    async def _active_counts(self) -> Dict[str, int]:
        counts: Dict[str, int] = {}
        for (_, topic), sub in list(self._rows.items()):
            if sub.is_subscribed:
                counts[topic] = counts.get(topic, 0) + 1
        return counts


# ═══════════════════════════════════════════════════════════════════════════
# SQLAlchemy backend
# ═══════════════════════════════════════════════════════════════════════════

class SqlSubscriptionStore(SubscriptionStore):

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        cache: Optional[RedisCache] = None,
    ):
        super().__init__(cache)
        self._sessions = session_factory

    @staticmethod
    def _key(user_id: int, topic: str):
        return (
            TopicSubscriptionRow.user_id == user_id,
            TopicSubscriptionRow.topic == topic,
        )

    async def _get(self, user_id: int, topic: str) -> Optional[Subscription]:
        async with self._sessions() as session:
            row = await session.scalar(select(TopicSubscriptionRow).where(*self._key(user_id, topic)))
            return row.to_entity() if row else None

    async def _upsert_active(self, user_id: int, topic: str, reason: str) -> Tuple[Subscription, str]:
        async with self._sessions() as session:
            row = await session.scalar(select(TopicSubscriptionRow).where(*self._key(user_id, topic)))
            if row is None:
                row = TopicSubscriptionRow(
                    user_id=user_id, topic=topic, is_subscribed=True,
                    reason=reason, created_at=utcnow(), notification_count=0,
                )
                session.add(row)
                try:
                    await session.commit()
                    return row.to_entity(), "created"
                except IntegrityError:
                    # concurrent subscribe won the insert
                    await session.rollback()
                    row = await session.scalar(
                        select(TopicSubscriptionRow).where(*self._key(user_id, topic))
                    )
            if row.is_subscribed:
                return row.to_entity(), "unchanged"
            row.is_subscribed = True
            row.reason = reason or row.reason
            row.updated_at = utcnow()
            await session.commit()
            return row.to_entity(), "reactivated"

    async def _deactivate(self, user_id: int, topic: str) -> Optional[Tuple[Subscription, bool]]:
        async with self._sessions() as session:
            row = await session.scalar(select(TopicSubscriptionRow).where(*self._key(user_id, topic)))
            if row is None:
                return None
            if not row.is_subscribed:
                return row.to_entity(), False
            row.is_subscribed = False
            row.updated_at = utcnow()
            await session.commit()
            return row.to_entity(), True

    async def _active_subscribers(self, topic: str) -> Set[int]:
        async with self._sessions() as session:
            result = await session.scalars(
                select(TopicSubscriptionRow.user_id)
                .where(TopicSubscriptionRow.topic == topic, TopicSubscriptionRow.is_subscribed.is_(True))
                .distinct()
            )
            return set(result.all())

    async def _active_for_user(self, user_id: int) -> List[Subscription]:
        async with self._sessions() as session:
            rows = await session.scalars(
                select(TopicSubscriptionRow)
                .where(TopicSubscriptionRow.user_id == user_id, TopicSubscriptionRow.is_subscribed.is_(True))
                .order_by(TopicSubscriptionRow.topic)
            )
            return [row.to_entity() for row in rows.all()]

    async def _bump_count(self, user_id: int, topic: str) -> bool:
        now = utcnow()
        async with self._sessions() as session:
            result = await session.execute(
                update(TopicSubscriptionRow)
                .where(*self._key(user_id, topic), TopicSubscriptionRow.is_subscribed.is_(True))
                .values(
                    notification_count=TopicSubscriptionRow.notification_count + 1,
                    last_notification_sent_at=now,
                    updated_at=now,
                )
            )
            await session.commit()
            return result.rowcount > 0

    async def _delete_inactive_before(self, cutoff: datetime) -> List[str]:
        stale_filter = (
            TopicSubscriptionRow.is_subscribed.is_(False),
            func.coalesce(TopicSubscriptionRow.updated_at, TopicSubscriptionRow.created_at) < cutoff,
        )
        async with self._sessions() as session:
            topics = (await session.scalars(
                select(TopicSubscriptionRow.topic).where(*stale_filter)
            )).all()
            if topics:
                await session.execute(delete(TopicSubscriptionRow).where(*stale_filter))
                await session.commit()
            return list(topics)

    async def _active_counts(self) -> Dict[str, int]:
        async with self._sessions() as session:
            rows = await session.execute(
                select(TopicSubscriptionRow.topic, func.count(TopicSubscriptionRow.id))
                .where(TopicSubscriptionRow.is_subscribed.is_(True))
                .group_by(TopicSubscriptionRow.topic)
            )
            return {topic: count for topic, count in rows.all()}
