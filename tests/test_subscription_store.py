"""
test_subscription_store.py — Topic subscription lifecycle (in-memory backend).

Covers:
    • subscribe / unsubscribe / re-subscribe on one row
    • default and bulk subscription
    • notification counters
    • cleanup of long-unsubscribed rows
    • Redis subscriber-set cache read-through and invalidation

Run with:
    pytest tests/test_subscription_store.py -v
"""

from __future__ import annotations

import asyncio
from datetime import timedelta

import pytest

from backend.app.core.cache import RedisCache
from backend.app.core.errors import InvalidTopicError
from backend.app.notifications.models import utcnow
from backend.app.notifications.subscription_store import (
    AUTO_REASON,
    DEFAULT_REASON,
    InMemorySubscriptionStore,
)


class FakeRedis:
    """Minimal async stand-in for a redis.asyncio client."""

    def __init__(self):
        self.data = {}
        self.gets = 0

    async def get(self, key):
        self.gets += 1
        return self.data.get(key)

    async def set(self, key, value, ex=None):
        self.data[key] = value

    async def delete(self, key):
        self.data.pop(key, None)

    async def close(self):
        pass


class BrokenRedis(FakeRedis):
    async def get(self, key):
        raise ConnectionError("redis down")

    async def set(self, key, value, ex=None):
        raise ConnectionError("redis down")


# ═══════════════════════════════════════════════════════════════════════════
# Section 1: Subscribe / unsubscribe
# ═══════════════════════════════════════════════════════════════════════════

class TestSubscribeLifecycle:

    def test_subscribe_round_trip(self):
        async def scenario():
            store = InMemorySubscriptionStore()
            result = await store.subscribe(7, "case:100")
            assert result.success is True
            assert result.message == "Successfully subscribed to topic: case:100"
            assert result.data.reason == DEFAULT_REASON
            assert await store.is_subscribed(7, "case:100") is True
            assert await store.subscribers_of("case:100") == {7}

        asyncio.run(scenario())

    def test_second_subscribe_is_noop(self):
        async def scenario():
            store = InMemorySubscriptionStore()
            first = await store.subscribe(7, "case:100")
            second = await store.subscribe(7, "case:100")
            assert second.success is True
            assert second.message == "Already subscribed to topic: case:100"
            assert second.data.id == first.data.id
            assert await store.topic_stats() == {"case:100": 1}

        asyncio.run(scenario())

    def test_unsubscribe_is_soft(self):
        async def scenario():
            store = InMemorySubscriptionStore()
            await store.subscribe(7, "case:100")
            result = await store.unsubscribe(7, "case:100")
            assert result.success is True
            assert await store.is_subscribed(7, "case:100") is False
            assert await store.subscribers_of("case:100") == set()
            row = await store.get(7, "case:100")
            assert row is not None
            assert row.is_subscribed is False
            assert row.updated_at is not None

        asyncio.run(scenario())

    def test_unsubscribe_unknown_fails(self):
        async def scenario():
            store = InMemorySubscriptionStore()
            result = await store.unsubscribe(7, "case:100")
            assert result.success is False
            assert "Not subscribed" in result.message

        asyncio.run(scenario())

    def test_resubscribe_reactivates_same_row(self):
        async def scenario():
            store = InMemorySubscriptionStore()
            first = await store.subscribe(7, "case:100")
            await store.unsubscribe(7, "case:100")
            again = await store.subscribe(7, "case:100", "following again")
            assert again.message == "Successfully subscribed to topic: case:100"
            assert again.data.id == first.data.id
            assert again.data.reason == "following again"
            assert await store.subscribers_of("case:100") == {7}

        asyncio.run(scenario())

    def test_invalid_topic_raises(self):
        async def scenario():
            store = InMemorySubscriptionStore()
            with pytest.raises(InvalidTopicError):
                await store.subscribe(7, "case 100")
            with pytest.raises(InvalidTopicError):
                await store.unsubscribe(7, "")

        asyncio.run(scenario())

    def test_subscriptions_for_sorted_and_active_only(self):
        async def scenario():
            store = InMemorySubscriptionStore()
            for topic in ("org:all", "case:200", "case:100"):
                await store.subscribe(7, topic)
            await store.unsubscribe(7, "case:200")
            await store.subscribe(8, "case:100")
            subs = await store.subscriptions_for(7)
            assert [s.topic for s in subs] == ["case:100", "org:all"]

        asyncio.run(scenario())


# ═══════════════════════════════════════════════════════════════════════════
# Section 2: Defaults & bulk
# ═══════════════════════════════════════════════════════════════════════════

class TestDefaultsAndBulk:

    def test_subscribe_defaults_for_admin(self):
        async def scenario():
            store = InMemorySubscriptionStore()
            result = await store.subscribe_defaults(7, "admin")
            assert result.success is True
            assert result.data == ["org:all", "org:system", "role:admin"]
            row = await store.get(7, "role:admin")
            assert row.reason == AUTO_REASON

        asyncio.run(scenario())

    def test_bulk_subscribe_reports_failures(self):
        async def scenario():
            store = InMemorySubscriptionStore()
            result = await store.bulk_subscribe(7, ["case:1", "bad topic", "case:2", "case:1"])
            assert result.success is False
            assert result.data == {"subscribed": ["case:1", "case:2"], "failed": ["bad topic"]}
            assert await store.topic_stats() == {"case:1": 1, "case:2": 1}

        asyncio.run(scenario())

    def test_bulk_subscribe_all_valid(self):
        async def scenario():
            store = InMemorySubscriptionStore()
            result = await store.bulk_subscribe(7, ["case:1", "case:2"])
            assert result.success is True
            assert result.message == "Subscribed to 2 topics, 0 failed"

        asyncio.run(scenario())


# ═══════════════════════════════════════════════════════════════════════════
# Section 3: Counters & cleanup
# ═══════════════════════════════════════════════════════════════════════════

class TestCountersAndCleanup:

    def test_record_notification_increments(self):
        async def scenario():
            store = InMemorySubscriptionStore()
            await store.subscribe(7, "case:100")
            assert await store.record_notification(7, "case:100") is True
            assert await store.record_notification(7, "case:100") is True
            row = await store.get(7, "case:100")
            assert row.notification_count == 2
            assert row.last_notification_sent_at is not None

        asyncio.run(scenario())

    def test_record_notification_ignores_inactive(self):
        async def scenario():
            store = InMemorySubscriptionStore()
            assert await store.record_notification(7, "case:100") is False
            await store.subscribe(7, "case:100")
            await store.unsubscribe(7, "case:100")
            assert await store.record_notification(7, "case:100") is False

        asyncio.run(scenario())

    def test_cleanup_deletes_only_stale_unsubscribed(self):
        async def scenario():
            store = InMemorySubscriptionStore()
            await store.subscribe(7, "case:100")
            await store.subscribe(7, "case:200")
            await store.subscribe(8, "case:100")
            await store.unsubscribe(7, "case:100")
            await store.unsubscribe(7, "case:200")

            stale = await store.get(7, "case:100")
            stale.updated_at = utcnow() - timedelta(days=120)

            assert await store.cleanup_inactive(older_than_days=90) == 1
            assert await store.get(7, "case:100") is None
            assert await store.get(7, "case:200") is not None
            assert await store.is_subscribed(8, "case:100") is True

        asyncio.run(scenario())


# ═══════════════════════════════════════════════════════════════════════════
# Section 4: Subscriber cache
# ═══════════════════════════════════════════════════════════════════════════

class TestSubscriberCache:

    def test_read_through_and_invalidate(self):
        async def scenario():
            redis = FakeRedis()
            store = InMemorySubscriptionStore(cache=RedisCache(redis, default_ttl=60))
            await store.subscribe(7, "case:100")
            assert await store.subscribers_of("case:100") == {7}
            assert "subs:case:100" in redis.data

            await store.subscribe(8, "case:100")
            assert "subs:case:100" not in redis.data
            assert await store.subscribers_of("case:100") == {7, 8}

        asyncio.run(scenario())

    def test_cached_value_is_served(self):
        async def scenario():
            redis = FakeRedis()
            redis.data["subs:case:100"] = "[1, 2, 3]"
            store = InMemorySubscriptionStore(cache=RedisCache(redis, default_ttl=60))
            assert await store.subscribers_of("case:100") == {1, 2, 3}

        asyncio.run(scenario())

    def test_unreachable_redis_falls_back_to_store(self):
        async def scenario():
            store = InMemorySubscriptionStore(cache=RedisCache(BrokenRedis(), default_ttl=60))
            await store.subscribe(7, "case:100")
            assert await store.subscribers_of("case:100") == {7}

        asyncio.run(scenario())
