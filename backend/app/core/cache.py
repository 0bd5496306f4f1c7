"""
Redis cache layer — async Redis client with typed helpers.

Provides:
    • Lazily-created async client (redis.asyncio)
    • JSON serialisation get/set/delete with namespace prefixes
    • Topic subscriber-set cache used by the audience resolver

Every helper degrades to a cache miss when Redis is unreachable, so the
fanout path never depends on Redis being up.

Usage:
    from backend.app.core.cache import RedisCache

    cache = RedisCache.from_url(settings.REDIS_URL)
    await cache.set_json("subs:case:42", [7, 9], ttl=60)
    cached = await cache.get_json("subs:case:42")
"""

from __future__ import annotations

import json
import logging
from typing import Any, Iterable, Optional, Set

from backend.app.core.config import settings

logger = logging.getLogger(__name__)

SUBSCRIBERS_PREFIX = "subs"


class RedisCache:
    """Thin JSON cache over an async Redis client."""

    def __init__(self, client: Any, *, default_ttl: Optional[int] = None):
        self._client = client
        self._default_ttl = default_ttl or settings.SUBSCRIBER_CACHE_TTL

    @classmethod
    def from_url(cls, url: str, **kwargs: Any) -> "RedisCache":
        import redis.asyncio as aioredis

        client = aioredis.from_url(url, encoding="utf-8", decode_responses=True)
        logger.info("Redis client created: %s", url)
        return cls(client, **kwargs)

    async def get_json(self, key: str) -> Optional[Any]:
        """Get a cached value by key. Returns None on miss or error."""
        try:
            raw = await self._client.get(key)
            if raw is not None:
                return json.loads(raw)
        except Exception as e:
            logger.warning("Cache GET error for %s: %s", key, e)
        return None

    async def set_json(self, key: str, value: Any, ttl: Optional[int] = None) -> bool:
        """Set a cached value with optional TTL (seconds)."""
        try:
            serialised = json.dumps(value, default=str)
            await self._client.set(key, serialised, ex=ttl or self._default_ttl)
            return True
        except Exception as e:
            logger.warning("Cache SET error for %s: %s", key, e)
            return False

    async def delete(self, key: str) -> bool:
        try:
            await self._client.delete(key)
            return True
        except Exception as e:
            logger.warning("Cache DELETE error for %s: %s", key, e)
            return False

    async def close(self) -> None:
        try:
            await self._client.close()
        except Exception as e:
            logger.warning("Redis close failed: %s", e)
        logger.info("Redis connection closed")

    # ── Topic subscriber sets ──

    @staticmethod
    def subscribers_key(topic: str) -> str:
        return f"{SUBSCRIBERS_PREFIX}:{topic}"

    async def get_subscribers(self, topic: str) -> Optional[Set[int]]:
        cached = await self.get_json(self.subscribers_key(topic))
        if cached is None:
            return None
        return {int(uid) for uid in cached}

    async def set_subscribers(self, topic: str, user_ids: Iterable[int]) -> bool:
        return await self.set_json(self.subscribers_key(topic), sorted(user_ids))

    async def invalidate_topic(self, topic: str) -> bool:
        return await self.delete(self.subscribers_key(topic))
