"""Tenant-scoped answer cache backed by Redis.

Answers are keyed by a hash of the normalized query, so repeated questions
that differ only in case or spacing share one entry. Without a configured
Redis URL the cache is disabled: every lookup misses and writes are dropped.
"""

import logging
import re
from datetime import UTC, datetime
from functools import lru_cache
from hashlib import sha256

import redis.asyncio as aioredis

from ..core.config import get_settings
from ..schemas.resolution import CachedAnswer

logger = logging.getLogger(__name__)

KEY_PREFIX = "sem"


def normalize_query(query: str) -> str:
    return re.sub(r"\s+", " ", query.strip().lower())


def make_key(tenant_id: str, query: str) -> str:
    digest = sha256(f"{tenant_id}:{normalize_query(query)}".encode()).hexdigest()[:16]
    return f"{KEY_PREFIX}:{tenant_id}:{digest}"


class ResponseCache:
    """Async Redis cache of generated answers."""

    def __init__(self, url: str | None = None, ttl: int | None = None):
        settings = get_settings()
        self.url = settings.redis_url if url is None else url
        self.ttl = ttl or settings.cache_ttl_seconds
        self._client: aioredis.Redis | None = None

    @property
    def enabled(self) -> bool:
        return bool(self.url)

    @property
    def client(self) -> aioredis.Redis:
        """Lazy-load the Redis client."""
        if self._client is None:
            self._client = aioredis.from_url(self.url, decode_responses=True)
        return self._client

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def get(self, tenant_id: str, query: str) -> CachedAnswer | None:
        """Return the cached answer for ``query``, or None on a miss."""
        if not self.enabled:
            return None
        raw = await self.client.get(make_key(tenant_id, query))
        if raw is None:
            return None
        return CachedAnswer.model_validate_json(raw)

    async def set(self, tenant_id: str, query: str, answer: CachedAnswer, ttl: int | None = None) -> None:
        """Store ``answer`` for ``query`` with the given (or default) TTL in seconds."""
        if not self.enabled:
            return
        if answer.cached_at is None:
            answer = answer.model_copy(update={"cached_at": datetime.now(UTC)})
        await self.client.setex(make_key(tenant_id, query), ttl or self.ttl, answer.model_dump_json())

    async def invalidate_tenant(self, tenant_id: str) -> int:
        """Delete every cached answer of the tenant. Returns the number removed."""
        if not self.enabled:
            return 0
        deleted = 0
        async for key in self.client.scan_iter(match=f"{KEY_PREFIX}:{tenant_id}:*", count=100):
            deleted += await self.client.delete(key)
        logger.info("Invalidated %d cached answers for tenant %s", deleted, tenant_id)
        return deleted


@lru_cache
def get_response_cache() -> ResponseCache:
    """Get cached ResponseCache instance."""
    return ResponseCache()
