"""Redirect Cache: cache-aside access to Redis.

The cache never populates or invalidates itself. The service layer decides
when to write (after a store hit or a create) and when to invalidate (after
any change to a link's identity or resolvability).

Key layout::

    url:{code}                               CachedLinkPayload JSON, 3600s
    urls:owner:{owner}                       owner listing, 300s
    urls:owner:{owner}:topic:{topic}         owner topic listing, 300s
    analytics:url:{id}                       AnalyticsSummary JSON, 300s
    analytics:topic:{owner}:{topic}          AggregateSummary JSON, 300s
    analytics:overall:{owner}                AggregateSummary JSON, 300s
    ratelimit:{scope}:{ip}:{window}          request counter, one window

Every call is bounded by ``CACHE_TIMEOUT_SECONDS`` and raises
:class:`DependencyUnavailable` on failure; callers treat that as a miss.
"""

import asyncio
import logging
from collections.abc import Awaitable
from typing import TypeVar

import redis.asyncio as redis
from prometheus_client import Counter
from pydantic import ValidationError
from redis.exceptions import RedisError

from linktrail.config import get_settings
from linktrail.exceptions import DependencyUnavailable
from linktrail.schemas import CachedLinkPayload

__all__ = [
    "RedirectCache",
    "link_key",
    "owner_listing_key",
    "analytics_url_key",
    "analytics_topic_key",
    "analytics_overall_key",
    "rate_limit_key",
]

logger = logging.getLogger(__name__)

T = TypeVar("T")

REDIS_OPERATIONS_TOTAL = Counter(
    "linktrail_redis_operations_total",
    "Total Redis operations",
    ["operation"],
)
REDIS_FAILURES_TOTAL = Counter(
    "linktrail_redis_failures_total",
    "Redis operations that timed out or failed",
    ["operation"],
)


def link_key(code: str) -> str:
    return f"url:{code}"


def owner_listing_key(owner_id: str, topic: str | None = None) -> str:
    if topic is None:
        return f"urls:owner:{owner_id}"
    return f"urls:owner:{owner_id}:topic:{topic}"


def analytics_url_key(link_id: int) -> str:
    return f"analytics:url:{link_id}"


def analytics_topic_key(owner_id: str, topic: str) -> str:
    return f"analytics:topic:{owner_id}:{topic}"


def analytics_overall_key(owner_id: str) -> str:
    return f"analytics:overall:{owner_id}"


def rate_limit_key(scope: str, client_id: str, window: int) -> str:
    return f"ratelimit:{scope}:{client_id}:{window}"


class RedirectCache:
    """Thin, timeout-bounded wrapper over a Redis writer/reader pair."""

    def __init__(
        self,
        writer: redis.Redis,
        reader: redis.Redis | None = None,
        timeout: float | None = None,
    ) -> None:
        self._writer = writer
        self._reader = reader or writer
        self._timeout = timeout if timeout is not None else get_settings().CACHE_TIMEOUT_SECONDS

    async def _guard(self, operation: Awaitable[T], name: str) -> T:
        REDIS_OPERATIONS_TOTAL.labels(operation=name).inc()
        try:
            return await asyncio.wait_for(operation, timeout=self._timeout)
        except (asyncio.TimeoutError, OSError, RedisError) as exc:
            REDIS_FAILURES_TOTAL.labels(operation=name).inc()
            raise DependencyUnavailable("cache", f"Redis {name} failed: {exc!r}") from exc

    async def get(self, key: str) -> str | None:
        return await self._guard(self._reader.get(key), "get")

    async def set(self, key: str, value: str, ttl: int) -> None:
        await self._guard(self._writer.set(key, value, ex=ttl), "set")

    async def invalidate(self, *keys: str) -> None:
        if keys:
            await self._guard(self._writer.delete(*keys), "delete")

    async def increment(self, key: str, ttl: int) -> int:
        """``INCR`` a counter, starting its TTL when this call created it."""
        count = await self._guard(self._writer.incr(key), "incr")
        if count == 1:
            await self._guard(self._writer.expire(key, ttl), "expire")
        return int(count)

    async def ping(self) -> bool:
        return bool(await self._guard(self._writer.ping(), "ping"))

    async def get_link(self, code: str) -> CachedLinkPayload | None:
        raw = await self.get(link_key(code))
        if raw is None:
            return None
        try:
            return CachedLinkPayload.model_validate_json(raw)
        except ValidationError as exc:
            logger.error(f"Cache deserialization error for {code}: {exc}")
            return None

    async def set_link(self, payload: CachedLinkPayload, ttl: int | None = None) -> None:
        ttl = ttl if ttl is not None else get_settings().LINK_CACHE_TTL_SECONDS
        await self.set(link_key(payload.short_code), payload.model_dump_json(), ttl)
