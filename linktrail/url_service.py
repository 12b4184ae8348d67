"""linktrail Service Layer - Redirect Orchestrator and link management

Architecture Overview
==================
::
    ┌──────────────────────────────────────────────────────────────────┐
    │                        Service Layer                              │
    │  ┌──────────────────┐  ┌────────────────┐  ┌──────────────────┐  │
    │  │ Redirect          │  │ Link creation   │  │ Listings &       │  │
    │  │ Orchestrator      │  │ & updates       │  │ analytics views  │  │
    │  └──────────────────┘  └────────────────┘  └──────────────────┘  │
    └──────────────────────────────────────────────────────────────────┘
            │                       │                       │
            ▼                       ▼                       ▼
    ┌────────────────┐    ┌──────────────────┐    ┌───────────────────┐
    │ RedirectCache   │    │ LinkStore         │    │ BackgroundDispatcher│
    │ (Redis)         │    │ (PostgreSQL)      │    │ + AnalyticsRecorder │
    └────────────────┘    └──────────────────┘    └───────────────────┘

Redirect Flow
-------------
::
    ┌─────────────┐
    │  GET /:code │
    └──────┬──────┘
           ▼
    ┌─────────────┐   cache error
    │ Redis GET    │ ───────────────┐
    │ url:{code}   │                │
    └──────┬──────┘                │
    HIT?  │                         │
    ┌─────┴─────┐                   │
    │ NO         │ YES              │
    ▼            │                  │
┌─────────┐      │  ◄───────────────┘
│ Store    │      │
│ lookup   │──── NotFound ──► 404
│ (timeout)│──── timeout  ──► 503
└────┬────┘      │
     ▼           │
┌─────────┐      │
│ Cache    │      │
│ snapshot │      │
└────┬────┘      │
     ▼           ▼
    ┌─────────────┐
    │ Expiry /     │── inactive / expired ──► 410
    │ active check │
    └──────┬──────┘
           ▼
    ┌─────────────┐
    │ dispatch:    │  increment_clicks, record_redirect
    │ (not awaited)│
    └──────┬──────┘
           ▼
        302 Location

Cache Invalidation Obligations
==============================
- ``create_short_url``: owner listing keys and the owner's overall analytics.
- ``update_link``: ``url:{code}``, owner listing keys, link analytics.
- ``reap_expired`` (background): ``url:{code}`` per deactivated link.
- Click counting never touches the cache; cached ``clicks`` may lag by up to
  the link TTL while identity and resolvability fields are invalidated on write.
"""

import time
from typing import TYPE_CHECKING

from prometheus_client import Counter, Histogram
from pydantic import TypeAdapter, ValidationError

from linktrail.analytics import AnalyticsReader
from linktrail.cache import (
    RedirectCache,
    analytics_overall_key,
    analytics_topic_key,
    analytics_url_key,
    link_key,
    owner_listing_key,
)
from linktrail.classify import classify_request
from linktrail.clock import utcnow
from linktrail.codes import allocate_code
from linktrail.enums import CacheStatus, LookupSource, RequestStatus
from linktrail.exceptions import (
    AliasTaken,
    DependencyUnavailable,
    DuplicateKey,
    LinkError,
    LinkGone,
    NotFound,
)
from linktrail.models import Link
from linktrail.schemas import (
    AggregateSummary,
    AnalyticsSummary,
    CachedLinkPayload,
    LinkCreate,
    LinkUpdate,
)
from linktrail.store import LinkStore, ensure_resolvable

if TYPE_CHECKING:
    import datetime

    from linktrail.dependencies import RequestContext

__all__ = ["URLShorteningService"]

_LINK_LIST = TypeAdapter(list[CachedLinkPayload])

# ============================================================================
# PROMETHEUS METRICS
# ============================================================================

URL_CREATION_REQUESTS_TOTAL = Counter(
    "linktrail_creation_requests_total",
    "Total link creation requests",
    ["status"],
)
URL_REDIRECT_REQUESTS_TOTAL = Counter(
    "linktrail_redirect_requests_total",
    "Total redirect requests",
    ["status", "cache_hit"],
)
URL_LOOKUP_DURATION = Histogram(
    "linktrail_lookup_duration_seconds",
    "Time taken to resolve a short code",
    buckets=[0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0],
)
CACHE_HITS_TOTAL = Counter("linktrail_cache_hits_total", "Total cache hits for link lookups")
CACHE_MISSES_TOTAL = Counter("linktrail_cache_misses_total", "Total cache misses for link lookups")
CACHE_DEGRADED_TOTAL = Counter(
    "linktrail_cache_degraded_total",
    "Link lookups that bypassed an unavailable cache",
)
DATABASE_READS_TOTAL = Counter("linktrail_database_reads_total", "Total database read operations")
DATABASE_WRITES_TOTAL = Counter("linktrail_database_writes_total", "Total database write operations")
CODE_COLLISION_RETRIES_TOTAL = Counter(
    "linktrail_code_collision_retries_total",
    "Generated short codes that lost the insert race and were redrawn",
)

GENERATED_INSERT_ATTEMPTS = 2


class URLShorteningService:
    """Core service for creating links and resolving redirects.

    One instance per request. The request-scoped database session backs the
    synchronous path; background work opens its own sessions through the
    service manager's session factory.

    Example:
        >>> service = URLShorteningService.from_context(ctx)
        >>> link = await service.resolve_redirect("promo1", client_ip="203.0.113.9")
        >>> link.original_url
        'https://example.com'
    """

    def __init__(self, ctx: "RequestContext") -> None:
        self._ctx = ctx
        self._db = ctx.database
        self._settings = ctx.settings
        self._logger = ctx.logger
        self._store = LinkStore(self._db, timeout=self._settings.STORE_TIMEOUT_SECONDS)
        self._cache = RedirectCache(
            ctx.cache_writer,
            ctx.cache_reader,
            timeout=self._settings.CACHE_TIMEOUT_SECONDS,
        )
        self._session_factory = ctx.session_factory
        self._dispatcher = ctx.dispatcher
        self._recorder = ctx.recorder

    @classmethod
    def from_context(cls, ctx: "RequestContext") -> "URLShorteningService":
        return cls(ctx)

    # ========================================================================
    # LINK CREATION
    # ========================================================================

    async def create_short_url(self, request: LinkCreate, owner_id: str) -> tuple[Link, bool]:
        """Create a link, or return the owner's existing link for the same URL.

        Returns:
            ``(link, created)``.

        Raises:
            AliasTaken: the alias is in use, either by the pre-check or by
                losing the unique constraint on insert.
            DuplicateKey: a generated code lost the insert race twice.
            GenerationExhausted: no free random code could be found.
        """
        try:
            if request.custom_alias is not None:
                if await self._store.code_exists(request.custom_alias):
                    raise AliasTaken(f"Custom alias '{request.custom_alias}' is already taken")
                DATABASE_READS_TOTAL.inc()
                link, created = await self._insert(request, owner_id, request.custom_alias)
            else:
                link, created = await self._insert_generated(request, owner_id)
        except DuplicateKey as exc:
            URL_CREATION_REQUESTS_TOTAL.labels(status=RequestStatus.CONFLICT).inc()
            self._logger.warning(f"Link creation conflict: {exc.message}")
            raise
        except LinkError as exc:
            URL_CREATION_REQUESTS_TOTAL.labels(status=RequestStatus.ERROR).inc()
            self._logger.error(f"Link creation failed: {exc.message}")
            raise

        if not created:
            URL_CREATION_REQUESTS_TOTAL.labels(status=RequestStatus.SUCCESS).inc()
            self._logger.info(f"Owner {owner_id} already shortened {request.original_url} as {link.short_code}")
            return link, False

        DATABASE_WRITES_TOTAL.inc()
        URL_CREATION_REQUESTS_TOTAL.labels(status=RequestStatus.SUCCESS).inc()
        await self._cache_snapshot(CachedLinkPayload.model_validate(link))
        await self._invalidate(
            owner_listing_key(owner_id),
            owner_listing_key(owner_id, link.topic),
            analytics_overall_key(owner_id),
            analytics_topic_key(owner_id, link.topic),
        )
        self._logger.info(f"Link created: {link.short_code} -> {link.original_url}")
        return link, True

    async def _insert(self, request: LinkCreate, owner_id: str, short_code: str) -> tuple[Link, bool]:
        return await self._store.create_if_absent(
            original_url=request.original_url,
            owner_id=owner_id,
            short_code=short_code,
            custom_alias=request.custom_alias,
            topic=request.topic,
            expires_at=request.expires_at,
        )

    async def _insert_generated(self, request: LinkCreate, owner_id: str) -> tuple[Link, bool]:
        """Insert with a random code, drawing a fresh one if the first loses the insert race.

        The caller never asked for a particular code, so a collision on
        insert is not a conflict worth reporting unless it happens twice.
        """
        for _ in range(GENERATED_INSERT_ATTEMPTS - 1):
            short_code = await allocate_code(self._store.code_exists)
            DATABASE_READS_TOTAL.inc()
            try:
                return await self._insert(request, owner_id, short_code)
            except DuplicateKey as exc:
                CODE_COLLISION_RETRIES_TOTAL.inc()
                self._logger.warning(f"Generated code {short_code} lost the insert race, retrying: {exc.message}")

        short_code = await allocate_code(self._store.code_exists)
        DATABASE_READS_TOTAL.inc()
        return await self._insert(request, owner_id, short_code)

    async def update_link(self, short_code: str, owner_id: str, changes: LinkUpdate) -> Link:
        link = await self._store.update_link(
            short_code,
            owner_id,
            is_active=changes.is_active,
            expires_at=changes.expires_at,
        )
        DATABASE_WRITES_TOTAL.inc()
        await self._invalidate(
            link_key(short_code),
            owner_listing_key(owner_id),
            owner_listing_key(owner_id, link.topic),
            analytics_url_key(link.id),
        )
        self._logger.info(f"Link {short_code} updated: is_active={link.is_active} expires_at={link.expires_at}")
        return link

    # ========================================================================
    # REDIRECT ORCHESTRATOR
    # ========================================================================

    async def lookup_link(self, short_code: str) -> tuple[CachedLinkPayload, LookupSource]:
        """Cache-aside lookup of a link snapshot, resolvable or not.

        A cache failure degrades to the store. A store failure is fatal.

        Raises:
            NotFound: no link has this code.
            DependencyUnavailable: the store timed out or is unreachable.
        """
        try:
            cached = await self._cache.get_link(short_code)
        except DependencyUnavailable as exc:
            CACHE_DEGRADED_TOTAL.inc()
            self._logger.warning(f"Cache unavailable for {short_code}, reading store: {exc.message}")
            cached = None

        if cached is not None:
            CACHE_HITS_TOTAL.inc()
            return cached, LookupSource.CACHE

        CACHE_MISSES_TOTAL.inc()
        link = await self._store.find_by_code(short_code)
        DATABASE_READS_TOTAL.inc()
        snapshot = CachedLinkPayload.model_validate(link)
        await self._cache_snapshot(snapshot)
        return snapshot, LookupSource.STORE

    async def resolve_redirect(
        self,
        short_code: str,
        client_ip: str | None = None,
        user_agent: str | None = None,
        referrer: str | None = None,
        language: str | None = None,
    ) -> CachedLinkPayload:
        """Resolve ``short_code`` for a redirect and dispatch its side effects.

        The click increment and analytics event are dispatched, not awaited.

        Raises:
            NotFound: unknown code (404).
            Expired / Inactive: the link is not resolvable (410).
            DependencyUnavailable: store failure after a cache miss (503).
        """
        start_time = time.perf_counter()
        source = LookupSource.STORE
        try:
            snapshot, source = await self._lookup_and_check(short_code)
        except NotFound:
            URL_REDIRECT_REQUESTS_TOTAL.labels(status=RequestStatus.NOT_FOUND, cache_hit=CacheStatus.MISS).inc()
            raise
        except LinkGone:
            URL_REDIRECT_REQUESTS_TOTAL.labels(
                status=RequestStatus.GONE, cache_hit=self._cache_status(source)
            ).inc()
            raise
        except DependencyUnavailable:
            URL_REDIRECT_REQUESTS_TOTAL.labels(status=RequestStatus.UNAVAILABLE, cache_hit=CacheStatus.MISS).inc()
            raise
        finally:
            URL_LOOKUP_DURATION.observe(time.perf_counter() - start_time)

        URL_REDIRECT_REQUESTS_TOTAL.labels(status=RequestStatus.SUCCESS, cache_hit=self._cache_status(source)).inc()
        self._dispatch_tracking(snapshot.id, client_ip, user_agent, referrer, language)
        return snapshot

    async def _lookup_and_check(self, short_code: str) -> tuple[CachedLinkPayload, LookupSource]:
        snapshot, source = await self.lookup_link(short_code)
        ensure_resolvable(snapshot, utcnow())
        return snapshot, source

    @staticmethod
    def _cache_status(source: LookupSource) -> CacheStatus:
        return CacheStatus.HIT if source is LookupSource.CACHE else CacheStatus.MISS

    def _dispatch_tracking(
        self,
        link_id: int,
        client_ip: str | None,
        user_agent: str | None,
        referrer: str | None,
        language: str | None,
    ) -> None:
        at = utcnow()
        self._dispatcher.dispatch("increment_clicks", lambda: self._increment_clicks(link_id, at))
        self._dispatcher.dispatch(
            "record_redirect",
            lambda: self._record_redirect(link_id, client_ip, user_agent, referrer, language, at),
        )

    async def _increment_clicks(self, link_id: int, at: "datetime.datetime") -> None:
        async with self._session_factory() as session:
            await LinkStore(session).increment_clicks(link_id, at)

    async def _record_redirect(
        self,
        link_id: int,
        client_ip: str | None,
        user_agent: str | None,
        referrer: str | None,
        language: str | None,
        at: "datetime.datetime",
    ) -> None:
        event = classify_request(client_ip, user_agent, referrer, language, at)
        await self._recorder.record_redirect(link_id, event)

    # ========================================================================
    # LISTINGS
    # ========================================================================

    async def list_links(self, owner_id: str, topic: str | None = None) -> list[CachedLinkPayload]:
        key = owner_listing_key(owner_id, topic)
        cached = await self._cache_get(key)
        if cached is not None:
            try:
                return _LINK_LIST.validate_json(cached)
            except ValidationError as exc:
                self._logger.error(f"Corrupt listing cache for {key}: {exc}")

        links = await self._store.list_by_owner(owner_id, topic)
        DATABASE_READS_TOTAL.inc()
        payloads = [CachedLinkPayload.model_validate(link) for link in links]
        await self._cache_put(key, _LINK_LIST.dump_json(payloads).decode(), self._settings.LISTING_CACHE_TTL_SECONDS)
        return payloads

    # ========================================================================
    # ANALYTICS VIEWS
    # ========================================================================

    async def url_analytics(self, short_code: str, owner_id: str) -> AnalyticsSummary:
        link = await self._store.find_by_code(short_code)
        if link.owner_id != owner_id:
            raise NotFound(f"Short URL '{short_code}' not found")

        key = analytics_url_key(link.id)
        cached = await self._cache_get(key)
        if cached is not None:
            return AnalyticsSummary.model_validate_json(cached)

        summary = await AnalyticsReader(self._db).get_summary(link)
        await self._cache_put(key, summary.model_dump_json(), self._settings.LISTING_CACHE_TTL_SECONDS)
        return summary

    async def topic_analytics(self, owner_id: str, topic: str) -> AggregateSummary:
        topic = topic.strip().lower()
        key = analytics_topic_key(owner_id, topic)
        cached = await self._cache_get(key)
        if cached is not None:
            return AggregateSummary.model_validate_json(cached)

        links = await self._store.list_by_owner(owner_id, topic)
        if not links:
            raise NotFound(f"No URLs found for topic '{topic}'")
        summary = await AnalyticsReader(self._db).summarize([link.id for link in links])
        await self._cache_put(key, summary.model_dump_json(), self._settings.LISTING_CACHE_TTL_SECONDS)
        return summary

    async def overall_analytics(self, owner_id: str) -> AggregateSummary:
        key = analytics_overall_key(owner_id)
        cached = await self._cache_get(key)
        if cached is not None:
            return AggregateSummary.model_validate_json(cached)

        links = await self._store.list_by_owner(owner_id)
        summary = await AnalyticsReader(self._db).summarize([link.id for link in links])
        await self._cache_put(key, summary.model_dump_json(), self._settings.LISTING_CACHE_TTL_SECONDS)
        return summary

    # ========================================================================
    # CACHE HELPERS (failures degrade, never propagate)
    # ========================================================================

    async def _cache_snapshot(self, snapshot: CachedLinkPayload) -> None:
        try:
            await self._cache.set_link(snapshot, self._settings.LINK_CACHE_TTL_SECONDS)
        except DependencyUnavailable as exc:
            self._logger.warning(f"Could not cache {snapshot.short_code}: {exc.message}")

    async def _cache_get(self, key: str) -> str | None:
        try:
            return await self._cache.get(key)
        except DependencyUnavailable as exc:
            self._logger.warning(f"Cache read failed for {key}: {exc.message}")
            return None

    async def _cache_put(self, key: str, value: str, ttl: int) -> None:
        try:
            await self._cache.set(key, value, ttl)
        except DependencyUnavailable as exc:
            self._logger.warning(f"Cache write failed for {key}: {exc.message}")

    async def _invalidate(self, *keys: str) -> None:
        try:
            await self._cache.invalidate(*keys)
        except DependencyUnavailable as exc:
            # Entries left behind expire with their TTL.
            self._logger.error(f"Cache invalidation failed for {keys}: {exc.message}")
