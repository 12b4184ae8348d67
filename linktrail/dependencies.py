"""Dependency injection with a singleton service manager.

Shared resources (settings, logger, Redis clients, the session factory used
by background work, the background dispatcher and the analytics recorder)
live on one :class:`ServiceManager`. Each request gets a
:class:`RequestContext` carrying its database session and client metadata,
from which :class:`URLShorteningService` is built.
"""

import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import Optional

import redis.asyncio as redis
from fastapi import Depends, Header, HTTPException, Request
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from linktrail.analytics import AnalyticsRecorder
from linktrail.cache import RedirectCache
from linktrail.config import Settings, get_settings
from linktrail.database import async_session, get_db
from linktrail.dispatcher import BackgroundDispatcher
from linktrail.exceptions import RateLimited
from linktrail.ratelimit import FixedWindowLimiter
from linktrail.url_service import URLShorteningService

__all__ = [
    "ServiceManager",
    "RequestContext",
    "get_service_manager",
    "get_request_context",
    "get_url_service",
    "get_owner_id",
    "enforce_shorten_rate_limit",
]


# ============================================================================
# SINGLETON SERVICE MANAGER
# ============================================================================


class ServiceManager:
    """Singleton service manager for shared resources."""

    _instance: Optional["ServiceManager"] = None
    _initialized: bool = False

    def __new__(cls) -> "ServiceManager":
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    async def initialize(
        self,
        cache_writer: redis.Redis | None = None,
        cache_reader: redis.Redis | None = None,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
    ) -> None:
        """Initialize shared resources once at startup.

        Explicit clients and session factory take precedence over the ones
        built from settings (tests pass their own). Only clients built here
        are closed by :meth:`cleanup`.
        """
        if self._initialized:
            return
        self.settings = get_settings()
        self.logger = self._setup_logger()
        self._owned_clients: list[redis.Redis] = []
        if cache_writer is None:
            cache_writer = self._connect(self.settings.REDIS_URL)
            if cache_reader is None and self.settings.REDIS_REPLICA_URL:
                cache_reader = self._connect(self.settings.REDIS_REPLICA_URL)
        self.cache_writer = cache_writer
        self.cache_reader = cache_reader or cache_writer
        self.session_factory = session_factory or async_session
        self.dispatcher = BackgroundDispatcher(drain_timeout=self.settings.SHUTDOWN_DRAIN_TIMEOUT_SECONDS)
        self.recorder = AnalyticsRecorder(self.session_factory, self.settings)
        self._initialized = True

    def _setup_logger(self) -> logging.Logger:
        logger = logging.getLogger("linktrail")
        if not logger.handlers:
            handler = logging.StreamHandler()
            formatter = logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")
            handler.setFormatter(formatter)
            logger.addHandler(handler)
            logger.setLevel(logging.INFO)
        return logger

    def _connect(self, url: str) -> redis.Redis:
        client = redis.from_url(url, encoding="utf-8", decode_responses=True)
        self._owned_clients.append(client)
        return client

    async def cleanup(self) -> None:
        """Drain outstanding background work, then close the Redis clients built at startup."""
        if not self._initialized:
            return
        await self.dispatcher.drain()
        for client in self._owned_clients:
            await client.aclose()
        self._owned_clients = []
        self._initialized = False


_service_manager = ServiceManager()


# ============================================================================
# REQUEST CONTEXT
# ============================================================================


@dataclass
class RequestContext:
    """Per-request context: the database session plus client metadata.

    Attributes:
        database: Async database session (only per-request resource)
        service_manager: Singleton service manager with shared resources
        request_id: Unique identifier for this request
        client_ip: Client IP address
        user_agent: Client user agent string
        referrer: Referer header, empty when absent
        language: Accept-Language header, empty when absent
        start_time: Request start timestamp
    """

    database: AsyncSession
    service_manager: ServiceManager
    request_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    client_ip: Optional[str] = None
    user_agent: Optional[str] = None
    referrer: str = ""
    language: str = ""
    start_time: float = field(default_factory=lambda: time.time())

    @property
    def cache_writer(self) -> redis.Redis:
        return self.service_manager.cache_writer

    @property
    def cache_reader(self) -> redis.Redis:
        return self.service_manager.cache_reader

    @property
    def session_factory(self) -> async_sessionmaker[AsyncSession]:
        return self.service_manager.session_factory

    @property
    def dispatcher(self) -> BackgroundDispatcher:
        return self.service_manager.dispatcher

    @property
    def recorder(self) -> AnalyticsRecorder:
        return self.service_manager.recorder

    @property
    def settings(self) -> Settings:
        return self.service_manager.settings

    @property
    def logger(self) -> logging.LoggerAdapter:
        return logging.LoggerAdapter(
            self.service_manager.logger,
            {
                "request_id": self.request_id,
                "client_ip": self.client_ip,
                "user_agent": self.user_agent,
            },
        )

    def get_duration(self) -> float:
        """Get request duration in milliseconds."""
        return (time.time() - self.start_time) * 1000


# ============================================================================
# DEPENDENCY FUNCTIONS
# ============================================================================


async def get_service_manager() -> ServiceManager:
    if not _service_manager._initialized:
        await _service_manager.initialize()
    return _service_manager


def _client_ip(request: Request, trust_forwarded: bool) -> Optional[str]:
    """Peer address, or the first ``X-Forwarded-For`` hop when a trusted proxy sets it."""
    forwarded = request.headers.get("x-forwarded-for") if trust_forwarded else None
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else None


async def get_request_context(
    request: Request,
    db: AsyncSession = Depends(get_db),
    manager: ServiceManager = Depends(get_service_manager),
) -> RequestContext:
    return RequestContext(
        database=db,
        service_manager=manager,
        client_ip=_client_ip(request, manager.settings.TRUST_FORWARDED_FOR),
        user_agent=request.headers.get("user-agent"),
        referrer=request.headers.get("referer", ""),
        language=request.headers.get("accept-language", ""),
    )


def get_url_service(ctx: RequestContext = Depends(get_request_context)) -> URLShorteningService:
    return URLShorteningService.from_context(ctx)


async def get_owner_id(x_user_id: Optional[str] = Header(default=None)) -> str:
    """Identity of the caller, set by the authenticating proxy in front of the service."""
    if not x_user_id or not x_user_id.strip():
        raise HTTPException(status_code=401, detail="Missing X-User-Id header")
    return x_user_id.strip()


async def enforce_shorten_rate_limit(ctx: RequestContext = Depends(get_request_context)) -> None:
    """Per-IP fixed-window budget for link creation; 429 once it is spent."""
    settings = ctx.settings
    if not settings.RATE_LIMIT_ENABLED:
        return
    limiter = FixedWindowLimiter(
        RedirectCache(ctx.cache_writer, timeout=settings.CACHE_TIMEOUT_SECONDS),
        limit=settings.RATE_LIMIT_REQUESTS,
        window_seconds=settings.RATE_LIMIT_WINDOW_SECONDS,
    )
    try:
        await limiter.hit(ctx.client_ip or "unknown")
    except RateLimited as exc:
        ctx.logger.warning(f"Rate limit exceeded for {ctx.client_ip}")
        raise HTTPException(
            status_code=exc.status_code,
            detail={"error": "Too Many Requests", "message": exc.message},
            headers={"Retry-After": str(exc.retry_after)},
        ) from exc
