"""FastAPI route definitions for the linktrail REST API.

API Endpoint Overview
=====================
::
    GET    /health
        └─ HealthResponse (200)

    POST   /api/shorten                      (X-User-Id)
        ├─ LinkCreate (request body)
        └─ LinkResponse (201 new / 200 existing) or 400/409/429

    GET    /api/urls                         (X-User-Id)
    GET    /api/urls/topic/{topic}           (X-User-Id)
        └─ list[LinkResponse] (200)

    PATCH  /api/urls/{short_code}            (X-User-Id)
        └─ LinkResponse (200) or 400/404

    GET    /api/analytics/url/{short_code}   (X-User-Id)
    GET    /api/analytics/topic/{topic}      (X-User-Id)
    GET    /api/analytics/overall            (X-User-Id)

    GET    /{short_code}
        └─ 302 Redirect, 404, 410 or 503

Key Behaviours
===============
- Service-layer ``LinkError`` subclasses carry their HTTP status; the
  router turns them into ``HTTPException``.
- The redirect answers as soon as the link is resolved; click counting and
  analytics run on the background dispatcher.
- Owner-scoped endpoints require the ``X-User-Id`` header (401 otherwise).
- ``POST /api/shorten`` is rate limited per client IP (429 with
  ``Retry-After`` once the window budget is spent).
"""

from fastapi import APIRouter, Depends, HTTPException, Response
from fastapi.responses import RedirectResponse
from sqlalchemy import text

from linktrail.cache import RedirectCache
from linktrail.dependencies import (
    RequestContext,
    enforce_shorten_rate_limit,
    get_owner_id,
    get_request_context,
    get_url_service,
)
from linktrail.enums import HealthStatus
from linktrail.exceptions import LinkError
from linktrail.models import Link
from linktrail.schemas import (
    AggregateSummary,
    AnalyticsSummary,
    CachedLinkPayload,
    HealthResponse,
    LinkCreate,
    LinkResponse,
    LinkUpdate,
)
from linktrail.url_service import URLShorteningService

__all__ = ["router"]

router = APIRouter()


def _as_http(exc: LinkError) -> HTTPException:
    return HTTPException(status_code=exc.status_code, detail=exc.message)


def _link_response(link: Link | CachedLinkPayload, base_url: str) -> LinkResponse:
    payload = link if isinstance(link, CachedLinkPayload) else CachedLinkPayload.model_validate(link)
    return LinkResponse(**payload.model_dump(), short_url=f"{base_url}/{payload.short_code}")


@router.get("/health", response_model=HealthResponse, tags=["health"])
async def health_check(ctx: RequestContext = Depends(get_request_context)) -> HealthResponse:
    db_status = HealthStatus.HEALTHY
    cache_status = HealthStatus.HEALTHY

    try:
        await ctx.database.execute(text("SELECT 1"))
    except Exception as e:
        ctx.logger.error(f"Database health check failed: {e}")
        db_status = HealthStatus.UNHEALTHY

    try:
        await RedirectCache(ctx.cache_writer, timeout=ctx.settings.CACHE_TIMEOUT_SECONDS).ping()
    except LinkError as e:
        ctx.logger.error(f"Cache health check failed: {e.message}")
        cache_status = HealthStatus.UNHEALTHY

    status = (
        HealthStatus.HEALTHY
        if db_status is HealthStatus.HEALTHY and cache_status is HealthStatus.HEALTHY
        else HealthStatus.UNHEALTHY
    )
    return HealthResponse(status=status, database=db_status, cache=cache_status)


@router.post(
    "/api/shorten",
    response_model=LinkResponse,
    status_code=201,
    tags=["urls"],
    dependencies=[Depends(enforce_shorten_rate_limit)],
)
async def shorten_url(
    payload: LinkCreate,
    response: Response,
    owner_id: str = Depends(get_owner_id),
    ctx: RequestContext = Depends(get_request_context),
    service: URLShorteningService = Depends(get_url_service),
) -> LinkResponse:
    ctx.logger.info(f"URL shortening requested: {payload.original_url}")
    try:
        link, created = await service.create_short_url(payload, owner_id)
    except LinkError as exc:
        raise _as_http(exc) from exc

    if not created:
        response.status_code = 200
    ctx.logger.info(f"URL shortened: {link.short_code} in {ctx.get_duration():.1f}ms")
    return _link_response(link, ctx.settings.BASE_URL)


@router.get("/api/urls", response_model=list[LinkResponse], tags=["urls"])
async def my_urls(
    owner_id: str = Depends(get_owner_id),
    ctx: RequestContext = Depends(get_request_context),
    service: URLShorteningService = Depends(get_url_service),
) -> list[LinkResponse]:
    try:
        links = await service.list_links(owner_id)
    except LinkError as exc:
        raise _as_http(exc) from exc
    return [_link_response(link, ctx.settings.BASE_URL) for link in links]


@router.get("/api/urls/topic/{topic}", response_model=list[LinkResponse], tags=["urls"])
async def urls_by_topic(
    topic: str,
    owner_id: str = Depends(get_owner_id),
    ctx: RequestContext = Depends(get_request_context),
    service: URLShorteningService = Depends(get_url_service),
) -> list[LinkResponse]:
    try:
        links = await service.list_links(owner_id, topic.strip().lower())
    except LinkError as exc:
        raise _as_http(exc) from exc
    return [_link_response(link, ctx.settings.BASE_URL) for link in links]


@router.patch("/api/urls/{short_code}", response_model=LinkResponse, tags=["urls"])
async def update_url(
    short_code: str,
    changes: LinkUpdate,
    owner_id: str = Depends(get_owner_id),
    ctx: RequestContext = Depends(get_request_context),
    service: URLShorteningService = Depends(get_url_service),
) -> LinkResponse:
    try:
        link = await service.update_link(short_code, owner_id, changes)
    except LinkError as exc:
        raise _as_http(exc) from exc
    return _link_response(link, ctx.settings.BASE_URL)


@router.get("/api/analytics/url/{short_code}", response_model=AnalyticsSummary, tags=["analytics"])
async def url_analytics(
    short_code: str,
    owner_id: str = Depends(get_owner_id),
    service: URLShorteningService = Depends(get_url_service),
) -> AnalyticsSummary:
    try:
        return await service.url_analytics(short_code, owner_id)
    except LinkError as exc:
        raise _as_http(exc) from exc


@router.get("/api/analytics/topic/{topic}", response_model=AggregateSummary, tags=["analytics"])
async def topic_analytics(
    topic: str,
    owner_id: str = Depends(get_owner_id),
    service: URLShorteningService = Depends(get_url_service),
) -> AggregateSummary:
    try:
        return await service.topic_analytics(owner_id, topic)
    except LinkError as exc:
        raise _as_http(exc) from exc


@router.get("/api/analytics/overall", response_model=AggregateSummary, tags=["analytics"])
async def overall_analytics(
    owner_id: str = Depends(get_owner_id),
    service: URLShorteningService = Depends(get_url_service),
) -> AggregateSummary:
    try:
        return await service.overall_analytics(owner_id)
    except LinkError as exc:
        raise _as_http(exc) from exc


@router.get("/{short_code}", tags=["redirect"])
async def redirect_to_url(
    short_code: str,
    ctx: RequestContext = Depends(get_request_context),
    service: URLShorteningService = Depends(get_url_service),
) -> RedirectResponse:
    try:
        link = await service.resolve_redirect(
            short_code,
            client_ip=ctx.client_ip,
            user_agent=ctx.user_agent,
            referrer=ctx.referrer,
            language=ctx.language,
        )
    except LinkError as exc:
        ctx.logger.warning(f"Redirect failed for {short_code}: {exc.message}")
        raise _as_http(exc) from exc

    ctx.logger.info(f"Redirect {short_code} -> {link.original_url} in {ctx.get_duration():.1f}ms")
    return RedirectResponse(url=link.original_url, status_code=302)
