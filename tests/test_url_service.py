"""Unit tests for the redirect orchestrator with mocked cache and store.

The real cache and store are replaced with ``AsyncMock`` objects, so these
tests pin down the orchestration order: cache first, store on a miss or a
cache failure, the resolvability check, and dispatch only for 302s.
"""

import asyncio
import datetime
from typing import Any
from unittest.mock import AsyncMock, MagicMock, Mock

import pytest
from sqlalchemy.ext.asyncio import AsyncSession

from linktrail.config import Settings, get_settings
from linktrail.enums import LookupSource
from linktrail.exceptions import AliasTaken, DependencyUnavailable, DuplicateKey, Expired, Inactive, NotFound
from linktrail.schemas import CachedLinkPayload, LinkCreate
from linktrail.url_service import URLShorteningService

# ============================================================================
# TEST FIXTURES AND UTILITIES
# ============================================================================


def make_snapshot(**overrides: Any) -> CachedLinkPayload:
    now = datetime.datetime.now(datetime.timezone.utc)
    fields: dict[str, Any] = {
        "id": 1,
        "short_code": "promo1",
        "custom_alias": "promo1",
        "original_url": "https://example.com",
        "topic": "uncategorized",
        "owner_id": "alice",
        "clicks": 0,
        "is_active": True,
        "expires_at": None,
        "created_at": now,
        "updated_at": now,
    }
    fields.update(overrides)
    return CachedLinkPayload(**fields)


@pytest.fixture
def settings() -> Settings:
    return get_settings()


@pytest.fixture
def mock_logger() -> MagicMock:
    return MagicMock()


@pytest.fixture
def mock_dispatcher() -> MagicMock:
    return MagicMock()


@pytest.fixture
def url_service(settings: Settings, mock_logger: MagicMock, mock_dispatcher: MagicMock) -> URLShorteningService:
    ctx = Mock()
    ctx.database = AsyncMock(spec=AsyncSession)
    ctx.cache_writer = AsyncMock()
    ctx.cache_reader = ctx.cache_writer
    ctx.logger = mock_logger
    ctx.settings = settings
    ctx.session_factory = MagicMock()
    ctx.dispatcher = mock_dispatcher
    ctx.recorder = AsyncMock()

    service = URLShorteningService(ctx)
    service._store = AsyncMock()
    service._cache = AsyncMock()
    return service


# ============================================================================
# LOOKUP
# ============================================================================


@pytest.mark.asyncio
async def test_cache_hit_skips_store(url_service: URLShorteningService) -> None:
    snapshot = make_snapshot()
    url_service._cache.get_link.return_value = snapshot

    found, source = await url_service.lookup_link("promo1")

    assert found == snapshot
    assert source is LookupSource.CACHE
    url_service._store.find_by_code.assert_not_awaited()


@pytest.mark.asyncio
async def test_cache_miss_reads_store_and_populates(url_service: URLShorteningService) -> None:
    snapshot = make_snapshot()
    url_service._cache.get_link.return_value = None
    url_service._store.find_by_code.return_value = snapshot

    found, source = await url_service.lookup_link("promo1")

    assert source is LookupSource.STORE
    assert found.short_code == "promo1"
    url_service._cache.set_link.assert_awaited_once()
    cached, ttl = url_service._cache.set_link.await_args.args
    assert cached.original_url == "https://example.com"
    assert ttl == url_service._settings.LINK_CACHE_TTL_SECONDS


@pytest.mark.asyncio
async def test_cache_failure_degrades_to_store(
    url_service: URLShorteningService, mock_logger: MagicMock
) -> None:
    url_service._cache.get_link.side_effect = DependencyUnavailable("cache", "timeout")
    url_service._cache.set_link.side_effect = DependencyUnavailable("cache", "timeout")
    url_service._store.find_by_code.return_value = make_snapshot()

    found, source = await url_service.lookup_link("promo1")

    assert source is LookupSource.STORE
    assert found.short_code == "promo1"
    assert mock_logger.warning.called


@pytest.mark.asyncio
async def test_store_failure_is_unavailable(url_service: URLShorteningService) -> None:
    url_service._cache.get_link.return_value = None
    url_service._store.find_by_code.side_effect = DependencyUnavailable("store", "timeout")

    with pytest.raises(DependencyUnavailable) as excinfo:
        await url_service.resolve_redirect("promo1")

    assert excinfo.value.status_code == 503
    url_service._dispatcher.dispatch.assert_not_called()


# ============================================================================
# REDIRECT
# ============================================================================


@pytest.mark.asyncio
async def test_resolve_dispatches_tracking(url_service: URLShorteningService, mock_dispatcher: MagicMock) -> None:
    url_service._cache.get_link.return_value = make_snapshot()

    link = await url_service.resolve_redirect("promo1", client_ip="203.0.113.9", user_agent="curl/8.0")

    assert link.original_url == "https://example.com"
    names = [call.args[0] for call in mock_dispatcher.dispatch.call_args_list]
    assert names == ["increment_clicks", "record_redirect"]


@pytest.mark.asyncio
async def test_dispatched_work_runs_through_recorder(
    url_service: URLShorteningService, mock_dispatcher: MagicMock
) -> None:
    url_service._cache.get_link.return_value = make_snapshot(id=42)

    await url_service.resolve_redirect("promo1", client_ip="127.0.0.1", user_agent=None)

    factories = {call.args[0]: call.args[1] for call in mock_dispatcher.dispatch.call_args_list}
    await factories["record_redirect"]()
    link_id, event = url_service._recorder.record_redirect.await_args.args
    assert link_id == 42
    assert event.ip_address == "127.0.0.1"


@pytest.mark.asyncio
async def test_expired_snapshot_is_gone(url_service: URLShorteningService, mock_dispatcher: MagicMock) -> None:
    past = datetime.datetime.now(datetime.timezone.utc) - datetime.timedelta(minutes=1)
    url_service._cache.get_link.return_value = make_snapshot(expires_at=past)

    with pytest.raises(Expired) as excinfo:
        await url_service.resolve_redirect("promo1")

    assert excinfo.value.status_code == 410
    mock_dispatcher.dispatch.assert_not_called()


@pytest.mark.asyncio
async def test_inactive_snapshot_is_gone(url_service: URLShorteningService, mock_dispatcher: MagicMock) -> None:
    url_service._cache.get_link.return_value = make_snapshot(is_active=False)

    with pytest.raises(Inactive):
        await url_service.resolve_redirect("promo1")
    mock_dispatcher.dispatch.assert_not_called()


@pytest.mark.asyncio
async def test_unknown_code(url_service: URLShorteningService, mock_dispatcher: MagicMock) -> None:
    url_service._cache.get_link.return_value = None
    url_service._store.find_by_code.side_effect = NotFound("Short URL 'nope' not found")

    with pytest.raises(NotFound):
        await url_service.resolve_redirect("nope")
    url_service._cache.set_link.assert_not_awaited()
    mock_dispatcher.dispatch.assert_not_called()


@pytest.mark.asyncio
async def test_concurrent_resolves_each_dispatch(
    url_service: URLShorteningService, mock_dispatcher: MagicMock
) -> None:
    url_service._cache.get_link.return_value = make_snapshot()

    await asyncio.gather(*(url_service.resolve_redirect("promo1") for _ in range(20)))

    assert mock_dispatcher.dispatch.call_count == 40


# ============================================================================
# CREATION
# ============================================================================


@pytest.mark.asyncio
async def test_alias_precheck_rejects_taken_alias(url_service: URLShorteningService) -> None:
    url_service._store.code_exists.return_value = True

    with pytest.raises(AliasTaken):
        await url_service.create_short_url(
            LinkCreate(original_url="https://example.com", custom_alias="promo1"), "alice"
        )
    url_service._store.create_if_absent.assert_not_awaited()


@pytest.mark.asyncio
async def test_create_invalidates_owner_keys(url_service: URLShorteningService) -> None:
    url_service._store.code_exists.return_value = False
    url_service._store.create_if_absent.return_value = (make_snapshot(topic="sales"), True)

    _, created = await url_service.create_short_url(
        LinkCreate(original_url="https://example.com", custom_alias="promo1", topic="sales"), "alice"
    )

    assert created is True
    invalidated = set(url_service._cache.invalidate.await_args.args)
    assert {"urls:owner:alice", "urls:owner:alice:topic:sales", "analytics:overall:alice"} <= invalidated


@pytest.mark.asyncio
async def test_generated_code_collision_retries_once(url_service: URLShorteningService) -> None:
    url_service._store.code_exists.return_value = False
    url_service._store.create_if_absent.side_effect = [
        DuplicateKey("Short code already in use"),
        (make_snapshot(custom_alias=None), True),
    ]

    _, created = await url_service.create_short_url(LinkCreate(original_url="https://example.com"), "alice")

    assert created is True
    assert url_service._store.create_if_absent.await_count == 2
    first, second = (call.kwargs["short_code"] for call in url_service._store.create_if_absent.await_args_list)
    assert first != second


@pytest.mark.asyncio
async def test_generated_code_collision_twice_is_conflict(url_service: URLShorteningService) -> None:
    url_service._store.code_exists.return_value = False
    url_service._store.create_if_absent.side_effect = DuplicateKey("Short code already in use")

    with pytest.raises(DuplicateKey):
        await url_service.create_short_url(LinkCreate(original_url="https://example.com"), "alice")
    assert url_service._store.create_if_absent.await_count == 2


@pytest.mark.asyncio
async def test_alias_insert_race_is_not_retried(url_service: URLShorteningService) -> None:
    url_service._store.code_exists.return_value = False
    url_service._store.create_if_absent.side_effect = AliasTaken("Custom alias 'promo1' is already taken")

    with pytest.raises(AliasTaken):
        await url_service.create_short_url(
            LinkCreate(original_url="https://example.com", custom_alias="promo1"), "alice"
        )
    url_service._store.create_if_absent.assert_awaited_once()
