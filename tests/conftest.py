"""Shared pytest fixtures for API, database, and Redis integration tests.

The suite runs against an on-disk SQLite database (aiosqlite) and an
in-process Redis (fakeredis), so no external services are needed.
"""

import os
import tempfile
from collections.abc import AsyncGenerator, Callable, Awaitable

_TEST_DB = os.path.join(tempfile.gettempdir(), f"linktrail-test-{os.getpid()}.db")
os.environ.setdefault("DATABASE_URL", f"sqlite+aiosqlite:///{_TEST_DB}")
os.environ.setdefault("APP_ENV", "test")
os.environ.setdefault("REAPER_ENABLED", "false")

import fakeredis  # noqa: E402
import pytest  # noqa: E402
import pytest_asyncio  # noqa: E402
from httpx import ASGITransport, AsyncClient  # noqa: E402
from sqlalchemy.ext.asyncio import AsyncSession  # noqa: E402

from linktrail.database import Base, async_session, engine  # noqa: E402
from linktrail.dependencies import ServiceManager, _service_manager  # noqa: E402
from linktrail.main import app  # noqa: E402

MOBILE_UA = (
    "Mozilla/5.0 (iPhone; CPU iPhone OS 17_0 like Mac OS X) AppleWebKit/605.1.15 "
    "(KHTML, like Gecko) Version/17.0 Mobile/15E148 Safari/604.1"
)
DESKTOP_UA = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
)
TABLET_UA = (
    "Mozilla/5.0 (iPad; CPU OS 16_6 like Mac OS X) AppleWebKit/605.1.15 "
    "(KHTML, like Gecko) Version/16.6 Mobile/15E148 Safari/604.1"
)


@pytest_asyncio.fixture(scope="function")
async def db_session() -> AsyncGenerator[AsyncSession, None]:
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    async with async_session() as session:
        yield session

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)


@pytest_asyncio.fixture(scope="function")
async def redis_client() -> AsyncGenerator[fakeredis.FakeAsyncRedis, None]:
    client = fakeredis.FakeAsyncRedis(decode_responses=True)
    yield client
    await client.flushall()
    await client.aclose()


@pytest_asyncio.fixture(scope="function")
async def services(
    db_session: AsyncSession, redis_client: fakeredis.FakeAsyncRedis
) -> AsyncGenerator[ServiceManager, None]:
    _service_manager._initialized = False
    await _service_manager.initialize(cache_writer=redis_client, session_factory=async_session)
    yield _service_manager
    await _service_manager.cleanup()


@pytest_asyncio.fixture(scope="function")
async def client(services: ServiceManager) -> AsyncGenerator[AsyncClient, None]:
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


@pytest.fixture
def settle(services: ServiceManager) -> Callable[[], Awaitable[None]]:
    """Wait until every dispatched background task has finished."""
    return services.dispatcher.wait_idle


@pytest.fixture
def owner() -> dict[str, str]:
    return {"X-User-Id": "alice"}
