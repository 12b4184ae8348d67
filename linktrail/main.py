"""FastAPI application entry point for linktrail.

Application Lifecycle Diagram
===========================
::
    ┌─────────────┐
    │  uvicorn    │
    │  startup    │
    └──────┬──────┘
           ▼
    ┌──────────────┐
    │ lifespan()    │
    │ startup:      │
    │ init_db()     │
    │ services      │
    │ reaper task   │
    └──────┬───────┘
           ▼
    ┌─────────────┐
    │ Serve HTTP  │
    │ requests    │
    └──────┬──────┘
           ▼
    ┌──────────────────┐
    │ lifespan()        │
    │ shutdown:         │
    │ stop reaper       │
    │ drain background  │
    │ close Redis       │
    │ close_db()        │
    └──────────────────┘

How to Use
===========
**Run with uvicorn**::
    uvicorn linktrail.main:app --host 0.0.0.0 --port 8080

**Shorten a URL**::
    curl -X POST http://localhost:8080/api/shorten \
         -H "Content-Type: application/json" -H "X-User-Id: alice" \
         -d '{"original_url": "https://example.com", "custom_alias": "promo1"}'

Key Behaviours
===============
- Background analytics and click updates are drained (bounded by
  ``SHUTDOWN_DRAIN_TIMEOUT_SECONDS``) before the database engine is disposed.
- Prometheus metrics are exposed at ``/metrics``.
- Request body and query validation failures answer 400, the status the
  service layer uses for ``InvalidInput``.
"""

__all__ = ["app"]

import asyncio
import contextlib
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from prometheus_fastapi_instrumentator import Instrumentator

from linktrail import __version__
from linktrail.cache import RedirectCache
from linktrail.config import get_settings
from linktrail.database import close_db, init_db
from linktrail.dependencies import _service_manager
from linktrail.exceptions import InvalidInput
from linktrail.reaper import run_reaper
from linktrail.routes import router

settings = get_settings()


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    # Startup
    await init_db()
    await _service_manager.initialize()
    reaper: asyncio.Task[None] | None = None
    if settings.REAPER_ENABLED:
        reaper = asyncio.create_task(
            run_reaper(
                _service_manager.session_factory,
                RedirectCache(_service_manager.cache_writer, _service_manager.cache_reader),
                settings.REAPER_INTERVAL_SECONDS,
            ),
            name="linktrail:reaper",
        )
    yield
    # Shutdown
    if reaper is not None:
        reaper.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await reaper
    await _service_manager.cleanup()
    await close_db()


app = FastAPI(
    title=settings.APP_NAME,
    version=__version__,
    description="URL shortener with cache-aside redirects and per-redirect analytics",
    lifespan=lifespan,
)


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    return JSONResponse(
        status_code=InvalidInput.status_code,
        content={"detail": jsonable_encoder(exc.errors())},
    )


app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

Instrumentator(
    should_group_status_codes=True,
    should_ignore_untemplated=False,
    should_respect_env_var=False,
).instrument(app).expose(app)

app.include_router(router)
