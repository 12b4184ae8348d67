"""Background sweep that deactivates expired links.

Expiry is already enforced at read time; the sweep only keeps ``is_active``
honest for listings and drops the cached snapshots of links it deactivates.
"""

import asyncio
import logging

from prometheus_client import Counter
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from linktrail.cache import RedirectCache, link_key
from linktrail.clock import utcnow
from linktrail.exceptions import DependencyUnavailable
from linktrail.store import LinkStore

__all__ = ["reap_expired", "run_reaper"]

logger = logging.getLogger(__name__)

REAPED_LINKS_TOTAL = Counter(
    "linktrail_reaped_links_total",
    "Expired links deactivated by the background sweep",
)


async def reap_expired(session_factory: async_sessionmaker[AsyncSession], cache: RedirectCache) -> int:
    async with session_factory() as session:
        codes = await LinkStore(session).deactivate_expired(utcnow())
    if not codes:
        return 0

    REAPED_LINKS_TOTAL.inc(len(codes))
    try:
        await cache.invalidate(*(link_key(code) for code in codes))
    except DependencyUnavailable as exc:
        logger.warning(f"Reaper could not invalidate {len(codes)} cached link(s): {exc.message}")
    logger.info(f"Deactivated {len(codes)} expired link(s)")
    return len(codes)


async def run_reaper(
    session_factory: async_sessionmaker[AsyncSession],
    cache: RedirectCache,
    interval_seconds: float,
) -> None:
    """Sweep forever until cancelled."""
    iteration = 0
    while True:
        iteration += 1
        try:
            await reap_expired(session_factory, cache)
        except DependencyUnavailable as exc:
            logger.warning(f"Reaper iteration {iteration} failed: {exc.message}")
        except Exception:
            logger.exception(f"Reaper iteration {iteration} failed")
        await asyncio.sleep(interval_seconds)
