"""Analytics Recorder: atomic per-redirect counters and a bounded event log.

Recording Flow
==============
::
    record_redirect(link_id, event)
           │
           ▼
    ┌──────────────────────────────┐
    │ BEGIN                         │
    │ upsert analytics row          │  redirect_count + 1, <device>_count + 1
    │ upsert 3 rollup rows          │  browser / country / day  count + 1
    │ insert redirect_events row    │
    │ trim events beyond retention  │
    │ COMMIT                        │
    └──────────────┬───────────────┘
        failure?   │
    ┌──────────────┴───────┐
    │ YES                   │ NO
    ▼                       ▼
  rollback, back off,     done
  retry (bounded), then
  log + count as dropped

Key Behaviours
===============
- Every counter moves with ``column + 1`` inside the database, never with a
  read-modify-write in process memory, so concurrent redirects for the same
  link interleave safely.
- All sub-updates share one transaction: either the event and every counter
  land, or none do. A dropped event never leaves partial increments.
- Only the newest ``ANALYTICS_EVENT_RETENTION`` raw events per link are kept.
  Rollups are permanent.
- The analytics row is created lazily by the first redirect (upsert).
"""

import asyncio
import logging
from collections.abc import Sequence

from prometheus_client import Counter
from sqlalchemy import delete, func, select
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import DBAPIError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from linktrail.clock import day_bucket
from linktrail.config import Settings, get_settings
from linktrail.enums import DeviceType, RollupDimension
from linktrail.models import Analytics, AnalyticsRollup, Link, RedirectEvent
from linktrail.schemas import (
    AggregateSummary,
    AnalyticsSummary,
    DeviceCounts,
    RecentEvent,
    RedirectEventData,
)

__all__ = ["AnalyticsRecorder", "AnalyticsReader", "DEVICE_COLUMNS"]

logger = logging.getLogger(__name__)

RECENT_EVENTS_LIMIT = 50

DEVICE_COLUMNS = {
    DeviceType.DESKTOP: Analytics.desktop_count,
    DeviceType.MOBILE: Analytics.mobile_count,
    DeviceType.TABLET: Analytics.tablet_count,
    DeviceType.OTHER: Analytics.other_count,
}

ANALYTICS_EVENTS_RECORDED_TOTAL = Counter(
    "linktrail_analytics_events_recorded_total",
    "Redirect events committed to the analytics store",
)
ANALYTICS_RETRIES_TOTAL = Counter(
    "linktrail_analytics_retries_total",
    "Analytics write attempts that failed and were retried",
)
ANALYTICS_EVENTS_DROPPED_TOTAL = Counter(
    "linktrail_analytics_events_dropped_total",
    "Redirect events dropped after exhausting retries",
)

_UPSERT_DIALECTS = {
    "postgresql": postgresql.insert,
    "sqlite": sqlite.insert,
}


def _upsert_for(session: AsyncSession):
    dialect = session.bind.dialect.name
    try:
        return _UPSERT_DIALECTS[dialect]
    except KeyError:
        raise NotImplementedError(f"Analytics upserts are not supported on {dialect}") from None


class AnalyticsRecorder:
    """Writes redirect events; each call runs in its own session and transaction."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        settings: Settings | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._settings = settings or get_settings()

    async def record_redirect(self, link_id: int, event: RedirectEventData) -> bool:
        """Record one redirect for ``link_id``.

        Returns:
            True once committed, False if the event was dropped after
            ``ANALYTICS_MAX_RETRIES`` failed attempts.
        """
        attempts = self._settings.ANALYTICS_MAX_RETRIES + 1
        delay = self._settings.ANALYTICS_RETRY_BASE_DELAY_SECONDS
        for attempt in range(1, attempts + 1):
            try:
                async with self._session_factory() as session:
                    async with session.begin():
                        await self._apply(session, link_id, event)
                ANALYTICS_EVENTS_RECORDED_TOTAL.inc()
                return True
            except (DBAPIError, OSError, asyncio.TimeoutError) as exc:
                if attempt == attempts:
                    ANALYTICS_EVENTS_DROPPED_TOTAL.inc()
                    logger.error(
                        f"Dropped analytics event for link {link_id} after {attempts} attempts: {exc!r}"
                    )
                    return False
                ANALYTICS_RETRIES_TOTAL.inc()
                logger.warning(f"Analytics write for link {link_id} failed (attempt {attempt}): {exc!r}")
                await asyncio.sleep(delay)
                delay *= 2
        return False

    async def _apply(self, session: AsyncSession, link_id: int, event: RedirectEventData) -> None:
        upsert = _upsert_for(session)
        device_column = DEVICE_COLUMNS[event.device]

        counters = (
            upsert(Analytics)
            .values(
                short_url_id=link_id,
                redirect_count=1,
                **{device_column.key: 1},
                last_accessed=event.timestamp,
            )
        )
        counters = counters.on_conflict_do_update(
            index_elements=[Analytics.short_url_id],
            set_={
                Analytics.redirect_count.key: Analytics.redirect_count + 1,
                device_column.key: device_column + 1,
                Analytics.last_accessed.key: event.timestamp,
            },
        )
        await session.execute(counters)

        rollups = upsert(AnalyticsRollup).values(
            [
                {"short_url_id": link_id, "dimension": RollupDimension.BROWSER.value, "bucket": event.browser, "count": 1},
                {"short_url_id": link_id, "dimension": RollupDimension.COUNTRY.value, "bucket": event.country, "count": 1},
                {
                    "short_url_id": link_id,
                    "dimension": RollupDimension.DAY.value,
                    "bucket": day_bucket(event.timestamp),
                    "count": 1,
                },
            ]
        )
        rollups = rollups.on_conflict_do_update(
            index_elements=[AnalyticsRollup.short_url_id, AnalyticsRollup.dimension, AnalyticsRollup.bucket],
            set_={"count": AnalyticsRollup.count + 1},
        )
        await session.execute(rollups)

        session.add(
            RedirectEvent(
                short_url_id=link_id,
                **event.model_dump(),
            )
        )
        await session.flush()

        newest = (
            select(RedirectEvent.id)
            .where(RedirectEvent.short_url_id == link_id)
            .order_by(RedirectEvent.id.desc())
            .limit(self._settings.ANALYTICS_EVENT_RETENTION)
        )
        await session.execute(
            delete(RedirectEvent).where(
                RedirectEvent.short_url_id == link_id,
                RedirectEvent.id.not_in(newest),
            )
        )


class AnalyticsReader:
    """Read views over the analytics tables."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def _rollups(self, link_ids: Sequence[int]) -> dict[str, dict[str, int]]:
        grouped: dict[str, dict[str, int]] = {dimension.value: {} for dimension in RollupDimension}
        if not link_ids:
            return grouped
        statement = (
            select(AnalyticsRollup.dimension, AnalyticsRollup.bucket, func.sum(AnalyticsRollup.count))
            .where(AnalyticsRollup.short_url_id.in_(link_ids))
            .group_by(AnalyticsRollup.dimension, AnalyticsRollup.bucket)
        )
        for dimension, bucket, count in (await self._session.execute(statement)).all():
            grouped.setdefault(dimension, {})[bucket] = int(count)
        return grouped

    async def get_summary(self, link: Link) -> AnalyticsSummary:
        record = (
            await self._session.execute(select(Analytics).where(Analytics.short_url_id == link.id))
        ).scalar_one_or_none()
        if record is None:
            return AnalyticsSummary(short_url_id=link.id, short_code=link.short_code)

        rollups = await self._rollups([link.id])
        events = (
            await self._session.execute(
                select(RedirectEvent)
                .where(RedirectEvent.short_url_id == link.id)
                .order_by(RedirectEvent.id.desc())
                .limit(RECENT_EVENTS_LIMIT)
            )
        ).scalars().all()
        return AnalyticsSummary(
            short_url_id=link.id,
            short_code=link.short_code,
            redirect_count=record.redirect_count,
            last_accessed=record.last_accessed,
            device_stats=DeviceCounts(
                desktop=record.desktop_count,
                mobile=record.mobile_count,
                tablet=record.tablet_count,
                other=record.other_count,
            ),
            browser_stats=rollups[RollupDimension.BROWSER],
            country_stats=rollups[RollupDimension.COUNTRY],
            daily_stats=dict(sorted(rollups[RollupDimension.DAY].items())),
            recent_redirects=[RecentEvent.model_validate(event) for event in events],
        )

    async def summarize(self, link_ids: Sequence[int]) -> AggregateSummary:
        if not link_ids:
            return AggregateSummary()
        totals = (
            await self._session.execute(
                select(
                    func.coalesce(func.sum(Analytics.redirect_count), 0),
                    func.coalesce(func.sum(Analytics.desktop_count), 0),
                    func.coalesce(func.sum(Analytics.mobile_count), 0),
                    func.coalesce(func.sum(Analytics.tablet_count), 0),
                    func.coalesce(func.sum(Analytics.other_count), 0),
                ).where(Analytics.short_url_id.in_(link_ids))
            )
        ).one()
        rollups = await self._rollups(link_ids)
        return AggregateSummary(
            total_urls=len(link_ids),
            total_clicks=int(totals[0]),
            device_stats=DeviceCounts(
                desktop=int(totals[1]),
                mobile=int(totals[2]),
                tablet=int(totals[3]),
                other=int(totals[4]),
            ),
            browser_stats=rollups[RollupDimension.BROWSER],
            country_stats=rollups[RollupDimension.COUNTRY],
            daily_stats=dict(sorted(rollups[RollupDimension.DAY].items())),
        )
