"""Analytics recorder tests against the SQLite test database."""

import asyncio
import datetime

import pytest
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from linktrail.analytics import AnalyticsReader, AnalyticsRecorder
from linktrail.config import get_settings
from linktrail.database import async_session
from linktrail.enums import DeviceType, RollupDimension
from linktrail.models import Analytics, AnalyticsRollup, RedirectEvent
from linktrail.schemas import RedirectEventData
from linktrail.store import LinkStore


async def _create_link(session: AsyncSession, code: str = "stats01") -> int:
    link, _ = await LinkStore(session).create_if_absent(
        original_url=f"https://{code}.example.com", owner_id="alice", short_code=code
    )
    return link.id


def _event(device: DeviceType = DeviceType.DESKTOP, browser: str = "Chrome", country: str = "US") -> RedirectEventData:
    return RedirectEventData(
        timestamp=datetime.datetime(2024, 5, 1, 12, 0, tzinfo=datetime.timezone.utc),
        browser=browser,
        country=country,
        device=device,
    )


def _recorder(**overrides: object) -> AnalyticsRecorder:
    settings = get_settings().model_copy(update={"ANALYTICS_RETRY_BASE_DELAY_SECONDS": 0, **overrides})
    return AnalyticsRecorder(async_session, settings)


@pytest.mark.asyncio
async def test_counters_agree_under_concurrency(db_session: AsyncSession) -> None:
    link_id = await _create_link(db_session)
    recorder = _recorder()
    devices = [DeviceType.DESKTOP] * 4 + [DeviceType.MOBILE] * 3 + [DeviceType.TABLET] * 2 + [DeviceType.OTHER]

    results = await asyncio.gather(*(recorder.record_redirect(link_id, _event(device)) for device in devices))
    assert all(results)

    row = (
        await db_session.execute(
            select(
                Analytics.redirect_count,
                Analytics.desktop_count,
                Analytics.mobile_count,
                Analytics.tablet_count,
                Analytics.other_count,
            ).where(Analytics.short_url_id == link_id)
        )
    ).one()
    assert tuple(row) == (10, 4, 3, 2, 1)
    assert row.redirect_count == sum(row[1:])

    rollups = dict(
        (
            await db_session.execute(
                select(AnalyticsRollup.dimension, AnalyticsRollup.count).where(
                    AnalyticsRollup.short_url_id == link_id
                )
            )
        ).all()
    )
    assert rollups == {
        RollupDimension.BROWSER.value: 10,
        RollupDimension.COUNTRY.value: 10,
        RollupDimension.DAY.value: 10,
    }


@pytest.mark.asyncio
async def test_event_log_is_trimmed_to_retention(db_session: AsyncSession) -> None:
    link_id = await _create_link(db_session)
    recorder = _recorder(ANALYTICS_EVENT_RETENTION=3)

    for browser in ["A", "B", "C", "D", "E"]:
        assert await recorder.record_redirect(link_id, _event(browser=browser))

    kept = (
        await db_session.execute(
            select(RedirectEvent.browser)
            .where(RedirectEvent.short_url_id == link_id)
            .order_by(RedirectEvent.id)
        )
    ).scalars().all()
    assert kept == ["C", "D", "E"]

    total = (
        await db_session.execute(select(Analytics.redirect_count).where(Analytics.short_url_id == link_id))
    ).scalar_one()
    assert total == 5


@pytest.mark.asyncio
async def test_recorder_drops_after_retries() -> None:
    attempts = []

    def broken_factory() -> AsyncSession:
        attempts.append(1)
        raise OSError("analytics store unreachable")

    settings = get_settings().model_copy(
        update={"ANALYTICS_MAX_RETRIES": 2, "ANALYTICS_RETRY_BASE_DELAY_SECONDS": 0}
    )
    recorder = AnalyticsRecorder(broken_factory, settings)  # type: ignore[arg-type]

    assert await recorder.record_redirect(1, _event()) is False
    assert len(attempts) == 3


@pytest.mark.asyncio
async def test_summary_reads_rollups(db_session: AsyncSession) -> None:
    link_id = await _create_link(db_session)
    recorder = _recorder()
    await recorder.record_redirect(link_id, _event(DeviceType.MOBILE, browser="Mobile Safari", country="DE"))
    await recorder.record_redirect(link_id, _event(DeviceType.DESKTOP, browser="Chrome", country="DE"))

    link = await LinkStore(db_session).find_by_code("stats01")
    summary = await AnalyticsReader(db_session).get_summary(link)

    assert summary.redirect_count == 2
    assert summary.device_stats.mobile == 1
    assert summary.device_stats.desktop == 1
    assert summary.browser_stats == {"Mobile Safari": 1, "Chrome": 1}
    assert summary.country_stats == {"DE": 2}
    assert summary.daily_stats == {"2024-05-01": 2}
    assert len(summary.recent_redirects) == 2
    assert {event.device for event in summary.recent_redirects} == {DeviceType.MOBILE, DeviceType.DESKTOP}

    events = (
        await db_session.execute(select(func.count()).select_from(RedirectEvent))
    ).scalar_one()
    assert events == 2


@pytest.mark.asyncio
async def test_summarize_without_links(db_session: AsyncSession) -> None:
    summary = await AnalyticsReader(db_session).summarize([])
    assert summary.total_urls == 0
    assert summary.total_clicks == 0
