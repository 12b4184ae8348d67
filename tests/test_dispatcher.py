"""Background dispatcher tests."""

import asyncio
import logging

import pytest

from linktrail.dispatcher import BackgroundDispatcher


@pytest.mark.asyncio
async def test_dispatch_does_not_wait_for_task() -> None:
    dispatcher = BackgroundDispatcher()
    release = asyncio.Event()
    done = []

    async def work() -> None:
        await release.wait()
        done.append(True)

    task = dispatcher.dispatch("work", work)
    assert task is not None
    assert dispatcher.pending == 1
    assert done == []

    release.set()
    await dispatcher.wait_idle()
    assert done == [True]
    assert dispatcher.pending == 0


@pytest.mark.asyncio
async def test_failure_is_logged_not_raised(caplog: pytest.LogCaptureFixture) -> None:
    dispatcher = BackgroundDispatcher()

    async def boom() -> None:
        raise RuntimeError("analytics store down")

    with caplog.at_level(logging.ERROR, logger="linktrail.dispatcher"):
        task = dispatcher.dispatch("boom", boom)
        await dispatcher.wait_idle()

    assert task is not None and task.exception() is None
    assert "Background task boom failed" in caplog.text


@pytest.mark.asyncio
async def test_drain_waits_for_outstanding_tasks() -> None:
    dispatcher = BackgroundDispatcher(drain_timeout=5)
    done = []

    async def work() -> None:
        await asyncio.sleep(0.05)
        done.append(True)

    for _ in range(3):
        dispatcher.dispatch("work", work)

    cancelled = await dispatcher.drain()
    assert cancelled == 0
    assert done == [True, True, True]


@pytest.mark.asyncio
async def test_drain_cancels_after_timeout() -> None:
    dispatcher = BackgroundDispatcher()

    async def forever() -> None:
        await asyncio.sleep(3600)

    task = dispatcher.dispatch("forever", forever)
    cancelled = await dispatcher.drain(timeout=0.05)
    assert cancelled == 1
    assert task is not None and task.cancelled()
    assert dispatcher.pending == 0


@pytest.mark.asyncio
async def test_dispatch_rejected_once_draining() -> None:
    dispatcher = BackgroundDispatcher()
    await dispatcher.drain()
    calls = []

    async def work() -> None:
        calls.append(True)

    assert dispatcher.closing
    assert dispatcher.dispatch("late", work) is None
    await asyncio.sleep(0)
    assert calls == []
