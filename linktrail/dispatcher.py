"""Fire-and-forget background work with a bounded shutdown drain.

The redirect response never waits for analytics or click counting. Those
coroutines are handed to a :class:`BackgroundDispatcher`, which:

- keeps a strong reference to every task until it finishes, so the event
  loop cannot garbage-collect work in flight;
- logs and counts every failure, never letting it reach the request path;
- on shutdown, waits up to ``SHUTDOWN_DRAIN_TIMEOUT_SECONDS`` for
  outstanding tasks and cancels whatever is still running after that.

Usage::

    dispatcher.dispatch("record_redirect", lambda: recorder.record_redirect(link_id, event))
    ...
    await dispatcher.drain()   # from the FastAPI lifespan
"""

import asyncio
import logging
from collections.abc import Callable, Coroutine
from typing import Any

from prometheus_client import Counter, Gauge

__all__ = ["BackgroundDispatcher"]

logger = logging.getLogger(__name__)

BACKGROUND_TASKS_DISPATCHED_TOTAL = Counter(
    "linktrail_background_tasks_dispatched_total",
    "Background tasks handed to the dispatcher",
    ["name"],
)
BACKGROUND_TASKS_FAILED_TOTAL = Counter(
    "linktrail_background_tasks_failed_total",
    "Background tasks that raised",
    ["name"],
)
BACKGROUND_TASKS_REJECTED_TOTAL = Counter(
    "linktrail_background_tasks_rejected_total",
    "Background tasks refused because shutdown had started",
    ["name"],
)
BACKGROUND_TASKS_IN_FLIGHT = Gauge(
    "linktrail_background_tasks_in_flight",
    "Background tasks currently running",
)


class BackgroundDispatcher:
    def __init__(self, drain_timeout: float = 10.0) -> None:
        self._drain_timeout = drain_timeout
        self._tasks: set[asyncio.Task[Any]] = set()
        self._closing = False

    @property
    def pending(self) -> int:
        return len(self._tasks)

    @property
    def closing(self) -> bool:
        return self._closing

    def dispatch(
        self,
        name: str,
        factory: Callable[[], Coroutine[Any, Any, Any]],
    ) -> asyncio.Task[Any] | None:
        """Schedule ``factory()`` without awaiting it.

        ``factory`` is only called once the dispatcher accepts the work, so a
        refused dispatch never leaves an un-awaited coroutine behind.
        """
        if self._closing:
            BACKGROUND_TASKS_REJECTED_TOTAL.labels(name=name).inc()
            logger.warning(f"Background task {name} rejected: dispatcher is draining")
            return None

        task = asyncio.create_task(self._run(name, factory), name=f"linktrail:{name}")
        self._tasks.add(task)
        BACKGROUND_TASKS_IN_FLIGHT.inc()
        task.add_done_callback(self._forget)
        BACKGROUND_TASKS_DISPATCHED_TOTAL.labels(name=name).inc()
        return task

    async def _run(self, name: str, factory: Callable[[], Coroutine[Any, Any, Any]]) -> None:
        try:
            await factory()
        except asyncio.CancelledError:
            logger.warning(f"Background task {name} cancelled before completion")
            raise
        except Exception:
            BACKGROUND_TASKS_FAILED_TOTAL.labels(name=name).inc()
            logger.exception(f"Background task {name} failed")

    def _forget(self, task: asyncio.Task[Any]) -> None:
        self._tasks.discard(task)
        BACKGROUND_TASKS_IN_FLIGHT.dec()

    async def wait_idle(self) -> None:
        """Wait for everything dispatched so far, without closing the dispatcher."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def drain(self, timeout: float | None = None) -> int:
        """Stop accepting work and wait for outstanding tasks.

        Returns:
            Number of tasks cancelled because they outlived the grace period.
        """
        self._closing = True
        timeout = self._drain_timeout if timeout is None else timeout
        if not self._tasks:
            return 0

        logger.info(f"Draining {len(self._tasks)} background task(s), timeout {timeout}s")
        _, still_running = await asyncio.wait(set(self._tasks), timeout=timeout)
        for task in still_running:
            task.cancel()
        if still_running:
            await asyncio.gather(*still_running, return_exceptions=True)
            logger.error(f"Cancelled {len(still_running)} background task(s) after drain timeout")
        return len(still_running)
