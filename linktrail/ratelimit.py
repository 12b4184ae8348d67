"""Fixed-window request limiting for link creation.

Each client address may create ``RATE_LIMIT_REQUESTS`` links per
``RATE_LIMIT_WINDOW_SECONDS``. The counter for the current window lives in
Redis (``INCR`` plus ``EXPIRE`` on first hit) so every app instance draws on
the same budget. When Redis cannot answer, the request is let through and
counted as bypassed: creation stays available while the guard lapses.
"""

import logging
import math
import time

from prometheus_client import Counter

from linktrail.cache import RedirectCache, rate_limit_key
from linktrail.exceptions import DependencyUnavailable, RateLimited

__all__ = ["FixedWindowLimiter"]

logger = logging.getLogger(__name__)

RATE_LIMIT_REJECTED_TOTAL = Counter(
    "linktrail_rate_limit_rejected_total",
    "Requests refused because the client exhausted its window",
    ["scope"],
)
RATE_LIMIT_BYPASSED_TOTAL = Counter(
    "linktrail_rate_limit_bypassed_total",
    "Requests let through unchecked because Redis was unavailable",
    ["scope"],
)


class FixedWindowLimiter:
    def __init__(self, cache: RedirectCache, limit: int, window_seconds: int, scope: str = "shorten") -> None:
        assert limit > 0 and window_seconds > 0, "limit and window must be positive"
        self._cache = cache
        self._limit = limit
        self._window = window_seconds
        self._scope = scope

    async def hit(self, client_id: str, now: float | None = None) -> int:
        """Count one request for ``client_id`` and return the window's total so far.

        Raises:
            RateLimited: the client already used its budget for this window.
        """
        now = time.time() if now is None else now
        window = int(now // self._window)
        key = rate_limit_key(self._scope, client_id, window)
        try:
            count = await self._cache.increment(key, self._window)
        except DependencyUnavailable as exc:
            RATE_LIMIT_BYPASSED_TOTAL.labels(scope=self._scope).inc()
            logger.warning(f"Rate limit check skipped for {client_id}: {exc.message}")
            return 0

        if count > self._limit:
            RATE_LIMIT_REJECTED_TOTAL.labels(scope=self._scope).inc()
            retry_after = max(1, math.ceil((window + 1) * self._window - now))
            raise RateLimited("Too many requests, please try again later.", retry_after)
        return count
