import asyncio
import time
import logging
from datetime import datetime
from typing import Optional

from config import settings
from errors import FetchCancelled, PersistenceError, QuotaExceededError
from models import RateLimitState

logger = logging.getLogger(__name__)


async def wait_or_cancel(seconds: float, cancel: Optional[asyncio.Event] = None):
    """Sleep, returning early with FetchCancelled if the cancel event is set"""
    if cancel is None:
        if seconds > 0:
            await asyncio.sleep(seconds)
        return
    if cancel.is_set():
        raise FetchCancelled("Fetch cancelled")
    if seconds <= 0:
        return
    try:
        await asyncio.wait_for(cancel.wait(), timeout=seconds)
    except asyncio.TimeoutError:
        return
    raise FetchCancelled("Fetch cancelled")


class RateLimiter:
    """
    Global pacing and daily quota for requests to the listing source.

    Pacing is shared by every caller regardless of which proxy the request
    goes through. Every attempt is counted, retries included.
    """

    def __init__(self, db=None, request_interval_ms: Optional[int] = None, daily_limit: Optional[int] = None):
        self.db = db
        self.request_interval_ms = settings.REQUEST_INTERVAL_MS if request_interval_ms is None else request_interval_ms
        self.daily_limit = settings.DAILY_REQUEST_LIMIT if daily_limit is None else daily_limit
        self.state = RateLimitState()
        self._lock = asyncio.Lock()
        self._last_request_monotonic: Optional[float] = None

    async def _check_quota(self):
        today = datetime.utcnow().date()
        if today != self.state.window_start:
            finished_start = self.state.window_start
            finished_count = self.state.request_count_today
            self.state.window_start = today
            self.state.request_count_today = 0
            logger.info(f"[RATE] New request window {today}, previous window used {finished_count} requests")
            if self.db is not None and finished_count:
                try:
                    await self.db.record_rate_limit_window(
                        datetime.combine(finished_start, datetime.min.time()), finished_count
                    )
                except PersistenceError as e:
                    logger.error(f"Failed to record rate limit window: {e}")

        if self.state.request_count_today >= self.daily_limit:
            raise QuotaExceededError(self.daily_limit)

    async def acquire(self, cancel: Optional[asyncio.Event] = None):
        """Wait for the next request slot and count it. Raises QuotaExceededError without waiting."""
        await self._check_quota()
        async with self._lock:
            # Another caller may have used the last request while we waited for the lock
            await self._check_quota()

            if self._last_request_monotonic is not None:
                elapsed_ms = (time.monotonic() - self._last_request_monotonic) * 1000
                wait_ms = self.request_interval_ms - elapsed_ms
                if wait_ms > 0:
                    await wait_or_cancel(wait_ms / 1000, cancel)

            self._last_request_monotonic = time.monotonic()
            self.state.last_request_time = datetime.utcnow()
            self.state.request_count_today += 1

    def get_state(self) -> RateLimitState:
        return self.state.model_copy()
