import asyncio
import croniter
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, Optional, Set
from zoneinfo import ZoneInfo
import logging

from config import settings
from errors import PersistenceError
from gateway import PersistenceGateway
from jobs import JobRunner
from maintenance import MaintenanceJobs
from models import CleanupReport, HealthCheckReport, JobKind
from proxy_manager import ProxyPool
from rate_limiter import RateLimiter
from session_log import SessionLog

logger = logging.getLogger(__name__)


class CronTicker:
    """
    Fires a coroutine callback on a cron cadence.

    Each firing runs the callback as its own task so a slow callback never
    delays the next tick. stop() cancels the timer, not callbacks in flight.
    """

    def __init__(self, name: str, expression: str, callback: Callable[[], Awaitable[Any]], timezone: Optional[str] = None):
        if not croniter.croniter.is_valid(expression):
            raise ValueError(f"Invalid cron expression for {name}: {expression}")
        self.name = name
        self.expression = expression
        self.callback = callback
        self.tz = ZoneInfo(timezone or settings.SCHEDULER_TIMEZONE)
        self._task: Optional[asyncio.Task] = None
        self._next_fire_time: Optional[datetime] = None
        self._callbacks: Set[asyncio.Task] = set()

    def compute_next(self, after: Optional[datetime] = None) -> datetime:
        base = after or datetime.now(self.tz)
        return croniter.croniter(self.expression, base).get_next(datetime)

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def next_fire_time(self) -> Optional[datetime]:
        if not self.running:
            return None
        return self._next_fire_time or self.compute_next()

    def start(self) -> "CronTicker":
        if not self.running:
            self._task = asyncio.create_task(self._loop(), name=f"cron-{self.name}")
        return self

    def stop(self):
        if self._task is not None:
            self._task.cancel()
            self._task = None
        self._next_fire_time = None

    async def _loop(self):
        last_fire: Optional[datetime] = None
        while True:
            now = datetime.now(self.tz)
            # Sleep can wake a little early; never compute the same slot twice
            base = now if last_fire is None or now > last_fire else last_fire
            fire_at = self.compute_next(base)
            self._next_fire_time = fire_at

            await asyncio.sleep(max(0.0, (fire_at - datetime.now(self.tz)).total_seconds()))
            last_fire = fire_at
            self._spawn()

    def _spawn(self):
        task = asyncio.create_task(self._invoke(), name=f"cron-{self.name}-run")
        self._callbacks.add(task)
        task.add_done_callback(self._callbacks.discard)

    async def _invoke(self):
        logger.debug(f"[CRON] {self.name} fired")
        try:
            await self.callback()
        except Exception as e:
            logger.error(f"[CRON] {self.name} run failed: {e}")


class Scheduler:
    def __init__(
        self,
        runner: JobRunner,
        maintenance: MaintenanceJobs,
        pool: ProxyPool,
        limiter: RateLimiter,
        session_log: SessionLog,
        db: PersistenceGateway,
        cadences: Optional[Dict[JobKind, str]] = None,
        timezone: Optional[str] = None,
        warmup_delay: Optional[float] = None,
    ):
        self.runner = runner
        self.maintenance = maintenance
        self.pool = pool
        self.limiter = limiter
        self.session_log = session_log
        self.db = db
        self.timezone = timezone or settings.SCHEDULER_TIMEZONE
        self.warmup_delay = settings.WARMUP_DELAY_SECONDS if warmup_delay is None else warmup_delay

        self.cadences: Dict[JobKind, str] = {
            JobKind.FULL: settings.FULL_SCRAPE_CRON,
            JobKind.INCREMENTAL: settings.INCREMENTAL_SCRAPE_CRON,
            JobKind.PRICE_UPDATE: settings.PRICE_UPDATE_CRON,
            JobKind.CLEANUP: settings.CLEANUP_CRON,
            JobKind.PROXY_HEALTH: settings.PROXY_HEALTH_CRON,
        }
        if cadences:
            self.cadences.update({JobKind(kind): expr for kind, expr in cadences.items()})

        self.is_running = False
        self.tickers: Dict[JobKind, CronTicker] = {}
        self._warmup_task: Optional[asyncio.Task] = None

    async def start(self):
        """Start every schedule and queue the warm-up incremental scrape"""
        if self.is_running:
            logger.warning("Scheduler is already running")
            return

        callbacks = {
            JobKind.FULL: lambda: self._run_scheduled(JobKind.FULL),
            JobKind.INCREMENTAL: lambda: self._run_scheduled(JobKind.INCREMENTAL),
            JobKind.PRICE_UPDATE: lambda: self._run_scheduled(JobKind.PRICE_UPDATE),
            JobKind.CLEANUP: self.maintenance.run_cleanup,
            JobKind.PROXY_HEALTH: self.maintenance.run_proxy_health_check,
        }
        for kind, expression in self.cadences.items():
            self.tickers[kind] = CronTicker(kind.value, expression, callbacks[kind], self.timezone).start()
            logger.info(f"Scheduled {kind.value}: '{expression}' ({self.timezone})")

        self._warmup_task = asyncio.create_task(self._warmup(), name="scheduler-warmup")
        self.is_running = True
        logger.info("Scraper scheduler started")

    async def stop(self):
        """Stop timers and the pending warm-up. Jobs already running finish on their own."""
        for ticker in self.tickers.values():
            ticker.stop()
        self.tickers.clear()

        if self._warmup_task is not None and not self._warmup_task.done():
            self._warmup_task.cancel()
        self._warmup_task = None

        self.is_running = False
        logger.info("Scraper scheduler stopped")

    async def _warmup(self):
        await asyncio.sleep(self.warmup_delay)
        logger.info("Running warm-up incremental scrape")
        # Launched as its own task so stop() cannot cancel it once started
        self.runner.launch(JobKind.INCREMENTAL, manual=False)

    async def _run_scheduled(self, kind: JobKind):
        await self.runner.run(kind, manual=False)

    async def trigger_full(self, wait: bool = True) -> Optional[str]:
        return await self._trigger(JobKind.FULL, wait)

    async def trigger_incremental(self, wait: bool = True) -> Optional[str]:
        return await self._trigger(JobKind.INCREMENTAL, wait)

    async def trigger_price_update(self, wait: bool = True) -> Optional[str]:
        return await self._trigger(JobKind.PRICE_UPDATE, wait)

    async def _trigger(self, kind: JobKind, wait: bool) -> Optional[str]:
        """Manual run; raises ConcurrentJobError if another scraping job holds the slot"""
        logger.info(f"Manual {kind.value} triggered")
        if wait:
            return await self.runner.run(kind, manual=True)
        self.runner.launch(kind, manual=True)
        return None

    async def trigger_cleanup(self) -> CleanupReport:
        return await self.maintenance.run_cleanup()

    async def trigger_proxy_health(self) -> HealthCheckReport:
        return await self.maintenance.run_proxy_health_check()

    async def get_status(self) -> Dict[str, Any]:
        current = self.runner.current_job
        schedules = {}
        for kind, expression in self.cadences.items():
            ticker = self.tickers.get(kind)
            next_fire = ticker.next_fire_time if ticker else None
            schedules[kind.value] = {
                "cron": expression,
                "active": bool(ticker and ticker.running),
                "next_fire_time": next_fire.isoformat() if next_fire else None,
            }

        return {
            "is_running": self.is_running,
            "timezone": self.timezone,
            "current_job": current.value if current else None,
            "schedules": schedules,
            "proxy_pool": await self._guarded("proxy pool stats", self.pool.get_stats),
            "rate_limiter": self.limiter.get_state().model_dump(mode="json"),
            "sessions": await self._guarded("session stats", self.session_log.query_stats),
        }

    async def _guarded(self, label: str, lookup: Callable[[], Awaitable[Dict[str, Any]]]) -> Optional[Dict[str, Any]]:
        # Storage aggregates must not hide slot and schedule state
        try:
            return await lookup()
        except PersistenceError as e:
            logger.error(f"Could not load {label}: {e}")
            return None

    async def get_stats(self) -> Dict[str, Any]:
        """Session aggregates, listing counts and scheduler status"""
        return {
            "sessions": await self.session_log.query_stats(),
            "listings": await self.db.listing_counts(),
            "scheduler": await self.get_status(),
        }
