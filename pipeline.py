"""
Wiring for the acquisition pipeline.

build_pipeline() constructs every component explicitly and injects them into
each other; nothing in the pipeline is a module-level singleton. Keyword
overrides use the lower-cased Settings names, e.g.
build_pipeline(db, transport, request_interval_ms=0, warmup_delay_seconds=0).
"""

import logging
from dataclasses import dataclass
from typing import Optional

from config import settings
from database import Database
from extractor import Extractor, JsonListingExtractor
from fetcher import Fetcher
from gateway import PersistenceGateway
from jobs import ConcurrencySlot, JobRunner
from maintenance import MaintenanceJobs
from memory_database import MemoryDatabase
from models import JobKind
from proxy_manager import ProxyPool
from rate_limiter import RateLimiter
from scheduler import Scheduler
from scraper import ListingScraper
from session_log import SessionLog
from transport import HttpxTransport, Transport

logger = logging.getLogger(__name__)

OVERRIDABLE = {
    "request_interval_ms", "daily_request_limit", "max_proxy_retries", "retry_base_delay_ms",
    "request_timeout_seconds", "proxy_deactivation_threshold", "proxy_test_url", "proxy_test_timeout_seconds",
    "proxy_health_batch_size", "proxy_retest_after_minutes", "proxy_list", "proxy_country",
    "source_base_url", "scheduler_timezone", "full_scrape_cron", "incremental_scrape_cron",
    "price_update_cron", "cleanup_cron", "proxy_health_cron", "warmup_delay_seconds",
    "full_scrape_limit", "incremental_scrape_limit", "price_update_batch_size", "price_update_delay_ms",
    "price_refresh_after_hours", "stale_sweep_days", "cleanup_retention_days", "session_log_keep",
    "property_view_retention_days", "rate_limit_log_retention_days",
}


@dataclass
class Pipeline:
    db: PersistenceGateway
    transport: Transport
    pool: ProxyPool
    limiter: RateLimiter
    fetcher: Fetcher
    scraper: ListingScraper
    session_log: SessionLog
    slot: ConcurrencySlot
    runner: JobRunner
    maintenance: MaintenanceJobs
    scheduler: Scheduler

    async def startup(self, start_scheduler: bool = True):
        """Bootstrap the proxy pool and start the schedules"""
        await self.pool.initialize()
        if start_scheduler:
            await self.scheduler.start()

    async def shutdown(self):
        await self.scheduler.stop()
        await self.transport.close()
        await self.db.disconnect()


def build_pipeline(
    db: PersistenceGateway,
    transport: Optional[Transport] = None,
    extractor: Optional[Extractor] = None,
    **overrides,
) -> Pipeline:
    unknown = set(overrides) - OVERRIDABLE
    if unknown:
        raise TypeError(f"Unknown pipeline options: {', '.join(sorted(unknown))}")

    def option(name: str):
        return overrides.get(name, getattr(settings, name.upper()))

    transport = transport or HttpxTransport()
    extractor = extractor or JsonListingExtractor()

    pool = ProxyPool(
        db,
        transport=transport,
        threshold=option("proxy_deactivation_threshold"),
        test_url=option("proxy_test_url"),
        test_timeout=option("proxy_test_timeout_seconds"),
        proxy_list=option("proxy_list"),
        country=option("proxy_country"),
    )
    limiter = RateLimiter(
        db,
        request_interval_ms=option("request_interval_ms"),
        daily_limit=option("daily_request_limit"),
    )
    fetcher = Fetcher(
        pool,
        limiter,
        transport,
        max_retries=option("max_proxy_retries"),
        retry_base_delay_ms=option("retry_base_delay_ms"),
        timeout=option("request_timeout_seconds"),
    )
    scraper = ListingScraper(fetcher, extractor, base_url=option("source_base_url"))
    session_log = SessionLog(db)
    slot = ConcurrencySlot()
    runner = JobRunner(
        scraper,
        session_log,
        db,
        slot=slot,
        full_limit=option("full_scrape_limit"),
        incremental_limit=option("incremental_scrape_limit"),
        price_batch_size=option("price_update_batch_size"),
        price_delay_ms=option("price_update_delay_ms"),
        price_refresh_after_hours=option("price_refresh_after_hours"),
        stale_sweep_days=option("stale_sweep_days"),
    )
    maintenance = MaintenanceJobs(
        db,
        pool,
        retention_days=option("cleanup_retention_days"),
        session_log_keep=option("session_log_keep"),
        property_view_retention_days=option("property_view_retention_days"),
        rate_limit_log_retention_days=option("rate_limit_log_retention_days"),
        health_batch_size=option("proxy_health_batch_size"),
        retest_after_minutes=option("proxy_retest_after_minutes"),
    )
    scheduler = Scheduler(
        runner,
        maintenance,
        pool,
        limiter,
        session_log,
        db,
        cadences={
            JobKind.FULL: option("full_scrape_cron"),
            JobKind.INCREMENTAL: option("incremental_scrape_cron"),
            JobKind.PRICE_UPDATE: option("price_update_cron"),
            JobKind.CLEANUP: option("cleanup_cron"),
            JobKind.PROXY_HEALTH: option("proxy_health_cron"),
        },
        timezone=option("scheduler_timezone"),
        warmup_delay=option("warmup_delay_seconds"),
    )

    return Pipeline(
        db=db,
        transport=transport,
        pool=pool,
        limiter=limiter,
        fetcher=fetcher,
        scraper=scraper,
        session_log=session_log,
        slot=slot,
        runner=runner,
        maintenance=maintenance,
        scheduler=scheduler,
    )


async def connect_gateway() -> PersistenceGateway:
    """MongoDB unless USE_MEMORY_DB is set; falls back to memory when Mongo is unreachable"""
    if not settings.USE_MEMORY_DB:
        db = Database(settings.MONGODB_URI)
        if await db.connect():
            return db
        logger.warning("MongoDB unavailable, falling back to in-memory database")

    db = MemoryDatabase()
    await db.connect()
    return db
