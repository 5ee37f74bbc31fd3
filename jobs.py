import asyncio
import threading
import time
import logging
from datetime import datetime, timedelta
from typing import Awaitable, Callable, Dict, Optional, Set

from config import settings
from errors import ConcurrentJobError, ExtractionFailure, PersistenceError, TransportError
from gateway import PersistenceGateway
from models import GATED_JOB_KINDS, JobKind, ListingRecord, ListingType, SessionCounts, SessionStatus, UpsertResult
from scraper import ListingScraper
from session_log import SessionLog

logger = logging.getLogger(__name__)

JOB_TAGS = {
    JobKind.FULL: "FULL",
    JobKind.INCREMENTAL: "INCREMENTAL",
    JobKind.PRICE_UPDATE: "PRICES",
}


class SlotLease:
    """Proof of holding the concurrency slot; releasing twice is a no-op"""

    def __init__(self, kind: JobKind):
        self.kind = kind


class ConcurrencySlot:
    """Holds the kind of the single gated job in flight, or nothing"""

    def __init__(self):
        self._lock = threading.Lock()
        self._lease: Optional[SlotLease] = None

    def try_acquire(self, kind: JobKind) -> Optional[SlotLease]:
        with self._lock:
            if self._lease is not None:
                return None
            self._lease = SlotLease(JobKind(kind))
            return self._lease

    def release(self, lease: SlotLease) -> bool:
        with self._lock:
            if self._lease is not lease:
                return False
            self._lease = None
            return True

    @property
    def current(self) -> Optional[JobKind]:
        lease = self._lease
        return lease.kind if lease else None


class JobRunner:
    """
    Runs the gated scraping jobs under the single-flight slot and records
    a session for each execution.
    """

    def __init__(
        self,
        scraper: ListingScraper,
        session_log: SessionLog,
        db: PersistenceGateway,
        slot: Optional[ConcurrencySlot] = None,
        full_limit: Optional[int] = None,
        incremental_limit: Optional[int] = None,
        price_batch_size: Optional[int] = None,
        price_delay_ms: Optional[int] = None,
        price_refresh_after_hours: Optional[int] = None,
        stale_sweep_days: Optional[int] = None,
    ):
        self.scraper = scraper
        self.session_log = session_log
        self.db = db
        self.slot = slot or ConcurrencySlot()
        self.full_limit = settings.FULL_SCRAPE_LIMIT if full_limit is None else full_limit
        self.incremental_limit = settings.INCREMENTAL_SCRAPE_LIMIT if incremental_limit is None else incremental_limit
        self.price_batch_size = settings.PRICE_UPDATE_BATCH_SIZE if price_batch_size is None else price_batch_size
        self.price_delay_ms = settings.PRICE_UPDATE_DELAY_MS if price_delay_ms is None else price_delay_ms
        self.price_refresh_after = timedelta(
            hours=settings.PRICE_REFRESH_AFTER_HOURS if price_refresh_after_hours is None else price_refresh_after_hours
        )
        self.stale_sweep_days = settings.STALE_SWEEP_DAYS if stale_sweep_days is None else stale_sweep_days

        self.bodies: Dict[JobKind, Callable[[SessionCounts], Awaitable[None]]] = {
            JobKind.FULL: self.full_scrape,
            JobKind.INCREMENTAL: self.incremental_scrape,
            JobKind.PRICE_UPDATE: self.price_update,
        }
        self._tasks: Set[asyncio.Task] = set()

    @property
    def current_job(self) -> Optional[JobKind]:
        return self.slot.current

    @property
    def is_busy(self) -> bool:
        return self.slot.current is not None

    def _acquire(self, kind: JobKind, manual: bool) -> Optional[SlotLease]:
        kind = JobKind(kind)
        if kind not in GATED_JOB_KINDS:
            raise ValueError(f"{kind.value} is not a scraping job")

        lease = self.slot.try_acquire(kind)
        if lease is None:
            running = self.slot.current
            running_value = running.value if running else None
            if manual:
                raise ConcurrentJobError(running_value, kind.value)
            logger.info(f"[{JOB_TAGS[kind]}] Skipping scheduled run, {running_value} is still running")
        return lease

    async def run(self, kind: JobKind, manual: bool = False) -> Optional[str]:
        """
        Run one job to completion and return its session id.

        Manual callers get ConcurrentJobError when the slot is taken; scheduled
        callers get None. The slot is released on every exit path.
        """
        lease = self._acquire(kind, manual)
        if lease is None:
            return None
        try:
            return await self._execute(JobKind(kind))
        finally:
            self.slot.release(lease)

    def launch(self, kind: JobKind, manual: bool = True) -> Optional[asyncio.Task]:
        """Acquire the slot now and run the job as a background task"""
        lease = self._acquire(kind, manual)
        if lease is None:
            return None

        async def job():
            try:
                return await self._execute(JobKind(kind))
            finally:
                self.slot.release(lease)

        task = asyncio.create_task(job(), name=f"job-{JobKind(kind).value}")
        self._tasks.add(task)
        # Covers a task cancelled before its body ever started
        task.add_done_callback(lambda t: self._on_task_done(t, lease))
        return task

    def _on_task_done(self, task: asyncio.Task, lease: SlotLease):
        self._tasks.discard(task)
        self.slot.release(lease)
        if not task.cancelled() and task.exception() is not None:
            logger.error(f"Background job {task.get_name()} crashed: {task.exception()}")

    async def _execute(self, kind: JobKind) -> str:
        tag = JOB_TAGS[kind]
        session_id = await self.session_log.log_start(kind)
        counts = SessionCounts()
        started = time.monotonic()
        logger.info(f"[{tag}] Starting {kind.value} job (session {session_id})")

        try:
            await self.bodies[kind](counts)
        except asyncio.CancelledError:
            logger.warning(f"[{tag}] Job cancelled")
            await self._finish(session_id, SessionStatus.FAILED, counts, "Job cancelled", started)
            raise
        except Exception as e:
            logger.error(f"[{tag}] Job failed: {e}")
            await self._finish(session_id, SessionStatus.FAILED, counts, str(e) or e.__class__.__name__, started)
            return session_id

        await self._finish(session_id, SessionStatus.COMPLETED, counts, None, started)
        logger.info(
            f"[{tag}] Completed: found={counts.found} new={counts.new} "
            f"updated={counts.updated} removed={counts.removed}"
        )
        return session_id

    async def _finish(self, session_id, status, counts, error, started):
        execution_time_ms = int((time.monotonic() - started) * 1000)
        await self.session_log.log_end(session_id, status, counts, error=error, execution_time_ms=execution_time_ms)

    async def save_listing(self, listing: ListingRecord) -> Optional[UpsertResult]:
        """Upsert a listing and its images; a storage failure skips the item"""
        try:
            result = await self.db.upsert_listing(listing)
            if listing.images:
                await self.db.upsert_images(result.id, listing.images)
            return result
        except PersistenceError as e:
            logger.error(f"Error saving listing {listing.external_id}: {e}")
            return None

    async def _save_and_count(self, listing: ListingRecord, counts: SessionCounts):
        result = await self.save_listing(listing)
        if result is None:
            return
        if result.was_new:
            counts.new += 1
        else:
            counts.updated += 1

    async def full_scrape(self, counts: SessionCounts):
        for listing_type in (ListingType.RENTAL, ListingType.PURCHASE):
            listings = await self.scraper.search_listings(listing_type, self.full_limit)
            counts.found += len(listings)
            for listing in listings:
                await self._save_and_count(listing, counts)

        cutoff = datetime.utcnow() - timedelta(days=self.stale_sweep_days)
        counts.removed = await self.db.mark_stale(cutoff)
        logger.info(f"[FULL] Marked {counts.removed} listings not seen for {self.stale_sweep_days} days inactive")

    async def incremental_scrape(self, counts: SessionCounts):
        listings = await self.scraper.search_listings(ListingType.RENTAL, self.incremental_limit)
        counts.found += len(listings)
        for listing in listings:
            await self._save_and_count(listing, counts)

    async def price_update(self, counts: SessionCounts):
        cutoff = datetime.utcnow() - self.price_refresh_after
        listings = await self.db.find_listings_for_refresh(cutoff, self.price_batch_size)
        counts.found = len(listings)
        logger.info(f"[PRICES] Refreshing {len(listings)} listings")

        for index, listing in enumerate(listings):
            if index and self.price_delay_ms:
                await asyncio.sleep(self.price_delay_ms / 1000)
            try:
                fresh = await self.scraper.get_listing_details(listing.external_id, listing.listing_type)
            except (TransportError, ExtractionFailure) as e:
                logger.warning(f"[PRICES] Could not refresh listing {listing.external_id}: {e}")
                continue
            await self._save_and_count(fresh, counts)
