"""
In-process persistence gateway.

Used when MongoDB is not configured or unreachable, and by the test suite.
All state lives in dicts on the instance. Every mutating method does its
read-modify-write without an await point, so concurrent coroutines on the
same event loop cannot interleave inside one update.
"""

import itertools
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from errors import PersistenceError
from gateway import PersistenceGateway, next_success_rate
from models import (
    ListingImage,
    ListingRecord,
    ListingStatus,
    ListingType,
    ProxyRecord,
    ScrapeSession,
    SessionCounts,
    SessionStatus,
    UpsertResult,
)

logger = logging.getLogger(__name__)


def _nulls_first(value: Optional[datetime]):
    return (value is not None, value or datetime.min)


class MemoryDatabase(PersistenceGateway):
    def __init__(self):
        self._ids = itertools.count(1)
        self.listings: Dict[str, ListingRecord] = {}
        self.listing_ids: Dict[str, str] = {}  # external_id -> id
        self.images: Dict[str, List[Dict[str, Any]]] = {}
        self.proxies: Dict[str, ProxyRecord] = {}
        self.sessions: Dict[str, ScrapeSession] = {}
        self.property_views: List[Dict[str, Any]] = []
        self.rate_limit_log: List[Dict[str, Any]] = []

    def _next_id(self) -> str:
        return str(next(self._ids))

    async def connect(self) -> bool:
        logger.info("Using in-memory database")
        return True

    # Listings
    async def get_listing(self, external_id: str) -> Optional[ListingRecord]:
        listing_id = self.listing_ids.get(external_id)
        if listing_id is None:
            return None
        return self.listings[listing_id].model_copy(deep=True)

    async def upsert_listing(self, listing: ListingRecord) -> UpsertResult:
        now = datetime.utcnow()
        listing_id = self.listing_ids.get(listing.external_id)
        was_new = listing_id is None

        fields = listing.model_dump(exclude={"id", "images", "created_at"})
        fields.update(status=ListingStatus.ACTIVE.value, last_scraped_at=now, updated_at=now)

        if was_new:
            listing_id = self._next_id()
            self.listing_ids[listing.external_id] = listing_id
            created_at = now
        else:
            created_at = self.listings[listing_id].created_at

        self.listings[listing_id] = ListingRecord(id=listing_id, created_at=created_at, images=listing.images, **fields)
        return UpsertResult(id=listing_id, was_new=was_new)

    async def upsert_images(self, listing_id: str, images: List[ListingImage]) -> None:
        if not images:
            return
        if listing_id not in self.listings:
            raise PersistenceError(f"Listing {listing_id} not found")
        self.images[listing_id] = [
            {
                "url": image.url,
                "category": image.category or "general",
                "caption": image.caption or "",
                "is_primary": index == 0,
                "display_order": index,
            }
            for index, image in enumerate(images)
        ]

    async def mark_stale(self, cutoff: datetime) -> int:
        changed = 0
        now = datetime.utcnow()
        for listing in self.listings.values():
            if (
                listing.status == ListingStatus.ACTIVE
                and listing.last_scraped_at is not None
                and listing.last_scraped_at < cutoff
            ):
                listing.status = ListingStatus.INACTIVE.value
                listing.updated_at = now
                changed += 1
        return changed

    async def find_listings_for_refresh(self, cutoff: datetime, limit: int) -> List[ListingRecord]:
        candidates = [
            listing for listing in self.listings.values()
            if listing.status == ListingStatus.ACTIVE
            and (listing.last_scraped_at is None or listing.last_scraped_at < cutoff)
        ]
        candidates.sort(key=lambda listing: _nulls_first(listing.last_scraped_at))
        return [listing.model_copy(deep=True) for listing in candidates[:limit]]

    async def listing_counts(self) -> Dict[str, int]:
        listings = list(self.listings.values())
        return {
            "total": len(listings),
            "active": sum(1 for l in listings if l.status == ListingStatus.ACTIVE),
            "rental": sum(1 for l in listings if l.listing_type == ListingType.RENTAL),
            "purchase": sum(1 for l in listings if l.listing_type == ListingType.PURCHASE),
        }

    # Proxies
    async def query_proxies(
        self,
        active: Optional[bool] = None,
        tested_before: Optional[datetime] = None,
        order_by: str = "last_used",
        limit: Optional[int] = None,
    ) -> List[ProxyRecord]:
        proxies = list(self.proxies.values())
        if active is not None:
            proxies = [p for p in proxies if p.active == active]
        if tested_before is not None:
            proxies = [p for p in proxies if p.last_tested is None or p.last_tested < tested_before]

        if order_by == "success_rate":
            proxies.sort(key=lambda p: p.success_rate, reverse=True)
        elif order_by in ("last_used", "last_tested"):
            proxies.sort(key=lambda p: _nulls_first(getattr(p, order_by)))
        else:
            raise ValueError(f"Unsupported proxy ordering: {order_by}")

        if limit is not None:
            proxies = proxies[:limit]
        return [p.model_copy() for p in proxies]

    async def add_proxy(self, proxy: ProxyRecord) -> ProxyRecord:
        for existing in self.proxies.values():
            if existing.address == proxy.address and existing.port == proxy.port:
                existing.protocol = proxy.protocol
                existing.username = proxy.username
                existing.password = proxy.password
                existing.country = proxy.country or existing.country
                existing.active = True
                return existing.model_copy()

        proxy_id = self._next_id()
        stored = proxy.model_copy(update={"id": proxy_id, "active": True})
        self.proxies[proxy_id] = stored
        return stored.model_copy()

    async def touch_proxy(self, proxy_id: str, used_at: datetime) -> None:
        proxy = self.proxies.get(proxy_id)
        if proxy is not None:
            proxy.last_used = used_at

    async def update_proxy_stats(
        self,
        proxy_id: str,
        success: bool,
        response_time_ms: Optional[float] = None,
        health_check: bool = False,
        threshold: float = 50.0,
    ) -> Optional[ProxyRecord]:
        proxy = self.proxies.get(proxy_id)
        if proxy is None:
            return None

        proxy.success_rate = next_success_rate(proxy.success_rate, success, health_check)
        proxy.active = proxy.success_rate >= threshold
        if response_time_ms is not None:
            proxy.response_time_ms = response_time_ms
        if health_check:
            proxy.last_tested = datetime.utcnow()
        return proxy.model_copy()

    # Scrape sessions
    async def log_session_start(self, session: ScrapeSession) -> str:
        session_id = self._next_id()
        self.sessions[session_id] = session.model_copy(update={"id": session_id}, deep=True)
        return session_id

    async def log_session_end(
        self,
        session_id: str,
        status: SessionStatus,
        counts: SessionCounts,
        error: Optional[str],
        execution_time_ms: int,
        completed_at: datetime,
    ) -> None:
        session = self.sessions.get(session_id)
        if session is None:
            raise PersistenceError(f"Scrape session {session_id} not found")
        if session.is_terminal:
            raise PersistenceError(f"Scrape session {session_id} is already {session.status}")

        self.sessions[session_id] = session.model_copy(update={
            "status": SessionStatus(status).value,
            "counts": counts.model_copy(),
            "error": error,
            "execution_time_ms": execution_time_ms,
            "completed_at": completed_at,
        })

    async def get_session(self, session_id: str) -> Optional[ScrapeSession]:
        session = self.sessions.get(session_id)
        return session.model_copy(deep=True) if session else None

    async def recent_sessions(self, limit: int = 20) -> List[ScrapeSession]:
        ordered = sorted(self.sessions.values(), key=lambda s: (s.started_at, int(s.id)), reverse=True)
        return [s.model_copy(deep=True) for s in ordered[:limit]]

    async def session_stats(self, since: datetime) -> Dict[str, Any]:
        window = [s for s in self.sessions.values() if s.started_at >= since]
        finished = [s.execution_time_ms for s in window if s.execution_time_ms is not None]
        completed = [s for s in window if s.status == SessionStatus.COMPLETED]
        return {
            "total_sessions": len(window),
            "completed_sessions": len(completed),
            "failed_sessions": sum(1 for s in window if s.status == SessionStatus.FAILED),
            "running_sessions": sum(1 for s in window if s.status == SessionStatus.STARTED),
            "avg_execution_time_ms": (sum(finished) / len(finished)) if finished else None,
            "total_found": sum(s.counts.found for s in window),
            "total_new_listings": sum(s.counts.new for s in window),
            "total_updated_listings": sum(s.counts.updated for s in window),
            "total_removed_listings": sum(s.counts.removed for s in window),
            "last_started_at": max((s.started_at for s in window), default=None),
            "last_completed_at": max((s.completed_at for s in completed if s.completed_at), default=None),
        }

    # Retention
    async def prune_sessions(self, keep: int) -> int:
        ordered = sorted(self.sessions.values(), key=lambda s: (s.started_at, int(s.id)), reverse=True)
        doomed = [s.id for s in ordered[keep:]]
        for session_id in doomed:
            del self.sessions[session_id]
        return len(doomed)

    async def prune_property_views(self, cutoff: datetime) -> int:
        before = len(self.property_views)
        self.property_views = [v for v in self.property_views if v["viewed_at"] >= cutoff]
        return before - len(self.property_views)

    async def record_rate_limit_window(self, window_start: datetime, request_count: int) -> None:
        self.rate_limit_log.append({"window_start": window_start, "request_count": request_count})

    async def prune_rate_limit_log(self, cutoff: datetime) -> int:
        before = len(self.rate_limit_log)
        self.rate_limit_log = [e for e in self.rate_limit_log if e["window_start"] >= cutoff]
        return before - len(self.rate_limit_log)
