"""
Persistence gateway contract

The acquisition pipeline never talks to a storage engine directly. Everything it
needs (listing upserts, proxy stats, session records, retention pruning) goes
through a PersistenceGateway. Two implementations exist:

- database.Database: MongoDB via motor (production)
- memory_database.MemoryDatabase: in-process store (fallback and tests)

Proxy scores are updated with the same rule in both; the constants live here so
the Mongo pipeline expression and the in-memory arithmetic cannot drift apart.
"""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Dict, List, Optional

from models import ListingImage, ListingRecord, ProxyRecord, ScrapeSession, SessionCounts, SessionStatus, UpsertResult

# Live traffic: score' = score * 0.9 + outcome * 0.1 (outcome is 100 or 0)
LIVE_DECAY = 0.9
LIVE_WEIGHT = 0.1
# Failed health check: score' = score * 0.8
HEALTH_FAILURE_DECAY = 0.8


def next_success_rate(current: Optional[float], success: bool, health_check: bool = False) -> float:
    """Exponentially weighted proxy score after one outcome."""
    score = 100.0 if current is None else float(current)
    if health_check and not success:
        return score * HEALTH_FAILURE_DECAY
    return score * LIVE_DECAY + (100.0 if success else 0.0) * LIVE_WEIGHT


class PersistenceGateway(ABC):

    async def connect(self) -> bool:
        return True

    async def disconnect(self) -> None:
        return None

    # Listings
    @abstractmethod
    async def get_listing(self, external_id: str) -> Optional[ListingRecord]:
        ...

    @abstractmethod
    async def upsert_listing(self, listing: ListingRecord) -> UpsertResult:
        """Insert or update by external_id; stamps last_scraped_at and re-activates the listing."""

    @abstractmethod
    async def upsert_images(self, listing_id: str, images: List[ListingImage]) -> None:
        """Replace the image set of a listing; the first image is the primary one."""

    @abstractmethod
    async def mark_stale(self, cutoff: datetime) -> int:
        """Mark active listings last scraped before cutoff inactive; returns how many changed."""

    @abstractmethod
    async def find_listings_for_refresh(self, cutoff: datetime, limit: int) -> List[ListingRecord]:
        """Active listings scraped before cutoff (or never), oldest first with nulls first."""

    @abstractmethod
    async def listing_counts(self) -> Dict[str, int]:
        ...

    # Proxies
    @abstractmethod
    async def query_proxies(
        self,
        active: Optional[bool] = None,
        tested_before: Optional[datetime] = None,
        order_by: str = "last_used",
        limit: Optional[int] = None,
    ) -> List[ProxyRecord]:
        """
        Filter proxies. tested_before also matches proxies never tested.
        order_by is one of last_used, last_tested, success_rate; ascending with
        nulls first except success_rate, which is descending.
        """

    @abstractmethod
    async def add_proxy(self, proxy: ProxyRecord) -> ProxyRecord:
        """Upsert on (address, port); an imported proxy is always active."""

    @abstractmethod
    async def touch_proxy(self, proxy_id: str, used_at: datetime) -> None:
        ...

    @abstractmethod
    async def update_proxy_stats(
        self,
        proxy_id: str,
        success: bool,
        response_time_ms: Optional[float] = None,
        health_check: bool = False,
        threshold: float = 50.0,
    ) -> Optional[ProxyRecord]:
        """
        Atomically apply next_success_rate to one proxy and set
        active = (new score >= threshold). Health checks also stamp last_tested.
        Returns the updated record, or None if the proxy does not exist.
        """

    # Scrape sessions
    @abstractmethod
    async def log_session_start(self, session: ScrapeSession) -> str:
        ...

    @abstractmethod
    async def log_session_end(
        self,
        session_id: str,
        status: SessionStatus,
        counts: SessionCounts,
        error: Optional[str],
        execution_time_ms: int,
        completed_at: datetime,
    ) -> None:
        """Finalize a started session. Raises PersistenceError if it is missing or already final."""

    @abstractmethod
    async def get_session(self, session_id: str) -> Optional[ScrapeSession]:
        ...

    @abstractmethod
    async def recent_sessions(self, limit: int = 20) -> List[ScrapeSession]:
        ...

    @abstractmethod
    async def session_stats(self, since: datetime) -> Dict[str, Any]:
        ...

    # Retention
    @abstractmethod
    async def prune_sessions(self, keep: int) -> int:
        ...

    @abstractmethod
    async def prune_property_views(self, cutoff: datetime) -> int:
        ...

    @abstractmethod
    async def record_rate_limit_window(self, window_start: datetime, request_count: int) -> None:
        ...

    @abstractmethod
    async def prune_rate_limit_log(self, cutoff: datetime) -> int:
        ...
