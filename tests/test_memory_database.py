#!/usr/bin/env python3
"""
Tests for the in-memory persistence gateway and the session log
"""

import sys
import pytest
from datetime import datetime, timedelta
from pathlib import Path

# Add the project root to Python path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from errors import PersistenceError
from models import JobKind, ListingImage, ListingRecord, ListingStatus, SessionCounts, SessionStatus
from session_log import SessionLog


class TestListingUpsert:

    @pytest.mark.asyncio
    async def test_upsert_is_idempotent_on_external_id(self, db):
        first = await db.upsert_listing(ListingRecord(external_id="A1", price=1500))
        second = await db.upsert_listing(ListingRecord(external_id="A1", price=1450))

        assert first.was_new is True
        assert second.was_new is False
        assert first.id == second.id
        assert len(db.listings) == 1

        stored = await db.get_listing("A1")
        assert stored.price == 1450
        assert stored.status == ListingStatus.ACTIVE
        assert stored.created_at <= stored.updated_at

    @pytest.mark.asyncio
    async def test_upsert_reactivates_and_stamps(self, db):
        result = await db.upsert_listing(ListingRecord(external_id="A2"))
        db.listings[result.id].status = ListingStatus.INACTIVE.value
        db.listings[result.id].last_scraped_at = datetime.utcnow() - timedelta(days=40)

        await db.upsert_listing(ListingRecord(external_id="A2"))

        stored = await db.get_listing("A2")
        assert stored.status == ListingStatus.ACTIVE
        assert stored.last_scraped_at > datetime.utcnow() - timedelta(minutes=1)

    @pytest.mark.asyncio
    async def test_upsert_images_marks_primary(self, db):
        result = await db.upsert_listing(ListingRecord(external_id="A3"))
        await db.upsert_images(result.id, [ListingImage(url="https://img/1"), ListingImage(url="https://img/2", category="kitchen")])

        images = db.images[result.id]
        assert [i["is_primary"] for i in images] == [True, False]
        assert [i["display_order"] for i in images] == [0, 1]
        assert images[1]["category"] == "kitchen"

    @pytest.mark.asyncio
    async def test_upsert_images_for_missing_listing(self, db):
        with pytest.raises(PersistenceError):
            await db.upsert_images("404", [ListingImage(url="https://img/1")])

    @pytest.mark.asyncio
    async def test_mark_stale_uses_cutoff(self, db):
        old = await db.upsert_listing(ListingRecord(external_id="S1"))
        young = await db.upsert_listing(ListingRecord(external_id="S2"))
        db.listings[old.id].last_scraped_at = datetime.utcnow() - timedelta(days=8)
        db.listings[young.id].last_scraped_at = datetime.utcnow() - timedelta(days=6)

        changed = await db.mark_stale(datetime.utcnow() - timedelta(days=7))

        assert changed == 1
        assert (await db.get_listing("S1")).status == ListingStatus.INACTIVE
        assert (await db.get_listing("S2")).status == ListingStatus.ACTIVE
        assert await db.mark_stale(datetime.utcnow() - timedelta(days=7)) == 0

    @pytest.mark.asyncio
    async def test_listing_counts(self, db):
        await db.upsert_listing(ListingRecord(external_id="C1", listing_type="rental"))
        await db.upsert_listing(ListingRecord(external_id="C2", listing_type="purchase"))
        inactive = await db.upsert_listing(ListingRecord(external_id="C3", listing_type="rental"))
        db.listings[inactive.id].status = ListingStatus.INACTIVE.value

        assert await db.listing_counts() == {"total": 3, "active": 2, "rental": 2, "purchase": 1}


class TestSessionLog:

    @pytest.fixture
    def session_log(self, db):
        return SessionLog(db)

    @pytest.mark.asyncio
    async def test_start_and_end(self, session_log):
        session_id = await session_log.log_start(JobKind.FULL)
        started = await session_log.get(session_id)
        assert started.status == SessionStatus.STARTED
        assert started.is_terminal is False

        counts = SessionCounts(found=5, new=2, updated=3, removed=1)
        await session_log.log_end(session_id, SessionStatus.COMPLETED, counts, execution_time_ms=1234)

        finished = await session_log.get(session_id)
        assert finished.status == SessionStatus.COMPLETED
        assert finished.counts == counts
        assert finished.execution_time_ms == 1234
        assert finished.completed_at is not None

    @pytest.mark.asyncio
    async def test_terminal_record_is_immutable(self, session_log):
        session_id = await session_log.log_start(JobKind.INCREMENTAL)
        await session_log.log_end(session_id, SessionStatus.FAILED, error="boom", execution_time_ms=10)

        with pytest.raises(PersistenceError):
            await session_log.log_end(session_id, SessionStatus.COMPLETED, execution_time_ms=20)

        session = await session_log.get(session_id)
        assert session.status == SessionStatus.FAILED
        assert session.error == "boom"

    @pytest.mark.asyncio
    async def test_log_end_requires_terminal_status(self, session_log):
        session_id = await session_log.log_start(JobKind.FULL)
        with pytest.raises(ValueError):
            await session_log.log_end(session_id, SessionStatus.STARTED)

    @pytest.mark.asyncio
    async def test_query_stats(self, session_log, db):
        a = await session_log.log_start(JobKind.FULL)
        await session_log.log_end(a, SessionStatus.COMPLETED, SessionCounts(found=10, new=4, updated=6), execution_time_ms=100)
        b = await session_log.log_start(JobKind.INCREMENTAL)
        await session_log.log_end(b, SessionStatus.FAILED, SessionCounts(found=2, new=1), error="x", execution_time_ms=300)
        await session_log.log_start(JobKind.PRICE_UPDATE)

        # Outside the window
        old = await session_log.log_start(JobKind.FULL)
        db.sessions[old].started_at = datetime.utcnow() - timedelta(days=45)

        stats = await session_log.query_stats(timedelta(days=30))
        assert stats["total_sessions"] == 3
        assert stats["completed_sessions"] == 1
        assert stats["failed_sessions"] == 1
        assert stats["running_sessions"] == 1
        assert stats["avg_execution_time_ms"] == 200
        assert stats["total_found"] == 12
        assert stats["total_new_listings"] == 5
        assert stats["total_updated_listings"] == 6
        assert stats["last_completed_at"] is not None
        assert stats["window_days"] == 30

    @pytest.mark.asyncio
    async def test_recent_is_newest_first(self, session_log):
        ids = [await session_log.log_start(JobKind.FULL) for _ in range(3)]
        recent = await session_log.recent(limit=2)
        assert [s.id for s in recent] == [ids[2], ids[1]]

    @pytest.mark.asyncio
    async def test_prune_keeps_newest(self, session_log, db):
        ids = [await session_log.log_start(JobKind.FULL) for _ in range(5)]
        assert await db.prune_sessions(keep=2) == 3
        assert set(db.sessions) == {ids[3], ids[4]}
