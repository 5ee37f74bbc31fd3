#!/usr/bin/env python3
"""
Unit tests for the scheduler and cron timers
These tests don't require a database connection
"""

import sys
import asyncio
import pytest
from datetime import datetime
from pathlib import Path
from zoneinfo import ZoneInfo

# Add the project root to Python path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from conftest import BASE_URL, search_url, wait_until_idle
from errors import PersistenceError
from models import JobKind, SessionStatus
from pipeline import build_pipeline
from scheduler import CronTicker

MONTREAL = ZoneInfo("America/Montreal")


async def noop():
    return None


class TestCronTicker:

    def test_daily_cleanup_runs_at_two_local_time(self):
        ticker = CronTicker("cleanup", "0 2 * * *", noop, "America/Montreal")
        after = datetime(2026, 1, 10, 3, 0, tzinfo=MONTREAL)
        assert ticker.compute_next(after) == datetime(2026, 1, 11, 2, 0, tzinfo=MONTREAL)

    def test_quarter_hour_cadence(self):
        ticker = CronTicker("proxy_health", "*/15 * * * *", noop, "America/Montreal")
        after = datetime(2026, 1, 10, 10, 7, tzinfo=MONTREAL)
        assert ticker.compute_next(after) == datetime(2026, 1, 10, 10, 15, tzinfo=MONTREAL)

    def test_every_six_hours(self):
        ticker = CronTicker("full", "0 */6 * * *", noop, "America/Montreal")
        after = datetime(2026, 1, 10, 13, 30, tzinfo=MONTREAL)
        assert ticker.compute_next(after) == datetime(2026, 1, 10, 18, 0, tzinfo=MONTREAL)

    def test_invalid_expression_rejected(self):
        with pytest.raises(ValueError):
            CronTicker("broken", "not a cron", noop)

    @pytest.mark.asyncio
    async def test_start_returns_handle_and_stop_cancels(self):
        ticker = CronTicker("incremental", "0 * * * *", noop, "America/Montreal")
        handle = ticker.start()
        assert handle is ticker
        assert ticker.running
        assert ticker.next_fire_time is not None
        assert ticker.next_fire_time.minute == 0

        ticker.stop()
        await asyncio.sleep(0)
        assert not ticker.running
        assert ticker.next_fire_time is None

    @pytest.mark.asyncio
    async def test_spawned_callback_errors_are_contained(self, caplog):
        calls = []

        async def failing():
            calls.append(1)
            raise RuntimeError("boom")

        ticker = CronTicker("price_update", "*/30 * * * *", failing)
        ticker._spawn()
        await asyncio.sleep(0.01)

        assert calls == [1]
        assert "price_update run failed: boom" in caplog.text


class TestScheduler:

    @pytest.mark.asyncio
    async def test_start_is_idempotent(self, pipeline, caplog):
        scheduler = pipeline.scheduler
        await scheduler.start()
        tickers = dict(scheduler.tickers)

        with caplog.at_level("WARNING"):
            await scheduler.start()

        assert "already running" in caplog.text
        assert scheduler.tickers == tickers
        assert set(scheduler.tickers) == set(JobKind)
        await scheduler.stop()

    @pytest.mark.asyncio
    async def test_status_reports_schedules_and_slot(self, pipeline):
        scheduler = pipeline.scheduler
        await scheduler.start()
        lease = pipeline.slot.try_acquire(JobKind.PRICE_UPDATE)

        status = await scheduler.get_status()

        assert status["is_running"] is True
        assert status["current_job"] == "price_update"
        assert status["schedules"]["cleanup"]["cron"] == "0 2 * * *"
        assert all(s["active"] for s in status["schedules"].values())
        assert all(s["next_fire_time"] for s in status["schedules"].values())
        assert status["proxy_pool"]["total_proxies"] == 0
        assert status["rate_limiter"]["request_count_today"] == 0
        assert status["sessions"]["total_sessions"] == 0

        pipeline.slot.release(lease)
        await scheduler.stop()

    @pytest.mark.asyncio
    async def test_status_survives_storage_failure(self, pipeline, transport, db, monkeypatch, caplog):
        transport.add(search_url(), {"properties": []})
        transport.gate = asyncio.Event()
        scheduler = pipeline.scheduler
        await scheduler.start()
        await scheduler.trigger_full(wait=False)

        async def storage_down(*args, **kwargs):
            raise PersistenceError("storage down")

        monkeypatch.setattr(db, "session_stats", storage_down)
        monkeypatch.setattr(db, "query_proxies", storage_down)

        status = await scheduler.get_status()

        assert status["current_job"] == "full"
        assert all(s["next_fire_time"] for s in status["schedules"].values())
        assert status["sessions"] is None
        assert status["proxy_pool"] is None
        assert "storage down" in caplog.text

        monkeypatch.undo()
        await scheduler.stop()
        transport.gate.set()
        await wait_until_idle(pipeline.runner)

    @pytest.mark.asyncio
    async def test_status_before_start(self, pipeline):
        status = await pipeline.scheduler.get_status()
        assert status["is_running"] is False
        assert status["current_job"] is None
        assert not any(s["active"] for s in status["schedules"].values())

    @pytest.mark.asyncio
    async def test_stop_deactivates_timers(self, pipeline):
        scheduler = pipeline.scheduler
        await scheduler.start()
        tickers = list(scheduler.tickers.values())

        await scheduler.stop()
        await asyncio.sleep(0)

        assert scheduler.is_running is False
        assert not any(t.running for t in tickers)
        status = await scheduler.get_status()
        assert not any(s["active"] for s in status["schedules"].values())

    @pytest.mark.asyncio
    async def test_stop_does_not_cancel_running_job(self, pipeline, transport):
        transport.add(search_url(), {"properties": []})
        transport.gate = asyncio.Event()
        scheduler = pipeline.scheduler
        await scheduler.start()

        await scheduler.trigger_full(wait=False)
        await scheduler.stop()
        assert pipeline.runner.current_job == JobKind.FULL

        transport.gate.set()
        await wait_until_idle(pipeline.runner)
        sessions = await pipeline.session_log.recent()
        assert sessions[0].status == SessionStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_warmup_runs_incremental_scrape(self, db, transport):
        pipeline = build_pipeline(
            db, transport, source_base_url=BASE_URL, request_interval_ms=0,
            retry_base_delay_ms=0, warmup_delay_seconds=0, proxy_list="",
        )
        transport.add(search_url(), {"properties": []})

        await pipeline.scheduler.start()
        await asyncio.sleep(0.05)
        await wait_until_idle(pipeline.runner)
        await pipeline.scheduler.stop()

        sessions = await pipeline.session_log.recent()
        assert [(s.kind, s.status) for s in sessions] == [("incremental", "completed")]

    @pytest.mark.asyncio
    async def test_stop_cancels_pending_warmup(self, db, transport):
        pipeline = build_pipeline(db, transport, source_base_url=BASE_URL, warmup_delay_seconds=0.05, proxy_list="")
        await pipeline.scheduler.start()
        await pipeline.scheduler.stop()
        await asyncio.sleep(0.1)

        assert db.sessions == {}

    @pytest.mark.asyncio
    async def test_get_stats(self, pipeline, transport):
        transport.add(search_url(), {"properties": []})
        await pipeline.scheduler.trigger_incremental()

        stats = await pipeline.scheduler.get_stats()

        assert stats["sessions"]["total_sessions"] == 1
        assert stats["sessions"]["completed_sessions"] == 1
        assert stats["listings"] == {"total": 0, "active": 0, "rental": 0, "purchase": 0}
        assert stats["scheduler"]["is_running"] is False
