import time
import logging
from datetime import datetime, timedelta
from typing import Optional

from config import settings
from errors import PersistenceError
from gateway import PersistenceGateway
from models import CleanupReport, HealthCheckReport
from proxy_manager import ProxyPool

logger = logging.getLogger(__name__)


class MaintenanceJobs:
    """Cleanup and proxy health checks. Neither takes the scraping slot."""

    def __init__(
        self,
        db: PersistenceGateway,
        pool: ProxyPool,
        retention_days: Optional[int] = None,
        session_log_keep: Optional[int] = None,
        property_view_retention_days: Optional[int] = None,
        rate_limit_log_retention_days: Optional[int] = None,
        health_batch_size: Optional[int] = None,
        retest_after_minutes: Optional[int] = None,
    ):
        self.db = db
        self.pool = pool
        self.retention_days = settings.CLEANUP_RETENTION_DAYS if retention_days is None else retention_days
        self.session_log_keep = settings.SESSION_LOG_KEEP if session_log_keep is None else session_log_keep
        self.property_view_retention_days = settings.PROPERTY_VIEW_RETENTION_DAYS if property_view_retention_days is None else property_view_retention_days
        self.rate_limit_log_retention_days = settings.RATE_LIMIT_LOG_RETENTION_DAYS if rate_limit_log_retention_days is None else rate_limit_log_retention_days
        self.health_batch_size = settings.PROXY_HEALTH_BATCH_SIZE if health_batch_size is None else health_batch_size
        self.retest_after_minutes = settings.PROXY_RETEST_AFTER_MINUTES if retest_after_minutes is None else retest_after_minutes

    async def run_cleanup(self) -> CleanupReport:
        """Run every retention step; a failing step is recorded and the rest still run"""
        logger.info("[CLEANUP] Starting cleanup")
        now = datetime.utcnow()
        report = CleanupReport()

        steps = [
            ("listings_deactivated", lambda: self.db.mark_stale(now - timedelta(days=self.retention_days))),
            ("sessions_pruned", lambda: self.db.prune_sessions(self.session_log_keep)),
            ("property_views_pruned", lambda: self.db.prune_property_views(
                now - timedelta(days=self.property_view_retention_days))),
            ("rate_limit_logs_pruned", lambda: self.db.prune_rate_limit_log(
                now - timedelta(days=self.rate_limit_log_retention_days))),
        ]
        for name, step in steps:
            try:
                setattr(report, name, await step())
            except Exception as e:
                logger.error(f"[CLEANUP] Step {name} failed: {e}")
                report.errors[name] = str(e)

        logger.info(
            f"[CLEANUP] Done: {report.listings_deactivated} listings deactivated, "
            f"{report.sessions_pruned} sessions pruned, {report.property_views_pruned} views pruned, "
            f"{report.rate_limit_logs_pruned} rate limit logs pruned"
        )
        return report

    async def run_proxy_health_check(self) -> HealthCheckReport:
        """Test proxies not tested recently (inactive ones included so they can recover)"""
        cutoff = datetime.utcnow() - timedelta(minutes=self.retest_after_minutes)
        candidates = await self.db.query_proxies(tested_before=cutoff, order_by="last_tested", limit=self.health_batch_size)
        logger.info(f"[PROXY HEALTH] Testing {len(candidates)} proxies")

        report = HealthCheckReport()
        for proxy in candidates:
            started = time.monotonic()
            healthy = await self.pool.test_health(proxy)
            response_time_ms = (time.monotonic() - started) * 1000 if healthy else None

            try:
                updated = await self.pool.record_health_check(proxy.id, healthy, response_time_ms)
            except PersistenceError as e:
                logger.error(f"[PROXY HEALTH] Could not record result for {proxy.label}: {e}")
                continue
            if updated is None:
                continue

            report.tested += 1
            if healthy:
                report.healthy += 1
            else:
                report.unhealthy += 1
            if proxy.active and not updated.active:
                report.deactivated += 1

        try:
            await self.pool.reload()
        except PersistenceError as e:
            logger.error(f"[PROXY HEALTH] Could not reload proxy pool: {e}")

        logger.info(
            f"[PROXY HEALTH] Done: {report.healthy} healthy, {report.unhealthy} unhealthy, "
            f"{report.deactivated} deactivated"
        )
        return report
