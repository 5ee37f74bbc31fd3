import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from config import settings
from gateway import PersistenceGateway
from models import JobKind, ScrapeSession, SessionCounts, SessionStatus

logger = logging.getLogger(__name__)


class SessionLog:
    """Start/end records for every job execution, plus the aggregates built from them"""

    def __init__(self, db: PersistenceGateway):
        self.db = db

    async def log_start(self, kind: JobKind) -> str:
        session = ScrapeSession(kind=kind, status=SessionStatus.STARTED, started_at=datetime.utcnow())
        session_id = await self.db.log_session_start(session)
        logger.debug(f"Session {session_id} started ({JobKind(kind).value})")
        return session_id

    async def log_end(
        self,
        session_id: str,
        status: SessionStatus,
        counts: Optional[SessionCounts] = None,
        error: Optional[str] = None,
        execution_time_ms: int = 0,
    ) -> None:
        """Write the terminal record. A session can only be finalized once (PersistenceError otherwise)."""
        if SessionStatus(status) == SessionStatus.STARTED:
            raise ValueError("log_end requires a terminal status")
        await self.db.log_session_end(
            session_id,
            SessionStatus(status),
            counts or SessionCounts(),
            error,
            int(execution_time_ms),
            datetime.utcnow(),
        )

    async def query_stats(self, window: Optional[timedelta] = None) -> Dict[str, Any]:
        window = window or timedelta(days=settings.STATS_WINDOW_DAYS)
        stats = await self.db.session_stats(datetime.utcnow() - window)
        stats["window_days"] = window.days
        return stats

    async def recent(self, limit: int = 20) -> List[ScrapeSession]:
        return await self.db.recent_sessions(limit)

    async def get(self, session_id: str) -> Optional[ScrapeSession]:
        return await self.db.get_session(session_id)
