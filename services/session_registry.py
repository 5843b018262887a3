"""
Live pipelines per session.

Keeps one BulkIngestPipeline per session id in memory with TTL
expiration. Single-server only; the checkpoint store is what survives a
restart.
"""

from datetime import datetime, timedelta
from typing import Callable, Optional

import structlog

from config import settings
from exceptions import SessionNotFoundError
from services.bulk_ingest_service import BulkIngestPipeline, build_pipeline

logger = structlog.get_logger(__name__)

PipelineFactory = Callable[[str], BulkIngestPipeline]


class SessionRegistry:
    """In-memory session -> pipeline map."""

    def __init__(
        self,
        factory: PipelineFactory = build_pipeline,
        ttl_minutes: Optional[int] = None
    ):
        self.factory = factory
        self.ttl = timedelta(minutes=ttl_minutes or settings.checkpoint_ttl_minutes)
        self._sessions: dict[str, tuple[datetime, BulkIngestPipeline]] = {}

    def __len__(self) -> int:
        return len(self._sessions)

    def _touch(self, session_id: str, pipeline: BulkIngestPipeline) -> BulkIngestPipeline:
        self._sessions[session_id] = (datetime.now() + self.ttl, pipeline)
        return pipeline

    def get(self, session_id: str) -> BulkIngestPipeline:
        """
        Live pipeline of a session.

        Raises:
            SessionNotFoundError: If the session is unknown or expired
        """
        entry = self._sessions.get(session_id)
        if entry is None or datetime.now() > entry[0]:
            raise SessionNotFoundError(session_id)
        return self._touch(session_id, entry[1])

    async def get_or_create(self, session_id: str) -> BulkIngestPipeline:
        """
        Live pipeline of a session, built on first use.

        Expired sessions are closed first, so a replaced pipeline never
        leaves its credit poller running.
        """
        await self.prune()
        entry = self._sessions.get(session_id)
        if entry is not None:
            return self._touch(session_id, entry[1])

        pipeline = self.factory(session_id)
        logger.info("bulk_ingest_session_created", session_id=session_id)
        return self._touch(session_id, pipeline)

    async def remove(self, session_id: str) -> None:
        entry = self._sessions.pop(session_id, None)
        if entry is not None:
            await entry[1].aclose()
            logger.info("bulk_ingest_session_removed", session_id=session_id)

    async def prune(self) -> int:
        """Close and drop expired sessions."""
        now = datetime.now()
        expired = [sid for sid, (expires_at, _) in self._sessions.items() if now > expires_at]
        for session_id in expired:
            await self.remove(session_id)
        return len(expired)

    async def close_all(self) -> None:
        """Teardown hook for application shutdown."""
        for session_id in list(self._sessions):
            await self.remove(session_id)
        logger.info("bulk_ingest_sessions_closed")


_registry: Optional[SessionRegistry] = None


def get_session_registry() -> SessionRegistry:
    """Get or create the registry singleton."""
    global _registry
    if _registry is None:
        _registry = SessionRegistry()
    return _registry
