"""
Checkpoint storage.

A checkpoint is written right before the user leaves for the external
checkout and read back when they return. At most one checkpoint exists
per session; saving replaces it and a successful resume clears it.

Stores never raise on a bad entry: anything missing, expired or not
parseable as a ProcessingCheckpoint loads as None, which the resumption
manager treats as "nothing to resume".
"""

import os
import re
import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Optional, Protocol

import structlog
from pydantic import ValidationError as PydanticValidationError

from config import settings, get_supabase_client
from exceptions import DatabaseError
from models.checkpoint import CHECKPOINT_VERSION, ProcessingCheckpoint

logger = structlog.get_logger(__name__)


class CheckpointStore(Protocol):
    """Port for durable checkpoint storage, keyed by session id."""

    async def save(self, checkpoint: ProcessingCheckpoint) -> None:
        ...

    async def load(self, session_id: str) -> Optional[ProcessingCheckpoint]:
        ...

    async def clear(self, session_id: str) -> None:
        ...


def decode_checkpoint(raw: Optional[str], session_id: str, ttl_minutes: int) -> Optional[ProcessingCheckpoint]:
    """
    Parse a stored checkpoint.

    Returns None for empty, corrupt, foreign-session, outdated-version
    or expired entries.
    """
    if not raw:
        return None

    try:
        checkpoint = ProcessingCheckpoint.model_validate_json(raw)
    except (PydanticValidationError, ValueError) as e:
        logger.warning("checkpoint_corrupt", session_id=session_id, error=str(e)[:200])
        return None

    if checkpoint.session_id != session_id or checkpoint.version != CHECKPOINT_VERSION:
        logger.warning(
            "checkpoint_mismatch",
            session_id=session_id,
            stored_session_id=checkpoint.session_id,
            version=checkpoint.version
        )
        return None

    created_at = checkpoint.created_at
    if created_at.tzinfo is None:
        created_at = created_at.replace(tzinfo=timezone.utc)
    if datetime.now(timezone.utc) - created_at > timedelta(minutes=ttl_minutes):
        logger.info("checkpoint_expired", session_id=session_id)
        return None

    return checkpoint


class FileCheckpointStore:
    """One JSON file per session, replaced atomically."""

    def __init__(self, directory: Optional[str] = None, ttl_minutes: Optional[int] = None):
        self.directory = Path(directory or settings.checkpoint_dir)
        self.ttl_minutes = ttl_minutes or settings.checkpoint_ttl_minutes

    def _path(self, session_id: str) -> Path:
        safe = re.sub(r'[^A-Za-z0-9_.-]', '_', session_id)
        return self.directory / f"{safe}.json"

    async def save(self, checkpoint: ProcessingCheckpoint) -> None:
        self.directory.mkdir(parents=True, exist_ok=True)
        path = self._path(checkpoint.session_id)

        fd, tmp_path = tempfile.mkstemp(dir=self.directory, suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(checkpoint.model_dump_json())
            os.replace(tmp_path, path)
        except OSError:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise

        logger.info(
            "checkpoint_saved",
            session_id=checkpoint.session_id,
            enriched=len(checkpoint.enriched_groups),
            pending=len(checkpoint.pending_groups)
        )

    async def load(self, session_id: str) -> Optional[ProcessingCheckpoint]:
        path = self._path(session_id)
        try:
            raw = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except OSError as e:
            logger.warning("checkpoint_unreadable", session_id=session_id, error=str(e))
            return None
        return decode_checkpoint(raw, session_id, self.ttl_minutes)

    async def clear(self, session_id: str) -> None:
        self._path(session_id).unlink(missing_ok=True)
        logger.info("checkpoint_cleared", session_id=session_id)


class MemoryCheckpointStore:
    """
    In-memory store with TTL expiration.

    Single-process only; checkpoints do not survive a restart.
    """

    def __init__(self, ttl_minutes: Optional[int] = None):
        self.ttl_minutes = ttl_minutes or settings.checkpoint_ttl_minutes
        self._entries: dict[str, str] = {}

    async def save(self, checkpoint: ProcessingCheckpoint) -> None:
        self._entries[checkpoint.session_id] = checkpoint.model_dump_json()
        logger.info("checkpoint_saved", session_id=checkpoint.session_id, backend="memory")

    async def load(self, session_id: str) -> Optional[ProcessingCheckpoint]:
        checkpoint = decode_checkpoint(self._entries.get(session_id), session_id, self.ttl_minutes)
        if checkpoint is None:
            self._entries.pop(session_id, None)
        return checkpoint

    async def clear(self, session_id: str) -> None:
        self._entries.pop(session_id, None)


class SupabaseCheckpointStore:
    """Server-side session storage in the ingest_checkpoints table."""

    def __init__(self, client=None, ttl_minutes: Optional[int] = None):
        self.db = client or get_supabase_client()
        self.table = "ingest_checkpoints"
        self.ttl_minutes = ttl_minutes or settings.checkpoint_ttl_minutes

    async def save(self, checkpoint: ProcessingCheckpoint) -> None:
        try:
            self.db.table(self.table).upsert({
                "session_id": checkpoint.session_id,
                "payload": checkpoint.model_dump_json(),
                "created_at": checkpoint.created_at.isoformat(),
            }).execute()
        except Exception as e:
            logger.error("checkpoint_save_failed", session_id=checkpoint.session_id, error=str(e))
            raise DatabaseError("upsert", str(e))

        logger.info("checkpoint_saved", session_id=checkpoint.session_id, backend="supabase")

    async def load(self, session_id: str) -> Optional[ProcessingCheckpoint]:
        try:
            result = (
                self.db.table(self.table)
                .select("payload")
                .eq("session_id", session_id)
                .execute()
            )
        except Exception as e:
            # An unreachable store is the same as a lost checkpoint
            logger.warning("checkpoint_load_failed", session_id=session_id, error=str(e))
            return None

        if not result.data:
            return None
        return decode_checkpoint(result.data[0].get("payload"), session_id, self.ttl_minutes)

    async def clear(self, session_id: str) -> None:
        try:
            self.db.table(self.table).delete().eq("session_id", session_id).execute()
        except Exception as e:
            logger.error("checkpoint_clear_failed", session_id=session_id, error=str(e))
            raise DatabaseError("delete", str(e))


def get_checkpoint_store() -> CheckpointStore:
    """Build the configured checkpoint store."""
    if settings.checkpoint_backend == "supabase":
        return SupabaseCheckpointStore()
    if settings.checkpoint_backend == "memory":
        return MemoryCheckpointStore()
    return FileCheckpointStore()
