"""
Listing draft persistence.

Stores resolved drafts in the listing_drafts table so the listing editor
can pick them up. Publishing is handled by the listing API, not here.
"""

from datetime import datetime, timezone
from typing import Optional

import structlog

from config import get_supabase_client
from exceptions import DatabaseError
from models.item_group import ListingDraft

logger = structlog.get_logger(__name__)


class ListingDraftService:
    """Draft listing CRUD on listing_drafts."""

    def __init__(self, client=None):
        self.db = client or get_supabase_client()
        self.table = "listing_drafts"

    def save_drafts(self, user_id: str, session_id: str, drafts: list[ListingDraft]) -> list[dict]:
        """
        Insert drafts for a user.

        Args:
            user_id: Owner of the drafts
            session_id: Bulk ingest session the drafts came from
            drafts: Drafts from a review resolution

        Returns:
            Inserted rows
        """
        if not drafts:
            return []

        now = datetime.now(timezone.utc).isoformat()
        rows = [
            {
                **draft.model_dump(mode="json"),
                "user_id": user_id,
                "session_id": session_id,
                "created_at": now,
            }
            for draft in drafts
        ]

        try:
            result = self.db.table(self.table).insert(rows).execute()
        except Exception as e:
            logger.error("save_listing_drafts_failed", user_id=user_id, session_id=session_id, error=str(e))
            raise DatabaseError("insert", str(e))

        logger.info("listing_drafts_saved", user_id=user_id, session_id=session_id, count=len(result.data))
        return result.data

    def list_drafts(self, user_id: str, session_id: Optional[str] = None) -> list[ListingDraft]:
        """Drafts of a user, optionally limited to one session."""
        try:
            query = self.db.table(self.table).select("*").eq("user_id", user_id)
            if session_id:
                query = query.eq("session_id", session_id)
            result = query.execute()
        except Exception as e:
            logger.error("list_listing_drafts_failed", user_id=user_id, error=str(e))
            raise DatabaseError("select", str(e))

        return [ListingDraft.model_validate(row) for row in result.data]

    def delete_session_drafts(self, user_id: str, session_id: str) -> int:
        """Remove every draft of a discarded session."""
        try:
            result = (
                self.db.table(self.table)
                .delete()
                .eq("user_id", user_id)
                .eq("session_id", session_id)
                .execute()
            )
        except Exception as e:
            logger.error("delete_listing_drafts_failed", user_id=user_id, session_id=session_id, error=str(e))
            raise DatabaseError("delete", str(e))

        deleted = len(result.data or [])
        logger.info("listing_drafts_deleted", user_id=user_id, session_id=session_id, count=deleted)
        return deleted


_listing_draft_service: Optional[ListingDraftService] = None


def get_listing_draft_service() -> ListingDraftService:
    """Get or create the draft service singleton."""
    global _listing_draft_service
    if _listing_draft_service is None:
        _listing_draft_service = ListingDraftService()
    return _listing_draft_service
