"""
Processing checkpoint schema.

Snapshot written right before the user leaves for the external checkout.
Stored as JSON; any entry that does not validate is treated as missing.
"""

from datetime import datetime, timezone
from typing import Optional

from pydantic import Field

from models.base import BaseSchema
from models.item_group import ItemGroup

CHECKPOINT_VERSION = 1


class ProcessingCheckpoint(BaseSchema):
    """In-flight pipeline state that survives the payment redirect."""

    session_id: str
    batch_id: str
    enriched_groups: list[ItemGroup] = Field(default_factory=list)
    pending_groups: list[ItemGroup] = Field(default_factory=list)
    original_asset_refs: list[str] = Field(default_factory=list)
    group_order: list[str] = Field(
        default_factory=list,
        description="Group ids in display order"
    )
    category_hint: Optional[str] = None
    credit_baseline: int = Field(
        default=0,
        ge=0,
        description="Available credits when the user left for checkout"
    )
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    version: int = CHECKPOINT_VERSION

    @property
    def all_groups(self) -> list[ItemGroup]:
        return [*self.enriched_groups, *self.pending_groups]
