"""
Progress schemas.

Ephemeral display state, rebuilt on every pipeline run.
"""

from enum import Enum

from pydantic import BaseModel, Field


class ProgressPhase(str, Enum):
    """Pipeline phases in display order."""
    UPLOAD = "upload"
    ANALYZE = "analyze"
    DESCRIBE = "describe"
    COMPLETE = "complete"


PHASE_ORDER = [
    ProgressPhase.UPLOAD,
    ProgressPhase.ANALYZE,
    ProgressPhase.DESCRIBE,
    ProgressPhase.COMPLETE,
]


class ItemStatus(str, Enum):
    """Per-row status in the progress list."""
    WAITING = "waiting"
    ANALYZING = "analyzing"
    COMPLETED = "completed"
    FAILED = "failed"


class ItemProgress(BaseModel):
    """One row of the progress list."""

    index: int = Field(ge=1)
    title: str = ""
    status: ItemStatus = ItemStatus.WAITING


class ProgressState(BaseModel):
    """Snapshot handed to the UI."""

    phase: ProgressPhase = ProgressPhase.UPLOAD
    current: int = Field(default=0, ge=0)
    total: int = Field(default=0, ge=0)
    estimated_seconds_remaining: int = Field(default=0, ge=0)
    per_item_status: list[ItemProgress] = Field(default_factory=list)

    @property
    def percent(self) -> int:
        if self.total <= 0:
            return 0
        return round(self.current / self.total * 100)
