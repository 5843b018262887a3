"""
Bulk ingestion pipeline schemas.

Results of a pipeline run or resume, the payment return signal, and the
request/response bodies of the bulk ingest routes.
"""

from enum import Enum
from typing import Literal, Optional

from pydantic import BaseModel, Field

from models.asset import UploadedAsset
from models.credit import CreditAccount, Reservation
from models.item_group import ItemGroup, ListingDraft, Scenario
from models.progress import ProgressState


class ResumeState(str, Enum):
    """States of the checkpoint / resumption state machine."""
    IDLE = "idle"
    AWAITING_ADMISSION = "awaiting_admission"
    CHECKPOINT_SAVED = "checkpoint_saved"
    RESUMING = "resuming"
    MERGING = "merging"
    COMPLETE = "complete"


class PipelineIssue(BaseModel):
    """Non-fatal problem reported alongside a result."""

    code: str
    message: str
    blocking: bool = False


class PaymentReturnSignal(BaseModel):
    """Parsed return query of the external checkout."""

    success: bool
    credits: int = Field(default=0, ge=0)
    checkout_session_id: Optional[str] = None


class ResumeOutcome(BaseModel):
    """
    What a resume attempt did.

    status:
        resumed    - checkpoint consumed, pending groups re-admitted
        degraded   - no usable checkpoint; nothing resumed automatically
        duplicate  - another channel already handled the resume
    """

    status: Literal["resumed", "degraded", "duplicate"]
    source: str
    batch_id: Optional[str] = None
    groups: list[ItemGroup] = Field(default_factory=list)
    reservation: Optional[Reservation] = None
    shortfall: int = 0
    original_asset_refs: list[str] = Field(default_factory=list)


class PipelineResult(BaseModel):
    """Everything the review screen needs after a run or resume."""

    session_id: str
    batch_id: str
    state: ResumeState
    assets: list[UploadedAsset] = Field(default_factory=list)
    groups: list[ItemGroup] = Field(default_factory=list)
    scenario: Optional[Scenario] = None
    classifier_message: Optional[str] = None
    ungrouped_indices: list[int] = Field(default_factory=list)
    reservation: Optional[Reservation] = None
    shortfall: int = 0
    checkout_url: Optional[str] = None
    account: Optional[CreditAccount] = None
    issues: list[PipelineIssue] = Field(default_factory=list)
    progress: Optional[ProgressState] = None

    @property
    def enriched_count(self) -> int:
        return sum(1 for g in self.groups if g.enrichment_status == "enriched")

    @property
    def pending_count(self) -> int:
        return sum(1 for g in self.groups if g.enrichment_status == "pending")


# ===================
# ROUTE BODIES
# ===================

class RegroupRequest(BaseModel):
    """Manual partition of photos, by sequence index."""

    partition: list[list[int]] = Field(..., min_length=1)


class ReviewResponse(BaseModel):
    """Drafts produced by a review resolution."""

    action: Literal["separate", "bundle", "regroup", "manual_entry"]
    drafts: list[ListingDraft] = Field(default_factory=list)
    groups: list[ItemGroup] = Field(default_factory=list)
