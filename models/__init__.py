"""
Pydantic models for validation and serialization.
"""

from models.base import BaseSchema
from models.asset import (
    AssetStatus,
    AssetFile,
    UploadedAsset,
    UploadProgressEvent,
)
from models.item_group import (
    Scenario,
    EnrichmentStatus,
    CONDITIONS,
    CATEGORIES,
    ListingAttributes,
    ItemGroup,
    ItemGroupUpdate,
    DetectedGroup,
    ClassificationResponse,
    ClassificationOutcome,
    BundleSummary,
    ListingDraft,
)
from models.credit import (
    CreditAccount,
    DebitResult,
    Reservation,
)
from models.checkpoint import ProcessingCheckpoint, CHECKPOINT_VERSION
from models.progress import (
    ProgressPhase,
    PHASE_ORDER,
    ItemStatus,
    ItemProgress,
    ProgressState,
)
from models.bulk_ingest import (
    ResumeState,
    PipelineIssue,
    PaymentReturnSignal,
    ResumeOutcome,
    PipelineResult,
    RegroupRequest,
    ReviewResponse,
)

__all__ = [
    "BaseSchema",
    # Assets
    "AssetStatus",
    "AssetFile",
    "UploadedAsset",
    "UploadProgressEvent",
    # Groups
    "Scenario",
    "EnrichmentStatus",
    "CONDITIONS",
    "CATEGORIES",
    "ListingAttributes",
    "ItemGroup",
    "ItemGroupUpdate",
    "DetectedGroup",
    "ClassificationResponse",
    "ClassificationOutcome",
    "BundleSummary",
    "ListingDraft",
    # Credits
    "CreditAccount",
    "DebitResult",
    "Reservation",
    # Checkpoints
    "ProcessingCheckpoint",
    "CHECKPOINT_VERSION",
    # Progress
    "ProgressPhase",
    "PHASE_ORDER",
    "ItemStatus",
    "ItemProgress",
    "ProgressState",
    # Pipeline
    "ResumeState",
    "PipelineIssue",
    "PaymentReturnSignal",
    "ResumeOutcome",
    "PipelineResult",
    "RegroupRequest",
    "ReviewResponse",
]
