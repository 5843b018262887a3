"""
Business logic services.

Each service handles one stage of the bulk ingestion pipeline.
"""

from services.upload_service import UploadService
from services.grouping_service import GroupingService, repair_partition
from services.credit_service import (
    AdmissionController,
    CreditGateway,
    InMemoryCreditLedger,
    SupabaseCreditLedger,
    get_credit_gateway,
)
from services.enrichment_service import EnrichmentService, AdmittedEnrichment
from services.checkpoint_service import (
    CheckpointStore,
    FileCheckpointStore,
    MemoryCheckpointStore,
    SupabaseCheckpointStore,
    get_checkpoint_store,
)
from services.resumption_service import ResumptionManager, ALLOWED_TRANSITIONS
from services.progress_service import CostModel, ProgressTracker, format_countdown
from services.review_service import ReviewSession
from services.listing_draft_service import ListingDraftService, get_listing_draft_service
from services.bulk_ingest_service import BulkIngestPipeline, build_pipeline
from services.session_registry import SessionRegistry, get_session_registry

__all__ = [
    "UploadService",
    "GroupingService",
    "repair_partition",
    "AdmissionController",
    "CreditGateway",
    "InMemoryCreditLedger",
    "SupabaseCreditLedger",
    "get_credit_gateway",
    "EnrichmentService",
    "AdmittedEnrichment",
    "CheckpointStore",
    "FileCheckpointStore",
    "MemoryCheckpointStore",
    "SupabaseCheckpointStore",
    "get_checkpoint_store",
    "ResumptionManager",
    "ALLOWED_TRANSITIONS",
    "CostModel",
    "ProgressTracker",
    "format_countdown",
    "ReviewSession",
    "ListingDraftService",
    "get_listing_draft_service",
    "BulkIngestPipeline",
    "build_pipeline",
    "SessionRegistry",
    "get_session_registry",
]
