"""
Bulk ingestion pipeline.

Wires the components together for one user session:

    upload -> classify -> admission -> enrich -> review
                              |
                              +-- shortfall: checkpoint + checkout redirect,
                                  resumed later by resume() / poll_resume()

Only an oversized batch, or a new batch while a checkout is still
outstanding, raises. Every other problem (failed uploads, credit or
AI outage, missing checkpoint) is reported as a PipelineIssue on the
result and the pipeline completes in a degraded form.
"""

from typing import Mapping, Optional
from uuid import uuid4

import structlog

from config import settings
from exceptions import AppError, InvalidStateTransitionError, NothingToReviewError, PipelineBusyError
from integrations.listing_ai_client import ListingAIService, get_listing_ai_service
from integrations.payments import DeferredRedirector, PaymentRedirector
from integrations.storage_client import HttpImageStorage, ImageStorage
from models.asset import AssetFile, UploadedAsset
from models.bulk_ingest import PipelineIssue, PipelineResult, ResumeOutcome, ResumeState
from models.checkpoint import ProcessingCheckpoint
from models.credit import CreditAccount, Reservation
from models.item_group import ClassificationOutcome, EnrichmentStatus, ItemGroup, ListingDraft
from models.progress import ProgressState
from services.checkpoint_service import CheckpointStore, get_checkpoint_store
from services.credit_service import AdmissionController, CreditGateway, get_credit_gateway
from services.enrichment_service import AdmittedEnrichment, EnrichmentService
from services.grouping_service import GroupingService
from services.progress_service import ProgressTracker
from services.resumption_service import ResumptionManager
from services.review_service import ReviewSession
from services.upload_service import UploadService

logger = structlog.get_logger(__name__)


class BulkIngestPipeline:
    """
    One session's bulk ingestion workflow.

    Core methods:
    - run: full pipeline for a batch of photos
    - resume / poll_resume: continue after the external checkout
    - cancel: abandon the checkout and drop the checkpoint
    - review: the reviewable group set
    """

    def __init__(
        self,
        session_id: str,
        uploads: UploadService,
        grouping: GroupingService,
        enrichment: EnrichmentService,
        admission: AdmissionController,
        store: CheckpointStore,
        redirector: PaymentRedirector,
        ai: ListingAIService,
        tracker: Optional[ProgressTracker] = None,
        user_ref: Optional[str] = None
    ):
        self.session_id = session_id
        self.uploads = uploads
        self.grouping = grouping
        self.enrichment = enrichment
        self.admission = admission
        self.ai = ai
        self.tracker = tracker or ProgressTracker()

        self.admitted = AdmittedEnrichment(enrichment, admission)
        self.resumption = ResumptionManager(
            session_id, store, self.admitted, redirector, user_ref=user_ref
        )
        self.uploads.subscribe(self.tracker.on_upload_event)

        self.result: Optional[PipelineResult] = None
        self.classification: Optional[ClassificationOutcome] = None
        self.review_session: Optional[ReviewSession] = None
        self._running = False

    @property
    def state(self) -> ResumeState:
        return self.resumption.state

    def progress(self) -> ProgressState:
        return self.tracker.snapshot()

    # ===================
    # RUN
    # ===================

    async def run(
        self,
        files: list[AssetFile],
        category_hint: Optional[str] = None,
        batch_id: Optional[str] = None
    ) -> PipelineResult:
        """
        Process a batch of photos end to end.

        Args:
            files: Photos in selection order
            category_hint: Manual category, applied to every group
            batch_id: Idempotency scope of the credit debit (generated
                when omitted)

        Raises:
            BatchTooLargeError: Before any upload, if the batch is over the cap
            PipelineBusyError: If a run is already in progress
            InvalidStateTransitionError: Before any upload, if a checkout
                for the previous batch is still outstanding
        """
        if self._running:
            raise PipelineBusyError(self.session_id)

        self.uploads.validate_batch(len(files))
        if not self.resumption.accepts_new_batch:
            raise InvalidStateTransitionError(self.state.value, ResumeState.AWAITING_ADMISSION.value)
        batch_id = batch_id or uuid4().hex

        self._running = True
        try:
            return await self._run(files, category_hint, batch_id)
        finally:
            self.resumption.abandon_admission()
            self._running = False

    async def _run(self, files: list[AssetFile], category_hint: Optional[str], batch_id: str) -> PipelineResult:
        logger.info(
            "bulk_ingest_started",
            session_id=self.session_id,
            batch_id=batch_id,
            files=len(files),
            category_hint=category_hint
        )
        issues: list[PipelineIssue] = []
        self.tracker.start(len(files))

        assets = await self.uploads.upload(files)
        uploaded = [a for a in assets if a.is_uploaded]
        failed_uploads = len(assets) - len(uploaded)
        if failed_uploads:
            issues.append(PipelineIssue(
                code="UPLOAD_FAILED",
                message=f"{failed_uploads} photo(s) could not be uploaded",
            ))

        outcome = await self.grouping.classify(
            [a.remote_ref for a in uploaded],
            category_hint,
            [a.sequence_index for a in uploaded],
        )
        self.classification = outcome
        self.tracker.set_group_count(outcome.groups)

        if outcome.status == "unavailable":
            issues.append(PipelineIssue(
                code="AI_SERVICE_UNAVAILABLE",
                message="Photos could not be analyzed; enter the items manually",
                blocking=True,
            ))
        if outcome.unprocessed_indices:
            issues.append(PipelineIssue(
                code="PHOTOS_UNPROCESSED",
                message=f"{len(outcome.unprocessed_indices)} photo(s) were listed as separate items without analysis",
            ))

        self.resumption.begin_admission()
        credits_checked = True
        try:
            groups, reservation = await self._enrich(outcome.groups, batch_id, category_hint)
        except AppError as e:
            logger.error(
                "credit_admission_failed",
                session_id=self.session_id,
                batch_id=batch_id,
                error=e.message,
                code=e.code
            )
            credits_checked = False
            groups = outcome.groups
            reservation = self._unadmitted(groups, batch_id)
            issues.append(PipelineIssue(
                code="CREDITS_UNAVAILABLE",
                message="Credits could not be checked; enter the items manually or try again later",
                blocking=True,
            ))

        attempted = [g for g in groups if g.enrichment_status != EnrichmentStatus.PENDING]
        if attempted and all(g.enrichment_status == EnrichmentStatus.FAILED for g in attempted):
            issues.append(PipelineIssue(
                code="AI_SERVICE_UNAVAILABLE",
                message="Descriptions could not be generated; enter the items manually",
                blocking=True,
            ))

        checkout_url = None
        if reservation.shortfall > 0 and credits_checked:
            checkpoint = ProcessingCheckpoint(
                session_id=self.session_id,
                batch_id=batch_id,
                enriched_groups=[g for g in groups if g.enrichment_status != EnrichmentStatus.PENDING],
                pending_groups=[g for g in groups if g.enrichment_status == EnrichmentStatus.PENDING],
                original_asset_refs=[a.remote_ref for a in uploaded],
                group_order=[g.id for g in groups],
                category_hint=category_hint,
            )
            try:
                checkout_url = await self.resumption.checkpoint_and_redirect(checkpoint, reservation.shortfall)
            except AppError as e:
                logger.error("checkout_handoff_failed", session_id=self.session_id, error=e.message, code=e.code)
                self.resumption.abandon_admission()
                issues.append(PipelineIssue(
                    code="CHECKOUT_UNAVAILABLE",
                    message=f"{reservation.shortfall} item(s) need credits; buy credits later or enter them manually",
                ))
        else:
            self.resumption.finish_admission()
        self.tracker.finish()

        self.review_session = ReviewSession(groups, {a.sequence_index: a.remote_ref for a in uploaded})
        self.result = PipelineResult(
            session_id=self.session_id,
            batch_id=batch_id,
            state=self.resumption.state,
            assets=assets,
            groups=groups,
            scenario=outcome.scenario,
            classifier_message=outcome.message,
            ungrouped_indices=outcome.ungrouped_indices,
            reservation=reservation,
            shortfall=reservation.shortfall,
            checkout_url=checkout_url,
            account=await self._account(),
            issues=issues,
            progress=self.tracker.snapshot(),
        )

        logger.info(
            "bulk_ingest_finished",
            session_id=self.session_id,
            batch_id=batch_id,
            state=self.result.state.value,
            groups=len(groups),
            enriched=self.result.enriched_count,
            shortfall=reservation.shortfall
        )
        return self.result

    async def _enrich(self, groups: list[ItemGroup], batch_id: str, category_hint: Optional[str]):
        listener = self.tracker.track_groups(groups)
        self.enrichment.subscribe(listener)
        try:
            return await self.admitted.run(groups, batch_id, category_hint)
        finally:
            self.enrichment.unsubscribe(listener)

    def _unadmitted(self, groups: list[ItemGroup], batch_id: str) -> Reservation:
        """Zero grant for a batch whose admission could not be decided."""
        pending = sum(1 for g in groups if g.enrichment_status == EnrichmentStatus.PENDING)
        return Reservation(
            status="insufficient" if pending else "granted",
            requested=pending,
            granted=0,
            shortfall=pending,
            idempotency_key=self.admission.idempotency_key(batch_id),
        )

    async def _account(self) -> Optional[CreditAccount]:
        try:
            return await self.admission.refresh()
        except AppError as e:
            logger.warning("credit_account_unavailable", session_id=self.session_id, error=e.message)
            return None

    # ===================
    # RESUME
    # ===================

    async def resume(self, query_params: Mapping[str, str]) -> PipelineResult:
        """URL channel: the user came back from the checkout."""
        outcome = await self.resumption.handle_return(query_params)
        if outcome is None:
            return self.current_result([PipelineIssue(
                code="PAYMENT_NOT_COMPLETED",
                message="No completed payment in the return link",
            )])
        return await self._apply_resume(outcome)

    async def poll_resume(self) -> Optional[PipelineResult]:
        """
        Poller channel, one balance check.

        Returns None while no purchase has been detected.
        """
        if not await self.resumption.restore_baseline():
            return None
        outcome = await self.resumption.check_balance()
        if outcome is None:
            return None
        return await self._apply_resume(outcome)

    def watch_for_payment(self) -> None:
        """Start the background balance poller for this session."""
        if self.resumption.credit_baseline is not None:
            self.resumption.start_polling()

    async def _apply_resume(self, outcome: ResumeOutcome) -> PipelineResult:
        if outcome.status == "duplicate":
            previous = self.resumption.last_outcome
            if previous is None or previous is outcome:
                return self.current_result()
            outcome = previous

        if outcome.status == "degraded":
            return self.current_result([PipelineIssue(
                code="CHECKPOINT_UNAVAILABLE",
                message="Nothing to resume automatically; review the remaining items manually",
            )])

        groups = outcome.groups
        batch_id = outcome.batch_id or (self.result.batch_id if self.result else "")

        asset_refs = {}
        assets: list[UploadedAsset] = []
        if self.result is not None:
            assets = self.result.assets
            asset_refs = {a.sequence_index: a.remote_ref for a in assets if a.is_uploaded}
        self.review_session = ReviewSession(groups, asset_refs)

        issues = []
        if outcome.shortfall:
            issues.append(PipelineIssue(
                code="CREDITS_INSUFFICIENT",
                message=f"{outcome.shortfall} item(s) still need credits or manual entry",
            ))

        self.result = PipelineResult(
            session_id=self.session_id,
            batch_id=batch_id,
            state=self.resumption.state,
            assets=assets,
            groups=groups,
            scenario=self.result.scenario if self.result else None,
            classifier_message=self.result.classifier_message if self.result else None,
            reservation=outcome.reservation,
            shortfall=outcome.shortfall,
            account=await self._account(),
            issues=issues,
            progress=self.tracker.snapshot(),
        )
        logger.info(
            "bulk_ingest_resumed",
            session_id=self.session_id,
            source=outcome.source,
            groups=len(groups),
            enriched=self.result.enriched_count,
            shortfall=outcome.shortfall
        )
        return self.result

    def current_result(self, issues: Optional[list[PipelineIssue]] = None) -> PipelineResult:
        """The last result (or an empty one) with the current state and extra issues."""
        base = self.result or PipelineResult(
            session_id=self.session_id,
            batch_id="",
            state=self.resumption.state,
        )
        return base.model_copy(update={
            "state": self.resumption.state,
            "issues": [*base.issues, *(issues or [])],
        })

    async def cancel(self) -> PipelineResult:
        """Abandon the checkout; pending groups stay for manual entry."""
        await self.resumption.cancel()
        logger.info("bulk_ingest_cancelled", session_id=self.session_id)
        return self.current_result()

    # ===================
    # REVIEW
    # ===================

    def review(self) -> ReviewSession:
        """
        Raises:
            NothingToReviewError: If no batch has been processed yet
        """
        if self.review_session is None:
            raise NothingToReviewError("review")
        return self.review_session

    async def resolve_bundle(self) -> ListingDraft:
        return await self.review().resolve_bundle(self.ai)

    async def aclose(self) -> None:
        await self.resumption.aclose()


def build_pipeline(
    session_id: str,
    user_id: Optional[str] = None,
    ai: Optional[ListingAIService] = None,
    storage: Optional[ImageStorage] = None,
    gateway: Optional[CreditGateway] = None,
    store: Optional[CheckpointStore] = None,
    redirector: Optional[PaymentRedirector] = None,
    tracker: Optional[ProgressTracker] = None
) -> BulkIngestPipeline:
    """
    Build a pipeline from settings.

    Any collaborator can be passed in to replace the configured one.
    """
    ai = ai or get_listing_ai_service()
    user_id = user_id or session_id

    pipeline = BulkIngestPipeline(
        session_id=session_id,
        uploads=UploadService(storage or HttpImageStorage()),
        grouping=GroupingService(ai),
        enrichment=EnrichmentService(ai),
        admission=AdmissionController(gateway or get_credit_gateway(user_id), session_id),
        store=store or get_checkpoint_store(),
        redirector=redirector or DeferredRedirector(),
        ai=ai,
        tracker=tracker,
        user_ref=user_id,
    )
    logger.debug(
        "bulk_ingest_pipeline_built",
        session_id=session_id,
        ai_provider=settings.ai_provider,
        credit_backend=settings.credit_backend,
        checkpoint_backend=settings.checkpoint_backend
    )
    return pipeline
