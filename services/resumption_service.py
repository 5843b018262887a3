"""
Checkpoint / resumption manager.

Makes the pipeline survive the trip to the external checkout. Before the
redirect the in-flight groups are checkpointed; when the user comes back
the checkpoint is consumed exactly once and the pending groups go
through admission and enrichment again.

States:
    idle -> awaiting_admission -> checkpoint_saved -> resuming -> merging -> complete

    awaiting_admission -> complete    full grant, nothing to checkpoint
    checkpoint_saved   -> complete    user cancelled
    idle               -> resuming    return signal reached a fresh process
    resuming           -> complete    no usable checkpoint
    complete           -> idle        next batch

Return is detected on two channels, the URL signal (handle_return) and a
balance poller. Both end in attempt_resume(), which holds a lock and a
one-shot flag so only the first one resumes.
"""

import asyncio
from typing import Mapping, Optional

import structlog

from config import settings
from exceptions import AppError, InvalidStateTransitionError
from integrations.payments import PaymentRedirector, build_checkout_url, parse_payment_return
from models.bulk_ingest import ResumeOutcome, ResumeState
from models.checkpoint import ProcessingCheckpoint
from models.item_group import ItemGroup
from services.checkpoint_service import CheckpointStore
from services.enrichment_service import AdmittedEnrichment

logger = structlog.get_logger(__name__)


ALLOWED_TRANSITIONS: dict[ResumeState, set[ResumeState]] = {
    ResumeState.IDLE: {ResumeState.AWAITING_ADMISSION, ResumeState.RESUMING},
    ResumeState.AWAITING_ADMISSION: {ResumeState.CHECKPOINT_SAVED, ResumeState.COMPLETE},
    ResumeState.CHECKPOINT_SAVED: {ResumeState.RESUMING, ResumeState.COMPLETE},
    ResumeState.RESUMING: {ResumeState.MERGING, ResumeState.COMPLETE},
    ResumeState.MERGING: {ResumeState.COMPLETE},
    ResumeState.COMPLETE: {ResumeState.IDLE},
}


def resume_batch_id(batch_id: str) -> str:
    """Idempotency scope of the post-payment admission."""
    return f"{batch_id}:resume"


def merge_groups(checkpoint: ProcessingCheckpoint, resumed: list[ItemGroup]) -> list[ItemGroup]:
    """
    Merge groups recovered from a checkpoint with the resumed ones.

    Display order follows checkpoint.group_order; a resumed group
    replaces the stored group with the same id.
    """
    by_id = {g.id: g for g in checkpoint.enriched_groups}
    by_id.update({g.id: g for g in resumed})

    merged = [by_id.pop(gid) for gid in checkpoint.group_order if gid in by_id]
    merged.extend(sorted(by_id.values(), key=lambda g: g.sort_key))
    return merged


class ResumptionManager:
    """
    Resumption state machine for one session.

    Core methods:
    - checkpoint_and_redirect: save, hand off to checkout, start polling
    - handle_return: URL channel
    - check_balance / start_polling: poller channel
    - attempt_resume: the single guarded resume
    - cancel / aclose: teardown
    """

    def __init__(
        self,
        session_id: str,
        store: CheckpointStore,
        admitted: AdmittedEnrichment,
        redirector: PaymentRedirector,
        poll_interval: Optional[float] = None,
        poll_timeout: Optional[float] = None,
        user_ref: Optional[str] = None
    ):
        self.session_id = session_id
        self.store = store
        self.admitted = admitted
        self.redirector = redirector
        self.poll_interval = poll_interval or settings.credit_poll_interval_seconds
        self.poll_timeout = poll_timeout or settings.credit_poll_timeout_seconds
        self.user_ref = user_ref

        self.state = ResumeState.IDLE
        self.credit_baseline: Optional[int] = None
        self.checkout_url: Optional[str] = None
        self.last_outcome: Optional[ResumeOutcome] = None

        self._lock = asyncio.Lock()
        self._consumed = False
        self._poll_task: Optional[asyncio.Task] = None

    # ===================
    # STATE MACHINE
    # ===================

    def transition(self, new_state: ResumeState) -> None:
        """
        Move to a new state.

        Raises:
            InvalidStateTransitionError: If the move is not allowed
        """
        if new_state not in ALLOWED_TRANSITIONS[self.state]:
            raise InvalidStateTransitionError(self.state.value, new_state.value)

        logger.info(
            "resume_state_changed",
            session_id=self.session_id,
            from_state=self.state.value,
            to_state=new_state.value
        )
        self.state = new_state

    def begin_admission(self) -> None:
        """Enter admission for a new batch."""
        if self.state == ResumeState.COMPLETE:
            self.transition(ResumeState.IDLE)
        self.transition(ResumeState.AWAITING_ADMISSION)
        self._consumed = False
        self.last_outcome = None
        self.checkout_url = None

    def finish_admission(self) -> None:
        """Every group was admitted; nothing to checkpoint."""
        self.transition(ResumeState.COMPLETE)

    @property
    def accepts_new_batch(self) -> bool:
        return self.state in (ResumeState.IDLE, ResumeState.COMPLETE)

    def abandon_admission(self) -> None:
        """Leave admission after a failure so the next batch can start."""
        if self.state == ResumeState.AWAITING_ADMISSION:
            logger.warning("admission_abandoned", session_id=self.session_id)
            self.transition(ResumeState.COMPLETE)

    # ===================
    # CHECKPOINT + REDIRECT
    # ===================

    async def checkpoint_and_redirect(self, checkpoint: ProcessingCheckpoint, quantity: int) -> str:
        """
        Save the checkpoint and hand the user to the checkout.

        The balance at this moment is stored as the baseline the poller
        compares against.

        Returns:
            The checkout URL given to the redirector
        """
        account = await self.admitted.admission.refresh()
        self.credit_baseline = account.total_available
        checkpoint = checkpoint.model_copy(update={"credit_baseline": self.credit_baseline})

        await self.store.save(checkpoint)
        self.transition(ResumeState.CHECKPOINT_SAVED)

        self.checkout_url = build_checkout_url(self.session_id, quantity, user_ref=self.user_ref)
        await self.redirector.redirect(self.checkout_url)

        logger.info(
            "checkout_redirect_issued",
            session_id=self.session_id,
            quantity=quantity,
            credit_baseline=self.credit_baseline
        )
        self.start_polling()
        return self.checkout_url

    # ===================
    # RETURN DETECTION
    # ===================

    async def handle_return(self, query_params: Mapping[str, str]) -> Optional[ResumeOutcome]:
        """
        URL channel: the checkout sent the user back.

        Returns None when the query carries no successful payment; the
        checkpoint stays in place and the poller keeps running.
        """
        signal = parse_payment_return(query_params)
        if signal is None or not signal.success:
            logger.info(
                "payment_return_not_successful",
                session_id=self.session_id,
                has_signal=signal is not None
            )
            return None

        logger.info("payment_return_detected", session_id=self.session_id, credits=signal.credits)
        self.stop_polling()
        return await self.attempt_resume("url_signal")

    async def check_balance(self) -> Optional[ResumeOutcome]:
        """
        Poller channel: one balance check.

        Resumes when the balance rose above the baseline.
        """
        if self.credit_baseline is None or self._consumed:
            return None

        try:
            account = await self.admitted.admission.refresh()
        except AppError as e:
            logger.warning("credit_poll_failed", session_id=self.session_id, error=e.message)
            return None

        if account.total_available <= self.credit_baseline:
            return None

        logger.info(
            "credit_increase_detected",
            session_id=self.session_id,
            baseline=self.credit_baseline,
            available=account.total_available
        )
        return await self.attempt_resume("poller")

    async def restore_baseline(self) -> bool:
        """
        Recover the poll baseline from a stored checkpoint.

        Used when the return reaches a process that did not issue the
        redirect. Returns False when there is no checkpoint to watch.
        """
        if self.credit_baseline is not None:
            return True
        checkpoint = await self.store.load(self.session_id)
        if checkpoint is None:
            return False
        self.credit_baseline = checkpoint.credit_baseline
        logger.info("credit_baseline_restored", session_id=self.session_id, baseline=self.credit_baseline)
        return True

    def start_polling(self, baseline: Optional[int] = None) -> None:
        """Start the background balance poller (no-op if already running)."""
        if baseline is not None:
            self.credit_baseline = baseline
        if self._poll_task is not None and not self._poll_task.done():
            return
        self._poll_task = asyncio.create_task(self._poll_loop())

    async def _poll_loop(self) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.poll_timeout

        while loop.time() < deadline:
            await asyncio.sleep(self.poll_interval)
            # Shielded so cancelling the poller never interrupts a resume in progress
            outcome = await asyncio.shield(self.check_balance())
            if outcome is not None or self._consumed:
                return

        logger.info("credit_poll_timed_out", session_id=self.session_id)

    @property
    def is_polling(self) -> bool:
        return self._poll_task is not None and not self._poll_task.done()

    def stop_polling(self) -> None:
        """Cancel the poller unless it is the caller."""
        task = self._poll_task
        if task is None or task.done() or task is asyncio.current_task():
            return
        task.cancel()
        logger.debug("credit_poll_cancelled", session_id=self.session_id)

    # ===================
    # RESUME
    # ===================

    async def attempt_resume(self, source: str) -> ResumeOutcome:
        """
        The single resume entry point.

        Only the first caller resumes; later callers get status
        "duplicate". A missing or corrupt checkpoint yields "degraded".
        """
        async with self._lock:
            if self._consumed or self.state not in (ResumeState.IDLE, ResumeState.CHECKPOINT_SAVED):
                logger.info(
                    "resume_duplicate_ignored",
                    session_id=self.session_id,
                    source=source,
                    state=self.state.value
                )
                return ResumeOutcome(status="duplicate", source=source)

            self._consumed = True
            self.transition(ResumeState.RESUMING)

            checkpoint = await self.store.load(self.session_id)
            if checkpoint is None:
                logger.warning("resume_degraded_no_checkpoint", session_id=self.session_id, source=source)
                self.transition(ResumeState.COMPLETE)
                self.last_outcome = ResumeOutcome(status="degraded", source=source)
                return self.last_outcome

            await self.store.clear(self.session_id)
            pending = checkpoint.pending_groups
            logger.info(
                "resume_started",
                session_id=self.session_id,
                source=source,
                pending=len(pending),
                recovered=len(checkpoint.enriched_groups)
            )

            reservation = None
            shortfall = len(pending)
            try:
                resumed, reservation = await self.admitted.run(
                    pending, resume_batch_id(checkpoint.batch_id), checkpoint.category_hint
                )
                shortfall = reservation.shortfall
            except AppError as e:
                logger.error("resume_enrichment_unavailable", session_id=self.session_id, error=e.message)
                resumed = pending

            self.transition(ResumeState.MERGING)
            groups = merge_groups(checkpoint, resumed)
            self.transition(ResumeState.COMPLETE)

            self.last_outcome = ResumeOutcome(
                status="resumed",
                source=source,
                batch_id=checkpoint.batch_id,
                groups=groups,
                reservation=reservation,
                shortfall=shortfall,
                original_asset_refs=checkpoint.original_asset_refs,
            )
            logger.info(
                "resume_complete",
                session_id=self.session_id,
                source=source,
                groups=len(groups),
                shortfall=shortfall
            )
            return self.last_outcome

    # ===================
    # TEARDOWN
    # ===================

    async def cancel(self) -> None:
        """User abandoned the checkout: drop the checkpoint, stop polling."""
        async with self._lock:
            self.stop_polling()
            await self.store.clear(self.session_id)
            self._consumed = True
            if self.state in (ResumeState.AWAITING_ADMISSION, ResumeState.CHECKPOINT_SAVED):
                self.transition(ResumeState.COMPLETE)
            logger.info("resume_cancelled", session_id=self.session_id)

    async def aclose(self) -> None:
        """Stop background work. The checkpoint is kept for a later return."""
        task = self._poll_task
        self.stop_polling()
        if task is not None and task is not asyncio.current_task():
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._poll_task = None
