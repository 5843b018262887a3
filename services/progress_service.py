"""
Progress tracker.

Observes the pipeline and turns elapsed time into a phase, a countdown
and per-item rows for display. It owns no business state.

Cost model:
    upload    seconds per photo
    analyze   seconds per photo
    describe  seconds per item GROUP (14 photos in 5 groups cost 5 units)

The countdown starts from the worst case (every photo its own group) and
drops once the real group count is known. The AI service answers each
call atomically, so the phase shown is derived from elapsed time against
the cost model rather than from service signals. Phases never go back.
"""

import time
from dataclasses import dataclass
from typing import Callable, Optional

import structlog

from config import settings
from models.asset import AssetStatus, UploadProgressEvent
from models.item_group import EnrichmentStatus, ItemGroup
from models.progress import (
    PHASE_ORDER,
    ItemProgress,
    ItemStatus,
    ProgressPhase,
    ProgressState,
)

logger = structlog.get_logger(__name__)

ProgressListener = Callable[[ProgressState], None]


def format_countdown(seconds: float) -> str:
    """
    Format a countdown as m:ss.

    - 0 → "0:00"
    - 75 → "1:15"
    - 3600 → "60:00"
    """
    total = max(0, int(round(seconds)))
    minutes, secs = divmod(total, 60)
    return f"{minutes}:{secs:02d}"


@dataclass(frozen=True)
class CostModel:
    """Expected seconds per unit of work, per phase."""

    upload_seconds_per_asset: float
    analyze_seconds_per_asset: float
    describe_seconds_per_group: float

    @classmethod
    def from_settings(cls) -> "CostModel":
        return cls(
            upload_seconds_per_asset=settings.upload_seconds_per_asset,
            analyze_seconds_per_asset=settings.analyze_seconds_per_asset,
            describe_seconds_per_group=settings.describe_seconds_per_group,
        )

    def estimate(self, assets: int, groups: int) -> float:
        return (
            assets * self.upload_seconds_per_asset
            + assets * self.analyze_seconds_per_asset
            + groups * self.describe_seconds_per_group
        )


def _rank(phase: ProgressPhase) -> int:
    return PHASE_ORDER.index(phase)


class ProgressTracker:
    """
    Phase, countdown and per-item status for one pipeline run.

    Usage:
        tracker.start(asset_count)
        tracker.on_upload_event(event)     # from UploadService
        tracker.set_group_count(groups)    # after classification
        tracker.on_group_event(i, group)   # from EnrichmentService
        tracker.finish()
    """

    def __init__(
        self,
        cost_model: Optional[CostModel] = None,
        clock: Callable[[], float] = time.monotonic
    ):
        self.cost_model = cost_model or CostModel.from_settings()
        self._clock = clock
        self._listeners: list[ProgressListener] = []
        self._reset(0)

    def _reset(self, asset_count: int) -> None:
        self.asset_count = asset_count
        self.group_count = asset_count
        self.groups_known = False
        self._phase = ProgressPhase.UPLOAD
        self._started_at = self._clock()

        self._upload_rate = self.cost_model.upload_seconds_per_asset
        self._analyze_rate = self.cost_model.analyze_seconds_per_asset
        self._describe_rate = self.cost_model.describe_seconds_per_group

        self._uploads_done = 0
        self._upload_finished_at: Optional[float] = None
        self._analyze_finished_at: Optional[float] = None
        self._described = 0
        self._finished = False

        self._items = [
            ItemProgress(index=i + 1, title=f"Photo {i + 1}")
            for i in range(asset_count)
        ]

    def subscribe(self, listener: ProgressListener) -> None:
        self._listeners.append(listener)

    def _notify(self) -> None:
        if not self._listeners:
            return
        state = self.snapshot()
        for listener in self._listeners:
            listener(state)

    # ===================
    # INPUT EVENTS
    # ===================

    def start(self, asset_count: int) -> None:
        """Begin a run, seeding the countdown with the worst case."""
        self._reset(asset_count)
        logger.debug(
            "progress_started",
            assets=asset_count,
            estimate_seconds=round(self.estimated_total_seconds())
        )
        self._notify()

    def on_upload_event(self, event: UploadProgressEvent) -> None:
        """Listener for UploadService progress events."""
        position = event.sequence_index
        if 0 <= position < len(self._items) and not self.groups_known:
            status = {
                AssetStatus.UPLOADING: ItemStatus.ANALYZING,
                AssetStatus.UPLOADED: ItemStatus.COMPLETED,
                AssetStatus.FAILED: ItemStatus.FAILED,
            }.get(event.status, ItemStatus.WAITING)
            self._items[position] = self._items[position].model_copy(update={"status": status})

        self._uploads_done = event.completed
        if event.completed > 0:
            # Re-estimate the per-photo upload cost from what was observed
            self._upload_rate = self.elapsed() / event.completed
        if event.total and event.completed >= event.total:
            self._upload_finished_at = self.elapsed()
            self._advance(ProgressPhase.ANALYZE)
        self._notify()

    def set_group_count(self, groups: list[ItemGroup]) -> None:
        """Classification finished: price the describe phase per group."""
        now = self.elapsed()
        if self._upload_finished_at is None:
            self._upload_finished_at = now
        self._analyze_finished_at = now
        if self.asset_count:
            self._analyze_rate = max(0.0, now - self._upload_finished_at) / self.asset_count

        previous = self.estimated_seconds_remaining()
        self.group_count = len(groups)
        self.groups_known = True
        self._items = [
            ItemProgress(
                index=i + 1,
                title=g.title or f"Item {i + 1}",
                status=ItemStatus.COMPLETED if g.enrichment_status == EnrichmentStatus.ENRICHED else ItemStatus.WAITING,
            )
            for i, g in enumerate(groups)
        ]
        self._advance(ProgressPhase.DESCRIBE)

        logger.debug(
            "progress_groups_known",
            groups=self.group_count,
            previous_remaining=previous,
            remaining=self.estimated_seconds_remaining()
        )
        self._notify()

    def on_group_event(self, position: int, group: ItemGroup) -> None:
        """Listener for EnrichmentService start/finish events."""
        if not (0 <= position < len(self._items)):
            return

        if group.enrichment_status == EnrichmentStatus.PENDING:
            status = ItemStatus.ANALYZING
        elif group.enrichment_status == EnrichmentStatus.ENRICHED:
            status = ItemStatus.COMPLETED
        else:
            status = ItemStatus.FAILED

        update = {"status": status}
        if group.title:
            update["title"] = group.title
        self._items[position] = self._items[position].model_copy(update=update)

        if status != ItemStatus.ANALYZING:
            self._described += 1
            describe_elapsed = self.elapsed() - (self._analyze_finished_at or 0.0)
            self._describe_rate = max(0.0, describe_elapsed) / self._described
        self._notify()

    def track_groups(self, groups: list[ItemGroup]) -> Callable[[int, ItemGroup], None]:
        """
        Adapt enrichment events for a subset of the displayed groups.

        The enrichment engine reports positions within the list it was
        given; this maps them back to display rows by group id.
        """
        rows = {g.id: i for i, g in enumerate(groups)}

        def listener(position: int, group: ItemGroup) -> None:
            row = rows.get(group.id)
            if row is not None:
                self.on_group_event(row, group)

        return listener

    def finish(self) -> None:
        self._finished = True
        self._advance(ProgressPhase.COMPLETE)
        self._notify()

    # ===================
    # DERIVED STATE
    # ===================

    def elapsed(self) -> float:
        return max(0.0, self._clock() - self._started_at)

    def _advance(self, phase: ProgressPhase) -> None:
        if _rank(phase) > _rank(self._phase):
            logger.debug("progress_phase_changed", from_phase=self._phase.value, to_phase=phase.value)
            self._phase = phase

    def _phase_for_elapsed(self, elapsed: float) -> ProgressPhase:
        upload_end = self.asset_count * self._upload_rate
        analyze_end = upload_end + self.asset_count * self._analyze_rate
        if elapsed < upload_end:
            return ProgressPhase.UPLOAD
        if elapsed < analyze_end:
            return ProgressPhase.ANALYZE
        return ProgressPhase.DESCRIBE

    @property
    def phase(self) -> ProgressPhase:
        if not self._finished and self.asset_count:
            self._advance(self._phase_for_elapsed(self.elapsed()))
        return self._phase

    def estimated_total_seconds(self) -> float:
        upload = (
            self._upload_finished_at
            if self._upload_finished_at is not None
            else self.asset_count * self._upload_rate
        )
        analyze = (
            self._analyze_finished_at - (self._upload_finished_at or 0.0)
            if self._analyze_finished_at is not None
            else self.asset_count * self._analyze_rate
        )
        describe = self.group_count * self._describe_rate
        return upload + analyze + describe

    def estimated_seconds_remaining(self) -> int:
        if self._finished:
            return 0
        return max(0, int(round(self.estimated_total_seconds() - self.elapsed())))

    def _counts(self, phase: ProgressPhase) -> tuple[int, int]:
        if phase == ProgressPhase.UPLOAD:
            return self._uploads_done, self.asset_count
        if phase == ProgressPhase.ANALYZE:
            return (self.asset_count if self.groups_known else 0), self.asset_count
        if phase == ProgressPhase.DESCRIBE:
            return min(self._described, self.group_count), self.group_count
        total = self.group_count if self.groups_known else self.asset_count
        return total, total

    def snapshot(self) -> ProgressState:
        phase = self.phase
        current, total = self._counts(phase)
        return ProgressState(
            phase=phase,
            current=current,
            total=total,
            estimated_seconds_remaining=self.estimated_seconds_remaining(),
            per_item_status=list(self._items),
        )
