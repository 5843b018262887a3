"""
Grouping classifier.

Decides whether a batch of photos shows one item from several angles or
several distinct items, and turns the answer into ItemGroups.

Small batches (below settings.small_batch_threshold) get one joint
classification call that may answer same_item. Larger batches go to the
bulk endpoint, which only ever answers distinct_item. Whatever the service
returns is repaired into a partition: every photo ends in exactly one group.
"""

from typing import Optional, Sequence

import structlog

from config import settings
from exceptions import ExternalServiceError, NothingToReviewError
from integrations.listing_ai_client import ListingAIService
from models.item_group import (
    ClassificationOutcome,
    ClassificationResponse,
    DetectedGroup,
    ItemGroup,
    Scenario,
)
from utils.text_utils import normalize_category

logger = structlog.get_logger(__name__)


def repair_partition(detected: Sequence[Sequence[int]], count: int) -> list[list[int]]:
    """
    Turn a service grouping into a partition of range(count).

    - out-of-range indices are dropped
    - an index claimed by an earlier group is dropped from later ones
    - groups left empty are discarded
    - indices no group claimed become singleton groups

    >>> repair_partition([[0, 2], [2, 5], []], 4)
    [[0, 2], [1], [3]]
    """
    seen: set[int] = set()
    partition: list[list[int]] = []

    for group in detected:
        kept = []
        for index in group:
            if 0 <= index < count and index not in seen:
                seen.add(index)
                kept.append(index)
        if kept:
            partition.append(sorted(kept))

    partition.extend([i] for i in range(count) if i not in seen)
    return partition


class GroupingService:
    """
    Grouping classifier.

    Core methods:
    - classify: group a batch of uploaded photos
    - force_distinct: user override, one group per detected item
    - merge_as_same_item: user override, everything is one item
    """

    def __init__(
        self,
        ai: ListingAIService,
        small_batch_threshold: Optional[int] = None,
        bulk_max_rounds: Optional[int] = None
    ):
        self.ai = ai
        self.small_batch_threshold = small_batch_threshold or settings.small_batch_threshold
        self.bulk_max_rounds = bulk_max_rounds or settings.bulk_max_rounds

    # ===================
    # CLASSIFICATION
    # ===================

    async def classify(
        self,
        asset_refs: list[str],
        category_hint: Optional[str] = None,
        asset_indices: Optional[list[int]] = None
    ) -> ClassificationOutcome:
        """
        Group uploaded photos by item.

        Args:
            asset_refs: Remote refs of the uploaded photos
            category_hint: Manual category chosen by the user
            asset_indices: Sequence index of each ref (defaults to 0..n-1);
                failed uploads leave gaps here

        Returns:
            ClassificationOutcome. A service failure is reported as
            status="unavailable" with every photo ungrouped, never raised.
        """
        indices = self._indices(asset_refs, asset_indices)
        count = len(asset_refs)

        if count == 0:
            logger.info("classification_skipped_empty_batch")
            return ClassificationOutcome(status="empty")

        if count == 1:
            group = self._build_group([0], asset_refs, indices, Scenario.SAME_ITEM, category_hint)
            return ClassificationOutcome(scenario=Scenario.SAME_ITEM, groups=[group])

        use_bulk = count >= self.small_batch_threshold
        logger.info("classification_started", count=count, bulk=use_bulk, category_hint=category_hint)

        try:
            if use_bulk:
                outcome = await self._classify_bulk(asset_refs, indices, category_hint)
            else:
                outcome = await self._classify_small(asset_refs, indices, category_hint)
        except ExternalServiceError as e:
            logger.error("classification_unavailable", count=count, error=e.message)
            return ClassificationOutcome(
                status="unavailable",
                ungrouped_indices=sorted(indices),
                used_bulk=use_bulk,
                error=e.message,
            )

        logger.info(
            "classification_complete",
            scenario=outcome.scenario.value if outcome.scenario else None,
            groups=len(outcome.groups),
            unprocessed=len(outcome.unprocessed_indices)
        )
        return outcome

    async def _classify_small(
        self,
        refs: list[str],
        indices: list[int],
        category_hint: Optional[str]
    ) -> ClassificationOutcome:
        response = await self.ai.classify(refs, category_hint)

        scenario = response.scenario
        if scenario is None:
            scenario = Scenario.SAME_ITEM if len(response.groups) <= 1 else Scenario.DISTINCT_ITEM

        if scenario == Scenario.SAME_ITEM:
            detected = response.groups[0] if response.groups else None
            group = self._build_group(
                list(range(len(refs))), refs, indices, scenario, category_hint, detected
            )
            return ClassificationOutcome(
                scenario=scenario,
                groups=[group],
                message=response.message,
            )

        groups = self._groups_from_response(response, refs, indices, category_hint)
        return ClassificationOutcome(
            scenario=Scenario.DISTINCT_ITEM,
            groups=groups,
            message=response.message,
        )

    async def _classify_bulk(
        self,
        refs: list[str],
        indices: list[int],
        category_hint: Optional[str]
    ) -> ClassificationOutcome:
        """
        Run the bulk endpoint, re-submitting photos it left unprocessed.

        Positions are always relative to `refs`; each round maps the
        service's local indices back through `pending`.
        """
        pending = list(range(len(refs)))
        detected: list[list[int]] = []
        labels: list[DetectedGroup] = []
        message = None

        for round_number in range(1, self.bulk_max_rounds + 1):
            response = await self.ai.classify_bulk([refs[p] for p in pending], category_hint)
            message = response.message or message

            for group in response.groups:
                positions = [pending[i] for i in group.image_indices if 0 <= i < len(pending)]
                if positions:
                    detected.append(positions)
                    labels.append(group)

            leftover = sorted({pending[i] for i in response.remaining_unprocessed if 0 <= i < len(pending)})
            logger.debug(
                "bulk_classification_round",
                round=round_number,
                submitted=len(pending),
                groups=len(response.groups),
                leftover=len(leftover)
            )
            if not leftover or len(leftover) == len(pending):
                pending = leftover
                break
            pending = leftover

        if pending:
            logger.warning("bulk_classification_incomplete", unprocessed=len(pending))

        # Photos still unprocessed must not hide inside a detected group
        claimed = set(pending)
        detected = [[p for p in positions if p not in claimed] for positions in detected]

        groups = self._groups_from_partition(
            repair_partition(detected, len(refs)),
            labels,
            detected,
            refs,
            indices,
            Scenario.DISTINCT_ITEM,
            category_hint,
        )
        return ClassificationOutcome(
            scenario=Scenario.DISTINCT_ITEM,
            groups=groups,
            message=message,
            used_bulk=True,
            unprocessed_indices=sorted(indices[p] for p in pending),
        )

    # ===================
    # OVERRIDES
    # ===================

    async def force_distinct(
        self,
        asset_refs: list[str],
        category_hint: Optional[str] = None,
        asset_indices: Optional[list[int]] = None
    ) -> ClassificationOutcome:
        """
        Re-group a batch the user says holds several items.

        Uses the bulk endpoint regardless of size. If that fails too,
        every photo becomes its own group.
        """
        indices = self._indices(asset_refs, asset_indices)
        if not asset_refs:
            return ClassificationOutcome(status="empty")

        logger.info("force_distinct_requested", count=len(asset_refs))
        try:
            return await self._classify_bulk(asset_refs, indices, category_hint)
        except ExternalServiceError as e:
            logger.warning("force_distinct_fallback_singletons", count=len(asset_refs), error=e.message)
            groups = [
                self._build_group([p], asset_refs, indices, Scenario.DISTINCT_ITEM, category_hint)
                for p in range(len(asset_refs))
            ]
            return ClassificationOutcome(
                scenario=Scenario.DISTINCT_ITEM,
                groups=groups,
                used_bulk=True,
                error=e.message,
            )

    def merge_as_same_item(self, outcome: ClassificationOutcome) -> ClassificationOutcome:
        """
        Collapse every group into one same_item group.

        Raises:
            NothingToReviewError: If the outcome has no groups
        """
        groups = sorted(outcome.groups, key=lambda g: g.sort_key)
        if not groups:
            raise NothingToReviewError("merge")

        first = groups[0]
        pairs = sorted(pair for group in groups for pair in group.ref_pairs())

        merged = ItemGroup(
            member_asset_indices={index for index, _ in pairs},
            image_refs=[ref for _, ref in pairs],
            scenario=Scenario.SAME_ITEM,
            title=first.title,
            category=first.category,
        )
        logger.info("groups_merged_as_same_item", merged=len(groups), members=len(pairs))
        return outcome.model_copy(update={
            "status": "grouped",
            "scenario": Scenario.SAME_ITEM,
            "groups": [merged],
        })

    # ===================
    # HELPERS
    # ===================

    @staticmethod
    def _indices(asset_refs: list[str], asset_indices: Optional[list[int]]) -> list[int]:
        if asset_indices is None:
            return list(range(len(asset_refs)))
        if len(asset_indices) != len(asset_refs):
            raise ValueError("asset_indices must match asset_refs in length")
        return list(asset_indices)

    def _groups_from_response(
        self,
        response: ClassificationResponse,
        refs: list[str],
        indices: list[int],
        category_hint: Optional[str]
    ) -> list[ItemGroup]:
        detected = [g.image_indices for g in response.groups]
        return self._groups_from_partition(
            repair_partition(detected, len(refs)),
            response.groups,
            detected,
            refs,
            indices,
            Scenario.DISTINCT_ITEM,
            category_hint,
        )

    def _groups_from_partition(
        self,
        partition: list[list[int]],
        labels: Sequence[DetectedGroup],
        detected: Sequence[Sequence[int]],
        refs: list[str],
        indices: list[int],
        scenario: Scenario,
        category_hint: Optional[str]
    ) -> list[ItemGroup]:
        # A repaired group keeps the label of the detected group its first photo came from
        label_of: dict[int, DetectedGroup] = {}
        for label, positions in zip(labels, detected):
            for p in positions:
                label_of.setdefault(p, label)

        groups = [
            self._build_group(positions, refs, indices, scenario, category_hint, label_of.get(positions[0]))
            for positions in partition
        ]
        return sorted(groups, key=lambda g: g.sort_key)

    @staticmethod
    def _build_group(
        positions: list[int],
        refs: list[str],
        indices: list[int],
        scenario: Scenario,
        category_hint: Optional[str],
        label: Optional[DetectedGroup] = None
    ) -> ItemGroup:
        return ItemGroup(
            member_asset_indices={indices[p] for p in positions},
            image_refs=[refs[p] for p in positions],
            scenario=scenario,
            title=label.title if label else "",
            category=normalize_category(label.category if label else None, category_hint),
        )
