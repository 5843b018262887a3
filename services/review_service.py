"""
Review and resolution of item groups.

Three ways to finish a batch:
    separate  - one draft listing per group
    bundle    - every group merged into one listing, summarized by the AI
    regroup   - the AI grouping is thrown away and the user partitions
                the photos by hand

A group without enrichment is always editable as a manual entry and
never blocks the others.
"""

from typing import Optional

import structlog

from exceptions import (
    ExternalServiceError,
    GroupNotFoundError,
    InvalidRegroupError,
    NothingToReviewError,
)
from integrations.listing_ai_client import ListingAIService
from models.item_group import (
    BundleSummary,
    EnrichmentStatus,
    ItemGroup,
    ItemGroupUpdate,
    ListingDraft,
    Scenario,
)

logger = structlog.get_logger(__name__)


def draft_from_group(group: ItemGroup) -> ListingDraft:
    """Materialize one group as a draft listing."""
    return ListingDraft(
        title=group.title,
        description=group.description,
        category=group.category,
        condition=group.condition,
        price=group.used_price_estimate,
        retail_price=group.retail_price_estimate,
        tags=list(group.tags),
        image_refs=list(group.image_refs),
        source_group_ids=[group.id],
        is_ai_generated=group.is_ai_generated,
        needs_manual_entry=group.needs_manual_entry,
    )


def manual_bundle_summary(groups: list[ItemGroup]) -> BundleSummary:
    """Bundle summary built without the AI, from the groups' own attributes."""
    titles = [g.title or f"Item {i + 1}" for i, g in enumerate(groups)]
    categories = {g.category for g in groups if g.category}

    return BundleSummary(
        title=f"{len(groups)}-Item Bundle",
        description="Bundle includes:\n" + "\n".join(f"- {t}" for t in titles),
        category=categories.pop() if len(categories) == 1 else "Other",
        total_retail_value=round(sum(g.retail_price_estimate for g in groups), 2),
        suggested_price=round(sum(g.used_price_estimate for g in groups), 2),
    )


class ReviewSession:
    """
    The reviewable group set of one batch.

    Args:
        groups: Final groups from the pipeline
        asset_refs: sequence_index -> remote ref of every uploaded photo,
            needed for manual regrouping and manual entry
    """

    def __init__(self, groups: list[ItemGroup], asset_refs: Optional[dict[int, str]] = None):
        self.groups = sorted(groups, key=lambda g: g.sort_key)
        self.asset_refs = dict(asset_refs or {})
        for group in self.groups:
            self.asset_refs.update(group.ref_pairs())

    def get_group(self, group_id: str) -> ItemGroup:
        for group in self.groups:
            if group.id == group_id:
                return group
        raise GroupNotFoundError(group_id)

    # ===================
    # RESOLUTIONS
    # ===================

    def resolve_separate(self) -> list[ListingDraft]:
        """
        One draft per group.

        Raises:
            NothingToReviewError: If there are no groups
        """
        if not self.groups:
            raise NothingToReviewError("separate")

        drafts = [draft_from_group(g) for g in self.groups]
        logger.info(
            "review_resolved_separate",
            drafts=len(drafts),
            manual=sum(1 for d in drafts if d.needs_manual_entry)
        )
        return drafts

    async def resolve_bundle(self, ai: ListingAIService) -> ListingDraft:
        """
        Merge every group into one bundle listing.

        The bundle price is the summary's suggested price. The source
        groups leave the reviewable set and the bundle group replaces
        them. If the summary call fails, a manual bundle is built from
        the groups' own prices instead.

        Raises:
            NothingToReviewError: If there are no groups
        """
        if not self.groups:
            raise NothingToReviewError("bundle")

        sources = list(self.groups)
        try:
            summary = await ai.summarize_bundle(sources)
            ai_generated = True
        except ExternalServiceError as e:
            logger.warning("bundle_summary_unavailable", groups=len(sources), error=e.message)
            summary = manual_bundle_summary(sources)
            ai_generated = False

        pairs = sorted(pair for g in sources for pair in g.ref_pairs())
        tags = list(dict.fromkeys(tag for g in sources for tag in g.tags))[:10]

        bundle = ItemGroup(
            member_asset_indices={index for index, _ in pairs},
            image_refs=[ref for _, ref in pairs],
            scenario=Scenario.DISTINCT_ITEM,
            title=summary.title,
            description=summary.description,
            category=summary.category,
            condition="",
            tags=tags,
            retail_price_estimate=summary.total_retail_value,
            used_price_estimate=summary.suggested_price,
            enrichment_status=EnrichmentStatus.ENRICHED if ai_generated else EnrichmentStatus.SKIPPED,
            is_ai_generated=ai_generated,
        )
        self.groups = [bundle]

        draft = draft_from_group(bundle).model_copy(update={
            "source_group_ids": [g.id for g in sources],
            "is_bundle": True,
        })
        logger.info(
            "review_resolved_bundle",
            source_groups=len(sources),
            price=draft.price,
            ai_generated=ai_generated
        )
        return draft

    def regroup(self, partition: list[list[int]]) -> list[ItemGroup]:
        """
        Replace the AI grouping with a manual partition of the photos.

        Args:
            partition: Lists of sequence indices, one list per item

        Returns:
            New pending, non-AI groups

        Raises:
            InvalidRegroupError: If the lists do not partition the photos
        """
        known = set(self.asset_refs)
        seen: set[int] = set()
        duplicates: set[int] = set()

        for members in partition:
            if not members:
                raise InvalidRegroupError("Every group needs at least one photo")
            for index in members:
                if index in seen:
                    duplicates.add(index)
                seen.add(index)

        unknown = seen - known
        missing = known - seen
        if duplicates or unknown or missing:
            raise InvalidRegroupError(
                "Groups must contain every photo exactly once",
                details={
                    "duplicates": sorted(duplicates),
                    "unknown": sorted(unknown),
                    "missing": sorted(missing),
                }
            )

        scenario = Scenario.SAME_ITEM if len(partition) == 1 else Scenario.DISTINCT_ITEM
        self.groups = sorted(
            (
                ItemGroup(
                    member_asset_indices=set(members),
                    image_refs=[self.asset_refs[i] for i in sorted(members)],
                    scenario=scenario,
                )
                for members in partition
            ),
            key=lambda g: g.sort_key,
        )
        logger.info("review_regrouped", groups=len(self.groups), photos=len(seen))
        return self.groups

    # ===================
    # MANUAL EDITS
    # ===================

    def update_group(self, group_id: str, update: ItemGroupUpdate) -> ItemGroup:
        """
        Apply a manual edit.

        A group that was never enriched becomes a manual entry
        (enrichment_status=skipped) once the user edits it.
        """
        group = self.get_group(group_id)
        changes = update.model_dump(exclude_unset=True)
        if group.enrichment_status in (EnrichmentStatus.PENDING, EnrichmentStatus.FAILED):
            changes["enrichment_status"] = EnrichmentStatus.SKIPPED

        updated = group.model_copy(update=changes)
        self.groups = [updated if g.id == group_id else g for g in self.groups]

        logger.info("group_updated", group_id=group_id, fields=sorted(changes))
        return updated

    def discard_group(self, group_id: str) -> None:
        """Drop a group and its photos from the reviewable set."""
        group = self.get_group(group_id)
        self.groups = [g for g in self.groups if g.id != group_id]
        for index in group.member_asset_indices:
            self.asset_refs.pop(index, None)
        logger.info("group_discarded", group_id=group_id, remaining=len(self.groups))

    def manual_entry_groups(self, indices: list[int]) -> list[ItemGroup]:
        """
        One manual-entry group per photo.

        Used when classification was unavailable and the photos were
        left ungrouped. The groups are added to the reviewable set.
        """
        unknown = [i for i in indices if i not in self.asset_refs]
        if unknown:
            raise InvalidRegroupError("Unknown photos", details={"unknown": unknown})

        claimed = {i for g in self.groups for i in g.member_asset_indices}
        taken = sorted(set(indices) & claimed)
        if taken:
            raise InvalidRegroupError("Photos already belong to a group", details={"grouped": taken})

        created = [
            ItemGroup(
                member_asset_indices={i},
                image_refs=[self.asset_refs[i]],
                scenario=Scenario.DISTINCT_ITEM,
                enrichment_status=EnrichmentStatus.SKIPPED,
            )
            for i in sorted(set(indices))
        ]
        self.groups = sorted([*self.groups, *created], key=lambda g: g.sort_key)
        logger.info("manual_entry_groups_created", count=len(created))
        return created
