"""
Enrichment engine.

Asks the AI service to describe each item group. Calls are serialized by
default (settings.enrichment_concurrency = 1); a failed call marks only
that group failed.

AdmittedEnrichment couples the engine with the admission controller:
credits are debited up front for the granted groups and given back for
every call that fails, so failures never cost the user a credit.
"""

import asyncio
from typing import Callable, Optional

import structlog

from config import settings
from exceptions import AppError, ExternalServiceError
from integrations.listing_ai_client import ListingAIService
from models.credit import Reservation
from models.item_group import EnrichmentStatus, ItemGroup
from services.credit_service import AdmissionController

logger = structlog.get_logger(__name__)

GroupListener = Callable[[int, ItemGroup], None]


class EnrichmentService:
    """Per-group AI enrichment."""

    def __init__(
        self,
        ai: ListingAIService,
        concurrency: Optional[int] = None
    ):
        self.ai = ai
        self.concurrency = concurrency or settings.enrichment_concurrency
        self._listeners: list[GroupListener] = []

    def subscribe(self, listener: GroupListener) -> None:
        """Called with (position, group) when a group starts and when it finishes."""
        self._listeners.append(listener)

    def unsubscribe(self, listener: GroupListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def _emit(self, position: int, group: ItemGroup) -> None:
        for listener in self._listeners:
            listener(position, group)

    async def enrich_one(self, group: ItemGroup, category_hint: Optional[str] = None) -> ItemGroup:
        """
        Describe a single group.

        Returns the group enriched, or marked failed when the call fails.
        An already enriched group is returned untouched.
        """
        if group.enrichment_status == EnrichmentStatus.ENRICHED:
            return group

        try:
            attributes = await self.ai.enrich(group.image_refs, category_hint)
        except ExternalServiceError as e:
            logger.warning("group_enrichment_failed", group_id=group.id, error=e.message)
            return group.model_copy(update={
                "enrichment_status": EnrichmentStatus.FAILED,
                "is_ai_generated": False,
            })

        enriched = group.with_attributes(attributes)
        logger.debug("group_enriched", group_id=group.id, title=enriched.title)
        return enriched

    async def enrich(
        self,
        groups: list[ItemGroup],
        category_hint: Optional[str] = None
    ) -> list[ItemGroup]:
        """
        Describe every group.

        Args:
            groups: Groups to enrich; enriched ones are passed through
            category_hint: Manual category, overrides the AI category

        Returns:
            Groups in input order
        """
        if not groups:
            return []

        semaphore = asyncio.Semaphore(self.concurrency)

        async def run(position: int, group: ItemGroup) -> ItemGroup:
            async with semaphore:
                self._emit(position, group)
                result = await self.enrich_one(group, category_hint)
                self._emit(position, result)
                return result

        results = await asyncio.gather(*(run(i, g) for i, g in enumerate(groups)))

        logger.info(
            "enrichment_complete",
            total=len(results),
            enriched=sum(1 for g in results if g.enrichment_status == EnrichmentStatus.ENRICHED),
            failed=sum(1 for g in results if g.enrichment_status == EnrichmentStatus.FAILED)
        )
        return list(results)


class AdmittedEnrichment:
    """
    Enrichment behind admission control.

    run() reserves credits for the pending groups, enriches exactly the
    granted number (in group order) and leaves the rest pending.
    """

    def __init__(self, engine: EnrichmentService, admission: AdmissionController):
        self.engine = engine
        self.admission = admission

    async def run(
        self,
        groups: list[ItemGroup],
        batch_id: str,
        category_hint: Optional[str] = None
    ) -> tuple[list[ItemGroup], Reservation]:
        """
        Enrich as many pending groups as the credits allow.

        Returns:
            (groups in input order, reservation). Groups beyond the grant
            keep enrichment_status=pending.
        """
        pending_positions = [
            i for i, g in enumerate(groups)
            if g.enrichment_status == EnrichmentStatus.PENDING
        ]

        reservation = await self.admission.reserve(len(pending_positions), batch_id)
        admitted = pending_positions[:reservation.granted]

        logger.info(
            "admitted_enrichment_started",
            batch_id=batch_id,
            pending=len(pending_positions),
            admitted=len(admitted),
            shortfall=reservation.shortfall
        )

        result = list(groups)
        if admitted:
            enriched = await self.engine.enrich([groups[i] for i in admitted], category_hint)
            for position, group in zip(admitted, enriched):
                result[position] = group
                if group.enrichment_status == EnrichmentStatus.FAILED:
                    try:
                        await self.admission.release(
                            reservation, 1, "enrichment_failed", unit_key=group.id
                        )
                    except AppError as e:
                        logger.error("credit_refund_failed", group_id=group.id, error=e.message)

        return result, reservation
