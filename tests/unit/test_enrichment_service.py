"""
Unit tests for EnrichmentService and AdmittedEnrichment.

Run: pytest tests/unit/test_enrichment_service.py -v
"""

import asyncio

from models.item_group import EnrichmentStatus
from services.credit_service import AdmissionController, InMemoryCreditLedger
from services.enrichment_service import AdmittedEnrichment, EnrichmentService
from tests.factories import ItemGroupFactory


class TestEnrichOne:
    """Tests for EnrichmentService.enrich_one()"""

    def test_successful_call_fills_attributes(self, fake_ai):
        """Should copy the AI attributes onto the group."""
        service = EnrichmentService(fake_ai)
        group = ItemGroupFactory.create(members=[0, 1], item="item3")

        enriched = asyncio.run(service.enrich_one(group))

        assert enriched.enrichment_status == EnrichmentStatus.ENRICHED
        assert enriched.title == "Vintage item 3"
        assert enriched.used_price_estimate == 30.0
        assert enriched.retail_price_estimate == 60.0
        assert enriched.is_ai_generated is True
        assert enriched.member_asset_indices == {0, 1}

    def test_failed_call_marks_group_failed(self, fake_ai):
        """Should mark only this group failed."""
        fake_ai.fail_enrich_keys = {"item2"}
        service = EnrichmentService(fake_ai)

        result = asyncio.run(service.enrich_one(ItemGroupFactory.create(item="item2")))

        assert result.enrichment_status == EnrichmentStatus.FAILED
        assert result.title == ""

    def test_enriched_group_is_not_called_again(self, fake_ai):
        """Should pass an enriched group through untouched."""
        service = EnrichmentService(fake_ai)
        group = ItemGroupFactory.enriched(number=4)

        result = asyncio.run(service.enrich_one(group))

        assert result is group
        assert fake_ai.enrich_calls == []

    def test_category_hint_is_passed_to_service(self, fake_ai):
        """Should use the manual category."""
        service = EnrichmentService(fake_ai)

        result = asyncio.run(service.enrich_one(ItemGroupFactory.create(), category_hint="Toys"))

        assert result.category == "Toys"


class TestEnrich:
    """Tests for EnrichmentService.enrich()"""

    def test_failure_is_isolated(self, fake_ai):
        """Should enrich the other groups when one fails."""
        # Arrange
        fake_ai.fail_enrich_keys = {"item2"}
        service = EnrichmentService(fake_ai)
        groups = ItemGroupFactory.singletons(3)

        # Act
        results = asyncio.run(service.enrich(groups))

        # Assert
        assert [g.enrichment_status for g in results] == [
            EnrichmentStatus.ENRICHED,
            EnrichmentStatus.FAILED,
            EnrichmentStatus.ENRICHED,
        ]
        assert [g.id for g in results] == [g.id for g in groups]

    def test_serialized_by_default(self, fake_ai):
        """Should call the service one group at a time with concurrency 1."""
        service = EnrichmentService(fake_ai, concurrency=1)

        asyncio.run(service.enrich(ItemGroupFactory.singletons(4)))

        assert fake_ai.enrich_calls == ["item1", "item2", "item3", "item4"]

    def test_listeners_see_start_and_finish(self, fake_ai):
        """Should emit each group before and after its call."""
        service = EnrichmentService(fake_ai)
        events = []
        service.subscribe(lambda position, group: events.append((position, group.enrichment_status)))

        asyncio.run(service.enrich(ItemGroupFactory.singletons(2)))

        assert events == [
            (0, EnrichmentStatus.PENDING),
            (0, EnrichmentStatus.ENRICHED),
            (1, EnrichmentStatus.PENDING),
            (1, EnrichmentStatus.ENRICHED),
        ]

    def test_empty_list(self, fake_ai):
        """Should return an empty list."""
        assert asyncio.run(EnrichmentService(fake_ai).enrich([])) == []


class TestAdmittedEnrichment:
    """Tests for AdmittedEnrichment.run()"""

    def test_enriches_only_granted_groups(self, fake_ai):
        """Should enrich exactly as many groups as were granted, in order."""
        async def scenario():
            ledger = InMemoryCreditLedger(purchased_balance=3, free_allowance=0)
            admitted = AdmittedEnrichment(EnrichmentService(fake_ai), AdmissionController(ledger, "s1"))
            return await admitted.run(ItemGroupFactory.singletons(5), "b1")

        groups, reservation = asyncio.run(scenario())

        assert reservation.granted == 3
        assert reservation.shortfall == 2
        assert [g.enrichment_status for g in groups] == [
            EnrichmentStatus.ENRICHED,
            EnrichmentStatus.ENRICHED,
            EnrichmentStatus.ENRICHED,
            EnrichmentStatus.PENDING,
            EnrichmentStatus.PENDING,
        ]
        assert len(fake_ai.enrich_calls) == 3

    def test_failed_group_gets_its_credit_back(self, fake_ai):
        """Should refund one credit per failed call."""
        async def scenario():
            ledger = InMemoryCreditLedger(purchased_balance=3, free_allowance=0)
            admitted = AdmittedEnrichment(EnrichmentService(fake_ai), AdmissionController(ledger, "s1"))
            groups, _ = await admitted.run(ItemGroupFactory.singletons(3), "b1")
            return groups, await ledger.get_account()

        fake_ai.fail_enrich_keys = {"item1", "item3"}
        groups, account = asyncio.run(scenario())

        assert [g.enrichment_status for g in groups] == [
            EnrichmentStatus.FAILED,
            EnrichmentStatus.ENRICHED,
            EnrichmentStatus.FAILED,
        ]
        assert account.purchased_balance == 2

    def test_non_pending_groups_are_not_charged(self, fake_ai):
        """Should reserve only for pending groups."""
        async def scenario():
            ledger = InMemoryCreditLedger(purchased_balance=5, free_allowance=0)
            admitted = AdmittedEnrichment(EnrichmentService(fake_ai), AdmissionController(ledger, "s1"))
            groups = [ItemGroupFactory.enriched(members=[0], number=1), ItemGroupFactory.create(members=[1])]
            _, reservation = await admitted.run(groups, "b1")
            return reservation, await ledger.get_account()

        reservation, account = asyncio.run(scenario())

        assert reservation.requested == 1
        assert account.purchased_balance == 4
