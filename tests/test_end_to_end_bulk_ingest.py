"""
End-to-end bulk ingestion tests.

Drives BulkIngestPipeline through upload, grouping, credit admission,
checkout and resume with fake storage and AI service:
- Every photo lands in exactly one group
- A batch is charged once, whatever the number of retries
- An interrupted and resumed run ends like an uninterrupted one
- Batch size boundaries

Uses "The Garage Sale" scenario: 14 photos of 5 items, 3 free credits.
"""

import asyncio

import pytest

from exceptions import (
    BatchTooLargeError,
    DatabaseError,
    ExternalServiceError,
    InvalidStateTransitionError,
)
from integrations.payments import DeferredRedirector
from models.bulk_ingest import ResumeState
from models.item_group import EnrichmentStatus, Scenario
from services.bulk_ingest_service import build_pipeline
from services.checkpoint_service import MemoryCheckpointStore
from services.credit_service import InMemoryCreditLedger
from tests.factories import AssetFileFactory
from tests.fakes import FakeImageStorage, FakeListingAI

# =====================
# SCENARIO CONSTANTS
# =====================

GARAGE_SALE = {"item1": 3, "item2": 3, "item3": 3, "item4": 3, "item5": 2}
FREE_CREDITS = 3
PAID = {"payment": "success", "credits": "5", "session_id": "cs_garage"}


class Harness:
    """One session's collaborators, kept for assertions."""

    def __init__(self, purchased: int = 0, free: int = 0):
        self.ai = FakeListingAI()
        self.storage = FakeImageStorage()
        self.ledger = InMemoryCreditLedger(purchased_balance=purchased, free_allowance=free)
        self.store = MemoryCheckpointStore(ttl_minutes=60)
        self.redirector = DeferredRedirector()

    def pipeline(self, session_id: str = "garage"):
        return build_pipeline(
            session_id,
            ai=self.ai,
            storage=self.storage,
            gateway=self.ledger,
            store=self.store,
            redirector=self.redirector,
        )


def listing_view(groups) -> list[tuple]:
    """What the review screen shows, independent of ids and timing."""
    return [
        (sorted(g.member_asset_indices), g.title, g.used_price_estimate, g.enrichment_status)
        for g in groups
    ]


# =====================
# PARTITION
# =====================

class TestPartition:
    """Every uploaded photo ends up in exactly one group"""

    @pytest.mark.parametrize("size", [0, 1, 2, 5, 9, 10, 14, 29, 30])
    def test_groups_partition_the_batch(self, size):
        # Three photos per item, last item possibly shorter
        counts = {}
        for i in range(size):
            key = f"item{i // 3 + 1}"
            counts[key] = counts.get(key, 0) + 1
        harness = Harness(purchased=100)

        async def scenario():
            pipeline = harness.pipeline()
            try:
                return await pipeline.run(AssetFileFactory.photo_batch(counts), batch_id="b1")
            finally:
                await pipeline.aclose()

        result = asyncio.run(scenario())

        members = [i for g in result.groups for i in g.member_asset_indices]
        assert sorted(members) == list(range(size))
        assert len(members) == len(set(members))
        assert len(result.groups) == len(counts)

    def test_unprocessed_photos_become_singletons(self):
        """Should still cover every photo when the classifier stops early."""
        harness = Harness(purchased=100)
        harness.ai.bulk_limit = 4

        async def scenario():
            pipeline = harness.pipeline()
            try:
                return await pipeline.run(AssetFileFactory.photo_batch(GARAGE_SALE), batch_id="b1")
            finally:
                await pipeline.aclose()

        result = asyncio.run(scenario())

        members = sorted(i for g in result.groups for i in g.member_asset_indices)
        assert members == list(range(14))


# =====================
# CREDITS
# =====================

class TestDebitIdempotency:
    """A batch is charged once"""

    def test_same_batch_twice_charges_once(self):
        harness = Harness(purchased=10)
        photos = AssetFileFactory.photo_batch({"item1": 1, "item2": 1})

        async def scenario():
            pipeline = harness.pipeline()
            try:
                first = await pipeline.run(photos, batch_id="batch-1")
                after_first = await harness.ledger.get_account()
                second = await pipeline.run(photos, batch_id="batch-1")
                after_second = await harness.ledger.get_account()
                return first, second, after_first, after_second
            finally:
                await pipeline.aclose()

        first, second, after_first, after_second = asyncio.run(scenario())

        assert after_first.purchased_balance == 8
        assert after_second.purchased_balance == 8
        assert first.reservation.replayed is False
        assert second.reservation.replayed is True

    def test_new_batch_is_charged_again(self):
        harness = Harness(purchased=10)
        photos = AssetFileFactory.photo_batch({"item1": 1, "item2": 1})

        async def scenario():
            pipeline = harness.pipeline()
            try:
                await pipeline.run(photos, batch_id="batch-1")
                await pipeline.run(photos, batch_id="batch-2")
                return await harness.ledger.get_account()
            finally:
                await pipeline.aclose()

        assert asyncio.run(scenario()).purchased_balance == 6

    @pytest.mark.parametrize("available,expected_enriched", [(0, 0), (1, 1), (3, 3), (5, 5)])
    def test_partial_grant_is_exact(self, available, expected_enriched):
        """Should describe exactly as many groups as there are credits."""
        harness = Harness(free=available)

        async def scenario():
            pipeline = harness.pipeline()
            try:
                return await pipeline.run(AssetFileFactory.photo_batch(GARAGE_SALE), batch_id="b1")
            finally:
                await pipeline.aclose()

        result = asyncio.run(scenario())

        assert result.enriched_count == expected_enriched
        assert result.shortfall == 5 - expected_enriched
        assert result.reservation.granted + result.reservation.shortfall == 5
        assert len(harness.ai.enrich_calls) == expected_enriched


# =====================
# THE GARAGE SALE
# =====================

class TestGarageSale:
    """14 photos, 5 items, 3 free credits, purchase of 5, resume"""

    def test_checkout_then_resume(self):
        # Arrange
        harness = Harness(free=FREE_CREDITS)
        photos = AssetFileFactory.photo_batch(GARAGE_SALE)

        async def scenario():
            pipeline = harness.pipeline()
            try:
                first = await pipeline.run(photos, batch_id="batch-1")
                state_after_run = pipeline.state
                await harness.ledger.add_purchased(5, PAID["session_id"])
                resumed = await pipeline.resume(PAID)
                again = await pipeline.resume(PAID)
                return first, state_after_run, resumed, again
            finally:
                await pipeline.aclose()

        # Act
        first, state_after_run, resumed, again = asyncio.run(scenario())

        # Assert: first pass
        assert len(first.groups) == 5
        assert first.enriched_count == 3
        assert first.shortfall == 2
        assert state_after_run == ResumeState.CHECKPOINT_SAVED
        assert "quantity=2" in first.checkout_url
        assert harness.redirector.checkout_url == first.checkout_url

        # Assert: resume
        assert resumed.state == ResumeState.COMPLETE
        assert resumed.enriched_count == 5
        assert resumed.shortfall == 0
        assert [g.title for g in resumed.groups] == [f"Vintage item {n}" for n in range(1, 6)]
        assert harness.ai.enrich_calls == ["item1", "item2", "item3", "item4", "item5"]

        # Assert: second return is a no-op
        assert listing_view(again.groups) == listing_view(resumed.groups)
        assert len(harness.ai.enrich_calls) == 5

    def test_resume_matches_uninterrupted_run(self):
        """Should end with the same listings as a run that never ran out."""
        photos = AssetFileFactory.photo_batch(GARAGE_SALE)
        interrupted = Harness(free=FREE_CREDITS)
        uninterrupted = Harness(purchased=100)

        async def scenario():
            a = interrupted.pipeline("a")
            b = uninterrupted.pipeline("b")
            try:
                await a.run(photos, batch_id="batch-1")
                await interrupted.ledger.add_purchased(5, "cs_1")
                resumed = await a.resume(PAID)
                straight = await b.run(photos, batch_id="batch-1")
                return resumed, straight
            finally:
                await a.aclose()
                await b.aclose()

        resumed, straight = asyncio.run(scenario())

        assert listing_view(resumed.groups) == listing_view(straight.groups)

    def test_poller_resumes_without_return_link(self):
        """Should resume from a balance check when the return link is lost."""
        harness = Harness(free=FREE_CREDITS)

        async def scenario():
            pipeline = harness.pipeline()
            try:
                await pipeline.run(AssetFileFactory.photo_batch(GARAGE_SALE), batch_id="batch-1")
                await harness.ledger.add_purchased(2, "cs_1")
                return await pipeline.poll_resume()
            finally:
                await pipeline.aclose()

        result = asyncio.run(scenario())

        assert result.enriched_count == 5
        assert len(harness.ai.enrich_calls) == 5

    def test_bundle_of_every_item(self):
        """Should price the bundle at the summary's suggestion."""
        harness = Harness(purchased=100)
        harness.ai.bundle_price = 60.0

        async def scenario():
            pipeline = harness.pipeline()
            try:
                await pipeline.run(AssetFileFactory.photo_batch(GARAGE_SALE), batch_id="batch-1")
                draft = await pipeline.resolve_bundle()
                return draft, pipeline.review().groups
            finally:
                await pipeline.aclose()

        draft, groups = asyncio.run(scenario())

        assert draft.price == 60.0
        assert draft.is_bundle is True
        assert len(draft.image_refs) == 14
        assert len(groups) == 1
        assert groups[0].member_asset_indices == set(range(14))


class UnreachableLedger(InMemoryCreditLedger):
    """Ledger that can be switched off to simulate a credit service outage."""

    down = False

    async def get_account(self):
        if self.down:
            raise ExternalServiceError("credits", "unreachable")
        return await super().get_account()


class FailingCheckpointStore(MemoryCheckpointStore):
    async def save(self, checkpoint):
        raise DatabaseError("save_checkpoint", "ingest_checkpoints unavailable")


# =====================
# OUTAGES AND OUTSTANDING CHECKOUTS
# =====================

class TestSessionRecovery:
    """A failed or pending admission never blocks the session"""

    def test_credit_outage_completes_with_pending_groups(self):
        """Should keep the grouped photos and accept the next batch once credits are back."""
        # Arrange
        harness = Harness()
        harness.ledger = UnreachableLedger(purchased_balance=10, free_allowance=0)
        harness.ledger.down = True
        photos = AssetFileFactory.photo_batch(GARAGE_SALE)

        async def scenario():
            pipeline = harness.pipeline()
            try:
                during = await pipeline.run(photos, batch_id="batch-1")
                harness.ledger.down = False
                after = await pipeline.run(photos, batch_id="batch-2")
                return during, after
            finally:
                await pipeline.aclose()

        # Act
        during, after = asyncio.run(scenario())

        # Assert: outage
        assert during.state == ResumeState.COMPLETE
        assert len(during.groups) == 5
        assert all(g.enrichment_status == EnrichmentStatus.PENDING for g in during.groups)
        assert during.reservation.granted == 0
        assert during.checkout_url is None
        assert during.account is None
        outage = [i for i in during.issues if i.code == "CREDITS_UNAVAILABLE"]
        assert len(outage) == 1 and outage[0].blocking

        # Assert: service back
        assert after.state == ResumeState.COMPLETE
        assert after.enriched_count == 5
        assert after.issues == []

    def test_checkpoint_failure_does_not_strand_session(self):
        """Should report the checkout as unavailable and leave the session usable."""
        harness = Harness(free=FREE_CREDITS)
        harness.store = FailingCheckpointStore(ttl_minutes=60)

        async def scenario():
            pipeline = harness.pipeline()
            try:
                result = await pipeline.run(AssetFileFactory.photo_batch(GARAGE_SALE), batch_id="batch-1")
                return result, pipeline.resumption.accepts_new_batch
            finally:
                await pipeline.aclose()

        result, accepts_new_batch = asyncio.run(scenario())

        assert result.state == ResumeState.COMPLETE
        assert result.enriched_count == FREE_CREDITS
        assert result.checkout_url is None
        assert [i.code for i in result.issues] == ["CHECKOUT_UNAVAILABLE"]
        assert accepts_new_batch is True

    def test_outstanding_checkout_rejects_batch_before_upload(self):
        """Should refuse a new batch without uploading while a checkout is open."""
        # Arrange
        harness = Harness(free=FREE_CREDITS)

        async def scenario():
            pipeline = harness.pipeline()
            try:
                await pipeline.run(AssetFileFactory.photo_batch(GARAGE_SALE), batch_id="batch-1")
                uploads_before = len(harness.storage.calls)
                with pytest.raises(InvalidStateTransitionError):
                    await pipeline.run(AssetFileFactory.photo_batch({"item9": 2}), batch_id="batch-2")
                return uploads_before, pipeline.state
            finally:
                await pipeline.aclose()

        # Act
        uploads_before, state = asyncio.run(scenario())

        # Assert
        assert uploads_before == 14
        assert len(harness.storage.calls) == 14
        assert state == ResumeState.CHECKPOINT_SAVED


# =====================
# BOUNDARIES
# =====================

class TestBatchBoundaries:
    """Empty, single, cap and cap + 1"""

    def run_photos(self, harness: Harness, photos):
        async def scenario():
            pipeline = harness.pipeline()
            try:
                return await pipeline.run(photos, batch_id="b1")
            finally:
                await pipeline.aclose()

        return asyncio.run(scenario())

    def test_empty_batch(self):
        harness = Harness(purchased=10)

        result = self.run_photos(harness, [])

        assert result.groups == []
        assert harness.storage.calls == []
        assert harness.ai.classify_calls == []

    def test_single_photo(self):
        harness = Harness(purchased=10)

        result = self.run_photos(harness, AssetFileFactory.photo_batch({"item1": 1}))

        assert result.scenario == Scenario.SAME_ITEM
        assert result.groups[0].enrichment_status == EnrichmentStatus.ENRICHED

    def test_cap_is_accepted(self):
        harness = Harness(purchased=100)

        result = self.run_photos(harness, AssetFileFactory.distinct_items(30))

        assert len(result.assets) == 30
        assert len(result.groups) == 30

    def test_over_cap_uploads_nothing(self):
        harness = Harness(purchased=100)

        with pytest.raises(BatchTooLargeError):
            self.run_photos(harness, AssetFileFactory.distinct_items(31))

        assert harness.storage.calls == []

    def test_failed_uploads_are_left_out(self):
        """Should group only the photos that reached storage."""
        harness = Harness(purchased=10)
        harness.storage.fail_filenames = {"item2-1.jpg"}

        result = self.run_photos(harness, AssetFileFactory.photo_batch({"item1": 2, "item2": 2}))

        members = sorted(i for g in result.groups for i in g.member_asset_indices)
        assert members == [0, 1, 3]
        assert result.issues[0].code == "UPLOAD_FAILED"
