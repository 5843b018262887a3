"""
Test data factories.

Uses factory pattern to generate consistent test data.
Filenames follow "<item>-<n>.jpg" so the fake AI service
in tests/fakes.py can tell which item a photo shows.
"""

from typing import Optional

from models.asset import AssetFile, AssetStatus, UploadedAsset
from models.item_group import EnrichmentStatus, ItemGroup, Scenario


class AssetFileFactory:
    """
    Factory for picked photos.

    Usage:
        # One photo
        photo = AssetFileFactory.create("item1-1.jpg")

        # 3 photos of item1 and 2 of item2, in selection order
        photos = AssetFileFactory.photo_batch({"item1": 3, "item2": 2})
    """

    @classmethod
    def create(
        cls,
        filename: str = "item1-1.jpg",
        content: Optional[bytes] = None,
        content_type: str = "image/jpeg"
    ) -> AssetFile:
        return AssetFile(
            filename=filename,
            content=content if content is not None else f"bytes of {filename}".encode(),
            content_type=content_type,
        )

    @classmethod
    def photo_batch(cls, photos_per_item: dict[str, int]) -> list[AssetFile]:
        """Photos grouped by item, items in dict order."""
        return [
            cls.create(f"{item}-{n}.jpg")
            for item, count in photos_per_item.items()
            for n in range(1, count + 1)
        ]

    @classmethod
    def distinct_items(cls, count: int) -> list[AssetFile]:
        """One photo per item: item1-1.jpg, item2-1.jpg, ..."""
        return [cls.create(f"item{i}-1.jpg") for i in range(1, count + 1)]


class UploadedAssetFactory:
    """
    Factory for uploaded assets.

    Usage:
        assets = UploadedAssetFactory.create_batch(4)
    """

    @classmethod
    def create(
        cls,
        sequence_index: int = 0,
        filename: Optional[str] = None,
        status: AssetStatus = AssetStatus.UPLOADED
    ) -> UploadedAsset:
        filename = filename or f"item{sequence_index + 1}-1.jpg"
        return UploadedAsset(
            source_filename=filename,
            sequence_index=sequence_index,
            remote_ref=f"https://img.test/{filename}" if status == AssetStatus.UPLOADED else None,
            status=status,
        )

    @classmethod
    def create_batch(cls, count: int) -> list[UploadedAsset]:
        return [cls.create(sequence_index=i) for i in range(count)]


class ItemGroupFactory:
    """
    Factory for item groups.

    Usage:
        # Pending group over photos 0 and 1
        group = ItemGroupFactory.create(members=[0, 1])

        # Enriched group priced from its item number
        group = ItemGroupFactory.enriched(members=[2], number=3)

        # One pending group per photo
        groups = ItemGroupFactory.singletons(5)
    """

    @classmethod
    def create(
        cls,
        members: Optional[list[int]] = None,
        item: Optional[str] = None,
        status: EnrichmentStatus = EnrichmentStatus.PENDING,
        scenario: Scenario = Scenario.DISTINCT_ITEM,
        **overrides
    ) -> ItemGroup:
        members = sorted(members if members is not None else [0])
        item = item or f"item{members[0] + 1}"
        data = {
            "member_asset_indices": set(members),
            "image_refs": [f"https://img.test/{item}-{n}.jpg" for n in range(1, len(members) + 1)],
            "scenario": scenario,
            "enrichment_status": status,
        }
        data.update(overrides)
        return ItemGroup(**data)

    @classmethod
    def enriched(
        cls,
        members: Optional[list[int]] = None,
        number: int = 1,
        **overrides
    ) -> ItemGroup:
        data = {
            "item": f"item{number}",
            "status": EnrichmentStatus.ENRICHED,
            "title": f"Vintage item {number}",
            "description": f"A well kept item number {number}.",
            "category": "Electronics",
            "condition": "good",
            "tags": [f"item{number}", "vintage"],
            "retail_price_estimate": number * 20.0,
            "used_price_estimate": number * 10.0,
            "confidence": 0.9,
            "is_ai_generated": True,
        }
        data.update(overrides)
        return cls.create(members=members, **data)

    @classmethod
    def singletons(cls, count: int) -> list[ItemGroup]:
        return [cls.create(members=[i]) for i in range(count)]
