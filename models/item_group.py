"""
Item group schemas.

An ItemGroup is a cluster of uploaded photos believed to show one sellable
item. Groups are created by the grouping classifier, filled in by the
enrichment engine or by hand, and finally turned into draft listings.
"""

from enum import Enum
from typing import Literal, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

from models.base import BaseSchema


class Scenario(str, Enum):
    """Classifier decision for a batch."""
    SAME_ITEM = "same_item"
    DISTINCT_ITEM = "distinct_item"


class EnrichmentStatus(str, Enum):
    """Where a group stands in the enrichment phase."""
    PENDING = "pending"
    ENRICHED = "enriched"
    FAILED = "failed"
    SKIPPED = "skipped"


CONDITIONS = ["new", "like-new", "good", "fair", "poor"]

CATEGORIES = [
    "Electronics",
    "Furniture",
    "Clothing",
    "Automotive",
    "Books & Media",
    "Sports",
    "Home & Garden",
    "Toys",
    "Other",
]


class ListingAttributes(BaseModel):
    """Structured attributes produced by one enrichment call."""

    title: str = ""
    description: str = ""
    category: str = ""
    condition: str = ""
    tags: list[str] = Field(default_factory=list)
    retail_price: float = Field(default=0.0, ge=0)
    used_price: float = Field(default=0.0, ge=0)
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)


class ItemGroup(BaseSchema):
    """
    A cluster of photos depicting one item.

    member_asset_indices refer to UploadedAsset.sequence_index;
    image_refs are the matching remote refs, ordered by ascending index.
    """

    id: str = Field(default_factory=lambda: str(uuid4()))
    member_asset_indices: set[int] = Field(default_factory=set)
    image_refs: list[str] = Field(default_factory=list)
    scenario: Scenario = Scenario.DISTINCT_ITEM

    title: str = ""
    description: str = ""
    category: str = ""
    condition: str = ""
    tags: list[str] = Field(default_factory=list)
    retail_price_estimate: float = Field(default=0.0, ge=0)
    used_price_estimate: float = Field(default=0.0, ge=0)
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)

    enrichment_status: EnrichmentStatus = EnrichmentStatus.PENDING
    is_ai_generated: bool = False

    @property
    def needs_manual_entry(self) -> bool:
        """True while the group still has no usable attributes."""
        if self.enrichment_status in (EnrichmentStatus.PENDING, EnrichmentStatus.FAILED):
            return True
        return not self.title

    def ref_pairs(self) -> list[tuple[int, str]]:
        """(sequence_index, remote_ref) pairs; image_refs follow sorted member order."""
        return list(zip(sorted(self.member_asset_indices), self.image_refs))

    @property
    def sort_key(self) -> int:
        """Groups are listed in the order of their first photo."""
        return min(self.member_asset_indices) if self.member_asset_indices else 0

    def with_attributes(self, attributes: ListingAttributes) -> "ItemGroup":
        """Return a copy carrying AI attributes, marked enriched."""
        return self.model_copy(update={
            "title": attributes.title,
            "description": attributes.description,
            "category": attributes.category,
            "condition": attributes.condition,
            "tags": list(attributes.tags),
            "retail_price_estimate": attributes.retail_price,
            "used_price_estimate": attributes.used_price,
            "confidence": attributes.confidence,
            "enrichment_status": EnrichmentStatus.ENRICHED,
            "is_ai_generated": True,
        })


class ItemGroupUpdate(BaseSchema):
    """
    Manual edit of a group during review.

    All fields optional - only provided fields are updated.
    """

    title: Optional[str] = Field(None, max_length=200)
    description: Optional[str] = Field(None, max_length=5000)
    category: Optional[str] = Field(None, max_length=100)
    condition: Optional[str] = None
    retail_price_estimate: Optional[float] = Field(None, ge=0)
    used_price_estimate: Optional[float] = Field(None, ge=0)
    tags: Optional[list[str]] = None

    @field_validator("condition")
    @classmethod
    def condition_known(cls, v: Optional[str]) -> Optional[str]:
        """Condition must be one of the marketplace conditions."""
        if v is None:
            return v
        v = v.lower()
        if v not in CONDITIONS:
            raise ValueError(f"condition must be one of {', '.join(CONDITIONS)}")
        return v


class DetectedGroup(BaseModel):
    """One group as reported by the classification service."""

    image_indices: list[int] = Field(default_factory=list)
    title: str = ""
    category: str = ""


class ClassificationResponse(BaseModel):
    """Raw answer of the small-batch or bulk classification endpoint."""

    scenario: Optional[Scenario] = None
    groups: list[DetectedGroup] = Field(default_factory=list)
    remaining_unprocessed: list[int] = Field(default_factory=list)
    message: Optional[str] = None


class ClassificationOutcome(BaseModel):
    """
    Result of the grouping phase.

    status:
        grouped     - groups partition every uploaded photo
        empty       - nothing to classify
        unavailable - the service failed; photos left ungrouped for manual entry
    """

    status: Literal["grouped", "empty", "unavailable"] = "grouped"
    scenario: Optional[Scenario] = None
    groups: list[ItemGroup] = Field(default_factory=list)
    message: Optional[str] = None
    used_bulk: bool = False
    unprocessed_indices: list[int] = Field(default_factory=list)
    ungrouped_indices: list[int] = Field(default_factory=list)
    error: Optional[str] = None


class BundleSummary(BaseModel):
    """Answer of the bundle-summary endpoint."""

    title: str
    description: str = ""
    category: str = "Other"
    total_retail_value: float = Field(default=0.0, ge=0)
    suggested_price: float = Field(default=0.0, ge=0)


class ListingDraft(BaseSchema):
    """A draft listing ready for the listing persistence API."""

    title: str = ""
    description: str = ""
    category: str = ""
    condition: str = ""
    price: float = Field(default=0.0, ge=0)
    retail_price: float = Field(default=0.0, ge=0)
    tags: list[str] = Field(default_factory=list)
    image_refs: list[str] = Field(default_factory=list)
    source_group_ids: list[str] = Field(default_factory=list)
    is_ai_generated: bool = False
    is_bundle: bool = False
    needs_manual_entry: bool = False
