"""
Listing AI service integration.

The AI service is a black box with four calls:
    POST /classify          { imageRefs[], categoryHint? } -> { scenario, groups[] }
    POST /classify/bulk     { imageRefs[], categoryHint? } -> { groups[], remainingUnprocessed? }
    POST /enrich            { imageRefs[], categoryHint? } -> listing attributes
    POST /bundle-summary    { groups[] } -> { title, description, suggestedPrice }

The parse_* helpers are shared with the Claude-backed implementation so
both backends produce identical models.
"""

from typing import Any, Optional, Protocol

import httpx
import structlog

from config import settings
from exceptions import ExternalServiceError
from models.item_group import (
    BundleSummary,
    ClassificationResponse,
    DetectedGroup,
    ItemGroup,
    ListingAttributes,
    Scenario,
)
from utils.text_utils import (
    coerce_confidence,
    coerce_price,
    normalize_category,
    normalize_condition,
)

logger = structlog.get_logger(__name__)

# Older service builds answer with the product-centric scenario names
SCENARIO_ALIASES = {
    "same_item": Scenario.SAME_ITEM,
    "same_product": Scenario.SAME_ITEM,
    "distinct_item": Scenario.DISTINCT_ITEM,
    "multiple_products": Scenario.DISTINCT_ITEM,
}


class ListingAIService(Protocol):
    """Port for the classification / enrichment service."""

    async def classify(
        self, image_refs: list[str], category_hint: Optional[str] = None
    ) -> ClassificationResponse:
        ...

    async def classify_bulk(
        self, image_refs: list[str], category_hint: Optional[str] = None
    ) -> ClassificationResponse:
        ...

    async def enrich(
        self, image_refs: list[str], category_hint: Optional[str] = None
    ) -> ListingAttributes:
        ...

    async def summarize_bundle(self, groups: list[ItemGroup]) -> BundleSummary:
        ...


# ===================
# RESPONSE PARSING
# ===================

def _int_list(values: Any) -> list[int]:
    if not isinstance(values, list):
        return []
    result = []
    for v in values:
        try:
            result.append(int(v))
        except (TypeError, ValueError):
            continue
    return result


def parse_classification(data: dict) -> ClassificationResponse:
    """
    Build a ClassificationResponse from a service answer.

    Accepts camelCase and snake_case keys, and "products" as an alias for
    "groups".
    """
    raw_scenario = data.get("scenario")
    scenario = SCENARIO_ALIASES.get(str(raw_scenario).lower()) if raw_scenario else None

    raw_groups = data.get("groups")
    if raw_groups is None:
        raw_groups = data.get("products", [])

    groups = []
    for raw in raw_groups if isinstance(raw_groups, list) else []:
        if not isinstance(raw, dict):
            continue
        indices = raw.get("imageIndices", raw.get("image_indices", []))
        groups.append(DetectedGroup(
            image_indices=_int_list(indices),
            title=str(raw.get("title") or ""),
            category=str(raw.get("category") or ""),
        ))

    remaining = data.get("remainingUnprocessed", data.get("remaining_unprocessed", []))

    return ClassificationResponse(
        scenario=scenario,
        groups=groups,
        remaining_unprocessed=_int_list(remaining),
        message=data.get("message"),
    )


def parse_attributes(data: dict, category_hint: Optional[str] = None) -> ListingAttributes:
    """Build ListingAttributes from an enrichment answer."""
    tags = data.get("tags") or data.get("search_keywords") or []
    if not isinstance(tags, list):
        tags = []

    return ListingAttributes(
        title=str(data.get("title") or data.get("suggested_title") or "")[:200],
        description=str(data.get("description") or data.get("suggested_description") or ""),
        category=normalize_category(data.get("category"), category_hint),
        condition=normalize_condition(data.get("condition")),
        tags=[str(t) for t in tags][:10],
        retail_price=coerce_price(data.get("retailPrice", data.get("retail_price"))),
        used_price=coerce_price(data.get("usedPrice", data.get("used_price"))),
        confidence=coerce_confidence(data.get("confidence")),
    )


def parse_bundle_summary(data: dict) -> BundleSummary:
    """Build a BundleSummary from a bundle-summary answer."""
    price = data.get("suggestedPrice", data.get("suggestedBundlePrice", data.get("suggested_price")))
    retail = data.get("totalRetailValue", data.get("total_retail_value"))

    title = str(data.get("title") or "").strip()
    if not title:
        raise ValueError("Bundle summary has no title")

    return BundleSummary(
        title=title[:200],
        description=str(data.get("description") or ""),
        category=normalize_category(data.get("category")) or "Other",
        total_retail_value=coerce_price(retail),
        suggested_price=coerce_price(price),
    )


def bundle_payload(groups: list[ItemGroup]) -> list[dict]:
    """Per-group attributes sent to the bundle-summary call."""
    return [
        {
            "title": g.title,
            "description": g.description,
            "category": g.category,
            "condition": g.condition,
            "retailPrice": g.retail_price_estimate,
            "usedPrice": g.used_price_estimate,
        }
        for g in groups
    ]


# ===================
# HTTP CLIENT
# ===================

class HttpListingAIClient:
    """
    httpx client for the listing AI service.

    Every failure (transport, status, malformed body) is raised as
    ExternalServiceError("ai_service", ...).
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        api_key: Optional[str] = None,
        timeout: Optional[float] = None,
        client: Optional[httpx.AsyncClient] = None
    ):
        self.base_url = (base_url or settings.ai_service_url).rstrip("/")
        self.api_key = api_key if api_key is not None else settings.ai_service_api_key
        self.timeout = timeout or settings.ai_request_timeout_seconds
        self._client = client

    def _headers(self) -> dict:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    async def _post(self, path: str, payload: dict) -> dict:
        url = f"{self.base_url}{path}"
        try:
            if self._client is not None:
                response = await self._client.post(url, json=payload, headers=self._headers())
            else:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    response = await client.post(url, json=payload, headers=self._headers())
            response.raise_for_status()
            data = response.json()
        except httpx.TimeoutException as e:
            logger.warning("ai_service_timeout", path=path)
            raise ExternalServiceError("ai_service", f"AI service timed out on {path}") from e
        except httpx.HTTPStatusError as e:
            logger.warning("ai_service_error_status", path=path, status_code=e.response.status_code)
            raise ExternalServiceError(
                "ai_service",
                f"AI service returned {e.response.status_code} on {path}",
                details={"status_code": e.response.status_code}
            ) from e
        except (httpx.HTTPError, ValueError) as e:
            logger.warning("ai_service_unreachable", path=path, error=str(e))
            raise ExternalServiceError("ai_service", f"AI service call failed on {path}") from e

        if not isinstance(data, dict):
            raise ExternalServiceError("ai_service", f"Unexpected response body on {path}")
        return data

    async def classify(
        self, image_refs: list[str], category_hint: Optional[str] = None
    ) -> ClassificationResponse:
        data = await self._post("/classify", {"imageRefs": image_refs, "categoryHint": category_hint})
        return parse_classification(data)

    async def classify_bulk(
        self, image_refs: list[str], category_hint: Optional[str] = None
    ) -> ClassificationResponse:
        data = await self._post("/classify/bulk", {"imageRefs": image_refs, "categoryHint": category_hint})
        return parse_classification(data)

    async def enrich(
        self, image_refs: list[str], category_hint: Optional[str] = None
    ) -> ListingAttributes:
        data = await self._post("/enrich", {"imageRefs": image_refs, "categoryHint": category_hint})
        return parse_attributes(data, category_hint)

    async def summarize_bundle(self, groups: list[ItemGroup]) -> BundleSummary:
        data = await self._post("/bundle-summary", {"groups": bundle_payload(groups)})
        try:
            return parse_bundle_summary(data)
        except ValueError as e:
            raise ExternalServiceError("ai_service", str(e)) from e


def get_listing_ai_service() -> ListingAIService:
    """Build the configured AI backend."""
    if settings.ai_provider == "claude":
        from integrations.claude_vision import ClaudeListingAIService
        return ClaudeListingAIService()
    return HttpListingAIClient()
