"""
Claude Vision backend for the listing AI service.

Implements the same four calls as the HTTP client directly on the
Anthropic API, for deployments without a separate AI service.
"""

from typing import Optional

import anthropic
import structlog

from config import settings
from exceptions import ExternalServiceError
from integrations.listing_ai_client import (
    bundle_payload,
    parse_attributes,
    parse_bundle_summary,
    parse_classification,
)
from models.item_group import (
    CATEGORIES,
    CONDITIONS,
    BundleSummary,
    ClassificationResponse,
    ItemGroup,
    ListingAttributes,
    Scenario,
)
from utils.text_utils import parse_json_object

logger = structlog.get_logger(__name__)

CATEGORY_LIST = ", ".join(CATEGORIES)
CONDITION_LIST = ", ".join(CONDITIONS)


class ClaudeListingAIService:
    """
    Classify and describe marketplace photos with Claude.

    Every call returns strict JSON; markdown fences and stray prose are
    tolerated by parse_json_object.
    """

    # Maximum tokens per call type
    TOKEN_LIMITS = {
        "classify": 3072,
        "enrich": 1024,
        "bundle": 1536,
    }

    # Images sent in one bulk request; the rest are reported unprocessed
    MAX_IMAGES_PER_CALL = 20

    CLASSIFY_PROMPT = """Analyze {count} product photos. Group them by physical item.

IMPORTANT: Return ONLY valid JSON, no markdown, no explanation.

RULES:
1. SAME ITEM: matching color, shape, texture and labels means the photos show one item from different angles.
2. DIFFERENT ITEMS: list each item separately with only its own imageIndices.
3. 80%+ similarity = same item.
4. Every index 0-{last} must appear exactly once.

Same item: {{"scenario": "same_item", "groups": [{{"imageIndices": [0, 1, 2], "title": string, "category": string}}]}}
Different items: {{"scenario": "distinct_item", "groups": [{{"imageIndices": [0, 2], "title": string, "category": string}}, {{"imageIndices": [1], "title": string, "category": string}}]}}

Categories: {categories}"""

    BULK_PROMPT = """Analyze {count} product photos from a bulk upload. Group them by physical item.

IMPORTANT: Return ONLY valid JSON, no markdown, no explanation.

Photos of the same item from different angles share one group. Every index 0-{last} must appear exactly once.

{{"groups": [{{"imageIndices": [0, 3], "title": string, "category": string}}]}}

Categories: {categories}"""

    ENRICH_PROMPT = """Analyze this product for a marketplace listing. The photos all show the same item.

IMPORTANT: Return ONLY valid JSON, no markdown, no explanation.

Provide: title (max 80 chars), description (2-3 sentences), used price, retail price, {category_instruction}, condition (one of: {conditions}), up to 5 search tags, confidence 0.0-1.0.

{{"title": string, "description": string, "usedPrice": number, "retailPrice": number, "category": string, "condition": string, "tags": [string], "confidence": number}}"""

    BUNDLE_PROMPT = """Create a bundle listing for {count} items:

{product_list}

IMPORTANT: Return ONLY valid JSON, no markdown, no explanation.

Provide:
1. Title (max 80 chars, format: "{count}-Item Bundle: [summary]")
2. Description (overview, list items, total retail value, bundle savings)
3. Category (best fit or "Other")
4. Total retail value (sum all retail prices)
5. Bundle price (20-40% below retail)

{{"title": string, "description": string, "totalRetailValue": number, "suggestedPrice": number, "category": string}}"""

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: Optional[str] = None,
        client: Optional[anthropic.AsyncAnthropic] = None
    ):
        self.model = model or settings.claude_model
        if client is not None:
            self.client = client
        else:
            key = api_key or settings.anthropic_api_key
            self.client = anthropic.AsyncAnthropic(api_key=key) if key else None

    @staticmethod
    def _image_blocks(image_refs: list[str]) -> list[dict]:
        return [
            {"type": "image", "source": {"type": "url", "url": ref}}
            for ref in image_refs
        ]

    async def _ask(self, kind: str, content: list[dict], system: str) -> dict:
        """Send one request and return the parsed JSON object."""
        if self.client is None:
            raise ExternalServiceError("ai_service", "Claude API not available. Set ANTHROPIC_API_KEY.")

        try:
            response = await self.client.messages.create(
                model=self.model,
                max_tokens=self.TOKEN_LIMITS[kind],
                system=system,
                messages=[{"role": "user", "content": content}]
            )
        except anthropic.APIError as e:
            logger.error("claude_api_error", kind=kind, error=str(e))
            raise ExternalServiceError("ai_service", f"Claude API error: {e}") from e

        response_text = "".join(
            block.text for block in response.content if getattr(block, "type", None) == "text"
        )
        logger.debug("claude_response_received", kind=kind, response_length=len(response_text))

        try:
            return parse_json_object(response_text)
        except ValueError as e:
            logger.error("claude_json_parse_failed", kind=kind, response_preview=response_text[:500])
            raise ExternalServiceError("ai_service", f"Unreadable Claude response for {kind}") from e

    async def classify(
        self, image_refs: list[str], category_hint: Optional[str] = None
    ) -> ClassificationResponse:
        prompt = self.CLASSIFY_PROMPT.format(
            count=len(image_refs),
            last=len(image_refs) - 1,
            categories=category_hint or CATEGORY_LIST,
        )
        content = [{"type": "text", "text": prompt}, *self._image_blocks(image_refs)]

        data = await self._ask(
            "classify",
            content,
            "Expert product analyst. Determine if photos show the same product or different products."
        )
        result = parse_classification(data)

        logger.info(
            "claude_classification_completed",
            images=len(image_refs),
            scenario=result.scenario.value if result.scenario else None,
            groups=len(result.groups)
        )
        return result

    async def classify_bulk(
        self, image_refs: list[str], category_hint: Optional[str] = None
    ) -> ClassificationResponse:
        batch = image_refs[:self.MAX_IMAGES_PER_CALL]
        prompt = self.BULK_PROMPT.format(
            count=len(batch),
            last=len(batch) - 1,
            categories=category_hint or CATEGORY_LIST,
        )
        content = [{"type": "text", "text": prompt}, *self._image_blocks(batch)]

        data = await self._ask("classify", content, "Expert product analyst grouping bulk uploads.")
        result = parse_classification(data)
        result.scenario = Scenario.DISTINCT_ITEM
        result.remaining_unprocessed = list(range(len(batch), len(image_refs)))

        logger.info(
            "claude_bulk_classification_completed",
            images=len(batch),
            groups=len(result.groups),
            unprocessed=len(result.remaining_unprocessed)
        )
        return result

    async def enrich(
        self, image_refs: list[str], category_hint: Optional[str] = None
    ) -> ListingAttributes:
        category_instruction = (
            f'category: "{category_hint}"' if category_hint
            else f"category - ONE OF: {CATEGORY_LIST}"
        )
        prompt = self.ENRICH_PROMPT.format(
            category_instruction=category_instruction,
            conditions=CONDITION_LIST,
        )
        content = [{"type": "text", "text": prompt}, *self._image_blocks(image_refs)]

        data = await self._ask("enrich", content, "Expert product analyzer. Fast, accurate identification.")
        attributes = parse_attributes(data, category_hint)

        logger.info(
            "claude_enrichment_completed",
            title=attributes.title,
            category=attributes.category,
            confidence=attributes.confidence
        )
        return attributes

    async def summarize_bundle(self, groups: list[ItemGroup]) -> BundleSummary:
        items = bundle_payload(groups)
        product_list = "\n".join(
            f"{i + 1}. {item['title']} - ${item['usedPrice']} (retail: ${item['retailPrice']})"
            for i, item in enumerate(items)
        )
        prompt = self.BUNDLE_PROMPT.format(count=len(items), product_list=product_list)

        data = await self._ask(
            "bundle",
            [{"type": "text", "text": prompt}],
            "Expert at creating compelling multi-item bundle listings."
        )
        try:
            summary = parse_bundle_summary(data)
        except ValueError as e:
            raise ExternalServiceError("ai_service", str(e)) from e

        logger.info(
            "claude_bundle_summary_completed",
            title=summary.title,
            suggested_price=summary.suggested_price
        )
        return summary
