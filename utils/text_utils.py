"""
Text utilities for cleaning AI service answers.

Used by the AI clients to turn loosely formatted model output into
values the item-group models accept.
"""

import json
import re
import unicodedata
from typing import Any, Optional

from models.item_group import CATEGORIES, CONDITIONS

# Common phrasings the models use for the marketplace conditions
CONDITION_ALIASES = {
    "brand new": "new",
    "new with tags": "new",
    "like new": "like-new",
    "likenew": "like-new",
    "excellent": "like-new",
    "very good": "good",
    "used": "good",
    "acceptable": "fair",
    "worn": "fair",
    "damaged": "poor",
    "for parts": "poor",
}


def strip_code_fences(text: str) -> str:
    """
    Remove markdown code fences around a JSON answer.

    - "```json\\n{...}\\n```" → "{...}"
    - "{...}" → "{...}"
    """
    cleaned = (text or "").strip()
    if cleaned.startswith("```"):
        cleaned = re.sub(r'^```(?:json)?\s*', '', cleaned)
        cleaned = re.sub(r'\s*```$', '', cleaned)
    return cleaned


def parse_json_object(text: str) -> dict:
    """
    Parse a JSON object out of a model answer.

    Falls back to the outermost {...} span when the model wrapped the
    object in prose.

    Raises:
        ValueError: If no JSON object can be recovered
    """
    cleaned = strip_code_fences(text)
    try:
        data = json.loads(cleaned)
    except json.JSONDecodeError:
        start, end = cleaned.find("{"), cleaned.rfind("}")
        if start == -1 or end <= start:
            raise ValueError("No JSON object in response")
        data = json.loads(cleaned[start:end + 1])

    if not isinstance(data, dict):
        raise ValueError("Response JSON is not an object")
    return data


def normalize_condition(value: Optional[str]) -> str:
    """
    Map free-text condition to a marketplace condition.

    - "Like New" → "like-new"
    - "Excellent" → "like-new"
    - "" → ""

    Unknown values map to "good" so drafts stay publishable.
    """
    if not value:
        return ""

    normalized = unicodedata.normalize('NFKC', value).strip().lower()
    normalized = re.sub(r'[\s_]+', ' ', normalized)

    if normalized.replace(" ", "-") in CONDITIONS:
        return normalized.replace(" ", "-")

    return CONDITION_ALIASES.get(normalized, "good")


def normalize_category(value: Optional[str], manual_category: Optional[str] = None) -> str:
    """
    Resolve the category for a group.

    A manual category chosen by the user always wins. Otherwise the
    model's answer is matched case-insensitively against the known
    categories, falling back to "Other".
    """
    if manual_category:
        return manual_category.strip()
    if not value:
        return ""

    wanted = value.strip().lower()
    for category in CATEGORIES:
        if category.lower() == wanted:
            return category
    return "Other"


def coerce_price(value: Any) -> float:
    """
    Read a price out of model output.

    - 49.99 → 49.99
    - "$1,200" → 1200.0
    - None / "n/a" / negative → 0.0
    """
    if value is None or isinstance(value, bool):
        return 0.0
    if isinstance(value, (int, float)):
        return max(0.0, float(value))

    digits = re.sub(r'[^0-9.]', '', str(value))
    try:
        return max(0.0, float(digits)) if digits else 0.0
    except ValueError:
        return 0.0


def coerce_confidence(value: Any) -> float:
    """
    Read a confidence score on a 0-1 scale.

    Models answer 0-1, 0-10 or 0-100; all are folded into 0-1.
    """
    try:
        score = float(value)
    except (TypeError, ValueError):
        return 0.0

    if score > 10:
        score = score / 100
    elif score > 1:
        score = score / 10
    return min(1.0, max(0.0, score))
