"""Bill categorization by keyword scoring.

Each category has a tuple of keywords matched against the vendor name,
description and line items. The category with the highest score wins;
ties, no hits and low-confidence extractions fall back to ``other``.

To add new rules, extend the keyword tuple of the matching category.
"""

from __future__ import annotations

import logging
import re
from collections import Counter
from typing import TYPE_CHECKING

from billflow.models import BillCategory

if TYPE_CHECKING:
    from billflow.models import ExtractedFields

logger = logging.getLogger(__name__)

CATEGORY_KEYWORDS: dict[BillCategory, tuple[str, ...]] = {
    BillCategory.OFFICE_SUPPLIES: (
        "office",
        "supplies",
        "paper",
        "toner",
        "ink",
        "stationery",
        "printer",
        "desk",
        "chair",
        "staples",
    ),
    BillCategory.SOFTWARE: (
        "software",
        "license",
        "subscription",
        "saas",
        "cloud",
        "hosting",
        "seat",
        "api",
        "domain",
    ),
    BillCategory.MARKETING: (
        "marketing",
        "advertising",
        "ads",
        "campaign",
        "promotion",
        "seo",
        "social media",
        "print ad",
        "sponsorship",
    ),
    BillCategory.UTILITIES: (
        "electric",
        "electricity",
        "water",
        "gas",
        "utility",
        "internet",
        "phone",
        "telecom",
        "power",
    ),
    BillCategory.PROFESSIONAL_SERVICES: (
        "consulting",
        "legal",
        "attorney",
        "accounting",
        "audit",
        "bookkeeping",
        "advisory",
        "retainer",
        "professional services",
    ),
    BillCategory.TRAVEL: (
        "airline",
        "flight",
        "hotel",
        "lodging",
        "travel",
        "car rental",
        "taxi",
        "mileage",
        "train",
    ),
}

_TOKEN_SPLIT = re.compile(r"[^a-z0-9]+")


class Categorizer:
    """Assign a bill category from extracted content. Never raises."""

    def __init__(
        self,
        confidence_threshold: float,
        keywords: dict[BillCategory, tuple[str, ...]] | None = None,
    ) -> None:
        self.confidence_threshold = confidence_threshold
        self.keywords = keywords if keywords is not None else CATEGORY_KEYWORDS

    def categorize(self, fields: ExtractedFields) -> BillCategory:
        if fields.confidence < self.confidence_threshold:
            return BillCategory.OTHER

        text = _searchable_text(fields)
        if not text.strip():
            return BillCategory.OTHER

        scores = self.score(text)
        if not scores:
            return BillCategory.OTHER

        ranked = scores.most_common(2)
        if len(ranked) > 1 and ranked[0][1] == ranked[1][1]:
            logger.debug("Ambiguous category between %s and %s", ranked[0][0], ranked[1][0])
            return BillCategory.OTHER
        return ranked[0][0]

    def score(self, text: str) -> Counter[BillCategory]:
        """Count keyword hits per category in ``text``."""
        padded = f" {' '.join(_TOKEN_SPLIT.split(text.lower()))} "
        scores: Counter[BillCategory] = Counter()
        for category, words in self.keywords.items():
            for word in words:
                hits = padded.count(f" {word} ")
                if hits:
                    scores[category] += hits
        return scores


def _searchable_text(fields: ExtractedFields) -> str:
    parts = [fields.vendor_name or "", fields.description or ""]
    parts.extend(item.description for item in fields.line_items)
    return " ".join(parts)
