from __future__ import annotations

from typing import Any, Iterable

from isbn_enricher.core.models import (
    FULLY_ENRICHED_MIN_SCORE,
    Edition,
    Work,
)

EDITION_FIELDS = (
    "title",
    "subtitle",
    "publisher",
    "publication_date",
    "page_count",
    "format",
    "language",
    "cover_urls",
    "external_ids",
    "subjects",
    "contributors",
)

WORK_FIELDS = (
    "title",
    "subtitle",
    "description",
    "subject_tags",
    "first_publication_year",
    "cover_url",
    "contributors",
)

CONFIDENCE_HIGH = 85
CONFIDENCE_MEDIUM = 65


def _is_filled(value: Any) -> bool:
    if value is None:
        return False
    if isinstance(value, str):
        return bool(value.strip()) and value.strip().lower() != "unknown"
    if isinstance(value, (list, tuple, dict, set)):
        return len(value) > 0
    if isinstance(value, (int, float)):
        return value > 0
    return True


def completeness(obj: Any, fields: Iterable[str]) -> int:
    names = list(fields)
    if not names:
        return 0
    filled = sum(1 for name in names if _is_filled(getattr(obj, name, None)))
    return int(round(filled / len(names) * 100))


def edition_completeness(edition: Edition) -> int:
    return completeness(edition, EDITION_FIELDS)


def work_completeness(work: Work) -> int:
    return completeness(work, WORK_FIELDS)


def fully_enriched_score(edition_score: int) -> int:
    """Map an enriched edition's completeness onto the 85..100 band, rounding down."""
    pct = max(0, min(100, int(edition_score)))
    return FULLY_ENRICHED_MIN_SCORE + ((100 - FULLY_ENRICHED_MIN_SCORE) * pct) // 100


def confidence_bucket(confidence: int) -> str:
    if confidence >= CONFIDENCE_HIGH:
        return "high"
    if confidence >= CONFIDENCE_MEDIUM:
        return "medium"
    return "low"
