from isbn_enricher.core.models import Edition, Work
from isbn_enricher.core.scoring import (
    confidence_bucket,
    edition_completeness,
    fully_enriched_score,
    work_completeness,
)


def test_edition_completeness_counts_filled_fields() -> None:
    assert edition_completeness(Edition(isbn="9780553418026")) == 0
    partial = Edition(isbn="9780553418026", title="The Martian", publisher="Crown", format="Unknown")
    full = Edition(
        isbn="9780553418026",
        title="The Martian",
        subtitle="A Novel",
        publisher="Crown",
        publication_date="2014",
        page_count=369,
        format="Hardcover",
        language="en",
        cover_urls={"isbndb": "u"},
        external_ids={"isbndb": ("x",)},
        subjects=("Fiction",),
        contributors=("isbndb",),
    )
    assert 0 < edition_completeness(partial) < edition_completeness(full) == 100


def test_work_completeness() -> None:
    assert work_completeness(Work(work_key="w", title="The Martian")) < work_completeness(
        Work(work_key="w", title="The Martian", description="Stranded on Mars", cover_url="u")
    )


def test_fully_enriched_band() -> None:
    assert fully_enriched_score(0) == 85
    assert fully_enriched_score(100) == 100
    assert fully_enriched_score(50) == 92
    assert fully_enriched_score(10) == 86
    assert fully_enriched_score(99) == 99
    assert fully_enriched_score(250) == 100
    assert fully_enriched_score(-5) == 85


def test_confidence_buckets() -> None:
    assert confidence_bucket(85) == "high"
    assert confidence_bucket(84) == "medium"
    assert confidence_bucket(65) == "medium"
    assert confidence_bucket(64) == "low"
