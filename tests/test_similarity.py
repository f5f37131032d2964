from typing import List

from isbn_enricher.core.models import BookMetadata, Candidate
from isbn_enricher.core.similarity import string_similarity, validate_match
from isbn_enricher.resolvers.base import SearchValidateResolver

MARTIAN = "9780553418026"
CHRONICLES = "9780553278224"


class CannedSearchResolver(SearchValidateResolver):
    name = "canned"

    def __init__(self, candidates: List[Candidate], **kwargs) -> None:
        super().__init__(**kwargs)
        self.candidates = candidates

    def search(self, title: str, author: str) -> List[Candidate]:
        return list(self.candidates)

    def fetch(self, isbn: str):
        return None


def _candidates() -> List[Candidate]:
    return [
        Candidate(
            CHRONICLES,
            BookMetadata(isbn13=CHRONICLES, provider="canned", title="The Martian Chronicles", authors=("Ray Bradbury",)),
        ),
        Candidate(
            MARTIAN,
            BookMetadata(isbn13=MARTIAN, provider="canned", title="The Martian", authors=("Andy Weir",)),
        ),
    ]


def test_string_similarity_bounds() -> None:
    assert string_similarity("The Martian", "the martian!") == 1.0
    assert string_similarity("", "anything") == 0.0
    assert 0.0 < string_similarity("Andy Weir", "Andrew Weir") < 1.0


def test_both_axes_must_clear_threshold() -> None:
    verdict = validate_match("The Martian Chronicles", "Andy Weir", "The Martian Chronicles", "Ray Bradbury")
    assert verdict.title_score == 1.0
    assert verdict.author_score < 0.70
    assert not verdict.accepted

    verdict = validate_match("The Martian", "Andy Weir", "The Martian", "Andy Weir")
    assert verdict.accepted
    assert verdict.confidence == 100


def test_martian_accepted_and_chronicles_rejected() -> None:
    resolver = CannedSearchResolver(_candidates())
    result = resolver.resolve("The Martian", "Andy Weir")
    assert result is not None
    assert result.isbn == MARTIAN
    assert result.source == "canned"
    assert result.author == "Andy Weir"


def test_title_match_with_wrong_author_is_no_result() -> None:
    resolver = CannedSearchResolver(_candidates()[:1])
    assert resolver.resolve("The Martian Chronicles", "Andy Weir") is None


def test_co_author_is_matched() -> None:
    meta = BookMetadata(
        isbn13=MARTIAN,
        provider="canned",
        title="Good Omens",
        authors=("Neil Gaiman", "Terry Pratchett"),
    )
    resolver = CannedSearchResolver([Candidate(MARTIAN, meta)])
    result = resolver.resolve("Good Omens", "Terry Pratchett")
    assert result is not None
    assert result.author == "Terry Pratchett"


def test_missing_inputs_never_search() -> None:
    resolver = CannedSearchResolver(_candidates())
    assert resolver.resolve("", "Andy Weir") is None
    assert resolver.resolve("The Martian", "  ") is None
