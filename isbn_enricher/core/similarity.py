from __future__ import annotations

from dataclasses import dataclass

from rapidfuzz.distance import Levenshtein

from isbn_enricher.core.normalize import normalize_match_text

DEFAULT_SIMILARITY_THRESHOLD = 0.70


def string_similarity(a: str, b: str) -> float:
    """
    Normalized edit-distance similarity in [0, 1].

    Both sides are lowercased with punctuation removed, so "The Martian!" and
    "the martian" score 1.0. An empty side never matches.
    """
    left = normalize_match_text(a)
    right = normalize_match_text(b)
    if not left or not right:
        return 0.0
    if left == right:
        return 1.0
    return float(Levenshtein.normalized_similarity(left, right))


@dataclass(frozen=True)
class MatchVerdict:
    title_score: float
    author_score: float
    threshold: float

    @property
    def accepted(self) -> bool:
        return self.title_score >= self.threshold and self.author_score >= self.threshold

    @property
    def confidence(self) -> int:
        return int(round(100 * (self.title_score + self.author_score) / 2))


def validate_match(
    query_title: str,
    query_author: str,
    candidate_title: str,
    candidate_author: str,
    threshold: float = DEFAULT_SIMILARITY_THRESHOLD,
) -> MatchVerdict:
    # Both axes must pass; a title hit with the wrong author is a rejection.
    return MatchVerdict(
        title_score=string_similarity(query_title, candidate_title),
        author_score=string_similarity(query_author, candidate_author),
        threshold=float(threshold),
    )
