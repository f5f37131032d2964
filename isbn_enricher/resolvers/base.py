from __future__ import annotations

import logging
from typing import List, Optional, Tuple

import requests

from isbn_enricher.core.models import Author, BookMetadata, Candidate, ResolutionResult
from isbn_enricher.core.similarity import (
    DEFAULT_SIMILARITY_THRESHOLD,
    MatchVerdict,
    validate_match,
)
from isbn_enricher.errors import PermanentProviderError, ValidationRejection
from isbn_enricher.gateway.rate_limiter import RateLimiter
from isbn_enricher.integrations.http_client import make_session, request_json

logger = logging.getLogger(__name__)

DEFAULT_MAX_CANDIDATES = 5


class Resolver:
    """resolve(title, author) -> validated ResolutionResult or None."""

    name = "resolver"

    def resolve(self, title: str, author: str) -> Optional[ResolutionResult]:
        raise NotImplementedError

    def fetch(self, isbn: str) -> Optional[BookMetadata]:
        return None

    def fetch_author(self, name: str) -> Optional[Author]:
        return None


class SearchValidateResolver(Resolver):
    """
    Provider adapter implementing search -> validate:

    1. fuzzy search on (title, author) for ISBN candidates
    2. per candidate, in provider order, fetch full metadata
    3. accept the first candidate whose title AND author similarity clear the threshold
    4. otherwise None; never guess
    """

    def __init__(
        self,
        *,
        session: Optional[requests.Session] = None,
        rate_limiter: Optional[RateLimiter] = None,
        threshold: float = DEFAULT_SIMILARITY_THRESHOLD,
        max_candidates: int = DEFAULT_MAX_CANDIDATES,
        timeout_s: float = 15,
        retries: int = 2,
    ) -> None:
        self.session = session or make_session()
        self.rate_limiter = rate_limiter
        self.threshold = float(threshold)
        self.max_candidates = max(1, int(max_candidates))
        self.timeout_s = timeout_s
        self.retries = retries

    # --- provider hooks ---

    def search(self, title: str, author: str) -> List[Candidate]:
        raise NotImplementedError

    def fetch(self, isbn: str) -> Optional[BookMetadata]:
        raise NotImplementedError

    # --- shared plumbing ---

    def _throttle(self) -> None:
        if self.rate_limiter is not None:
            self.rate_limiter.acquire(self.name)

    def _get_json(self, url: str, params: Optional[dict] = None) -> dict:
        return request_json(
            self.session,
            "GET",
            url,
            provider=self.name,
            params=params,
            timeout_s=self.timeout_s,
            retries=self.retries,
            before_request=self._throttle,
        )

    def _verdict(self, title: str, author: str, meta: BookMetadata) -> Tuple[MatchVerdict, str]:
        # Score against whichever listed author matches best; co-authored books list several.
        best = validate_match(title, author, meta.title, meta.first_author, self.threshold)
        best_author = meta.first_author
        for cand_author in meta.authors[1:]:
            v = validate_match(title, author, meta.title, cand_author, self.threshold)
            if v.author_score > best.author_score:
                best, best_author = v, cand_author
        return best, best_author

    def resolve(self, title: str, author: str) -> Optional[ResolutionResult]:
        if not (title or "").strip() or not (author or "").strip():
            return None
        try:
            candidates = self.search(title, author)
        except PermanentProviderError as e:
            logger.debug("search miss | resolver=%s | err=%s", self.name, e)
            return None

        seen = set()
        for cand in candidates:
            if cand.isbn in seen:
                continue
            seen.add(cand.isbn)
            if len(seen) > self.max_candidates:
                break
            meta = cand.metadata
            if meta is None:
                try:
                    meta = self.fetch(cand.isbn)
                except PermanentProviderError as e:
                    logger.debug("fetch miss | resolver=%s | isbn=%s | err=%s", self.name, cand.isbn, e)
                    continue
            if meta is None or not meta.title or not meta.first_author:
                continue

            verdict, matched_author = self._verdict(title, author, meta)
            if not verdict.accepted:
                rej = ValidationRejection(self.name, cand.isbn, verdict.title_score, verdict.author_score)
                logger.debug("validation rejected | %s | candidate=%r by %r", rej, meta.title, matched_author)
                continue

            logger.info(
                "resolved | resolver=%s | isbn=%s | confidence=%s | title=%r",
                self.name,
                cand.isbn,
                verdict.confidence,
                meta.title,
            )
            return ResolutionResult(
                isbn=cand.isbn,
                confidence=verdict.confidence,
                source=self.name,
                title=meta.title,
                author=matched_author,
                metadata=meta,
            )
        return None
