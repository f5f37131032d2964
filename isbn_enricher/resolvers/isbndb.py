from __future__ import annotations

import logging
from typing import Dict, Iterable, List, Optional
from urllib.parse import quote

from isbn_enricher.core.models import BookMetadata, Candidate
from isbn_enricher.core.normalize import (
    clean_text,
    is_valid_isbn10,
    is_valid_isbn13,
    isbn10_to_isbn13,
    normalize_isbn,
    to_isbn13,
)
from isbn_enricher.gateway.quota import QuotaGate
from isbn_enricher.integrations.http_client import ISBNDB_BASE_URL, make_isbndb_session, request_json
from isbn_enricher.resolvers.base import SearchValidateResolver

logger = logging.getLogger(__name__)

ISBNDB_BATCH_MAX = 100
SEARCH_PAGE_SIZE = 20


def _join_list(val) -> List[str]:
    if not val:
        return []
    if isinstance(val, list):
        return [str(v) for v in val if str(v).strip()]
    return [s.strip() for s in str(val).split(",") if s.strip()]


def parse_book(book: dict) -> Optional[BookMetadata]:
    """Parse a single ISBNdb 'book' payload into BookMetadata (None without a valid ISBN)."""
    isbn13 = normalize_isbn(book.get("isbn13") or book.get("isbn_13") or "")
    isbn10 = normalize_isbn(book.get("isbn10") or book.get("isbn_10") or book.get("isbn") or "")
    if isbn13 and not is_valid_isbn13(isbn13):
        isbn13 = ""
    if len(isbn10) != 10 or not is_valid_isbn10(isbn10):
        isbn10 = ""
    if not isbn13:
        isbn13 = isbn10_to_isbn13(isbn10) if isbn10 else to_isbn13(book.get("isbn") or "")
    if not isbn13:
        return None

    pages = book.get("pages")
    try:
        page_count = int(pages) if pages else None
    except (TypeError, ValueError):
        page_count = None

    return BookMetadata(
        isbn13=isbn13,
        provider="isbndb",
        title=clean_text(book.get("title") or book.get("title_long") or ""),
        authors=tuple(_join_list(book.get("authors"))),
        isbn10=isbn10,
        publisher=clean_text(book.get("publisher") or ""),
        publication_date=clean_text(book.get("date_published") or book.get("published_date") or ""),
        page_count=page_count if page_count and page_count > 0 else None,
        language=clean_text(book.get("language") or ""),
        format=clean_text(book.get("binding") or book.get("format") or ""),
        subjects=tuple(_join_list(book.get("subjects"))),
        description=clean_text(book.get("synopsis") or book.get("overview") or "", max_len=2000),
        cover_url=book.get("image") or "",
        cover_url_large=book.get("image_original") or "",
        provider_id=isbn13,
    )


class ISBNdbResolver(SearchValidateResolver):
    """
    Primary (metered) provider. Every HTTP attempt is recorded against the
    quota tracker; whether to call at all is decided upstream by the QuotaGate.
    """

    name = "isbndb"

    def __init__(
        self,
        *,
        api_key: str,
        quota: Optional[QuotaGate] = None,
        base_url: str = ISBNDB_BASE_URL,
        **kwargs,
    ) -> None:
        if kwargs.get("session") is None:
            kwargs["session"] = make_isbndb_session(api_key)
        super().__init__(**kwargs)
        self.quota = quota
        self.base_url = base_url.rstrip("/")

    def _before_request(self) -> None:
        self._throttle()
        if self.quota is not None:
            self.quota.record_call(1)

    def _request(self, method: str, url: str, *, params: Optional[dict] = None, data: Optional[dict] = None) -> dict:
        return request_json(
            self.session,
            method,
            url,
            provider=self.name,
            params=params,
            data=data,
            timeout_s=self.timeout_s,
            retries=self.retries,
            before_request=self._before_request,
            detect_isbndb_quota=True,
        )

    def search(self, title: str, author: str) -> List[Candidate]:
        q = quote(f"{title} {author}".strip(), safe="")
        params = {"page": "1", "pageSize": str(SEARCH_PAGE_SIZE), "shouldMatchAll": "1"}
        data = self._request("GET", f"{self.base_url}/books/{q}", params=params)
        out: List[Candidate] = []
        for book in data.get("books") or data.get("data") or []:
            meta = parse_book(book) if isinstance(book, dict) else None
            if meta is not None:
                # list payloads are full book records; fetching again would burn quota
                out.append(Candidate(isbn=meta.isbn13, metadata=meta))
        return out

    def fetch(self, isbn: str) -> Optional[BookMetadata]:
        data = self._request("GET", f"{self.base_url}/book/{quote(isbn, safe='')}")
        book = data.get("book") or {}
        return parse_book(book) if isinstance(book, dict) else None

    def fetch_batch(self, isbns: Iterable[str]) -> Dict[str, BookMetadata]:
        """POST /books with up to 100 ISBNs in one call."""
        wanted = []
        for raw in isbns:
            isbn = to_isbn13(raw)
            if isbn and isbn not in wanted:
                wanted.append(isbn)
        if not wanted:
            return {}
        if len(wanted) > ISBNDB_BATCH_MAX:
            raise ValueError(f"batch too large: {len(wanted)} > {ISBNDB_BATCH_MAX}")
        data = self._request("POST", f"{self.base_url}/books", data={"isbns": ",".join(wanted)})
        out: Dict[str, BookMetadata] = {}
        for book in data.get("data") or data.get("books") or []:
            meta = parse_book(book) if isinstance(book, dict) else None
            if meta is not None and meta.isbn13 in wanted:
                out[meta.isbn13] = meta
        logger.info("batch fetch | provider=%s | requested=%s | found=%s", self.name, len(wanted), len(out))
        return out
