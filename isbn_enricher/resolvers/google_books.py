from __future__ import annotations

from typing import List, Optional

from isbn_enricher.core.models import BookMetadata, Candidate
from isbn_enricher.core.normalize import clean_text, normalize_isbn, to_isbn13
from isbn_enricher.resolvers.base import SearchValidateResolver

VOLUMES_URL = "https://www.googleapis.com/books/v1/volumes"


def _isbns(info: dict) -> tuple[str, str]:
    isbn13 = ""
    isbn10 = ""
    for ident in info.get("industryIdentifiers") or []:
        kind = ident.get("type")
        val = normalize_isbn(ident.get("identifier") or "")
        if kind == "ISBN_13" and not isbn13:
            isbn13 = to_isbn13(val)
        elif kind == "ISBN_10" and not isbn10:
            isbn10 = val
    if not isbn13 and isbn10:
        isbn13 = to_isbn13(isbn10)
    return isbn13, isbn10


def search_query(title: str, author: str) -> str:
    """intitle/inauthor phrase query; embedded double quotes would end the phrase early."""
    def phrase(text: str) -> str:
        return " ".join((text or "").replace('"', " ").split())

    return f'intitle:"{phrase(title)}" inauthor:"{phrase(author)}"'


def parse_volume(item: dict) -> Optional[BookMetadata]:
    info = item.get("volumeInfo") or {}
    isbn13, isbn10 = _isbns(info)
    if not isbn13:
        return None
    links = info.get("imageLinks") or {}
    if not isinstance(links, dict):
        links = {}
    pages = info.get("pageCount")
    return BookMetadata(
        isbn13=isbn13,
        provider="google_books",
        title=clean_text(info.get("title") or ""),
        subtitle=clean_text(info.get("subtitle") or ""),
        authors=tuple(str(a) for a in info.get("authors") or [] if str(a).strip()),
        isbn10=isbn10,
        publisher=clean_text(info.get("publisher") or ""),
        publication_date=str(info.get("publishedDate") or ""),
        page_count=int(pages) if isinstance(pages, int) and pages > 0 else None,
        language=str(info.get("language") or ""),
        subjects=tuple(str(c) for c in info.get("categories") or [] if str(c).strip()),
        description=clean_text(info.get("description") or "", max_len=2000),
        cover_url=links.get("thumbnail") or links.get("smallThumbnail") or "",
        cover_url_large=links.get("large") or links.get("medium") or "",
        provider_id=str(item.get("id") or ""),
    )


class GoogleBooksResolver(SearchValidateResolver):
    name = "google_books"

    def __init__(self, *, api_key: Optional[str] = None, **kwargs) -> None:
        super().__init__(**kwargs)
        self.api_key = api_key

    def _params(self, q: str, max_results: int) -> dict:
        params = {"q": q, "maxResults": str(max_results), "printType": "books", "projection": "full"}
        if self.api_key:
            params["key"] = self.api_key
        return params

    def search(self, title: str, author: str) -> List[Candidate]:
        q = search_query(title, author)
        data = self._get_json(VOLUMES_URL, self._params(q, self.max_candidates))
        out: List[Candidate] = []
        for item in data.get("items") or []:
            meta = parse_volume(item)
            if meta is not None:
                # search items are full volume records; no second fetch needed
                out.append(Candidate(isbn=meta.isbn13, metadata=meta))
        return out

    def fetch(self, isbn: str) -> Optional[BookMetadata]:
        data = self._get_json(VOLUMES_URL, self._params(f"isbn:{isbn}", 5))
        for item in data.get("items") or []:
            meta = parse_volume(item)
            if meta is not None and meta.isbn13 == isbn:
                return meta
        return None
