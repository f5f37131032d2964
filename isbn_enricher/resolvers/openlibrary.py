from __future__ import annotations

import logging
from typing import List, Optional

from isbn_enricher.core.models import Author, BookMetadata, Candidate
from isbn_enricher.core.normalize import author_key_for, clean_text, first_valid_isbn13
from isbn_enricher.core.similarity import string_similarity
from isbn_enricher.resolvers.base import SearchValidateResolver

logger = logging.getLogger(__name__)

SEARCH_URL = "https://openlibrary.org/search.json"
BOOKS_URL = "https://openlibrary.org/api/books"
AUTHORS_URL = "https://openlibrary.org/search/authors.json"
SEARCH_FIELDS = "key,title,author_name,isbn,first_publish_year,edition_count"


def _name(item) -> str:
    if isinstance(item, dict):
        return str(item.get("name") or "")
    return str(item or "")


def parse_openlibrary_book(isbn13: str, book: dict) -> Optional[BookMetadata]:
    if not isinstance(book, dict) or not book:
        return None
    desc = book.get("description") or book.get("notes") or ""
    if isinstance(desc, dict):
        desc = desc.get("value") or ""
    publishers = book.get("publishers") or []
    languages = book.get("languages") or []
    language = ""
    if languages:
        lang = languages[0]
        if isinstance(lang, dict):
            key = lang.get("key") or ""
            language = key.rsplit("/", 1)[-1] if "/" in key else key
        else:
            language = str(lang)
    cover = book.get("cover") or {}
    if not isinstance(cover, dict):
        cover = {}
    identifiers = book.get("identifiers") or {}
    ol_ids = identifiers.get("openlibrary") or []
    isbn10 = ""
    for val in identifiers.get("isbn_10") or []:
        isbn10 = str(val)
        break
    pages = book.get("number_of_pages")
    return BookMetadata(
        isbn13=isbn13,
        provider="openlibrary",
        title=clean_text(book.get("title") or ""),
        subtitle=clean_text(book.get("subtitle") or ""),
        authors=tuple(n for n in (_name(a) for a in book.get("authors") or []) if n),
        isbn10=isbn10,
        publisher=_name(publishers[0]) if publishers else "",
        publication_date=str(book.get("publish_date") or ""),
        page_count=int(pages) if isinstance(pages, int) or str(pages or "").isdigit() else None,
        language=language,
        format=str(book.get("physical_format") or ""),
        subjects=tuple(n for n in (_name(s) for s in book.get("subjects") or []) if n),
        description=clean_text(str(desc or ""), max_len=2000),
        cover_url=cover.get("medium") or cover.get("small") or "",
        cover_url_large=cover.get("large") or "",
        provider_id=str(ol_ids[0]) if ol_ids else "",
    )


class OpenLibraryResolver(SearchValidateResolver):
    name = "openlibrary"

    def search(self, title: str, author: str) -> List[Candidate]:
        params = {
            "title": title,
            "author": author,
            "fields": SEARCH_FIELDS,
            "limit": str(self.max_candidates),
        }
        data = self._get_json(SEARCH_URL, params)
        out: List[Candidate] = []
        for doc in data.get("docs") or []:
            if not isinstance(doc, dict):
                continue
            # search docs list every edition's ISBN; the first valid one stands for the doc
            isbn = first_valid_isbn13(doc.get("isbn") or [])
            if isbn:
                out.append(Candidate(isbn=isbn))
        logger.debug("search | resolver=%s | title=%r | candidates=%s", self.name, title, len(out))
        return out

    def fetch(self, isbn: str) -> Optional[BookMetadata]:
        params = {"bibkeys": f"ISBN:{isbn}", "format": "json", "jscmd": "data"}
        data = self._get_json(BOOKS_URL, params)
        return parse_openlibrary_book(isbn, data.get(f"ISBN:{isbn}") or {})

    def fetch_author(self, name: str) -> Optional[Author]:
        if not (name or "").strip():
            return None
        data = self._get_json(AUTHORS_URL, {"q": name, "limit": "5"})
        best = None
        best_score = 0.0
        for doc in data.get("docs") or []:
            score = string_similarity(name, doc.get("name") or "")
            if score > best_score:
                best, best_score = doc, score
        if best is None or best_score < self.threshold:
            return None
        birth = "".join(ch for ch in str(best.get("birth_date") or "") if ch.isdigit())
        return Author(
            author_key=author_key_for(name),
            name=str(best.get("name") or name),
            birth_year=int(birth[-4:]) if len(birth) >= 4 else None,
            openlibrary_author_id=str(best.get("key") or "") or None,
            book_count=best.get("work_count"),
            contributors=(self.name,),
        )
