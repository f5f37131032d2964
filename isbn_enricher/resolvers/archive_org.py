from __future__ import annotations

from typing import List, Optional

from isbn_enricher.core.models import BookMetadata, Candidate
from isbn_enricher.core.normalize import clean_text, first_valid_isbn13, normalize_isbn
from isbn_enricher.resolvers.base import SearchValidateResolver

SEARCH_URL = "https://archive.org/advancedsearch.php"
METADATA_URL = "https://archive.org/metadata"


def _as_list(val) -> List[str]:
    if val is None:
        return []
    if isinstance(val, list):
        return [str(v) for v in val if str(v).strip()]
    return [str(val)] if str(val).strip() else []


def _lucene_phrase(text: str) -> str:
    return '"' + (text or "").replace("\\", " ").replace('"', " ").strip() + '"'


def parse_archive_metadata(isbn13: str, identifier: str, meta: dict) -> Optional[BookMetadata]:
    if not isinstance(meta, dict) or not meta:
        return None
    isbn10 = ""
    for raw in _as_list(meta.get("isbn")):
        val = normalize_isbn(raw)
        if len(val) == 10:
            isbn10 = val
            break
    pages = "".join(ch for ch in str(meta.get("imagecount") or "") if ch.isdigit())
    desc = meta.get("description") or ""
    if isinstance(desc, list):
        desc = " ".join(str(x) for x in desc)
    publishers = _as_list(meta.get("publisher"))
    languages = _as_list(meta.get("language"))
    return BookMetadata(
        isbn13=isbn13,
        provider="archive_org",
        title=clean_text(str(meta.get("title") or "")),
        authors=tuple(_as_list(meta.get("creator"))),
        isbn10=isbn10,
        publisher=publishers[0] if publishers else "",
        publication_date=str(meta.get("date") or ""),
        page_count=int(pages) if pages else None,
        language=languages[0] if languages else "",
        subjects=tuple(_as_list(meta.get("subject"))),
        description=clean_text(desc, max_len=2000),
        cover_url=f"https://archive.org/services/img/{identifier}" if identifier else "",
        provider_id=identifier,
    )


class ArchiveOrgResolver(SearchValidateResolver):
    name = "archive_org"

    def _advanced_search(self, q: str, rows: int) -> List[dict]:
        params = {"q": q, "fl[]": ["identifier", "isbn"], "rows": str(rows), "output": "json"}
        data = self._get_json(SEARCH_URL, params)
        return list((data.get("response") or {}).get("docs") or [])

    def search(self, title: str, author: str) -> List[Candidate]:
        q = f"title:({_lucene_phrase(title)}) AND creator:({_lucene_phrase(author)}) AND mediatype:(texts)"
        out: List[Candidate] = []
        for doc in self._advanced_search(q, self.max_candidates):
            isbn = first_valid_isbn13(_as_list(doc.get("isbn")))
            if isbn:
                out.append(Candidate(isbn=isbn))
        return out

    def fetch(self, isbn: str) -> Optional[BookMetadata]:
        docs = self._advanced_search(f"isbn:{isbn}", 1)
        if not docs:
            return None
        identifier = str(docs[0].get("identifier") or "")
        if not identifier:
            return None
        data = self._get_json(f"{METADATA_URL}/{identifier}")
        return parse_archive_metadata(isbn, identifier, data.get("metadata") or {})
