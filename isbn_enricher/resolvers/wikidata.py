from __future__ import annotations

import logging
import re
from dataclasses import replace
from typing import Dict, List, Optional

from isbn_enricher.core.models import BookMetadata, Candidate
from isbn_enricher.core.normalize import normalize_isbn, strip_leading_article, to_isbn13
from isbn_enricher.integrations.http_client import make_session
from isbn_enricher.resolvers.base import SearchValidateResolver

logger = logging.getLogger(__name__)

SPARQL_URL = "https://query.wikidata.org/sparql"
_PUNCT_RE = re.compile(r"[^\w\s]", re.UNICODE)

_SELECT = """
SELECT ?book ?bookLabel ?authorLabel ?pubDate ?publisherLabel
       (GROUP_CONCAT(DISTINCT ?isbn13; separator="|") AS ?isbn13s)
       (GROUP_CONCAT(DISTINCT ?isbn10; separator="|") AS ?isbn10s)
WHERE {{
{match}
  OPTIONAL {{ ?book wdt:P212 ?isbn13 . }}
  OPTIONAL {{ ?book wdt:P957 ?isbn10 . }}
  OPTIONAL {{ ?book wdt:P577 ?pubDate . }}
  OPTIONAL {{ ?book wdt:P123 ?publisher . }}
  SERVICE wikibase:label {{ bd:serviceParam wikibase:language "en". }}
}}
GROUP BY ?book ?bookLabel ?authorLabel ?pubDate ?publisherLabel
LIMIT {limit}
"""


def sparql_escape(text: str) -> str:
    # Backslashes first, then quotes
    return (text or "").replace("\\", "\\\\").replace('"', '\\"')


def fuzzy_term(text: str) -> str:
    t = strip_leading_article(text)
    t = _PUNCT_RE.sub("", t)
    return re.sub(r"\s+", " ", t).strip()


def exact_query(title: str, author: str, limit: int) -> str:
    match = (
        f'  ?book rdfs:label "{sparql_escape(title)}"@en .\n'
        "  ?book wdt:P50 ?author .\n"
        f'  ?author rdfs:label "{sparql_escape(author)}"@en .'
    )
    return _SELECT.format(match=match, limit=int(limit))


def fuzzy_query(title: str, author: str, limit: int) -> str:
    match = (
        "  ?book rdfs:label ?label .\n"
        f'  FILTER(LANG(?label) = "en" && CONTAINS(LCASE(?label), LCASE("{sparql_escape(fuzzy_term(title))}")))\n'
        "  ?book wdt:P50 ?author .\n"
        "  ?author rdfs:label ?alabel .\n"
        f'  FILTER(LANG(?alabel) = "en" && CONTAINS(LCASE(?alabel), LCASE("{sparql_escape(fuzzy_term(author))}")))'
    )
    return _SELECT.format(match=match, limit=int(limit))


def isbn_query(isbn13: str) -> str:
    safe = re.sub(r"[^0-9X]", "", normalize_isbn(isbn13))
    match = (
        "  ?book wdt:P212 ?anyIsbn .\n"
        f'  FILTER(REPLACE(STR(?anyIsbn), "-", "") = "{safe}")\n'
        "  OPTIONAL { ?book wdt:P50 ?author . }"
    )
    return _SELECT.format(match=match, limit=5)


def _value(binding: dict, name: str) -> str:
    cell = binding.get(name) or {}
    return str(cell.get("value") or "")


def bindings_to_metadata(bindings: List[dict]) -> Dict[str, BookMetadata]:
    """Group SPARQL rows (one per author) into one record per ISBN-13."""
    out: Dict[str, BookMetadata] = {}
    for b in bindings:
        isbn13 = ""
        for raw in _value(b, "isbn13s").split("|") + _value(b, "isbn10s").split("|"):
            isbn13 = to_isbn13(raw)
            if isbn13:
                break
        if not isbn13:
            continue
        author = _value(b, "authorLabel")
        prev = out.get(isbn13)
        if prev is not None:
            if author and author not in prev.authors:
                out[isbn13] = replace(prev, authors=prev.authors + (author,))
            continue
        isbn10 = ""
        for raw in _value(b, "isbn10s").split("|"):
            if len(normalize_isbn(raw)) == 10:
                isbn10 = normalize_isbn(raw)
                break
        out[isbn13] = BookMetadata(
            isbn13=isbn13,
            provider="wikidata",
            title=_value(b, "bookLabel"),
            authors=(author,) if author else (),
            isbn10=isbn10,
            publisher=_value(b, "publisherLabel"),
            publication_date=_value(b, "pubDate")[:10],
            provider_id=_value(b, "book").rsplit("/", 1)[-1],
        )
    return out


class WikidataResolver(SearchValidateResolver):
    """
    SPARQL-backed resolver. An exact-label pass runs first; the CONTAINS pass
    (leading articles and punctuation stripped) only runs when it finds nothing.
    Result rows already carry title/author labels, so candidates arrive with metadata.
    """

    name = "wikidata"

    def __init__(self, **kwargs) -> None:
        if kwargs.get("session") is None:
            kwargs["session"] = make_session(accept="application/sparql-results+json")
        super().__init__(**kwargs)

    def _run(self, query: str) -> Dict[str, BookMetadata]:
        data = self._get_json(SPARQL_URL, {"query": query, "format": "json"})
        return bindings_to_metadata((data.get("results") or {}).get("bindings") or [])

    def search(self, title: str, author: str) -> List[Candidate]:
        found = self._run(exact_query(title, author, self.max_candidates * 2))
        if not found:
            logger.debug("exact pass empty | resolver=%s | title=%r (trying fuzzy)", self.name, title)
            found = self._run(fuzzy_query(title, author, self.max_candidates * 2))
        return [Candidate(isbn=isbn, metadata=meta) for isbn, meta in found.items()]

    def fetch(self, isbn: str) -> Optional[BookMetadata]:
        return self._run(isbn_query(isbn)).get(isbn)
