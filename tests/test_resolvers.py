import json

import pytest

from isbn_enricher.errors import UnknownProviderError
from isbn_enricher.gateway.quota import QuotaGate, QuotaTracker
from isbn_enricher.integrations import http_client
from isbn_enricher.resolvers.archive_org import ArchiveOrgResolver, parse_archive_metadata
from isbn_enricher.resolvers.google_books import parse_volume, search_query
from isbn_enricher.resolvers.isbndb import ISBNdbResolver
from isbn_enricher.resolvers.openlibrary import OpenLibraryResolver, parse_openlibrary_book
from isbn_enricher.resolvers.registry import (
    DEFAULT_RESOLVER_ORDER,
    ProviderContext,
    build_resolvers,
    canonical_provider,
    parse_provider_list,
    split_provider_list,
)
from isbn_enricher.resolvers.wikidata import bindings_to_metadata, exact_query, fuzzy_term, sparql_escape

ISBN = "9780553418026"


class JsonResponse:
    def __init__(self, payload, status_code: int = 200) -> None:
        self.status_code = status_code
        self.text = json.dumps(payload)
        self.content = self.text.encode("utf-8")
        self.headers = {"Content-Type": "application/json"}

    def json(self):
        return json.loads(self.text)


class ScriptedSession:
    def __init__(self, *payloads) -> None:
        self.payloads = list(payloads)
        self.calls = []

    def request(self, method, url, params=None, data=None, timeout=None):
        self.calls.append({"method": method, "url": url, "params": params, "data": data})
        return JsonResponse(self.payloads.pop(0))


def test_google_volume_parsing() -> None:
    item = {
        "id": "abc123",
        "volumeInfo": {
            "title": "The Martian",
            "authors": ["Andy Weir"],
            "publisher": "Crown",
            "publishedDate": "2014-02-11",
            "pageCount": 369,
            "industryIdentifiers": [
                {"type": "ISBN_10", "identifier": "0553418025"},
                {"type": "ISBN_13", "identifier": ISBN},
            ],
            "imageLinks": {"thumbnail": "http://t/1.jpg"},
        },
    }
    meta = parse_volume(item)
    assert meta.isbn13 == ISBN
    assert meta.isbn10 == "0553418025"
    assert meta.page_count == 369
    assert meta.publication_year == 2014
    assert meta.provider_id == "abc123"
    assert parse_volume({"volumeInfo": {"title": "No ISBN"}}) is None


def test_openlibrary_book_parsing() -> None:
    book = {
        "title": "The Martian",
        "authors": [{"name": "Andy Weir"}],
        "publishers": [{"name": "Crown"}],
        "publish_date": "2014",
        "number_of_pages": 369,
        "subjects": [{"name": "Mars (Planet)"}],
        "cover": {"medium": "https://covers/m.jpg", "large": "https://covers/l.jpg"},
        "identifiers": {"openlibrary": ["OL26415446M"], "isbn_10": ["0553418025"]},
    }
    meta = parse_openlibrary_book(ISBN, book)
    assert meta.authors == ("Andy Weir",)
    assert meta.publisher == "Crown"
    assert meta.cover_url_large == "https://covers/l.jpg"
    assert meta.provider_id == "OL26415446M"
    assert parse_openlibrary_book(ISBN, {}) is None


def test_archive_metadata_parsing() -> None:
    meta = parse_archive_metadata(
        ISBN,
        "martian00weir",
        {"title": "The Martian", "creator": "Weir, Andy", "isbn": ["0553418025", ISBN], "language": "eng"},
    )
    assert meta.authors == ("Weir, Andy",)
    assert meta.isbn10 == "0553418025"
    assert meta.cover_url.endswith("/martian00weir")


def test_sparql_escaping() -> None:
    assert sparql_escape('say "hi" \\ bye') == 'say \\"hi\\" \\\\ bye'
    assert fuzzy_term("The Hitchhiker's Guide!") == "Hitchhikers Guide"
    assert '"Catch-22"@en' in exact_query("Catch-22", "Joseph Heller", 10)


def test_wikidata_rows_group_authors() -> None:
    rows = [
        {
            "book": {"value": "http://www.wikidata.org/entity/Q1"},
            "bookLabel": {"value": "Good Omens"},
            "authorLabel": {"value": "Neil Gaiman"},
            "isbn13s": {"value": "978-0-306-40615-7"},
            "isbn10s": {"value": ""},
        },
        {
            "book": {"value": "http://www.wikidata.org/entity/Q1"},
            "bookLabel": {"value": "Good Omens"},
            "authorLabel": {"value": "Terry Pratchett"},
            "isbn13s": {"value": "978-0-306-40615-7"},
            "isbn10s": {"value": ""},
        },
    ]
    out = bindings_to_metadata(rows)
    assert list(out) == ["9780306406157"]
    assert out["9780306406157"].authors == ("Neil Gaiman", "Terry Pratchett")
    assert out["9780306406157"].provider_id == "Q1"


def test_openlibrary_search_then_fetch_validates() -> None:
    sess = ScriptedSession(
        {"docs": [{"title": "The Martian", "isbn": ["bad", ISBN]}]},
        {f"ISBN:{ISBN}": {"title": "The Martian", "authors": [{"name": "Andy Weir"}]}},
    )
    resolver = OpenLibraryResolver(session=sess)
    result = resolver.resolve("The Martian", "Andy Weir")
    assert result.isbn == ISBN
    assert result.source == "openlibrary"
    assert sess.calls[1]["params"]["bibkeys"] == f"ISBN:{ISBN}"


def test_isbndb_records_every_attempt_against_quota(kv, clock, monkeypatch) -> None:
    monkeypatch.setattr(http_client, "_sleep_jitter", lambda base, jitter=0.25: None)
    gate = QuotaGate(QuotaTracker(kv, "isbndb", 100, clock=clock))
    sess = ScriptedSession({"data": [{"isbn13": ISBN, "title": "The Martian", "authors": ["Andy Weir"]}]})
    resolver = ISBNdbResolver(api_key="k", quota=gate, session=sess)

    found = resolver.fetch_batch([ISBN, "0306406152"])

    assert list(found) == [ISBN]
    assert gate.tracker.used() == 1
    assert sess.calls[0]["method"] == "POST"
    assert sess.calls[0]["data"] == {"isbns": f"{ISBN},9780306406157"}


def _valid_isbns(n: int):
    out = []
    core = 978000000000
    while len(out) < n:
        digits = [int(c) for c in str(core)]
        s = sum(d * (1 if i % 2 == 0 else 3) for i, d in enumerate(digits))
        out.append(f"{core}{(10 - s % 10) % 10}")
        core += 1
    return out


def test_isbndb_batch_limit() -> None:
    sess = ScriptedSession()
    resolver = ISBNdbResolver(api_key="k", session=sess)
    with pytest.raises(ValueError):
        resolver.fetch_batch(_valid_isbns(101))
    assert sess.calls == []
    assert resolver.fetch_batch(["not-an-isbn"]) == {}


def test_registry_aliases_and_validation() -> None:
    assert canonical_provider("Open-Library") == "openlibrary"
    assert parse_provider_list(["google", "googlebooks", "wikidata"]) == ("google_books", "wikidata")
    assert split_provider_list("", DEFAULT_RESOLVER_ORDER) == DEFAULT_RESOLVER_ORDER
    with pytest.raises(UnknownProviderError):
        split_provider_list("openlibrary,amazon", DEFAULT_RESOLVER_ORDER)
    names = [r.name for r in build_resolvers(DEFAULT_RESOLVER_ORDER, ProviderContext())]
    assert names == list(DEFAULT_RESOLVER_ORDER)


def test_google_search_query_drops_embedded_quotes() -> None:
    assert search_query('Say "Hi"', 'A "B" C') == 'intitle:"Say Hi" inauthor:"A B C"'
    assert search_query("The Martian", "Andy Weir") == 'intitle:"The Martian" inauthor:"Andy Weir"'


def test_archive_search_skips_invalid_isbns() -> None:
    sess = ScriptedSession(
        {"response": {"docs": [{"identifier": "martian", "isbn": ["not-an-isbn", "9780553418027", ISBN]}, {"identifier": "blank"}]}}
    )
    found = ArchiveOrgResolver(session=sess).search("The Martian", "Andy Weir")
    assert [c.isbn for c in found] == [ISBN]
