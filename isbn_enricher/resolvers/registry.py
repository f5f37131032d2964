from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Dict, Iterable, List, Optional, Tuple

from isbn_enricher.core.similarity import DEFAULT_SIMILARITY_THRESHOLD
from isbn_enricher.errors import UnknownProviderError
from isbn_enricher.gateway.quota import QuotaGate
from isbn_enricher.gateway.rate_limiter import RateLimiter
from isbn_enricher.resolvers.archive_org import ArchiveOrgResolver
from isbn_enricher.resolvers.base import Resolver
from isbn_enricher.resolvers.google_books import GoogleBooksResolver
from isbn_enricher.resolvers.isbndb import ISBNdbResolver
from isbn_enricher.resolvers.openlibrary import OpenLibraryResolver
from isbn_enricher.resolvers.wikidata import WikidataResolver

PRIMARY_PROVIDER = "isbndb"
# Largest free catalog first, slowest last
DEFAULT_RESOLVER_ORDER: Tuple[str, ...] = ("openlibrary", "google_books", "archive_org", "wikidata")
DEFAULT_ENRICHMENT_PROVIDERS: Tuple[str, ...] = ("isbndb", "openlibrary", "google_books")


@dataclass(frozen=True)
class ProviderContext:
    rate_limiter: Optional[RateLimiter] = None
    quota: Optional[QuotaGate] = None
    isbndb_api_key: str = ""
    google_books_api_key: Optional[str] = None
    threshold: float = DEFAULT_SIMILARITY_THRESHOLD
    timeout_s: float = 15
    retries: int = 2


def _common(ctx: ProviderContext) -> dict:
    return {
        "rate_limiter": ctx.rate_limiter,
        "threshold": ctx.threshold,
        "timeout_s": ctx.timeout_s,
        "retries": ctx.retries,
    }


def _isbndb(ctx: ProviderContext) -> Resolver:
    return ISBNdbResolver(api_key=ctx.isbndb_api_key, quota=ctx.quota, **_common(ctx))


def _google(ctx: ProviderContext) -> Resolver:
    return GoogleBooksResolver(api_key=ctx.google_books_api_key, **_common(ctx))


REGISTRY: Dict[str, Callable[[ProviderContext], Resolver]] = {
    "isbndb": _isbndb,
    "openlibrary": lambda ctx: OpenLibraryResolver(**_common(ctx)),
    "google_books": _google,
    "archive_org": lambda ctx: ArchiveOrgResolver(**_common(ctx)),
    "wikidata": lambda ctx: WikidataResolver(**_common(ctx)),
}

_ALIASES = {
    "open_library": "openlibrary",
    "open-library": "openlibrary",
    "google": "google_books",
    "google-books": "google_books",
    "googlebooks": "google_books",
    "archive.org": "archive_org",
    "archive": "archive_org",
    "internet_archive": "archive_org",
}


def canonical_provider(name: str) -> str:
    key = (name or "").strip().lower()
    key = _ALIASES.get(key, key)
    if key not in REGISTRY:
        raise UnknownProviderError(f"unknown provider: {name!r} (known: {', '.join(sorted(REGISTRY))})")
    return key


def parse_provider_list(names: Iterable[str]) -> Tuple[str, ...]:
    """Validate an ordered provider list; duplicates drop, order is kept."""
    out: List[str] = []
    for name in names:
        if not str(name).strip():
            continue
        key = canonical_provider(str(name))
        if key not in out:
            out.append(key)
    return tuple(out)


def split_provider_list(raw: Optional[str], default: Tuple[str, ...]) -> Tuple[str, ...]:
    if not raw:
        return default
    return parse_provider_list(raw.split(","))


def build_resolver(name: str, ctx: ProviderContext) -> Resolver:
    return REGISTRY[canonical_provider(name)](ctx)


def build_resolvers(names: Iterable[str], ctx: ProviderContext) -> List[Resolver]:
    return [build_resolver(n, ctx) for n in parse_provider_list(names)]
