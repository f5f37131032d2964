from __future__ import annotations

from typing import Dict, List, Optional, Tuple

import pytest

from isbn_enricher.core.models import BookMetadata, ResolutionResult
from isbn_enricher.errors import TransientProviderError
from isbn_enricher.integrations.kv_store import MemoryKVStore
from isbn_enricher.resolvers.base import Resolver

# 2023-11-14 22:13:20 UTC
T0 = 1_700_000_000.0


class FakeClock:
    def __init__(self, start: float = T0) -> None:
        self.now = float(start)
        self.sleeps: List[float] = []

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += float(seconds)

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += float(seconds)


class FakeResolver(Resolver):
    """Canned answers keyed by (title, author) for resolve and by isbn for fetch."""

    def __init__(
        self,
        name: str,
        answers: Optional[Dict[Tuple[str, str], ResolutionResult]] = None,
        records: Optional[Dict[str, BookMetadata]] = None,
        fail_fetch: bool = False,
    ) -> None:
        self.name = name
        self.answers = dict(answers or {})
        self.records = dict(records or {})
        self.fail_fetch = fail_fetch
        self.resolve_calls: List[Tuple[str, str]] = []
        self.fetch_calls: List[str] = []

    def resolve(self, title: str, author: str) -> Optional[ResolutionResult]:
        self.resolve_calls.append((title, author))
        return self.answers.get((title, author))

    def fetch(self, isbn: str) -> Optional[BookMetadata]:
        self.fetch_calls.append(isbn)
        if self.fail_fetch:
            raise TransientProviderError(self.name, "HTTP 503", 503)
        return self.records.get(isbn)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def kv(clock: FakeClock) -> MemoryKVStore:
    return MemoryKVStore(clock=clock)
