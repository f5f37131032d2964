import pytest

from isbn_enricher.core.models import BookMetadata, Edition, ResolutionResult
from isbn_enricher.core.store import RecordStore
from isbn_enricher.enrich.lookup import MetadataLookup, PrimaryGateway, ResolutionPath
from isbn_enricher.enrich.queue import EnrichmentQueue
from isbn_enricher.errors import QueueError
from isbn_enricher.gateway.quota import QuotaGate, QuotaTracker
from isbn_enricher.integrations.http_client import ISBNdbQuotaError
from isbn_enricher.resolvers.orchestrator import ResolutionOrchestrator

from conftest import FakeResolver

ISBN = "9780553418026"


def _hit(source: str) -> ResolutionResult:
    meta = BookMetadata(isbn13=ISBN, provider=source, title="The Martian", authors=("Andy Weir",))
    return ResolutionResult(isbn=ISBN, confidence=97, source=source, title="The Martian", author="Andy Weir", metadata=meta)


class PrimaryClient:
    name = "isbndb"

    def __init__(self, answer=None, quota_error: bool = False) -> None:
        self.answer = answer
        self.quota_error = quota_error
        self.calls = 0

    def resolve(self, title, author):
        self.calls += 1
        if self.quota_error:
            raise ISBNdbQuotaError("Daily quota of 15000 requests reached")
        return self.answer


@pytest.fixture
def fallback():
    ol = FakeResolver("openlibrary", answers={("The Martian", "Andy Weir"): _hit("openlibrary")})
    orch = ResolutionOrchestrator([ol], timeout_s=1)
    yield ol, orch
    orch.close()


def test_primary_hit_skips_fallbacks(kv, clock, fallback) -> None:
    ol, orch = fallback
    gate = QuotaGate(QuotaTracker(kv, "isbndb", 100, clock=clock))
    path = ResolutionPath(PrimaryGateway(gate, PrimaryClient(_hit("isbndb"))), orch)

    result, primary_called = path.resolve("The Martian", "Andy Weir", "high")

    assert result.source == "isbndb"
    assert primary_called
    assert ol.resolve_calls == []


def test_closed_gate_routes_to_fallback_without_calling_primary(kv, clock, fallback) -> None:
    ol, orch = fallback
    tracker = QuotaTracker(kv, "isbndb", 100, clock=clock)
    tracker.record_call(75)
    client = PrimaryClient(_hit("isbndb"))
    path = ResolutionPath(PrimaryGateway(QuotaGate(tracker), client), orch)

    result, primary_called = path.resolve("The Martian", "Andy Weir", "background")

    assert result.source == "openlibrary"
    assert not primary_called
    assert client.calls == 0


def test_provider_quota_message_pins_counter(kv, clock, fallback) -> None:
    _, orch = fallback
    tracker = QuotaTracker(kv, "isbndb", 100, clock=clock)
    gate = QuotaGate(tracker)
    path = ResolutionPath(PrimaryGateway(gate, PrimaryClient(quota_error=True)), orch)

    result, _ = path.resolve("The Martian", "Andy Weir", "urgent")

    assert result.source == "openlibrary"
    assert tracker.used() >= 100
    assert not gate.can_call_primary("urgent").allowed


def test_missing_client_is_never_allowed(kv, clock) -> None:
    gateway = PrimaryGateway(QuotaGate(QuotaTracker(kv, "isbndb", 100, clock=clock)), None)
    assert not gateway.allowed("urgent")
    assert gateway.name == "isbndb"


def test_lookup_enqueues_new_isbn(tmp_path, clock, fallback) -> None:
    _, orch = fallback
    store = RecordStore(str(tmp_path / "db.sqlite3"), clock=clock)
    queue = EnrichmentQueue(str(tmp_path / "db.sqlite3"), clock=clock)
    lookup = MetadataLookup(ResolutionPath(None, orch), store, queue)

    outcome = lookup.lookup("The Martian", "Andy Weir")

    assert outcome.status == "enqueued"
    task = queue.get(outcome.task_id)
    assert (task.entity_type, task.entity_key, task.priority, task.source) == ("edition", ISBN, 3, "search-miss")


def test_lookup_returns_known_edition(tmp_path, clock, fallback) -> None:
    _, orch = fallback
    store = RecordStore(str(tmp_path / "db.sqlite3"), clock=clock)
    store.upsert_edition(Edition(isbn=ISBN, title="The Martian"))
    queue = EnrichmentQueue(str(tmp_path / "db.sqlite3"), clock=clock)
    lookup = MetadataLookup(ResolutionPath(None, orch), store, queue)

    outcome = lookup.lookup("The Martian", "Andy Weir")

    assert outcome.status == "found"
    assert outcome.edition.title == "The Martian"
    assert queue.counts().get("pending", 0) == 0


def test_lookup_miss_and_queue_failure(tmp_path, clock, fallback) -> None:
    _, orch = fallback
    store = RecordStore(str(tmp_path / "db.sqlite3"), clock=clock)

    class BrokenQueue:
        def enqueue(self, task, *, delay_s=0.0):
            raise QueueError("locked")

    lookup = MetadataLookup(ResolutionPath(None, orch), store, BrokenQueue())
    assert lookup.lookup("Unknown Pamphlet", "Nobody").status == "not_found"

    outcome = lookup.lookup("The Martian", "Andy Weir")
    assert outcome.status == "found"
    assert outcome.result.isbn == ISBN
    assert outcome.task_id is None
