from typing import Dict, Iterable, List

from isbn_enricher.core.models import (
    STATE_FULLY_ENRICHED,
    STATE_QUEUED_OK,
    TASK_COMPLETED,
    TASK_FAILED,
    TASK_PENDING,
    BookMetadata,
    Edition,
    EnrichmentTask,
    Work,
)
from isbn_enricher.core.normalize import work_key_for
from isbn_enricher.core.store import RecordStore
from isbn_enricher.enrich.consumer import EnrichmentConsumer
from isbn_enricher.enrich.lookup import PrimaryGateway
from isbn_enricher.enrich.queue import EnrichmentQueue
from isbn_enricher.errors import PermanentProviderError
from isbn_enricher.gateway.quota import QuotaGate, QuotaTracker

from conftest import FakeResolver

ISBN = "9780553418026"
OTHER = "9780306406157"


def _meta(provider: str, isbn: str = ISBN, **kw) -> BookMetadata:
    base = dict(
        isbn13=isbn,
        provider=provider,
        title="The Martian",
        authors=("Andy Weir",),
        publisher="Crown",
        publication_date="2014-02-11",
        page_count=384,
        language="en",
        format="Hardcover",
        subjects=("Science Fiction",),
        cover_url="https://images.example/martian.jpg",
        provider_id=isbn,
    )
    base.update(kw)
    return BookMetadata(**base)


class FakePrimaryClient:
    name = "isbndb"

    def __init__(self, records: Dict[str, BookMetadata]) -> None:
        self.records = records
        self.batch_calls: List[List[str]] = []
        self.fetch_calls: List[str] = []

    def resolve(self, title, author):
        return None

    def fetch(self, isbn):
        self.fetch_calls.append(isbn)
        return self.records.get(isbn)

    def fetch_batch(self, isbns: Iterable[str]):
        isbns = list(isbns)
        self.batch_calls.append(isbns)
        return {i: self.records[i] for i in isbns if i in self.records}


def _setup(tmp_path, clock, kv, records=None, fallbacks=None, limit=1000):
    store = RecordStore(str(tmp_path / "db.sqlite3"), clock=clock)
    queue = EnrichmentQueue(str(tmp_path / "db.sqlite3"), clock=clock)
    gate = QuotaGate(QuotaTracker(kv, "isbndb", limit, clock=clock))
    client = FakePrimaryClient(records or {})
    consumer = EnrichmentConsumer(
        queue,
        store,
        primary=PrimaryGateway(gate, client),
        fallbacks=fallbacks or {},
        kv=kv,
    )
    return store, queue, gate, client, consumer


def _edition_task(isbn: str = ISBN, providers=("isbndb", "openlibrary"), priority: int = 3) -> EnrichmentTask:
    return EnrichmentTask(entity_type="edition", entity_key=isbn, providers_to_try=providers, priority=priority)


def test_primary_batch_hit_creates_work_edition_and_authors(tmp_path, clock, kv) -> None:
    store, queue, _, client, consumer = _setup(tmp_path, clock, kv, records={ISBN: _meta("isbndb")})
    task_id = queue.enqueue(_edition_task())

    report = consumer.run_once()

    assert (report.leased, report.completed, report.primary_hits) == (1, 1, 1)
    assert client.batch_calls == [[ISBN]]
    assert queue.get(task_id).status == TASK_COMPLETED

    edition = store.get_edition(ISBN)
    assert edition.work_key == work_key_for("The Martian", "Andy Weir")
    assert edition.publisher == "Crown"
    assert edition.primary_provider == "isbndb"
    assert [a.name for a in store.authors_for_work(edition.work_key)] == ["Andy Weir"]
    assert store.enrichment_log("edition", ISBN)[0]["provider"] == "isbndb"


def test_reprocessing_is_idempotent(tmp_path, clock, kv) -> None:
    store, queue, _, _, consumer = _setup(tmp_path, clock, kv, records={ISBN: _meta("isbndb")})
    queue.enqueue(_edition_task())
    consumer.run_once()
    first = store.get_edition(ISBN)
    work_first = store.get_work(first.work_key)

    queue.enqueue(_edition_task())
    consumer.run_once()
    second = store.get_edition(ISBN)
    work_second = store.get_work(second.work_key)

    assert second.work_key == first.work_key
    assert second.completeness_score >= first.completeness_score
    assert work_second.completeness_score >= work_first.completeness_score
    assert store.counts()["works"] == 1
    assert store.counts()["authors"] == 1


def test_primary_miss_falls_through_and_is_negatively_cached(tmp_path, clock, kv) -> None:
    ol = FakeResolver("openlibrary", records={ISBN: _meta("openlibrary", publisher="Del Rey")})
    store, queue, _, client, consumer = _setup(tmp_path, clock, kv, fallbacks={"openlibrary": ol})
    queue.enqueue(_edition_task())

    report = consumer.run_once()

    assert report.completed == 1
    assert report.fallback_hits == 1
    assert client.fetch_calls == []
    assert kv.get(f"isbn_not_found:{ISBN}") == "1"
    assert store.get_edition(ISBN).primary_provider == "openlibrary"

    queue.enqueue(_edition_task())
    consumer.run_once()
    assert len(client.batch_calls) == 1


def test_closed_quota_routes_to_fallbacks(tmp_path, clock, kv) -> None:
    ol = FakeResolver("openlibrary", records={ISBN: _meta("openlibrary")})
    store, queue, gate, client, consumer = _setup(
        tmp_path, clock, kv, records={ISBN: _meta("isbndb")}, fallbacks={"openlibrary": ol}, limit=10
    )
    gate.record_call(10)
    queue.enqueue(_edition_task(priority=1))

    report = consumer.run_once()

    assert report.completed == 1
    assert client.batch_calls == []
    assert client.fetch_calls == []
    assert ol.fetch_calls == [ISBN]


def test_all_providers_failing_retries_then_dead_letters(tmp_path, clock, kv) -> None:
    broken = FakeResolver("openlibrary", fail_fetch=True)
    store, queue, _, _, consumer = _setup(tmp_path, clock, kv, fallbacks={"openlibrary": broken})
    task = EnrichmentTask(
        entity_type="edition", entity_key=ISBN, providers_to_try=("openlibrary",), max_retries=2
    )
    task_id = queue.enqueue(task)

    report = consumer.run_once()
    assert report.retried == 1
    assert queue.get(task_id).status == TASK_PENDING
    assert "503" in queue.get(task_id).last_error

    clock.advance(3600)
    report = consumer.run_once()
    assert report.dead_lettered == 1
    assert queue.get(task_id).status == TASK_FAILED
    assert store.get_edition(ISBN) is None


def test_synthetic_work_is_finalized(tmp_path, clock, kv) -> None:
    store, queue, _, _, consumer = _setup(tmp_path, clock, kv, records={ISBN: _meta("isbndb")})
    store.upsert_work(
        Work(
            work_key="work:placeholder",
            title="The Martian",
            synthetic=True,
            completeness_score=80,
            enhancement_state=STATE_QUEUED_OK,
            metadata={"author": "Andy Weir"},
        )
    )
    store.upsert_edition(Edition(isbn=ISBN, work_key="work:placeholder", format="Unknown"))
    queue.enqueue(_edition_task())

    consumer.run_once()

    work = store.get_work("work:placeholder")
    assert work.enhancement_state == STATE_FULLY_ENRICHED
    assert 85 <= work.completeness_score <= 100
    assert work.synthetic
    assert store.get_edition(ISBN).work_key == "work:placeholder"
    assert store.get_edition(ISBN).format == "Hardcover"


def test_work_task_enriches_linked_edition(tmp_path, clock, kv) -> None:
    store, queue, _, _, consumer = _setup(tmp_path, clock, kv, records={OTHER: _meta("isbndb", isbn=OTHER)})
    store.upsert_work(Work(work_key="work:w", title="The Martian"))
    store.upsert_edition(Edition(isbn=OTHER, work_key="work:w"))
    task_id = queue.enqueue(EnrichmentTask(entity_type="work", entity_key="work:w", providers_to_try=("isbndb",)))

    consumer.run_once()

    assert queue.get(task_id).status == TASK_COMPLETED
    assert store.get_edition(OTHER).publisher == "Crown"
    assert store.get_edition(OTHER).work_key == "work:w"


def test_invalid_isbn_is_retried_not_crashed(tmp_path, clock, kv) -> None:
    _, queue, _, _, consumer = _setup(tmp_path, clock, kv)
    task_id = queue.enqueue(_edition_task(isbn="not-an-isbn"))
    report = consumer.run_once()
    assert report.retried == 1
    assert "invalid isbn" in queue.get(task_id).last_error


class RejectingPrimaryClient(FakePrimaryClient):
    def __init__(self, status_code: int) -> None:
        super().__init__({})
        self.status_code = status_code

    def fetch(self, isbn):
        self.fetch_calls.append(isbn)
        raise PermanentProviderError("isbndb", f"{self.status_code} rejected", self.status_code)


def _consumer_with(tmp_path, clock, kv, client):
    store = RecordStore(str(tmp_path / "db.sqlite3"), clock=clock)
    queue = EnrichmentQueue(str(tmp_path / "db.sqlite3"), clock=clock)
    gate = QuotaGate(QuotaTracker(kv, "isbndb", 1000, clock=clock))
    consumer = EnrichmentConsumer(queue, store, primary=PrimaryGateway(gate, client), kv=kv)
    return store, queue, consumer


def test_auth_error_is_not_cached_as_missing(tmp_path, clock, kv) -> None:
    client = RejectingPrimaryClient(401)
    store, queue, consumer = _consumer_with(tmp_path, clock, kv, client)
    store.upsert_work(Work(work_key="work:w", title="The Martian"))
    store.upsert_edition(Edition(isbn=ISBN, work_key="work:w"))
    task_id = queue.enqueue(EnrichmentTask(entity_type="work", entity_key="work:w", providers_to_try=("isbndb",)))

    report = consumer.run_once()

    assert client.fetch_calls == [ISBN]
    assert kv.get(f"isbn_not_found:{ISBN}") is None
    assert report.retried == 1
    assert "401" in queue.get(task_id).last_error


def test_primary_404_is_cached_as_missing(tmp_path, clock, kv) -> None:
    store, queue, consumer = _consumer_with(tmp_path, clock, kv, RejectingPrimaryClient(404))
    store.upsert_work(Work(work_key="work:w", title="The Martian"))
    store.upsert_edition(Edition(isbn=ISBN, work_key="work:w"))
    queue.enqueue(EnrichmentTask(entity_type="work", entity_key="work:w", providers_to_try=("isbndb",)))

    consumer.run_once()

    assert kv.get(f"isbn_not_found:{ISBN}") == "1"


def test_primary_hit_stamps_work_sync_time(tmp_path, clock, kv) -> None:
    store, queue, _, _, consumer = _setup(tmp_path, clock, kv, records={ISBN: _meta("isbndb")})
    queue.enqueue(_edition_task())

    consumer.run_once()

    work = store.get_work(store.get_edition(ISBN).work_key)
    assert work.last_primary_sync == clock()


def test_fallback_hit_leaves_sync_time_alone(tmp_path, clock, kv) -> None:
    ol = FakeResolver("openlibrary", records={ISBN: _meta("openlibrary")})
    store, queue, _, _, consumer = _setup(tmp_path, clock, kv, fallbacks={"openlibrary": ol})
    queue.enqueue(_edition_task())

    consumer.run_once()

    assert store.get_work(store.get_edition(ISBN).work_key).last_primary_sync is None


def test_low_priority_batch_skipped_past_soft_threshold(tmp_path, clock, kv) -> None:
    ol = FakeResolver("openlibrary", records={ISBN: _meta("openlibrary")})
    _, queue, gate, client, consumer = _setup(
        tmp_path, clock, kv, records={ISBN: _meta("isbndb")}, fallbacks={"openlibrary": ol}, limit=100
    )
    gate.record_call(70)
    queue.enqueue(_edition_task(priority=7))

    report = consumer.run_once()

    assert report.completed == 1
    assert client.batch_calls == []
    assert report.fallback_hits == 1
