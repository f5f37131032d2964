from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field, replace
from typing import Dict, Iterable, List, Optional, Set, Tuple

from isbn_enricher.core.models import (
    STATE_ISBN_RESOLVED,
    STATE_QUEUED_OK,
    STATE_FULLY_ENRICHED,
    TASK_FAILED,
    Author,
    BookMetadata,
    Edition,
    EnrichmentTask,
    Work,
)
from isbn_enricher.core.normalize import (
    author_key_for,
    merge_unique,
    normalize_subject_term,
    to_isbn13,
    work_key_for,
)
from isbn_enricher.core.scoring import fully_enriched_score, work_completeness
from isbn_enricher.core.stats_tracker import StatsTracker
from isbn_enricher.core.store import RecordStore
from isbn_enricher.enrich.lookup import PrimaryGateway, ResolutionPath
from isbn_enricher.enrich.queue import DEFAULT_LEASE_S, ENRICHMENT_QUEUE_MAX_BATCH_SIZE, EnrichmentQueue
from isbn_enricher.errors import (
    KVStoreError,
    PermanentProviderError,
    QuotaExhaustedError,
    TransientProviderError,
)
from isbn_enricher.integrations.kv_store import KVStore
from isbn_enricher.resolvers.base import Resolver
from isbn_enricher.resolvers.isbndb import ISBNDB_BATCH_MAX
from isbn_enricher.resolvers.registry import PRIMARY_PROVIDER

logger = logging.getLogger(__name__)

NOT_FOUND_TTL_S = 86400


@dataclass
class BatchReport:
    leased: int = 0
    completed: int = 0
    retried: int = 0
    dead_lettered: int = 0
    primary_batch_calls: int = 0
    primary_hits: int = 0
    fallback_hits: int = 0
    errors: List[str] = field(default_factory=list)


def _not_found_key(isbn: str) -> str:
    return f"isbn_not_found:{isbn}"


class EnrichmentConsumer:
    """
    Leases EnrichmentTasks and merges provider data into the record store.

    Delivery is at-least-once, so every step is an idempotent upsert: a task
    redelivered after a crash converges on the same records.
    """

    def __init__(
        self,
        queue: EnrichmentQueue,
        store: RecordStore,
        *,
        primary: Optional[PrimaryGateway] = None,
        fallbacks: Optional[Dict[str, Resolver]] = None,
        path: Optional[ResolutionPath] = None,
        kv: Optional[KVStore] = None,
        stats: Optional[StatsTracker] = None,
        batch_size: int = ENRICHMENT_QUEUE_MAX_BATCH_SIZE,
        lease_s: float = DEFAULT_LEASE_S,
    ) -> None:
        self.queue = queue
        self.store = store
        self.primary = primary
        self.fallbacks = dict(fallbacks or {})
        self.path = path
        self.kv = kv
        self.stats = stats or StatsTracker()
        self.batch_size = max(1, int(batch_size))
        self.lease_s = float(lease_s)

    # --- negative cache ---

    def _known_missing(self, isbn: str) -> bool:
        if self.kv is None:
            return False
        try:
            return self.kv.get(_not_found_key(isbn)) is not None
        except KVStoreError as e:
            logger.warning("not-found cache read failed | isbn=%s | err=%s", isbn, e)
            return False

    def _remember_missing(self, isbn: str) -> None:
        if self.kv is None:
            return
        try:
            self.kv.set(_not_found_key(isbn), "1", ttl_s=NOT_FOUND_TTL_S)
        except KVStoreError as e:
            logger.warning("not-found cache write failed | isbn=%s | err=%s", isbn, e)

    # --- entry points ---

    def run_once(self, batch_size: Optional[int] = None) -> BatchReport:
        tasks = self.queue.lease(batch_size or self.batch_size, self.lease_s)
        if not tasks:
            return BatchReport()
        return self.process_batch(tasks)

    def process_batch(self, tasks: Iterable[EnrichmentTask]) -> BatchReport:
        tasks = list(tasks)
        report = BatchReport(leased=len(tasks))
        if not tasks:
            return report

        primary_hits, primary_tried = self._primary_batch(tasks, report)

        for task in tasks:
            self.stats.inc_processed()
            try:
                ok, err = self._process_task(task, primary_hits, primary_tried, report)
            except Exception as e:
                logger.exception("task crashed | task_id=%s | entity=%s:%s", task.task_id, task.entity_type, task.entity_key)
                ok, err = False, f"{type(e).__name__}: {e}"
                self.stats.inc_errors()

            if ok:
                self.queue.ack(task.task_id)
                report.completed += 1
                self.stats.inc_completed()
                continue

            report.errors.append(f"{task.entity_type}:{task.entity_key}: {err}")
            status = self.queue.retry(task.task_id, err)
            if status == TASK_FAILED:
                report.dead_lettered += 1
                self.stats.inc_dead_lettered()
            else:
                report.retried += 1
                self.stats.inc_retried()

        logger.info(
            "batch done | leased=%s | completed=%s | retried=%s | dead_lettered=%s | primary_hits=%s | fallback_hits=%s",
            report.leased,
            report.completed,
            report.retried,
            report.dead_lettered,
            report.primary_hits,
            report.fallback_hits,
        )
        return report

    # --- primary batch ---

    def _primary_batch(
        self,
        tasks: List[EnrichmentTask],
        report: BatchReport,
    ) -> Tuple[Dict[str, BookMetadata], Set[str]]:
        """One POST /books call covering every edition task that lists the primary provider."""
        if self.primary is None:
            return {}, set()
        eligible = [t for t in tasks if t.entity_type == "edition" and PRIMARY_PROVIDER in t.providers_to_try]
        isbns: List[str] = []
        for t in eligible:
            isbn = to_isbn13(t.entity_key)
            if isbn and isbn not in isbns and not self._known_missing(isbn):
                isbns.append(isbn)
        isbns = isbns[:ISBNDB_BATCH_MAX]
        if not isbns:
            return {}, set()

        priority = min(t.priority for t in eligible)
        budget = self.primary.gate.safe_batch_size(len(isbns), priority, per_call=ISBNDB_BATCH_MAX)
        if budget <= 0:
            logger.info("primary batch skipped | isbns=%s | reason=no safe quota at priority %s", len(isbns), priority)
            return {}, set(isbns)
        isbns = isbns[:budget]
        try:
            hits = self.primary.fetch_batch(isbns, priority)
        except QuotaExhaustedError as e:
            logger.info("primary batch skipped | isbns=%s | reason=%s", len(isbns), e)
            return {}, set(isbns)
        except (TransientProviderError, PermanentProviderError) as e:
            logger.warning("primary batch failed | isbns=%s | err=%s", len(isbns), e)
            return {}, set(isbns)

        report.primary_batch_calls += 1
        self.stats.inc_primary_calls()
        for isbn in isbns:
            if isbn not in hits:
                self._remember_missing(isbn)
        return hits, set(isbns)

    # --- per task ---

    def _process_task(
        self,
        task: EnrichmentTask,
        primary_hits: Dict[str, BookMetadata],
        primary_tried: Set[str],
        report: BatchReport,
    ) -> Tuple[bool, str]:
        if task.entity_type == "edition":
            isbn = to_isbn13(task.entity_key)
            if not isbn:
                return False, f"invalid isbn: {task.entity_key!r}"
            meta, errors = self._fetch_edition(task, isbn, primary_hits, primary_tried, report)
            if meta is None:
                return False, "; ".join(errors) or "no provider returned data"
            self.merge_edition(isbn, meta)
            return True, ""
        if task.entity_type == "work":
            return self._enrich_work(task, primary_hits, primary_tried, report)
        if task.entity_type == "author":
            return self._enrich_author(task)
        return False, f"unknown entity type: {task.entity_type!r}"

    def _fetch_edition(
        self,
        task: EnrichmentTask,
        isbn: str,
        primary_hits: Dict[str, BookMetadata],
        primary_tried: Set[str],
        report: BatchReport,
    ) -> Tuple[Optional[BookMetadata], List[str]]:
        errors: List[str] = []
        for provider in task.providers_to_try:
            if provider == PRIMARY_PROVIDER:
                if isbn in primary_hits:
                    report.primary_hits += 1
                    return primary_hits[isbn], errors
                if isbn in primary_tried or self.primary is None or self._known_missing(isbn):
                    continue
                try:
                    meta = self.primary.fetch(isbn, task.priority)
                    self.stats.inc_primary_calls()
                except QuotaExhaustedError as e:
                    logger.debug("primary skipped | isbn=%s | reason=%s", isbn, e)
                    continue
                except PermanentProviderError as e:
                    if e.status_code in (0, 404):
                        self._remember_missing(isbn)
                    else:
                        logger.error("primary fetch rejected | isbn=%s | status=%s | err=%s", isbn, e.status_code, e)
                        errors.append(str(e))
                    continue
                except TransientProviderError as e:
                    errors.append(str(e))
                    continue
                if meta is not None:
                    report.primary_hits += 1
                    return meta, errors
                self._remember_missing(isbn)
                continue

            resolver = self.fallbacks.get(provider)
            if resolver is None:
                errors.append(f"{provider}: not configured")
                continue
            try:
                meta = resolver.fetch(isbn)
            except PermanentProviderError as e:
                if e.status_code not in (0, 404):
                    logger.warning("fallback fetch rejected | provider=%s | isbn=%s | status=%s", provider, isbn, e.status_code)
                    errors.append(str(e))
                continue
            except TransientProviderError as e:
                errors.append(str(e))
                continue
            if meta is not None:
                report.fallback_hits += 1
                self.stats.inc_fallback_hits()
                return meta, errors
        return None, errors

    def _enrich_work(
        self,
        task: EnrichmentTask,
        primary_hits: Dict[str, BookMetadata],
        primary_tried: Set[str],
        report: BatchReport,
    ) -> Tuple[bool, str]:
        work = self.store.get_work(task.entity_key)
        if work is None:
            return False, f"unknown work: {task.entity_key}"

        editions = self.store.editions_for_work(work.work_key)
        if editions:
            isbn = editions[0].isbn
            meta, errors = self._fetch_edition(task, isbn, primary_hits, primary_tried, report)
            if meta is None:
                return False, "; ".join(errors) or "no provider returned data"
            self.merge_edition(isbn, meta)
            return True, ""

        if self.path is None:
            return False, "work has no editions and no resolution path is configured"
        author = self._work_author(work)
        if not author:
            return False, "work has no editions and no author to resolve with"
        result, _ = self.path.resolve(work.title, author, task.priority)
        if result is None:
            return False, "work could not be resolved to an isbn"
        meta = result.metadata
        if meta is None:
            meta, errors = self._fetch_edition(task, result.isbn, primary_hits, primary_tried, report)
            if meta is None:
                return False, "; ".join(errors) or "resolved isbn has no metadata"
        self.merge_edition(
            result.isbn,
            meta,
            work_key=work.work_key,
            match_confidence=result.confidence,
            match_source=result.source,
        )
        return True, ""

    def _enrich_author(self, task: EnrichmentTask) -> Tuple[bool, str]:
        existing = self.store.get_author(task.entity_key)
        name = existing.name if existing else task.entity_key
        errors: List[str] = []
        for provider in task.providers_to_try:
            resolver = self.fallbacks.get(provider)
            if resolver is None:
                continue
            try:
                found = resolver.fetch_author(name)
            except PermanentProviderError:
                continue
            except TransientProviderError as e:
                errors.append(str(e))
                continue
            if found is None:
                continue
            key = existing.author_key if existing else found.author_key
            self.store.upsert_author(
                Author(
                    author_key=key,
                    name=found.name or name,
                    birth_year=found.birth_year,
                    bio=found.bio,
                    openlibrary_author_id=found.openlibrary_author_id,
                    book_count=found.book_count,
                    contributors=(provider,),
                )
            )
            self.store.log_enrichment("author", key, provider, "upsert", True, fields_updated=["name"])
            return True, ""
        return False, "; ".join(errors) or "no provider returned author data"

    @staticmethod
    def _work_author(work: Work) -> str:
        meta = work.metadata or {}
        author = meta.get("author") or ""
        if not author and isinstance(meta.get("authors"), list) and meta["authors"]:
            author = str(meta["authors"][0])
        return str(author).strip()

    # --- merge ---

    def merge_edition(
        self,
        isbn: str,
        meta: BookMetadata,
        *,
        work_key: Optional[str] = None,
        match_confidence: Optional[int] = None,
        match_source: Optional[str] = None,
    ) -> Edition:
        """Find-or-create the Work, attach authors, upsert the Edition; never relinks."""
        started = time.monotonic()
        provider = meta.provider
        existing = self.store.get_edition(isbn)
        if existing is not None and existing.work_key:
            work_key = existing.work_key
        if not work_key and meta.title:
            work_key = work_key_for(meta.title, meta.first_author)
            if match_confidence is None:
                match_confidence, match_source = 100, provider

        if work_key:
            self._merge_work(work_key, meta)
            for pos, name in enumerate(meta.authors):
                author = self.store.upsert_author(
                    Author(author_key=author_key_for(name), name=name, contributors=(provider,))
                )
                self.store.link_author(work_key, author.author_key, pos)

        covers = {}
        if meta.cover_url:
            covers[provider] = meta.cover_url
        if meta.cover_url_large:
            covers[f"{provider}_large"] = meta.cover_url_large
        edition = self.store.upsert_edition(
            Edition(
                isbn=isbn,
                work_key=work_key,
                isbn10=meta.isbn10 or None,
                title=meta.title or None,
                subtitle=meta.subtitle or None,
                publisher=meta.publisher or None,
                publication_date=meta.publication_date or None,
                page_count=meta.page_count,
                format=meta.format or None,
                language=meta.language or None,
                cover_urls=covers,
                external_ids={provider: (meta.provider_id,)} if meta.provider_id else {},
                subjects=meta.subjects,
                work_match_confidence=match_confidence,
                work_match_source=match_source,
                primary_provider=provider,
                contributors=(provider,),
            )
        )

        fields = [
            name
            for name in ("title", "subtitle", "publisher", "publication_date", "page_count", "format", "language", "subjects", "description")
            if getattr(meta, name, None)
        ]
        elapsed_ms = int((time.monotonic() - started) * 1000)
        self.store.log_enrichment("edition", isbn, provider, "upsert", True, fields_updated=fields, response_time_ms=elapsed_ms)
        if provider == PRIMARY_PROVIDER and edition.work_key:
            self.store.touch_primary_sync(edition.work_key)
        self._finalize_synthetic(edition)
        return edition

    def _merge_work(self, work_key: str, meta: BookMetadata) -> Work:
        current = self.store.get_work(work_key)
        draft = Work(
            work_key=work_key,
            title=meta.title or (current.title if current else ""),
            subtitle=meta.subtitle or None,
            description=meta.description or None,
            subject_tags=tuple(t for t in (normalize_subject_term(s) for s in meta.subjects) if t),
            primary_provider=meta.provider,
            contributors=(meta.provider,),
            first_publication_year=meta.publication_year,
            cover_url=meta.cover_url_large or meta.cover_url or None,
        )
        # score what the row will hold after the merge, not just this payload
        merged_view = replace(
            draft,
            subtitle=draft.subtitle or (current.subtitle if current else None),
            description=draft.description or (current.description if current else None),
            subject_tags=merge_unique(current.subject_tags if current else (), draft.subject_tags),
            first_publication_year=draft.first_publication_year or (current.first_publication_year if current else None),
            cover_url=draft.cover_url or (current.cover_url if current else None),
        )
        return self.store.upsert_work(replace(draft, completeness_score=work_completeness(merged_view)))

    def _finalize_synthetic(self, edition: Edition) -> None:
        if not edition.work_key:
            return
        work = self.store.get_work(edition.work_key)
        if work is None or not work.synthetic:
            return
        if work.enhancement_state not in (STATE_ISBN_RESOLVED, STATE_QUEUED_OK, STATE_FULLY_ENRICHED):
            return
        score = fully_enriched_score(edition.completeness_score)
        self.store.set_enhancement_state(work.work_key, STATE_FULLY_ENRICHED, score)
        logger.info("synthetic work enriched | work_key=%s | isbn=%s | score=%s", work.work_key, edition.isbn, score)
