from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Iterable, Optional

from isbn_enricher.core.models import (
    STATE_ISBN_RESOLVED,
    STATE_QUEUE_FAILED,
    STATE_QUEUED_OK,
    STATE_UNRESOLVED,
    SYNTHETIC_SCORES,
    Edition,
    EnrichmentTask,
    ResolutionResult,
    Work,
    normalize_priority,
)
from isbn_enricher.core.scoring import confidence_bucket
from isbn_enricher.core.store import RecordStore
from isbn_enricher.enrich.lookup import ResolutionPath
from isbn_enricher.enrich.queue import DEFAULT_MAX_RETRIES, EnrichmentQueue
from isbn_enricher.errors import QueueError, StoreError
from isbn_enricher.resolvers.registry import DEFAULT_ENRICHMENT_PROVIDERS

logger = logging.getLogger(__name__)

SYNTHETIC_PROVIDER = "synthetic-enhancement"
DEFAULT_SYNTHETIC_BATCH_SIZE = 500
DEFAULT_COOLDOWN_DAYS = 7
RESOLVE_PRIORITY = "background"
ENQUEUE_PRIORITY = "low"


@dataclass
class EnhancementStats:
    total_attempted: int = 0
    isbns_resolved: int = 0
    editions_created: int = 0
    enrichment_queued: int = 0
    queue_failed: int = 0
    not_found: int = 0
    skipped: int = 0
    errors: int = 0
    high_confidence: int = 0
    medium_confidence: int = 0
    low_confidence: int = 0
    quota_exhausted: bool = False
    primary_calls: int = 0
    duration_ms: int = 0

    def as_dict(self) -> dict:
        return dict(self.__dict__)


class SyntheticEnhancer:
    """
    Upgrades placeholder Works (title + author only) into real records.

    Each Work walks unresolved -> isbn_resolved -> queued_ok | queue_failed;
    the consumer later lifts it to fully_enriched. Placeholders are never deleted.
    """

    def __init__(
        self,
        store: RecordStore,
        queue: EnrichmentQueue,
        path: ResolutionPath,
        *,
        providers: Iterable[str] = DEFAULT_ENRICHMENT_PROVIDERS,
        max_retries: int = DEFAULT_MAX_RETRIES,
        cooldown_days: float = DEFAULT_COOLDOWN_DAYS,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.store = store
        self.queue = queue
        self.path = path
        self.providers = tuple(providers)
        self.max_retries = max_retries
        self.cooldown_s = float(cooldown_days) * 86400.0
        self._clock = clock

    def enhance_batch(self, limit: int = DEFAULT_SYNTHETIC_BATCH_SIZE) -> EnhancementStats:
        started = time.monotonic()
        stats = EnhancementStats()

        primary = self.path.primary
        if primary is not None:
            budget = primary.gate.safe_batch_size(limit, RESOLVE_PRIORITY) if primary.client is not None else 0
            if budget <= 0:
                stats.quota_exhausted = True
                logger.info("synthetic batch | primary quota closed (fallback chain only)")
            elif budget < limit:
                logger.info("synthetic batch | limit=%s | shrunk to primary budget=%s", limit, budget)
                limit = budget

        works = self.store.find_synthetic_candidates(limit, self.cooldown_s, self._clock())
        logger.info("synthetic batch start | candidates=%s | limit=%s", len(works), limit)

        for work in works:
            stats.total_attempted += 1
            try:
                self.enhance_work(work, stats)
            except (StoreError, QueueError) as e:
                stats.errors += 1
                logger.error("synthetic work failed | work_key=%s | err=%s", work.work_key, e)

        stats.duration_ms = int((time.monotonic() - started) * 1000)
        logger.info(
            "synthetic batch done | attempted=%s | resolved=%s | queued=%s | queue_failed=%s | not_found=%s | ms=%s",
            stats.total_attempted,
            stats.isbns_resolved,
            stats.enrichment_queued,
            stats.queue_failed,
            stats.not_found,
            stats.duration_ms,
        )
        return stats

    def enhance_work(self, work: Work, stats: Optional[EnhancementStats] = None) -> str:
        """Returns the Work's enhancement state after this pass."""
        stats = stats if stats is not None else EnhancementStats()
        title, author = self._title_author(work)
        if not title or not author:
            stats.skipped += 1
            logger.debug("synthetic skip | work_key=%s | reason=missing title/author", work.work_key)
            return work.enhancement_state or STATE_UNRESOLVED

        if work.enhancement_state == STATE_QUEUE_FAILED:
            editions = self.store.editions_for_work(work.work_key)
            if editions:
                return self._enqueue(work.work_key, editions[0].isbn, stats)

        result, primary_called = self.path.resolve(title, author, RESOLVE_PRIORITY)
        if primary_called:
            stats.primary_calls += 1
        if result is None:
            stats.not_found += 1
            self.store.set_enhancement_state(
                work.work_key,
                STATE_UNRESOLVED,
                SYNTHETIC_SCORES[STATE_UNRESOLVED],
                sync_ts=self._clock(),
            )
            return STATE_UNRESOLVED

        stats.isbns_resolved += 1
        bucket = confidence_bucket(result.confidence)
        if bucket == "high":
            stats.high_confidence += 1
        elif bucket == "medium":
            stats.medium_confidence += 1
        else:
            stats.low_confidence += 1

        if self.store.get_edition(result.isbn) is None:
            stats.editions_created += 1
        edition = self.store.upsert_edition(self._minimal_edition(work, result))
        if edition.work_key != work.work_key:
            logger.warning(
                "synthetic isbn owned elsewhere | work_key=%s | isbn=%s | linked_to=%s (work keeps no edition)",
                work.work_key,
                result.isbn,
                edition.work_key,
            )
        self.store.set_enhancement_state(
            work.work_key,
            STATE_ISBN_RESOLVED,
            SYNTHETIC_SCORES[STATE_ISBN_RESOLVED],
            sync_ts=self._clock(),
        )
        return self._enqueue(work.work_key, result.isbn, stats)

    def _enqueue(self, work_key: str, isbn: str, stats: EnhancementStats) -> str:
        task = EnrichmentTask(
            entity_type="edition",
            entity_key=isbn,
            providers_to_try=self.providers,
            priority=normalize_priority(ENQUEUE_PRIORITY),
            max_retries=self.max_retries,
            source=SYNTHETIC_PROVIDER,
        )
        task_id = None
        try:
            task_id = self.queue.enqueue(task)
        except QueueError as e:
            logger.warning("synthetic enqueue failed | work_key=%s | isbn=%s | err=%s", work_key, isbn, e)

        if task_id:
            stats.enrichment_queued += 1
            self.store.set_enhancement_state(
                work_key,
                STATE_QUEUED_OK,
                SYNTHETIC_SCORES[STATE_QUEUED_OK],
                sync_ts=self._clock(),
            )
            return STATE_QUEUED_OK

        stats.queue_failed += 1
        # lower the score on purpose; a plain upsert would keep the higher value
        self.store.set_enhancement_state(
            work_key,
            STATE_QUEUE_FAILED,
            SYNTHETIC_SCORES[STATE_QUEUE_FAILED],
            correct_score=True,
            sync_ts=self._clock(),
        )
        return STATE_QUEUE_FAILED

    @staticmethod
    def _title_author(work: Work):
        meta = work.metadata or {}
        title = str(meta.get("title") or work.title or "").strip()
        author = meta.get("author") or ""
        if not author and isinstance(meta.get("authors"), list) and meta["authors"]:
            author = meta["authors"][0]
        return title, str(author or "").strip()

    def _minimal_edition(self, work: Work, result: ResolutionResult) -> Edition:
        meta = result.metadata
        year = meta.publication_year if meta is not None else None
        enhanced_at = datetime.fromtimestamp(self._clock(), tz=timezone.utc).isoformat()
        return Edition(
            isbn=result.isbn,
            work_key=work.work_key,
            title=(meta.title if meta is not None and meta.title else result.title) or work.title or None,
            publisher=(meta.publisher or None) if meta is not None else None,
            publication_date=str(year) if year else None,
            format=(meta.format if meta is not None and meta.format else "Unknown"),
            completeness_score=SYNTHETIC_SCORES[STATE_ISBN_RESOLVED],
            work_match_confidence=result.confidence,
            work_match_source=result.source,
            primary_provider=SYNTHETIC_PROVIDER,
            metadata={
                "enhancement_source": SYNTHETIC_PROVIDER,
                "original_work_key": work.work_key,
                "resolution_confidence": confidence_bucket(result.confidence),
                "match_quality": round(result.confidence / 100, 2),
                "enhanced_at": enhanced_at,
            },
        )
