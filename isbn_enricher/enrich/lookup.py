from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, Iterable, Optional, Tuple, Union

from isbn_enricher.core.models import (
    BookMetadata,
    Edition,
    EnrichmentTask,
    ResolutionResult,
    normalize_priority,
)
from isbn_enricher.core.store import RecordStore
from isbn_enricher.errors import PermanentProviderError, QueueError, QuotaExhaustedError, TransientProviderError
from isbn_enricher.gateway.quota import QuotaGate
from isbn_enricher.integrations.http_client import ISBNdbQuotaError
from isbn_enricher.resolvers.isbndb import ISBNdbResolver
from isbn_enricher.resolvers.orchestrator import ResolutionOrchestrator
from isbn_enricher.resolvers.registry import DEFAULT_ENRICHMENT_PROVIDERS

logger = logging.getLogger(__name__)

Priority = Union[str, int, None]


class PrimaryGateway:
    """
    Quota-gated access to the primary provider.

    Raises QuotaExhaustedError whenever the gate says no, or the provider itself
    reports its daily quota is gone (which also pins the local counter).
    """

    def __init__(self, gate: QuotaGate, client: Optional[ISBNdbResolver]) -> None:
        self.gate = gate
        self.client = client

    @property
    def name(self) -> str:
        return self.client.name if self.client is not None else self.gate.provider

    def _check(self, priority: Priority) -> None:
        if self.client is None:
            raise QuotaExhaustedError(self.gate.provider, "primary provider not configured")
        status = self.gate.can_call_primary(priority)
        if not status.allowed:
            raise QuotaExhaustedError(self.gate.provider, f"gate closed (used={status.used})", status.remaining)

    def allowed(self, priority: Priority) -> bool:
        return self.client is not None and self.gate.can_call_primary(priority).allowed

    def resolve(self, title: str, author: str, priority: Priority) -> Optional[ResolutionResult]:
        self._check(priority)
        try:
            return self.client.resolve(title, author)
        except ISBNdbQuotaError:
            self.gate.tracker.mark_exhausted()
            raise

    def fetch(self, isbn: str, priority: Priority) -> Optional[BookMetadata]:
        self._check(priority)
        try:
            return self.client.fetch(isbn)
        except ISBNdbQuotaError:
            self.gate.tracker.mark_exhausted()
            raise

    def fetch_batch(self, isbns: Iterable[str], priority: Priority) -> Dict[str, BookMetadata]:
        self._check(priority)
        try:
            return self.client.fetch_batch(isbns)
        except ISBNdbQuotaError:
            self.gate.tracker.mark_exhausted()
            raise


class ResolutionPath:
    """Primary provider first when the gate allows it, then the fallback orchestrator."""

    def __init__(self, primary: Optional[PrimaryGateway], orchestrator: ResolutionOrchestrator) -> None:
        self.primary = primary
        self.orchestrator = orchestrator

    def resolve(self, title: str, author: str, priority: Priority = "normal") -> Tuple[Optional[ResolutionResult], bool]:
        """Returns (result, primary_called)."""
        primary_called = False
        if self.primary is not None:
            try:
                primary_called = True
                result = self.primary.resolve(title, author, priority)
                if result is not None:
                    return result, primary_called
                logger.debug("primary miss | title=%r | author=%r (falling back)", title, author)
            except QuotaExhaustedError as e:
                primary_called = False
                logger.info("primary unavailable | reason=%s (routing to fallback chain)", e)
            except (TransientProviderError, PermanentProviderError) as e:
                logger.warning("primary error | title=%r | err=%s (falling back)", title, e)
        return self.orchestrator.find_isbn(title, author), primary_called


@dataclass(frozen=True)
class LookupOutcome:
    status: str  # "found" | "enqueued" | "not_found"
    result: Optional[ResolutionResult] = None
    edition: Optional[Edition] = None
    task_id: Optional[int] = None


class MetadataLookup:
    """
    Search-miss handler: (title, author) with no ISBN.

    Known editions come straight from the store; new ISBNs are queued for full
    enrichment. A miss everywhere is a "not_found" outcome, never an exception.
    """

    def __init__(
        self,
        path: ResolutionPath,
        store: RecordStore,
        queue,
        *,
        providers: Tuple[str, ...] = DEFAULT_ENRICHMENT_PROVIDERS,
        max_retries: int = 3,
    ) -> None:
        self.path = path
        self.store = store
        self.queue = queue
        self.providers = providers
        self.max_retries = max_retries

    def lookup(self, title: str, author: str, priority: Priority = "high") -> LookupOutcome:
        result, _ = self.path.resolve(title, author, priority)
        if result is None:
            return LookupOutcome(status="not_found")

        edition = self.store.get_edition(result.isbn)
        if edition is not None:
            return LookupOutcome(status="found", result=result, edition=edition)

        task = EnrichmentTask(
            entity_type="edition",
            entity_key=result.isbn,
            providers_to_try=self.providers,
            priority=normalize_priority(priority),
            max_retries=self.max_retries,
            source="search-miss",
        )
        try:
            task_id = self.queue.enqueue(task)
        except QueueError as e:
            logger.error("lookup enqueue failed | isbn=%s | err=%s", result.isbn, e)
            return LookupOutcome(status="found", result=result)
        return LookupOutcome(status="enqueued", result=result, task_id=task_id)
