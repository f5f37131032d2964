from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Tuple, Union

ENTITY_TYPES = ("edition", "work", "author")

TASK_PENDING = "pending"
TASK_PROCESSING = "processing"
TASK_COMPLETED = "completed"
TASK_FAILED = "failed"
TASK_STATUSES = (TASK_PENDING, TASK_PROCESSING, TASK_COMPLETED, TASK_FAILED)

# Synthetic work lifecycle (state -> completeness score)
STATE_UNRESOLVED = "unresolved"
STATE_ISBN_RESOLVED = "isbn_resolved"
STATE_QUEUED_OK = "queued_ok"
STATE_QUEUE_FAILED = "queue_failed"
STATE_FULLY_ENRICHED = "fully_enriched"

SYNTHETIC_SCORES = {
    STATE_UNRESOLVED: 30,
    STATE_ISBN_RESOLVED: 50,
    STATE_QUEUED_OK: 80,
    STATE_QUEUE_FAILED: 40,
}
SYNTHETIC_ENHANCEMENT_THRESHOLD = 50
FULLY_ENRICHED_MIN_SCORE = 85

CIRCUIT_CLOSED = "closed"
CIRCUIT_OPEN = "open"
CIRCUIT_HALF_OPEN = "half_open"

# Lower number = more urgent
PRIORITY_MAP = {
    "urgent": 1,
    "high": 3,
    "medium": 5,
    "normal": 5,
    "low": 7,
    "background": 9,
}
DEFAULT_PRIORITY = PRIORITY_MAP["normal"]


def normalize_priority(value: Union[str, int, None]) -> int:
    if value is None:
        return DEFAULT_PRIORITY
    if isinstance(value, str):
        key = value.strip().lower()
        if key in PRIORITY_MAP:
            return PRIORITY_MAP[key]
        try:
            value = int(key)
        except ValueError:
            return DEFAULT_PRIORITY
    return max(1, min(10, int(value)))


@dataclass(frozen=True)
class Work:
    work_key: str
    title: str
    subtitle: Optional[str] = None
    description: Optional[str] = None
    subject_tags: Tuple[str, ...] = ()
    completeness_score: int = 0
    primary_provider: Optional[str] = None
    contributors: Tuple[str, ...] = ()
    synthetic: bool = False
    last_primary_sync: Optional[float] = None
    enhancement_state: Optional[str] = None
    first_publication_year: Optional[int] = None
    cover_url: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    created_at: Optional[float] = None
    updated_at: Optional[float] = None


@dataclass(frozen=True)
class Edition:
    isbn: str
    work_key: Optional[str] = None
    isbn10: Optional[str] = None
    title: Optional[str] = None
    subtitle: Optional[str] = None
    publisher: Optional[str] = None
    publication_date: Optional[str] = None
    page_count: Optional[int] = None
    format: Optional[str] = None
    language: Optional[str] = None
    cover_urls: Dict[str, str] = field(default_factory=dict)
    external_ids: Dict[str, Tuple[str, ...]] = field(default_factory=dict)
    subjects: Tuple[str, ...] = ()
    completeness_score: int = 0
    work_match_confidence: Optional[int] = None
    work_match_source: Optional[str] = None
    primary_provider: Optional[str] = None
    contributors: Tuple[str, ...] = ()
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class Author:
    author_key: str
    name: str
    birth_year: Optional[int] = None
    bio: Optional[str] = None
    openlibrary_author_id: Optional[str] = None
    book_count: Optional[int] = None
    contributors: Tuple[str, ...] = ()


@dataclass(frozen=True)
class EnrichmentTask:
    entity_type: str  # "edition" | "work" | "author"
    entity_key: str
    providers_to_try: Tuple[str, ...]
    priority: int = DEFAULT_PRIORITY
    retry_count: int = 0
    max_retries: int = 3
    task_id: Optional[int] = None
    status: str = TASK_PENDING
    last_error: Optional[str] = None
    source: Optional[str] = None

    def as_message(self) -> Dict[str, Any]:
        return {
            "entityType": self.entity_type,
            "entityKey": self.entity_key,
            "providersToTry": list(self.providers_to_try),
            "priority": self.priority,
            "retryCount": self.retry_count,
            "maxRetries": self.max_retries,
        }


@dataclass(frozen=True)
class BookMetadata:
    """One provider's normalized view of a single ISBN."""

    isbn13: str
    provider: str
    title: str = ""
    subtitle: str = ""
    authors: Tuple[str, ...] = ()
    isbn10: str = ""
    publisher: str = ""
    publication_date: str = ""
    page_count: Optional[int] = None
    language: str = ""
    format: str = ""
    subjects: Tuple[str, ...] = ()
    description: str = ""
    cover_url: str = ""
    cover_url_large: str = ""
    provider_id: str = ""

    @property
    def first_author(self) -> str:
        return self.authors[0] if self.authors else ""

    @property
    def publication_year(self) -> Optional[int]:
        digits = "".join(ch for ch in (self.publication_date or "")[:4] if ch.isdigit())
        return int(digits) if len(digits) == 4 else None


@dataclass(frozen=True)
class Candidate:
    isbn: str
    metadata: Optional[BookMetadata] = None


@dataclass(frozen=True)
class ResolutionResult:
    isbn: str
    confidence: int
    source: str
    title: str = ""
    author: str = ""
    metadata: Optional[BookMetadata] = None


@dataclass(frozen=True)
class QuotaStatus:
    provider: str
    day: str
    used: int
    daily_limit: int
    soft_limit: int
    hard_limit: int
    allowed: bool
    remaining: int


@dataclass(frozen=True)
class CircuitState:
    state: str = CIRCUIT_CLOSED
    failures: int = 0
    successes: int = 0
    opened_at: Optional[float] = None


@dataclass(frozen=True)
class StatsSnapshot:
    processed: int
    completed: int
    retried: int
    dead_lettered: int
    primary_calls: int
    fallback_hits: int
    errors: int
