from __future__ import annotations

import json
import logging
import sqlite3
import threading
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, Iterator, List, Optional, Tuple

from isbn_enricher.core.models import (
    STATE_FULLY_ENRICHED,
    SYNTHETIC_ENHANCEMENT_THRESHOLD,
    Author,
    Edition,
    Work,
)
from isbn_enricher.core.normalize import merge_unique
from isbn_enricher.core.scoring import edition_completeness
from isbn_enricher.errors import StoreError

logger = logging.getLogger(__name__)

SCHEMA = """
PRAGMA journal_mode=WAL;

CREATE TABLE IF NOT EXISTS works (
    work_key TEXT PRIMARY KEY,
    title TEXT NOT NULL,
    subtitle TEXT,
    description TEXT,
    subject_tags TEXT NOT NULL DEFAULT '[]',
    completeness_score INTEGER NOT NULL DEFAULT 0,
    primary_provider TEXT,
    contributors TEXT NOT NULL DEFAULT '[]',
    synthetic INTEGER NOT NULL DEFAULT 0,
    last_primary_sync REAL,
    enhancement_state TEXT,
    first_publication_year INTEGER,
    cover_url TEXT,
    metadata TEXT NOT NULL DEFAULT '{}',
    created_at REAL NOT NULL,
    updated_at REAL NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_works_synthetic
    ON works(synthetic, completeness_score, last_primary_sync);

CREATE TABLE IF NOT EXISTS editions (
    isbn TEXT PRIMARY KEY,
    work_key TEXT,
    isbn10 TEXT,
    title TEXT,
    subtitle TEXT,
    publisher TEXT,
    publication_date TEXT,
    page_count INTEGER,
    format TEXT,
    language TEXT,
    cover_urls TEXT NOT NULL DEFAULT '{}',
    external_ids TEXT NOT NULL DEFAULT '{}',
    subjects TEXT NOT NULL DEFAULT '[]',
    completeness_score INTEGER NOT NULL DEFAULT 0,
    work_match_confidence INTEGER,
    work_match_source TEXT,
    primary_provider TEXT,
    contributors TEXT NOT NULL DEFAULT '[]',
    metadata TEXT NOT NULL DEFAULT '{}',
    created_at REAL NOT NULL,
    updated_at REAL NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_editions_work_key ON editions(work_key);

CREATE TABLE IF NOT EXISTS authors (
    author_key TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    birth_year INTEGER,
    bio TEXT,
    openlibrary_author_id TEXT,
    book_count INTEGER,
    contributors TEXT NOT NULL DEFAULT '[]',
    created_at REAL NOT NULL,
    updated_at REAL NOT NULL
);

CREATE TABLE IF NOT EXISTS work_authors (
    work_key TEXT NOT NULL,
    author_key TEXT NOT NULL,
    position INTEGER NOT NULL DEFAULT 0,
    PRIMARY KEY (work_key, author_key)
);

CREATE TABLE IF NOT EXISTS enrichment_log (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    entity_type TEXT NOT NULL,
    entity_key TEXT NOT NULL,
    provider TEXT NOT NULL,
    operation TEXT NOT NULL,
    success INTEGER NOT NULL,
    fields_updated TEXT NOT NULL DEFAULT '[]',
    error_message TEXT,
    response_time_ms INTEGER,
    created_at REAL NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_enrichment_log_entity ON enrichment_log(entity_type, entity_key);
"""

_UPSERT_WORK = """
INSERT INTO works (
    work_key, title, subtitle, description, subject_tags, completeness_score,
    primary_provider, contributors, synthetic, last_primary_sync, enhancement_state,
    first_publication_year, cover_url, metadata, created_at, updated_at
) VALUES (
    :work_key, :title, :subtitle, :description, :subject_tags, :completeness_score,
    :primary_provider, :contributors, :synthetic, :last_primary_sync, :enhancement_state,
    :first_publication_year, :cover_url, :metadata, :now, :now
)
ON CONFLICT(work_key) DO UPDATE SET
    title = COALESCE(NULLIF(excluded.title, ''), works.title),
    subtitle = COALESCE(NULLIF(excluded.subtitle, ''), works.subtitle),
    description = COALESCE(NULLIF(excluded.description, ''), works.description),
    subject_tags = excluded.subject_tags,
    completeness_score = CASE
        WHEN :correct_score THEN excluded.completeness_score
        ELSE MAX(works.completeness_score, excluded.completeness_score)
    END,
    primary_provider = COALESCE(excluded.primary_provider, works.primary_provider),
    contributors = excluded.contributors,
    synthetic = MAX(works.synthetic, excluded.synthetic),
    last_primary_sync = COALESCE(excluded.last_primary_sync, works.last_primary_sync),
    enhancement_state = COALESCE(excluded.enhancement_state, works.enhancement_state),
    first_publication_year = COALESCE(excluded.first_publication_year, works.first_publication_year),
    cover_url = COALESCE(NULLIF(excluded.cover_url, ''), works.cover_url),
    metadata = excluded.metadata,
    updated_at = excluded.updated_at
"""

_UPSERT_EDITION = """
INSERT INTO editions (
    isbn, work_key, isbn10, title, subtitle, publisher, publication_date, page_count,
    format, language, cover_urls, external_ids, subjects, completeness_score,
    work_match_confidence, work_match_source, primary_provider, contributors, metadata,
    created_at, updated_at
) VALUES (
    :isbn, :work_key, :isbn10, :title, :subtitle, :publisher, :publication_date, :page_count,
    :format, :language, :cover_urls, :external_ids, :subjects, :completeness_score,
    :work_match_confidence, :work_match_source, :primary_provider, :contributors, :metadata,
    :now, :now
)
ON CONFLICT(isbn) DO UPDATE SET
    work_key = COALESCE(editions.work_key, excluded.work_key),
    isbn10 = COALESCE(NULLIF(excluded.isbn10, ''), editions.isbn10),
    title = COALESCE(NULLIF(excluded.title, ''), editions.title),
    subtitle = COALESCE(NULLIF(excluded.subtitle, ''), editions.subtitle),
    publisher = COALESCE(NULLIF(excluded.publisher, ''), editions.publisher),
    publication_date = COALESCE(NULLIF(excluded.publication_date, ''), editions.publication_date),
    page_count = COALESCE(excluded.page_count, editions.page_count),
    format = CASE
        WHEN excluded.format IS NULL OR excluded.format IN ('', 'Unknown')
            THEN COALESCE(editions.format, excluded.format)
        ELSE excluded.format
    END,
    language = COALESCE(NULLIF(excluded.language, ''), editions.language),
    cover_urls = excluded.cover_urls,
    external_ids = excluded.external_ids,
    subjects = excluded.subjects,
    completeness_score = MAX(editions.completeness_score, excluded.completeness_score),
    work_match_confidence = CASE
        WHEN excluded.work_match_confidence IS NOT NULL
         AND (editions.work_match_confidence IS NULL
              OR excluded.work_match_confidence > editions.work_match_confidence)
            THEN excluded.work_match_confidence
        ELSE editions.work_match_confidence
    END,
    work_match_source = CASE
        WHEN excluded.work_match_confidence IS NOT NULL
         AND (editions.work_match_confidence IS NULL
              OR excluded.work_match_confidence > editions.work_match_confidence)
            THEN excluded.work_match_source
        ELSE editions.work_match_source
    END,
    primary_provider = COALESCE(excluded.primary_provider, editions.primary_provider),
    contributors = excluded.contributors,
    metadata = excluded.metadata,
    updated_at = excluded.updated_at
"""

_UPSERT_AUTHOR = """
INSERT INTO authors (
    author_key, name, birth_year, bio, openlibrary_author_id, book_count, contributors,
    created_at, updated_at
) VALUES (
    :author_key, :name, :birth_year, :bio, :openlibrary_author_id, :book_count, :contributors,
    :now, :now
)
ON CONFLICT(author_key) DO UPDATE SET
    name = COALESCE(NULLIF(excluded.name, ''), authors.name),
    birth_year = COALESCE(excluded.birth_year, authors.birth_year),
    bio = COALESCE(NULLIF(excluded.bio, ''), authors.bio),
    openlibrary_author_id = COALESCE(excluded.openlibrary_author_id, authors.openlibrary_author_id),
    book_count = COALESCE(excluded.book_count, authors.book_count),
    contributors = excluded.contributors,
    updated_at = excluded.updated_at
"""


def _dumps(val: Any) -> str:
    return json.dumps(val, ensure_ascii=False, sort_keys=True)


def _loads(raw: Optional[str], default: Any) -> Any:
    if not raw:
        return default
    try:
        return json.loads(raw)
    except ValueError:
        return default


def _merge_ids(base: Dict[str, Iterable[str]], extra: Dict[str, Iterable[str]]) -> Dict[str, List[str]]:
    out: Dict[str, List[str]] = {k: list(v) for k, v in (base or {}).items()}
    for k, vals in (extra or {}).items():
        out[k] = list(merge_unique(out.get(k, []), vals))
    return {k: v for k, v in out.items() if v}


class RecordStore:
    """
    SQLite-backed store for Work / Edition / Author records.

    All writes run inside BEGIN IMMEDIATE under one lock. Upserts use
    ON CONFLICT merges that hold two rules regardless of caller:
      - an Edition's work_key, once set, is never repointed
      - completeness_score never goes down (unless correct_score=True on a Work)
    """

    def __init__(self, db_path: str, *, clock: Callable[[], float] = time.time) -> None:
        self.db_path = db_path
        if db_path != ":memory:":
            Path(db_path).expanduser().parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.RLock()
        self._clock = clock
        try:
            self.conn = sqlite3.connect(db_path, check_same_thread=False, isolation_level=None, timeout=30)
            self.conn.row_factory = sqlite3.Row
            self.conn.executescript(SCHEMA)
        except sqlite3.Error as e:
            raise StoreError(f"cannot open record store at {db_path}: {e}") from e

    def close(self) -> None:
        with self._lock:
            self.conn.close()

    @contextmanager
    def _tx(self) -> Iterator[sqlite3.Connection]:
        with self._lock:
            try:
                self.conn.execute("BEGIN IMMEDIATE")
            except sqlite3.Error as e:
                raise StoreError(f"begin failed: {e}") from e
            try:
                yield self.conn
            except sqlite3.Error as e:
                self.conn.execute("ROLLBACK")
                raise StoreError(str(e)) from e
            except BaseException:
                self.conn.execute("ROLLBACK")
                raise
            else:
                self.conn.execute("COMMIT")

    def _query(self, sql: str, params: Tuple = ()) -> List[sqlite3.Row]:
        with self._lock:
            try:
                return self.conn.execute(sql, params).fetchall()
            except sqlite3.Error as e:
                raise StoreError(str(e)) from e

    # --- row mapping ---

    @staticmethod
    def _work_from_row(row: sqlite3.Row) -> Work:
        return Work(
            work_key=row["work_key"],
            title=row["title"],
            subtitle=row["subtitle"],
            description=row["description"],
            subject_tags=tuple(_loads(row["subject_tags"], [])),
            completeness_score=int(row["completeness_score"] or 0),
            primary_provider=row["primary_provider"],
            contributors=tuple(_loads(row["contributors"], [])),
            synthetic=bool(row["synthetic"]),
            last_primary_sync=row["last_primary_sync"],
            enhancement_state=row["enhancement_state"],
            first_publication_year=row["first_publication_year"],
            cover_url=row["cover_url"],
            metadata=_loads(row["metadata"], {}),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    @staticmethod
    def _edition_from_row(row: sqlite3.Row) -> Edition:
        ext = _loads(row["external_ids"], {})
        return Edition(
            isbn=row["isbn"],
            work_key=row["work_key"],
            isbn10=row["isbn10"],
            title=row["title"],
            subtitle=row["subtitle"],
            publisher=row["publisher"],
            publication_date=row["publication_date"],
            page_count=row["page_count"],
            format=row["format"],
            language=row["language"],
            cover_urls=_loads(row["cover_urls"], {}),
            external_ids={k: tuple(v) for k, v in ext.items()},
            subjects=tuple(_loads(row["subjects"], [])),
            completeness_score=int(row["completeness_score"] or 0),
            work_match_confidence=row["work_match_confidence"],
            work_match_source=row["work_match_source"],
            primary_provider=row["primary_provider"],
            contributors=tuple(_loads(row["contributors"], [])),
            metadata=_loads(row["metadata"], {}),
        )

    @staticmethod
    def _author_from_row(row: sqlite3.Row) -> Author:
        return Author(
            author_key=row["author_key"],
            name=row["name"],
            birth_year=row["birth_year"],
            bio=row["bio"],
            openlibrary_author_id=row["openlibrary_author_id"],
            book_count=row["book_count"],
            contributors=tuple(_loads(row["contributors"], [])),
        )

    # --- reads ---

    def get_work(self, work_key: str) -> Optional[Work]:
        rows = self._query("SELECT * FROM works WHERE work_key = ?", (work_key,))
        return self._work_from_row(rows[0]) if rows else None

    def get_edition(self, isbn: str) -> Optional[Edition]:
        rows = self._query("SELECT * FROM editions WHERE isbn = ?", (isbn,))
        return self._edition_from_row(rows[0]) if rows else None

    def get_author(self, author_key: str) -> Optional[Author]:
        rows = self._query("SELECT * FROM authors WHERE author_key = ?", (author_key,))
        return self._author_from_row(rows[0]) if rows else None

    def editions_for_work(self, work_key: str) -> List[Edition]:
        rows = self._query(
            "SELECT * FROM editions WHERE work_key = ? ORDER BY completeness_score DESC, isbn",
            (work_key,),
        )
        return [self._edition_from_row(r) for r in rows]

    def authors_for_work(self, work_key: str) -> List[Author]:
        rows = self._query(
            """
            SELECT a.* FROM authors a
            JOIN work_authors wa ON wa.author_key = a.author_key
            WHERE wa.work_key = ?
            ORDER BY wa.position
            """,
            (work_key,),
        )
        return [self._author_from_row(r) for r in rows]

    def find_synthetic_candidates(
        self,
        limit: int,
        cooldown_s: float,
        now: Optional[float] = None,
    ) -> List[Work]:
        """Synthetic works below the enhancement threshold whose cooldown has passed, oldest first."""
        now = self._clock() if now is None else now
        rows = self._query(
            """
            SELECT * FROM works
            WHERE synthetic = 1
              AND completeness_score < ?
              AND (last_primary_sync IS NULL OR last_primary_sync < ?)
            ORDER BY created_at ASC, work_key ASC
            LIMIT ?
            """,
            (SYNTHETIC_ENHANCEMENT_THRESHOLD, now - float(cooldown_s), int(limit)),
        )
        return [self._work_from_row(r) for r in rows]

    def counts(self) -> Dict[str, int]:
        out = {}
        for table in ("works", "editions", "authors", "enrichment_log"):
            out[table] = int(self._query(f"SELECT COUNT(*) AS n FROM {table}")[0]["n"])
        out["synthetic_works"] = int(
            self._query("SELECT COUNT(*) AS n FROM works WHERE synthetic = 1")[0]["n"]
        )
        return out

    # --- writes ---

    def upsert_work(self, work: Work, *, correct_score: bool = False) -> Work:
        now = self._clock()
        with self._tx() as conn:
            row = conn.execute("SELECT * FROM works WHERE work_key = ?", (work.work_key,)).fetchone()
            existing = self._work_from_row(row) if row else None
            tags = merge_unique(existing.subject_tags if existing else (), work.subject_tags, lower=True)
            contributors = merge_unique(existing.contributors if existing else (), work.contributors)
            metadata = {**(existing.metadata if existing else {}), **(work.metadata or {})}
            conn.execute(
                _UPSERT_WORK,
                {
                    "work_key": work.work_key,
                    "title": work.title or "",
                    "subtitle": work.subtitle,
                    "description": work.description,
                    "subject_tags": _dumps(list(tags)),
                    "completeness_score": max(0, min(100, int(work.completeness_score))),
                    "primary_provider": work.primary_provider,
                    "contributors": _dumps(list(contributors)),
                    "synthetic": 1 if work.synthetic else 0,
                    "last_primary_sync": work.last_primary_sync,
                    "enhancement_state": work.enhancement_state,
                    "first_publication_year": work.first_publication_year,
                    "cover_url": work.cover_url,
                    "metadata": _dumps(metadata),
                    "correct_score": 1 if correct_score else 0,
                    "now": now,
                },
            )
            row = conn.execute("SELECT * FROM works WHERE work_key = ?", (work.work_key,)).fetchone()
        return self._work_from_row(row)

    def upsert_edition(self, edition: Edition) -> Edition:
        now = self._clock()
        with self._tx() as conn:
            row = conn.execute("SELECT * FROM editions WHERE isbn = ?", (edition.isbn,)).fetchone()
            existing = self._edition_from_row(row) if row else None
            if existing and existing.work_key and edition.work_key and existing.work_key != edition.work_key:
                logger.warning(
                    "relink refused | isbn=%s | work_key=%s | proposed=%s | source=%s",
                    edition.isbn,
                    existing.work_key,
                    edition.work_key,
                    edition.work_match_source,
                )
            covers = dict(existing.cover_urls) if existing else {}
            covers.update({k: v for k, v in (edition.cover_urls or {}).items() if v})
            ext = _merge_ids(existing.external_ids if existing else {}, edition.external_ids)
            subjects = merge_unique(existing.subjects if existing else (), edition.subjects)
            contributors = merge_unique(existing.contributors if existing else (), edition.contributors)
            metadata = {**(existing.metadata if existing else {}), **(edition.metadata or {})}
            conn.execute(
                _UPSERT_EDITION,
                {
                    "isbn": edition.isbn,
                    "work_key": edition.work_key,
                    "isbn10": edition.isbn10,
                    "title": edition.title,
                    "subtitle": edition.subtitle,
                    "publisher": edition.publisher,
                    "publication_date": edition.publication_date,
                    "page_count": edition.page_count,
                    "format": edition.format,
                    "language": edition.language,
                    "cover_urls": _dumps(covers),
                    "external_ids": _dumps(ext),
                    "subjects": _dumps(list(subjects)),
                    "completeness_score": max(0, min(100, int(edition.completeness_score))),
                    "work_match_confidence": edition.work_match_confidence,
                    "work_match_source": edition.work_match_source,
                    "primary_provider": edition.primary_provider,
                    "contributors": _dumps(list(contributors)),
                    "metadata": _dumps(metadata),
                    "now": now,
                },
            )
            row = conn.execute("SELECT * FROM editions WHERE isbn = ?", (edition.isbn,)).fetchone()
            merged = self._edition_from_row(row)
            computed = edition_completeness(merged)
            if computed > merged.completeness_score:
                conn.execute(
                    "UPDATE editions SET completeness_score = ? WHERE isbn = ?",
                    (computed, edition.isbn),
                )
                row = conn.execute("SELECT * FROM editions WHERE isbn = ?", (edition.isbn,)).fetchone()
        return self._edition_from_row(row)

    def upsert_author(self, author: Author) -> Author:
        now = self._clock()
        with self._tx() as conn:
            row = conn.execute("SELECT contributors FROM authors WHERE author_key = ?", (author.author_key,)).fetchone()
            contributors = merge_unique(_loads(row["contributors"], []) if row else (), author.contributors)
            conn.execute(
                _UPSERT_AUTHOR,
                {
                    "author_key": author.author_key,
                    "name": author.name,
                    "birth_year": author.birth_year,
                    "bio": author.bio,
                    "openlibrary_author_id": author.openlibrary_author_id,
                    "book_count": author.book_count,
                    "contributors": _dumps(list(contributors)),
                    "now": now,
                },
            )
            row = conn.execute("SELECT * FROM authors WHERE author_key = ?", (author.author_key,)).fetchone()
        return self._author_from_row(row)

    def link_author(self, work_key: str, author_key: str, position: int = 0) -> None:
        with self._tx() as conn:
            conn.execute(
                """
                INSERT INTO work_authors (work_key, author_key, position) VALUES (?, ?, ?)
                ON CONFLICT(work_key, author_key) DO NOTHING
                """,
                (work_key, author_key, int(position)),
            )

    def set_enhancement_state(
        self,
        work_key: str,
        state: str,
        score: int,
        *,
        correct_score: bool = False,
        sync_ts: Optional[float] = None,
    ) -> Optional[Work]:
        now = self._clock()
        with self._tx() as conn:
            conn.execute(
                """
                UPDATE works SET
                    enhancement_state = :state,
                    completeness_score = CASE WHEN :correct THEN :score ELSE MAX(completeness_score, :score) END,
                    last_primary_sync = COALESCE(:sync_ts, last_primary_sync),
                    updated_at = :now
                WHERE work_key = :work_key
                  AND (enhancement_state IS NULL OR enhancement_state != :final OR :state = :final)
                """,
                {
                    "state": state,
                    "correct": 1 if correct_score else 0,
                    "score": int(score),
                    "sync_ts": sync_ts,
                    "now": now,
                    "work_key": work_key,
                    "final": STATE_FULLY_ENRICHED,
                },
            )
            row = conn.execute("SELECT * FROM works WHERE work_key = ?", (work_key,)).fetchone()
        return self._work_from_row(row) if row else None

    def touch_primary_sync(self, work_key: str, ts: Optional[float] = None) -> bool:
        """Stamp the last primary-provider contact; the synthetic cooldown reads it."""
        ts = self._clock() if ts is None else ts
        with self._tx() as conn:
            cur = conn.execute(
                "UPDATE works SET last_primary_sync = ?, updated_at = ? WHERE work_key = ?",
                (ts, ts, work_key),
            )
        return cur.rowcount > 0

    def log_enrichment(
        self,
        entity_type: str,
        entity_key: str,
        provider: str,
        operation: str,
        success: bool,
        *,
        fields_updated: Iterable[str] = (),
        error_message: Optional[str] = None,
        response_time_ms: Optional[int] = None,
    ) -> None:
        try:
            with self._tx() as conn:
                conn.execute(
                    """
                    INSERT INTO enrichment_log (
                        entity_type, entity_key, provider, operation, success,
                        fields_updated, error_message, response_time_ms, created_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        entity_type,
                        entity_key,
                        provider,
                        operation,
                        1 if success else 0,
                        _dumps(list(fields_updated)),
                        error_message,
                        response_time_ms,
                        self._clock(),
                    ),
                )
        except StoreError as e:
            # Audit rows are best-effort; the merge they describe has already committed.
            logger.warning("enrichment log write failed | entity=%s:%s | err=%s", entity_type, entity_key, e)

    def enrichment_log(self, entity_type: str, entity_key: str) -> List[dict]:
        rows = self._query(
            "SELECT * FROM enrichment_log WHERE entity_type = ? AND entity_key = ? ORDER BY id",
            (entity_type, entity_key),
        )
        return [dict(r) for r in rows]
