from __future__ import annotations

import json
import logging
import sqlite3
import threading
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Callable, Dict, Iterator, List, Optional

from isbn_enricher.core.models import (
    ENTITY_TYPES,
    TASK_COMPLETED,
    TASK_FAILED,
    TASK_PENDING,
    TASK_PROCESSING,
    TASK_STATUSES,
    EnrichmentTask,
    normalize_priority,
)
from isbn_enricher.errors import QueueError, TaskExhaustedError
from isbn_enricher.resolvers.registry import parse_provider_list

logger = logging.getLogger(__name__)

ENRICHMENT_QUEUE_MAX_BATCH_SIZE = 10
DEFAULT_LEASE_S = 300.0
DEFAULT_MAX_RETRIES = 3
DEFAULT_RETRY_BASE_S = 30.0
DEFAULT_RETRY_MAX_S = 3600.0

SCHEMA = """
PRAGMA journal_mode=WAL;

CREATE TABLE IF NOT EXISTS enrichment_tasks (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    entity_type TEXT NOT NULL,
    entity_key TEXT NOT NULL,
    providers_to_try TEXT NOT NULL,
    priority INTEGER NOT NULL,
    retry_count INTEGER NOT NULL DEFAULT 0,
    max_retries INTEGER NOT NULL,
    status TEXT NOT NULL,
    source TEXT,
    last_error TEXT,
    next_run_at REAL NOT NULL,
    lease_expires_at REAL,
    dead_lettered_at REAL,
    created_at REAL NOT NULL,
    updated_at REAL NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_tasks_ready ON enrichment_tasks(status, next_run_at, priority, id);
CREATE INDEX IF NOT EXISTS idx_tasks_lease ON enrichment_tasks(status, lease_expires_at);
"""


def retry_delay_s(retry_count: int, base_s: float, max_s: float) -> float:
    return min(float(max_s), float(base_s) * (2 ** max(0, int(retry_count) - 1)))


class EnrichmentQueue:
    """
    Durable at-least-once task queue with leases.

    pending -> processing (lease) -> completed
                                   -> pending again with retry_count + 1 and a backoff delay
                                   -> failed (dead letter) once retry_count >= max_retries
    Expired leases are reaped back to pending, counting as a failed attempt, so a
    task that keeps crashing its worker still dead-letters.
    """

    def __init__(
        self,
        db_path: str,
        *,
        retry_base_s: float = DEFAULT_RETRY_BASE_S,
        retry_max_s: float = DEFAULT_RETRY_MAX_S,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.db_path = db_path
        if db_path != ":memory:":
            Path(db_path).expanduser().parent.mkdir(parents=True, exist_ok=True)
        self.retry_base_s = float(retry_base_s)
        self.retry_max_s = float(retry_max_s)
        self._clock = clock
        self._lock = threading.RLock()
        try:
            self.conn = sqlite3.connect(db_path, check_same_thread=False, isolation_level=None, timeout=30)
            self.conn.row_factory = sqlite3.Row
            self.conn.executescript(SCHEMA)
        except sqlite3.Error as e:
            raise QueueError(f"cannot open queue at {db_path}: {e}") from e

    def close(self) -> None:
        with self._lock:
            self.conn.close()

    @contextmanager
    def _tx(self) -> Iterator[sqlite3.Connection]:
        with self._lock:
            try:
                self.conn.execute("BEGIN IMMEDIATE")
            except sqlite3.Error as e:
                raise QueueError(f"begin failed: {e}") from e
            try:
                yield self.conn
            except sqlite3.Error as e:
                self.conn.execute("ROLLBACK")
                raise QueueError(str(e)) from e
            except BaseException:
                self.conn.execute("ROLLBACK")
                raise
            else:
                self.conn.execute("COMMIT")

    @staticmethod
    def _task_from_row(row: sqlite3.Row) -> EnrichmentTask:
        return EnrichmentTask(
            entity_type=row["entity_type"],
            entity_key=row["entity_key"],
            providers_to_try=tuple(json.loads(row["providers_to_try"] or "[]")),
            priority=int(row["priority"]),
            retry_count=int(row["retry_count"]),
            max_retries=int(row["max_retries"]),
            task_id=int(row["id"]),
            status=row["status"],
            last_error=row["last_error"],
            source=row["source"],
        )

    # --- producer side ---

    def enqueue(self, task: EnrichmentTask, *, delay_s: float = 0.0) -> int:
        if task.entity_type not in ENTITY_TYPES:
            raise QueueError(f"unknown entity type: {task.entity_type!r}")
        if not (task.entity_key or "").strip():
            raise QueueError("entity_key is required")
        providers = parse_provider_list(task.providers_to_try)
        if not providers:
            raise QueueError("providers_to_try is empty")
        now = self._clock()
        with self._tx() as conn:
            cur = conn.execute(
                """
                INSERT INTO enrichment_tasks (
                    entity_type, entity_key, providers_to_try, priority, retry_count, max_retries,
                    status, source, next_run_at, created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    task.entity_type,
                    task.entity_key,
                    json.dumps(list(providers)),
                    normalize_priority(task.priority),
                    max(0, int(task.retry_count)),
                    max(0, int(task.max_retries)),
                    TASK_PENDING,
                    task.source,
                    now + max(0.0, float(delay_s)),
                    now,
                    now,
                ),
            )
            task_id = int(cur.lastrowid)
        logger.debug(
            "enqueued | task_id=%s | entity=%s:%s | providers=%s | priority=%s",
            task_id,
            task.entity_type,
            task.entity_key,
            ",".join(providers),
            task.priority,
        )
        return task_id

    # --- consumer side ---

    def lease(self, batch_size: int = ENRICHMENT_QUEUE_MAX_BATCH_SIZE, lease_s: float = DEFAULT_LEASE_S) -> List[EnrichmentTask]:
        self.reap_expired()
        now = self._clock()
        with self._tx() as conn:
            rows = conn.execute(
                """
                SELECT id FROM enrichment_tasks
                WHERE status = ? AND next_run_at <= ?
                ORDER BY priority ASC, next_run_at ASC, id ASC
                LIMIT ?
                """,
                (TASK_PENDING, now, max(1, int(batch_size))),
            ).fetchall()
            ids = [int(r["id"]) for r in rows]
            if not ids:
                return []
            marks = ",".join("?" for _ in ids)
            conn.execute(
                f"""
                UPDATE enrichment_tasks
                SET status = ?, lease_expires_at = ?, updated_at = ?
                WHERE id IN ({marks}) AND status = ?
                """,
                (TASK_PROCESSING, now + float(lease_s), now, *ids, TASK_PENDING),
            )
            leased = conn.execute(
                f"SELECT * FROM enrichment_tasks WHERE id IN ({marks}) ORDER BY priority ASC, id ASC",
                tuple(ids),
            ).fetchall()
        return [self._task_from_row(r) for r in leased]

    def ack(self, task_id: int) -> bool:
        now = self._clock()
        with self._tx() as conn:
            cur = conn.execute(
                """
                UPDATE enrichment_tasks
                SET status = ?, lease_expires_at = NULL, last_error = NULL, updated_at = ?
                WHERE id = ? AND status = ?
                """,
                (TASK_COMPLETED, now, task_id, TASK_PROCESSING),
            )
            return cur.rowcount == 1

    def _check_retry_budget(self, task_id: int, retry_count: int, max_retries: int, error: str) -> None:
        if retry_count >= max_retries:
            raise TaskExhaustedError(task_id, retry_count, max_retries, error)

    def retry(self, task_id: int, error: str) -> str:
        """Record a failed attempt. Returns the task's new status."""
        now = self._clock()
        with self._tx() as conn:
            row = conn.execute(
                "SELECT retry_count, max_retries, status FROM enrichment_tasks WHERE id = ?",
                (task_id,),
            ).fetchone()
            if row is None:
                raise QueueError(f"unknown task: {task_id}")
            if row["status"] != TASK_PROCESSING:
                logger.warning("retry ignored | task_id=%s | status=%s", task_id, row["status"])
                return row["status"]
            retry_count = int(row["retry_count"]) + 1
            try:
                self._check_retry_budget(task_id, retry_count, int(row["max_retries"]), error)
            except TaskExhaustedError as e:
                self._dead_letter(conn, task_id, retry_count, str(e), now)
                return TASK_FAILED
            delay = retry_delay_s(retry_count, self.retry_base_s, self.retry_max_s)
            conn.execute(
                """
                UPDATE enrichment_tasks
                SET status = ?, retry_count = ?, last_error = ?, next_run_at = ?,
                    lease_expires_at = NULL, updated_at = ?
                WHERE id = ?
                """,
                (TASK_PENDING, retry_count, (error or "")[:2000], now + delay, now, task_id),
            )
        logger.info("task retry scheduled | task_id=%s | retry=%s | delay_s=%.0f | err=%s", task_id, retry_count, delay, error)
        return TASK_PENDING

    def dead_letter(self, task_id: int, error: str) -> bool:
        now = self._clock()
        with self._tx() as conn:
            row = conn.execute("SELECT retry_count, status FROM enrichment_tasks WHERE id = ?", (task_id,)).fetchone()
            if row is None or row["status"] != TASK_PROCESSING:
                return False
            return self._dead_letter(conn, task_id, int(row["retry_count"]), error, now)

    def _dead_letter(self, conn: sqlite3.Connection, task_id: int, retry_count: int, error: str, now: float) -> bool:
        cur = conn.execute(
            """
            UPDATE enrichment_tasks
            SET status = ?, retry_count = ?, last_error = ?, dead_lettered_at = ?,
                lease_expires_at = NULL, updated_at = ?
            WHERE id = ? AND status = ?
            """,
            (TASK_FAILED, retry_count, (error or "")[:2000], now, now, task_id, TASK_PROCESSING),
        )
        if cur.rowcount == 1:
            logger.error("task dead-lettered | task_id=%s | retries=%s | err=%s", task_id, retry_count, error)
            return True
        return False

    def reap_expired(self, now: Optional[float] = None) -> int:
        """Return expired leases to pending (or dead-letter them when out of retries)."""
        now = self._clock() if now is None else now
        reaped = 0
        with self._tx() as conn:
            rows = conn.execute(
                """
                SELECT id, retry_count, max_retries FROM enrichment_tasks
                WHERE status = ? AND lease_expires_at IS NOT NULL AND lease_expires_at <= ?
                """,
                (TASK_PROCESSING, now),
            ).fetchall()
            for row in rows:
                task_id = int(row["id"])
                retry_count = int(row["retry_count"]) + 1
                err = "lease expired"
                try:
                    self._check_retry_budget(task_id, retry_count, int(row["max_retries"]), err)
                except TaskExhaustedError as e:
                    self._dead_letter(conn, task_id, retry_count, str(e), now)
                    reaped += 1
                    continue
                conn.execute(
                    """
                    UPDATE enrichment_tasks
                    SET status = ?, retry_count = ?, last_error = ?, next_run_at = ?,
                        lease_expires_at = NULL, updated_at = ?
                    WHERE id = ? AND status = ?
                    """,
                    (TASK_PENDING, retry_count, err, now, now, task_id, TASK_PROCESSING),
                )
                reaped += 1
        if reaped:
            logger.warning("reaped expired leases | count=%s", reaped)
        return reaped

    # --- inspection ---

    def get(self, task_id: int) -> Optional[EnrichmentTask]:
        with self._lock:
            row = self.conn.execute("SELECT * FROM enrichment_tasks WHERE id = ?", (task_id,)).fetchone()
        return self._task_from_row(row) if row else None

    def dead_letters(self, limit: int = 100) -> List[dict]:
        with self._lock:
            rows = self.conn.execute(
                """
                SELECT * FROM enrichment_tasks WHERE status = ?
                ORDER BY dead_lettered_at DESC, id DESC LIMIT ?
                """,
                (TASK_FAILED, int(limit)),
            ).fetchall()
        out = []
        for r in rows:
            rec = dict(r)
            rec["providers_to_try"] = json.loads(rec.get("providers_to_try") or "[]")
            out.append(rec)
        return out

    def counts(self) -> Dict[str, int]:
        out = {s: 0 for s in TASK_STATUSES}
        with self._lock:
            for row in self.conn.execute("SELECT status, COUNT(*) AS n FROM enrichment_tasks GROUP BY status"):
                out[row["status"]] = int(row["n"])
        return out
