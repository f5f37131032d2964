from __future__ import annotations

import threading
import time
from typing import Optional

from isbn_enricher.core.models import StatsSnapshot


class StatsTracker:
    """
    Thread-safe counters for the enrichment consumer.

    Rule: All mutation is done under one lock.
    Call snapshot() to get a consistent StatsSnapshot for printing/logging.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._processed = 0
        self._completed = 0
        self._retried = 0
        self._dead_lettered = 0
        self._primary_calls = 0
        self._fallback_hits = 0
        self._errors = 0
        self._start_ts: Optional[float] = None

    def _touch(self) -> None:
        if self._start_ts is None:
            self._start_ts = time.time()

    def inc_processed(self, n: int = 1) -> None:
        with self._lock:
            self._touch()
            self._processed += int(n)

    def inc_completed(self, n: int = 1) -> None:
        with self._lock:
            self._completed += int(n)

    def inc_retried(self, n: int = 1) -> None:
        with self._lock:
            self._retried += int(n)

    def inc_dead_lettered(self, n: int = 1) -> None:
        with self._lock:
            self._dead_lettered += int(n)

    def inc_primary_calls(self, n: int = 1) -> None:
        with self._lock:
            self._primary_calls += int(n)

    def inc_fallback_hits(self, n: int = 1) -> None:
        with self._lock:
            self._fallback_hits += int(n)

    def inc_errors(self, n: int = 1) -> None:
        with self._lock:
            self._errors += int(n)

    def reset(self) -> None:
        with self._lock:
            self._processed = 0
            self._completed = 0
            self._retried = 0
            self._dead_lettered = 0
            self._primary_calls = 0
            self._fallback_hits = 0
            self._errors = 0
            self._start_ts = None

    def snapshot(self) -> StatsSnapshot:
        with self._lock:
            return StatsSnapshot(
                processed=self._processed,
                completed=self._completed,
                retried=self._retried,
                dead_lettered=self._dead_lettered,
                primary_calls=self._primary_calls,
                fallback_hits=self._fallback_hits,
                errors=self._errors,
            )

    def snapshot_dict(self) -> dict:
        snap = self.snapshot()
        return {
            "processed": snap.processed,
            "completed": snap.completed,
            "retried": snap.retried,
            "dead_lettered": snap.dead_lettered,
            "primary_calls": snap.primary_calls,
            "fallback_hits": snap.fallback_hits,
            "errors": snap.errors,
        }

    def snapshot_rates(self) -> dict:
        snap = self.snapshot()
        with self._lock:
            start_ts = self._start_ts
        if start_ts is None:
            return {"seconds": 0.0, "tasks_per_sec": 0.0}
        elapsed = max(0.0001, time.time() - start_ts)
        return {"seconds": elapsed, "tasks_per_sec": snap.processed / elapsed}
