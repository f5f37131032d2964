from __future__ import annotations

import threading
from collections import defaultdict
from typing import Dict

OUTCOMES = ("hit", "miss", "error", "timeout", "skipped")


class ResolverStats:
    """Per-resolver outcome counters and latency, for the chain report."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._counts: Dict[str, Dict[str, int]] = defaultdict(lambda: defaultdict(int))
        self._lat_sum: Dict[str, float] = defaultdict(float)
        self._calls: Dict[str, int] = defaultdict(int)

    def record(self, resolver: str, outcome: str, elapsed_s: float = 0.0) -> None:
        with self._lock:
            self._counts[resolver][outcome] += 1
            if outcome != "skipped":
                self._calls[resolver] += 1
                self._lat_sum[resolver] += float(elapsed_s)

    def summary(self) -> dict:
        with self._lock:
            out = {}
            for key, counts in self._counts.items():
                calls = self._calls.get(key, 0)
                row = {o: counts.get(o, 0) for o in OUTCOMES}
                row["calls"] = calls
                row["hit_rate"] = (row["hit"] / calls) if calls else 0.0
                row["avg_latency_s"] = (self._lat_sum.get(key, 0.0) / calls) if calls else 0.0
                out[key] = row
            return out
