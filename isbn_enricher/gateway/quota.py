from __future__ import annotations

import logging
import time
from datetime import datetime, timezone
from typing import Callable, Union

from isbn_enricher.core.models import PRIORITY_MAP, QuotaStatus, normalize_priority
from isbn_enricher.errors import KVStoreError
from isbn_enricher.integrations.kv_store import KVStore

logger = logging.getLogger(__name__)

ISBNDB_DAILY_QUOTA = 15000
DEFAULT_SOFT_RATIO = 0.70
DEFAULT_HARD_RATIO = 0.85
_COUNTER_TTL_S = 2 * 24 * 3600

# At the soft threshold, anything this urgent or less is treated as background work.
SOFT_BLOCK_PRIORITY = PRIORITY_MAP["medium"]


def utc_day(ts: float) -> str:
    return datetime.fromtimestamp(ts, tz=timezone.utc).strftime("%Y-%m-%d")


class QuotaTracker:
    """
    Day-scoped call counter for a metered provider.

    The counter key embeds the UTC date, so the count resets at midnight UTC
    without a separate reset job. Increments use the store's atomic add.
    """

    def __init__(
        self,
        kv: KVStore,
        provider: str = "isbndb",
        daily_limit: int = ISBNDB_DAILY_QUOTA,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.kv = kv
        self.provider = provider
        self.daily_limit = max(1, int(daily_limit))
        self._clock = clock

    def day(self) -> str:
        return utc_day(self._clock())

    def key(self) -> str:
        return f"quota:{self.provider}:{self.day()}"

    def used(self) -> int:
        """Raises KVStoreError; callers decide how to fail."""
        raw = self.kv.get(self.key())
        try:
            return int(raw or 0)
        except ValueError as e:
            raise KVStoreError(f"corrupt quota counter at {self.key()}: {raw!r}") from e

    def record_call(self, n: int = 1) -> int:
        if n <= 0:
            return 0
        try:
            total = self.kv.incr(self.key(), int(n), ttl_s=_COUNTER_TTL_S)
        except KVStoreError as e:
            # Losing one increment is preferable to failing a call that already happened.
            logger.error("quota record failed | provider=%s | n=%s | err=%s", self.provider, n, e)
            return 0
        logger.debug("quota recorded | provider=%s | n=%s | used=%s", self.provider, n, total)
        return total

    def mark_exhausted(self) -> None:
        """Provider said we are out; pin the counter to the daily limit."""
        try:
            used = self.used()
            if used < self.daily_limit:
                self.kv.incr(self.key(), self.daily_limit - used, ttl_s=_COUNTER_TTL_S)
            logger.error("quota marked exhausted | provider=%s | day=%s", self.provider, self.day())
        except KVStoreError as e:
            logger.error("quota mark_exhausted failed | provider=%s | err=%s", self.provider, e)


class QuotaGate:
    """
    Soft/hard thresholds over a QuotaTracker.

    soft: blocks medium, low and background priorities.
    hard: blocks every priority.
    """

    def __init__(
        self,
        tracker: QuotaTracker,
        *,
        soft_ratio: float = DEFAULT_SOFT_RATIO,
        hard_ratio: float = DEFAULT_HARD_RATIO,
    ) -> None:
        if not 0 < soft_ratio <= hard_ratio <= 1:
            raise ValueError(f"invalid quota ratios: soft={soft_ratio} hard={hard_ratio}")
        self.tracker = tracker
        self.soft_limit = int(tracker.daily_limit * soft_ratio)
        self.hard_limit = int(tracker.daily_limit * hard_ratio)

    @property
    def provider(self) -> str:
        return self.tracker.provider

    def can_call_primary(self, priority: Union[str, int, None] = "normal") -> QuotaStatus:
        prio = normalize_priority(priority)
        day = self.tracker.day()
        try:
            used = self.tracker.used()
        except KVStoreError as e:
            logger.error("quota check failed | provider=%s | err=%s (failing closed)", self.provider, e)
            return QuotaStatus(
                provider=self.provider,
                day=day,
                used=-1,
                daily_limit=self.tracker.daily_limit,
                soft_limit=self.soft_limit,
                hard_limit=self.hard_limit,
                allowed=False,
                remaining=0,
            )

        remaining = max(0, self.hard_limit - used)
        if used >= self.hard_limit:
            allowed = False
        elif used >= self.soft_limit:
            allowed = prio < SOFT_BLOCK_PRIORITY
        else:
            allowed = True
        if not allowed:
            logger.debug(
                "primary denied | provider=%s | priority=%s | used=%s | soft=%s | hard=%s",
                self.provider,
                prio,
                used,
                self.soft_limit,
                self.hard_limit,
            )
        return QuotaStatus(
            provider=self.provider,
            day=day,
            used=used,
            daily_limit=self.tracker.daily_limit,
            soft_limit=self.soft_limit,
            hard_limit=self.hard_limit,
            allowed=allowed,
            remaining=remaining,
        )

    def record_call(self, count: int = 1) -> int:
        return self.tracker.record_call(count)

    def safe_batch_size(
        self,
        max_batch: int,
        priority: Union[str, int, None] = "background",
        *,
        per_call: int = 1,
    ) -> int:
        """
        Items a bulk job may plan for without crossing the threshold its priority
        stops at. `per_call` is how many items one primary call covers.
        """
        status = self.can_call_primary(priority)
        if not status.allowed:
            return 0
        ceiling = self.soft_limit if normalize_priority(priority) >= SOFT_BLOCK_PRIORITY else self.hard_limit
        calls = max(0, ceiling - status.used)
        return max(0, min(int(max_batch), calls * max(1, int(per_call))))
