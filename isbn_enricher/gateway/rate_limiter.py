from __future__ import annotations

import logging
import time
from typing import Callable, Dict, Optional

from isbn_enricher.errors import KVStoreError
from isbn_enricher.integrations.kv_store import KVStore

logger = logging.getLogger(__name__)

# Minimum seconds between calls, per provider
DEFAULT_MIN_DELAYS: Dict[str, float] = {
    "isbndb": 0.35,
    "openlibrary": 3.0,
    "google_books": 0.2,
    "archive_org": 1.0,
    "wikidata": 0.5,
}
DEFAULT_FALLBACK_DELAY = 1.0


class RateLimiter:
    """
    Minimum inter-call delay per provider, shared through the KV store.

    The last-call timestamp is written with a TTL a little above the delay, so
    idle providers clean themselves up. Concurrent writers race; last writer
    wins.
    """

    def __init__(
        self,
        kv: KVStore,
        min_delays: Optional[Dict[str, float]] = None,
        *,
        default_delay: float = DEFAULT_FALLBACK_DELAY,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.kv = kv
        self.min_delays = dict(DEFAULT_MIN_DELAYS)
        self.min_delays.update(min_delays or {})
        self.default_delay = float(default_delay)
        self._clock = clock
        self._sleep = sleep

    @staticmethod
    def key(provider_key: str) -> str:
        return f"ratelimit:{provider_key}"

    def min_delay(self, provider_key: str) -> float:
        return float(self.min_delays.get(provider_key, self.default_delay))

    def acquire(self, provider_key: str) -> float:
        """Block until the provider's delay has elapsed. Returns seconds waited."""
        delay = self.min_delay(provider_key)
        if delay <= 0:
            return 0.0
        key = self.key(provider_key)
        waited = 0.0
        try:
            raw = self.kv.get(key)
            if raw is not None:
                elapsed = self._clock() - float(raw)
                if 0 <= elapsed < delay:
                    waited = delay - elapsed
                    logger.debug("rate limit wait | provider=%s | wait_s=%.3f", provider_key, waited)
                    self._sleep(waited)
            self.kv.set(key, repr(self._clock()), ttl_s=max(1.0, delay + 1.0))
        except (KVStoreError, ValueError) as e:
            logger.warning("rate limiter degraded | provider=%s | err=%s (proceeding without delay)", provider_key, e)
        return waited
