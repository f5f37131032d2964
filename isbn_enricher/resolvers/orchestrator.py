from __future__ import annotations

import logging
import time
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from dataclasses import replace
from typing import Dict, List, Optional, Sequence

from isbn_enricher.core.models import ResolutionResult
from isbn_enricher.core.resolver_stats import ResolverStats
from isbn_enricher.gateway.circuit import CircuitBreaker
from isbn_enricher.resolvers.base import Resolver

logger = logging.getLogger(__name__)

DEFAULT_RESOLVER_TIMEOUT_S = 15.0


class ResolutionOrchestrator:
    """
    Ordered resolver chain. Each resolver runs on a pool thread bounded by
    `timeout_s`; a timed-out call is abandoned (not interrupted) and the chain
    moves on. First validated hit wins. Worst case is sum(timeouts).

    Resolver failures never escape find_isbn: the only failure mode a caller
    sees is None.
    """

    def __init__(
        self,
        resolvers: Sequence[Resolver],
        *,
        timeout_s: float = DEFAULT_RESOLVER_TIMEOUT_S,
        breakers: Optional[Dict[str, CircuitBreaker]] = None,
        stats: Optional[ResolverStats] = None,
        max_workers: Optional[int] = None,
    ) -> None:
        self.resolvers: List[Resolver] = list(resolvers)
        self.timeout_s = float(timeout_s)
        self.breakers = dict(breakers or {})
        self.stats = stats or ResolverStats()
        workers = max_workers or max(4, 2 * len(self.resolvers))
        self._executor = ThreadPoolExecutor(max_workers=workers, thread_name_prefix="resolver")

    def resolver_chain(self) -> List[dict]:
        out = []
        for i, r in enumerate(self.resolvers, start=1):
            row = {"name": r.name, "order": i}
            breaker = self.breakers.get(r.name)
            if breaker is not None:
                row["circuit"] = breaker.state().state
            out.append(row)
        return out

    def close(self) -> None:
        self._executor.shutdown(wait=False, cancel_futures=True)

    def __enter__(self) -> "ResolutionOrchestrator":
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    def _call(self, resolver: Resolver, title: str, author: str) -> Optional[ResolutionResult]:
        breaker = self.breakers.get(resolver.name)
        if breaker is not None and not breaker.allow_request():
            logger.debug("resolver skipped | resolver=%s | circuit=open", resolver.name)
            self.stats.record(resolver.name, "skipped")
            return None

        start = time.monotonic()
        fut = self._executor.submit(resolver.resolve, title, author)
        try:
            result = fut.result(timeout=self.timeout_s)
        except FutureTimeout:
            fut.cancel()
            elapsed = time.monotonic() - start
            logger.warning("resolver timeout | resolver=%s | timeout_s=%s | title=%r", resolver.name, self.timeout_s, title)
            self.stats.record(resolver.name, "timeout", elapsed)
            if breaker is not None:
                breaker.record_failure()
            return None
        except Exception as e:
            elapsed = time.monotonic() - start
            logger.warning("resolver error | resolver=%s | title=%r | err=%r", resolver.name, title, e)
            self.stats.record(resolver.name, "error", elapsed)
            if breaker is not None:
                breaker.record_failure()
            return None

        elapsed = time.monotonic() - start
        self.stats.record(resolver.name, "hit" if result else "miss", elapsed)
        if breaker is not None:
            breaker.record_success()
        return result

    def find_isbn(self, title: str, author: str) -> Optional[ResolutionResult]:
        title = (title or "").strip()
        author = (author or "").strip()
        if not title or not author:
            logger.debug("find_isbn skipped | missing title or author | title=%r | author=%r", title, author)
            return None

        for resolver in self.resolvers:
            result = self._call(resolver, title, author)
            if result is not None:
                if result.source != resolver.name:
                    result = replace(result, source=resolver.name)
                logger.info(
                    "isbn found | resolver=%s | isbn=%s | confidence=%s | title=%r",
                    resolver.name,
                    result.isbn,
                    result.confidence,
                    title,
                )
                return result

        logger.info("isbn not found | resolvers=%s | title=%r | author=%r", len(self.resolvers), title, author)
        return None
