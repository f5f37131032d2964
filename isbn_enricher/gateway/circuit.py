from __future__ import annotations

import json
import logging
import time
from dataclasses import asdict, replace
from typing import Callable

from isbn_enricher.core.models import (
    CIRCUIT_CLOSED,
    CIRCUIT_HALF_OPEN,
    CIRCUIT_OPEN,
    CircuitState,
)
from isbn_enricher.errors import KVStoreError
from isbn_enricher.integrations.kv_store import KVStore

logger = logging.getLogger(__name__)


class CircuitBreaker:
    """
    closed -> open after `failure_threshold` consecutive failures
    open -> half_open once `cooldown_s` has passed
    half_open -> closed after `success_threshold` successes, or back to open on any failure

    State is kept in the shared store so every worker skips a dead provider.
    """

    def __init__(
        self,
        kv: KVStore,
        name: str,
        *,
        failure_threshold: int = 5,
        cooldown_s: float = 60.0,
        success_threshold: int = 2,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.kv = kv
        self.name = name
        self.failure_threshold = max(1, int(failure_threshold))
        self.cooldown_s = float(cooldown_s)
        self.success_threshold = max(1, int(success_threshold))
        self._clock = clock

    @property
    def key(self) -> str:
        return f"circuit:{self.name}"

    def state(self) -> CircuitState:
        try:
            raw = self.kv.get(self.key)
        except KVStoreError as e:
            logger.warning("circuit read failed | name=%s | err=%s (treating as closed)", self.name, e)
            return CircuitState()
        if not raw:
            return CircuitState()
        try:
            return CircuitState(**json.loads(raw))
        except (TypeError, ValueError):
            logger.warning("circuit state unreadable | name=%s | raw=%r (resetting)", self.name, raw)
            return CircuitState()

    def _save(self, st: CircuitState) -> None:
        try:
            self.kv.set(self.key, json.dumps(asdict(st)), ttl_s=max(3600.0, self.cooldown_s * 10))
        except KVStoreError as e:
            logger.warning("circuit write failed | name=%s | err=%s", self.name, e)

    def allow_request(self) -> bool:
        st = self.state()
        if st.state == CIRCUIT_CLOSED:
            return True
        if st.state == CIRCUIT_OPEN:
            opened_at = st.opened_at or 0.0
            if self._clock() - opened_at >= self.cooldown_s:
                logger.info("circuit half-open | name=%s", self.name)
                self._save(replace(st, state=CIRCUIT_HALF_OPEN, successes=0))
                return True
            return False
        return True

    def record_success(self) -> None:
        st = self.state()
        if st.state == CIRCUIT_HALF_OPEN:
            successes = st.successes + 1
            if successes >= self.success_threshold:
                logger.info("circuit closed | name=%s", self.name)
                self._save(CircuitState())
            else:
                self._save(replace(st, successes=successes))
            return
        if st.failures:
            self._save(CircuitState())

    def record_failure(self) -> None:
        st = self.state()
        now = self._clock()
        if st.state == CIRCUIT_HALF_OPEN:
            logger.warning("circuit re-opened | name=%s", self.name)
            self._save(CircuitState(state=CIRCUIT_OPEN, failures=st.failures + 1, opened_at=now))
            return
        failures = st.failures + 1
        if st.state == CIRCUIT_CLOSED and failures >= self.failure_threshold:
            logger.warning("circuit opened | name=%s | failures=%s | cooldown_s=%s", self.name, failures, self.cooldown_s)
            self._save(CircuitState(state=CIRCUIT_OPEN, failures=failures, opened_at=now))
            return
        self._save(replace(st, failures=failures))
