from __future__ import annotations

import logging
import threading
import time
from typing import Callable, Dict, Optional, Tuple

import redis

from isbn_enricher.errors import KVStoreError

logger = logging.getLogger(__name__)


class KVStore:
    """
    Shared coordination store: get / put-with-ttl / atomic increment.

    Rate-limit timestamps, quota counters, circuit state and negative caches
    all live here so that every worker process sees the same numbers.
    """

    def get(self, key: str) -> Optional[str]:
        raise NotImplementedError

    def set(self, key: str, value: str, ttl_s: Optional[float] = None) -> None:
        raise NotImplementedError

    def incr(self, key: str, amount: int = 1, ttl_s: Optional[float] = None) -> int:
        raise NotImplementedError

    def delete(self, key: str) -> None:
        raise NotImplementedError


class MemoryKVStore(KVStore):
    """In-process store for single-worker runs and tests."""

    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        self._lock = threading.Lock()
        self._data: Dict[str, Tuple[str, Optional[float]]] = {}
        self._clock = clock

    def _live(self, key: str) -> Optional[str]:
        item = self._data.get(key)
        if item is None:
            return None
        value, expires_at = item
        if expires_at is not None and expires_at <= self._clock():
            del self._data[key]
            return None
        return value

    def _expiry(self, ttl_s: Optional[float]) -> Optional[float]:
        if ttl_s is None or ttl_s <= 0:
            return None
        return self._clock() + float(ttl_s)

    def get(self, key: str) -> Optional[str]:
        with self._lock:
            return self._live(key)

    def set(self, key: str, value: str, ttl_s: Optional[float] = None) -> None:
        with self._lock:
            self._data[key] = (str(value), self._expiry(ttl_s))

    def incr(self, key: str, amount: int = 1, ttl_s: Optional[float] = None) -> int:
        with self._lock:
            cur = self._live(key)
            try:
                val = int(cur or 0) + int(amount)
            except ValueError as e:
                raise KVStoreError(f"value at {key} is not an integer") from e
            expires_at = self._data[key][1] if cur is not None else self._expiry(ttl_s)
            self._data[key] = (str(val), expires_at)
            return val

    def delete(self, key: str) -> None:
        with self._lock:
            self._data.pop(key, None)

    def size(self) -> int:
        with self._lock:
            return len(self._data)


class RedisKVStore(KVStore):
    def __init__(self, client: "redis.Redis") -> None:
        self._client = client

    @classmethod
    def from_url(cls, url: str) -> "RedisKVStore":
        return cls(redis.from_url(url, decode_responses=True))

    def get(self, key: str) -> Optional[str]:
        try:
            val = self._client.get(key)
        except redis.RedisError as e:
            raise KVStoreError(f"get failed | key={key} | err={e}") from e
        return None if val is None else str(val)

    def set(self, key: str, value: str, ttl_s: Optional[float] = None) -> None:
        try:
            if ttl_s and ttl_s > 0:
                self._client.set(key, value, px=int(float(ttl_s) * 1000))
            else:
                self._client.set(key, value)
        except redis.RedisError as e:
            raise KVStoreError(f"set failed | key={key} | err={e}") from e

    def incr(self, key: str, amount: int = 1, ttl_s: Optional[float] = None) -> int:
        try:
            pipe = self._client.pipeline()
            if ttl_s and ttl_s > 0:
                # Seed with NX so the first expiry is kept and never pushed forward.
                pipe.set(key, 0, ex=max(1, int(ttl_s)), nx=True)
            pipe.incrby(key, int(amount))
            results = pipe.execute()
        except redis.RedisError as e:
            raise KVStoreError(f"incr failed | key={key} | err={e}") from e
        return int(results[-1])

    def delete(self, key: str) -> None:
        try:
            self._client.delete(key)
        except redis.RedisError as e:
            raise KVStoreError(f"delete failed | key={key} | err={e}") from e


def make_kv_store(redis_url: Optional[str]) -> KVStore:
    if redis_url:
        logger.info("kv store | backend=redis | url=%s", redis_url.split("@")[-1])
        return RedisKVStore.from_url(redis_url)
    logger.warning("kv store | backend=memory | REDIS_URL not set, coordination is process-local")
    return MemoryKVStore()
