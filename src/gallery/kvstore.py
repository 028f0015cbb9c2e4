"""Shared key-value store behind the search cache and the search rate limiter."""

from __future__ import annotations

from abc import ABC, abstractmethod
import json
import logging
import threading
import time
from typing import Any, Callable, Dict, Optional, Tuple

import redis

from gallery.settings import Settings, settings as default_settings


logger = logging.getLogger(__name__)


class KeyValueStore(ABC):
    """Minimal TTL key-value contract with an atomic windowed counter."""

    @abstractmethod
    def get(self, key: str) -> Optional[Any]:
        """Return the stored JSON-compatible value, or None when absent/expired."""

    @abstractmethod
    def set(self, key: str, value: Any, ttl: int) -> None:
        """Store value for ttl seconds."""

    @abstractmethod
    def delete(self, key: str) -> None:
        """Remove key if present."""

    @abstractmethod
    def increment_with_expiry(self, key: str, window: int) -> Tuple[int, int]:
        """Atomically increment a counter.

        The expiry is fixed when the counter is created and is not extended by
        later increments. Returns ``(count, seconds_until_reset)``.
        """


class MemoryKeyValueStore(KeyValueStore):
    """Process-local store; enough for one API instance and for tests.

    Expired entries are swept on writes at most once per ``sweep_interval``
    seconds, so keys that are never read again do not accumulate.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic, sweep_interval: float = 60.0):
        self._clock = clock
        self._lock = threading.Lock()
        self._values: Dict[str, Tuple[str, float]] = {}
        self._counters: Dict[str, Tuple[int, float]] = {}
        self._sweep_interval = float(sweep_interval)
        self._next_sweep = clock() + self._sweep_interval

    def __len__(self) -> int:
        with self._lock:
            return len(self._values) + len(self._counters)

    def _sweep_expired(self, now: float) -> None:
        # Caller holds the lock.
        if now < self._next_sweep:
            return
        self._values = {key: entry for key, entry in self._values.items() if entry[1] > now}
        self._counters = {key: entry for key, entry in self._counters.items() if entry[1] > now}
        self._next_sweep = now + self._sweep_interval

    def get(self, key: str) -> Optional[Any]:
        now = self._clock()
        with self._lock:
            entry = self._values.get(key)
            if entry is None:
                return None
            raw, expires_at = entry
            if now >= expires_at:
                self._values.pop(key, None)
                return None
        return json.loads(raw)

    def set(self, key: str, value: Any, ttl: int) -> None:
        raw = json.dumps(value)
        now = self._clock()
        with self._lock:
            self._sweep_expired(now)
            self._values[key] = (raw, now + float(ttl))

    def delete(self, key: str) -> None:
        with self._lock:
            self._values.pop(key, None)
            self._counters.pop(key, None)

    def increment_with_expiry(self, key: str, window: int) -> Tuple[int, int]:
        now = self._clock()
        with self._lock:
            self._sweep_expired(now)
            count, expires_at = self._counters.get(key, (0, 0.0))
            if now >= expires_at:
                count, expires_at = 0, now + float(window)
            count += 1
            self._counters[key] = (count, expires_at)
        return count, max(1, int(round(expires_at - now)))


class RedisKeyValueStore(KeyValueStore):
    """Store shared across processes, values JSON-encoded."""

    def __init__(self, client: Optional[redis.Redis] = None, url: Optional[str] = None, prefix: str = "gallery:"):
        self.client = client or redis.Redis.from_url(url or default_settings.redis_url, decode_responses=True)
        self.prefix = prefix

    def _key(self, key: str) -> str:
        return f"{self.prefix}{key}"

    def get(self, key: str) -> Optional[Any]:
        raw = self.client.get(self._key(key))
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except (TypeError, ValueError):
            logger.warning("Discarding undecodable value at %s", key)
            return None

    def set(self, key: str, value: Any, ttl: int) -> None:
        self.client.set(self._key(key), json.dumps(value), ex=max(1, int(ttl)))

    def delete(self, key: str) -> None:
        self.client.delete(self._key(key))

    def increment_with_expiry(self, key: str, window: int) -> Tuple[int, int]:
        full_key = self._key(key)
        pipe = self.client.pipeline(transaction=True)
        # SET NX only creates the counter, so the first request fixes the expiry.
        pipe.set(full_key, 0, ex=max(1, int(window)), nx=True)
        pipe.incr(full_key)
        pipe.ttl(full_key)
        _, count, ttl = pipe.execute()
        if ttl is None or int(ttl) < 0:
            ttl = window
        return int(count), max(1, int(ttl))


def create_kv_store(source: Settings | None = None) -> KeyValueStore:
    s = source or default_settings
    backend = str(s.kv_backend or "memory").strip().lower()
    if backend == "memory":
        return MemoryKeyValueStore()
    if backend == "redis":
        return RedisKeyValueStore(url=s.redis_url)
    raise ValueError(f"Unsupported kv backend: {s.kv_backend}")
