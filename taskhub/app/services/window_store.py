"""
services/window_store.py — Fixed-window counter storage for the rate limiter.

Two backends behind one interface:
  - InMemoryWindowStore: dict guarded by a threading.Lock, for a single
    process. Expired windows are evicted by a periodic sweep so the map
    stays bounded by the number of keys active within one window.
  - RedisWindowStore: shared counters in Redis, so every worker process
    sees the same windows. One Lua script keeps INCR + expiry atomic.

Both perform the read-check-increment-store sequence as one atomic step
per key. Concurrent requests on the same key cannot undercount.

Selected by RATE_LIMIT_BACKEND through build_window_store().
"""

from __future__ import annotations

import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class WindowRecord:
    count: int
    reset_at_ms: float  # window expiry; the window is over once now >= reset_at_ms


class WindowStore(ABC):

    @abstractmethod
    def hit(self, key: str, window_ms: int, now_ms: float) -> WindowRecord:
        """
        Counts one request against `key` and returns the updated window.

        A missing window, or one whose expiry is at or before `now_ms`, is
        replaced by a fresh window ending at now_ms + window_ms.
        """

    @abstractmethod
    def clear(self) -> None:
        """Drops every window."""


class InMemoryWindowStore(WindowStore):

    def __init__(self, sweep_interval_ms: int = 60_000) -> None:
        self._windows: dict[str, WindowRecord] = {}
        self._lock = threading.Lock()
        self._sweep_interval_ms = sweep_interval_ms
        self._next_sweep_at: float | None = None

    def hit(self, key: str, window_ms: int, now_ms: float) -> WindowRecord:
        with self._lock:
            self._maybe_sweep(now_ms)

            record = self._windows.get(key)
            if record is None or record.reset_at_ms <= now_ms:
                record = WindowRecord(count=0, reset_at_ms=now_ms + window_ms)

            record = WindowRecord(count=record.count + 1, reset_at_ms=record.reset_at_ms)
            self._windows[key] = record
            return record

    def sweep(self, now_ms: float) -> int:
        """Evicts expired windows. Returns the number removed."""
        with self._lock:
            return self._sweep_locked(now_ms)

    def clear(self) -> None:
        with self._lock:
            self._windows.clear()
            self._next_sweep_at = None

    def __len__(self) -> int:
        with self._lock:
            return len(self._windows)

    def _maybe_sweep(self, now_ms: float) -> None:
        # Caller holds the lock.
        if self._sweep_interval_ms <= 0:
            return
        if self._next_sweep_at is None:
            self._next_sweep_at = now_ms + self._sweep_interval_ms
            return
        if now_ms >= self._next_sweep_at:
            self._sweep_locked(now_ms)
            self._next_sweep_at = now_ms + self._sweep_interval_ms

    def _sweep_locked(self, now_ms: float) -> int:
        expired = [k for k, r in self._windows.items() if r.reset_at_ms <= now_ms]
        for key in expired:
            del self._windows[key]
        if expired:
            logger.debug("rate limit sweep evicted %d windows", len(expired))
        return len(expired)


class RedisWindowStore(WindowStore):
    """Fixed windows kept as Redis counters with a millisecond TTL."""

    # Atomic: increment, start the expiry on the first hit, report remaining TTL.
    # A key that somehow lost its TTL is given one so it cannot live forever.
    _FIXED_WINDOW_SCRIPT = """
local count = redis.call('INCR', KEYS[1])
if count == 1 then
  redis.call('PEXPIRE', KEYS[1], ARGV[1])
end
local ttl = redis.call('PTTL', KEYS[1])
if ttl < 0 then
  redis.call('PEXPIRE', KEYS[1], ARGV[1])
  ttl = tonumber(ARGV[1])
end
return {count, ttl}
"""

    def __init__(self, client, prefix: str = "ratelimit:") -> None:
        self.client = client
        self.prefix = prefix
        self._script = client.register_script(self._FIXED_WINDOW_SCRIPT)

    def hit(self, key: str, window_ms: int, now_ms: float) -> WindowRecord:
        count, ttl_ms = self._script(keys=[self.prefix + key], args=[int(window_ms)])
        return WindowRecord(count=int(count), reset_at_ms=now_ms + int(ttl_ms))

    def clear(self) -> None:
        keys = list(self.client.scan_iter(match=f"{self.prefix}*"))
        if keys:
            self.client.delete(*keys)


def build_window_store(config) -> WindowStore:
    """Creates the store named by config["RATE_LIMIT_BACKEND"]."""
    backend = (config.get("RATE_LIMIT_BACKEND") or "memory").lower()

    if backend == "memory":
        return InMemoryWindowStore(
            sweep_interval_ms=config.get("RATE_LIMIT_SWEEP_INTERVAL_MS", 60_000),
        )

    if backend == "redis":
        from redis import Redis

        client = Redis.from_url(config["REDIS_URL"])
        return RedisWindowStore(client, prefix=config.get("RATE_LIMIT_KEY_PREFIX", "ratelimit:"))

    raise ValueError(f"Unknown RATE_LIMIT_BACKEND: {backend!r}")
