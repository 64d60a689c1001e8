"""
services/rate_limiter.py — Fixed-window rate limiting decisions.

Algorithm (fixed window, not sliding):
  1. key = SHA-256 of "address:METHOD:path" (base64url). Raw addresses and
     paths are never stored, only these opaque keys.
  2-3. The store counts the request in the current window, starting a new
     window when none exists or the old one has expired (expiry <= now).
  4. count > limit  -> deny, retry_after = ceil((expiry - now) / 1000) >= 0.
  5. otherwise      -> allow.

Exactly `limit` requests per window are allowed; request limit + 1 is denied.

No Flask imports. The clock is injectable (milliseconds) so windows can be
driven deterministically in tests.
"""

from __future__ import annotations

import base64
import hashlib
import math
import time
from dataclasses import dataclass
from typing import Callable

from taskhub.app.services.window_store import WindowStore


def _now_ms() -> float:
    return time.time() * 1000


@dataclass(frozen=True)
class RateLimitPolicy:
    limit: int = 100
    window_ms: int = 60_000

    def __post_init__(self) -> None:
        if self.limit < 1:
            raise ValueError("limit must be a positive integer")
        if self.window_ms < 1:
            raise ValueError("window_ms must be a positive integer")


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    count: int
    limit: int
    reset_at_ms: float
    retry_after: int  # whole seconds; 0 when allowed

    @property
    def remaining(self) -> int:
        return max(0, self.limit - self.count)


def derive_key(client_address: str | None, method: str, path: str) -> str:
    """Irreversible lookup key for one (address, method, path) triple."""
    raw = f"{client_address or 'unknown'}:{method.upper()}:{path}"
    digest = hashlib.sha256(raw.encode("utf-8")).digest()
    return base64.urlsafe_b64encode(digest).rstrip(b"=").decode("ascii")


class FixedWindowRateLimiter:

    def __init__(
            self,
            store: WindowStore,
            default_policy: RateLimitPolicy | None = None,
            clock: Callable[[], float] = _now_ms,
    ) -> None:
        self.store = store
        self.default_policy = default_policy or RateLimitPolicy()
        self._clock = clock

    def check(
            self,
            client_address: str | None,
            method: str,
            path: str,
            policy: RateLimitPolicy | None = None,
    ) -> RateLimitDecision:
        policy = policy or self.default_policy
        now = self._clock()
        key = derive_key(client_address, method, path)

        record = self.store.hit(key, policy.window_ms, now)

        if record.count > policy.limit:
            retry_after = max(0, math.ceil((record.reset_at_ms - now) / 1000))
            return RateLimitDecision(
                allowed=False,
                count=record.count,
                limit=policy.limit,
                reset_at_ms=record.reset_at_ms,
                retry_after=retry_after,
            )

        return RateLimitDecision(
            allowed=True,
            count=record.count,
            limit=policy.limit,
            reset_at_ms=record.reset_at_ms,
            retry_after=0,
        )
