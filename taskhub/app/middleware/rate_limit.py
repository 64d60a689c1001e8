"""
middleware/rate_limit.py — Per-route rate limiting decorator.

@rate_limit(limit=..., window_ms=...) counts the request against a fixed
window keyed by client address, HTTP method and request path. Arguments
left as None fall back to RATE_LIMIT_DEFAULT_LIMIT / _WINDOW_MS.

Place it above @require_auth so abusive traffic is turned away before any
token work happens.

Rejections raise RateLimitExceeded (429 RATE_LIMITED with retry_after);
they are expected traffic shaping and are logged at INFO only.
"""

from __future__ import annotations

import functools
import logging
from typing import Callable

from flask import current_app, request

from taskhub.app.errors import RateLimitExceeded
from taskhub.app.extensions import get_rate_limiter
from taskhub.app.services.rate_limiter import RateLimitPolicy

logger = logging.getLogger(__name__)


def rate_limit(limit: int | None = None, window_ms: int | None = None) -> Callable:

    def decorator(f: Callable) -> Callable:
        @functools.wraps(f)
        def decorated(*args, **kwargs):
            _enforce(limit, window_ms)
            return f(*args, **kwargs)

        return decorated

    return decorator


def _enforce(limit: int | None, window_ms: int | None) -> None:
    policy = RateLimitPolicy(
        limit=limit if limit is not None else current_app.config["RATE_LIMIT_DEFAULT_LIMIT"],
        window_ms=(
            window_ms if window_ms is not None
            else current_app.config["RATE_LIMIT_DEFAULT_WINDOW_MS"]
        ),
    )

    decision = get_rate_limiter().check(
        request.remote_addr,
        request.method,
        request.path,
        policy,
    )
    if not decision.allowed:
        logger.info(
            "rate limit exceeded: %s %s (retry_after=%ss)",
            request.method,
            request.path,
            decision.retry_after,
        )
        raise RateLimitExceeded(decision.retry_after)
