"""
extensions.py — Flask extension singletons.

Initialises SQLAlchemy as a module-level object so it can be imported
anywhere without creating circular dependencies.

Pattern:
    1. Create the extension object here (no app attached yet).
    2. Call init_app(app) inside the app factory in app/__init__.py.
    3. Import `db` from here wherever needed.

The rate limiter and the task event publisher are per-app objects built
from configuration; they live in app.extensions under the keys below and
are read back with the accessors in this module.
"""

from __future__ import annotations

from flask import current_app
from flask_sqlalchemy import SQLAlchemy

db = SQLAlchemy()

RATE_LIMITER_KEY = "taskhub.rate_limiter"
TASK_EVENTS_KEY = "taskhub.task_events"


def get_rate_limiter():
    """Returns the FixedWindowRateLimiter bound to the current app."""
    return current_app.extensions[RATE_LIMITER_KEY]


def get_task_events():
    """Returns the TaskEventPublisher bound to the current app."""
    return current_app.extensions[TASK_EVENTS_KEY]
