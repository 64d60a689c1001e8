"""
middleware/auth_middleware.py — JWT authentication decorator.

The @require_auth decorator:
  1. Reads the Authorization header (expected: "Bearer <token>")
  2. Hands the token to auth_service.validate_access_token (signature + expiry)
  3. Attaches the resulting Caller to flask.g.caller for the duration of the request
  4. Raises the appropriate 401 error if any step fails

Responsibility boundary:
  - Authentication only. Ownership checks belong in the service layer.
  - Routes read g.caller and pass it to services as an explicit argument;
    services never import flask.g.

Error codes:
  TOKEN_MISSING  (401) — no Authorization header
  TOKEN_INVALID  (401) — malformed header, invalid signature, or bad payload
  TOKEN_EXPIRED  (401) — valid token but exp claim is in the past
"""

from __future__ import annotations

import functools
from typing import Callable

from flask import g, request

from taskhub.app.errors import AppError, ErrorCode
from taskhub.app.services import auth_service


def require_auth(f: Callable) -> Callable:
    """
    Route decorator that enforces JWT authentication.

    Usage:
        @tasks_bp.route("/")
        @rate_limit()
        @require_auth
        def list_tasks():
            caller = g.caller
            ...
    """
    @functools.wraps(f)
    def decorated(*args, **kwargs):
        _authenticate_request()
        return f(*args, **kwargs)

    return decorated


def _authenticate_request() -> None:
    """
    Performs the full authentication sequence and sets flask.g.caller.

    Raises AppError on any failure; the global error handler renders it.
    """
    auth_header = request.headers.get("Authorization", "")

    if not auth_header:
        raise AppError(
            ErrorCode.TOKEN_MISSING,
            "Authentication required. Provide a Bearer token in the Authorization header.",
            401,
        )

    parts = auth_header.split()
    if len(parts) != 2 or parts[0].lower() != "bearer":
        raise AppError(
            ErrorCode.TOKEN_INVALID,
            "Authorization header must be in the format: Bearer <token>.",
            401,
        )

    g.caller = auth_service.validate_access_token(parts[1])
