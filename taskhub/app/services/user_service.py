"""
services/user_service.py — User storage operations used by auth_service.

Responsibilities:
  - Lookup by email / id
  - Account creation (bcrypt password hash)
  - Refresh-token hash persistence and verification

Layer rules:
  - No flask.request, flask.g, or HTTP status codes.
  - current_app.config is read only for BCRYPT_LOG_ROUNDS.
  - Commits are the route's responsibility; only flush here.

Refresh-token storage:
  - Only the SHA-256 hex digest of the raw token is stored on the user row.
  - One column, one value: writing a new hash invalidates the previous token.
"""

from __future__ import annotations

import hashlib
import hmac

import bcrypt
from flask import current_app
from sqlalchemy import select, update
from sqlalchemy.orm import Session
from sqlalchemy.orm.util import identity_key

from taskhub.app.models.user import Role, User


def hash_refresh_token(raw_token: str) -> str:
    """SHA-256 hex digest of a raw refresh token."""
    return hashlib.sha256(raw_token.encode("utf-8")).hexdigest()


def hash_password(password: str) -> str:
    rounds = current_app.config.get("BCRYPT_LOG_ROUNDS", 12)
    return bcrypt.hashpw(
        password.encode("utf-8"),
        bcrypt.gensalt(rounds=rounds),
    ).decode("utf-8")


def check_password(password: str, password_hash: str) -> bool:
    encoded = password.encode("utf-8")
    if len(encoded) > 72:
        # Longer passwords are refused at registration and cannot match.
        return False
    # bcrypt.checkpw compares in constant time.
    return bcrypt.checkpw(
        encoded,
        password_hash.encode("utf-8"),
    )


def find_by_email(email: str, session: Session) -> User | None:
    return session.execute(
        select(User).where(User.email == email.strip().lower())
    ).scalar_one_or_none()


def find_by_id(user_id: int, session: Session) -> User | None:
    return session.get(User, user_id)


def create_user(
        email: str,
        password: str,
        name: str,
        session: Session,
        role: Role = Role.USER,
) -> User:
    """
    Inserts a new user with a bcrypt password hash.

    Uniqueness is checked by the caller; the UNIQUE index on users.email is
    the last line of defence and surfaces as IntegrityError on flush.
    """
    user = User(
        email=email.strip().lower(),
        name=name.strip(),
        password_hash=hash_password(password),
        role=role,
    )
    session.add(user)
    session.flush()  # populate user.id before tokens are issued
    return user


def set_refresh_token_hash(
        user_id: int,
        token_hash: str | None,
        session: Session,
        expected_hash: str | None = None,
) -> bool:
    """
    Overwrites the stored refresh-token hash for a user.

    When `expected_hash` is given the write only happens if the row still
    holds that hash (compare-and-swap). Two concurrent rotations presenting
    the same token therefore produce exactly one winner.

    Returns True if a row was updated.
    """
    stmt = update(User).where(User.id == user_id)
    if expected_hash is not None:
        stmt = stmt.where(User.refresh_token_hash == expected_hash)
    stmt = stmt.values(refresh_token_hash=token_hash).execution_options(
        synchronize_session=False,
    )
    result = session.execute(stmt)

    # The UPDATE bypassed the identity map; drop any cached copy of the column.
    cached = session.identity_map.get(identity_key(User, user_id))
    if cached is not None:
        session.expire(cached, ["refresh_token_hash"])

    return result.rowcount == 1


def is_refresh_token_valid(user: User | None, provided_token: str) -> bool:
    """
    Constant-time comparison of a presented refresh token with the stored hash.

    False when the user is missing or has no active session.
    """
    if user is None or not user.refresh_token_hash or not provided_token:
        return False
    return hmac.compare_digest(
        hash_refresh_token(provided_token),
        user.refresh_token_hash,
    )
