"""
services/auth_service.py — Credential and token business logic.

Responsibilities:
  - Registration and credential validation
  - JWT access token creation and stateless validation (HS256)
  - Opaque refresh token issuance and rotation

Layer rules:
  - No imports from routes or schemas
  - No use of flask.request, flask.g, or HTTP framework objects
  - current_app.config is used ONLY to read JWT settings and token sizes.

Token design:
  - Access token: JWT, HS256, short TTL. Claims: sub (user id as str),
    email, role, iat, exp, jti. Never checked against storage, so it stays
    valid until expiry even after rotation or logout.
  - Refresh token: random base64url string, returned to the client once.
    Only its SHA-256 hash is kept on the user row. Every login, registration
    and rotation overwrites that hash, so at most one refresh token per user
    is valid at any time and a rotated token is dead immediately.

Login failures:
  - Unknown email and wrong password produce the same code and message.
    The internal reason is logged at DEBUG only. An unknown email still pays
    for one bcrypt comparison so response time does not reveal existence.
"""

from __future__ import annotations

import functools
import logging
import secrets
from dataclasses import dataclass
from datetime import datetime, timezone

import bcrypt
import jwt
from flask import current_app
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from taskhub.app.errors import AppError, ErrorCode
from taskhub.app.models.user import Role, User
from taskhub.app.services import user_service

logger = logging.getLogger(__name__)

@functools.lru_cache(maxsize=4)
def _dummy_password_hash(rounds: int) -> str:
    """Hash compared against when the email is unknown. Same cost as real hashes."""
    return bcrypt.hashpw(secrets.token_urlsafe(16).encode("ascii"), bcrypt.gensalt(rounds=rounds)).decode("utf-8")


@dataclass(frozen=True)
class Caller:
    """Identity extracted from a verified access token."""

    user_id: int
    email: str
    role: str

    @property
    def is_admin(self) -> bool:
        return self.role == Role.ADMIN.value


# ── Private helpers ────────────────────────────────────────────────────────

def _invalid_credentials() -> AppError:
    return AppError(
        ErrorCode.INVALID_CREDENTIALS,
        "The email or password is incorrect.",
        401,
    )


def _duplicate_email() -> AppError:
    return AppError(
        ErrorCode.DUPLICATE_EMAIL,
        "An account with this email address already exists.",
        409,
        field="email",
    )


def _invalid_refresh_token() -> AppError:
    return AppError(
        ErrorCode.REFRESH_TOKEN_INVALID,
        "The refresh token is invalid or has already been used.",
        403,
    )


def _create_access_token(user: User) -> str:
    """
    Creates a signed JWT access token for `user`.
    TTL from current_app.config["JWT_ACCESS_TOKEN_EXPIRES"] (timedelta).
    """
    now = datetime.now(timezone.utc)
    expiry = now + current_app.config["JWT_ACCESS_TOKEN_EXPIRES"]
    payload = {
        "sub": str(user.id),
        "email": user.email,
        "role": user.role.value,
        "iat": now,
        "exp": expiry,
        # Guarantees each issued token is unique even if generated in the same second.
        "jti": secrets.token_hex(8),
    }
    return jwt.encode(
        payload,
        current_app.config["JWT_SECRET_KEY"],
        algorithm=current_app.config.get("JWT_ALGORITHM", "HS256"),
    )


def _generate_refresh_token() -> str:
    return secrets.token_urlsafe(current_app.config.get("REFRESH_TOKEN_BYTES", 48))


def _issue_token_pair(
        user: User,
        session: Session,
        expected_hash: str | None = None,
) -> dict:
    """
    Signs a new access token, generates a new refresh token and persists
    the refresh hash over whatever was stored before.

    With `expected_hash` the overwrite is conditional; losing the race
    means another rotation already consumed the presented token.
    """
    access_token = _create_access_token(user)
    refresh_token = _generate_refresh_token()

    stored = user_service.set_refresh_token_hash(
        user.id,
        user_service.hash_refresh_token(refresh_token),
        session,
        expected_hash=expected_hash,
    )
    if not stored:
        raise _invalid_refresh_token()

    return {
        "access_token": access_token,
        "refresh_token": refresh_token,
    }


def _build_user_dict(user: User) -> dict:
    """Serialises a User to a plain dict. Secrets never leave this module."""
    return {
        "id": user.id,
        "email": user.email,
        "name": user.name,
        "role": user.role.value,
    }


# ── Public service functions ───────────────────────────────────────────────

def register(
        email: str,
        password: str,
        name: str,
        session: Session,
) -> dict:
    """
    Creates a new user account and issues an access + refresh token pair.

    Raises:
      AppError(DUPLICATE_EMAIL, 409) — email already registered, including
        by a concurrent request that reached the UNIQUE index first.
        No user row is created and no tokens are issued.

    Returns: {"user": {...}, "access_token": "...", "refresh_token": "..."}
    """
    if user_service.find_by_email(email, session) is not None:
        raise _duplicate_email()

    try:
        user = user_service.create_user(email, password, name, session)
    except IntegrityError:
        # A concurrent registration won the UNIQUE index on users.email.
        session.rollback()
        logger.debug("registration lost a race on the email index")
        raise _duplicate_email()

    tokens = _issue_token_pair(user, session)
    logger.info("user registered: user_id=%s", user.id)

    return {
        "user": _build_user_dict(user),
        **tokens,
    }


def login(
        email: str,
        password: str,
        session: Session,
) -> dict:
    """
    Validates credentials and issues a new access + refresh token pair.
    Any refresh token issued earlier stops working.

    Raises:
      AppError(INVALID_CREDENTIALS, 401) — email unknown or password wrong.

    Returns: {"access_token": "...", "refresh_token": "...", "user": {...}}
    """
    user = user_service.find_by_email(email, session)

    if user is None:
        user_service.check_password(
            password,
            _dummy_password_hash(current_app.config.get("BCRYPT_LOG_ROUNDS", 12)),
        )
        logger.debug("login rejected: unknown email")
        raise _invalid_credentials()

    if not user_service.check_password(password, user.password_hash):
        logger.debug("login rejected: password mismatch for user_id=%s", user.id)
        raise _invalid_credentials()

    tokens = _issue_token_pair(user, session)
    logger.info("user logged in: user_id=%s", user.id)

    return {
        **tokens,
        "user": _build_user_dict(user),
    }


def rotate_refresh_token(
        user_id: int,
        provided_token: str,
        session: Session,
) -> dict:
    """
    Exchanges a refresh token for a brand-new access + refresh pair.

    The presented token is single-use: once this succeeds it can never be
    exchanged again. There is no grace window.

    Raises:
      AppError(REFRESH_TOKEN_INVALID, 403) — unknown user, no active session,
        mismatching token, or a concurrent rotation already consumed it.

    Returns: {"access_token": "...", "refresh_token": "..."}
    """
    user = user_service.find_by_id(user_id, session)
    if not user_service.is_refresh_token_valid(user, provided_token):
        logger.debug("refresh rejected for user_id=%s", user_id)
        raise _invalid_refresh_token()

    tokens = _issue_token_pair(
        user,
        session,
        expected_hash=user_service.hash_refresh_token(provided_token),
    )
    logger.info("refresh token rotated: user_id=%s", user.id)
    return tokens


def validate_access_token(token: str) -> Caller:
    """
    Verifies signature and expiry of an access token and returns its identity.
    Stateless: storage is not consulted.

    Raises:
      AppError(TOKEN_EXPIRED, 401) — signature fine, exp in the past.
      AppError(TOKEN_INVALID, 401) — anything else wrong with the token.
    """
    try:
        payload = jwt.decode(
            token,
            current_app.config["JWT_SECRET_KEY"],
            algorithms=[current_app.config.get("JWT_ALGORITHM", "HS256")],
            options={"require": ["sub", "exp"]},
        )
    except jwt.ExpiredSignatureError:
        raise AppError(
            ErrorCode.TOKEN_EXPIRED,
            "The access token has expired. Use POST /auth/refresh to obtain a new one.",
            401,
        )
    except jwt.InvalidTokenError:
        # Covers: bad signature, malformed token, missing claims, etc.
        raise AppError(
            ErrorCode.TOKEN_INVALID,
            "The access token is invalid or has been tampered with.",
            401,
        )

    try:
        user_id = int(payload["sub"])
    except (TypeError, ValueError):
        raise AppError(
            ErrorCode.TOKEN_INVALID,
            "The 'sub' claim in the access token is not a valid user ID.",
            401,
        )

    return Caller(
        user_id=user_id,
        email=payload.get("email", ""),
        role=payload.get("role", Role.USER.value),
    )


def logout(user_id: int, session: Session) -> None:
    """
    Ends the user's session by clearing the stored refresh hash.

    Access tokens already issued stay valid until they expire; there is
    no server-side denylist.
    """
    user_service.set_refresh_token_hash(user_id, None, session)
    logger.info("user logged out: user_id=%s", user_id)


def get_profile(user_id: int, session: Session) -> dict:
    """
    Returns the profile of the authenticated user.

    Raises:
      AppError(USER_NOT_FOUND, 404) — the account behind a still-valid
        access token no longer exists.
    """
    user = user_service.find_by_id(user_id, session)
    if user is None:
        raise AppError(
            ErrorCode.USER_NOT_FOUND,
            f"User {user_id} not found.",
            404,
        )
    return _build_user_dict(user)
