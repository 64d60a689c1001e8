"""
Unit tests for auth_service branches not naturally hit in integration flow.

The service reads JWT settings from current_app.config, so an application
context is pushed. Storage is replaced by monkeypatching user_service and
passing MagicMock sessions; no database is touched.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from types import SimpleNamespace
from unittest.mock import MagicMock

import jwt
import pytest
from sqlalchemy.exc import IntegrityError

from taskhub.app import create_app
from taskhub.app.errors import AppError, ErrorCode
from taskhub.app.models.user import Role
from taskhub.app.services import auth_service, user_service


@pytest.fixture(scope="module")
def app():
    return create_app("testing")


@pytest.fixture(autouse=True)
def app_ctx(app):
    with app.app_context():
        yield


def _user(**overrides):
    fields = dict(
        id=7,
        email="alice@example.com",
        name="Alice",
        role=Role.USER,
        password_hash="$2b$04$unused",
        refresh_token_hash=None,
    )
    fields.update(overrides)
    return SimpleNamespace(**fields)


def _encode(app, payload, secret=None):
    return jwt.encode(payload, secret or app.config["JWT_SECRET_KEY"], algorithm="HS256")


# ═══════════════════════════════════════════════════════════════════════════
# Access tokens
# ═══════════════════════════════════════════════════════════════════════════

class TestAccessTokens:

    def test_round_trip_yields_caller(self):
        token = auth_service._create_access_token(_user(role=Role.ADMIN))
        caller = auth_service.validate_access_token(token)

        assert caller == auth_service.Caller(user_id=7, email="alice@example.com", role="admin")
        assert caller.is_admin is True

    def test_tokens_are_unique_per_issue(self):
        user = _user()
        assert auth_service._create_access_token(user) != auth_service._create_access_token(user)

    def test_expired_token(self, app):
        now = datetime.now(timezone.utc)
        token = _encode(app, {"sub": "7", "iat": now - timedelta(hours=1), "exp": now - timedelta(minutes=1)})

        with pytest.raises(AppError) as exc_info:
            auth_service.validate_access_token(token)
        assert exc_info.value.code == ErrorCode.TOKEN_EXPIRED
        assert exc_info.value.http_status == 401

    def test_wrong_signature(self, app):
        token = _encode(
            app,
            {"sub": "7", "exp": datetime.now(timezone.utc) + timedelta(minutes=5)},
            secret="some-other-secret-that-is-long-enough",
        )
        with pytest.raises(AppError) as exc_info:
            auth_service.validate_access_token(token)
        assert exc_info.value.code == ErrorCode.TOKEN_INVALID

    def test_missing_sub_claim(self, app):
        token = _encode(app, {"exp": datetime.now(timezone.utc) + timedelta(minutes=5)})
        with pytest.raises(AppError) as exc_info:
            auth_service.validate_access_token(token)
        assert exc_info.value.code == ErrorCode.TOKEN_INVALID

    def test_non_numeric_sub_claim(self, app):
        token = _encode(app, {"sub": "alice", "exp": datetime.now(timezone.utc) + timedelta(minutes=5)})
        with pytest.raises(AppError) as exc_info:
            auth_service.validate_access_token(token)
        assert exc_info.value.code == ErrorCode.TOKEN_INVALID

    def test_garbage_token(self):
        with pytest.raises(AppError) as exc_info:
            auth_service.validate_access_token("not.a.jwt")
        assert exc_info.value.code == ErrorCode.TOKEN_INVALID


# ═══════════════════════════════════════════════════════════════════════════
# Register
# ═══════════════════════════════════════════════════════════════════════════

class TestRegister:

    def test_unique_index_violation_becomes_duplicate_email(self, monkeypatch):
        session = MagicMock()
        monkeypatch.setattr(user_service, "find_by_email", lambda email, session: None)

        def racing_create(email, password, name, session):
            raise IntegrityError("INSERT INTO users", {}, Exception("UNIQUE constraint failed"))

        monkeypatch.setattr(user_service, "create_user", racing_create)
        issued = MagicMock()
        monkeypatch.setattr(user_service, "set_refresh_token_hash", issued)

        with pytest.raises(AppError) as exc:
            auth_service.register("alice@example.com", "Password1", "Alice", session)

        assert exc.value.code == ErrorCode.DUPLICATE_EMAIL
        assert exc.value.http_status == 409
        assert exc.value.field == "email"
        session.rollback.assert_called_once()
        issued.assert_not_called()


# ═══════════════════════════════════════════════════════════════════════════
# Login
# ═══════════════════════════════════════════════════════════════════════════

class TestLogin:

    def test_unknown_email_and_wrong_password_are_indistinguishable(self, monkeypatch):
        checks = []

        def fake_check(password, password_hash):
            checks.append(password_hash)
            return False

        monkeypatch.setattr(user_service, "check_password", fake_check)

        monkeypatch.setattr(user_service, "find_by_email", lambda email, session: None)
        with pytest.raises(AppError) as unknown:
            auth_service.login("ghost@example.com", "Password1", MagicMock())

        monkeypatch.setattr(user_service, "find_by_email", lambda email, session: _user())
        with pytest.raises(AppError) as mismatch:
            auth_service.login("alice@example.com", "wrong", MagicMock())

        assert unknown.value.code == mismatch.value.code == ErrorCode.INVALID_CREDENTIALS
        assert unknown.value.message == mismatch.value.message
        assert unknown.value.http_status == mismatch.value.http_status == 401
        # Both branches paid for one password comparison.
        assert len(checks) == 2

    def test_success_rotates_refresh_hash(self, monkeypatch):
        stored = {}
        monkeypatch.setattr(user_service, "find_by_email", lambda email, session: _user())
        monkeypatch.setattr(user_service, "check_password", lambda password, password_hash: True)

        def fake_set(user_id, token_hash, session, expected_hash=None):
            stored.update(user_id=user_id, token_hash=token_hash, expected=expected_hash)
            return True

        monkeypatch.setattr(user_service, "set_refresh_token_hash", fake_set)

        result = auth_service.login("alice@example.com", "Password1", MagicMock())

        assert result["user"] == {"id": 7, "email": "alice@example.com", "name": "Alice", "role": "user"}
        assert stored["user_id"] == 7
        assert stored["expected"] is None
        assert stored["token_hash"] == user_service.hash_refresh_token(result["refresh_token"])
        assert "password_hash" not in result["user"]


# ═══════════════════════════════════════════════════════════════════════════
# Refresh rotation
# ═══════════════════════════════════════════════════════════════════════════

class TestRotateRefreshToken:

    def test_unknown_user(self, monkeypatch):
        monkeypatch.setattr(user_service, "find_by_id", lambda user_id, session: None)

        with pytest.raises(AppError) as exc_info:
            auth_service.rotate_refresh_token(99, "anything", MagicMock())
        assert exc_info.value.code == ErrorCode.REFRESH_TOKEN_INVALID
        assert exc_info.value.http_status == 403

    def test_mismatching_token(self, monkeypatch):
        user = _user(refresh_token_hash=user_service.hash_refresh_token("current"))
        monkeypatch.setattr(user_service, "find_by_id", lambda user_id, session: user)

        with pytest.raises(AppError) as exc_info:
            auth_service.rotate_refresh_token(7, "stale", MagicMock())
        assert exc_info.value.code == ErrorCode.REFRESH_TOKEN_INVALID

    def test_lost_race_is_rejected(self, monkeypatch):
        """The stored hash changed between the check and the conditional write."""
        user = _user(refresh_token_hash=user_service.hash_refresh_token("current"))
        monkeypatch.setattr(user_service, "find_by_id", lambda user_id, session: user)
        monkeypatch.setattr(
            user_service,
            "set_refresh_token_hash",
            lambda user_id, token_hash, session, expected_hash=None: False,
        )

        with pytest.raises(AppError) as exc_info:
            auth_service.rotate_refresh_token(7, "current", MagicMock())
        assert exc_info.value.code == ErrorCode.REFRESH_TOKEN_INVALID

    def test_success_uses_presented_hash_as_expected_value(self, monkeypatch):
        user = _user(refresh_token_hash=user_service.hash_refresh_token("current"))
        calls = []
        monkeypatch.setattr(user_service, "find_by_id", lambda user_id, session: user)
        monkeypatch.setattr(
            user_service,
            "set_refresh_token_hash",
            lambda user_id, token_hash, session, expected_hash=None: calls.append(expected_hash) or True,
        )

        result = auth_service.rotate_refresh_token(7, "current", MagicMock())

        assert calls == [user_service.hash_refresh_token("current")]
        assert result["refresh_token"] != "current"
        assert set(result) == {"access_token", "refresh_token"}


# ═══════════════════════════════════════════════════════════════════════════
# Logout / profile
# ═══════════════════════════════════════════════════════════════════════════

def test_logout_clears_refresh_hash(monkeypatch):
    calls = []
    monkeypatch.setattr(
        user_service,
        "set_refresh_token_hash",
        lambda user_id, token_hash, session, expected_hash=None: calls.append((user_id, token_hash)) or True,
    )

    auth_service.logout(7, MagicMock())

    assert calls == [(7, None)]


def test_get_profile_raises_user_not_found():
    session = MagicMock()
    session.get.return_value = None

    with pytest.raises(AppError) as exc_info:
        auth_service.get_profile(user_id=99999, session=session)

    err = exc_info.value
    assert err.code == ErrorCode.USER_NOT_FOUND
    assert err.http_status == 404


def test_get_profile_returns_serialized_user():
    session = MagicMock()
    session.get.return_value = _user()

    assert auth_service.get_profile(user_id=7, session=session) == {
        "id": 7,
        "email": "alice@example.com",
        "name": "Alice",
        "role": "user",
    }
