"""
Unit tests for user_service: refresh-token hashing/verification and the
compare-and-swap write used by rotation.
"""

from __future__ import annotations

from types import SimpleNamespace
from unittest.mock import MagicMock

import bcrypt

from taskhub.app.services import user_service


def _session(rowcount: int) -> MagicMock:
    session = MagicMock()
    session.execute.return_value = SimpleNamespace(rowcount=rowcount)
    session.identity_map.get.return_value = None
    return session


def test_refresh_hash_is_sha256_hex():
    digest = user_service.hash_refresh_token("abc")
    assert digest == "ba7816bf8f01cfea414140de5dae2223b00361a396177a9cb410ff61f20015ad"


class TestIsRefreshTokenValid:

    def test_matching_token(self):
        user = SimpleNamespace(refresh_token_hash=user_service.hash_refresh_token("tok"))
        assert user_service.is_refresh_token_valid(user, "tok") is True

    def test_mismatching_token(self):
        user = SimpleNamespace(refresh_token_hash=user_service.hash_refresh_token("tok"))
        assert user_service.is_refresh_token_valid(user, "other") is False

    def test_no_active_session(self):
        user = SimpleNamespace(refresh_token_hash=None)
        assert user_service.is_refresh_token_valid(user, "tok") is False

    def test_missing_user(self):
        assert user_service.is_refresh_token_valid(None, "tok") is False

    def test_empty_token(self):
        user = SimpleNamespace(refresh_token_hash=user_service.hash_refresh_token(""))
        assert user_service.is_refresh_token_valid(user, "") is False


class TestSetRefreshTokenHash:

    def test_unconditional_write(self):
        session = _session(rowcount=1)
        assert user_service.set_refresh_token_hash(1, "h", session) is True
        session.execute.assert_called_once()

    def test_conditional_write_loses_race(self):
        session = _session(rowcount=0)
        assert user_service.set_refresh_token_hash(1, "new", session, expected_hash="old") is False

    def test_conditional_write_filters_on_expected_hash(self):
        session = _session(rowcount=1)
        user_service.set_refresh_token_hash(1, "new", session, expected_hash="old")

        stmt = session.execute.call_args.args[0]
        compiled = stmt.compile()
        assert "refresh_token_hash" in str(compiled)
        assert "old" in compiled.params.values()

    def test_cached_user_column_is_expired(self):
        session = _session(rowcount=1)
        cached = object()
        session.identity_map.get.return_value = cached

        user_service.set_refresh_token_hash(1, None, session)

        session.expire.assert_called_once_with(cached, ["refresh_token_hash"])


class TestPasswords:

    def test_check_password(self):
        hashed = bcrypt.hashpw(b"Password1", bcrypt.gensalt(rounds=4)).decode("utf-8")
        assert user_service.check_password("Password1", hashed) is True
        assert user_service.check_password("Password2", hashed) is False

    def test_overlong_password_never_matches(self):
        hashed = bcrypt.hashpw(b"a" * 72, bcrypt.gensalt(rounds=4)).decode("utf-8")
        assert user_service.check_password("a" * 80, hashed) is False
