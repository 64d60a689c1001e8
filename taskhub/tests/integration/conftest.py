"""
tests/integration/conftest.py — Fixtures and helpers for all integration tests.

Design:
  - The app is created once per session using create_app("testing").
    TestingConfig points at in-memory SQLite unless TEST_DATABASE_URL is set.
  - All tables are created once via db.create_all() at session start.
  - Between tests, all rows are deleted and the in-memory rate-limit windows
    and task queue are emptied so tests are isolated.

Helper functions (not fixtures) are provided for common operations:
  - register(client, ...)    → dict with user + tokens
  - login(client, ...)       → dict with user + tokens
  - auth_headers(token)      → {"Authorization": "Bearer <token>"}
  - make_task(client, ...)   → task dict
  - make_admin(app, client, ...) → login data for a user promoted to admin
"""

from __future__ import annotations

import pytest
from sqlalchemy import text, update

from taskhub.app import create_app
from taskhub.app.extensions import RATE_LIMITER_KEY, TASK_EVENTS_KEY
from taskhub.app.extensions import db as _db


# ═══════════════════════════════════════════════════════════════════════════
# Session-scoped app fixture
# ═══════════════════════════════════════════════════════════════════════════

@pytest.fixture(scope="session")
def app():
    """Creates the Flask application in 'testing' mode once for the entire session."""
    flask_app = create_app("testing")

    with flask_app.app_context():
        _db.create_all()

    yield flask_app

    with flask_app.app_context():
        _db.drop_all()


# ═══════════════════════════════════════════════════════════════════════════
# Function-scoped test isolation
# ═══════════════════════════════════════════════════════════════════════════

@pytest.fixture(autouse=True)
def clean_state(app):
    """
    Deletes all rows and resets limiter/queue state after every test.
    tasks are deleted before users (CASCADE would handle it, but be explicit).
    """
    yield

    with app.app_context():
        _db.session.rollback()  # discard any uncommitted state from a failed test
        _db.session.remove()

        with _db.engine.connect() as conn:
            conn.execute(text("DELETE FROM tasks"))
            conn.execute(text("DELETE FROM users"))
            conn.commit()

    app.extensions[RATE_LIMITER_KEY].store.clear()
    app.extensions[TASK_EVENTS_KEY].queue.clear()


# ═══════════════════════════════════════════════════════════════════════════
# Client fixture
# ═══════════════════════════════════════════════════════════════════════════

@pytest.fixture
def client(app):
    """Flask test client. Each test gets a fresh client (function-scoped)."""
    return app.test_client()


@pytest.fixture
def queue(app):
    """The in-memory task queue the app publishes status events to."""
    return app.extensions[TASK_EVENTS_KEY].queue


# ═══════════════════════════════════════════════════════════════════════════
# Shared helper functions (not fixtures)
# ═══════════════════════════════════════════════════════════════════════════

def register(
    client,
    name: str = "alice",
    email: str | None = None,
    password: str = "Password1",
) -> dict:
    """
    Registers a new user and returns the full response data dict.
    Returns: {"user": {...}, "access_token": "...", "refresh_token": "..."}
    """
    if email is None:
        email = f"{name}@test.com"
    resp = client.post(
        "/api/v1/auth/register",
        json={"name": name, "email": email, "password": password},
    )
    assert resp.status_code == 201, f"register failed: {resp.get_json()}"
    return resp.get_json()["data"]


def login(client, email: str, password: str = "Password1") -> dict:
    """
    Logs in a user and returns the response data dict.
    Returns: {"access_token": "...", "refresh_token": "...", "user": {...}}
    """
    resp = client.post(
        "/api/v1/auth/login",
        json={"email": email, "password": password},
    )
    assert resp.status_code == 200, f"login failed: {resp.get_json()}"
    return resp.get_json()["data"]


def auth_headers(token: str) -> dict:
    """Returns the Authorization header dict for use in test requests."""
    return {"Authorization": f"Bearer {token}"}


def make_task(client, token: str, title: str = "Test Task", **fields) -> dict:
    """Creates a task and returns the task data dict."""
    resp = client.post(
        "/api/v1/tasks",
        json={"title": title, **fields},
        headers=auth_headers(token),
    )
    assert resp.status_code == 201, f"make_task failed: {resp.get_json()}"
    return resp.get_json()["data"]


def make_admin(app, client, name: str = "root") -> dict:
    """
    Registers a user, promotes them to admin directly in the DB and logs in
    again so the access token carries role=admin.
    """
    from taskhub.app.models.user import Role, User

    data = register(client, name)
    with app.app_context():
        _db.session.execute(
            update(User).where(User.id == data["user"]["id"]).values(role=Role.ADMIN)
        )
        _db.session.commit()
    return login(client, data["user"]["email"])


def stored_refresh_hash(app, user_id: int) -> str | None:
    """Reads the refresh-token hash currently persisted for a user."""
    from taskhub.app.models.user import User

    with app.app_context():
        _db.session.expire_all()
        return _db.session.get(User, user_id).refresh_token_hash
