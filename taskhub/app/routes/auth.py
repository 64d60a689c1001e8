"""
routes/auth.py — Authentication route handlers.

Layer rules:
  - Parse request body
  - Validate with the appropriate schema (raises ValidationError on bad input)
  - Call exactly ONE service function
  - Commit the DB session
  - Return the standard response envelope: {"data": {...}, "warnings": []}

AppError propagates to the global error handler in app/__init__.py; routes
never catch it.

Endpoints (url_prefix=/api/v1/auth):
  POST   /auth/register  → 201
  POST   /auth/login     → 200
  POST   /auth/refresh   → 200
  POST   /auth/logout    → 200
  GET    /auth/me        → 200
"""

from __future__ import annotations

from flask import Blueprint, g, jsonify, request

from taskhub.app.extensions import db
from taskhub.app.middleware.auth_middleware import require_auth
from taskhub.app.middleware.rate_limit import rate_limit
from taskhub.app.schemas.auth_schema import LoginSchema, RefreshTokenSchema, RegisterSchema
from taskhub.app.services import auth_service

auth_bp = Blueprint("auth", __name__)


@auth_bp.route("/register", methods=["POST"])
@rate_limit()
def register():
    """POST /auth/register — Create account; return tokens. (No auth required.)"""
    data = RegisterSchema().load(request.get_json(force=True) or {})
    result = auth_service.register(
        email=data["email"],
        password=data["password"],
        name=data["name"],
        session=db.session,
    )
    db.session.commit()
    return jsonify({"data": result, "warnings": []}), 201


@auth_bp.route("/login", methods=["POST"])
@rate_limit()
def login():
    """POST /auth/login — Authenticate; return tokens. (No auth required.)"""
    data = LoginSchema().load(request.get_json(force=True) or {})
    result = auth_service.login(
        email=data["email"],
        password=data["password"],
        session=db.session,
    )
    db.session.commit()
    return jsonify({"data": result, "warnings": []}), 200


@auth_bp.route("/refresh", methods=["POST"])
@rate_limit()
def refresh():
    """POST /auth/refresh — Rotate the refresh token; return a new token pair."""
    data = RefreshTokenSchema().load(request.get_json(force=True) or {})
    result = auth_service.rotate_refresh_token(
        user_id=data["user_id"],
        provided_token=data["refresh_token"],
        session=db.session,
    )
    db.session.commit()
    return jsonify({"data": result, "warnings": []}), 200


@auth_bp.route("/logout", methods=["POST"])
@rate_limit()
@require_auth
def logout():
    """POST /auth/logout — End the session; the refresh token stops working."""
    auth_service.logout(user_id=g.caller.user_id, session=db.session)
    db.session.commit()
    return jsonify({"data": {"message": "Logged out successfully."}, "warnings": []}), 200


@auth_bp.route("/me", methods=["GET"])
@rate_limit()
@require_auth
def me():
    """GET /auth/me — Return current user profile. (Auth required.)"""
    result = auth_service.get_profile(
        user_id=g.caller.user_id,
        session=db.session,
    )
    return jsonify({"data": result, "warnings": []}), 200
