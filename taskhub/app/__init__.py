"""
app/__init__.py — Flask application factory.

Pattern: create_app(config_name) creates and returns a configured Flask app.
         Nothing is initialised at import time, which allows multiple
         isolated test app instances.

Responsibilities:
  1. Load configuration from config_by_name[config_name]
  2. Initialise SQLAlchemy, the rate limiter and the task event publisher
  3. Register all route blueprints under /api/v1
  4. Register global error handlers (AppError → JSON, Exception → 500)

Error envelope (every non-2xx response):
  {"error": {"code", "message", "status", "path", "timestamp"}}
Stack traces never leave the server.
"""

from __future__ import annotations

import atexit
import logging
import traceback
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone

from flask import Flask, jsonify, request
from marshmallow import ValidationError
from werkzeug.exceptions import HTTPException

from taskhub.config import config_by_name, validate_production_config


# ── Application factory ────────────────────────────────────────────────────

def create_app(config_name: str = "development") -> Flask:
    """
    Creates and returns a configured Flask application instance.

    Args:
        config_name: One of "development", "testing", "production".
                     Defaults to "development".
    """
    app = Flask(__name__)

    # ── Configuration ──────────────────────────────────────────────────────
    config_class = config_by_name.get(config_name, config_by_name["development"])
    app.config.from_object(config_class)

    if config_name == "production":
        validate_production_config(app)  # raises ValueError if misconfigured

    _configure_logging(app)

    # ── Extensions ─────────────────────────────────────────────────────────
    from taskhub.app.extensions import db
    db.init_app(app)

    _init_rate_limiter(app)
    _init_task_events(app)

    # ── Model registration ─────────────────────────────────────────────────
    # Importing the models populates SQLAlchemy's MetaData.
    with app.app_context():
        from taskhub.app.models import task, user  # noqa: F401

    _register_blueprints(app)
    _register_error_handlers(app)
    _register_cors(app)

    return app


def _configure_logging(app: Flask) -> None:
    level = app.config.get("LOG_LEVEL", "INFO")
    app.logger.setLevel(level)
    logging.getLogger("taskhub").setLevel(level)


def _init_rate_limiter(app: Flask) -> None:
    """Builds the process-wide limiter over the configured window store."""
    from taskhub.app.extensions import RATE_LIMITER_KEY
    from taskhub.app.services.rate_limiter import FixedWindowRateLimiter, RateLimitPolicy
    from taskhub.app.services.window_store import build_window_store

    app.extensions[RATE_LIMITER_KEY] = FixedWindowRateLimiter(
        build_window_store(app.config),
        default_policy=RateLimitPolicy(
            limit=app.config["RATE_LIMIT_DEFAULT_LIMIT"],
            window_ms=app.config["RATE_LIMIT_DEFAULT_WINDOW_MS"],
        ),
    )


def _init_task_events(app: Flask) -> None:
    """Builds the publisher that hands status changes to the background queue."""
    from taskhub.app.extensions import TASK_EVENTS_KEY
    from taskhub.app.services.task_events import TaskEventPublisher, build_task_queue

    executor = None
    if app.config.get("TASK_EVENT_ASYNC"):
        executor = ThreadPoolExecutor(max_workers=2, thread_name_prefix="task-events")

    publisher = TaskEventPublisher(
        build_task_queue(app.config),
        max_attempts=app.config["TASK_EVENT_MAX_ATTEMPTS"],
        backoff_ms=app.config["TASK_EVENT_BACKOFF_MS"],
        executor=executor,
        max_pending=app.config["TASK_EVENT_MAX_PENDING"],
    )
    app.extensions[TASK_EVENTS_KEY] = publisher
    if executor is not None:
        atexit.register(publisher.shutdown, wait=False)


def _register_blueprints(app: Flask) -> None:
    """Registers all route blueprints under the /api/v1 prefix."""
    from taskhub.app.routes.auth import auth_bp
    from taskhub.app.routes.tasks import tasks_bp

    app.register_blueprint(auth_bp,  url_prefix="/api/v1/auth")
    app.register_blueprint(tasks_bp, url_prefix="/api/v1/tasks")


def _error_response(body: dict, status: int):
    """Stamps an {"error": {...}} body with the request path and time."""
    body["error"]["path"] = request.path
    body["error"]["timestamp"] = datetime.now(timezone.utc).isoformat()
    return jsonify(body), status


def _register_error_handlers(app: Flask) -> None:
    """
    Registers global error handlers.

    Handlers:
      AppError        → structured JSON error envelope with the correct HTTP status
      ValidationError → marshmallow schema errors as MISSING_FIELD /
                        INVALID_FIELD responses (400)
      HTTPException   → werkzeug errors (404, 405, malformed JSON) in the same envelope
      Exception       → generic INTERNAL_ERROR (500); full traceback logged
    """
    from taskhub.app.errors import HTTP_STATUS_CODES, AppError, ErrorCode, RateLimitExceeded

    @app.errorhandler(AppError)
    def handle_app_error(error: AppError):
        """
        Converts an AppError raised anywhere in the request lifecycle
        (middleware, service, route) into the standard error envelope.
        """
        response, status = _error_response(error.to_dict(), error.http_status)
        if isinstance(error, RateLimitExceeded):
            response.headers["Retry-After"] = str(error.retry_after)
        return response, status

    @app.errorhandler(ValidationError)
    def handle_validation_error(error: ValidationError):
        """
        Converts marshmallow ValidationError into the standard error envelope.
        Only the FIRST field error is reported.
        """
        messages = error.messages

        field = None
        message = "Invalid input."
        code = ErrorCode.INVALID_FIELD

        if isinstance(messages, dict):
            for field_name, field_errors in messages.items():
                field = field_name if field_name != "_schema" else None
                if isinstance(field_errors, list):
                    message = str(field_errors[0]) if field_errors else "Invalid value."
                else:
                    message = str(field_errors)
                break
        elif isinstance(messages, list) and messages:
            message = str(messages[0])

        if message.startswith("Missing data for required field"):
            code = ErrorCode.MISSING_FIELD

        return _error_response(AppError(code, message, 400, field=field).to_dict(), 400)

    @app.errorhandler(HTTPException)
    def handle_http_exception(error: HTTPException):
        status = error.code or 500
        fallback = ErrorCode.BAD_REQUEST if status < 500 else ErrorCode.INTERNAL_ERROR
        code = HTTP_STATUS_CODES.get(status, fallback)
        return _error_response(
            AppError(code, error.description or error.name, status).to_dict(),
            status,
        )

    @app.errorhandler(Exception)
    def handle_unexpected_error(error: Exception):
        """
        Catches all unhandled exceptions and returns a generic 500 response.
        The full traceback is logged server-side only.
        """
        app.logger.error(
            "Unhandled exception on %s %s: %s\n%s",
            request.method,
            request.path,
            str(error),
            traceback.format_exc(),
        )
        return _error_response(
            AppError(
                ErrorCode.INTERNAL_ERROR,
                "An unexpected error occurred. Please try again later.",
                500,
            ).to_dict(),
            500,
        )


def _register_cors(app: Flask) -> None:
    """
    Adds CORS headers for browser-based local development.

    Enabled when DEBUG or TESTING is true so a frontend served from another
    local port can call the API with Authorization headers.
    """

    @app.after_request
    def add_cors_headers(response):
        origin = request.headers.get("Origin")
        allow_all = bool(app.config.get("DEBUG") or app.config.get("TESTING"))

        if allow_all:
            response.headers["Access-Control-Allow-Origin"] = origin if origin else "*"
            response.headers["Vary"] = "Origin"
            response.headers["Access-Control-Allow-Methods"] = "GET, POST, PATCH, DELETE, OPTIONS"
            response.headers["Access-Control-Allow-Headers"] = "Authorization, Content-Type"
            response.headers["Access-Control-Expose-Headers"] = "Retry-After"

        return response
