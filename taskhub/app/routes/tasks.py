"""
routes/tasks.py — Task route handlers.

Layer rules:
  - Parse, validate, call ONE service, commit, return envelope.
  - Status-change events returned by the service are published only after
    the commit. Publishing never fails the request.

Every route is rate limited (200 requests / 60 s per client, method and
path) ahead of authentication.

Endpoints (url_prefix=/api/v1/tasks):
  POST   /tasks          → 201  create task
  GET    /tasks          → 200  filtered, paginated listing
  GET    /tasks/stats    → 200  counts by status / priority
  GET    /tasks/:id      → 200  single task
  PATCH  /tasks/:id      → 200  partial update
  DELETE /tasks/:id      → 200  delete
  POST   /tasks/batch    → 200  complete or delete many
"""

from __future__ import annotations

from flask import Blueprint, g, jsonify, request

from taskhub.app.extensions import db, get_task_events
from taskhub.app.middleware.auth_middleware import require_auth
from taskhub.app.middleware.rate_limit import rate_limit
from taskhub.app.schemas.task_schema import (
    BatchSchema,
    CreateTaskSchema,
    TaskFilterSchema,
    UpdateTaskSchema,
)
from taskhub.app.services import task_service

tasks_bp = Blueprint("tasks", __name__)

TASKS_LIMIT = 200
TASKS_WINDOW_MS = 60_000


@tasks_bp.route("", methods=["POST"])
@rate_limit(TASKS_LIMIT, TASKS_WINDOW_MS)
@require_auth
def create_task():
    """POST /tasks — Create a task owned by the caller."""
    data = CreateTaskSchema().load(request.get_json(force=True) or {})
    result, event = task_service.create_task(
        data=data,
        caller=g.caller,
        session=db.session,
    )
    db.session.commit()
    get_task_events().publish(event)
    return jsonify({"data": result, "warnings": []}), 201


@tasks_bp.route("", methods=["GET"])
@rate_limit(TASKS_LIMIT, TASKS_WINDOW_MS)
@require_auth
def list_tasks():
    """GET /tasks — Filtered, sorted, paginated listing."""
    filters = TaskFilterSchema().load(request.args.to_dict())
    result = task_service.list_tasks(
        filters=filters,
        caller=g.caller,
        session=db.session,
    )
    return jsonify({"data": result["items"], "meta": result["meta"], "warnings": []}), 200


@tasks_bp.route("/stats", methods=["GET"])
@rate_limit(TASKS_LIMIT, TASKS_WINDOW_MS)
@require_auth
def get_stats():
    """GET /tasks/stats — Task counts for the caller (all tasks for admins)."""
    result = task_service.get_statistics(caller=g.caller, session=db.session)
    return jsonify({"data": result, "warnings": []}), 200


@tasks_bp.route("/<int:task_id>", methods=["GET"])
@rate_limit(TASKS_LIMIT, TASKS_WINDOW_MS)
@require_auth
def get_task(task_id: int):
    """GET /tasks/:id"""
    result = task_service.get_task(task_id=task_id, caller=g.caller, session=db.session)
    return jsonify({"data": result, "warnings": []}), 200


@tasks_bp.route("/<int:task_id>", methods=["PATCH"])
@rate_limit(TASKS_LIMIT, TASKS_WINDOW_MS)
@require_auth
def update_task(task_id: int):
    """PATCH /tasks/:id — Partial update; publishes an event on status change."""
    data = UpdateTaskSchema().load(request.get_json(force=True) or {})
    result, event = task_service.update_task(
        task_id=task_id,
        data=data,
        caller=g.caller,
        session=db.session,
    )
    db.session.commit()
    if event is not None:
        get_task_events().publish(event)
    return jsonify({"data": result, "warnings": []}), 200


@tasks_bp.route("/<int:task_id>", methods=["DELETE"])
@rate_limit(TASKS_LIMIT, TASKS_WINDOW_MS)
@require_auth
def delete_task(task_id: int):
    """DELETE /tasks/:id"""
    result = task_service.delete_task(task_id=task_id, caller=g.caller, session=db.session)
    db.session.commit()
    return jsonify({"data": result, "warnings": []}), 200


@tasks_bp.route("/batch", methods=["POST"])
@rate_limit(TASKS_LIMIT, TASKS_WINDOW_MS)
@require_auth
def batch_process():
    """POST /tasks/batch — {"tasks": [ids], "action": "complete" | "delete"}"""
    data = BatchSchema().load(request.get_json(force=True) or {})
    result, events = task_service.batch_process(
        task_ids=data["tasks"],
        action=data["action"],
        caller=g.caller,
        session=db.session,
    )
    db.session.commit()
    get_task_events().publish_all(events)
    return jsonify({"data": result, "warnings": []}), 200
