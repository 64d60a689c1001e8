"""
schemas/task_schema.py — Marshmallow schemas for task endpoints.

Validation responsibility:
  - This file: field types, enums, lengths, paging bounds.
  - services/task_service.py: ownership and existence (requires DB lookups).
"""

from __future__ import annotations

from datetime import timezone

from marshmallow import (
    Schema,
    ValidationError,
    fields,
    validate,
    validates,
    validates_schema,
)

from taskhub.app.models.task import BATCH_ACTIONS, SORT_FIELDS, TaskPriority, TaskStatus

_STATUSES = [s.value for s in TaskStatus]
_PRIORITIES = [p.value for p in TaskPriority]


def _validate_non_empty_after_trim(value: str) -> None:
    if not value.strip():
        raise ValidationError("This field must not be blank or contain only whitespace.")


class CreateTaskSchema(Schema):
    """POST /tasks"""

    title = fields.Str(
        required=True,
        validate=[
            validate.Length(min=1, max=255),
            _validate_non_empty_after_trim,
        ],
    )
    description = fields.Str(load_default=None, allow_none=True)
    status = fields.Str(load_default=None, validate=validate.OneOf(_STATUSES))
    priority = fields.Str(load_default=None, validate=validate.OneOf(_PRIORITIES))
    due_date = fields.AwareDateTime(default_timezone=timezone.utc, load_default=None, allow_none=True)


class UpdateTaskSchema(Schema):
    """
    PATCH /tasks/:id

    Every field is optional; only the keys present are applied.
    """

    title = fields.Str(
        validate=[
            validate.Length(min=1, max=255),
            _validate_non_empty_after_trim,
        ],
    )
    description = fields.Str(allow_none=True)
    status = fields.Str(validate=validate.OneOf(_STATUSES))
    priority = fields.Str(validate=validate.OneOf(_PRIORITIES))
    due_date = fields.AwareDateTime(default_timezone=timezone.utc, allow_none=True)

    @validates_schema
    def validate_not_empty(self, data: dict, **kwargs) -> None:
        if not data:
            raise ValidationError("At least one field must be provided.")


class TaskFilterSchema(Schema):
    """GET /tasks query string"""

    status = fields.Str(validate=validate.OneOf(_STATUSES))
    priority = fields.Str(validate=validate.OneOf(_PRIORITIES))
    search = fields.Str(validate=validate.Length(max=255))
    from_date = fields.AwareDateTime(default_timezone=timezone.utc)
    to_date = fields.AwareDateTime(default_timezone=timezone.utc)
    page = fields.Int(load_default=1, validate=validate.Range(min=1))
    limit = fields.Int(load_default=10, validate=validate.Range(min=1, max=100))
    sort_by = fields.Str(
        load_default="created_at",
        validate=validate.OneOf(list(SORT_FIELDS)),
    )
    sort_order = fields.Str(
        load_default="desc",
        validate=validate.OneOf(["asc", "desc", "ASC", "DESC"]),
    )
    # Honoured for admins only; regular users are always scoped to themselves.
    user_id = fields.Int()

    @validates_schema
    def validate_date_range(self, data: dict, **kwargs) -> None:
        start, end = data.get("from_date"), data.get("to_date")
        if start is not None and end is not None and start > end:
            raise ValidationError("from_date must not be after to_date.", "from_date")


class BatchSchema(Schema):
    """POST /tasks/batch"""

    tasks = fields.List(
        fields.Int(strict=True),
        required=True,
        validate=validate.Length(min=1, error="No tasks provided."),
    )
    action = fields.Str(required=True)

    @validates("action")
    def validate_action(self, value: str, **kwargs) -> None:
        if value not in BATCH_ACTIONS:
            raise ValidationError(
                f"Unknown action: {value}. Expected one of: {', '.join(BATCH_ACTIONS)}."
            )
