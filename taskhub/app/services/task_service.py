"""
services/task_service.py — Task business logic.

Authorization rules:
  - Regular users only ever see and modify their own tasks. A task owned
    by someone else is reported as TASK_NOT_FOUND (404), never 403, so
    task ids of other users cannot be discovered.
  - Admins see every task and may narrow listings with user_id.

Status-change events:
  - Mutations return the TaskStatusEvent(s) they produced. The route
    publishes them after committing; this module never touches the queue.

Layer rules:
  - No Flask imports. Receives the caller identity as an explicit argument.
  - Commits are the route's responsibility; only flush here.
"""

from __future__ import annotations

import math

from sqlalchemy import Select, case, delete, func, select, update
from sqlalchemy.orm import Session

from taskhub.app.errors import AppError, ErrorCode
from taskhub.app.models.task import BATCH_ACTIONS, SORT_FIELDS, Task, TaskPriority, TaskStatus
from taskhub.app.services.auth_service import Caller
from taskhub.app.services.task_events import TaskStatusEvent

SORTABLE_COLUMNS = {name: getattr(Task, name) for name in SORT_FIELDS}

_UPDATABLE_FIELDS = ("title", "description", "status", "priority", "due_date")


# ── Private helpers ────────────────────────────────────────────────────────

def _scope_to_caller(stmt: Select, caller: Caller) -> Select:
    """Restricts a Task query to the caller's own rows unless they are admin."""
    if caller.is_admin:
        return stmt
    return stmt.where(Task.user_id == caller.user_id)


def _get_task_or_404(task_id: int, caller: Caller, session: Session) -> Task:
    """Returns the Task if visible to caller or raises TASK_NOT_FOUND (404)."""
    stmt = _scope_to_caller(select(Task).where(Task.id == task_id), caller)
    task = session.execute(stmt).scalar_one_or_none()
    if task is None:
        raise AppError(
            ErrorCode.TASK_NOT_FOUND,
            f"Task {task_id} not found.",
            404,
        )
    return task


def _owned_ids(task_ids: list[int], caller: Caller, session: Session) -> list[int]:
    """Reduces task_ids to the ones the caller may act on."""
    stmt = _scope_to_caller(select(Task.id).where(Task.id.in_(task_ids)), caller)
    return list(session.execute(stmt).scalars().all())


def _iso(value) -> str | None:
    return value.isoformat() if value is not None else None


def _build_task_dict(task: Task) -> dict:
    """Serialises a Task to a plain dict. No business logic."""
    return {
        "id": task.id,
        "title": task.title,
        "description": task.description,
        "status": TaskStatus(task.status).value,
        "priority": TaskPriority(task.priority).value,
        "due_date": _iso(task.due_date),
        "user_id": task.user_id,
        "created_at": _iso(task.created_at),
        "updated_at": _iso(task.updated_at),
    }


def _contains_pattern(term: str) -> str:
    """LIKE pattern matching `term` literally anywhere in the value."""
    escaped = term.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    return f"%{escaped}%"


def _apply_filters(stmt: Select, filters: dict, caller: Caller) -> Select:
    if caller.is_admin:
        if filters.get("user_id") is not None:
            stmt = stmt.where(Task.user_id == filters["user_id"])
    else:
        # user_id from the query string is ignored for regular users.
        stmt = stmt.where(Task.user_id == caller.user_id)

    if filters.get("status") is not None:
        stmt = stmt.where(Task.status == TaskStatus(filters["status"]))
    if filters.get("priority") is not None:
        stmt = stmt.where(Task.priority == TaskPriority(filters["priority"]))
    if filters.get("from_date") is not None:
        stmt = stmt.where(Task.due_date >= filters["from_date"])
    if filters.get("to_date") is not None:
        stmt = stmt.where(Task.due_date <= filters["to_date"])
    if filters.get("search"):
        pattern = _contains_pattern(filters["search"])
        stmt = stmt.where(
            Task.title.ilike(pattern, escape="\\")
            | Task.description.ilike(pattern, escape="\\")
        )
    return stmt


# ── Public service functions ───────────────────────────────────────────────

def create_task(
        data: dict,
        caller: Caller,
        session: Session,
) -> tuple[dict, TaskStatusEvent]:
    """
    Creates a task owned by the caller.

    Returns: (task dict, status event for the initial status)
    """
    task = Task(
        title=data["title"],
        description=data.get("description"),
        status=TaskStatus(data.get("status") or TaskStatus.PENDING),
        priority=TaskPriority(data.get("priority") or TaskPriority.MEDIUM),
        due_date=data.get("due_date"),
        user_id=caller.user_id,
    )
    session.add(task)
    session.flush()
    session.refresh(task)  # load server-side timestamps

    return _build_task_dict(task), TaskStatusEvent(task.id, task.status.value)


def list_tasks(filters: dict, caller: Caller, session: Session) -> dict:
    """
    Returns one page of tasks visible to the caller.

    Returns: {"items": [...], "meta": {"total", "page", "limit", "pages"}}
    """
    page = filters.get("page") or 1
    limit = filters.get("limit") or 10
    sort_column = SORTABLE_COLUMNS[filters.get("sort_by") or "created_at"]
    descending = (filters.get("sort_order") or "desc").lower() == "desc"

    stmt = _apply_filters(select(Task), filters, caller)

    total = session.execute(
        select(func.count()).select_from(stmt.order_by(None).subquery())
    ).scalar_one()

    order = sort_column.desc() if descending else sort_column.asc()
    rows = session.execute(
        stmt.order_by(order, Task.id.desc() if descending else Task.id.asc())
        .offset((page - 1) * limit)
        .limit(limit)
    ).scalars().all()

    return {
        "items": [_build_task_dict(t) for t in rows],
        "meta": {
            "total": total,
            "page": page,
            "limit": limit,
            "pages": math.ceil(total / limit) or 1,
        },
    }


def get_task(task_id: int, caller: Caller, session: Session) -> dict:
    return _build_task_dict(_get_task_or_404(task_id, caller, session))


def update_task(
        task_id: int,
        data: dict,
        caller: Caller,
        session: Session,
) -> tuple[dict, TaskStatusEvent | None]:
    """
    Applies a partial update.

    Returns: (task dict, status event). The event is None unless the
    status actually changed.
    """
    task = _get_task_or_404(task_id, caller, session)
    original_status = task.status

    for field in _UPDATABLE_FIELDS:
        if field not in data:
            continue
        value = data[field]
        if field == "status":
            value = TaskStatus(value)
        elif field == "priority":
            value = TaskPriority(value)
        setattr(task, field, value)

    session.flush()
    session.refresh(task)

    event = None
    if task.status != original_status:
        event = TaskStatusEvent(task.id, task.status.value)
    return _build_task_dict(task), event


def delete_task(task_id: int, caller: Caller, session: Session) -> dict:
    task = _get_task_or_404(task_id, caller, session)
    session.delete(task)
    session.flush()
    return {"success": True}


def get_statistics(caller: Caller, session: Session) -> dict:
    """Counts by status plus the number of HIGH priority tasks."""

    def _count_where(condition):
        return func.coalesce(func.sum(case((condition, 1), else_=0)), 0)

    stmt = select(
        func.count(Task.id),
        _count_where(Task.status == TaskStatus.COMPLETED),
        _count_where(Task.status == TaskStatus.IN_PROGRESS),
        _count_where(Task.status == TaskStatus.PENDING),
        _count_where(Task.priority == TaskPriority.HIGH),
    )
    stmt = _scope_to_caller(stmt, caller)
    total, completed, in_progress, pending, high = session.execute(stmt).one()

    return {
        "total": int(total or 0),
        "completed": int(completed or 0),
        "in_progress": int(in_progress or 0),
        "pending": int(pending or 0),
        "high_priority": int(high or 0),
    }


def batch_process(
        task_ids: list[int],
        action: str,
        caller: Caller,
        session: Session,
) -> tuple[dict, list[TaskStatusEvent]]:
    """
    Completes or deletes many tasks at once. Ids the caller cannot see are
    silently dropped from the set.

    Raises:
      AppError(INVALID_BATCH_ACTION, 400) — action is not complete/delete.

    Returns: ({"affected": n}, status events for tasks that became COMPLETED)
    """
    if action not in BATCH_ACTIONS:
        raise AppError(
            ErrorCode.INVALID_BATCH_ACTION,
            f"Unknown action: {action}. Expected one of: {', '.join(BATCH_ACTIONS)}.",
            400,
            field="action",
        )

    ids = _owned_ids(task_ids, caller, session)
    if not ids:
        return {"affected": 0}, []

    if action == "delete":
        result = session.execute(
            delete(Task).where(Task.id.in_(ids)).execution_options(synchronize_session=False)
        )
        session.expire_all()
        return {"affected": result.rowcount or 0}, []

    changing = list(session.execute(
        select(Task.id).where(Task.id.in_(ids), Task.status != TaskStatus.COMPLETED)
    ).scalars().all())
    result = session.execute(
        update(Task)
        .where(Task.id.in_(ids))
        .values(status=TaskStatus.COMPLETED, updated_at=func.now())
        .execution_options(synchronize_session=False)
    )
    session.expire_all()

    events = [TaskStatusEvent(task_id, TaskStatus.COMPLETED.value) for task_id in changing]
    return {"affected": result.rowcount or 0}, events
