"""
Translation between remote rows and the Task aggregate.

Every place a raw `tasks` / `status_history` row becomes a Task goes through
this module: the repository, the change-feed listener and the store's
optimistic patches all share it.
"""

from __future__ import annotations

from collections import defaultdict
from datetime import datetime, timezone
from typing import Any, Iterable, Mapping

from pydantic import BaseModel, ValidationError

from .errors import DecodeError
from .schemas.common import TaskStatus
from .schemas.tasks import (
    UNASSIGNED,
    StatusChange,
    StatusHistoryRow,
    Task,
    TaskDraft,
    TaskPatch,
    TaskRow,
)

TASKS_TABLE = "tasks"
HISTORY_TABLE = "status_history"

CREATED_REMARKS = "Task created"
DEFAULT_REMARKS = "No remarks provided"

_PATCH_COLUMNS = ("title", "description", "status", "priority", "assigned_to")


def _decode(model: type[BaseModel], table: str, raw: Mapping[str, Any]) -> Any:
    try:
        return model.model_validate(dict(raw))
    except ValidationError as exc:
        raise DecodeError(table, str(exc)) from exc


def decode_task_row(raw: Mapping[str, Any]) -> TaskRow:
    return _decode(TaskRow, TASKS_TABLE, raw)


def decode_history_row(raw: Mapping[str, Any]) -> StatusHistoryRow:
    return _decode(StatusHistoryRow, HISTORY_TABLE, raw)


def to_status_change(row: StatusHistoryRow) -> StatusChange:
    return StatusChange(
        id=row.id,
        task_id=row.task_id,
        previous_status=row.previous_status,
        new_status=row.new_status,
        changed_by=row.user_name or row.user_id or "Unknown User",
        remarks=row.remarks or "",
        timestamp=row.created_at,
    )


def to_task(raw_task: Mapping[str, Any], raw_history: Iterable[Mapping[str, Any]] = ()) -> Task:
    """Assemble one aggregate from its task row and its history rows."""
    row = decode_task_row(raw_task)
    history = [decode_history_row(h) for h in raw_history]
    # sorted() is stable, so rows with equal timestamps keep the store's order
    history = sorted(history, key=lambda h: h.created_at)
    return Task(
        id=row.id,
        title=row.title,
        description=row.description or "",
        status=row.status,
        priority=row.priority,
        assigned_to=(row.assigned_to or "").strip() or UNASSIGNED,
        user_id=row.user_id,
        unit_id=row.unit_id,
        created_at=row.created_at,
        updated_at=row.updated_at,
        status_history=[to_status_change(h) for h in history],
    )


def assemble_tasks(
    raw_tasks: Iterable[Mapping[str, Any]],
    raw_history: Iterable[Mapping[str, Any]],
) -> list[Task]:
    """Group history rows by task id and build one aggregate per task row.

    Task order is preserved. History rows whose task is absent are ignored.
    """
    grouped: dict[str, list[Mapping[str, Any]]] = defaultdict(list)
    for h in raw_history:
        task_id = h.get("task_id")
        if not isinstance(task_id, str):
            raise DecodeError(HISTORY_TABLE, f"task_id missing in row {h.get('id')!r}")
        grouped[task_id].append(h)
    return [to_task(t, grouped.get(str(t.get("id")), [])) for t in raw_tasks]


# ---------------------------------------------------------------------------
# Outbound rows
# ---------------------------------------------------------------------------


def draft_to_row(
    draft: TaskDraft, user_id: str, unit_id: str, now: datetime
) -> dict[str, Any]:
    stamp = now.isoformat()
    return {
        "title": draft.title,
        "description": draft.description,
        "status": draft.status.value,
        "priority": draft.priority.value,
        "assigned_to": draft.assigned_to,
        "user_id": user_id,
        "unit_id": unit_id,
        "created_at": stamp,
        "updated_at": stamp,
    }


def patch_to_row(patch: TaskPatch, now: datetime) -> dict[str, Any]:
    """Column values for the fields actually present in the patch."""
    data = patch.model_dump(exclude_unset=True, exclude_none=True, mode="json")
    values = {k: v for k, v in data.items() if k in _PATCH_COLUMNS}
    values["updated_at"] = now.isoformat()
    return values


def history_row(
    task_id: str,
    previous_status: TaskStatus,
    new_status: TaskStatus,
    user_id: str,
    user_name: str,
    remarks: str,
    now: datetime,
) -> dict[str, Any]:
    return {
        "task_id": task_id,
        "previous_status": previous_status.value,
        "new_status": new_status.value,
        "user_id": user_id,
        "user_name": user_name,
        "remarks": remarks,
        "created_at": now.isoformat(),
    }


def apply_patch(task: Task, patch: TaskPatch, now: datetime) -> Task:
    """Local copy of `task` with the patch applied. History is left untouched."""
    data = patch.model_dump(exclude_unset=True, exclude_none=True)
    changes = {k: v for k, v in data.items() if k in _PATCH_COLUMNS}
    changes["updated_at"] = now
    return task.model_copy(update=changes)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)
