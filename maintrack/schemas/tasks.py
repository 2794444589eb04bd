"""Task aggregate, audit record and remote row schemas."""

from __future__ import annotations

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .common import TaskPriority, TaskStatus

UNASSIGNED = "Unassigned"


# ---------------------------------------------------------------------------
# Remote rows
# ---------------------------------------------------------------------------

class TaskRow(BaseModel):
    """A row of the `tasks` table as returned by the remote store."""
    model_config = ConfigDict(extra="ignore")

    id: str
    title: str
    description: Optional[str] = None
    status: TaskStatus
    priority: TaskPriority
    assigned_to: Optional[str] = None
    user_id: Optional[str] = None
    unit_id: Optional[str] = None
    created_at: datetime
    updated_at: datetime


class StatusHistoryRow(BaseModel):
    """A row of the `status_history` table."""
    model_config = ConfigDict(extra="ignore")

    id: str
    task_id: str
    previous_status: TaskStatus
    new_status: TaskStatus
    user_id: Optional[str] = None
    user_name: Optional[str] = None
    remarks: Optional[str] = None
    created_at: datetime


# ---------------------------------------------------------------------------
# Aggregate
# ---------------------------------------------------------------------------

class StatusChange(BaseModel):
    """Immutable audit record of one status transition."""
    model_config = ConfigDict(frozen=True)

    id: str
    task_id: str
    previous_status: TaskStatus
    new_status: TaskStatus
    changed_by: str
    remarks: str = ""
    timestamp: datetime


class Task(BaseModel):
    id: str
    title: str
    description: str = ""
    status: TaskStatus
    priority: TaskPriority
    assigned_to: str = UNASSIGNED
    user_id: Optional[str] = None
    unit_id: Optional[str] = None
    created_at: datetime
    updated_at: datetime
    status_history: List[StatusChange] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Mutations
# ---------------------------------------------------------------------------

def _required_title(value: str) -> str:
    value = value.strip()
    if not value:
        raise ValueError("title must not be empty")
    return value


def _assignee(value: str) -> str:
    return value.strip() or UNASSIGNED


class TaskDraft(BaseModel):
    """Fields supplied by the user when creating a task."""
    title: str
    description: str = ""
    status: TaskStatus = TaskStatus.PENDING
    priority: TaskPriority = TaskPriority.MEDIUM
    assigned_to: str = UNASSIGNED

    @field_validator("title")
    @classmethod
    def _check_title(cls, v: str) -> str:
        return _required_title(v)

    @field_validator("assigned_to")
    @classmethod
    def _default_assignee(cls, v: str) -> str:
        return _assignee(v)


class TaskPatch(BaseModel):
    """Partial update. Fields left unset are not written."""
    title: Optional[str] = None
    description: Optional[str] = None
    status: Optional[TaskStatus] = None
    priority: Optional[TaskPriority] = None
    assigned_to: Optional[str] = None
    remarks: Optional[str] = None

    @field_validator("title")
    @classmethod
    def _check_title(cls, v: Optional[str]) -> Optional[str]:
        return None if v is None else _required_title(v)

    @field_validator("assigned_to")
    @classmethod
    def _default_assignee(cls, v: Optional[str]) -> Optional[str]:
        return None if v is None else _assignee(v)
