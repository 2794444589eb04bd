"""
Task repository: the only translator between the Task aggregate and the
remote tables.

Handles:
- Eager loading of all tasks with their status history
- Task creation with its synthetic "created" audit entry
- Partial updates, appending an audit entry on every real status change
- Deletion of history rows before the task row, restoring them on failure
- Best-effort push notifications and user-facing notices for every mutator
"""

from __future__ import annotations

from datetime import datetime
from typing import Callable, Optional

import structlog
from pydantic import ValidationError

from .auth import SessionProvider, require_session, resolve_display_name
from .errors import DecodeError, MissingUnit, NotFound, PartialFailure, error_reason
from .mapping import (
    CREATED_REMARKS,
    DEFAULT_REMARKS,
    HISTORY_TABLE,
    TASKS_TABLE,
    assemble_tasks,
    decode_task_row,
    draft_to_row,
    history_row,
    patch_to_row,
    to_task,
    utcnow,
)
from .notifications import (
    LogNoticeSink,
    NoticeSink,
    NotificationDispatcher,
    dispatch_best_effort,
    task_closed,
    task_created,
)
from .remote.base import RemoteStore, Row
from .schemas.common import TaskStatus
from .schemas.tasks import Task, TaskDraft, TaskPatch
from .schemas.users import UserProfile

log = structlog.get_logger()

PROFILES_TABLE = "profiles"


class TaskRepository:
    def __init__(
        self,
        remote: RemoteStore,
        sessions: SessionProvider,
        dispatcher: Optional[NotificationDispatcher] = None,
        notices: Optional[NoticeSink] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._remote = remote
        self._sessions = sessions
        self._dispatcher = dispatcher
        self._notices = notices or LogNoticeSink()
        self._clock = clock

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def fetch_all(self) -> list[Task]:
        """All tasks, newest first, each with its ordered status history."""
        await require_session(self._sessions)
        task_rows = await self._remote.select(TASKS_TABLE, order_by="created_at", descending=True)
        history_rows = await self._remote.select(HISTORY_TABLE, order_by="created_at")
        return assemble_tasks(task_rows, history_rows)

    async def fetch_by_id(self, task_id: str) -> Optional[Task]:
        """The task with this id, or None when the row is absent."""
        await require_session(self._sessions)
        rows = await self._remote.select(TASKS_TABLE, filters={"id": task_id})
        if not rows:
            return None
        history_rows = await self._remote.select(
            HISTORY_TABLE, filters={"task_id": task_id}, order_by="created_at"
        )
        return to_task(rows[0], history_rows)

    async def fetch_profile(self, user_id: str) -> Optional[UserProfile]:
        rows = await self._remote.select(PROFILES_TABLE, filters={"id": user_id})
        if not rows:
            return None
        try:
            return UserProfile.model_validate(rows[0])
        except ValidationError as exc:
            raise DecodeError(PROFILES_TABLE, str(exc)) from exc

    # ------------------------------------------------------------------
    # Mutators
    # ------------------------------------------------------------------

    async def create(self, draft: TaskDraft) -> Task:
        try:
            task = await self._create(draft)
        except Exception as exc:
            log.warning("repository.create_failed", error=error_reason(exc))
            self._notices.error(f"Failed to create task: {error_reason(exc)}")
            raise
        self._notices.success("Task created successfully")
        return task

    async def update(self, task_id: str, patch: TaskPatch, acting_user: Optional[str] = None) -> None:
        try:
            await self._update(task_id, patch, acting_user)
        except Exception as exc:
            log.warning("repository.update_failed", task_id=task_id, error=error_reason(exc))
            self._notices.error(f"Failed to update task: {error_reason(exc)}")
            raise
        self._notices.success("Task updated successfully")

    async def delete(self, task_id: str) -> None:
        try:
            await self._delete(task_id)
        except Exception as exc:
            log.warning("repository.delete_failed", task_id=task_id, error=error_reason(exc))
            self._notices.error(f"Failed to delete task: {error_reason(exc)}")
            raise
        self._notices.success("Task deleted successfully")

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _create(self, draft: TaskDraft) -> Task:
        session = await require_session(self._sessions)
        profile = await self.fetch_profile(session.user_id)
        if profile is None or not profile.unit_id:
            raise MissingUnit(session.user_id)

        changed_by = resolve_display_name(session, profile)
        now = self._clock()

        raw_task = await self._remote.insert(
            TASKS_TABLE, draft_to_row(draft, session.user_id, profile.unit_id, now)
        )
        task_row = decode_task_row(raw_task)

        # The creation entry reuses transition semantics: previous == new.
        try:
            raw_history = await self._remote.insert(
                HISTORY_TABLE,
                history_row(
                    task_row.id,
                    draft.status,
                    draft.status,
                    session.user_id,
                    changed_by,
                    CREATED_REMARKS,
                    now,
                ),
            )
        except Exception as exc:
            await self._discard_task(task_row.id, exc)
            raise

        log.info("repository.task_created", task_id=task_row.id, unit_id=profile.unit_id)
        await dispatch_best_effort(self._dispatcher, task_created(task_row.id, task_row.title))
        return to_task(raw_task, [raw_history])

    async def _discard_task(self, task_id: str, cause: BaseException) -> None:
        """Remove a task row whose creation entry could not be written."""
        try:
            await self._remote.delete(TASKS_TABLE, filters={"id": task_id})
        except Exception as exc:
            log.error("repository.discard_failed", task_id=task_id, error=error_reason(exc))
            raise PartialFailure(
                f"Task {task_id} was stored without its creation entry: {error_reason(cause)}", exc
            ) from exc

    async def _update(self, task_id: str, patch: TaskPatch, acting_user: Optional[str]) -> None:
        session = await require_session(self._sessions)

        rows = await self._remote.select(TASKS_TABLE, filters={"id": task_id})
        if not rows:
            raise NotFound(TASKS_TABLE, task_id)
        current = decode_task_row(rows[0])

        transition = patch.status is not None and patch.status != current.status
        user_id = acting_user or session.user_id
        if transition:
            profile = await self.fetch_profile(user_id)
            changed_by = resolve_display_name(
                session if user_id == session.user_id else None, profile
            )

        now = self._clock()
        values = patch_to_row(patch, now)
        updated = await self._remote.update(TASKS_TABLE, values, filters={"id": task_id})
        if not updated:
            raise NotFound(TASKS_TABLE, task_id)

        if not transition:
            log.info("repository.task_updated", task_id=task_id)
            return

        # The row already carries the new status; an unrecorded transition is reverted.
        try:
            await self._remote.insert(
                HISTORY_TABLE,
                history_row(
                    task_id,
                    current.status,
                    patch.status,
                    user_id,
                    changed_by,
                    patch.remarks or DEFAULT_REMARKS,
                    now,
                ),
            )
        except Exception as exc:
            previous = {column: rows[0].get(column) for column in values}
            await self._revert_update(task_id, previous, exc)
            raise
        log.info(
            "repository.status_changed",
            task_id=task_id,
            previous=current.status.value,
            new=patch.status.value,
        )

        if patch.status == TaskStatus.CLOSED:
            await dispatch_best_effort(self._dispatcher, task_closed(task_id, current.title))

    async def _revert_update(self, task_id: str, previous: Row, cause: BaseException) -> None:
        """Write back the columns of a status change whose audit entry was not stored."""
        try:
            await self._remote.update(TASKS_TABLE, previous, filters={"id": task_id})
        except Exception as exc:
            log.error("repository.revert_failed", task_id=task_id, error=error_reason(exc))
            raise PartialFailure(
                f"Status of task {task_id} changed without a history entry: {error_reason(cause)}",
                exc,
            ) from exc
        log.warning("repository.update_reverted", task_id=task_id, columns=sorted(previous))

    async def _delete(self, task_id: str) -> None:
        await require_session(self._sessions)

        # History first: its rows reference the task row.
        removed_history = await self._remote.delete(HISTORY_TABLE, filters={"task_id": task_id})
        try:
            await self._remote.delete(TASKS_TABLE, filters={"id": task_id})
        except Exception as exc:
            await self._restore_history(task_id, removed_history, exc)
            raise
        log.info("repository.task_deleted", task_id=task_id, history_rows=len(removed_history))

    async def _restore_history(self, task_id: str, rows: list[Row], cause: BaseException) -> None:
        try:
            for row in rows:
                await self._remote.insert(HISTORY_TABLE, row)
        except Exception as exc:
            log.error("repository.restore_failed", task_id=task_id, error=error_reason(exc))
            raise PartialFailure(
                f"Status history of task {task_id} was deleted but the task was not: "
                f"{error_reason(cause)}",
                exc,
            ) from exc
        log.warning("repository.history_restored", task_id=task_id, rows=len(rows))
