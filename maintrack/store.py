"""
Task store: the in-memory state the UI reads synchronously.

Reads are plain filters over the current snapshot. Mutators delegate to the
repository; the snapshot itself converges through the change feed, which
replaces it wholesale (or merges single rows) via `set_tasks`.
"""

from __future__ import annotations

from contextlib import contextmanager
from datetime import datetime
from typing import Callable, Iterator, Optional

import structlog

from .errors import error_reason
from .mapping import apply_patch, utcnow
from .metrics import MetricsCollector
from .notifications import LogNoticeSink, NoticeSink
from .repository import TaskRepository
from .schemas.common import TaskStatus
from .schemas.tasks import Task, TaskDraft, TaskPatch

log = structlog.get_logger()

StoreObserver = Callable[["TaskStore"], None]


class TaskStore:
    def __init__(
        self,
        repository: TaskRepository,
        optimistic_updates: bool = True,
        notices: Optional[NoticeSink] = None,
        metrics: Optional[MetricsCollector] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._repository = repository
        self._optimistic = optimistic_updates
        self._notices = notices or LogNoticeSink()
        self._metrics = metrics
        self._clock = clock
        self._tasks: list[Task] = []
        self._inflight = 0
        self._error: Optional[str] = None
        self._observers: list[StoreObserver] = []

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def tasks(self) -> list[Task]:
        return list(self._tasks)

    @property
    def loading(self) -> bool:
        return self._inflight > 0

    @property
    def error(self) -> Optional[str]:
        return self._error

    def on_change(self, observer: StoreObserver) -> None:
        """Register an observer called after every state change."""
        self._observers.append(observer)

    def _notify(self) -> None:
        for observer in list(self._observers):
            try:
                observer(self)
            except Exception:
                log.exception("store.observer_error")

    def set_tasks(self, tasks: list[Task]) -> None:
        self._tasks = list(tasks)
        if self._metrics:
            self._metrics.set_gauge("tasks_cached", len(self._tasks))
        self._notify()

    def upsert(self, task: Task) -> None:
        for i, existing in enumerate(self._tasks):
            if existing.id == task.id:
                self._tasks[i] = task
                break
        else:
            self._tasks.insert(0, task)
        self._notify()

    def remove(self, task_id: str) -> None:
        self._tasks = [t for t in self._tasks if t.id != task_id]
        self._notify()

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_by_status(self, status: TaskStatus) -> list[Task]:
        return [t for t in self._tasks if t.status == status]

    def get_cached(self, task_id: str) -> Optional[Task]:
        """Snapshot lookup. May lag the remote store; see `get_by_id`."""
        for task in self._tasks:
            if task.id == task_id:
                return task
        return None

    def get_by_created_range(
        self, start: Optional[datetime] = None, end: Optional[datetime] = None
    ) -> list[Task]:
        """Tasks created within [start, end]; either bound may be omitted."""
        return [
            t
            for t in self._tasks
            if (start is None or t.created_at >= start) and (end is None or t.created_at <= end)
        ]

    async def get_by_id(self, task_id: str) -> Optional[Task]:
        """Authoritative lookup through the repository."""
        try:
            return await self._repository.fetch_by_id(task_id)
        except Exception as exc:
            self._error = error_reason(exc)
            self._notices.error(f"Failed to fetch task: {error_reason(exc)}")
            self._notify()
            raise

    async def refresh(self) -> None:
        """Manual full reload of the snapshot."""
        with self._busy("refresh"):
            try:
                tasks = await self._repository.fetch_all()
            except Exception as exc:
                self._notices.error(f"Failed to fetch tasks: {error_reason(exc)}")
                raise
        self.set_tasks(tasks)

    # ------------------------------------------------------------------
    # Mutators
    # ------------------------------------------------------------------

    @contextmanager
    def _busy(self, action: str) -> Iterator[None]:
        self._inflight += 1
        self._error = None
        self._notify()
        try:
            yield
        except Exception as exc:
            self._error = error_reason(exc)
            if self._metrics and action != "refresh":
                self._metrics.inc("mutation_failures_total")
            log.warning(f"store.{action}_failed", error=self._error)
            raise
        finally:
            self._inflight -= 1
            if self._metrics and action != "refresh":
                self._metrics.inc("mutations_total")
            self._notify()

    async def add(self, draft: TaskDraft) -> Task:
        """Create a task. The snapshot picks it up from the change feed."""
        with self._busy("add"):
            return await self._repository.create(draft)

    async def update(self, task_id: str, patch: TaskPatch, acting_user: Optional[str] = None) -> None:
        with self._busy("update"):
            patched = self._patch_locally(task_id, patch)
            try:
                await self._repository.update(task_id, patch, acting_user)
            except Exception:
                if patched is not None:
                    self._revert_patch(*patched)
                raise

    async def delete(self, task_id: str) -> None:
        with self._busy("delete"):
            removed = self._remove_locally(task_id)
            try:
                await self._repository.delete(task_id)
            except Exception:
                if removed is not None:
                    self._restore_removed(*removed)
                raise

    # ------------------------------------------------------------------
    # Optimistic patches
    # ------------------------------------------------------------------

    def _patch_locally(self, task_id: str, patch: TaskPatch) -> Optional[tuple[Task, Task]]:
        """Apply the patch to the cached entry. Status history is never touched here."""
        if not self._optimistic:
            return None
        for i, task in enumerate(self._tasks):
            if task.id == task_id:
                patched = apply_patch(task, patch, self._clock())
                self._tasks[i] = patched
                self._notify()
                return task, patched
        return None

    def _revert_patch(self, original: Task, patched: Task) -> None:
        for i, task in enumerate(self._tasks):
            # only if the feed has not replaced the entry meanwhile
            if task is patched:
                self._tasks[i] = original
                self._notify()
                return

    def _remove_locally(self, task_id: str) -> Optional[tuple[int, Task]]:
        if not self._optimistic:
            return None
        for i, task in enumerate(self._tasks):
            if task.id == task_id:
                del self._tasks[i]
                self._notify()
                return i, task
        return None

    def _restore_removed(self, index: int, task: Task) -> None:
        if any(t.id == task.id for t in self._tasks):
            return
        self._tasks.insert(min(index, len(self._tasks)), task)
        self._notify()
