"""
Change feed listener.

Keeps the caller's task list eventually consistent with the remote store by
reacting to row-level change events instead of polling:
- task insert/update: full refetch (default) or fetch-and-merge of that row
- task delete: the row is dropped from the view, nothing is fetched
- any status_history change: full refetch
- first acknowledgment: one initial full fetch seeds the caller

Refresh failures are logged and swallowed; the next event re-synchronizes.
"""

from __future__ import annotations

import asyncio
from enum import Enum
from typing import Any, Callable, Coroutine, Optional

import structlog

from ..mapping import HISTORY_TABLE, TASKS_TABLE
from ..metrics import MetricsCollector
from ..remote.base import ChangeChannel, ChangeKind, RowChange, Subscription
from ..repository import TaskRepository
from ..schemas.tasks import Task

log = structlog.get_logger()

WATCHED_TABLES = (TASKS_TABLE, HISTORY_TABLE)

TasksCallback = Callable[[list[Task]], None]
ViewSource = Callable[[], list[Task]]


class FeedState(str, Enum):
    UNSUBSCRIBED = "unsubscribed"
    CONNECTING = "connecting"
    SUBSCRIBED = "subscribed"


class RefreshStrategy(str, Enum):
    REFETCH = "refetch"
    MERGE = "merge"


class ChangeFeedListener:
    """
    Owns the single change-feed subscription of a session.

    Subscribing again tears the previous subscription down first. Refreshes
    are numbered; a result from a refresh that started before the last
    delivered one is dropped instead of overwriting newer data.
    """

    def __init__(
        self,
        channel: ChangeChannel,
        repository: TaskRepository,
        strategy: RefreshStrategy = RefreshStrategy.REFETCH,
        debounce_seconds: float = 0.0,
        metrics: Optional[MetricsCollector] = None,
    ):
        self._channel = channel
        self._repository = repository
        self._strategy = strategy
        self._debounce = debounce_seconds
        self._metrics = metrics

        self._state = FeedState.UNSUBSCRIBED
        self._handle: Optional[Subscription] = None
        self._callback: Optional[TasksCallback] = None
        self._view_source: Optional[ViewSource] = None
        self._view: list[Task] = []
        self._generation = 0
        self._refresh_seq = 0
        self._delivered_seq = 0
        self._refresh_scheduled = False
        self._background: set[asyncio.Task] = set()

    @property
    def state(self) -> FeedState:
        return self._state

    @property
    def tasks(self) -> list[Task]:
        return list(self._view)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def subscribe(self, callback: TasksCallback, view: Optional[ViewSource] = None) -> None:
        """Open the subscription and deliver an initial full task list.

        `view` supplies the caller's current list; merges and deletions are
        applied to it. Without it the last delivered list is used.
        """
        if self._state != FeedState.UNSUBSCRIBED:
            await self.unsubscribe()

        self._generation += 1
        generation = self._generation
        self._callback = callback
        self._view_source = view
        self._state = FeedState.CONNECTING
        log.info("feed.connecting", tables=WATCHED_TABLES, strategy=self._strategy.value)

        async def handler(change: RowChange) -> None:
            if generation != self._generation:
                return
            await self._on_change(change)

        try:
            handle = await self._channel.subscribe(WATCHED_TABLES, handler)
        except Exception:
            if generation == self._generation:
                self._state = FeedState.UNSUBSCRIBED
                self._callback = None
            log.exception("feed.subscribe_failed")
            raise

        if generation != self._generation:
            # unsubscribed while the channel was connecting
            await handle.close()
            return

        self._handle = handle
        self._state = FeedState.SUBSCRIBED
        log.info("feed.subscribed")
        await self._refresh_all("initial")

    async def unsubscribe(self) -> None:
        """Release the channel handle. Repeated calls are no-ops."""
        self._generation += 1
        handle, self._handle = self._handle, None
        self._state = FeedState.UNSUBSCRIBED
        self._callback = None
        self._view_source = None
        self._refresh_scheduled = False

        for task in list(self._background):
            task.cancel()
        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)
        self._background.clear()

        if handle is not None:
            await handle.close()
            log.info("feed.unsubscribed")

    # ------------------------------------------------------------------
    # Event handling
    # ------------------------------------------------------------------

    async def _on_change(self, change: RowChange) -> None:
        if self._metrics:
            self._metrics.inc("feed_events_total")
        log.debug("feed.event", table=change.table, kind=change.kind.value, seq=change.sequence_id)

        if change.table == HISTORY_TABLE:
            await self._request_full_refresh("history_changed")
            return
        if change.table != TASKS_TABLE:
            return

        if change.kind == ChangeKind.DELETE:
            task_id = change.old.get("id")
            if not isinstance(task_id, str):
                log.error("feed.invalid_payload", table=change.table, kind=change.kind.value)
                return
            self._remove(task_id)
            return

        task_id = change.new.get("id")
        if not isinstance(task_id, str):
            log.error("feed.invalid_payload", table=change.table, kind=change.kind.value)
            return
        if self._strategy == RefreshStrategy.MERGE:
            await self._merge_row(task_id)
        else:
            await self._request_full_refresh(f"task_{change.kind.value.lower()}")

    async def _request_full_refresh(self, reason: str) -> None:
        if self._debounce <= 0:
            await self._refresh_all(reason)
            return
        if self._refresh_scheduled:
            return
        self._refresh_scheduled = True
        self._spawn(self._debounced_refresh(reason))

    async def _debounced_refresh(self, reason: str) -> None:
        await asyncio.sleep(self._debounce)
        self._refresh_scheduled = False
        await self._refresh_all(reason)

    def _spawn(self, coro: Coroutine[Any, Any, None]) -> None:
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _refresh_all(self, reason: str) -> None:
        generation = self._generation
        seq = self._next_seq()
        try:
            tasks = await self._repository.fetch_all()
        except Exception as exc:
            if self._metrics:
                self._metrics.inc("refresh_failures_total")
            log.warning("feed.refresh_failed", reason=reason, error=str(exc))
            return
        if self._metrics:
            self._metrics.inc("refreshes_total")
        if generation != self._generation or not self._accept(seq):
            return
        log.info("feed.refreshed", reason=reason, tasks=len(tasks))
        self._deliver(tasks)

    async def _merge_row(self, task_id: str) -> None:
        generation = self._generation
        seq = self._next_seq()
        try:
            task = await self._repository.fetch_by_id(task_id)
        except Exception as exc:
            if self._metrics:
                self._metrics.inc("refresh_failures_total")
            log.warning("feed.merge_failed", task_id=task_id, error=str(exc))
            return
        if generation != self._generation or not self._accept(seq):
            return
        if task is None:
            self._remove(task_id)
            return

        current = self._current_view()
        for i, existing in enumerate(current):
            if existing.id == task.id:
                current[i] = task
                break
        else:
            current.insert(0, task)
        self._deliver(current)

    def _remove(self, task_id: str) -> None:
        # A deletion is authoritative: every refresh already in flight may still hold the row.
        self._delivered_seq = self._next_seq()
        self._deliver([t for t in self._current_view() if t.id != task_id])

    # ------------------------------------------------------------------
    # Delivery
    # ------------------------------------------------------------------

    def _next_seq(self) -> int:
        self._refresh_seq += 1
        return self._refresh_seq

    def _accept(self, seq: int) -> bool:
        if seq < self._delivered_seq:
            log.debug("feed.stale_refresh_dropped", seq=seq, delivered=self._delivered_seq)
            return False
        self._delivered_seq = seq
        return True

    def _current_view(self) -> list[Task]:
        if self._view_source is not None:
            return list(self._view_source())
        return list(self._view)

    def _deliver(self, tasks: list[Task]) -> None:
        self._view = list(tasks)
        if self._metrics:
            self._metrics.set_gauge("tasks_cached", len(tasks))
        if self._callback is None:
            return
        try:
            self._callback(list(tasks))
        except Exception:
            log.exception("feed.callback_error")
