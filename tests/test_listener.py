"""Tests for the change feed listener."""

from __future__ import annotations

import asyncio

import pytest

from maintrack.errors import RemoteFailure
from maintrack.feed.listener import ChangeFeedListener, FeedState, RefreshStrategy
from maintrack.remote.base import ChangeKind, RowChange
from maintrack.repository import TaskRepository
from maintrack.schemas.common import TaskStatus
from maintrack.schemas.tasks import TaskDraft, TaskPatch

from .fakes import FlakyRemote, wait_until


class Collector:
    def __init__(self):
        self.deliveries: list[list] = []

    def __call__(self, tasks):
        self.deliveries.append(tasks)

    @property
    def latest(self):
        return self.deliveries[-1] if self.deliveries else None


class NeverAcks:
    async def subscribe(self, tables, handler):
        raise RemoteFailure("channel refused")


class ManualChannel:
    """A channel whose events the test pushes by hand."""

    def __init__(self):
        self.handler = None
        self.closed = 0

    async def subscribe(self, tables, handler):
        self.handler = handler
        return self

    async def close(self):
        self.closed += 1

    async def push(self, table, kind, new=None, old=None):
        await self.handler(RowChange(table=table, kind=kind, new=new or {}, old=old or {}))


# ---------------------------------------------------------------------------
# Lifecycle
# ---------------------------------------------------------------------------


async def test_subscribe_delivers_initial_fetch(remote, repository, listener):
    await repository.create(TaskDraft(title="Seeded"))
    collect = Collector()

    assert listener.state == FeedState.UNSUBSCRIBED
    await listener.subscribe(collect)
    assert listener.state == FeedState.SUBSCRIBED
    assert [t.title for t in collect.latest] == ["Seeded"]
    assert remote.subscription_count == 1


async def test_resubscribe_replaces_previous_subscription(remote, listener):
    first, second = Collector(), Collector()
    await listener.subscribe(first)
    await listener.subscribe(second)
    assert remote.subscription_count == 1
    assert listener.state == FeedState.SUBSCRIBED


async def test_unsubscribe_is_idempotent(remote, listener):
    await listener.subscribe(Collector())
    await listener.unsubscribe()
    await listener.unsubscribe()
    assert listener.state == FeedState.UNSUBSCRIBED
    assert remote.subscription_count == 0


async def test_subscribe_failure_resets_state(repository):
    feed = ChangeFeedListener(NeverAcks(), repository)
    with pytest.raises(RemoteFailure):
        await feed.subscribe(Collector())
    assert feed.state == FeedState.UNSUBSCRIBED


async def test_no_delivery_after_unsubscribe(repository, listener):
    collect = Collector()
    await listener.subscribe(collect)
    await listener.unsubscribe()
    count = len(collect.deliveries)

    await repository.create(TaskDraft(title="Late"))
    await asyncio.sleep(0.1)
    assert len(collect.deliveries) == count


# ---------------------------------------------------------------------------
# Events
# ---------------------------------------------------------------------------


async def test_insert_triggers_refresh(repository, listener, metrics):
    collect = Collector()
    await listener.subscribe(collect)

    task = await repository.create(TaskDraft(title="Live"))
    await wait_until(lambda: collect.latest and collect.latest[0].id == task.id
                     and len(collect.latest[0].status_history) == 1)
    await wait_until(lambda: metrics.get("feed_events_total") >= 2)
    assert metrics.get("refreshes_total") >= 2


async def test_history_change_refreshes_parent(repository, listener):
    collect = Collector()
    task = await repository.create(TaskDraft(title="Pump"))
    await listener.subscribe(collect)

    await repository.update(task.id, TaskPatch(status=TaskStatus.CLOSED, remarks="Done"))
    await wait_until(lambda: len(collect.latest[0].status_history) == 2)
    assert collect.latest[0].status == TaskStatus.CLOSED


async def test_delete_removes_row_without_fetch(repository):
    channel = ManualChannel()
    feed = ChangeFeedListener(channel, repository)
    collect = Collector()
    keep = await repository.create(TaskDraft(title="Keep"))
    gone = await repository.create(TaskDraft(title="Gone"))
    await feed.subscribe(collect)
    assert {t.id for t in collect.latest} == {keep.id, gone.id}

    await channel.push("tasks", ChangeKind.DELETE, old={"id": gone.id})
    assert [t.id for t in collect.latest] == [keep.id]

    await feed.unsubscribe()
    assert channel.closed == 1


async def test_delete_applies_to_caller_view(repository):
    channel = ManualChannel()
    feed = ChangeFeedListener(channel, repository)
    task = await repository.create(TaskDraft(title="Only"))
    view = []
    await feed.subscribe(lambda tasks: view.__setitem__(slice(None), tasks), view=lambda: view)

    await channel.push("tasks", ChangeKind.DELETE, old={"id": task.id})
    assert view == []
    await feed.unsubscribe()


async def test_invalid_payload_is_ignored(repository):
    channel = ManualChannel()
    feed = ChangeFeedListener(channel, repository)
    collect = Collector()
    await feed.subscribe(collect)
    count = len(collect.deliveries)

    await channel.push("tasks", ChangeKind.UPDATE, new={"title": "no id"})
    await channel.push("tasks", ChangeKind.DELETE, old={})
    assert len(collect.deliveries) == count
    await feed.unsubscribe()


async def test_merge_strategy_upserts_single_row(remote, repository):
    channel = ManualChannel()
    feed = ChangeFeedListener(channel, repository, strategy=RefreshStrategy.MERGE)
    collect = Collector()
    existing = await repository.create(TaskDraft(title="Existing"))
    await feed.subscribe(collect)

    added = await repository.create(TaskDraft(title="Added"))
    await channel.push("tasks", ChangeKind.INSERT, new={"id": added.id})
    assert [t.id for t in collect.latest] == [added.id, existing.id]

    await remote.update("tasks", {"title": "Renamed"}, filters={"id": existing.id})
    await channel.push("tasks", ChangeKind.UPDATE, new={"id": existing.id})
    assert [t.title for t in collect.latest] == ["Added", "Renamed"]
    await feed.unsubscribe()


async def test_refresh_failure_is_swallowed(remote, repository, sessions, metrics):
    channel = ManualChannel()
    flaky = FlakyRemote(remote)
    feed = ChangeFeedListener(channel, TaskRepository(flaky, sessions), metrics=metrics)
    collect = Collector()
    await repository.create(TaskDraft(title="Stable"))
    await feed.subscribe(collect)
    count = len(collect.deliveries)

    flaky.fail_on[("select", "tasks")] = 1
    await channel.push("status_history", ChangeKind.INSERT, new={"id": "h"})
    assert len(collect.deliveries) == count
    assert feed.state == FeedState.SUBSCRIBED
    assert metrics.get("refresh_failures_total") == 1

    await channel.push("status_history", ChangeKind.INSERT, new={"id": "h"})
    assert len(collect.deliveries) == count + 1
    await feed.unsubscribe()


async def test_callback_error_is_swallowed(repository):
    channel = ManualChannel()
    feed = ChangeFeedListener(channel, repository)

    def explode(tasks):
        raise RuntimeError("render failed")

    await feed.subscribe(explode)
    await channel.push("status_history", ChangeKind.INSERT, new={"id": "h"})
    assert feed.state == FeedState.SUBSCRIBED
    await feed.unsubscribe()


# ---------------------------------------------------------------------------
# Ordering
# ---------------------------------------------------------------------------


class GatedRepository:
    """Repository double whose fetch_all calls complete when the test says so."""

    def __init__(self):
        self.pending: list[asyncio.Future] = []

    async def fetch_all(self):
        fut = asyncio.get_running_loop().create_future()
        self.pending.append(fut)
        return await fut

    async def fetch_by_id(self, task_id):
        return None


async def test_stale_refresh_is_dropped():
    channel = ManualChannel()
    repo = GatedRepository()
    feed = ChangeFeedListener(channel, repo)
    collect = Collector()

    subscribing = asyncio.create_task(feed.subscribe(collect))
    await wait_until(lambda: len(repo.pending) == 1)
    repo.pending[0].set_result([])
    await subscribing

    older = asyncio.create_task(channel.push("status_history", ChangeKind.INSERT))
    await wait_until(lambda: len(repo.pending) == 2)
    newer = asyncio.create_task(channel.push("status_history", ChangeKind.INSERT))
    await wait_until(lambda: len(repo.pending) == 3)

    repo.pending[2].set_result(["new"])
    await newer
    repo.pending[1].set_result(["old"])
    await older

    assert collect.latest == ["new"]
    await feed.unsubscribe()


class StubTask:
    def __init__(self, task_id):
        self.id = task_id


async def test_delete_outranks_refresh_in_flight():
    channel = ManualChannel()
    repo = GatedRepository()
    feed = ChangeFeedListener(channel, repo)
    collect = Collector()

    subscribing = asyncio.create_task(feed.subscribe(collect))
    await wait_until(lambda: len(repo.pending) == 1)
    repo.pending[0].set_result([StubTask("gone")])
    await subscribing

    refreshing = asyncio.create_task(channel.push("status_history", ChangeKind.INSERT))
    await wait_until(lambda: len(repo.pending) == 2)
    await channel.push("tasks", ChangeKind.DELETE, old={"id": "gone"})
    assert collect.latest == []

    repo.pending[1].set_result([StubTask("gone")])
    await refreshing

    assert collect.latest == []
    await feed.unsubscribe()


async def test_debounce_coalesces_bursts(repository):
    channel = ManualChannel()
    feed = ChangeFeedListener(channel, repository, debounce_seconds=0.05)
    collect = Collector()
    await feed.subscribe(collect)
    count = len(collect.deliveries)

    for _ in range(5):
        await channel.push("status_history", ChangeKind.INSERT, new={"id": "h"})
    await wait_until(lambda: len(collect.deliveries) > count)
    await asyncio.sleep(0.1)
    assert len(collect.deliveries) == count + 1
    await feed.unsubscribe()
