"""
Test doubles for the collaborators at the edge of the sync core.
"""

from __future__ import annotations

import asyncio
from typing import Any, Optional

from maintrack.errors import RemoteFailure
from maintrack.notifications import Notification
from maintrack.remote.base import Filters, Row


class RecordingNotices:
    def __init__(self):
        self.successes: list[str] = []
        self.errors: list[str] = []

    def success(self, message: str) -> None:
        self.successes.append(message)

    def error(self, message: str) -> None:
        self.errors.append(message)


class RecordingDispatcher:
    def __init__(self):
        self.sent: list[Notification] = []

    async def send(self, notification: Notification) -> Any:
        self.sent.append(notification)
        return {"success": True}

    def types(self) -> list[str]:
        return [n.type.value for n in self.sent]


class FailingDispatcher:
    def __init__(self):
        self.attempts = 0

    async def send(self, notification: Notification) -> Any:
        self.attempts += 1
        raise RemoteFailure("notification function unavailable")


class FlakyRemote:
    """
    Wraps a real remote and fails selected calls.

    `fail_on` maps (operation, table) to the number of calls that should fail;
    e.g. {("insert", "status_history"): 1} fails the next history insert once.
    `pass_first` lets that many matching calls through before failures start.
    """

    def __init__(
        self,
        inner,
        fail_on: Optional[dict[tuple[str, str], int]] = None,
        pass_first: Optional[dict[tuple[str, str], int]] = None,
    ):
        self._inner = inner
        self.fail_on = dict(fail_on or {})
        self.pass_first = dict(pass_first or {})
        self.calls: list[tuple[str, str]] = []

    def _maybe_fail(self, op: str, table: str) -> None:
        self.calls.append((op, table))
        if self.pass_first.get((op, table), 0):
            self.pass_first[(op, table)] -= 1
            return
        remaining = self.fail_on.get((op, table), 0)
        if remaining:
            self.fail_on[(op, table)] = remaining - 1
            raise RemoteFailure(f"injected {op} failure on {table}")

    async def select(self, table: str, **kwargs) -> list[Row]:
        self._maybe_fail("select", table)
        return await self._inner.select(table, **kwargs)

    async def insert(self, table: str, values: Row) -> Row:
        self._maybe_fail("insert", table)
        return await self._inner.insert(table, values)

    async def update(self, table: str, values: Row, *, filters: Filters) -> list[Row]:
        self._maybe_fail("update", table)
        return await self._inner.update(table, values, filters=filters)

    async def delete(self, table: str, *, filters: Filters) -> list[Row]:
        self._maybe_fail("delete", table)
        return await self._inner.delete(table, filters=filters)


async def wait_until(predicate, timeout: float = 3.0, interval: float = 0.01) -> None:
    """Poll `predicate` until it holds; fail the test after `timeout` seconds."""
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not reached before timeout")
        await asyncio.sleep(interval)
