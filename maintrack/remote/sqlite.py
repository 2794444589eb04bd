"""
Local SQLite backend.

Implements both the remote store and its change channel in-process: every
committed write is published, in commit order, to the subscriptions whose
tables it touches. Used for single-node deployments and as the test double
of the hosted backend.
"""

from __future__ import annotations

import asyncio
import os
import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import AsyncIterator, Optional, Sequence

import aiosqlite
import structlog

from ..errors import RemoteFailure
from .base import ChangeHandler, ChangeKind, Filters, Row, RowChange

log = structlog.get_logger()

_SCHEMA = """
CREATE TABLE IF NOT EXISTS units (
    id          TEXT PRIMARY KEY,
    name        TEXT NOT NULL,
    created_at  TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS profiles (
    id          TEXT PRIMARY KEY,
    name        TEXT,
    designation TEXT,
    unit_id     TEXT REFERENCES units(id),
    created_at  TEXT NOT NULL,
    updated_at  TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS tasks (
    id          TEXT PRIMARY KEY,
    title       TEXT NOT NULL,
    description TEXT,
    status      TEXT NOT NULL CHECK (status IN ('Pending', 'In Progress', 'Closed')),
    priority    TEXT NOT NULL CHECK (priority IN ('Low', 'Medium', 'High')),
    assigned_to TEXT NOT NULL DEFAULT 'Unassigned',
    user_id     TEXT,
    unit_id     TEXT REFERENCES units(id),
    created_at  TEXT NOT NULL,
    updated_at  TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS status_history (
    id              TEXT PRIMARY KEY,
    task_id         TEXT NOT NULL REFERENCES tasks(id),
    previous_status TEXT NOT NULL,
    new_status      TEXT NOT NULL,
    user_id         TEXT,
    user_name       TEXT,
    remarks         TEXT,
    created_at      TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_history_task ON status_history(task_id);
"""

TABLE_COLUMNS: dict[str, tuple[str, ...]] = {
    "units": ("id", "name", "created_at"),
    "profiles": ("id", "name", "designation", "unit_id", "created_at", "updated_at"),
    "tasks": (
        "id", "title", "description", "status", "priority", "assigned_to",
        "user_id", "unit_id", "created_at", "updated_at",
    ),
    "status_history": (
        "id", "task_id", "previous_status", "new_status", "user_id",
        "user_name", "remarks", "created_at",
    ),
}


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _check_columns(table: str, columns: Sequence[str]) -> None:
    known = TABLE_COLUMNS.get(table)
    if known is None:
        raise RemoteFailure(f"Unknown table: {table}")
    unknown = [c for c in columns if c not in known]
    if unknown:
        raise RemoteFailure(f"Unknown columns for {table}: {unknown}")


def _where(filters: Optional[Filters]) -> tuple[str, list]:
    if not filters:
        return "", []
    clause = " AND ".join(f"{col} = ?" for col in filters)
    return f" WHERE {clause}", list(filters.values())


class _LocalSubscription:
    """Delivers published changes to one handler, one at a time, in order."""

    def __init__(self, remote: "SqliteRemote", tables: Sequence[str], handler: ChangeHandler):
        self._remote = remote
        self.tables = frozenset(tables)
        self._handler = handler
        self._queue: asyncio.Queue[RowChange] = asyncio.Queue()
        self._task: asyncio.Task | None = asyncio.create_task(self._pump())

    def offer(self, change: RowChange) -> None:
        if change.table in self.tables:
            self._queue.put_nowait(change)

    async def _pump(self) -> None:
        while True:
            change = await self._queue.get()
            try:
                await self._handler(change)
            except Exception:
                log.exception(
                    "sqlite_remote.handler_error",
                    table=change.table,
                    kind=change.kind.value,
                )

    async def close(self) -> None:
        self._remote._detach(self)
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None


class SqliteRemote:
    """aiosqlite-backed remote store with an in-process change feed."""

    def __init__(self, db_path: str):
        self._db_path = db_path
        self._db: aiosqlite.Connection | None = None
        self._write_lock = asyncio.Lock()
        self._subscriptions: list[_LocalSubscription] = []
        self._sequence = 0

    async def open(self) -> None:
        if self._db_path != ":memory:":
            os.makedirs(os.path.dirname(self._db_path) or ".", exist_ok=True)
        self._db = await aiosqlite.connect(self._db_path)
        self._db.row_factory = aiosqlite.Row
        await self._db.execute("PRAGMA foreign_keys = ON")
        await self._db.executescript(_SCHEMA)
        await self._db.commit()

    async def close(self) -> None:
        for sub in list(self._subscriptions):
            await sub.close()
        if self._db:
            await self._db.close()
            self._db = None

    @asynccontextmanager
    async def _translate(self, action: str) -> AsyncIterator[aiosqlite.Connection]:
        if self._db is None:
            raise RemoteFailure("SQLite remote is not open")
        try:
            yield self._db
        except aiosqlite.Error as exc:
            await self._db.rollback()
            log.warning("sqlite_remote.error", action=action, error=str(exc))
            raise RemoteFailure(f"{action} failed: {exc}", exc) from exc

    async def _fetch(self, db: aiosqlite.Connection, sql: str, params: list) -> list[Row]:
        cursor = await db.execute(sql, params)
        rows = await cursor.fetchall()
        return [dict(r) for r in rows]

    # --- Request/response ---

    async def select(
        self,
        table: str,
        *,
        filters: Optional[Filters] = None,
        order_by: Optional[str] = None,
        descending: bool = False,
    ) -> list[Row]:
        _check_columns(table, list(filters or {}) + ([order_by] if order_by else []))
        where, params = _where(filters)
        sql = f"SELECT * FROM {table}{where}"
        if order_by:
            direction = "DESC" if descending else "ASC"
            sql += f" ORDER BY {order_by} {direction}, rowid {direction}"
        async with self._translate(f"select {table}") as db:
            return await self._fetch(db, sql, params)

    async def insert(self, table: str, values: Row) -> Row:
        row = dict(values)
        row.setdefault("id", str(uuid.uuid4()))
        columns = TABLE_COLUMNS.get(table, ())
        for stamp in ("created_at", "updated_at"):
            if stamp in columns:
                row.setdefault(stamp, _now())
        _check_columns(table, list(row))

        names = ", ".join(row)
        marks = ", ".join("?" for _ in row)
        async with self._write_lock:
            async with self._translate(f"insert {table}") as db:
                await db.execute(
                    f"INSERT INTO {table} ({names}) VALUES ({marks})", list(row.values())
                )
                await db.commit()
                stored = await self._fetch(db, f"SELECT * FROM {table} WHERE id = ?", [row["id"]])
            self._publish(table, ChangeKind.INSERT, new=stored[0])
        return stored[0]

    async def update(self, table: str, values: Row, *, filters: Filters) -> list[Row]:
        _check_columns(table, list(values) + list(filters))
        where, params = _where(filters)
        assignments = ", ".join(f"{col} = ?" for col in values)
        async with self._write_lock:
            async with self._translate(f"update {table}") as db:
                old_rows = await self._fetch(db, f"SELECT * FROM {table}{where}", params)
                if not old_rows:
                    return []
                await db.execute(
                    f"UPDATE {table} SET {assignments}{where}", list(values.values()) + params
                )
                await db.commit()
                ids = [r["id"] for r in old_rows]
                marks = ", ".join("?" for _ in ids)
                new_rows = await self._fetch(
                    db, f"SELECT * FROM {table} WHERE id IN ({marks})", ids
                )
            old_by_id = {r["id"]: r for r in old_rows}
            for row in new_rows:
                self._publish(table, ChangeKind.UPDATE, new=row, old=old_by_id.get(row["id"], {}))
        return new_rows

    async def delete(self, table: str, *, filters: Filters) -> list[Row]:
        _check_columns(table, list(filters))
        where, params = _where(filters)
        async with self._write_lock:
            async with self._translate(f"delete {table}") as db:
                old_rows = await self._fetch(db, f"SELECT * FROM {table}{where}", params)
                if not old_rows:
                    return []
                await db.execute(f"DELETE FROM {table}{where}", params)
                await db.commit()
            for row in old_rows:
                self._publish(table, ChangeKind.DELETE, old=row)
        return old_rows

    # --- Change channel ---

    async def subscribe(self, tables: Sequence[str], handler: ChangeHandler) -> _LocalSubscription:
        sub = _LocalSubscription(self, tables, handler)
        self._subscriptions.append(sub)
        log.info("sqlite_remote.subscribed", tables=sorted(sub.tables))
        return sub

    def _detach(self, sub: _LocalSubscription) -> None:
        if sub in self._subscriptions:
            self._subscriptions.remove(sub)

    @property
    def subscription_count(self) -> int:
        return len(self._subscriptions)

    def _publish(self, table: str, kind: ChangeKind, new: Row | None = None, old: Row | None = None) -> None:
        self._sequence += 1
        change = RowChange(
            table=table,
            kind=kind,
            new=dict(new or {}),
            old=dict(old or {}),
            sequence_id=str(self._sequence),
        )
        for sub in list(self._subscriptions):
            sub.offer(change)
