"""
SSE change channel for the hosted backend.

Maintains a persistent SSE connection per subscription with:
- Automatic reconnection with exponential backoff
- Resume from the last seen event id (Last-Event-ID)
- Acknowledgment on the first successful connect
- Graceful shutdown support
"""

from __future__ import annotations

import asyncio
import json
from typing import Sequence

import httpx
import structlog

from ..errors import RemoteFailure
from ..remote.base import ChangeHandler, ChangeKind, RowChange
from ..remote.rest import RestRemote

log = structlog.get_logger()

# Reconnection parameters
RECONNECT_BASE_SECONDS = 1.0
RECONNECT_MAX_SECONDS = 60.0
RECONNECT_MULTIPLIER = 2.0


def parse_change(event_type: str | None, data: dict) -> RowChange | None:
    """Build a RowChange from one SSE event; None when it is not a row change."""
    kind_name = (event_type or data.get("type") or "").upper()
    try:
        kind = ChangeKind(kind_name)
    except ValueError:
        return None
    table = data.get("table")
    if not isinstance(table, str):
        return None
    return RowChange(
        table=table,
        kind=kind,
        new=data.get("record") or {},
        old=data.get("old_record") or {},
        sequence_id=str(data["sequence_id"]) if data.get("sequence_id") is not None else None,
    )


class SseSubscription:
    """One live SSE connection delivering row changes to a handler."""

    def __init__(
        self,
        remote: RestRemote,
        path: str,
        tables: Sequence[str],
        handler: ChangeHandler,
    ):
        self._remote = remote
        self._path = path
        self._tables = tuple(tables)
        self._handler = handler
        self._running = False
        self._connected = False
        self._acked = asyncio.Event()
        self._last_event_id: str | None = None
        self._reconnect_count = 0
        self._task: asyncio.Task | None = None

    @property
    def connected(self) -> bool:
        return self._connected

    @property
    def reconnect_count(self) -> int:
        return self._reconnect_count

    async def start(self, ack_timeout: float) -> None:
        self._running = True
        self._task = asyncio.create_task(self._listen_loop())
        try:
            await asyncio.wait_for(self._acked.wait(), timeout=ack_timeout)
        except asyncio.TimeoutError as exc:
            await self.close()
            raise RemoteFailure("Change feed subscription was not acknowledged", exc) from exc

    async def close(self) -> None:
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        self._connected = False
        log.info("sse_feed.stopped", tables=self._tables)

    async def _listen_loop(self) -> None:
        backoff = RECONNECT_BASE_SECONDS

        while self._running:
            try:
                await self._connect_and_stream()
                backoff = RECONNECT_BASE_SECONDS
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                self._connected = False
                log.warning("sse_feed.connection_lost", error=str(exc), backoff=backoff)

            if not self._running:
                break

            self._reconnect_count += 1
            log.info("sse_feed.reconnecting", backoff=backoff, attempt=self._reconnect_count)
            await asyncio.sleep(backoff)
            backoff = min(backoff * RECONNECT_MULTIPLIER, RECONNECT_MAX_SECONDS)

    async def _connect_and_stream(self) -> None:
        headers = {**self._remote.auth_headers(), "Accept": "text/event-stream"}
        if self._last_event_id:
            headers["Last-Event-ID"] = self._last_event_id

        url = f"{self._remote.url}{self._path}"
        params = {"tables": ",".join(self._tables)}

        async with httpx.AsyncClient(
            timeout=httpx.Timeout(None),
            verify=self._remote.verify_tls,
            transport=self._remote.transport,
        ) as client:
            async with client.stream("GET", url, headers=headers, params=params) as response:
                response.raise_for_status()
                self._connected = True
                self._acked.set()
                log.info("sse_feed.connected", url=url, resume_from=self._last_event_id)

                current_event_type: str | None = None
                current_event_id: str | None = None
                current_data_lines: list[str] = []

                async for line in response.aiter_lines():
                    if not self._running:
                        break

                    line = line.rstrip("\n")

                    if line.startswith("event:"):
                        current_event_type = line[6:].strip()
                    elif line.startswith("id:"):
                        current_event_id = line[3:].strip()
                    elif line.startswith("data:"):
                        current_data_lines.append(line[5:].strip())
                    elif line.startswith(":"):
                        pass  # keepalive
                    elif line == "":
                        if current_data_lines:
                            await self._dispatch_event(
                                current_event_type, current_event_id, current_data_lines
                            )
                        current_event_type = None
                        current_event_id = None
                        current_data_lines = []

    async def _dispatch_event(
        self,
        event_type: str | None,
        event_id: str | None,
        data_lines: list[str],
    ) -> None:
        data_str = "\n".join(data_lines)
        try:
            data = json.loads(data_str)
        except json.JSONDecodeError:
            log.warning("sse_feed.parse_error", data=data_str[:200])
            return

        if event_id:
            self._last_event_id = event_id

        change = parse_change(event_type, data)
        if change is None or change.table not in self._tables:
            return
        if change.sequence_id is None:
            change.sequence_id = event_id

        try:
            await self._handler(change)
        except Exception:
            log.exception("sse_feed.handler_error", table=change.table, kind=change.kind.value)


class SseChangeChannel:
    """Opens SSE subscriptions against the hosted backend's change stream."""

    def __init__(self, remote: RestRemote, path: str = "/realtime/v1/changes", ack_timeout: float = 10.0):
        self._remote = remote
        self._path = path
        self._ack_timeout = ack_timeout

    async def subscribe(self, tables: Sequence[str], handler: ChangeHandler) -> SseSubscription:
        sub = SseSubscription(self._remote, self._path, tables, handler)
        await sub.start(self._ack_timeout)
        return sub
