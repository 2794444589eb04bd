"""
Composition root.

Builds the backend, session provider, repository, store and change-feed
listener from configuration, and owns the one feed subscription of the
process through explicit connect/disconnect calls.
"""

from __future__ import annotations

import asyncio
import signal
from typing import Optional, Union

import structlog

from .auth import RestSessionProvider, SessionProvider, StaticSessionProvider
from .config import AppConfig
from .feed.listener import ChangeFeedListener
from .feed.sse import SseChangeChannel
from .metrics import MetricsCollector
from .notifications import (
    HttpNotificationDispatcher,
    LoggingNotificationDispatcher,
    NoticeSink,
    NotificationDispatcher,
)
from .profiles import ProfileService
from .remote.base import ChangeChannel
from .remote.rest import RestRemote
from .remote.sqlite import SqliteRemote
from .repository import TaskRepository
from .schemas.users import Session
from .store import TaskStore

log = structlog.get_logger()

SHUTDOWN_TIMEOUT = 15.0
STATUS_INTERVAL = 30.0


class SyncApp:
    """Task synchronization for one signed-in client."""

    def __init__(self, config: AppConfig, notices: Optional[NoticeSink] = None):
        self._config = config
        self._metrics = MetricsCollector()
        self._remote: Union[RestRemote, SqliteRemote]
        self._channel: ChangeChannel
        self._sessions: SessionProvider

        if config.remote.backend == "rest":
            rest = RestRemote(
                url=config.remote.url,
                api_key=config.remote.api_key,
                access_token=config.remote.access_token,
                request_timeout=config.remote.request_timeout_seconds,
                retry=config.remote.retry,
                verify_tls=config.remote.verify_tls,
            )
            self._remote = rest
            self._channel = SseChangeChannel(
                rest, path=config.feed.path, ack_timeout=config.feed.ack_timeout_seconds
            )
            self._sessions = RestSessionProvider(rest)
        else:
            local = SqliteRemote(config.remote.sqlite_path)
            self._remote = local
            self._channel = local
            self._sessions = StaticSessionProvider(self._static_session())

        self._dispatcher = self._build_dispatcher()
        self._repository = TaskRepository(
            self._remote, self._sessions, dispatcher=self._dispatcher, notices=notices
        )
        self._store = TaskStore(
            self._repository,
            optimistic_updates=config.store.optimistic_updates,
            notices=notices,
            metrics=self._metrics,
        )
        self._listener = ChangeFeedListener(
            self._channel,
            self._repository,
            strategy=config.feed.strategy,
            debounce_seconds=config.feed.debounce_seconds,
            metrics=self._metrics,
        )
        self._profiles = ProfileService(self._remote, self._sessions, notices=notices)
        self._connected = False
        self._shutdown_event = asyncio.Event()

    def _static_session(self) -> Optional[Session]:
        cfg = self._config.session
        if not cfg.user_id:
            return None
        metadata = {k: v for k, v in (("name", cfg.name), ("designation", cfg.designation)) if v}
        return Session(user_id=cfg.user_id, email=cfg.email, user_metadata=metadata)

    def _build_dispatcher(self) -> Optional[NotificationDispatcher]:
        if not self._config.notifications.enabled:
            return None
        if isinstance(self._remote, RestRemote):
            return HttpNotificationDispatcher(self._remote, self._config.notifications.function_name)
        return LoggingNotificationDispatcher()

    # --- Components ---

    @property
    def remote(self) -> Union[RestRemote, SqliteRemote]:
        return self._remote

    @property
    def store(self) -> TaskStore:
        return self._store

    @property
    def repository(self) -> TaskRepository:
        return self._repository

    @property
    def listener(self) -> ChangeFeedListener:
        return self._listener

    @property
    def profiles(self) -> ProfileService:
        return self._profiles

    @property
    def sessions(self) -> SessionProvider:
        return self._sessions

    @property
    def dispatcher(self) -> Optional[NotificationDispatcher]:
        return self._dispatcher

    @property
    def metrics(self) -> MetricsCollector:
        return self._metrics

    @property
    def connected(self) -> bool:
        return self._connected

    # --- Lifecycle ---

    async def open(self) -> None:
        """Open the backend without subscribing to the change feed."""
        await self._remote.open()
        log.info("app.opened", backend=self._config.remote.backend)

    async def connect(self) -> None:
        """Open the backend and subscribe the store to the change feed."""
        if self._connected:
            return
        await self.open()
        try:
            await self._listener.subscribe(self._store.set_tasks, view=lambda: self._store.tasks)
        except Exception:
            await self._remote.close()
            raise
        self._connected = True
        log.info("app.connected", tasks=len(self._store.tasks))

    async def disconnect(self) -> None:
        """Release the subscription and close the backend. Safe to call twice."""
        await self._listener.unsubscribe()
        await self._remote.close()
        if self._connected:
            self._connected = False
            log.info("app.disconnected")

    def request_shutdown(self) -> None:
        self._shutdown_event.set()

    def report_status(self) -> None:
        """Log feed state and metrics; refresh the metrics textfile if configured."""
        log.info(
            "app.status",
            feed_state=self._listener.state.value,
            tasks=len(self._store.tasks),
            **self._metrics.snapshot(),
        )
        textfile = self._config.metrics.textfile
        if textfile:
            try:
                self._metrics.write_textfile(textfile)
            except OSError as exc:
                log.warning("app.metrics_write_failed", path=textfile, error=str(exc))

    async def run_forever(self) -> None:
        """Stay subscribed until a shutdown signal."""
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, self.request_shutdown)

        await self.connect()

        try:
            while not self._shutdown_event.is_set():
                self.report_status()
                try:
                    await asyncio.wait_for(self._shutdown_event.wait(), timeout=STATUS_INTERVAL)
                except asyncio.TimeoutError:
                    pass
        finally:
            await asyncio.wait_for(self.disconnect(), timeout=SHUTDOWN_TIMEOUT)
            self.report_status()
