"""
Notification side effects.

Two kinds of output leave the core:
- push notifications, dispatched best-effort to an external function
- user-facing notices (toasts) reporting mutator success or failure
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Optional, Protocol

import structlog
from pydantic import BaseModel

from .remote.rest import RestRemote

log = structlog.get_logger()


class NotificationType(str, Enum):
    TASK_CREATED = "task_created"
    TASK_CLOSED = "task_closed"
    TASK_UPDATED = "task_updated"
    PENDING_SUMMARY = "PENDING_SUMMARY"
    IN_PROGRESS_SUMMARY = "IN_PROGRESS_SUMMARY"


class Notification(BaseModel):
    task_id: Optional[str] = None
    title: str
    body: str
    type: NotificationType

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "title": self.title,
            "body": self.body,
            "type": self.type.value,
        }
        if self.task_id is not None:
            payload["taskId"] = self.task_id
        return payload


def task_created(task_id: str, title: str) -> Notification:
    return Notification(
        task_id=task_id,
        title="New Task Created",
        body=f'A new task "{title}" has been created',
        type=NotificationType.TASK_CREATED,
    )


def task_closed(task_id: str, title: str) -> Notification:
    return Notification(
        task_id=task_id,
        title="Task Closed",
        body=f'Task "{title}" has been closed',
        type=NotificationType.TASK_CLOSED,
    )


# ---------------------------------------------------------------------------
# Dispatch
# ---------------------------------------------------------------------------


class NotificationDispatcher(Protocol):
    async def send(self, notification: Notification) -> Any:
        ...


class HttpNotificationDispatcher:
    """Invokes the hosted notification function."""

    def __init__(self, remote: RestRemote, function_name: str = "send-notification"):
        self._remote = remote
        self._function_name = function_name

    async def send(self, notification: Notification) -> Any:
        result = await self._remote.invoke_function(self._function_name, notification.to_payload())
        log.info("notifications.sent", type=notification.type.value, task_id=notification.task_id)
        return result


class LoggingNotificationDispatcher:
    """Writes notifications to the log. Used when no push backend exists."""

    async def send(self, notification: Notification) -> Any:
        log.info("notifications.logged", **notification.to_payload())
        return None


async def dispatch_best_effort(
    dispatcher: Optional[NotificationDispatcher], notification: Notification
) -> bool:
    """Send a notification; failures are logged and never propagated."""
    if dispatcher is None:
        return False
    try:
        await dispatcher.send(notification)
        return True
    except Exception as exc:
        log.warning(
            "notifications.send_failed",
            type=notification.type.value,
            task_id=notification.task_id,
            error=str(exc),
        )
        return False


# ---------------------------------------------------------------------------
# Notices
# ---------------------------------------------------------------------------


class NoticeSink(Protocol):
    def success(self, message: str) -> None:
        ...

    def error(self, message: str) -> None:
        ...


class LogNoticeSink:
    """Default sink: notices go to the log."""

    def success(self, message: str) -> None:
        log.info("notice.success", message=message)

    def error(self, message: str) -> None:
        log.warning("notice.error", message=message)
