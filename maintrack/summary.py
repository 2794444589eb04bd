"""Daily summary of open tasks."""

from __future__ import annotations

from typing import Any, Iterable, Optional

import structlog
from pydantic import BaseModel

from .notifications import Notification, NotificationDispatcher, NotificationType
from .schemas.common import TaskStatus
from .schemas.tasks import Task

log = structlog.get_logger()

_SUMMARIZED = (
    (TaskStatus.PENDING, NotificationType.PENDING_SUMMARY),
    (TaskStatus.IN_PROGRESS, NotificationType.IN_PROGRESS_SUMMARY),
)


class SummaryResult(BaseModel):
    notification: str
    result: Any = None
    error: Optional[str] = None


def _summary_title(count: int, status: TaskStatus) -> str:
    noun, verb = ("task", "is") if count == 1 else ("tasks", "are")
    return f"Total {count} {noun} {verb} {status.value}"


def build_daily_summary(tasks: Iterable[Task]) -> list[Notification]:
    """One notification per open status that has tasks, titles listed oldest first."""
    ordered = sorted(tasks, key=lambda t: t.created_at)
    notifications = []
    for status, kind in _SUMMARIZED:
        matching = [t for t in ordered if t.status == status]
        if not matching:
            continue
        notifications.append(
            Notification(
                title=_summary_title(len(matching), status),
                body="\n".join(f"{i}. {t.title}" for i, t in enumerate(matching, start=1)),
                type=kind,
            )
        )
    return notifications


async def send_daily_summary(
    tasks: Iterable[Task], dispatcher: NotificationDispatcher
) -> list[SummaryResult]:
    """Dispatch the summary. A failed send is recorded and does not stop the others."""
    notifications = build_daily_summary(tasks)
    if not notifications:
        log.info("summary.nothing_to_report")
        return []

    results = []
    for notification in notifications:
        try:
            result = await dispatcher.send(notification)
        except Exception as exc:
            log.warning("summary.send_failed", title=notification.title, error=str(exc))
            results.append(SummaryResult(notification=notification.title, error=str(exc)))
            continue
        log.info("summary.sent", title=notification.title)
        results.append(SummaryResult(notification=notification.title, result=result))
    return results
