"""Tests for notification payloads and best-effort dispatch."""

from maintrack.notifications import (
    LoggingNotificationDispatcher,
    NotificationType,
    dispatch_best_effort,
    task_closed,
    task_created,
)

from .fakes import FailingDispatcher, RecordingDispatcher


def test_task_created_payload():
    assert task_created("t1", "Fix leak").to_payload() == {
        "taskId": "t1",
        "title": "New Task Created",
        "body": 'A new task "Fix leak" has been created',
        "type": "task_created",
    }


def test_task_closed_payload():
    notification = task_closed("t1", "Fix leak")
    assert notification.type == NotificationType.TASK_CLOSED
    assert notification.body == 'Task "Fix leak" has been closed'


async def test_best_effort_success():
    dispatcher = RecordingDispatcher()
    assert await dispatch_best_effort(dispatcher, task_created("t1", "x")) is True
    assert len(dispatcher.sent) == 1


async def test_best_effort_swallows_failure():
    dispatcher = FailingDispatcher()
    assert await dispatch_best_effort(dispatcher, task_created("t1", "x")) is False
    assert dispatcher.attempts == 1


async def test_no_dispatcher():
    assert await dispatch_best_effort(None, task_created("t1", "x")) is False


async def test_logging_dispatcher():
    assert await LoggingNotificationDispatcher().send(task_closed("t1", "x")) is None
