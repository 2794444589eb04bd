"""
Shared fixtures: a seeded SQLite backend standing in for the remote store and
its change feed, plus recording notice and notification doubles.
"""

import pytest

from maintrack.auth import StaticSessionProvider
from maintrack.feed.listener import ChangeFeedListener
from maintrack.metrics import MetricsCollector
from maintrack.remote.sqlite import SqliteRemote
from maintrack.repository import TaskRepository
from maintrack.schemas.users import Session
from maintrack.store import TaskStore

from .fakes import RecordingDispatcher, RecordingNotices

USER_ID = "user-asha"
OTHER_USER_ID = "user-ravi"
UNIT_ID = "unit-central"
OTHER_UNIT_ID = "unit-north"


@pytest.fixture
async def remote(tmp_path):
    r = SqliteRemote(str(tmp_path / "maintrack.db"))
    await r.open()
    await r.insert("units", {"id": UNIT_ID, "name": "Central Dairy"})
    await r.insert("units", {"id": OTHER_UNIT_ID, "name": "North Dairy"})
    await r.insert(
        "profiles",
        {"id": USER_ID, "name": "Asha", "designation": "Engineer", "unit_id": UNIT_ID},
    )
    await r.insert(
        "profiles",
        {"id": OTHER_USER_ID, "name": "Ravi", "designation": "Technician", "unit_id": UNIT_ID},
    )
    yield r
    await r.close()


@pytest.fixture
def session():
    return Session(user_id=USER_ID, email="asha@example.com")


@pytest.fixture
def sessions(session):
    return StaticSessionProvider(session)


@pytest.fixture
def notices():
    return RecordingNotices()


@pytest.fixture
def dispatcher():
    return RecordingDispatcher()


@pytest.fixture
def metrics():
    return MetricsCollector()


@pytest.fixture
def repository(remote, sessions, dispatcher, notices):
    return TaskRepository(remote, sessions, dispatcher=dispatcher, notices=notices)


@pytest.fixture
def store(repository, notices, metrics):
    return TaskStore(repository, notices=notices, metrics=metrics)


@pytest.fixture
async def listener(remote, repository, metrics):
    feed = ChangeFeedListener(remote, repository, metrics=metrics)
    yield feed
    await feed.unsubscribe()
