"""Shared fixtures: a throwaway SQLite queue, a controllable clock, fake collaborators."""
from datetime import datetime, timedelta, timezone

import pytest

from sendqueue.config import Settings
from sendqueue.controller import SendController
from sendqueue.db import connect_db, init_db
from sendqueue.repository import add_recipient, create_job


class FakeChannel:
    """Records every delivery; emails in `failing` report failure."""

    def __init__(self, failing=()):
        self.failing = set(failing)
        self.calls = []

    def send(self, item, job, recipient):
        self.calls.append((item.id, job.id, recipient.email))
        return recipient.email not in self.failing


class RecordingDispatcher:
    def __init__(self):
        self.scheduled = []

    def schedule(self, job_id):
        self.scheduled.append(job_id)


class Clock:
    def __init__(self, start=None):
        self.now = start or datetime(2025, 1, 1, 12, 0, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)


@pytest.fixture
def db_path(tmp_path):
    path = str(tmp_path / "queue.db")
    init_db(path)
    return path


@pytest.fixture
def conn(db_path):
    c = connect_db(db_path)
    yield c
    c.close()


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def channel():
    return FakeChannel()


@pytest.fixture
def dispatcher():
    return RecordingDispatcher()


@pytest.fixture
def job_id(conn):
    """A job with three recipients on one list: a@, b@, c@ in that order."""
    jid = create_job(conn, subject="Spring newsletter", body="Hello", lists=["members"])
    for email in ("a@example.org", "b@example.org", "c@example.org"):
        add_recipient(conn, email=email, lists=["members"])
    return jid


@pytest.fixture
def make_controller(conn, channel, dispatcher, clock):
    def _make(**overrides):
        settings = overrides.pop("settings", Settings())
        kwargs = dict(channel=channel, dispatcher=dispatcher, sleep=lambda s: None, clock=clock)
        kwargs.update(overrides)
        return SendController(conn, settings=settings, **kwargs)
    return _make
