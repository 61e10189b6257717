import sqlite3

import pytest

from sendqueue import worker
from sendqueue.dispatch import TableDispatcher
from sendqueue.models import SENT, JOB_SENT, DONE, ERROR, PENDING
from sendqueue.repository import (
    add_continuation, claim_continuation, counts, get_job, pending_continuations, set_config,
)
from sendqueue.controller import SendController

from conftest import FakeChannel


@pytest.fixture(autouse=True)
def _reset_stop():
    worker._stop.clear()
    yield
    worker._stop.clear()


def _continuation_states(conn):
    return [r["state"] for r in conn.execute("SELECT state FROM continuations ORDER BY id")]


def test_table_dispatcher_adds_one_pending_continuation_per_call(conn, job_id):
    d = TableDispatcher(conn)
    d.schedule(job_id)
    d.schedule(job_id)
    assert _continuation_states(conn) == [PENDING, PENDING]
    assert pending_continuations(conn) == 2


def test_claim_continuation_is_exclusive(conn, job_id):
    add_continuation(conn, job_id)
    row = claim_continuation(conn, "w1")
    assert row["picked_by"] == "w1"
    assert claim_continuation(conn, "w2") is None


def test_worker_drains_job_through_continuations(db_path, conn, job_id):
    set_config(conn, "batch_size", "2")
    channel = FakeChannel()
    controller = SendController(conn, dispatcher=TableDispatcher(conn), channel=channel)
    controller.enqueue(job_id)
    controller.trigger(job_id)

    worker.worker_loop("worker-test", db_path=db_path, once=True, channel=channel)

    # trigger + two non-empty batches, each handing off exactly one continuation
    assert _continuation_states(conn) == [DONE, DONE, DONE]
    assert counts(conn, job_id)[SENT] == 3
    assert get_job(conn, job_id).status == JOB_SENT
    assert len(channel.calls) == 3


def test_worker_records_unknown_job_as_failed_continuation(db_path, conn):
    add_continuation(conn, 4242)

    worker.worker_loop("worker-test", db_path=db_path, once=True, channel=FakeChannel())

    row = conn.execute("SELECT state, last_error FROM continuations").fetchone()
    assert row["state"] == ERROR
    assert "4242" in row["last_error"]


def test_worker_records_crash_and_leaves_claimed_items_for_reclaim(conn, job_id, monkeypatch):
    def crash(*args, **kwargs):
        raise RuntimeError("recipient store unreachable")

    monkeypatch.setattr("sendqueue.controller.fetch_recipients", crash)
    SendController(conn, channel=FakeChannel()).enqueue(job_id)
    add_continuation(conn, job_id)
    cont = claim_continuation(conn, "w1")

    error = worker.run_continuation(conn, cont, channel=FakeChannel())

    assert "unreachable" in error
    row = conn.execute("SELECT state, last_error FROM continuations").fetchone()
    assert row["state"] == ERROR
    assert row["last_error"].startswith("RuntimeError")
    assert counts(conn, job_id)["InProcess"] == 3
    assert pending_continuations(conn) == 0


def test_worker_survives_a_locked_database(db_path, conn, job_id, monkeypatch):
    real_claim = worker.claim_continuation
    calls = []

    def flaky_claim(c, worker_name):
        calls.append(worker_name)
        if len(calls) == 1:
            raise sqlite3.OperationalError("database is locked")
        return real_claim(c, worker_name=worker_name)

    monkeypatch.setattr(worker, "claim_continuation", flaky_claim)
    channel = FakeChannel()
    SendController(conn, channel=channel).enqueue(job_id)
    add_continuation(conn, job_id)

    worker.worker_loop("worker-test", db_path=db_path, once=True, channel=channel, error_backoff=0)

    assert len(calls) >= 3
    assert counts(conn, job_id)[SENT] == 3
    assert get_job(conn, job_id).status == JOB_SENT
