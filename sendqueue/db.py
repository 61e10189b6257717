import os
import sqlite3
from contextlib import contextmanager
from typing import Optional

from .config import DEFAULT_CONFIG
from .errors import ClaimError

DEFAULT_DB_FILE = "sendqueue.db"
BUSY_TIMEOUT_SECONDS = 5.0

SCHEMA = """
PRAGMA journal_mode=WAL;
CREATE TABLE IF NOT EXISTS jobs (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    subject TEXT NOT NULL,
    body TEXT,
    status TEXT NOT NULL DEFAULT 'Draft',
    sent_at TEXT,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS recipients (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    email TEXT NOT NULL UNIQUE,
    name TEXT
);

CREATE TABLE IF NOT EXISTS mailing_lists (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    name TEXT NOT NULL UNIQUE
);

CREATE TABLE IF NOT EXISTS list_members (
    list_id INTEGER NOT NULL REFERENCES mailing_lists(id),
    recipient_id INTEGER NOT NULL REFERENCES recipients(id),
    PRIMARY KEY (list_id, recipient_id)
);

CREATE TABLE IF NOT EXISTS job_lists (
    job_id INTEGER NOT NULL REFERENCES jobs(id),
    list_id INTEGER NOT NULL REFERENCES mailing_lists(id),
    PRIMARY KEY (job_id, list_id)
);

CREATE TABLE IF NOT EXISTS send_queue (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    job_id INTEGER NOT NULL REFERENCES jobs(id),
    recipient_id INTEGER NOT NULL,
    status TEXT NOT NULL,
    retry_count INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_send_queue_job_status ON send_queue(job_id, status, created_at);

CREATE TABLE IF NOT EXISTS continuations (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    job_id INTEGER NOT NULL,
    state TEXT NOT NULL,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    picked_by TEXT,
    last_error TEXT
);

CREATE INDEX IF NOT EXISTS idx_continuations_state ON continuations(state, created_at);

CREATE TABLE IF NOT EXISTS config (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL
);
"""


def db_path(path: Optional[str] = None) -> str:
    return path or os.environ.get("SENDQUEUE_DB", DEFAULT_DB_FILE)


def connect_db(path: Optional[str] = None, timeout: float = BUSY_TIMEOUT_SECONDS):
    conn = sqlite3.connect(db_path(path), timeout=timeout)
    conn.row_factory = sqlite3.Row
    conn.executescript(SCHEMA)
    return conn


def init_db(path: Optional[str] = None):
    conn = connect_db(path)
    with conn:
        # seed defaults
        for k, v in DEFAULT_CONFIG.items():
            conn.execute(
                "INSERT OR IGNORE INTO config(key, value) VALUES(?,?)", (k, v)
            )
    conn.close()


@contextmanager
def claim_transaction(conn):
    """
    Exclusive write transaction for the batch claim.

    BEGIN IMMEDIATE takes SQLite's reserved lock up front, so no other
    connection can write (and in particular no other claim can run its
    select+update) until we commit or roll back. Failing to get the lock or
    to commit raises ClaimError with nothing left half-written.
    """
    try:
        conn.execute("BEGIN IMMEDIATE")
    except sqlite3.Error as e:
        raise ClaimError(f"could not acquire claim lock: {e}") from e
    try:
        yield conn
        conn.commit()
    except BaseException as e:
        conn.rollback()
        if isinstance(e, sqlite3.Error):
            raise ClaimError(f"claim transaction failed: {e}") from e
        raise
