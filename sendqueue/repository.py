import sqlite3
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Sequence

from .config import ALLOWED_CONFIG_KEYS, INT_KEYS, Settings, validate_value
from .db import claim_transaction
from .models import (
    SCHEDULED, IN_PROCESS, SENT, FAILED, ITEM_STATUSES,
    JOB_DRAFT, JOB_SENDING, JOB_SENT,
    PENDING, PROCESSING, DONE, ERROR,
    Job, Recipient, QueueItem,
)
from .utils import now_iso, iso_minutes_ago


# ---------- Config ----------
def get_config(conn) -> Dict[str, str]:
    cur = conn.execute("SELECT key, value FROM config")
    return {r["key"]: r["value"] for r in cur.fetchall()}


def set_config(conn, key: str, value: str):
    if key not in ALLOWED_CONFIG_KEYS:
        raise ValueError(f"Allowed keys: {', '.join(sorted(ALLOWED_CONFIG_KEYS))}")
    if key in INT_KEYS:
        validate_value(key, value)
    with conn:
        conn.execute(
            "INSERT INTO config(key,value) VALUES(?,?) "
            "ON CONFLICT(key) DO UPDATE SET value=excluded.value",
            (key, str(value)),
        )


def load_settings(conn) -> Settings:
    return Settings.from_mapping(get_config(conn))


# ---------- Jobs / recipients / mailing lists ----------
def create_job(conn, *, subject: str, body: str = "", lists: Sequence[str] = ()) -> int:
    if not subject or not subject.strip():
        raise ValueError("Subject cannot be empty.")
    with conn:
        cur = conn.execute(
            "INSERT INTO jobs(subject, body, status, created_at) VALUES(?,?,?,?)",
            (subject, body, JOB_DRAFT, now_iso()),
        )
        job_id = cur.lastrowid
        for name in lists:
            list_id = _ensure_list(conn, name)
            conn.execute(
                "INSERT OR IGNORE INTO job_lists(job_id, list_id) VALUES(?,?)",
                (job_id, list_id),
            )
    return job_id


def get_job(conn, job_id: int) -> Optional[Job]:
    row = conn.execute("SELECT * FROM jobs WHERE id=?", (job_id,)).fetchone()
    return Job.from_row(row) if row else None


def set_job_status(conn, job_id: int, status: str, sent_at: Optional[str] = None):
    with conn:
        conn.execute(
            "UPDATE jobs SET status=?, sent_at=? WHERE id=?",
            (status, sent_at, job_id),
        )


def mark_job_sending(conn, job_id: int):
    set_job_status(conn, job_id, JOB_SENDING)


def mark_job_sent(conn, job_id: int, now: Optional[datetime] = None):
    set_job_status(conn, job_id, JOB_SENT, sent_at=now_iso(now))


def add_recipient(conn, *, email: str, name: Optional[str] = None, lists: Sequence[str] = ()) -> int:
    if not email or not email.strip():
        raise ValueError("Email cannot be empty.")
    with conn:
        conn.execute(
            "INSERT INTO recipients(email, name) VALUES(?,?) "
            "ON CONFLICT(email) DO UPDATE SET name=COALESCE(excluded.name, recipients.name)",
            (email.strip(), name),
        )
        recipient_id = conn.execute(
            "SELECT id FROM recipients WHERE email=?", (email.strip(),)
        ).fetchone()["id"]
        for list_name in lists:
            list_id = _ensure_list(conn, list_name)
            conn.execute(
                "INSERT OR IGNORE INTO list_members(list_id, recipient_id) VALUES(?,?)",
                (list_id, recipient_id),
            )
    return recipient_id


def _ensure_list(conn, name: str) -> int:
    if not name or not name.strip():
        raise ValueError("Mailing list name cannot be empty.")
    conn.execute("INSERT OR IGNORE INTO mailing_lists(name) VALUES(?)", (name.strip(),))
    return conn.execute(
        "SELECT id FROM mailing_lists WHERE name=?", (name.strip(),)
    ).fetchone()["id"]


def job_recipient_ids(conn, job_id: int) -> List[int]:
    """Members of every list attached to the job, first occurrence wins."""
    rows = conn.execute(
        """SELECT lm.recipient_id
           FROM job_lists jl
           JOIN list_members lm ON lm.list_id = jl.list_id
           WHERE jl.job_id=?
           ORDER BY jl.list_id ASC, lm.recipient_id ASC""",
        (job_id,),
    ).fetchall()
    seen, out = set(), []
    for r in rows:
        rid = r["recipient_id"]
        if rid not in seen:
            seen.add(rid)
            out.append(rid)
    return out


def fetch_recipients(conn, recipient_ids: Iterable[int]) -> Dict[int, Recipient]:
    ids = sorted(set(recipient_ids))
    if not ids:
        return {}
    placeholders = ",".join("?" * len(ids))
    rows = conn.execute(
        f"SELECT * FROM recipients WHERE id IN ({placeholders})", ids
    ).fetchall()
    return {r["id"]: Recipient.from_row(r) for r in rows}


# ---------- Queue: enqueue / reclaim / claim / send ----------
def enqueue_items(conn, job_id: int, recipient_ids: Iterable[int], now: Optional[datetime] = None) -> int:
    """
    One Scheduled row per recipient id given, duplicates included.
    Store errors propagate; the insert runs in one transaction.
    """
    ts = now_iso(now)
    rows = [(job_id, rid, SCHEDULED, 0, ts, ts) for rid in recipient_ids]
    with conn:
        conn.executemany(
            """INSERT INTO send_queue
               (job_id, recipient_id, status, retry_count, created_at, updated_at)
               VALUES (?, ?, ?, ?, ?, ?)""",
            rows,
        )
    return len(rows)


def stuck_items(conn, job_id: int, stuck_timeout: int, now: Optional[datetime] = None) -> List[QueueItem]:
    cutoff = iso_minutes_ago(stuck_timeout, now)
    rows = conn.execute(
        """SELECT * FROM send_queue
           WHERE job_id=? AND status=? AND updated_at < ?
           ORDER BY created_at ASC, id ASC""",
        (job_id, IN_PROCESS, cutoff),
    ).fetchall()
    return [QueueItem.from_row(r) for r in rows]


def reclaim_stuck(
    conn,
    job_id: int,
    *,
    stuck_timeout: int,
    retry_limit: int,
    now: Optional[datetime] = None,
) -> Dict[str, int]:
    """
    Re-schedule InProcess items older than the timeout, or fail them once
    they have used up their retries.
    """
    items = stuck_items(conn, job_id, stuck_timeout, now)
    return reclaim_items(conn, items, retry_limit=retry_limit, now=now)


def reclaim_items(conn, items: List[QueueItem], *, retry_limit: int, now: Optional[datetime] = None) -> Dict[str, int]:
    """
    Apply the retry/fail decision to rows read by stuck_items(). Each UPDATE
    matches only if the row still has the status, updated_at and retry_count
    that were read, so a row another cycle reclaimed or re-claimed since
    then is left alone.
    """
    ts = now_iso(now)
    result = {"examined": len(items), "requeued": 0, "failed": 0}
    if not items:
        return result
    with conn:
        for item in items:
            if item.retry_count < retry_limit:
                cur = conn.execute(
                    """UPDATE send_queue SET status=?, retry_count=retry_count+1, updated_at=?
                       WHERE id=? AND status=? AND updated_at=? AND retry_count=?""",
                    (SCHEDULED, ts, item.id, IN_PROCESS, item.updated_at, item.retry_count),
                )
                result["requeued"] += cur.rowcount
            else:
                cur = conn.execute(
                    """UPDATE send_queue SET status=?, updated_at=?
                       WHERE id=? AND status=? AND updated_at=? AND retry_count=?""",
                    (FAILED, ts, item.id, IN_PROCESS, item.updated_at, item.retry_count),
                )
                result["failed"] += cur.rowcount
    return result


def claim_batch(conn, job_id: int, batch_size: int, now: Optional[datetime] = None) -> List[QueueItem]:
    """
    Oldest-first select of up to batch_size Scheduled items, marked
    InProcess inside one exclusive transaction. Raises ClaimError if the
    lock or the commit fails; in that case nothing was marked.
    """
    ts = now_iso(now)
    with claim_transaction(conn):
        rows = conn.execute(
            """SELECT * FROM send_queue
               WHERE job_id=? AND status=?
               ORDER BY created_at ASC, id ASC
               LIMIT ?""",
            (job_id, SCHEDULED, batch_size),
        ).fetchall()
        items = [QueueItem.from_row(r) for r in rows]
        if items:
            conn.executemany(
                "UPDATE send_queue SET status=?, updated_at=? WHERE id=? AND status=?",
                [(IN_PROCESS, ts, item.id, SCHEDULED) for item in items],
            )
    for item in items:
        item.status = IN_PROCESS
        item.updated_at = ts
    return items


def mark_sent(conn, item_id: int, now: Optional[datetime] = None) -> bool:
    with conn:
        cur = conn.execute(
            "UPDATE send_queue SET status=?, updated_at=? WHERE id=? AND status=?",
            (SENT, now_iso(now), item_id, IN_PROCESS),
        )
    return cur.rowcount == 1


# ---------- Queries ----------
def get_item(conn, item_id: int) -> Optional[QueueItem]:
    row = conn.execute("SELECT * FROM send_queue WHERE id=?", (item_id,)).fetchone()
    return QueueItem.from_row(row) if row else None


def list_items(conn, job_id: int, status: Optional[str] = None) -> List[QueueItem]:
    if status:
        rows = conn.execute(
            "SELECT * FROM send_queue WHERE job_id=? AND status=? ORDER BY created_at ASC, id ASC",
            (job_id, status),
        ).fetchall()
    else:
        rows = conn.execute(
            "SELECT * FROM send_queue WHERE job_id=? ORDER BY created_at ASC, id ASC",
            (job_id,),
        ).fetchall()
    return [QueueItem.from_row(r) for r in rows]


def counts(conn, job_id: int) -> Dict[str, int]:
    out = {s: 0 for s in ITEM_STATUSES}
    rows = conn.execute(
        "SELECT status, COUNT(1) AS c FROM send_queue WHERE job_id=? GROUP BY status",
        (job_id,),
    ).fetchall()
    for r in rows:
        out[r["status"]] = r["c"]
    return out


def pending_count(conn, job_id: int) -> int:
    """Items that still need a cycle: Scheduled or InProcess."""
    return conn.execute(
        "SELECT COUNT(1) AS c FROM send_queue WHERE job_id=? AND status IN (?, ?)",
        (job_id, SCHEDULED, IN_PROCESS),
    ).fetchone()["c"]


# ---------- Failed items ----------
def failed_list(conn, job_id: int) -> List[QueueItem]:
    return list_items(conn, job_id, FAILED)


def failed_retry(conn, item_id: int) -> bool:
    """Put a permanently failed item back in the queue with a fresh retry budget."""
    try:
        with conn:
            res = conn.execute(
                """UPDATE send_queue
                   SET status=?, retry_count=0, updated_at=?
                   WHERE id=? AND status=?""",
                (SCHEDULED, now_iso(), item_id, FAILED),
            )
        return res.rowcount == 1
    except sqlite3.Error as e:
        raise RuntimeError(f"DB error during failed-item retry: {e}")


# ---------- Continuations ----------
def add_continuation(conn, job_id: int) -> int:
    ts = now_iso()
    with conn:
        cur = conn.execute(
            "INSERT INTO continuations(job_id, state, created_at, updated_at) VALUES(?,?,?,?)",
            (job_id, PENDING, ts, ts),
        )
    return cur.lastrowid


def claim_continuation(conn, worker_name: str) -> Optional[sqlite3.Row]:
    now = now_iso()
    with conn:
        row = conn.execute(
            """SELECT id FROM continuations
               WHERE state=?
               ORDER BY created_at ASC, id ASC
               LIMIT 1""",
            (PENDING,),
        ).fetchone()
        if not row:
            return None
        cont_id = row["id"]
        updated = conn.execute(
            "UPDATE continuations SET state=?, picked_by=?, updated_at=? WHERE id=? AND state=?",
            (PROCESSING, worker_name, now, cont_id, PENDING),
        )
        if updated.rowcount != 1:
            return None
        return conn.execute("SELECT * FROM continuations WHERE id=?", (cont_id,)).fetchone()


def finish_continuation(conn, cont_id: int, error: Optional[str] = None):
    with conn:
        conn.execute(
            "UPDATE continuations SET state=?, updated_at=?, last_error=?, picked_by=NULL WHERE id=?",
            (ERROR if error else DONE, now_iso(), error[:500] if error else None, cont_id),
        )


def pending_continuations(conn) -> int:
    return conn.execute(
        "SELECT COUNT(1) AS c FROM continuations WHERE state=?", (PENDING,)
    ).fetchone()["c"]
