from datetime import datetime, timezone, timedelta
from typing import Optional

# Fixed-width so that string comparison in SQL matches time order.
ISO_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(dt: datetime) -> str:
    """UTC timestamp like '2025-11-06T09:12:34.123456Z'."""
    if dt.tzinfo is not None:
        dt = dt.astimezone(timezone.utc)
    return dt.strftime(ISO_FORMAT)


def now_iso(now: Optional[datetime] = None) -> str:
    return to_iso(now or utcnow())


def iso_minutes_ago(minutes: int, now: Optional[datetime] = None) -> str:
    """Return the UTC ISO time `minutes` before `now`, with 'Z' suffix."""
    return to_iso((now or utcnow()) - timedelta(minutes=minutes))


def parse_job_id(value) -> int:
    """
    Validate a job id coming from a trigger surface.
    Accepts ints or numeric strings; raises ValueError otherwise.
    """
    if value is None or (isinstance(value, str) and not value.strip()):
        raise ValueError("No job ID given.")
    if isinstance(value, bool):
        raise ValueError(f"Invalid job ID: {value!r}")
    try:
        job_id = int(str(value).strip())
    except ValueError:
        raise ValueError(f"Job ID must be numeric, got {value!r}")
    if job_id <= 0:
        raise ValueError(f"Job ID must be positive, got {job_id}")
    return job_id
