from dataclasses import dataclass
from typing import Optional

# Queue item statuses (persisted; other tooling relies on these values)
SCHEDULED = "Scheduled"
IN_PROCESS = "InProcess"
SENT = "Sent"
FAILED = "Failed"

ITEM_STATUSES = (SCHEDULED, IN_PROCESS, SENT, FAILED)

# Job statuses
JOB_DRAFT = "Draft"
JOB_SENDING = "Sending"
JOB_SENT = "Sent"

# Continuation states
PENDING = "pending"
PROCESSING = "processing"
DONE = "done"
ERROR = "failed"


@dataclass
class Job:
    id: int
    subject: str
    body: str = ""
    status: str = JOB_DRAFT
    sent_at: Optional[str] = None
    created_at: str = ""

    @classmethod
    def from_row(cls, row) -> "Job":
        return cls(
            id=row["id"], subject=row["subject"], body=row["body"] or "",
            status=row["status"], sent_at=row["sent_at"], created_at=row["created_at"],
        )


@dataclass
class Recipient:
    id: int
    email: str
    name: Optional[str] = None

    @classmethod
    def from_row(cls, row) -> "Recipient":
        return cls(id=row["id"], email=row["email"], name=row["name"])


@dataclass
class QueueItem:
    id: int
    job_id: int
    recipient_id: int
    status: str = SCHEDULED
    retry_count: int = 0
    created_at: str = ""
    updated_at: str = ""

    @classmethod
    def from_row(cls, row) -> "QueueItem":
        return cls(
            id=row["id"], job_id=row["job_id"], recipient_id=row["recipient_id"],
            status=row["status"], retry_count=row["retry_count"],
            created_at=row["created_at"], updated_at=row["updated_at"],
        )
