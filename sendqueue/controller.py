"""
Batch send controller.

One call to SendController.process_cycle() is one bounded execution unit:

    idle -> reclaiming -> claiming -> sending -> scheduling    (batch claimed)
    idle -> reclaiming -> claiming -> scheduling -> done       (nothing left)

A non-empty batch always ends in a continuation (another cycle for the same
job, through the dispatcher). An empty claim marks the job Sent. Without a
dispatcher the controller simply loops cycles in-process until done.
"""
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Dict, Iterable, List, Optional, Tuple

from .config import Settings
from .delivery import DeliveryChannel, channel_from_settings
from .dispatch import Dispatcher
from .errors import ClaimError, ConfigurationError
from .models import Job, QueueItem
from .repository import (
    claim_batch, enqueue_items, fetch_recipients, get_job, job_recipient_ids,
    load_settings, mark_job_sending, mark_job_sent, mark_sent, reclaim_stuck,
)
from .utils import parse_job_id, utcnow

logger = logging.getLogger(__name__)

# Cycle phases
IDLE = "idle"
RECLAIMING = "reclaiming"
CLAIMING = "claiming"
SENDING = "sending"
SCHEDULING = "scheduling"
DONE = "done"


@dataclass
class CycleResult:
    job_id: int
    phases: List[str] = field(default_factory=lambda: [IDLE])
    reclaimed: Dict[str, int] = field(default_factory=dict)
    claimed: int = 0
    sent: int = 0
    failed: int = 0
    continued: bool = False
    claim_error: Optional[str] = None

    @property
    def phase(self) -> str:
        return self.phases[-1]

    @property
    def done(self) -> bool:
        return self.phase == DONE

    def enter(self, phase: str):
        self.phases.append(phase)


class SendController:
    """
    Stateless service object; build one per invocation. All state lives in
    the queue tables, so any number of controllers (in any number of
    processes) can work the same job.
    """

    def __init__(
        self,
        conn,
        settings: Optional[Settings] = None,
        channel: Optional[DeliveryChannel] = None,
        dispatcher: Optional[Dispatcher] = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.conn = conn
        self.settings = settings or load_settings(conn)
        self.channel = channel or channel_from_settings(self.settings)
        self.dispatcher = dispatcher
        self.sleep = sleep
        self.clock = clock

    # ---------- lookups ----------
    def resolve_job(self, job_id) -> Job:
        try:
            jid = parse_job_id(job_id)
        except ValueError as e:
            raise ConfigurationError(str(e)) from e
        job = get_job(self.conn, jid)
        if job is None:
            raise ConfigurationError(f"Job {jid} not found.")
        return job

    # ---------- steps ----------
    def enqueue(self, job_id, recipient_ids: Optional[Iterable[int]] = None) -> int:
        """
        Queue one item per recipient id. Defaults to the members of the job's
        mailing lists. Ids are not deduplicated here.
        """
        job = self.resolve_job(job_id)
        if recipient_ids is None:
            recipient_ids = job_recipient_ids(self.conn, job.id)
        count = enqueue_items(self.conn, job.id, recipient_ids, now=self.clock())
        mark_job_sending(self.conn, job.id)
        logger.info("job %s: enqueued %s recipients", job.id, count)
        return count

    def reclaim(self, job_id: int) -> Dict[str, int]:
        result = reclaim_stuck(
            self.conn, job_id,
            stuck_timeout=self.settings.stuck_timeout,
            retry_limit=self.settings.retry_limit,
            now=self.clock(),
        )
        if result["examined"]:
            logger.warning(
                "job %s: %s stuck items (%s requeued, %s failed)",
                job_id, result["examined"], result["requeued"], result["failed"],
            )
        return result

    def claim(self, job_id: int) -> List[QueueItem]:
        return claim_batch(self.conn, job_id, self.settings.batch_size, now=self.clock())

    def send_batch(self, job: Job, items: List[QueueItem]) -> Tuple[int, int]:
        """
        Deliver each claimed item in claim order. Successes are marked Sent;
        failures stay InProcess for the reclaimer to retry later.
        """
        recipients = fetch_recipients(self.conn, [item.recipient_id for item in items])
        sent = failed = 0
        for item in items:
            recipient = recipients.get(item.recipient_id)
            if recipient is None:
                logger.warning("job %s: recipient %s not found (item %s)", job.id, item.recipient_id, item.id)
                failed += 1
                continue
            try:
                ok = self.channel.send(item, job, recipient)
            except Exception:
                logger.exception("job %s: delivery raised for item %s", job.id, item.id)
                ok = False
            if not ok:
                failed += 1
                continue
            if mark_sent(self.conn, item.id, now=self.clock()):
                sent += 1
            else:
                logger.warning("job %s: item %s was reclaimed before it could be marked sent", job.id, item.id)
        return sent, failed

    def schedule_next(self, job: Job, batch: List[QueueItem], dispatch: bool = True) -> bool:
        """
        Empty batch: mark the job sent. Otherwise wait out the throttle delay,
        then arrange the next cycle, so a worker that picks the continuation up
        straight away still starts after the delay. Returns True if a next
        cycle was arranged: dispatched, or left to the caller's loop when
        dispatch is False.
        """
        if not batch:
            mark_job_sent(self.conn, job.id, now=self.clock())
            logger.info("job %s: queue exhausted, marked sent", job.id)
            return False
        if self.settings.throttle_batch_delay:
            self.sleep(self.settings.throttle_batch_delay)
        return self._continue(job.id) if dispatch else True

    def _continue(self, job_id: int) -> bool:
        if self.dispatcher is None:
            logger.warning("job %s: no dispatcher, the next cycle needs a manual trigger", job_id)
            return False
        self.dispatcher.schedule(job_id)
        return True

    # ---------- cycle ----------
    def process_cycle(self, job_id, dispatch: bool = True) -> CycleResult:
        job = self.resolve_job(job_id)
        result = CycleResult(job_id=job.id)

        result.enter(RECLAIMING)
        result.reclaimed = self.reclaim(job.id)

        result.enter(CLAIMING)
        try:
            batch = self.claim(job.id)
        except ClaimError as e:
            logger.warning("job %s: claim failed, retrying in a new cycle: %s", job.id, e)
            result.claim_error = str(e)
            result.enter(SCHEDULING)
            result.continued = self._continue(job.id) if dispatch else True
            return result
        result.claimed = len(batch)

        if batch:
            result.enter(SENDING)
            result.sent, result.failed = self.send_batch(job, batch)

        result.enter(SCHEDULING)
        result.continued = self.schedule_next(job, batch, dispatch=dispatch)
        if not batch:
            result.enter(DONE)
        logger.debug("job %s: cycle %s", job.id, result)
        return result

    def run(self, job_id, max_cycles: Optional[int] = None) -> List[CycleResult]:
        """Synchronous fallback: run cycles in this process until the job is done."""
        results = []
        while max_cycles is None or len(results) < max_cycles:
            result = self.process_cycle(job_id, dispatch=False)
            results.append(result)
            if result.done:
                break
        return results

    def trigger(self, job_id) -> Job:
        """Start (or resume) processing: hand off to the dispatcher, or run inline."""
        job = self.resolve_job(job_id)
        if self.dispatcher is not None:
            self.dispatcher.schedule(job.id)
        else:
            self.run(job.id)
        return job
