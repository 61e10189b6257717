import logging
import threading
import time
import signal
from typing import Optional

from .controller import SendController
from .db import connect_db
from .dispatch import TableDispatcher
from .errors import ConfigurationError
from .repository import claim_continuation, finish_continuation, load_settings

logger = logging.getLogger(__name__)

_stop = threading.Event()


def setup_signal_handlers():
    def _handler(signum, frame):
        logger.info("Received signal %s. Stopping workers", signum)
        _stop.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            signal.signal(sig, _handler)
        except ValueError:
            # not the main thread
            pass


def run_continuation(conn, cont, channel=None, sleep=time.sleep) -> Optional[str]:
    """Run one controller cycle for a claimed continuation row. Returns the error text, if any."""
    job_id = cont["job_id"]
    try:
        controller = SendController(
            conn,
            settings=load_settings(conn),
            channel=channel,
            dispatcher=TableDispatcher(conn),
            sleep=sleep,
        )
        result = controller.process_cycle(job_id)
    except ConfigurationError as e:
        logger.error("continuation %s: %s", cont["id"], e)
        finish_continuation(conn, cont["id"], error=str(e))
        return str(e)
    except Exception as e:
        # Claimed items stay InProcess; the reclaimer recovers them on the next trigger.
        logger.exception("continuation %s for job %s crashed", cont["id"], job_id)
        finish_continuation(conn, cont["id"], error=f"{type(e).__name__}: {e}")
        return str(e)
    finish_continuation(conn, cont["id"])
    logger.info(
        "job %s: cycle claimed=%s sent=%s failed=%s phase=%s",
        job_id, result.claimed, result.sent, result.failed, result.phase,
    )
    return None


def worker_loop(name: str, db_path: Optional[str] = None, once: bool = False, channel=None,
                poll_interval: float = 0.5, error_backoff: float = 1.0):
    conn = connect_db(db_path)
    try:
        while not _stop.is_set():
            try:
                cont = claim_continuation(conn, worker_name=name)
                if not cont:
                    if once:
                        break
                    time.sleep(poll_interval)
                    continue

                logger.info("[%s] Processing continuation %s for job %s", name, cont["id"], cont["job_id"])
                run_continuation(conn, cont, channel=channel)

            except Exception:
                # e.g. "database is locked" after the busy timeout; keep the worker alive
                logger.exception("[%s] Unexpected error", name)
                time.sleep(error_backoff)
    finally:
        conn.close()
    logger.info("[%s] Worker stopped.", name)


def start_workers(count: int, db_path: Optional[str] = None, once: bool = False, channel=None):
    """Start multiple worker threads."""
    _stop.clear()
    setup_signal_handlers()
    threads = []

    for i in range(count):
        t = threading.Thread(
            target=worker_loop,
            args=(f"worker-{i+1}",),
            kwargs={"db_path": db_path, "once": once, "channel": channel},
            daemon=True,
        )
        t.start()
        threads.append(t)
        logger.info("Started %s", t.name)

    try:
        while any(t.is_alive() for t in threads):
            time.sleep(0.5)
    finally:
        _stop.set()
        for t in threads:
            t.join()
        logger.info("All workers stopped gracefully.")
