import logging
from typing import Protocol

from .repository import add_continuation

logger = logging.getLogger(__name__)


class Dispatcher(Protocol):
    def schedule(self, job_id: int) -> None:
        """Arrange exactly one future controller cycle for job_id."""
        ...


class TableDispatcher:
    """Durable dispatcher: one row in the continuations table per call, picked up by workers."""

    def __init__(self, conn):
        self.conn = conn

    def schedule(self, job_id: int) -> None:
        cont_id = add_continuation(self.conn, job_id)
        logger.debug("scheduled continuation %s for job %s", cont_id, job_id)
