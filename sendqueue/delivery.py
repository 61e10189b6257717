import logging
import os
import shlex
import subprocess
from typing import Optional, Protocol

from .models import Job, QueueItem, Recipient

logger = logging.getLogger(__name__)


class DeliveryChannel(Protocol):
    def send(self, item: QueueItem, job: Job, recipient: Recipient) -> bool:
        ...


class LogChannel:
    """Dry-run channel: logs each delivery and reports success."""

    def send(self, item: QueueItem, job: Job, recipient: Recipient) -> bool:
        logger.info("dry-run send job=%s item=%s to=%s", job.id, item.id, recipient.email)
        return True


def recipient_env(item: QueueItem, job: Job, recipient: Recipient) -> dict:
    env = dict(os.environ)
    env.update({
        "SENDQUEUE_JOB_ID": str(job.id),
        "SENDQUEUE_ITEM_ID": str(item.id),
        "SENDQUEUE_SUBJECT": job.subject,
        "SENDQUEUE_BODY": job.body or "",
        "SENDQUEUE_RECIPIENT_ID": str(recipient.id),
        "SENDQUEUE_EMAIL": recipient.email,
        "SENDQUEUE_NAME": recipient.name or "",
    })
    return env


def safe_run_command(cmd: str, timeout: int = 20, env: Optional[dict] = None) -> int:
    try:
        args = shlex.split(cmd, posix=(os.name != "nt"))
        result = subprocess.run(
            args,
            capture_output=True,
            text=True,
            timeout=timeout,
            env=env,
        )

        if result.stdout:
            logger.debug(result.stdout.strip())
        if result.stderr:
            logger.debug(result.stderr.strip())
        return result.returncode

    except subprocess.TimeoutExpired:
        logger.error("Command timed out after %ss: %s", timeout, cmd)
        return 124  # Common exit code for timeout
    except FileNotFoundError:
        logger.error("Command not found: %s", cmd)
        return 127
    except (OSError, ValueError) as e:
        logger.error("Exception while running command %r: %s", cmd, e)
        return 1


class CommandChannel:
    """
    Runs a shell command once per recipient. Job and recipient details are
    passed as SENDQUEUE_* environment variables; exit code 0 means sent.
    """

    def __init__(self, command: str, timeout: int = 20):
        if not command or not command.strip():
            raise ValueError("delivery command cannot be empty")
        self.command = command
        self.timeout = timeout

    def send(self, item: QueueItem, job: Job, recipient: Recipient) -> bool:
        rc = safe_run_command(self.command, timeout=self.timeout, env=recipient_env(item, job, recipient))
        if rc != 0:
            logger.warning("delivery command failed for item %s (exit code %s)", item.id, rc)
        return rc == 0


def channel_from_settings(settings) -> DeliveryChannel:
    if settings.delivery_command:
        return CommandChannel(settings.delivery_command, timeout=settings.command_timeout)
    return LogChannel()
