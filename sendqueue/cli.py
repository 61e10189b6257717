import json
import logging
import click

from .controller import SendController
from .db import init_db, connect_db
from .dispatch import TableDispatcher
from .models import ITEM_STATUSES
from .repository import (
    add_recipient, counts, create_job, failed_list, failed_retry, get_config,
    list_items, set_config,
)
from .worker import start_workers


@click.group(help="sendqueue: batched broadcast delivery")
@click.option("--db", "db_path", envvar="SENDQUEUE_DB", default=None, help="SQLite database file")
@click.option("-v", "--verbose", is_flag=True, help="Debug logging")
@click.pass_context
def cli(ctx, db_path, verbose):
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    ctx.obj = {"db_path": db_path}
    # Ensure DB/schema exist before any command runs
    init_db(db_path)


def _connect(ctx):
    return connect_db(ctx.obj["db_path"])


def _fail(msg):
    click.secho(f"Error: {msg}", fg="red")
    raise SystemExit(1)


# ---------- Data source ----------
@cli.group("job", help="Broadcast jobs")
def job_group():
    pass


@job_group.command("create")
@click.option("--subject", required=True, help="Subject line")
@click.option("--body", default="", help="Message body")
@click.option("--list", "lists", multiple=True, help="Mailing list to send to (repeatable)")
@click.pass_context
def job_create(ctx, subject, body, lists):
    conn = _connect(ctx)
    try:
        job_id = create_job(conn, subject=subject, body=body, lists=lists)
        click.secho(f"Created job {job_id}: {subject}", fg="green")
    except ValueError as e:
        _fail(e)
    finally:
        conn.close()


@cli.group("recipient", help="Recipients")
def recipient_group():
    pass


@recipient_group.command("add")
@click.option("--email", required=True)
@click.option("--name", default=None)
@click.option("--list", "lists", multiple=True, help="Mailing list to join (repeatable)")
@click.pass_context
def recipient_add(ctx, email, name, lists):
    conn = _connect(ctx)
    try:
        rid = add_recipient(conn, email=email, name=name, lists=lists)
        click.secho(f"Recipient {rid}: {email}", fg="green")
    except ValueError as e:
        _fail(e)
    finally:
        conn.close()


# ---------- Sending ----------
def _controller(conn, sync):
    return SendController(conn, dispatcher=None if sync else TableDispatcher(conn))


@cli.command("send", help="Queue every recipient of a job and start sending")
@click.option("--job", "job_id", required=True, help="Job ID")
@click.option("--sync", is_flag=True, help="Process in this process instead of via workers")
@click.pass_context
def send_cmd(ctx, job_id, sync):
    conn = _connect(ctx)
    try:
        controller = _controller(conn, sync)
        count = controller.enqueue(job_id)
        job = controller.trigger(job_id)
        click.secho(f"Queued sendout for job: {job.subject} (ID: {job.id}), {count} recipients", fg="green")
    except ValueError as e:
        _fail(e)
    finally:
        conn.close()


@cli.command("process", help="Resume processing the send queue of a job")
@click.option("--job", "job_id", required=True, help="Job ID")
@click.option("--sync", is_flag=True, help="Process in this process instead of via workers")
@click.pass_context
def process_cmd(ctx, job_id, sync):
    conn = _connect(ctx)
    try:
        job = _controller(conn, sync).trigger(job_id)
        click.secho(f"Queued sendout for job: {job.subject} (ID: {job.id})", fg="green")
    except ValueError as e:
        _fail(e)
    finally:
        conn.close()


# ---------- Workers ----------
@cli.group("worker", help="Manage workers")
def worker_group():
    pass


@worker_group.command("start")
@click.option("--count", type=int, default=1, show_default=True, help="Number of worker threads")
@click.option("--once", is_flag=True, help="Exit when no continuations are pending")
@click.pass_context
def worker_start(ctx, count, once):
    click.secho(f"Starting {count} worker(s). Press Ctrl+C to stop…", fg="cyan")
    start_workers(count, db_path=ctx.obj["db_path"], once=once)
    click.secho("Workers stopped.", fg="yellow")


# ---------- Queue ----------
def _job_or_fail(conn, job_id):
    try:
        return SendController(conn).resolve_job(job_id)
    except ValueError as e:
        _fail(e)


@cli.command("status")
@click.option("--job", "job_id", required=True, help="Job ID")
@click.pass_context
def status_cmd(ctx, job_id):
    conn = _connect(ctx)
    try:
        job = _job_or_fail(conn, job_id)
        out = {"job": job.id, "status": job.status, "sent_at": job.sent_at, "items": counts(conn, job.id)}
        click.echo(json.dumps(out, indent=2))
    finally:
        conn.close()


@cli.command("list")
@click.option("--job", "job_id", required=True, help="Job ID")
@click.option("--status", type=click.Choice(ITEM_STATUSES), default=None)
@click.pass_context
def list_cmd(ctx, job_id, status):
    conn = _connect(ctx)
    try:
        job = _job_or_fail(conn, job_id)
        items = list_items(conn, job.id, status=status)
    finally:
        conn.close()

    if not items:
        click.echo("No queue items.")
        return

    for i in items:
        click.echo(
            f"{i.id:>8} | {i.status:<9} | recipient={i.recipient_id} | retries={i.retry_count} "
            f"| created={i.created_at} | updated={i.updated_at}"
        )


# ---------- Failed ----------
@cli.group("failed", help="Permanently failed queue items")
def failed_group():
    pass


@failed_group.command("list")
@click.option("--job", "job_id", required=True, help="Job ID")
@click.pass_context
def failed_list_cmd(ctx, job_id):
    conn = _connect(ctx)
    try:
        job = _job_or_fail(conn, job_id)
        items = failed_list(conn, job.id)
    finally:
        conn.close()

    if not items:
        click.echo("No failed items.")
        return

    for i in items:
        click.echo(f"{i.id} | recipient={i.recipient_id} | retries={i.retry_count} | updated={i.updated_at}")


@failed_group.command("retry")
@click.argument("item_id", type=int)
@click.pass_context
def failed_retry_cmd(ctx, item_id):
    conn = _connect(ctx)
    try:
        if failed_retry(conn, item_id):
            click.secho(f"Re-queued failed item {item_id}.", fg="green")
        else:
            raise click.ClickException(f"Item {item_id} is not in Failed status.")
    except click.ClickException as e:
        _fail(e)
    finally:
        conn.close()


# ---------- Config ----------
@cli.group("config", help="Configuration")
def config_group():
    pass


@config_group.command("get")
@click.pass_context
def config_get(ctx):
    conn = _connect(ctx)
    try:
        click.echo(json.dumps(get_config(conn), indent=2))
    finally:
        conn.close()


@config_group.command("set")
@click.argument("key")
@click.argument("value")
@click.pass_context
def config_set_cmd(ctx, key, value):
    conn = _connect(ctx)
    try:
        set_config(conn, key, value)
        click.secho(f"Config updated: {key}={value}", fg="green")
    except ValueError as e:
        _fail(e)
    finally:
        conn.close()


def main():
    cli()
