"""
``flask transfer`` commands for imports, exports, cleanup and the worker.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Optional

import click
from celery import Celery
from celery.exceptions import TimeoutError as CeleryTimeoutError
from flask import current_app
from flask.cli import AppGroup

from registry_app.models import ExportJob, ImportJob

from .celery_app import DEFAULT_QUEUE_NAME, HEALTHCHECK_TASK_NAME, get_celery_app
from .direction import DIRECTIONS
from .errors import TransferError
from .jobs import (
    cleanup_stale_files,
    create_export_job,
    create_import_job,
    enqueue_export_job,
    enqueue_import_job,
    fail_stalled_jobs,
    get_job,
    run_export_job,
    run_import_job,
)
from .utils import copy_to_upload, parse_selected_fields

transfer_cli = AppGroup("transfer", help="Spreadsheet import/export commands.")


def _resolve_celery(app) -> Celery:
    """
    Retrieve the registered Celery instance, raising a helpful error if missing.
    """
    celery_app = get_celery_app(app)
    if celery_app is None:
        raise click.ClickException(
            "Transfer Celery app is unavailable. Ensure the transfer package initialises before running worker commands."
        )
    return celery_app


def _format_import_summary(payload: dict) -> str:
    return (
        f"{payload.get('message', '')}\n"
        f"  total_rows    : {payload.get('total_rows', 0)}\n"
        f"  imported      : {payload.get('imported', 0)}\n"
        f"  created       : {payload.get('created', 0)}\n"
        f"  updated       : {payload.get('updated', 0)}\n"
        f"  errors_count  : {payload.get('errors_count', 0)}\n"
        f"  direction     : {payload.get('detected_direction') or 'n/a'}"
    )


@transfer_cli.command("import")
@click.argument("file_path", type=click.Path(path_type=Path, exists=True, dir_okay=False))
@click.option("--fields", default="", help="Comma-separated field keys to import (default: all).")
@click.option("--direction", type=click.Choice(DIRECTIONS), default="rtl", show_default=True)
@click.option(
    "--inline/--no-inline",
    default=False,
    help="Run inline within the CLI process instead of queueing via Celery.",
)
def transfer_import(file_path: Path, fields: str, direction: str, inline: bool):
    """Import an xlsx spreadsheet into the registry."""

    upload = copy_to_upload(file_path, current_app)
    job = create_import_job(
        upload,
        file_name=file_path.name,
        selected_fields=parse_selected_fields(fields),
        direction=direction,
    )
    job_id = job.job_id

    if not inline:
        _resolve_celery(current_app)
        async_result = enqueue_import_job(job)
        current_app.logger.info(
            "Import job queued via CLI",
            extra={"transfer_job_id": job_id, "transfer_task_id": async_result.id},
        )
        click.echo(json.dumps({"job_id": job_id, "task_id": async_result.id, "status": "queued"}))
        return

    try:
        payload = run_import_job(job_id)
    except TransferError as exc:
        raise click.ClickException(f"Import job {job_id} failed: {exc}") from exc
    click.echo(_format_import_summary(payload))
    for message in payload.get("errors", []):
        click.echo(f"  - {message}")


@transfer_cli.command("export")
@click.option("--fields", default="", help="Comma-separated field keys to export (default: all).")
@click.option("--direction", type=click.Choice(DIRECTIONS), default="rtl", show_default=True)
@click.option("--search", default=None, help="Substring filter on national id, name or phone.")
@click.option("--status", type=click.Choice(("pending", "verified")), default=None)
@click.option(
    "--inline/--no-inline",
    default=False,
    help="Run inline within the CLI process instead of queueing via Celery.",
)
def transfer_export(fields: str, direction: str, search: Optional[str], status: Optional[str], inline: bool):
    """Export registry records to an xlsx spreadsheet."""

    job = create_export_job(
        selected_fields=parse_selected_fields(fields),
        direction=direction,
        search=search,
        status=status,
    )
    job_id = job.job_id

    if not inline:
        _resolve_celery(current_app)
        async_result = enqueue_export_job(job)
        click.echo(json.dumps({"job_id": job_id, "task_id": async_result.id, "status": "queued"}))
        return

    try:
        payload = run_export_job(job_id)
    except TransferError as exc:
        raise click.ClickException(f"Export job {job_id} failed: {exc}") from exc
    job = get_job(ExportJob, job_id)
    click.echo(payload["message"])
    click.echo(f"  file: {job.file_path}")


@transfer_cli.command("status")
@click.argument("job_id")
def transfer_status(job_id: str):
    """Print the status payload of an import or export job."""

    job = get_job(ImportJob, job_id) or get_job(ExportJob, job_id)
    if job is None:
        raise click.ClickException(f"Job {job_id} not found.")
    click.echo(json.dumps(job.status_payload(), ensure_ascii=False, indent=2))


@transfer_cli.command("cleanup-files")
@click.option(
    "--days",
    default=None,
    type=int,
    help="Remove files and finished jobs older than this many days (default: TRANSFER_FILE_RETENTION_DAYS).",
)
def transfer_cleanup_files(days: Optional[int]):
    """
    Delete stale uploads, export files and finished job records.
    """

    days = days if days is not None else current_app.config.get("TRANSFER_FILE_RETENTION_DAYS", 7)
    if days < 0:
        raise click.ClickException("--days must be zero or positive.")
    stalled = fail_stalled_jobs()
    removed = cleanup_stale_files(days)
    click.echo(
        f"Removed {removed['files']} file(s) and {removed['jobs']} job record(s) older than {days} day(s); "
        f"marked {stalled} stalled job(s) as failed."
    )


@transfer_cli.group("worker")
def worker_group():
    """Manage the transfer background worker."""
    if not current_app.config.get("TRANSFER_WORKER_ENABLED"):
        click.echo(
            "Warning: TRANSFER_WORKER_ENABLED is false. Commands will still run, "
            "but enable the flag to surface accurate health status.",
            err=True,
        )


@worker_group.command("run")
@click.option("--loglevel", default="info", show_default=True)
@click.option("--concurrency", type=int, help="Number of worker processes/threads.")
@click.option(
    "--pool",
    type=str,
    help="Celery pool implementation (e.g., 'prefork', 'solo', 'threads').",
)
@click.option(
    "--queues",
    default=DEFAULT_QUEUE_NAME,
    show_default=True,
    help="Comma-separated queue list to consume.",
)
def worker_run(loglevel: str, concurrency: Optional[int], pool: Optional[str], queues: str):
    """
    Start the Celery worker in the current process.
    """
    celery_app = _resolve_celery(current_app)
    state = current_app.extensions.get("transfer")
    if state is not None:
        state["worker_enabled"] = True

    argv = ["worker", "--loglevel", loglevel, "-Q", queues]
    if concurrency:
        argv.extend(["--concurrency", str(concurrency)])
    if pool:
        argv.extend(["--pool", pool])

    pool_msg = f", pool: {pool}" if pool else ""
    click.echo(f"Starting transfer worker (queues: {queues}, loglevel: {loglevel}{pool_msg})")
    try:
        celery_app.worker_main(argv=argv)
    except KeyboardInterrupt:
        click.echo("Worker shutdown requested. Exiting...")


@worker_group.command("ping")
@click.option("--timeout", default=10.0, show_default=True, help="Seconds to wait for a response.")
def worker_ping(timeout: float):
    """
    Validate worker connectivity by executing the heartbeat task.
    """
    celery_app = _resolve_celery(current_app)
    task = celery_app.tasks.get(HEALTHCHECK_TASK_NAME)
    if task is None:
        raise click.ClickException(f"Heartbeat task '{HEALTHCHECK_TASK_NAME}' is not registered.")

    result = task.apply_async()
    try:
        payload = result.get(timeout=timeout)
    except CeleryTimeoutError as exc:
        raise click.ClickException(f"Worker did not respond within {timeout}s") from exc

    click.echo(json.dumps(payload, indent=2))
