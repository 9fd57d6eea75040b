"""
Celery tasks for spreadsheet transfers.

Each task runs one job record end to end; the job row, not the Celery result,
is the source of truth that clients poll.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from celery import shared_task

from .celery_app import EXPORT_TASK_NAME, HEALTHCHECK_TASK_NAME, IMPORT_TASK_NAME
from .jobs import run_export_job, run_import_job


@shared_task(name=HEALTHCHECK_TASK_NAME, bind=True)
def transfer_healthcheck(self) -> dict[str, Any]:
    """
    Simple heartbeat task used by worker health checks.
    """
    now = datetime.now(timezone.utc)
    return {
        "status": "ok",
        "timestamp": now.isoformat(),
        "worker_hostname": self.request.hostname,
    }


@shared_task(name=IMPORT_TASK_NAME, bind=True)
def import_spreadsheet(self, *, job_id: str, keep_file: bool = False) -> dict[str, Any]:
    """
    Import the upload attached to ``job_id``.
    """
    return run_import_job(job_id, keep_file=keep_file)


@shared_task(name=EXPORT_TASK_NAME, bind=True)
def export_spreadsheet(self, *, job_id: str) -> dict[str, Any]:
    """
    Generate the export described by ``job_id``.
    """
    return run_export_job(job_id)
