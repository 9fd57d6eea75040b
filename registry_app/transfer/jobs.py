"""
Job orchestration shared by the HTTP views, the CLI and the Celery tasks.
"""

from __future__ import annotations

from datetime import timedelta
from pathlib import Path
from typing import Any, Iterable, Mapping, Type

from flask import current_app
from sqlalchemy import select

from registry_app.models import ExportJob, ImportJob, TransferJobStatus, db
from registry_app.models.base import utcnow

from . import metrics
from .celery_app import EXPORT_TASK_NAME, IMPORT_TASK_NAME, get_celery_app
from .direction import normalize_direction
from .exporter import ExportPipeline, export_file_name
from .importer import ImportPipeline
from .progress import JobProgressTracker
from .utils import cleanup_upload, export_artifact_path, iter_stale_files, resolve_artifact_directory, resolve_upload_directory

MB = 1024 * 1024
STALLED_MESSAGE = "انتهت المهلة المحددة للعملية."


class JobNotFound(LookupError):
    """No job record carries the requested job id."""


def get_job(model: Type[ImportJob] | Type[ExportJob], job_id: str):
    """Load a job by its public id, refreshing any copy the session already holds."""

    statement = select(model).where(model.job_id == job_id).execution_options(populate_existing=True)
    return db.session.scalars(statement).first()


def should_run_async(config: Mapping, size_bytes: int) -> bool:
    """
    Route an upload to the worker when it exceeds both the file-size threshold
    and the estimated row-count threshold.
    """

    size_threshold = config.get("TRANSFER_ASYNC_FILE_SIZE_MB", 10) * MB
    bytes_per_row = max(1, config.get("TRANSFER_ESTIMATED_BYTES_PER_ROW", 500))
    row_threshold = config.get("TRANSFER_ASYNC_ROW_THRESHOLD", 20000)
    return size_bytes > size_threshold and size_bytes / bytes_per_row > row_threshold


def create_import_job(
    file_path: Path,
    *,
    file_name: str | None = None,
    selected_fields: Iterable[str] | None = None,
    direction: str | None = None,
) -> ImportJob:
    job = ImportJob(
        status=TransferJobStatus.PENDING,
        file_path=str(file_path),
        file_name=file_name or Path(file_path).name,
        selected_fields=list(selected_fields or []),
        direction=normalize_direction(direction),
    )
    db.session.add(job)
    db.session.commit()
    return job


def create_export_job(
    *,
    selected_fields: Iterable[str] | None = None,
    direction: str | None = None,
    search: str | None = None,
    status: str | None = None,
) -> ExportJob:
    job = ExportJob(
        status=TransferJobStatus.PENDING,
        selected_fields=list(selected_fields or []),
        direction=normalize_direction(direction),
        search=(search or "").strip() or None,
        status_filter=status if status in ("pending", "verified") else None,
    )
    db.session.add(job)
    db.session.commit()
    return job


def _load_pending(model, job_id: str):
    job = get_job(model, job_id)
    if job is None:
        raise JobNotFound(f"{model.__name__} {job_id} not found.")
    if job.status != TransferJobStatus.PENDING:
        current_app.logger.warning(
            "Transfer job is not pending; skipping execution",
            extra={"transfer_job_id": job_id, "transfer_status": job.status.value},
        )
        return None
    return job


def _record_failure(kind: str, tracker: JobProgressTracker, exc: Exception) -> None:
    tracker.fail(exc)
    metrics.record_job(kind, "failed")
    current_app.logger.exception(
        "Transfer job failed",
        extra={"transfer_job_id": tracker.job_id, "transfer_kind": kind, "transfer_error": str(exc)},
    )


def run_import_job(job_id: str, *, keep_file: bool = False) -> dict[str, Any]:
    """
    Execute a pending import job. The upload is removed afterwards unless
    ``keep_file`` is set.
    """

    job = _load_pending(ImportJob, job_id)
    if job is None:
        return get_job(ImportJob, job_id).status_payload()

    tracker = JobProgressTracker(job)
    path = Path(job.file_path or "")
    selected_fields = list(job.selected_fields or [])
    cleanup_target: Path | None = None if keep_file else path

    try:
        if not path.is_file():
            raise FileNotFoundError(f"الملف المرفوع غير موجود: {path.name}")
        pipeline = ImportPipeline.from_config(current_app.config)
        result = pipeline.run(path, selected_fields, tracker=tracker)
    except Exception as exc:
        _record_failure("import", tracker, exc)
        raise
    finally:
        if cleanup_target is not None:
            cleanup_upload(cleanup_target)

    metrics.record_job("import", "completed")
    current_app.logger.info(
        "Import job completed",
        extra={
            "transfer_job_id": job_id,
            "transfer_imported": result.imported,
            "transfer_created": result.created,
            "transfer_updated": result.updated,
            "transfer_errors_count": result.errors_count,
        },
    )
    return {"job_id": job_id, **result.as_dict()}


def run_export_job(job_id: str) -> dict[str, Any]:
    """Execute a pending export job, writing the workbook to the artifact dir."""

    job = _load_pending(ExportJob, job_id)
    if job is None:
        return get_job(ExportJob, job_id).status_payload()

    file_name = export_file_name()
    destination = export_artifact_path(current_app, job_id, file_name)
    job.file_name = file_name
    job.file_path = str(destination)
    tracker = JobProgressTracker(job)

    try:
        pipeline = ExportPipeline.from_config(current_app.config)
        result = pipeline.run(
            destination,
            job.selected_fields,
            direction=job.direction,
            search=job.search,
            status=job.status_filter,
            tracker=tracker,
        )
    except Exception as exc:
        cleanup_upload(destination)
        _record_failure("export", tracker, exc)
        raise

    metrics.record_job("export", "completed")
    current_app.logger.info(
        "Export job completed",
        extra={"transfer_job_id": job_id, "transfer_rows_written": result.rows_written},
    )
    return {"job_id": job_id, **result.as_dict()}


def enqueue_import_job(job: ImportJob, *, keep_file: bool = False):
    celery_app = get_celery_app(current_app)
    if celery_app is None:
        raise RuntimeError("Transfer worker is not configured.")
    return celery_app.tasks[IMPORT_TASK_NAME].apply_async(kwargs={"job_id": job.job_id, "keep_file": keep_file})


def enqueue_export_job(job: ExportJob):
    celery_app = get_celery_app(current_app)
    if celery_app is None:
        raise RuntimeError("Transfer worker is not configured.")
    return celery_app.tasks[EXPORT_TASK_NAME].apply_async(kwargs={"job_id": job.job_id})


def fail_stalled_jobs(*, now=None) -> int:
    """
    Mark ``processing`` jobs older than twice their time limit as failed; a worker
    killed by the hard limit leaves them behind.
    """

    now = now or utcnow()
    limits = (
        (ImportJob, current_app.config.get("TRANSFER_IMPORT_TIME_LIMIT", 1800)),
        (ExportJob, current_app.config.get("TRANSFER_EXPORT_TIME_LIMIT", 600)),
    )
    failed = 0
    for model, limit in limits:
        cutoff = now - timedelta(seconds=limit * 2)
        stalled = db.session.scalars(
            select(model).where(model.status == TransferJobStatus.PROCESSING, model.started_at < cutoff)
        ).all()
        for job in stalled:
            job.status = TransferJobStatus.FAILED
            job.error_message = STALLED_MESSAGE
            job.completed_at = now
            failed += 1
    db.session.commit()
    return failed


def cleanup_stale_files(days: int, *, now=None) -> dict[str, int]:
    """
    Delete uploads and export artifacts older than ``days`` along with terminal
    job rows completed before the same cutoff.
    """

    now = now or utcnow()
    cutoff = now - timedelta(days=days)
    removed_files = 0
    for directory in (resolve_upload_directory(current_app), resolve_artifact_directory(current_app)):
        for path in list(iter_stale_files(directory, cutoff)):
            cleanup_upload(path)
            removed_files += 1

    removed_jobs = 0
    terminal = (TransferJobStatus.COMPLETED, TransferJobStatus.FAILED)
    for model in (ImportJob, ExportJob):
        expired = db.session.scalars(
            select(model).where(model.status.in_(terminal), model.completed_at < cutoff)
        ).all()
        for job in expired:
            if job.file_path:
                cleanup_upload(Path(job.file_path))
            db.session.delete(job)
            removed_jobs += 1
    db.session.commit()

    current_app.logger.info(
        "Transfer cleanup finished",
        extra={"transfer_removed_files": removed_files, "transfer_removed_jobs": removed_jobs, "transfer_days": days},
    )
    return {"files": removed_files, "jobs": removed_jobs}
