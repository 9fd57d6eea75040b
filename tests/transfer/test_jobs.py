import os
from datetime import timedelta
from pathlib import Path

import pytest

from registry_app.models import ExportJob, ImportJob, TransferJobStatus, db
from registry_app.models.base import utcnow
from registry_app.transfer.errors import SchemaMismatch
from registry_app.transfer.jobs import (
    MB,
    STALLED_MESSAGE,
    JobNotFound,
    cleanup_stale_files,
    create_export_job,
    create_import_job,
    enqueue_export_job,
    enqueue_import_job,
    fail_stalled_jobs,
    get_job,
    run_export_job,
    run_import_job,
    should_run_async,
)
from registry_app.transfer.utils import copy_to_upload, resolve_upload_directory

HEADER = ["رقم الهوية", "الاسم الرباعي", "رقم الجوال"]


def _reload(model, job_id):
    db.session.expire_all()
    return get_job(model, job_id)


@pytest.fixture
def queued_import(app, make_workbook):
    def _queue(rows, **kwargs):
        upload = copy_to_upload(make_workbook(rows), app)
        return create_import_job(upload, file_name="المستفيدين.xlsx", **kwargs)

    return _queue


def test_should_run_async_requires_both_thresholds():
    config = {
        "TRANSFER_ASYNC_FILE_SIZE_MB": 10,
        "TRANSFER_ASYNC_ROW_THRESHOLD": 20000,
        "TRANSFER_ESTIMATED_BYTES_PER_ROW": 500,
    }
    assert not should_run_async(config, 5 * MB)
    assert should_run_async(config, 11 * MB)
    assert not should_run_async({**config, "TRANSFER_ESTIMATED_BYTES_PER_ROW": 1000}, 11 * MB)


def test_create_import_job_normalizes_inputs(tmp_path):
    job = create_import_job(tmp_path / "x.xlsx", selected_fields=None, direction="sideways")
    assert job.status is TransferJobStatus.PENDING
    assert job.direction == "rtl"
    assert job.selected_fields == []
    assert job.file_name == "x.xlsx"


def test_create_export_job_drops_unknown_status_filter():
    job = create_export_job(selected_fields=["phone"], direction="ltr", search="  ", status="archived")
    assert (job.direction, job.search, job.status_filter) == ("ltr", None, None)


def test_run_import_job_completes_and_removes_upload(queued_import, fetch_identity):
    job = queued_import([HEADER, ["123456789", "أحمد علي", "0591234567"]], direction="ltr")
    upload = Path(job.file_path)

    payload = run_import_job(job.job_id)

    assert payload["job_id"] == job.job_id
    assert payload["created"] == 1
    assert not upload.exists()
    stored = _reload(ImportJob, job.job_id)
    assert stored.status is TransferJobStatus.COMPLETED
    assert stored.file_name == "المستفيدين.xlsx"
    assert stored.status_payload()["result_counters"]["created"] == 1
    assert fetch_identity("123456789") is not None


def test_run_import_job_keep_file(queued_import):
    job = queued_import([HEADER, ["123456789", "أحمد", ""]])
    run_import_job(job.job_id, keep_file=True)
    assert Path(_reload(ImportJob, job.job_id).file_path).exists()


def test_schema_mismatch_fails_the_job(queued_import):
    job = queued_import([["الاسم الرباعي", "رقم الجوال", "المنطقة"], ["أحمد", "", ""]])
    job_id = job.job_id

    with pytest.raises(SchemaMismatch):
        run_import_job(job_id)

    stored = _reload(ImportJob, job_id)
    assert stored.status is TransferJobStatus.FAILED
    assert "رقم الهوية" in stored.error_message
    assert not Path(stored.file_path).exists()


def test_missing_upload_fails_the_job(app):
    job = create_import_job(resolve_upload_directory(app) / "missing.xlsx")
    job_id = job.job_id

    with pytest.raises(FileNotFoundError):
        run_import_job(job_id)

    assert _reload(ImportJob, job_id).status is TransferJobStatus.FAILED


def test_non_pending_job_is_not_rerun(queued_import):
    job = queued_import([HEADER, ["123456789", "أحمد", ""]])
    run_import_job(job.job_id, keep_file=True)

    payload = run_import_job(job.job_id)

    assert payload["status"] == "completed"
    assert payload["result_counters"]["created"] == 1


def test_unknown_job_raises():
    with pytest.raises(JobNotFound):
        run_import_job("00000000-0000-0000-0000-000000000000")


def test_run_export_job_writes_artifact(identity_factory):
    identity_factory("123456789")
    job = create_export_job(selected_fields=["national_id", "full_name"], direction="rtl")

    payload = run_export_job(job.job_id)

    assert payload["rows_written"] == 1
    stored = _reload(ExportJob, job.job_id)
    assert stored.status is TransferJobStatus.COMPLETED
    assert stored.file_name.startswith("المستفيدين_")
    assert Path(stored.file_path).is_file()
    assert stored.status_payload()["download_ready"] is True


def test_enqueued_jobs_run_through_celery(queued_import):
    import_job = queued_import([HEADER, ["123456789", "أحمد", ""]])
    export_job = create_export_job()
    import_id, export_id = import_job.job_id, export_job.job_id

    enqueue_import_job(import_job)
    enqueue_export_job(export_job)

    assert _reload(ImportJob, import_id).status is TransferJobStatus.COMPLETED
    exported = _reload(ExportJob, export_id)
    assert exported.status is TransferJobStatus.COMPLETED
    assert exported.total_rows == 1


def test_fail_stalled_jobs(app):
    app.config["TRANSFER_IMPORT_TIME_LIMIT"] = 60
    now = utcnow()
    stalled = ImportJob(status=TransferJobStatus.PROCESSING, started_at=now - timedelta(minutes=5))
    running = ImportJob(status=TransferJobStatus.PROCESSING, started_at=now - timedelta(seconds=30))
    db.session.add_all([stalled, running])
    db.session.commit()
    stalled_id, running_id = stalled.job_id, running.job_id

    assert fail_stalled_jobs(now=now) == 1

    failed = _reload(ImportJob, stalled_id)
    assert failed.status is TransferJobStatus.FAILED
    assert failed.error_message == STALLED_MESSAGE
    assert _reload(ImportJob, running_id).status is TransferJobStatus.PROCESSING


def test_cleanup_stale_files(app):
    upload_dir = resolve_upload_directory(app)
    old_file = upload_dir / "old.xlsx"
    fresh_file = upload_dir / "fresh.xlsx"
    old_file.write_bytes(b"x")
    fresh_file.write_bytes(b"x")
    ten_days_ago = (utcnow() - timedelta(days=10)).timestamp()
    os.utime(old_file, (ten_days_ago, ten_days_ago))

    now = utcnow()
    db.session.add_all(
        [
            ExportJob(status=TransferJobStatus.COMPLETED, completed_at=now - timedelta(days=10)),
            ExportJob(status=TransferJobStatus.FAILED, completed_at=now - timedelta(days=1)),
            ImportJob(status=TransferJobStatus.PROCESSING, started_at=now - timedelta(days=10)),
        ]
    )
    db.session.commit()

    removed = cleanup_stale_files(7, now=now)

    assert removed == {"files": 1, "jobs": 1}
    assert not old_file.exists()
    assert fresh_file.exists()
    assert db.session.query(ExportJob).count() == 1
    assert db.session.query(ImportJob).count() == 1
