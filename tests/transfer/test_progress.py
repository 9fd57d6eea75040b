from datetime import timedelta

import pytest

from registry_app.models import ExportJob, ImportJob, TransferJobStatus, db
from registry_app.models.base import utcnow
from registry_app.transfer.errors import InvalidJobTransition
from registry_app.transfer.progress import JobProgressTracker


@pytest.fixture
def import_job():
    job = ImportJob(file_path="/tmp/upload.xlsx", file_name="upload.xlsx")
    db.session.add(job)
    db.session.commit()
    return job


def test_new_job_defaults(import_job):
    assert import_job.status is TransferJobStatus.PENDING
    assert len(import_job.job_id) == 36
    assert import_job.direction == "rtl"
    payload = import_job.status_payload()
    assert payload["status"] == "pending"
    assert payload["progress_percentage"] == 0.0
    assert payload["estimated_time_remaining_seconds"] is None
    assert payload["result_counters"] == {"imported": 0, "created": 0, "updated": 0, "errors_count": 0}


def test_full_lifecycle(import_job):
    tracker = JobProgressTracker(import_job)
    tracker.start(total_rows=10)
    assert import_job.status is TransferJobStatus.PROCESSING
    assert import_job.started_at is not None

    tracker.snapshot(4, imported=4, created=4)
    assert import_job.status_payload()["progress_percentage"] == 40.0

    tracker.complete("تم", processed_rows=10, imported=10, created=6, updated=4, errors=["السطر 3: خطأ"])
    db.session.expire_all()
    job = db.session.get(ImportJob, import_job.id)
    assert job.status is TransferJobStatus.COMPLETED
    assert job.processed_rows == 10
    assert job.message == "تم"
    assert job.errors == ["السطر 3: خطأ"]
    assert job.completed_at is not None


def test_snapshot_never_moves_backwards(import_job):
    tracker = JobProgressTracker(import_job)
    tracker.start(total_rows=10)
    tracker.snapshot(6)
    tracker.snapshot(3)
    assert import_job.processed_rows == 6


def test_snapshot_requires_processing(import_job):
    with pytest.raises(InvalidJobTransition):
        JobProgressTracker(import_job).snapshot(1)


def test_unknown_counter_is_rejected(import_job):
    tracker = JobProgressTracker(import_job)
    tracker.start(total_rows=1)
    with pytest.raises(AttributeError):
        tracker.snapshot(1, rows_written=1)


def test_completed_job_cannot_restart_or_fail(import_job):
    tracker = JobProgressTracker(import_job)
    tracker.start(total_rows=0)
    tracker.complete("done")

    with pytest.raises(InvalidJobTransition):
        tracker.start(total_rows=1)
    with pytest.raises(InvalidJobTransition):
        tracker.fail(RuntimeError("late"))


def test_fail_keeps_committed_counters_and_discards_pending_changes(import_job):
    tracker = JobProgressTracker(import_job)
    tracker.start(total_rows=10)
    tracker.snapshot(5, imported=5)
    import_job.imported = 99

    tracker.fail(RuntimeError("boom"))

    db.session.expire_all()
    job = db.session.get(ImportJob, import_job.id)
    assert job.status is TransferJobStatus.FAILED
    assert job.error_message == "boom"
    assert job.imported == 5
    assert job.processed_rows == 5


def test_fail_from_pending(import_job):
    JobProgressTracker(import_job).fail("تعذر بدء المهمة")
    db.session.expire_all()
    job = db.session.get(ImportJob, import_job.id)
    assert job.status is TransferJobStatus.FAILED
    assert job.started_at is not None
    assert job.status_payload()["error_message"] == "تعذر بدء المهمة"


def test_estimated_time_remaining():
    job = ExportJob(total_rows=100, processed_rows=25, started_at=utcnow() - timedelta(seconds=10))
    now = job.started_at + timedelta(seconds=10)
    assert job.estimated_time_remaining(now) == 30
    assert job.progress_percentage == 25.0


def test_export_payload_reports_download_readiness():
    job = ExportJob(status=TransferJobStatus.COMPLETED, file_path="/tmp/x.xlsx", processed_rows=3)
    payload = job.status_payload()
    assert payload["download_ready"] is True
    assert payload["result_counters"] == {"rows_written": 3}
