"""
Lifecycle and progress snapshots for import/export job records.

``pending -> processing -> completed | failed``. Snapshots update counters
without changing the status and never move ``processed_rows`` backwards.
"""

from __future__ import annotations

from typing import Any

from registry_app.models import TransferJobStatus, db
from registry_app.models.base import utcnow

from .errors import InvalidJobTransition


class JobProgressTracker:
    """Drive one job record through its lifecycle, committing each change."""

    def __init__(self, job, *, session=None):
        self.session = session if session is not None else db.session
        self.model = type(job)
        self.pk = job.id
        self.job_id = job.job_id
        self.job = job

    def _require(self, *allowed: TransferJobStatus) -> None:
        if self.job.status not in allowed:
            raise InvalidJobTransition(
                f"Job {self.job_id} is {self.job.status.value}; expected one of "
                f"{', '.join(status.value for status in allowed)}"
            )

    def _apply_counters(self, counters: dict[str, Any]) -> None:
        for name, value in counters.items():
            if not hasattr(self.model, name):
                raise AttributeError(f"{self.model.__name__} has no counter {name!r}")
            setattr(self.job, name, list(value) if isinstance(value, (list, tuple)) else value)

    def start(self, total_rows: int | None = None) -> None:
        self._require(TransferJobStatus.PENDING)
        self.job.status = TransferJobStatus.PROCESSING
        self.job.started_at = utcnow()
        self.job.processed_rows = 0
        if total_rows is not None:
            self.job.total_rows = max(0, int(total_rows))
        self.session.commit()

    def snapshot(self, processed_rows: int, **counters: Any) -> None:
        """Persist progress; a smaller ``processed_rows`` than stored is ignored."""

        self._require(TransferJobStatus.PROCESSING)
        self.job.processed_rows = max(self.job.processed_rows or 0, int(processed_rows))
        self._apply_counters(counters)
        self.session.commit()

    def complete(self, message: str | None = None, *, processed_rows: int | None = None, **counters: Any) -> None:
        self._require(TransferJobStatus.PROCESSING)
        if processed_rows is not None:
            self.job.processed_rows = max(self.job.processed_rows or 0, int(processed_rows))
        self._apply_counters(counters)
        self.job.status = TransferJobStatus.COMPLETED
        self.job.message = message
        self.job.completed_at = utcnow()
        self.session.commit()

    def fail(self, error: BaseException | str) -> None:
        """
        Record a failure after rolling back whatever the run left in the
        session. Counters already committed by snapshots are kept.
        """

        self.session.rollback()
        job = self.session.get(self.model, self.pk)
        if job is None:
            raise InvalidJobTransition(f"Job {self.job_id} no longer exists")
        self.job = job
        if job.status.is_terminal:
            raise InvalidJobTransition(f"Job {self.job_id} is already {job.status.value}")

        now = utcnow()
        if job.status == TransferJobStatus.PENDING:
            job.status = TransferJobStatus.PROCESSING
            job.started_at = now
        job.status = TransferJobStatus.FAILED
        job.error_message = str(error) or error.__class__.__name__
        job.completed_at = now
        self.session.commit()
