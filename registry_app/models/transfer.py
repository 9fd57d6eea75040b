# registry_app/models/transfer.py
"""
Job-status records for asynchronous spreadsheet imports and exports.

A job is created ``pending`` at submission time, owned by the worker while
``processing``, and becomes read-only once ``completed`` or ``failed``.
Progress percentage and remaining-time estimates are derived on read.
"""

from __future__ import annotations

import enum
from datetime import datetime
from uuid import uuid4

from sqlalchemy import Enum
from sqlalchemy.orm import Mapped, mapped_column

from .base import BaseModel, as_utc, db, utcnow


class TransferJobStatus(str, enum.Enum):
    """Lifecycle states for an import or export job."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (TransferJobStatus.COMPLETED, TransferJobStatus.FAILED)


def _new_job_id() -> str:
    return str(uuid4())


class TransferJobMixin:
    """Columns and derived progress values shared by both job kinds."""

    job_id: Mapped[str] = mapped_column(
        db.String(36),
        nullable=False,
        unique=True,
        index=True,
        default=_new_job_id,
    )
    status: Mapped[TransferJobStatus] = mapped_column(
        Enum(TransferJobStatus, name="transfer_job_status_enum"),
        nullable=False,
        default=TransferJobStatus.PENDING,
        index=True,
    )
    file_path: Mapped[str | None] = mapped_column(db.String(500))
    file_name: Mapped[str | None] = mapped_column(db.String(255))
    selected_fields: Mapped[list | None] = mapped_column(db.JSON)
    direction: Mapped[str] = mapped_column(db.String(3), nullable=False, default="rtl")
    total_rows: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    processed_rows: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    message: Mapped[str | None] = mapped_column(db.Text)
    error_message: Mapped[str | None] = mapped_column(db.Text)
    started_at: Mapped[datetime | None] = mapped_column(db.DateTime(timezone=True))
    completed_at: Mapped[datetime | None] = mapped_column(db.DateTime(timezone=True), index=True)

    @property
    def progress_percentage(self) -> float:
        total = self.total_rows or 0
        if total <= 0:
            return 0.0
        return min(100.0, (self.processed_rows or 0) / total * 100)

    def estimated_time_remaining(self, now: datetime | None = None) -> int | None:
        """
        Seconds remaining at the observed processing rate, or ``None`` when no
        rate can be computed yet.
        """
        processed = self.processed_rows or 0
        started_at = as_utc(self.started_at)
        if processed <= 0 or started_at is None:
            return None
        elapsed = ((now or utcnow()) - started_at).total_seconds()
        if elapsed <= 0:
            return None
        rate = processed / elapsed
        remaining_rows = max(0, (self.total_rows or 0) - processed)
        return int(remaining_rows / rate)

    def status_payload(self) -> dict:
        status = self.status.value if hasattr(self.status, "value") else str(self.status)
        return {
            "job_id": self.job_id,
            "status": status,
            "total_rows": self.total_rows or 0,
            "processed_rows": self.processed_rows or 0,
            "progress_percentage": round(self.progress_percentage, 2),
            "estimated_time_remaining_seconds": self.estimated_time_remaining(),
            "file_name": self.file_name,
            "message": self.message,
            "error_message": self.error_message,
            "started_at": as_utc(self.started_at).isoformat() if self.started_at else None,
            "completed_at": as_utc(self.completed_at).isoformat() if self.completed_at else None,
        }


class ImportJob(TransferJobMixin, BaseModel):
    """An uploaded spreadsheet being imported by the background worker."""

    __tablename__ = "import_jobs"

    id: Mapped[int] = mapped_column(primary_key=True)
    detected_direction: Mapped[str | None] = mapped_column(db.String(3))
    imported: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    created: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    updated: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    errors_count: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    errors: Mapped[list | None] = mapped_column(db.JSON)

    def status_payload(self) -> dict:
        payload = super().status_payload()
        payload.update(
            {
                "result_counters": {
                    "imported": self.imported or 0,
                    "created": self.created or 0,
                    "updated": self.updated or 0,
                    "errors_count": self.errors_count or 0,
                },
                "errors": list(self.errors or []),
                "detected_direction": self.detected_direction,
            }
        )
        return payload


class ExportJob(TransferJobMixin, BaseModel):
    """A spreadsheet export generated by the background worker."""

    __tablename__ = "export_jobs"

    id: Mapped[int] = mapped_column(primary_key=True)
    search: Mapped[str | None] = mapped_column(db.String(255))
    status_filter: Mapped[str | None] = mapped_column(db.String(20))

    def status_payload(self) -> dict:
        payload = super().status_payload()
        payload["result_counters"] = {"rows_written": self.processed_rows or 0}
        payload["download_ready"] = self.status == TransferJobStatus.COMPLETED and bool(self.file_path)
        return payload
