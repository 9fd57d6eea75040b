"""
Spreadsheet export of active identities in canonical column order.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Iterable, Iterator, Mapping, Sequence, Union

from flask import current_app
from sqlalchemy import func, or_, select
from sqlalchemy.orm import selectinload

from registry_app.models import Identity, db
from registry_app.models.base import as_utc, utcnow

from . import metrics
from .catalog import FIELD_CATALOG, FieldCatalog
from .direction import RTL, normalize_direction, set_right_to_left
from .errors import ContainerFormatError
from .household import MEMBER_ATTRIBUTES, encode_members
from .progress import JobProgressTracker
from .spreadsheet import SpreadsheetStreamWriter

DEFAULT_CHUNK_SIZE = 2000
DEFAULT_PROGRESS_EVERY = 500
SHEET_TITLE = "المستفيدين"
STATUS_PENDING_LABEL = "بانتظار المراجعة"
STATUS_VERIFIED_LABEL = "موثق"
TIMESTAMP_FORMAT = "%Y-%m-%d %H:%M:%S"


def export_file_name(now: datetime | None = None) -> str:
    return f"{SHEET_TITLE}_{(now or utcnow()).strftime('%Y-%m-%d_%H%M%S')}.xlsx"


def _timestamp(value: datetime | None) -> str:
    value = as_utc(value)
    return value.strftime(TIMESTAMP_FORMAT) if value else ""


def render_cell(identity: Identity, key: str, row_number: int) -> object:
    """Value written to the export cell for ``key``."""

    if key == "row_number":
        return row_number
    if key == "status":
        return STATUS_PENDING_LABEL if identity.needs_review else STATUS_VERIFIED_LABEL
    if key in ("entered_at", "updated_at"):
        return _timestamp(getattr(identity, key))
    if key == "family_members_count":
        return identity.family_members_count or 0
    if key in MEMBER_ATTRIBUTES:
        return encode_members(identity.family_members, key)
    value = getattr(identity, key, None)
    return "" if value is None else value


def render_row(identity: Identity, fields: Sequence[str], row_number: int) -> list:
    return [render_cell(identity, key, row_number) for key in fields]


def build_export_query(search: str | None = None, status: str | None = None):
    """Select non-deleted identities, newest updates first."""

    statement = Identity.active()
    term = (search or "").strip()
    if term:
        pattern = f"%{term}%"
        statement = statement.where(
            or_(
                Identity.national_id.ilike(pattern),
                Identity.full_name.ilike(pattern),
                Identity.phone.ilike(pattern),
            )
        )
    if status == "pending":
        statement = statement.where(Identity.needs_review.is_(True))
    elif status == "verified":
        statement = statement.where(Identity.needs_review.is_(False))
    return statement.order_by(Identity.updated_at.desc(), Identity.id.desc())


@dataclass
class ExportResult:
    rows_written: int = 0
    total_rows: int = 0
    fields: list[str] = field(default_factory=list)
    direction: str = RTL
    right_to_left_applied: bool = False
    file_name: str = ""
    message: str = ""

    def as_dict(self) -> dict:
        return asdict(self)


class ExportPipeline:
    """Stream identities into an xlsx workbook chunk by chunk."""

    def __init__(
        self,
        catalog: FieldCatalog = FIELD_CATALOG,
        *,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        progress_every: int = DEFAULT_PROGRESS_EVERY,
    ):
        self.catalog = catalog
        self.chunk_size = max(1, chunk_size)
        self.progress_every = max(1, progress_every)

    @classmethod
    def from_config(cls, config: Mapping) -> "ExportPipeline":
        return cls(
            chunk_size=config.get("TRANSFER_EXPORT_CHUNK_SIZE", DEFAULT_CHUNK_SIZE),
            progress_every=config.get("TRANSFER_EXPORT_PROGRESS_EVERY", DEFAULT_PROGRESS_EVERY),
        )

    def iter_rows(self, statement, fields: Sequence[str], *, with_household: bool) -> Iterator[list]:
        """
        Yield rendered rows, loading ``chunk_size`` identities per query.

        Each chunk is rendered to plain values and expunged before its rows
        are yielded, so commits made by progress snapshots never reload it.
        """

        if with_household:
            statement = statement.options(selectinload(Identity.family_members))
        offset = 0
        row_number = 0
        while True:
            chunk = db.session.scalars(statement.limit(self.chunk_size).offset(offset)).all()
            rendered = []
            for identity in chunk:
                row_number += 1
                rendered.append(render_row(identity, fields, row_number))
                db.session.expunge(identity)
            yield from rendered
            if len(chunk) < self.chunk_size:
                return
            offset += self.chunk_size

    def run(
        self,
        destination: Union[str, Path],
        selected_fields: Iterable[str] | None = None,
        *,
        direction: str | None = RTL,
        search: str | None = None,
        status: str | None = None,
        tracker: JobProgressTracker | None = None,
    ) -> ExportResult:
        fields = self.catalog.normalize_selection(selected_fields)
        household = any(key in MEMBER_ATTRIBUTES for key in fields)
        result = ExportResult(fields=fields, direction=normalize_direction(direction), file_name=Path(destination).name)

        statement = build_export_query(search, status)
        result.total_rows = db.session.scalar(select(func.count()).select_from(statement.order_by(None).subquery()))
        if tracker is not None:
            tracker.start(total_rows=result.total_rows)

        with SpreadsheetStreamWriter(destination, title=SHEET_TITLE) as writer:
            writer.write_header([self.catalog[key].label for key in fields])
            for values in self.iter_rows(statement, fields, with_household=household):
                result.rows_written += 1
                writer.write_row(values)
                if tracker is not None and result.rows_written % self.progress_every == 0:
                    tracker.snapshot(result.rows_written)

        if result.direction == RTL:
            try:
                set_right_to_left(destination)
                result.right_to_left_applied = True
            except ContainerFormatError as exc:
                current_app.logger.warning(
                    "Export written without right-to-left flag",
                    extra={"transfer_file": str(destination), "transfer_error": str(exc)},
                )

        result.message = f"تم تصدير {result.rows_written} سجل بنجاح."
        metrics.record_rows("export", result.rows_written)
        current_app.logger.info(
            "Export pipeline finished",
            extra={
                "transfer_job_id": tracker.job_id if tracker else None,
                "transfer_rows_written": result.rows_written,
                "transfer_fields": fields,
                "transfer_direction": result.direction,
            },
        )
        if tracker is not None:
            tracker.complete(result.message, processed_rows=result.rows_written, total_rows=result.rows_written)
        return result
