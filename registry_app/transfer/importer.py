"""
End-to-end spreadsheet import: header discovery, row parsing and batched
upserts, with optional progress reporting to a job tracker.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Iterable, Mapping, Union

from flask import current_app

from . import metrics
from .catalog import FIELD_CATALOG, FieldCatalog
from .direction import read_direction
from .errors import ContainerFormatError, RowDataError, SchemaMismatch
from .headers import DEFAULT_SCAN_ROWS, HeaderResolution, HeaderResolver, validate_column_map
from .progress import JobProgressTracker
from .rows import ParsedRow, RowClassifier, parse_row
from .spreadsheet import SpreadsheetStreamReader
from .upsert import DEFAULT_BATCH_SIZE, BatchResult, BatchUpsertEngine

DEFAULT_ERROR_LIMIT = 50


def summary_message(imported: int, created: int, updated: int, errors_count: int) -> str:
    parts = [f"تم معالجة {imported} سجل بنجاح."]
    if created:
        parts.append(f"تم إنشاء {created} سجل جديد.")
    if updated:
        parts.append(f"تم تحديث {updated} سجل موجود.")
    if errors_count:
        parts.append(f"حدثت أخطاء في {errors_count} سطر.")
    return " ".join(parts)


@dataclass
class ImportResult:
    imported: int = 0
    created: int = 0
    updated: int = 0
    errors: list[str] = field(default_factory=list)
    errors_count: int = 0
    total_rows: int = 0
    processed_rows: int = 0
    detected_direction: str | None = None
    header_row_number: int = 0
    message: str = ""

    def as_dict(self) -> dict:
        return asdict(self)

    def counters(self) -> dict:
        """Values mirrored onto an :class:`~registry_app.models.ImportJob`."""

        return {
            "imported": self.imported,
            "created": self.created,
            "updated": self.updated,
            "errors_count": self.errors_count,
            "errors": list(self.errors),
        }


class ImportPipeline:
    """
    Import the first worksheet of an xlsx file into the identity store.

    The file is read in up to three sequential passes: header discovery, a
    data-row count (only when a tracker needs ``total_rows`` up front) and the
    data pass itself.
    """

    def __init__(
        self,
        catalog: FieldCatalog = FIELD_CATALOG,
        *,
        batch_size: int = DEFAULT_BATCH_SIZE,
        header_scan_rows: int = DEFAULT_SCAN_ROWS,
        error_limit: int = DEFAULT_ERROR_LIMIT,
    ):
        self.catalog = catalog
        self.batch_size = max(1, batch_size)
        self.error_limit = error_limit
        self.resolver = HeaderResolver(catalog, max_rows_to_scan=header_scan_rows)
        self.classifier = RowClassifier(catalog)

    @classmethod
    def from_config(cls, config: Mapping) -> "ImportPipeline":
        return cls(
            batch_size=config.get("TRANSFER_BATCH_SIZE", DEFAULT_BATCH_SIZE),
            header_scan_rows=config.get("TRANSFER_HEADER_SCAN_ROWS", DEFAULT_SCAN_ROWS),
            error_limit=config.get("TRANSFER_ERROR_LIMIT", DEFAULT_ERROR_LIMIT),
        )

    def _resolve_header(self, reader: SpreadsheetStreamReader) -> HeaderResolution:
        rows = reader.rows()
        try:
            return self.resolver.resolve(rows)
        finally:
            rows.close()

    def count_data_rows(self, reader: SpreadsheetStreamReader, resolution: HeaderResolution) -> int:
        return sum(
            1
            for _row_number, cells in reader.data_rows(resolution.header_row_number, resolution.column_count)
            if self.classifier.is_data(cells)
        )

    def _record_error(self, result: ImportResult, message: str) -> None:
        result.errors_count += 1
        if len(result.errors) < self.error_limit:
            result.errors.append(message)

    def _flush(self, engine: BatchUpsertEngine, batch: list[ParsedRow], result: ImportResult) -> None:
        if not batch:
            return
        outcome: BatchResult = engine.apply_batch(batch)
        result.created += outcome.created
        result.updated += outcome.updated
        result.imported += outcome.imported
        for message in outcome.errors:
            self._record_error(result, message)
        batch.clear()

    def run(
        self,
        source: Union[str, Path],
        selected_fields: Iterable[str] | None = None,
        tracker: JobProgressTracker | None = None,
    ) -> ImportResult:
        """
        Import ``source`` and return the counters.

        Raises :class:`SchemaMismatch` before touching any record when the file
        cannot be opened or its header lacks the required columns.
        """

        result = ImportResult()
        try:
            reader = SpreadsheetStreamReader(source).open()
        except ContainerFormatError as exc:
            raise SchemaMismatch(f"تعذر قراءة الملف. تأكد من أن الملف بصيغة Excel صالحة. ({exc})") from exc

        with reader:
            result.detected_direction = read_direction(source)
            resolution = self._resolve_header(reader)
            result.header_row_number = resolution.header_row_number
            column_map = self.resolver.build_column_map(resolution.header_row)
            validate_column_map(column_map, resolution.header_row, self.catalog)

            current_app.logger.info(
                "Import header resolved",
                extra={
                    "transfer_job_id": tracker.job_id if tracker else None,
                    "transfer_header_row": resolution.header_row_number,
                    "transfer_mapped_fields": sorted(column_map),
                },
            )

            if tracker is not None:
                tracker.start(total_rows=self.count_data_rows(reader, resolution))

            engine = BatchUpsertEngine(selected_fields, self.catalog)
            batch: list[ParsedRow] = []
            for row_number, cells in reader.data_rows(resolution.header_row_number, resolution.column_count):
                if not self.classifier.is_data(cells):
                    continue
                result.total_rows += 1
                try:
                    batch.append(parse_row(row_number, cells, column_map, self.catalog))
                except RowDataError as exc:
                    self._record_error(result, str(exc))

                if len(batch) >= self.batch_size:
                    self._flush(engine, batch, result)
                    result.processed_rows = result.total_rows
                    if tracker is not None:
                        tracker.snapshot(result.processed_rows, **result.counters())

            self._flush(engine, batch, result)
            result.processed_rows = result.total_rows

        result.message = summary_message(result.imported, result.created, result.updated, result.errors_count)
        metrics.record_rows("import", result.processed_rows)
        metrics.record_row_errors(result.errors_count)
        current_app.logger.info(
            "Import pipeline finished",
            extra={
                "transfer_job_id": tracker.job_id if tracker else None,
                "transfer_total_rows": result.total_rows,
                "transfer_created": result.created,
                "transfer_updated": result.updated,
                "transfer_errors_count": result.errors_count,
            },
        )
        if tracker is not None:
            tracker.complete(
                result.message,
                processed_rows=result.processed_rows,
                total_rows=result.total_rows,
                detected_direction=result.detected_direction,
                **result.counters(),
            )
        return result
