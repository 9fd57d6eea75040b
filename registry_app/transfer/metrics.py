"""Prometheus metrics helpers for spreadsheet transfers."""

from __future__ import annotations

from typing import Literal

from prometheus_client import Counter, Histogram

TransferKind = Literal["import", "export"]

_jobs_counter = Counter(
    "transfer_jobs_total",
    "Spreadsheet transfer runs by kind and outcome.",
    ["kind", "outcome"],
)
_rows_counter = Counter(
    "transfer_rows_processed_total",
    "Rows read (import) or written (export).",
    ["kind"],
)
_row_errors_counter = Counter(
    "transfer_row_errors_total",
    "Import rows skipped because of row-level errors.",
)
_batch_duration = Histogram(
    "transfer_import_batch_duration_seconds",
    "Duration of one import batch upsert in seconds.",
    ["outcome"],
    buckets=(0.05, 0.1, 0.25, 0.5, 1, 2, 5, 10, 30),
)
_fallback_counter = Counter(
    "transfer_import_batch_fallbacks_total",
    "Import batches that fell back to per-row upserts after a uniqueness conflict.",
)


def record_job(kind: TransferKind, outcome: Literal["completed", "failed"]) -> None:
    _jobs_counter.labels(kind=kind, outcome=outcome).inc()


def record_rows(kind: TransferKind, count: int) -> None:
    if count > 0:
        _rows_counter.labels(kind=kind).inc(count)


def record_row_errors(count: int) -> None:
    if count > 0:
        _row_errors_counter.inc(count)


def record_batch(*, outcome: Literal["success", "failure"], duration_seconds: float) -> None:
    """Capture the duration of one import batch."""

    _batch_duration.labels(outcome=outcome).observe(duration_seconds)


def record_batch_fallback() -> None:
    _fallback_counter.inc()
