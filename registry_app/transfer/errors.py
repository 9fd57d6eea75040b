"""
Exception hierarchy for spreadsheet imports and exports.
"""

from __future__ import annotations

from typing import Sequence

HEADERS_SEPARATOR = "، "


class TransferError(Exception):
    """Base class for import/export failures."""


class SchemaMismatch(TransferError):
    """
    Raised when a file's header row cannot be mapped to the required fields.

    Fails the whole import before any data row is processed.
    """

    def __init__(self, message: str, *, missing: Sequence[str] = (), headers: Sequence[str] = ()):
        self.missing = tuple(missing)
        self.headers = tuple(header for header in headers if header)
        if self.headers:
            message = f"{message} الأعمدة الموجودة: {HEADERS_SEPARATOR.join(self.headers)}"
        super().__init__(message)


class RowDataError(TransferError):
    """A single data row is missing a mandatory value; the row is skipped."""

    def __init__(self, row_index: int, detail: str):
        self.row_index = row_index
        self.detail = detail
        super().__init__(f"السطر {row_index}: {detail}")


class PersistenceConflict(TransferError):
    """A uniqueness violation surfaced while bulk-inserting a batch."""


class PersistenceFailure(TransferError):
    """Any other record-store failure; aborts the batch and the run."""


class ContainerFormatError(TransferError):
    """The spreadsheet container (zip/XML parts) could not be read or patched."""


class InvalidJobTransition(TransferError):
    """A job status change that the lifecycle does not allow."""
