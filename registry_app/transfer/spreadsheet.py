"""
Streaming adapters over xlsx workbooks.

The reader wraps openpyxl's read-only mode so rows are parsed lazily from the
zip container; the writer wraps write-only mode so rows are flushed as they
are appended. Neither keeps the whole sheet in memory.
"""

from __future__ import annotations

import gc
import io
from datetime import date, datetime, time
from pathlib import Path
from typing import IO, Iterator, Sequence, Union
from zipfile import BadZipFile

from openpyxl import Workbook, load_workbook
from openpyxl.cell import WriteOnlyCell
from openpyxl.cell.cell import ILLEGAL_CHARACTERS_RE
from openpyxl.styles import Font
from openpyxl.utils.exceptions import InvalidFileException

from .errors import ContainerFormatError

Source = Union[str, Path, IO[bytes]]

HEADER_FONT = Font(bold=True, size=12)
GC_EVERY_ROWS = 5000


def cell_text(value: object | None) -> str:
    """Render a raw cell value as the text the import pipeline works with."""

    if value is None:
        return ""
    if isinstance(value, bool):
        return "1" if value else "0"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    if isinstance(value, datetime):
        if value.time() == time(0, 0):
            return value.strftime("%Y-%m-%d")
        return value.strftime("%Y-%m-%d %H:%M:%S")
    if isinstance(value, date):
        return value.strftime("%Y-%m-%d")
    return str(value)


def fit_to_width(cells: Sequence[str], width: int) -> list[str]:
    """Pad with empty strings or truncate ``cells`` to exactly ``width``."""

    row = list(cells[:width])
    if len(row) < width:
        row.extend([""] * (width - len(row)))
    return row


class SpreadsheetStreamReader:
    """
    Read the first worksheet of an xlsx file row by row.

    ``rows()`` may be called more than once; each call restarts from the top
    of the sheet.
    """

    def __init__(self, source: Source):
        self.source = source
        self._workbook = None
        self._worksheet = None

    def open(self) -> "SpreadsheetStreamReader":
        if self._workbook is not None:
            return self
        try:
            self._workbook = load_workbook(self.source, read_only=True, data_only=True, keep_links=False)
            worksheets = self._workbook.worksheets
            if not worksheets:
                raise ContainerFormatError("الملف لا يحتوي على أوراق عمل.")
            self._worksheet = worksheets[0]
            # Some writers record stale dimensions; scan the actual rows instead.
            self._worksheet.reset_dimensions()
        except ContainerFormatError:
            self.close()
            raise
        except (InvalidFileException, BadZipFile, KeyError, OSError, ValueError) as exc:
            self.close()
            raise ContainerFormatError(f"تعذر قراءة الملف: {exc}") from exc
        return self

    def close(self) -> None:
        if self._workbook is not None:
            self._workbook.close()
        self._workbook = None
        self._worksheet = None

    def __enter__(self) -> "SpreadsheetStreamReader":
        return self.open()

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def rows(self) -> Iterator[list[str]]:
        """Yield every physical row as a list of cell texts, top to bottom."""

        if self._worksheet is None:
            self.open()
        try:
            for values in self._worksheet.iter_rows(values_only=True):
                yield [cell_text(value) for value in values]
        except (BadZipFile, KeyError, ValueError) as exc:
            raise ContainerFormatError(f"تعذر قراءة الملف: {exc}") from exc

    def data_rows(self, after_row: int, width: int) -> Iterator[tuple[int, list[str]]]:
        """
        Yield ``(row_number, cells)`` for rows below ``after_row``, each fitted
        to ``width`` columns. Row numbers are 1-based physical positions.
        """

        for row_number, cells in enumerate(self.rows(), start=1):
            if row_number <= after_row:
                continue
            yield row_number, fit_to_width(cells, width)


class SpreadsheetStreamWriter:
    """Append rows to a single-sheet workbook in write-only mode."""

    def __init__(self, destination: Source, *, title: str = "Sheet1", gc_every: int = GC_EVERY_ROWS):
        self.destination = destination
        self.gc_every = gc_every
        self.rows_written = 0
        self._workbook = Workbook(write_only=True)
        self._worksheet = self._workbook.create_sheet(title=title)
        self._header_written = False
        self._closed = False

    @staticmethod
    def _clean(value: object | None) -> object | None:
        if isinstance(value, str):
            return ILLEGAL_CHARACTERS_RE.sub("", value)
        return value

    def write_header(self, labels: Sequence[str]) -> None:
        if self._header_written:
            raise RuntimeError("Header row already written")
        cells = []
        for label in labels:
            cell = WriteOnlyCell(self._worksheet, value=self._clean(label))
            cell.font = HEADER_FONT
            cells.append(cell)
        self._worksheet.append(cells)
        self._header_written = True

    def write_row(self, values: Sequence[object | None]) -> None:
        self._worksheet.append([self._clean(value) for value in values])
        self.rows_written += 1
        if self.gc_every and self.rows_written % self.gc_every == 0:
            gc.collect()

    def close(self) -> None:
        if self._closed:
            return
        self._workbook.save(self.destination)
        self._closed = True

    def discard(self) -> None:
        """
        Release a partially written workbook without leaving a file behind.

        Write-only worksheets buffer rows in temporary files that openpyxl only
        removes while saving, so the workbook is saved and the output dropped.
        """

        if self._closed:
            return
        self._closed = True
        if isinstance(self.destination, (str, Path)):
            self._workbook.save(self.destination)
            Path(self.destination).unlink(missing_ok=True)
        else:
            self._workbook.save(io.BytesIO())

    def __enter__(self) -> "SpreadsheetStreamWriter":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        if exc_type is None:
            self.close()
        else:
            self.discard()
