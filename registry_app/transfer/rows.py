"""
Row classification and parsing for spreadsheet imports.
"""

from __future__ import annotations

import enum
import re
from dataclasses import dataclass
from typing import Mapping, Sequence, Tuple

from .catalog import FIELD_CATALOG, FULL_NAME, NATIONAL_ID, FieldCatalog
from .errors import RowDataError

NATIONAL_ID_MIN_LENGTH = 6
NATIONAL_ID_MAX_LENGTH = 20
# Rows matching more than this many known labels are repeated headers.
HEADER_LIKE_THRESHOLD = 3

# Arabic-Indic and Eastern Arabic-Indic digits map onto ASCII before stripping.
_ASCII_DIGITS = str.maketrans(
    "\u0660\u0661\u0662\u0663\u0664\u0665\u0666\u0667\u0668\u0669"
    "\u06f0\u06f1\u06f2\u06f3\u06f4\u06f5\u06f6\u06f7\u06f8\u06f9",
    "0123456789" * 2,
)
_NON_DIGITS = re.compile(r"[^0-9]+")


class RowKind(str, enum.Enum):
    EMPTY = "empty"
    HEADER_LIKE = "header_like"
    DATA = "data"


class RowClassifier:
    """Decide whether a row is empty, a stray header or a data row."""

    def __init__(self, catalog: FieldCatalog = FIELD_CATALOG, *, header_like_threshold: int = HEADER_LIKE_THRESHOLD):
        self.catalog = catalog
        self.header_like_threshold = header_like_threshold

    def classify(self, row: Sequence[object | None]) -> RowKind:
        cells = ["" if cell is None else str(cell).strip() for cell in row]
        if not any(cells):
            return RowKind.EMPTY
        if self.catalog.count_known_headers(cells) > self.header_like_threshold:
            return RowKind.HEADER_LIKE
        return RowKind.DATA

    def is_data(self, row: Sequence[object | None]) -> bool:
        return self.classify(row) is RowKind.DATA


def normalize_national_id(value: object | None) -> str:
    """Keep digits only; returns an empty string when nothing remains."""

    if value is None:
        return ""
    return _NON_DIGITS.sub("", str(value).translate(_ASCII_DIGITS))


@dataclass(frozen=True)
class ParsedRow:
    """
    One data row with lookup by field key over the raw cells.

    ``row_index`` is the 1-based physical row number in the sheet.
    """

    row_index: int
    natural_key: str
    raw_values: Tuple[str, ...]
    column_map: Mapping[str, int]

    def value(self, key: str) -> str:
        """Trimmed cell text for ``key``; empty when unmapped or out of range."""

        index = self.column_map.get(key)
        if index is None or index >= len(self.raw_values):
            return ""
        return self.raw_values[index].strip()

    def __getitem__(self, key: str) -> str:
        return self.value(key)

    def has_column(self, key: str) -> bool:
        return key in self.column_map


def parse_row(
    row_index: int,
    cells: Sequence[object | None],
    column_map: Mapping[str, int],
    catalog: FieldCatalog = FIELD_CATALOG,
) -> ParsedRow:
    """
    Build a :class:`ParsedRow`, raising :class:`RowDataError` when the national
    id or full name is missing or the national id is malformed.
    """

    raw_values = tuple("" if cell is None else str(cell) for cell in cells)
    draft = ParsedRow(row_index, "", raw_values, column_map)

    national_id = normalize_national_id(draft.value(NATIONAL_ID))
    full_name = draft.value(FULL_NAME)

    missing = [catalog[key].label for key, value in ((NATIONAL_ID, national_id), (FULL_NAME, full_name)) if not value]
    if missing:
        raise RowDataError(row_index, f"بيانات ناقصة ({'، '.join(missing)})")

    if not NATIONAL_ID_MIN_LENGTH <= len(national_id) <= NATIONAL_ID_MAX_LENGTH:
        raise RowDataError(row_index, "رقم الهوية غير صالح")

    return ParsedRow(row_index, national_id, raw_values, column_map)
