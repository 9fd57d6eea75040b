"""
Header-row discovery and column mapping for uploaded spreadsheets.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Iterator, Mapping, Sequence, Tuple

from .catalog import (
    BACKUP_PHONE_HEADER,
    FIELD_CATALOG,
    FULL_NAME,
    NATIONAL_ID,
    PHONE,
    PRIMARY_PHONE_HEADER,
    FieldCatalog,
)
from .errors import SchemaMismatch

DEFAULT_SCAN_ROWS = 20
# A header row must match strictly more than this many known labels.
HEADER_MATCH_THRESHOLD = 2


def _clean(value: object | None) -> str:
    if value is None:
        return ""
    return str(value).strip()


def trim_trailing_empty(cells: Sequence[object | None]) -> list[str]:
    """Trim every cell and drop empty cells from the end of the row."""

    cleaned = [_clean(cell) for cell in cells]
    while cleaned and not cleaned[-1]:
        cleaned.pop()
    return cleaned


@dataclass(frozen=True)
class HeaderResolution:
    """The row selected as the header and its position (1-based)."""

    header_row: Tuple[str, ...]
    header_row_number: int
    matched_labels: int

    @property
    def column_count(self) -> int:
        return len(self.header_row)


class ColumnMap(Mapping[str, int]):
    """Read-only mapping from field key to 0-based column index."""

    def __init__(self, mapping: Mapping[str, int]):
        self._mapping = dict(mapping)

    def __getitem__(self, key: str) -> int:
        return self._mapping[key]

    def __iter__(self) -> Iterator[str]:
        return iter(self._mapping)

    def __len__(self) -> int:
        return len(self._mapping)

    def __repr__(self) -> str:
        return f"ColumnMap({self._mapping!r})"

    def as_dict(self) -> dict[str, int]:
        return dict(self._mapping)


class HeaderResolver:
    """Locate the header row and build the column map against a catalog."""

    def __init__(self, catalog: FieldCatalog = FIELD_CATALOG, *, max_rows_to_scan: int = DEFAULT_SCAN_ROWS):
        self.catalog = catalog
        self.max_rows_to_scan = max_rows_to_scan

    def resolve(self, rows: Iterable[Sequence[object | None]]) -> HeaderResolution:
        """
        Return the first row, within the scan window, matching more than two
        known labels. Falls back to row 1 when none qualifies; never raises.
        """

        first_row: list[str] | None = None
        for row_number, row in enumerate(rows, start=1):
            if row_number > self.max_rows_to_scan:
                break
            cells = trim_trailing_empty(row)
            if first_row is None:
                first_row = cells
            matched = self.catalog.count_known_headers(cells)
            if matched > HEADER_MATCH_THRESHOLD:
                return HeaderResolution(tuple(cells), row_number, matched)

        if first_row is None:
            return HeaderResolution((), 0, 0)
        return HeaderResolution(tuple(first_row), 1, self.catalog.count_known_headers(first_row))

    def build_column_map(self, header_row: Sequence[object | None]) -> ColumnMap:
        return build_column_map(header_row, self.catalog)


def build_column_map(header_row: Sequence[object | None], catalog: FieldCatalog = FIELD_CATALOG) -> ColumnMap:
    """
    Map header cells to field keys.

    Cells are visited left to right; the first field (in catalog order) whose
    label or alias equals the trimmed text claims the column. A field is only
    claimed once, except ``phone`` which later columns may take over. A second
    pass lets the primary-phone header, then the backup-phone header, fill an
    unmapped ``phone``.
    """

    mapping: dict[str, int] = {}
    used_columns: set[int] = set()

    for column_index, raw in enumerate(header_row):
        text = _clean(raw)
        if not text or column_index in used_columns:
            continue
        for definition in catalog:
            if definition.key in mapping and definition.key != PHONE:
                continue
            if definition.matches(text):
                mapping[definition.key] = column_index
                used_columns.add(column_index)
                break

    primary_phone_column: int | None = None
    backup_phone_column: int | None = None
    for column_index, raw in enumerate(header_row):
        text = _clean(raw)
        if text == PRIMARY_PHONE_HEADER:
            primary_phone_column = column_index
        elif text == BACKUP_PHONE_HEADER:
            backup_phone_column = column_index

    if PHONE in catalog and PHONE not in mapping:
        if primary_phone_column is not None:
            mapping[PHONE] = primary_phone_column
        elif backup_phone_column is not None:
            mapping[PHONE] = backup_phone_column

    return ColumnMap(mapping)


def validate_column_map(
    column_map: Mapping[str, int],
    header_row: Sequence[object | None],
    catalog: FieldCatalog = FIELD_CATALOG,
) -> None:
    """
    Raise :class:`SchemaMismatch` unless both required columns were mapped.
    """

    headers = [_clean(cell) for cell in header_row]
    if not column_map:
        raise SchemaMismatch(
            "فشل في مطابقة أعمدة الملف. تأكد من أن أسماء الأعمدة في الملف تطابق الأسماء المتوقعة.",
            missing=(NATIONAL_ID, FULL_NAME),
            headers=headers,
        )

    for key in (NATIONAL_ID, FULL_NAME):
        if key not in column_map:
            label = catalog[key].label if key in catalog else key
            missing = tuple(required for required in (NATIONAL_ID, FULL_NAME) if required not in column_map)
            raise SchemaMismatch(
                f'لم يتم العثور على عمود "{label}" في الملف.',
                missing=missing,
                headers=headers,
            )
