"""
Pipe-joined encoding of household members inside spreadsheet cells.

Each household column carries one value per member separated by ``" | "``;
members are aligned by position across the columns.
"""

from __future__ import annotations

from datetime import date, datetime
from typing import Iterable, Sequence

from .rows import ParsedRow

SEPARATOR = " | "
TRUTHY_VALUES = frozenset({"نعم", "yes", "1", "true"})
BIRTH_DATE_FORMATS = ("%Y-%m-%d", "%Y/%m/%d", "%d/%m/%Y", "%d-%m-%Y", "%Y-%m-%d %H:%M:%S")

# household field key -> FamilyMember attribute
MEMBER_ATTRIBUTES = {
    "family_member_name": "member_name",
    "family_member_relation": "relation",
    "family_member_national_id": "national_id",
    "family_member_phone": "phone",
    "family_member_birth_date": "birth_date",
    "family_member_health_status": "health_status",
    "family_member_education_status": "education_status",
    "family_member_needs_care": "needs_care",
    "family_member_is_guardian": "is_guardian",
    "family_member_notes": "notes",
}
FLAG_KEYS = frozenset({"family_member_needs_care", "family_member_is_guardian"})


def split_cell(value: str) -> list[str]:
    if not value:
        return []
    return [part.strip() for part in value.split(SEPARATOR.strip())]


def parse_birth_date(value: object | None) -> date | None:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    text = str(value).strip()
    for fmt in BIRTH_DATE_FORMATS:
        try:
            return datetime.strptime(text, fmt).date()
        except ValueError:
            continue
    return None


def parse_flag(value: str) -> bool:
    return value.strip().lower() in TRUTHY_VALUES


def decode_members(row: ParsedRow) -> list[dict]:
    """
    Decode the household columns of ``row`` into attribute dicts suitable for
    ``FamilyMember(**attrs)``. Members without a name are skipped.
    """

    columns = {key: split_cell(row.value(key)) for key in MEMBER_ATTRIBUTES}
    width = max((len(values) for values in columns.values()), default=0)

    members: list[dict] = []
    for position in range(width):
        attrs: dict = {}
        for key, attribute in MEMBER_ATTRIBUTES.items():
            values = columns[key]
            raw = values[position] if position < len(values) else ""
            if key in FLAG_KEYS:
                attrs[attribute] = parse_flag(raw)
            elif key == "family_member_birth_date":
                attrs[attribute] = parse_birth_date(raw)
            else:
                attrs[attribute] = raw or None
        if not attrs["member_name"]:
            continue
        members.append(attrs)
    return members


def _render(value: object | None) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "نعم" if value else "لا"
    if isinstance(value, (date, datetime)):
        return value.strftime("%Y-%m-%d")
    return str(value)


def encode_members(members: Iterable[object], key: str) -> str:
    """Join one household attribute across ``members`` for an export cell."""

    attribute = MEMBER_ATTRIBUTES[key]
    values: Sequence[str] = [_render(getattr(member, attribute, None)) for member in members]
    return SEPARATOR.join(value for value in values if value)
