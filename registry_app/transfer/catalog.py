"""Canonical beneficiary field catalog for spreadsheet imports and exports.

The catalog is the single source of truth for column labels, accepted header
aliases and the canonical export column order. It is built once at import
time and shared read-only by every component of the transfer engine.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Iterator, Mapping, Sequence, Tuple


@dataclass(frozen=True)
class FieldDefinition:
    """Metadata describing one logical spreadsheet column."""

    key: str
    label: str
    order: float
    aliases: Tuple[str, ...] = ()
    importable: bool = True
    household: bool = False

    def headers(self) -> Tuple[str, ...]:
        """Return the display label plus aliases accepted in header rows."""

        return (self.label, *(alias for alias in self.aliases if alias != self.label))

    def matches(self, text: str) -> bool:
        """Exact, case-sensitive comparison against the label first, then aliases."""

        return text == self.label or text in self.aliases


class FieldCatalog:
    """Immutable, ordered collection of :class:`FieldDefinition` objects.

    Iteration follows definition order, which is the order header mapping
    searches fields in. ``ordered()`` returns fields sorted by ``order`` for
    export column layout.
    """

    def __init__(self, fields: Iterable[FieldDefinition]):
        self._fields: Tuple[FieldDefinition, ...] = tuple(fields)
        by_key: dict[str, FieldDefinition] = {}
        for definition in self._fields:
            if definition.key in by_key:
                raise ValueError(f"Duplicate field key in catalog: {definition.key}")
            by_key[definition.key] = definition
        self._by_key: Mapping[str, FieldDefinition] = by_key
        self._known_headers = frozenset(header for definition in self._fields for header in definition.headers())
        self._ordered = tuple(sorted(self._fields, key=lambda definition: definition.order))

    def __iter__(self) -> Iterator[FieldDefinition]:
        return iter(self._fields)

    def __len__(self) -> int:
        return len(self._fields)

    def __contains__(self, key: object) -> bool:
        return key in self._by_key

    def __getitem__(self, key: str) -> FieldDefinition:
        return self._by_key[key]

    def get(self, key: str) -> FieldDefinition | None:
        return self._by_key.get(key)

    def keys(self) -> Tuple[str, ...]:
        return tuple(definition.key for definition in self._fields)

    def ordered(self) -> Tuple[FieldDefinition, ...]:
        return self._ordered

    @property
    def household_keys(self) -> Tuple[str, ...]:
        return tuple(definition.key for definition in self._fields if definition.household)

    def count_known_headers(self, cells: Sequence[str]) -> int:
        """Count non-empty cells whose trimmed text equals some label or alias."""

        count = 0
        for cell in cells:
            text = (cell or "").strip()
            if text and text in self._known_headers:
                count += 1
        return count

    def normalize_selection(self, selected: Iterable[str] | None) -> list[str]:
        """
        Drop unknown keys and return the selection in canonical order.

        An empty (or entirely invalid) selection falls back to every field.
        """

        requested = {key for key in (selected or ()) if isinstance(key, str) and key in self._by_key}
        if not requested:
            return [definition.key for definition in self._ordered]
        return [definition.key for definition in self._ordered if definition.key in requested]


NATIONAL_ID = "national_id"
FULL_NAME = "full_name"
PHONE = "phone"
REQUIRED_FIELDS: Tuple[str, ...] = (NATIONAL_ID, FULL_NAME)

# Dedicated tie-break headers for the phone column (see ``build_column_map``).
PRIMARY_PHONE_HEADER = "الرقم الأساسي"
BACKUP_PHONE_HEADER = "رقم احتياطي"


def _household(key: str, label: str, order: int, aliases: Tuple[str, ...] = ()) -> FieldDefinition:
    return FieldDefinition(key=key, label=label, order=order, aliases=aliases or (label,), household=True)


FIELD_CATALOG = FieldCatalog(
    (
        FieldDefinition("row_number", "رقم", 0, ("م.", "رقم", "الترقيم", "رقم السطر"), importable=False),
        FieldDefinition("full_name", "الاسم الرباعي", 1, ("الاسم", "الاسم الرباعي", "اسم", "الاسم الكامل")),
        FieldDefinition("national_id", "رقم الهوية", 2, ("رقم الهوية", "الهوية", "رقم الهوية الوطنية", "هوية")),
        FieldDefinition("phone", "رقم الجوال", 3, ("رقم الجوال", "الجوال", "الهاتف", PRIMARY_PHONE_HEADER)),
        FieldDefinition("backup_phone", BACKUP_PHONE_HEADER, 3.5, (BACKUP_PHONE_HEADER, "جوال احتياطي", "هاتف احتياطي")),
        FieldDefinition("marital_status", "الحالة الاجتماعية", 4, ("الحالة الاجتماعية", "الحالة")),
        FieldDefinition(
            "spouse_name",
            "اسم الزوج/الزوجة",
            5,
            ("اسم الزوج/الزوجة", "اسم الزوجة", "اسم الزوج", "الزوجة", "الزوج"),
        ),
        FieldDefinition("spouse_phone", "جوال الزوج/الزوجة", 6, ("جوال الزوج/الزوجة", "جوال الزوجة", "جوال الزوج")),
        FieldDefinition(
            "spouse_national_id",
            "هوية الزوج/الزوجة",
            7,
            ("هوية الزوج/الزوجة", "رقم هوية الزوجة", "هوية الزوجة", "هوية الزوج"),
        ),
        FieldDefinition(
            "primary_address",
            "عنوان السكن الحالي",
            8,
            ("عنوان السكن الحالي", "العنوان الحالي", "المحل", "العنوان"),
        ),
        FieldDefinition("previous_address", "عنوان السكن السابق", 9, ("عنوان السكن السابق", "العنوان السابق")),
        FieldDefinition("region", "المنطقة", 10, ("المنطقة", "منطقة")),
        FieldDefinition("locality", "المحلية", 11, ("المحلية", "محلية")),
        FieldDefinition("branch", "الشعبة", 12, ("الشعبة", "شعبة")),
        FieldDefinition("mosque", "المسجد", 13, ("المسجد", "مسجد")),
        FieldDefinition("housing_type", "طبيعة السكن", 14, ("طبيعة السكن", "السكن")),
        FieldDefinition("job_title", "المهنة", 15, ("المهنة", "الوظيفة")),
        FieldDefinition("health_status", "الحالة الصحية", 16, ("الحالة الصحية", "الصحة")),
        FieldDefinition(
            "family_members_count",
            "عدد أفراد الأسرة",
            17,
            ("عدد أفراد الأسرة", "عدد الافراد", "عدد الأفراد"),
            importable=False,
        ),
        FieldDefinition("status", "الحالة", 18, importable=False),
        FieldDefinition("notes", "ملاحظات", 19),
        FieldDefinition("entered_at", "تاريخ الإدخال", 20, importable=False),
        FieldDefinition("updated_at", "تاريخ آخر تحديث", 21, importable=False),
        _household("family_member_name", "أفراد الأسرة (الاسم)", 22),
        _household("family_member_relation", "أفراد الأسرة (صلة القرابة)", 23),
        _household("family_member_national_id", "أفراد الأسرة (رقم الهوية)", 24),
        _household("family_member_phone", "أفراد الأسرة (الجوال)", 25),
        _household("family_member_birth_date", "أفراد الأسرة (تاريخ الميلاد)", 26),
        _household("family_member_health_status", "أفراد الأسرة (الحالة الصحية)", 27),
        _household(
            "family_member_education_status",
            "أفراد الأسرة (الحالة الدراسية)",
            28,
            ("أفراد الأسرة (الحالة الدراسية)", "الحالة الدراسية"),
        ),
        _household("family_member_needs_care", "أفراد الأسرة (يحتاج رعاية)", 29),
        _household("family_member_is_guardian", "أفراد الأسرة (يعتبر عائلاً)", 30),
        _household("family_member_notes", "أفراد الأسرة (ملاحظات)", 31),
    )
)

# Identity columns an import may write from cell values, besides the two
# required fields which are always written.
IMPORTABLE_IDENTITY_FIELDS: Tuple[str, ...] = tuple(
    definition.key
    for definition in FIELD_CATALOG
    if definition.importable and not definition.household and definition.key not in REQUIRED_FIELDS
)
