from datetime import date, datetime
from types import SimpleNamespace

from registry_app.transfer.headers import build_column_map
from registry_app.transfer.household import (
    decode_members,
    encode_members,
    parse_birth_date,
    parse_flag,
    split_cell,
)
from registry_app.transfer.rows import parse_row

HEADER = [
    "رقم الهوية",
    "الاسم الرباعي",
    "أفراد الأسرة (الاسم)",
    "أفراد الأسرة (صلة القرابة)",
    "أفراد الأسرة (تاريخ الميلاد)",
    "أفراد الأسرة (يحتاج رعاية)",
    "أفراد الأسرة (يعتبر عائلاً)",
]


def _row(*household_cells):
    return parse_row(2, ["123456789", "أحمد علي", *household_cells], build_column_map(HEADER))


def test_split_cell():
    assert split_cell("") == []
    assert split_cell("سارة | محمد|  ليلى ") == ["سارة", "محمد", "ليلى"]


def test_parse_birth_date_formats():
    assert parse_birth_date("2010-05-01") == date(2010, 5, 1)
    assert parse_birth_date("01/05/2010") == date(2010, 5, 1)
    assert parse_birth_date(datetime(2010, 5, 1, 8, 30)) == date(2010, 5, 1)
    assert parse_birth_date("قريباً") is None
    assert parse_birth_date("") is None


def test_parse_flag():
    assert parse_flag("نعم")
    assert parse_flag(" TRUE ")
    assert not parse_flag("لا")
    assert not parse_flag("")


def test_decode_members_aligns_values_by_position():
    members = decode_members(_row("سارة | محمد", "زوجة | ابن", "1990-01-02 | ", "لا | نعم", "نعم"))

    assert members == [
        {
            "member_name": "سارة",
            "relation": "زوجة",
            "national_id": None,
            "phone": None,
            "birth_date": date(1990, 1, 2),
            "health_status": None,
            "education_status": None,
            "needs_care": False,
            "is_guardian": True,
            "notes": None,
        },
        {
            "member_name": "محمد",
            "relation": "ابن",
            "national_id": None,
            "phone": None,
            "birth_date": None,
            "health_status": None,
            "education_status": None,
            "needs_care": True,
            "is_guardian": False,
            "notes": None,
        },
    ]


def test_decode_members_skips_unnamed_positions():
    members = decode_members(_row(" | ليلى", "ابن | ابنة"))
    assert [member["member_name"] for member in members] == ["ليلى"]
    assert members[0]["relation"] == "ابنة"


def test_decode_members_without_values():
    assert decode_members(_row("", "")) == []


def test_encode_members_joins_non_empty_values():
    members = [
        SimpleNamespace(member_name="سارة", birth_date=date(1990, 1, 2), needs_care=True),
        SimpleNamespace(member_name="محمد", birth_date=None, needs_care=False),
    ]

    assert encode_members(members, "family_member_name") == "سارة | محمد"
    assert encode_members(members, "family_member_birth_date") == "1990-01-02"
    assert encode_members(members, "family_member_needs_care") == "نعم | لا"
    assert encode_members([], "family_member_name") == ""
