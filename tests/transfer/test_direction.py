import zipfile

import pytest
from openpyxl import load_workbook

from registry_app.transfer.direction import (
    SHEET_PART,
    is_right_to_left,
    normalize_direction,
    read_direction,
    set_right_to_left,
)
from registry_app.transfer.errors import ContainerFormatError
from registry_app.transfer.spreadsheet import SpreadsheetStreamWriter


@pytest.mark.parametrize(
    "value, expected",
    [("rtl", "rtl"), ("LTR", "ltr"), (" ltr ", "ltr"), ("", "rtl"), (None, "rtl"), ("up", "rtl")],
)
def test_normalize_direction(value, expected):
    assert normalize_direction(value) == expected


def test_detects_right_to_left_sheet(make_workbook):
    assert is_right_to_left(make_workbook([["a"]], right_to_left=True))
    assert not is_right_to_left(make_workbook([["a"]]))


def test_read_direction(make_workbook):
    assert read_direction(make_workbook([["a"]], right_to_left=True)) == "rtl"
    assert read_direction(make_workbook([["a"]])) == "ltr"


def test_read_direction_of_unreadable_file_is_ltr(tmp_path):
    path = tmp_path / "broken.xlsx"
    path.write_bytes(b"garbage")
    assert read_direction(path) == "ltr"


def test_set_right_to_left_on_streamed_workbook(tmp_path):
    path = tmp_path / "export.xlsx"
    with SpreadsheetStreamWriter(path) as writer:
        writer.write_header(["الاسم", "رقم الهوية"])
        writer.write_row(["أحمد", "123456789"])

    with zipfile.ZipFile(path) as archive:
        names_before = sorted(archive.namelist())

    set_right_to_left(path)

    assert is_right_to_left(path)
    with zipfile.ZipFile(path) as archive:
        assert sorted(archive.namelist()) == names_before
    sheet = load_workbook(path).active
    assert sheet.sheet_view.rightToLeft
    assert [cell.value for cell in sheet[2]] == ["أحمد", "123456789"]


def test_set_right_to_left_can_clear_the_flag(make_workbook):
    path = make_workbook([["a"]], right_to_left=True)
    set_right_to_left(path, enabled=False)
    assert not is_right_to_left(path)


def test_missing_sheet_part_raises(tmp_path):
    path = tmp_path / "empty.xlsx"
    with zipfile.ZipFile(path, "w") as archive:
        archive.writestr("[Content_Types].xml", "<Types/>")

    with pytest.raises(ContainerFormatError, match=SHEET_PART):
        set_right_to_left(path)
