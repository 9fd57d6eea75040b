"""
Read and set the right-to-left sheet-view flag inside an xlsx container.

Only ``xl/worksheets/sheet1.xml`` is rewritten; every other part of the zip
is copied through unchanged. Cell data is never touched.
"""

from __future__ import annotations

import io
import os
import re
import shutil
import tempfile
import xml.etree.ElementTree as ET
import zipfile
from pathlib import Path
from typing import Union

from flask import current_app

from .errors import ContainerFormatError

SHEET_PART = "xl/worksheets/sheet1.xml"
SPREADSHEET_NS = "http://schemas.openxmlformats.org/spreadsheetml/2006/main"
RTL = "rtl"
LTR = "ltr"
DIRECTIONS = (RTL, LTR)

_AUTO_PREFIX = re.compile(r"ns\d+$")

PathLike = Union[str, Path]


def _tag(name: str) -> str:
    return f"{{{SPREADSHEET_NS}}}{name}"


def normalize_direction(value: str | None) -> str:
    """Return ``value`` when it is a known direction, else ``"rtl"``."""

    text = (value or "").strip().lower()
    return text if text in DIRECTIONS else RTL


def _read_sheet_part(path: PathLike) -> bytes:
    try:
        with zipfile.ZipFile(path) as archive:
            return archive.read(SHEET_PART)
    except KeyError as exc:
        raise ContainerFormatError(f"Missing worksheet part {SHEET_PART}") from exc
    except (zipfile.BadZipFile, OSError) as exc:
        raise ContainerFormatError(f"Unreadable spreadsheet container: {exc}") from exc


def _parse(data: bytes) -> ET.Element:
    try:
        for _event, (prefix, uri) in ET.iterparse(io.BytesIO(data), events=("start-ns",)):
            if not _AUTO_PREFIX.match(prefix or ""):
                ET.register_namespace(prefix or "", uri)
        return ET.fromstring(data)
    except ET.ParseError as exc:
        raise ContainerFormatError(f"Malformed worksheet XML: {exc}") from exc


def _sheet_view(root: ET.Element, *, create: bool) -> ET.Element | None:
    sheet_views = root.find(_tag("sheetViews"))
    if sheet_views is None:
        if not create:
            return None
        sheet_data = root.find(_tag("sheetData"))
        if sheet_data is None:
            raise ContainerFormatError("Worksheet has no sheetData element")
        sheet_views = ET.Element(_tag("sheetViews"))
        root.insert(list(root).index(sheet_data), sheet_views)

    sheet_view = sheet_views.find(_tag("sheetView"))
    if sheet_view is None and create:
        sheet_view = ET.SubElement(sheet_views, _tag("sheetView"), {"workbookViewId": "0"})
    return sheet_view


def is_right_to_left(path: PathLike) -> bool:
    """True when the first sheet view carries ``rightToLeft`` of ``1``/``true``."""

    root = _parse(_read_sheet_part(path))
    sheet_view = _sheet_view(root, create=False)
    if sheet_view is None:
        return False
    return (sheet_view.get("rightToLeft") or "").strip().lower() in ("1", "true")


def set_right_to_left(path: PathLike, enabled: bool = True) -> None:
    """Rewrite the sheet part of ``path`` in place with the direction flag set."""

    root = _parse(_read_sheet_part(path))
    sheet_view = _sheet_view(root, create=True)
    if enabled:
        sheet_view.set("rightToLeft", "1")
    else:
        sheet_view.attrib.pop("rightToLeft", None)
    patched = ET.tostring(root, encoding="UTF-8", xml_declaration=True)

    target = Path(path)
    handle, temp_name = tempfile.mkstemp(suffix=".xlsx", dir=target.parent)
    os.close(handle)
    try:
        with zipfile.ZipFile(target) as source, zipfile.ZipFile(temp_name, "w") as destination:
            for info in source.infolist():
                if info.filename == SHEET_PART:
                    destination.writestr(info, patched)
                    continue
                with source.open(info) as reader, destination.open(info, "w") as writer:
                    shutil.copyfileobj(reader, writer)
        os.replace(temp_name, target)
    except (zipfile.BadZipFile, OSError) as exc:
        raise ContainerFormatError(f"Could not rewrite spreadsheet container: {exc}") from exc
    finally:
        if os.path.exists(temp_name):
            os.remove(temp_name)


def read_direction(path: PathLike) -> str:
    """Detected direction of an upload; unreadable containers count as ``ltr``."""

    try:
        return RTL if is_right_to_left(path) else LTR
    except ContainerFormatError as exc:
        current_app.logger.warning(
            "Could not read sheet direction",
            extra={"transfer_file": str(path), "transfer_error": str(exc)},
        )
        return LTR
