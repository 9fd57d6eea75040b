from pathlib import Path
from typing import Iterable, Sequence

import pytest
from openpyxl import Workbook
from sqlalchemy import select

from registry_app.models import FamilyMember, Identity, db


def write_workbook(path: Path, rows: Iterable[Sequence[object]], *, right_to_left: bool = False) -> Path:
    workbook = Workbook()
    sheet = workbook.active
    for row in rows:
        sheet.append(list(row))
    if right_to_left:
        sheet.sheet_view.rightToLeft = True
    workbook.save(path)
    return path


@pytest.fixture
def make_workbook(tmp_path):
    """Write rows to a fresh xlsx file under ``tmp_path`` and return its path."""

    counter = {"n": 0}

    def _make(rows, *, right_to_left=False, name=None):
        counter["n"] += 1
        path = tmp_path / (name or f"upload_{counter['n']}.xlsx")
        return write_workbook(path, rows, right_to_left=right_to_left)

    return _make


@pytest.fixture
def identity_factory():
    """Persist identities with sensible defaults."""

    def _create(national_id, full_name="مستفيد تجريبي", members=(), **fields):
        identity = Identity(national_id=national_id, full_name=full_name, **fields)
        for attrs in members:
            identity.family_members.append(FamilyMember(**attrs))
        if members:
            identity.family_members_count = len(members)
        db.session.add(identity)
        db.session.commit()
        return identity

    return _create


@pytest.fixture
def fetch_identity():
    """Load an identity by national id, bypassing stale session state."""

    def _fetch(national_id):
        db.session.expire_all()
        return db.session.scalars(select(Identity).where(Identity.national_id == national_id)).first()

    return _fetch
