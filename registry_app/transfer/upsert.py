"""
Batched upsert of parsed spreadsheet rows into the identity store.

A batch is resolved against existing identities with a single lookup, split
into inserts and updates, and committed phase by phase. Duplicate national
ids inside a batch keep the first occurrence's values; later occurrences only
refresh ``updated_at`` and are counted as updates.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Iterable, Mapping, Sequence

from flask import current_app
from sqlalchemy import delete, insert, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from registry_app.models import FamilyMember, Identity, db
from registry_app.models.base import utcnow

from . import metrics
from .catalog import FIELD_CATALOG, FULL_NAME, IMPORTABLE_IDENTITY_FIELDS, FieldCatalog
from .errors import PersistenceConflict, PersistenceFailure, RowDataError
from .household import decode_members
from .rows import ParsedRow

DEFAULT_BATCH_SIZE = 500
# SQLSTATE for unique_violation; MySQL reports ER_DUP_ENTRY (1062) instead.
UNIQUE_VIOLATION_SQLSTATE = "23505"
MYSQL_DUPLICATE_ENTRY = 1062


@dataclass
class BatchResult:
    """Counters for one applied batch."""

    created: int = 0
    updated: int = 0
    errors: list[str] = field(default_factory=list)

    @property
    def imported(self) -> int:
        return self.created + self.updated


@dataclass
class _PendingRow:
    row: ParsedRow
    values: dict
    members: list[dict] | None


def is_unique_violation(exc: IntegrityError) -> bool:
    """Tell a uniqueness conflict apart from NOT NULL, CHECK and FK violations."""

    orig = exc.orig
    sqlstate = getattr(orig, "pgcode", None) or getattr(orig, "sqlstate", None)
    if sqlstate:
        return sqlstate == UNIQUE_VIOLATION_SQLSTATE
    args = getattr(orig, "args", ())
    if args and args[0] == MYSQL_DUPLICATE_ENTRY:
        return True
    message = str(orig).lower()
    return "unique constraint" in message or "duplicate" in message


def _column_lengths() -> Mapping[str, int]:
    lengths: dict[str, int] = {}
    for column in Identity.__table__.columns:
        length = getattr(column.type, "length", None)
        if length:
            lengths[column.name] = length
    return lengths


class BatchUpsertEngine:
    """
    Apply batches of :class:`ParsedRow` objects to ``identities``.

    Only ``selected_fields`` are written from cell values; other columns keep
    their stored values on update and stay empty on create. Household members
    are replaced wholesale when household fields are selected and the file
    carries a member-name column.
    """

    def __init__(
        self,
        selected_fields: Iterable[str] | None = None,
        catalog: FieldCatalog = FIELD_CATALOG,
        *,
        session=None,
    ):
        self.catalog = catalog
        self.selected_fields = catalog.normalize_selection(selected_fields)
        selected = set(self.selected_fields)
        self.identity_fields = tuple(key for key in IMPORTABLE_IDENTITY_FIELDS if key in selected)
        self.household_selected = any(key in selected for key in catalog.household_keys)
        self.session = session if session is not None else db.session
        self._lengths = _column_lengths()

    # ------------------------------------------------------------------ values

    def _clip(self, key: str, value: str | None) -> str | None:
        if not value:
            return None
        length = self._lengths.get(key)
        if length and len(value) > length:
            return value[:length]
        return value

    def build_values(self, row: ParsedRow) -> dict:
        """Column values written for ``row`` (selected fields plus required ones)."""

        values = {
            "national_id": row.natural_key,
            "full_name": self._clip(FULL_NAME, row.value(FULL_NAME)),
            "needs_review": False,
        }
        for key in self.identity_fields:
            values[key] = self._clip(key, row.value(key))
        return values

    def _members_for(self, row: ParsedRow) -> list[dict] | None:
        if not self.household_selected or not row.has_column("family_member_name"):
            return None
        return decode_members(row)

    # ------------------------------------------------------------------- batch

    def apply_batch(self, rows: Sequence[ParsedRow]) -> BatchResult:
        """
        Upsert ``rows`` and return the batch counters.

        Raises :class:`PersistenceFailure` when the record store fails for any
        reason other than a uniqueness conflict on insert.
        """

        result = BatchResult()
        if not rows:
            return result

        started = time.perf_counter()
        try:
            self._apply(rows, result)
        except PersistenceFailure:
            metrics.record_batch(outcome="failure", duration_seconds=time.perf_counter() - started)
            raise
        metrics.record_batch(outcome="success", duration_seconds=time.perf_counter() - started)
        return result

    def _apply(self, rows: Sequence[ParsedRow], result: BatchResult) -> None:
        keys = {row.natural_key for row in rows}
        try:
            existing = {
                identity.national_id: identity
                for identity in self.session.scalars(select(Identity).where(Identity.national_id.in_(keys)))
            }
        except SQLAlchemyError as exc:
            self.session.rollback()
            raise PersistenceFailure(f"تعذر قراءة السجلات الموجودة: {exc}") from exc

        to_insert: list[_PendingRow] = []
        to_update: list[_PendingRow] = []
        duplicates: list[ParsedRow] = []
        seen: set[str] = set()

        for row in rows:
            if row.natural_key in seen:
                duplicates.append(row)
                continue
            seen.add(row.natural_key)
            pending = _PendingRow(row, self.build_values(row), self._members_for(row))
            if row.natural_key in existing:
                to_update.append(pending)
            else:
                to_insert.append(pending)

        if to_insert:
            try:
                self._insert_phase(to_insert, result)
            except PersistenceConflict:
                metrics.record_batch_fallback()
                current_app.logger.warning(
                    "Bulk insert hit a uniqueness conflict; retrying rows individually",
                    extra={"transfer_batch_rows": len(to_insert)},
                )
                self._fallback(to_insert, result)

        if to_update or duplicates:
            self._update_phase(to_update, duplicates, existing, result)

    def _insert_phase(self, pending_rows: list[_PendingRow], result: BatchResult) -> None:
        now = utcnow()
        payload = [
            {**pending.values, "family_members_count": 0, "entered_at": now, "created_at": now, "updated_at": now}
            for pending in pending_rows
        ]
        try:
            self.session.execute(insert(Identity), payload)
            inserted = {
                identity.national_id: identity
                for identity in self.session.scalars(
                    select(Identity).where(Identity.national_id.in_([pending.row.natural_key for pending in pending_rows]))
                )
            }
            self._replace_households(
                [(inserted[pending.row.natural_key], pending.members) for pending in pending_rows]
            )
            self.session.commit()
        except IntegrityError as exc:
            self.session.rollback()
            if is_unique_violation(exc):
                raise PersistenceConflict(str(exc.orig)) from exc
            raise PersistenceFailure(f"فشل إدراج الدفعة: {exc.orig}") from exc
        except SQLAlchemyError as exc:
            self.session.rollback()
            raise PersistenceFailure(f"فشل إدراج الدفعة: {exc}") from exc
        result.created += len(pending_rows)

    def _update_phase(
        self,
        pending_rows: list[_PendingRow],
        duplicates: list[ParsedRow],
        existing: Mapping[str, Identity],
        result: BatchResult,
    ) -> None:
        try:
            households = []
            for pending in pending_rows:
                identity = existing[pending.row.natural_key]
                self._assign(identity, pending.values)
                households.append((identity, pending.members))
            self._replace_households(households)

            if duplicates:
                touched = {
                    identity.national_id: identity
                    for identity in self.session.scalars(
                        select(Identity).where(Identity.national_id.in_({row.natural_key for row in duplicates}))
                    )
                }
                now = utcnow()
                for row in duplicates:
                    identity = touched.get(row.natural_key)
                    if identity is None:
                        result.errors.append(str(RowDataError(row.row_index, f"رقم الهوية {row.natural_key} مكرر في الملف.")))
                        continue
                    identity.updated_at = now
                    result.updated += 1
            self.session.commit()
        except SQLAlchemyError as exc:
            self.session.rollback()
            raise PersistenceFailure(f"فشل تحديث الدفعة: {exc}") from exc
        result.updated += len(pending_rows)

    def _fallback(self, pending_rows: list[_PendingRow], result: BatchResult) -> None:
        """Upsert the insert set one row per transaction after a conflict."""

        for pending in pending_rows:
            row = pending.row
            try:
                identity = self.session.scalars(
                    select(Identity).where(Identity.national_id == row.natural_key)
                ).first()
                if identity is None:
                    identity = Identity(**pending.values)
                    self.session.add(identity)
                    self.session.flush()
                    created = True
                else:
                    self._assign(identity, pending.values)
                    created = False
                self._replace_households([(identity, pending.members)])
                self.session.commit()
            except SQLAlchemyError as exc:
                self.session.rollback()
                current_app.logger.warning(
                    "Row upsert failed after batch conflict",
                    extra={"transfer_row_index": row.row_index, "transfer_error": str(exc)},
                )
                result.errors.append(str(RowDataError(row.row_index, "تعذر حفظ السجل.")))
                continue
            if created:
                result.created += 1
            else:
                result.updated += 1

    # ----------------------------------------------------------------- helpers

    @staticmethod
    def _assign(identity: Identity, values: Mapping[str, object]) -> None:
        for key, value in values.items():
            setattr(identity, key, value)
        identity.deleted_at = None
        identity.updated_at = utcnow()
        if identity.entered_at is None:
            identity.entered_at = identity.updated_at

    def _replace_households(self, items: Sequence[tuple[Identity, list[dict] | None]]) -> None:
        targets = [(identity, members) for identity, members in items if members is not None]
        if not targets:
            return
        self.session.execute(
            delete(FamilyMember)
            .where(FamilyMember.identity_id.in_([identity.id for identity, _ in targets]))
            .execution_options(synchronize_session=False)
        )
        new_members = []
        for identity, members in targets:
            for attrs in members:
                new_members.append(FamilyMember(identity_id=identity.id, **attrs))
            identity.family_members_count = len(members)
        self.session.add_all(new_members)
