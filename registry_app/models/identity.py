# registry_app/models/identity.py
"""
Beneficiary identity records and their household members.

``national_id`` is the natural key used by bulk imports to match rows against
existing records. Household members are owned by exactly one identity and
are always replaced as a whole.
"""

from __future__ import annotations

import enum
from datetime import date, datetime

from sqlalchemy import CheckConstraint, ForeignKey, Index, select
from sqlalchemy.orm import Mapped, mapped_column, relationship, validates

from .base import BaseModel, db, utcnow

MAX_FAMILY_MEMBERS = 30


class FamilyRelation(str, enum.Enum):
    """Relation of a household member to the beneficiary."""

    WIFE = "زوجة"
    HUSBAND = "زوج"
    SON = "ابن"
    DAUGHTER = "ابنة"
    OTHER = "أخرى"


class MaritalStatus(str, enum.Enum):
    """Marital status vocabulary offered by the admin and public forms."""

    SINGLE = "أعزب"
    MARRIED = "متزوج"
    SEPARATED = "منفصل"
    DIVORCED = "مطلقة"
    WIDOWED = "أرمل"
    POLYGAMOUS = "متعدد الزوجات"
    MISSING = "مفقود"
    MARTYR = "شهيد"
    DECEASED = "متوفى"
    PRISONER = "أسير"


class Identity(BaseModel):
    """A registered beneficiary."""

    __tablename__ = "identities"
    __table_args__ = (
        CheckConstraint(
            f"family_members_count >= 0 AND family_members_count <= {MAX_FAMILY_MEMBERS}",
            name="ck_identities_family_members_count",
        ),
        Index("ix_identities_updated_at", "updated_at"),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    national_id: Mapped[str] = mapped_column(db.String(20), nullable=False, unique=True, index=True)
    full_name: Mapped[str] = mapped_column(db.String(120), nullable=False, index=True)
    phone: Mapped[str | None] = mapped_column(db.String(30))
    backup_phone: Mapped[str | None] = mapped_column(db.String(30))
    marital_status: Mapped[str | None] = mapped_column(db.String(40))
    family_members_count: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)

    spouse_name: Mapped[str | None] = mapped_column(db.String(120))
    spouse_phone: Mapped[str | None] = mapped_column(db.String(30))
    spouse_national_id: Mapped[str | None] = mapped_column(db.String(20))

    primary_address: Mapped[str | None] = mapped_column(db.String(190))
    previous_address: Mapped[str | None] = mapped_column(db.String(190))
    region: Mapped[str | None] = mapped_column(db.String(100))
    locality: Mapped[str | None] = mapped_column(db.String(100))
    branch: Mapped[str | None] = mapped_column(db.String(100))
    mosque: Mapped[str | None] = mapped_column(db.String(100))
    housing_type: Mapped[str | None] = mapped_column(db.String(60))
    job_title: Mapped[str | None] = mapped_column(db.String(120))
    health_status: Mapped[str | None] = mapped_column(db.String(30))
    notes: Mapped[str | None] = mapped_column(db.String(500))

    needs_review: Mapped[bool] = mapped_column(db.Boolean, nullable=False, default=False, index=True)
    entered_at: Mapped[datetime | None] = mapped_column(db.DateTime(timezone=True), default=utcnow)
    last_verified_at: Mapped[datetime | None] = mapped_column(db.DateTime(timezone=True))
    deleted_at: Mapped[datetime | None] = mapped_column(db.DateTime(timezone=True), index=True)

    family_members = relationship(
        "FamilyMember",
        back_populates="identity",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="FamilyMember.id",
    )

    @validates("family_members_count")
    def _clamp_family_members_count(self, key, value):
        if value is None:
            return 0
        return max(0, min(MAX_FAMILY_MEMBERS, int(value)))

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None

    def soft_delete(self) -> None:
        self.deleted_at = utcnow()

    @classmethod
    def active(cls):
        """Select statement over identities that have not been soft-deleted."""
        return select(cls).where(cls.deleted_at.is_(None))

    def __repr__(self) -> str:
        return f"<Identity {self.national_id}>"


class FamilyMember(BaseModel):
    """A household member owned by a single identity."""

    __tablename__ = "family_members"

    id: Mapped[int] = mapped_column(primary_key=True)
    identity_id: Mapped[int] = mapped_column(
        ForeignKey("identities.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    member_name: Mapped[str] = mapped_column(db.String(120), nullable=False)
    relation: Mapped[str | None] = mapped_column(db.String(60))
    national_id: Mapped[str | None] = mapped_column(db.String(20))
    phone: Mapped[str | None] = mapped_column(db.String(30))
    birth_date: Mapped[date | None] = mapped_column(db.Date)
    is_guardian: Mapped[bool] = mapped_column(db.Boolean, nullable=False, default=False)
    needs_care: Mapped[bool] = mapped_column(db.Boolean, nullable=False, default=False)
    health_status: Mapped[str | None] = mapped_column(db.String(30))
    education_status: Mapped[str | None] = mapped_column(db.String(60))
    notes: Mapped[str | None] = mapped_column(db.String(500))

    identity = relationship("Identity", back_populates="family_members")

    def __repr__(self) -> str:
        return f"<FamilyMember {self.member_name!r} of identity={self.identity_id}>"
