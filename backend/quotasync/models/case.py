"""Funding cases derived from patient quota state."""

from datetime import date, datetime

from sqlalchemy import (
    Boolean,
    Date,
    DateTime,
    ForeignKey,
    Index,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column

from quotasync.models.base import Base, TimestampMixin

OVERRIDE_STATUSES = frozenset({"pending", "archived"})


class Case(Base, TimestampMixin):
    """One funding episode per (clinic, patient, vendor)."""

    __tablename__ = "cases"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    clinic_id: Mapped[int] = mapped_column(
        ForeignKey("clinics.id", ondelete="CASCADE"),
        nullable=False,
    )
    patient_id: Mapped[int] = mapped_column(
        ForeignKey("patients.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    vendor_type: Mapped[str] = mapped_column(String(32), nullable=False)
    case_number: Mapped[str] = mapped_column(String(64), nullable=False)
    case_title: Mapped[str] = mapped_column(String(300), nullable=False)
    scheme_type: Mapped[str] = mapped_column(String(8), nullable=False)

    quota: Mapped[int] = mapped_column(default=0, nullable=False)
    quota_override: Mapped[int | None] = mapped_column(nullable=True)
    sessions_used: Mapped[int] = mapped_column(default=0, nullable=False)
    sessions_remaining: Mapped[int] = mapped_column(default=0, nullable=False)
    quota_degraded: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    status: Mapped[str] = mapped_column(
        String(16),
        nullable=False,
        default="active",
        comment="active|warning|critical|pending|archived",
    )
    priority: Mapped[str] = mapped_column(
        String(16),
        nullable=False,
        default="low",
        comment="low|normal|high|urgent",
    )
    alert_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    is_alert_active: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    physio_name: Mapped[str | None] = mapped_column(String(200), nullable=True)
    location_name: Mapped[str | None] = mapped_column(String(200), nullable=True)
    appointment_type_name: Mapped[str | None] = mapped_column(String(200), nullable=True)
    last_visit_date: Mapped[date | None] = mapped_column(Date, nullable=True)

    status_change_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    last_status_change: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    status_changed_by: Mapped[str | None] = mapped_column(String(128), nullable=True)

    __table_args__ = (
        UniqueConstraint(
            "clinic_id",
            "patient_id",
            "vendor_type",
            name="uq_cases_clinic_patient_vendor",
        ),
        Index("ix_cases_clinic_status", "clinic_id", "status"),
    )

    @property
    def is_overridden(self) -> bool:
        return self.status in OVERRIDE_STATUSES

    def __repr__(self) -> str:
        return f"<Case(id={self.id}, case_number={self.case_number}, status={self.status})>"
