"""Remote appointments mirrored from a PMS."""

from datetime import date

from sqlalchemy import Date, ForeignKey, Index, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from quotasync.models.base import Base, TimestampMixin


class Appointment(Base, TimestampMixin):
    """Local mirror of a PMS appointment, keyed by (clinic, vendor id, vendor)."""

    __tablename__ = "appointments"

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
    vendor_appointment_id: Mapped[str] = mapped_column(String(128), nullable=False)
    vendor_type: Mapped[str] = mapped_column(String(32), nullable=False)
    appointment_date: Mapped[date] = mapped_column(Date, nullable=False)
    type_tag: Mapped[str | None] = mapped_column(String(200), nullable=True)
    practitioner_name: Mapped[str | None] = mapped_column(String(200), nullable=True)
    location_name: Mapped[str | None] = mapped_column(String(200), nullable=True)
    status: Mapped[str] = mapped_column(
        String(24),
        nullable=False,
        default="scheduled",
        comment="scheduled|completed|cancelled|dna",
    )

    __table_args__ = (
        UniqueConstraint(
            "clinic_id",
            "vendor_appointment_id",
            "vendor_type",
            name="uq_appointments_clinic_vendor_appointment",
        ),
        Index("ix_appointments_clinic_status_date", "clinic_id", "status", "appointment_date"),
    )

    def __repr__(self) -> str:
        return f"<Appointment(id={self.id}, date={self.appointment_date}, status={self.status})>"
