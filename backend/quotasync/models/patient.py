"""Remote patients mirrored from a PMS."""

from datetime import date, datetime

from sqlalchemy import Date, DateTime, ForeignKey, Index, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from quotasync.models.base import Base, TimestampMixin


class Patient(Base, TimestampMixin):
    """Local mirror of a PMS patient, keyed by (clinic, vendor id, vendor)."""

    __tablename__ = "patients"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    clinic_id: Mapped[int] = mapped_column(
        ForeignKey("clinics.id", ondelete="CASCADE"),
        nullable=False,
    )
    vendor_patient_id: Mapped[str] = mapped_column(String(128), nullable=False)
    vendor_type: Mapped[str] = mapped_column(String(32), nullable=False)

    first_name: Mapped[str | None] = mapped_column(String(100), nullable=True)
    last_name: Mapped[str | None] = mapped_column(String(100), nullable=True)
    email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    phone: Mapped[str | None] = mapped_column(String(50), nullable=True)
    date_of_birth: Mapped[date | None] = mapped_column(Date, nullable=True)

    scheme_type: Mapped[str] = mapped_column(String(8), nullable=False, comment="EPC|WC")
    quota: Mapped[int] = mapped_column(default=0, nullable=False)
    sessions_used: Mapped[int] = mapped_column(default=0, nullable=False)
    physio_name: Mapped[str | None] = mapped_column(String(200), nullable=True)
    remote_modified_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    __table_args__ = (
        UniqueConstraint(
            "clinic_id",
            "vendor_patient_id",
            "vendor_type",
            name="uq_patients_clinic_vendor_patient",
        ),
        Index("ix_patients_clinic_vendor", "clinic_id", "vendor_type"),
    )

    @property
    def full_name(self) -> str:
        return " ".join(part for part in (self.first_name, self.last_name) if part) or "Unknown"

    def __repr__(self) -> str:
        return f"<Patient(id={self.id}, vendor_patient_id={self.vendor_patient_id})>"
