"""Clinic tenants and their PMS credentials."""

from datetime import datetime

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column

from quotasync.models.base import Base, TimestampMixin


class Clinic(Base, TimestampMixin):
    """A clinic tenant and its scheme tagging conventions."""

    __tablename__ = "clinics"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    epc_tags: Mapped[list[str]] = mapped_column(
        JSON,
        nullable=False,
        default=lambda: ["EPC"],
        comment="Appointment type names counted against the EPC quota",
    )
    wc_tags: Mapped[list[str]] = mapped_column(
        JSON,
        nullable=False,
        default=lambda: ["WC"],
        comment="Appointment type names counted against the WC quota",
    )
    default_location: Mapped[str | None] = mapped_column(String(200), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    def __repr__(self) -> str:
        return f"<Clinic(id={self.id}, name={self.name})>"


class PMSCredential(Base, TimestampMixin):
    """Encrypted link between a clinic and one PMS vendor."""

    __tablename__ = "pms_credentials"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    clinic_id: Mapped[int] = mapped_column(
        ForeignKey("clinics.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    vendor_type: Mapped[str] = mapped_column(String(32), nullable=False)
    encrypted_secret: Mapped[str] = mapped_column(Text, nullable=False)
    base_url: Mapped[str | None] = mapped_column(String(500), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    consecutive_failures: Mapped[int] = mapped_column(default=0, nullable=False)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    last_failure_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    deactivated_reason: Mapped[str | None] = mapped_column(
        String(64),
        nullable=True,
        comment="paused|credential_failures",
    )
    force_full_requested: Mapped[bool] = mapped_column(
        Boolean,
        default=False,
        nullable=False,
    )

    __table_args__ = (
        UniqueConstraint(
            "clinic_id",
            "vendor_type",
            name="uq_pms_credentials_clinic_vendor",
        ),
        Index("ix_pms_credentials_active", "is_active"),
    )

    def __repr__(self) -> str:
        return f"<PMSCredential(clinic_id={self.clinic_id}, vendor_type={self.vendor_type})>"
