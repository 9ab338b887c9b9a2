"""Sync log entries; one row per orchestrator execution per clinic and vendor."""

from datetime import datetime
from typing import Any

from sqlalchemy import JSON, DateTime, ForeignKey, Index, String, Text, text
from sqlalchemy.orm import Mapped, mapped_column

from quotasync.models.base import Base, TimestampMixin


class SyncRun(Base, TimestampMixin):
    """Execution record and resumable progress for one clinic+vendor sync."""

    __tablename__ = "sync_runs"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    clinic_id: Mapped[int] = mapped_column(
        ForeignKey("clinics.id", ondelete="CASCADE"),
        nullable=False,
    )
    vendor_type: Mapped[str] = mapped_column(String(32), nullable=False)
    strategy: Mapped[str] = mapped_column(String(16), nullable=False, comment="incremental|batch")
    trigger: Mapped[str] = mapped_column(
        String(16),
        nullable=False,
        default="scheduled",
        comment="scheduled|manual|force_full",
    )
    status: Mapped[str] = mapped_column(
        String(16),
        nullable=False,
        default="running",
        comment="running|completed|failed",
    )
    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    heartbeat_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
        comment="Last time the owning worker proved it is still alive",
    )

    patients_processed: Mapped[int] = mapped_column(default=0, nullable=False)
    appointments_processed: Mapped[int] = mapped_column(default=0, nullable=False)
    cases_created: Mapped[int] = mapped_column(default=0, nullable=False)
    cases_updated: Mapped[int] = mapped_column(default=0, nullable=False)
    issues: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)

    progress: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    sync_cursor: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
        comment="Modified-since cursor established by a completed incremental run",
    )

    __table_args__ = (
        # At most one running sync per clinic+vendor across processes.
        Index(
            "uq_sync_runs_running",
            "clinic_id",
            "vendor_type",
            unique=True,
            postgresql_where=text("status = 'running'"),
            sqlite_where=text("status = 'running'"),
        ),
        Index("ix_sync_runs_clinic_vendor_started", "clinic_id", "vendor_type", "started_at"),
    )

    def __repr__(self) -> str:
        return f"<SyncRun(id={self.id}, clinic_id={self.clinic_id}, status={self.status})>"
