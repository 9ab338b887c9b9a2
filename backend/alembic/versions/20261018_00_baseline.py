"""Baseline schema: clinics, credentials, mirrored PMS data, cases and sync runs.

Revision ID: 20261018_00
Revises:
Create Date: 2026-10-18
"""

from collections.abc import Sequence

import sqlalchemy as sa

from alembic import op

revision: str = "20261018_00"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
    ]


def upgrade() -> None:
    op.create_table(
        "clinics",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("name", sa.String(length=200), nullable=False),
        sa.Column("epc_tags", sa.JSON(), nullable=False),
        sa.Column("wc_tags", sa.JSON(), nullable=False),
        sa.Column("default_location", sa.String(length=200), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
    )

    op.create_table(
        "pms_credentials",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("clinic_id", sa.Integer(), nullable=False),
        sa.Column("vendor_type", sa.String(length=32), nullable=False),
        sa.Column("encrypted_secret", sa.Text(), nullable=False),
        sa.Column("base_url", sa.String(length=500), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("consecutive_failures", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("last_failure_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("deactivated_reason", sa.String(length=64), nullable=True),
        sa.Column(
            "force_full_requested",
            sa.Boolean(),
            nullable=False,
            server_default=sa.false(),
        ),
        *_timestamps(),
        sa.ForeignKeyConstraint(["clinic_id"], ["clinics.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint(
            "clinic_id",
            "vendor_type",
            name="uq_pms_credentials_clinic_vendor",
        ),
    )
    op.create_index("ix_pms_credentials_clinic_id", "pms_credentials", ["clinic_id"])
    op.create_index("ix_pms_credentials_active", "pms_credentials", ["is_active"])

    op.create_table(
        "patients",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("clinic_id", sa.Integer(), nullable=False),
        sa.Column("vendor_patient_id", sa.String(length=128), nullable=False),
        sa.Column("vendor_type", sa.String(length=32), nullable=False),
        sa.Column("first_name", sa.String(length=100), nullable=True),
        sa.Column("last_name", sa.String(length=100), nullable=True),
        sa.Column("email", sa.String(length=255), nullable=True),
        sa.Column("phone", sa.String(length=50), nullable=True),
        sa.Column("date_of_birth", sa.Date(), nullable=True),
        sa.Column("scheme_type", sa.String(length=8), nullable=False),
        sa.Column("quota", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("sessions_used", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("physio_name", sa.String(length=200), nullable=True),
        sa.Column("remote_modified_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(["clinic_id"], ["clinics.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint(
            "clinic_id",
            "vendor_patient_id",
            "vendor_type",
            name="uq_patients_clinic_vendor_patient",
        ),
    )
    op.create_index("ix_patients_clinic_vendor", "patients", ["clinic_id", "vendor_type"])

    op.create_table(
        "appointments",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("clinic_id", sa.Integer(), nullable=False),
        sa.Column("patient_id", sa.Integer(), nullable=False),
        sa.Column("vendor_appointment_id", sa.String(length=128), nullable=False),
        sa.Column("vendor_type", sa.String(length=32), nullable=False),
        sa.Column("appointment_date", sa.Date(), nullable=False),
        sa.Column("type_tag", sa.String(length=200), nullable=True),
        sa.Column("practitioner_name", sa.String(length=200), nullable=True),
        sa.Column("location_name", sa.String(length=200), nullable=True),
        sa.Column("status", sa.String(length=24), nullable=False, server_default="scheduled"),
        *_timestamps(),
        sa.ForeignKeyConstraint(["clinic_id"], ["clinics.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["patient_id"], ["patients.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint(
            "clinic_id",
            "vendor_appointment_id",
            "vendor_type",
            name="uq_appointments_clinic_vendor_appointment",
        ),
    )
    op.create_index("ix_appointments_patient_id", "appointments", ["patient_id"])
    op.create_index(
        "ix_appointments_clinic_status_date",
        "appointments",
        ["clinic_id", "status", "appointment_date"],
    )

    op.create_table(
        "cases",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("clinic_id", sa.Integer(), nullable=False),
        sa.Column("patient_id", sa.Integer(), nullable=False),
        sa.Column("vendor_type", sa.String(length=32), nullable=False),
        sa.Column("case_number", sa.String(length=64), nullable=False),
        sa.Column("case_title", sa.String(length=300), nullable=False),
        sa.Column("scheme_type", sa.String(length=8), nullable=False),
        sa.Column("quota", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("quota_override", sa.Integer(), nullable=True),
        sa.Column("sessions_used", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("sessions_remaining", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("quota_degraded", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="active"),
        sa.Column("priority", sa.String(length=16), nullable=False, server_default="low"),
        sa.Column("alert_message", sa.Text(), nullable=True),
        sa.Column("is_alert_active", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("physio_name", sa.String(length=200), nullable=True),
        sa.Column("location_name", sa.String(length=200), nullable=True),
        sa.Column("appointment_type_name", sa.String(length=200), nullable=True),
        sa.Column("last_visit_date", sa.Date(), nullable=True),
        sa.Column("status_change_reason", sa.Text(), nullable=True),
        sa.Column("last_status_change", sa.DateTime(timezone=True), nullable=True),
        sa.Column("status_changed_by", sa.String(length=128), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(["clinic_id"], ["clinics.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["patient_id"], ["patients.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint(
            "clinic_id",
            "patient_id",
            "vendor_type",
            name="uq_cases_clinic_patient_vendor",
        ),
    )
    op.create_index("ix_cases_patient_id", "cases", ["patient_id"])
    op.create_index("ix_cases_clinic_status", "cases", ["clinic_id", "status"])

    op.create_table(
        "sync_runs",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("clinic_id", sa.Integer(), nullable=False),
        sa.Column("vendor_type", sa.String(length=32), nullable=False),
        sa.Column("strategy", sa.String(length=16), nullable=False),
        sa.Column("trigger", sa.String(length=16), nullable=False, server_default="scheduled"),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="running"),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("heartbeat_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("patients_processed", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("appointments_processed", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("cases_created", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("cases_updated", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("issues", sa.JSON(), nullable=False),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("progress", sa.JSON(), nullable=True),
        sa.Column("sync_cursor", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(["clinic_id"], ["clinics.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "uq_sync_runs_running",
        "sync_runs",
        ["clinic_id", "vendor_type"],
        unique=True,
        postgresql_where=sa.text("status = 'running'"),
    )
    op.create_index(
        "ix_sync_runs_clinic_vendor_started",
        "sync_runs",
        ["clinic_id", "vendor_type", "started_at"],
    )


def downgrade() -> None:
    op.drop_index("ix_sync_runs_clinic_vendor_started", table_name="sync_runs")
    op.drop_index("uq_sync_runs_running", table_name="sync_runs")
    op.drop_table("sync_runs")
    op.drop_index("ix_cases_clinic_status", table_name="cases")
    op.drop_index("ix_cases_patient_id", table_name="cases")
    op.drop_table("cases")
    op.drop_index("ix_appointments_clinic_status_date", table_name="appointments")
    op.drop_index("ix_appointments_patient_id", table_name="appointments")
    op.drop_table("appointments")
    op.drop_index("ix_patients_clinic_vendor", table_name="patients")
    op.drop_table("patients")
    op.drop_index("ix_pms_credentials_active", table_name="pms_credentials")
    op.drop_index("ix_pms_credentials_clinic_id", table_name="pms_credentials")
    op.drop_table("pms_credentials")
    op.drop_table("clinics")
