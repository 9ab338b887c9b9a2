"""Pydantic schemas for API request/response validation."""

from quotasync.schemas.cases import CaseResponse, CaseStatusUpdate
from quotasync.schemas.pms import (
    RemoteAppointment,
    RemotePatient,
    build_remote_appointment,
    build_remote_patient,
)
from quotasync.schemas.sync import (
    ClinicSyncResult,
    SyncControlRequest,
    SyncControlResponse,
    SyncProgress,
    SyncRunResponse,
    SyncSummary,
    SyncTriggerRequest,
    SyncTriggerResponse,
)

__all__ = [
    # PMS records
    "RemotePatient",
    "RemoteAppointment",
    "build_remote_patient",
    "build_remote_appointment",
    # Sync
    "SyncTriggerRequest",
    "SyncTriggerResponse",
    "ClinicSyncResult",
    "SyncSummary",
    "SyncControlRequest",
    "SyncControlResponse",
    "SyncProgress",
    "SyncRunResponse",
    # Cases
    "CaseStatusUpdate",
    "CaseResponse",
]
