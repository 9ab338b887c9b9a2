from quotasync.models.appointment import Appointment
from quotasync.models.base import Base, TimestampMixin
from quotasync.models.case import OVERRIDE_STATUSES, Case
from quotasync.models.clinic import Clinic, PMSCredential
from quotasync.models.patient import Patient
from quotasync.models.sync_run import SyncRun

__all__ = [
    # Base
    "Base",
    "TimestampMixin",
    # Tenancy
    "Clinic",
    "PMSCredential",
    # Mirrored PMS data
    "Patient",
    "Appointment",
    # Derived state
    "Case",
    "OVERRIDE_STATUSES",
    "SyncRun",
]
