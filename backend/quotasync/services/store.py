"""Persistence boundary for the sync engine.

``SQLSyncStore`` is the production implementation on an ``AsyncSession``;
``InMemorySyncStore`` implements the same protocol for tests and local demos.
Both upsert mirrored PMS records by their natural keys so re-ingesting a
record never creates a duplicate row.
"""

from __future__ import annotations

import functools
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Optional, Protocol

from sqlalchemy import exists, func, select, update
from sqlalchemy.exc import DBAPIError, IntegrityError, InterfaceError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession

from quotasync.exceptions import StoreUnavailableError
from quotasync.models import Appointment, Case, Clinic, Patient, PMSCredential, SyncRun
from quotasync.schemas.pms import RemoteAppointment, RemotePatient

COMPLETED_STATUSES = ("completed", "attended", "finished")
DEFAULT_EPC_TAGS = ("EPC",)
DEFAULT_WC_TAGS = ("WC",)


@dataclass(frozen=True)
class CredentialRef:
    """Detached snapshot of a PMSCredential row."""

    id: int
    clinic_id: int
    vendor_type: str
    encrypted_secret: str
    base_url: str | None
    is_active: bool
    consecutive_failures: int
    force_full_requested: bool
    deactivated_reason: str | None = None


@dataclass(frozen=True)
class ClinicSettings:
    """Detached snapshot of the clinic fields the engine reads."""

    id: int
    name: str
    epc_tags: tuple[str, ...] = DEFAULT_EPC_TAGS
    wc_tags: tuple[str, ...] = DEFAULT_WC_TAGS
    default_location: str | None = None


@dataclass
class RunResult:
    """Final counters and state written to a SyncRun."""

    status: str
    completed_at: datetime
    patients_processed: int = 0
    appointments_processed: int = 0
    cases_created: int = 0
    cases_updated: int = 0
    issues: list[str] = field(default_factory=list)
    error_message: str | None = None
    sync_cursor: datetime | None = None


def parse_tags(value: Any, default: tuple[str, ...]) -> tuple[str, ...]:
    """Accept a list or a comma separated string of tags."""
    if isinstance(value, str):
        items = value.split(",")
    elif isinstance(value, (list, tuple)):
        items = [str(item) for item in value]
    else:
        items = []
    tags = tuple(item.strip() for item in items if item and item.strip())
    return tags or default


def _credential_ref(row: PMSCredential) -> CredentialRef:
    return CredentialRef(
        id=row.id,
        clinic_id=row.clinic_id,
        vendor_type=row.vendor_type,
        encrypted_secret=row.encrypted_secret,
        base_url=row.base_url,
        is_active=bool(row.is_active),
        consecutive_failures=row.consecutive_failures or 0,
        force_full_requested=bool(row.force_full_requested),
        deactivated_reason=row.deactivated_reason,
    )


def _reset_credential(credential: PMSCredential, encrypted_secret: str, base_url: Optional[str]) -> None:
    credential.encrypted_secret = encrypted_secret
    credential.base_url = base_url
    credential.is_active = True
    credential.deactivated_reason = None
    credential.consecutive_failures = 0
    credential.last_error = None
    credential.last_failure_at = None


def _clinic_settings(row: Clinic) -> ClinicSettings:
    return ClinicSettings(
        id=row.id,
        name=row.name,
        epc_tags=parse_tags(row.epc_tags, DEFAULT_EPC_TAGS),
        wc_tags=parse_tags(row.wc_tags, DEFAULT_WC_TAGS),
        default_location=row.default_location,
    )


def _apply_remote_patient(patient: Patient, remote: RemotePatient, scheme_type: str) -> None:
    patient.first_name = remote.first_name
    patient.last_name = remote.last_name
    patient.email = remote.email
    patient.phone = remote.phone
    patient.date_of_birth = remote.date_of_birth
    patient.scheme_type = scheme_type
    if remote.physio_name:
        patient.physio_name = remote.physio_name
    if remote.modified_at is not None:
        patient.remote_modified_at = remote.modified_at


def _apply_remote_appointment(appointment: Appointment, remote: RemoteAppointment) -> None:
    appointment.appointment_date = remote.appointment_date
    appointment.type_tag = remote.type_name
    appointment.practitioner_name = remote.practitioner_name
    appointment.location_name = remote.location_name
    appointment.status = remote.status


def _apply_run_result(run: SyncRun, result: RunResult) -> None:
    run.status = result.status
    run.completed_at = result.completed_at
    run.patients_processed = result.patients_processed
    run.appointments_processed = result.appointments_processed
    run.cases_created = result.cases_created
    run.cases_updated = result.cases_updated
    run.issues = list(result.issues)
    run.error_message = result.error_message
    if result.sync_cursor is not None:
        run.sync_cursor = result.sync_cursor


class SyncStore(Protocol):
    # Tenancy
    async def list_credentials(
        self,
        *,
        clinic_id: Optional[int] = None,
        vendor_type: Optional[str] = None,
        include_inactive: bool = False,
    ) -> list[CredentialRef]:
        ...

    async def get_clinic(self, clinic_id: int) -> Optional[ClinicSettings]:
        ...

    async def save_credential(
        self,
        clinic_id: int,
        vendor_type: str,
        encrypted_secret: str,
        *,
        base_url: Optional[str] = None,
    ) -> CredentialRef:
        """Insert or replace the clinic+vendor credential and re-enable it."""
        ...

    async def update_credential(
        self,
        clinic_id: int,
        vendor_type: str,
        **changes: Any,
    ) -> Optional[CredentialRef]:
        ...

    async def record_credential_failure(
        self,
        credential_id: int,
        message: str,
        *,
        threshold: int,
        at: datetime,
    ) -> bool:
        ...

    async def reset_credential_failures(self, credential_id: int) -> None:
        ...

    # Sync log
    async def fail_stale_runs(
        self,
        clinic_id: int,
        vendor_type: str,
        *,
        heartbeat_before: datetime,
        now: datetime,
    ) -> int:
        ...

    async def start_run(
        self,
        clinic_id: int,
        vendor_type: str,
        *,
        strategy: str,
        trigger: str,
        started_at: datetime,
    ) -> Optional[int]:
        ...

    async def touch_run(self, run_id: int, at: datetime) -> bool:
        ...

    async def save_progress(self, run_id: int, progress: dict[str, Any]) -> bool:
        ...

    async def finish_run(self, run_id: int, result: RunResult) -> bool:
        ...

    async def latest_progress(self, clinic_id: int, vendor_type: str) -> Optional[dict[str, Any]]:
        ...

    async def latest_cursor(self, clinic_id: int, vendor_type: str) -> Optional[datetime]:
        ...

    async def list_runs(
        self,
        *,
        clinic_id: Optional[int] = None,
        vendor_type: Optional[str] = None,
        limit: int = 50,
    ) -> list[SyncRun]:
        ...

    # Mirrored PMS data
    async def get_patient(
        self,
        clinic_id: int,
        vendor_type: str,
        vendor_patient_id: str,
    ) -> Optional[Patient]:
        ...

    async def get_patient_by_id(self, patient_id: int) -> Optional[Patient]:
        ...

    async def upsert_patient(
        self,
        clinic_id: int,
        vendor_type: str,
        remote: RemotePatient,
        scheme_type: str,
    ) -> Patient:
        ...

    async def upsert_appointment(
        self,
        clinic_id: int,
        vendor_type: str,
        patient_id: int,
        remote: RemoteAppointment,
    ) -> Appointment:
        ...

    async def count_patients(self, clinic_id: int, vendor_type: str) -> int:
        ...

    async def list_patients_with_appointments(
        self,
        clinic_id: int,
        vendor_type: str,
    ) -> list[Patient]:
        ...

    async def list_appointments(self, patient_id: int) -> list[Appointment]:
        ...

    async def count_appointments(self, patient_id: int) -> int:
        ...

    async def latest_completed_appointment_date(self, clinic_id: int) -> Optional[date]:
        ...

    async def update_patient_quota(self, patient: Patient, *, quota: int, sessions_used: int) -> None:
        ...

    # Cases
    async def get_case(self, clinic_id: int, patient_id: int, vendor_type: str) -> Optional[Case]:
        ...

    async def get_case_by_id(self, case_id: int) -> Optional[Case]:
        ...

    async def save_case(self, case: Case) -> Case:
        ...

    # Transactions
    async def commit(self) -> None:
        ...

    async def rollback(self) -> None:
        ...


@contextmanager
def store_errors() -> Iterator[None]:
    """Surface lost database connectivity as StoreUnavailableError."""
    try:
        yield
    except (OperationalError, InterfaceError) as exc:
        raise StoreUnavailableError(
            f"Relational store unavailable: {exc.__class__.__name__}"
        ) from exc
    except DBAPIError as exc:
        if exc.connection_invalidated:
            raise StoreUnavailableError("Relational store connection was invalidated") from exc
        raise
    except OSError as exc:
        raise StoreUnavailableError(f"Relational store unreachable: {exc}") from exc


def _translate_store_errors(method):
    @functools.wraps(method)
    async def wrapper(self, *args, **kwargs):
        with store_errors():
            return await method(self, *args, **kwargs)

    return wrapper


class SQLSyncStore:
    """Sync store backed by SQLAlchemy."""

    def __init__(self, db: AsyncSession):
        self.db = db

    @_translate_store_errors
    async def list_credentials(
        self,
        *,
        clinic_id: Optional[int] = None,
        vendor_type: Optional[str] = None,
        include_inactive: bool = False,
    ) -> list[CredentialRef]:
        query = select(PMSCredential)
        if not include_inactive:
            query = query.where(PMSCredential.is_active.is_(True))
        if clinic_id is not None:
            query = query.where(PMSCredential.clinic_id == clinic_id)
        if vendor_type:
            query = query.where(PMSCredential.vendor_type == vendor_type)
        query = query.order_by(PMSCredential.clinic_id.asc(), PMSCredential.id.asc())
        result = await self.db.execute(query)
        return [_credential_ref(row) for row in result.scalars().all()]

    @_translate_store_errors
    async def get_clinic(self, clinic_id: int) -> Optional[ClinicSettings]:
        clinic = await self.db.get(Clinic, clinic_id)
        return _clinic_settings(clinic) if clinic else None

    @_translate_store_errors
    async def save_credential(
        self,
        clinic_id: int,
        vendor_type: str,
        encrypted_secret: str,
        *,
        base_url: Optional[str] = None,
    ) -> CredentialRef:
        result = await self.db.execute(
            select(PMSCredential).where(
                PMSCredential.clinic_id == clinic_id,
                PMSCredential.vendor_type == vendor_type,
            )
        )
        credential = result.scalar_one_or_none()
        if credential is None:
            credential = PMSCredential(clinic_id=clinic_id, vendor_type=vendor_type)
            self.db.add(credential)
        _reset_credential(credential, encrypted_secret, base_url)
        await self.db.commit()
        return _credential_ref(credential)

    @_translate_store_errors
    async def update_credential(
        self,
        clinic_id: int,
        vendor_type: str,
        **changes: Any,
    ) -> Optional[CredentialRef]:
        result = await self.db.execute(
            select(PMSCredential).where(
                PMSCredential.clinic_id == clinic_id,
                PMSCredential.vendor_type == vendor_type,
            )
        )
        credential = result.scalar_one_or_none()
        if credential is None:
            return None
        for key, value in changes.items():
            setattr(credential, key, value)
        await self.db.commit()
        return _credential_ref(credential)

    @_translate_store_errors
    async def record_credential_failure(
        self,
        credential_id: int,
        message: str,
        *,
        threshold: int,
        at: datetime,
    ) -> bool:
        credential = await self.db.get(PMSCredential, credential_id, populate_existing=True)
        if credential is None:
            return False
        credential.consecutive_failures = (credential.consecutive_failures or 0) + 1
        credential.last_error = message[:500]
        credential.last_failure_at = at
        deactivated = credential.consecutive_failures >= threshold
        if deactivated:
            credential.is_active = False
            credential.deactivated_reason = "credential_failures"
        await self.db.commit()
        return deactivated

    @_translate_store_errors
    async def reset_credential_failures(self, credential_id: int) -> None:
        await self.db.execute(
            update(PMSCredential)
            .where(
                PMSCredential.id == credential_id,
                PMSCredential.consecutive_failures != 0,
            )
            .values(consecutive_failures=0, last_error=None)
        )
        await self.db.commit()

    @_translate_store_errors
    async def fail_stale_runs(
        self,
        clinic_id: int,
        vendor_type: str,
        *,
        heartbeat_before: datetime,
        now: datetime,
    ) -> int:
        """Fail running rows whose worker has not checked in since ``heartbeat_before``."""
        last_seen = func.coalesce(SyncRun.heartbeat_at, SyncRun.started_at)
        result = await self.db.execute(
            update(SyncRun)
            .where(
                SyncRun.clinic_id == clinic_id,
                SyncRun.vendor_type == vendor_type,
                SyncRun.status == "running",
                last_seen < heartbeat_before,
            )
            .values(
                status="failed",
                completed_at=now,
                error_message="abandoned: no heartbeat within the stale threshold",
            )
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()
        return int(result.rowcount or 0)

    @_translate_store_errors
    async def start_run(
        self,
        clinic_id: int,
        vendor_type: str,
        *,
        strategy: str,
        trigger: str,
        started_at: datetime,
    ) -> Optional[int]:
        running = await self.db.scalar(
            select(SyncRun.id).where(
                SyncRun.clinic_id == clinic_id,
                SyncRun.vendor_type == vendor_type,
                SyncRun.status == "running",
            )
        )
        if running is not None:
            return None
        run = SyncRun(
            clinic_id=clinic_id,
            vendor_type=vendor_type,
            strategy=strategy,
            trigger=trigger,
            status="running",
            started_at=started_at,
            heartbeat_at=started_at,
            issues=[],
        )
        self.db.add(run)
        try:
            await self.db.commit()
        except IntegrityError:
            # Lost the race on uq_sync_runs_running
            await self.db.rollback()
            return None
        return run.id

    async def _update_running(self, run_id: int, **values: Any) -> bool:
        result = await self.db.execute(
            update(SyncRun)
            .where(SyncRun.id == run_id, SyncRun.status == "running")
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()
        return bool(result.rowcount)

    @_translate_store_errors
    async def touch_run(self, run_id: int, at: datetime) -> bool:
        return await self._update_running(run_id, heartbeat_at=at)

    @_translate_store_errors
    async def save_progress(self, run_id: int, progress: dict[str, Any]) -> bool:
        return await self._update_running(run_id, progress=dict(progress))

    @_translate_store_errors
    async def finish_run(self, run_id: int, result: RunResult) -> bool:
        """Finalize a run; False when it was already failed as abandoned."""
        run = await self.db.get(
            SyncRun,
            run_id,
            populate_existing=True,
            with_for_update=True,
        )
        if run is None:
            raise LookupError(f"SyncRun {run_id} not found")
        if run.status != "running":
            await self.db.commit()
            return False
        _apply_run_result(run, result)
        await self.db.commit()
        return True

    @_translate_store_errors
    async def latest_progress(self, clinic_id: int, vendor_type: str) -> Optional[dict[str, Any]]:
        result = await self.db.execute(
            select(SyncRun.progress)
            .where(
                SyncRun.clinic_id == clinic_id,
                SyncRun.vendor_type == vendor_type,
                SyncRun.progress.is_not(None),
            )
            .order_by(SyncRun.started_at.desc(), SyncRun.id.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    @_translate_store_errors
    async def latest_cursor(self, clinic_id: int, vendor_type: str) -> Optional[datetime]:
        return await self.db.scalar(
            select(SyncRun.sync_cursor)
            .where(
                SyncRun.clinic_id == clinic_id,
                SyncRun.vendor_type == vendor_type,
                SyncRun.status == "completed",
                SyncRun.sync_cursor.is_not(None),
            )
            .order_by(SyncRun.started_at.desc(), SyncRun.id.desc())
            .limit(1)
        )

    @_translate_store_errors
    async def list_runs(
        self,
        *,
        clinic_id: Optional[int] = None,
        vendor_type: Optional[str] = None,
        limit: int = 50,
    ) -> list[SyncRun]:
        query = select(SyncRun)
        if clinic_id is not None:
            query = query.where(SyncRun.clinic_id == clinic_id)
        if vendor_type:
            query = query.where(SyncRun.vendor_type == vendor_type)
        query = query.order_by(SyncRun.started_at.desc(), SyncRun.id.desc()).limit(limit)
        result = await self.db.execute(query)
        return list(result.scalars().all())

    @_translate_store_errors
    async def get_patient(
        self,
        clinic_id: int,
        vendor_type: str,
        vendor_patient_id: str,
    ) -> Optional[Patient]:
        result = await self.db.execute(
            select(Patient).where(
                Patient.clinic_id == clinic_id,
                Patient.vendor_type == vendor_type,
                Patient.vendor_patient_id == vendor_patient_id,
            )
        )
        return result.scalar_one_or_none()

    @_translate_store_errors
    async def get_patient_by_id(self, patient_id: int) -> Optional[Patient]:
        return await self.db.get(Patient, patient_id)

    @_translate_store_errors
    async def upsert_patient(
        self,
        clinic_id: int,
        vendor_type: str,
        remote: RemotePatient,
        scheme_type: str,
    ) -> Patient:
        async with self.db.begin_nested():
            patient = await self.get_patient(clinic_id, vendor_type, remote.id)
            if patient is None:
                patient = Patient(
                    clinic_id=clinic_id,
                    vendor_type=vendor_type,
                    vendor_patient_id=remote.id,
                    quota=0,
                    sessions_used=0,
                )
                self.db.add(patient)
            _apply_remote_patient(patient, remote, scheme_type)
            await self.db.flush()
        return patient

    @_translate_store_errors
    async def upsert_appointment(
        self,
        clinic_id: int,
        vendor_type: str,
        patient_id: int,
        remote: RemoteAppointment,
    ) -> Appointment:
        async with self.db.begin_nested():
            result = await self.db.execute(
                select(Appointment).where(
                    Appointment.clinic_id == clinic_id,
                    Appointment.vendor_type == vendor_type,
                    Appointment.vendor_appointment_id == remote.id,
                )
            )
            appointment = result.scalar_one_or_none()
            if appointment is None:
                appointment = Appointment(
                    clinic_id=clinic_id,
                    vendor_type=vendor_type,
                    vendor_appointment_id=remote.id,
                    patient_id=patient_id,
                )
                self.db.add(appointment)
            appointment.patient_id = patient_id
            _apply_remote_appointment(appointment, remote)
            await self.db.flush()
        return appointment

    @_translate_store_errors
    async def count_patients(self, clinic_id: int, vendor_type: str) -> int:
        count = await self.db.scalar(
            select(func.count())
            .select_from(Patient)
            .where(Patient.clinic_id == clinic_id, Patient.vendor_type == vendor_type)
        )
        return int(count or 0)

    @_translate_store_errors
    async def list_patients_with_appointments(
        self,
        clinic_id: int,
        vendor_type: str,
    ) -> list[Patient]:
        result = await self.db.execute(
            select(Patient)
            .where(
                Patient.clinic_id == clinic_id,
                Patient.vendor_type == vendor_type,
                exists().where(Appointment.patient_id == Patient.id),
            )
            .order_by(Patient.id.asc())
        )
        return list(result.scalars().all())

    @_translate_store_errors
    async def list_appointments(self, patient_id: int) -> list[Appointment]:
        result = await self.db.execute(
            select(Appointment)
            .where(Appointment.patient_id == patient_id)
            .order_by(Appointment.appointment_date.desc(), Appointment.id.desc())
        )
        return list(result.scalars().all())

    @_translate_store_errors
    async def count_appointments(self, patient_id: int) -> int:
        count = await self.db.scalar(
            select(func.count())
            .select_from(Appointment)
            .where(Appointment.patient_id == patient_id)
        )
        return int(count or 0)

    @_translate_store_errors
    async def latest_completed_appointment_date(self, clinic_id: int) -> Optional[date]:
        return await self.db.scalar(
            select(func.max(Appointment.appointment_date)).where(
                Appointment.clinic_id == clinic_id,
                Appointment.status.in_(COMPLETED_STATUSES),
            )
        )

    @_translate_store_errors
    async def update_patient_quota(self, patient: Patient, *, quota: int, sessions_used: int) -> None:
        patient.quota = quota
        patient.sessions_used = sessions_used
        await self.db.flush()

    @_translate_store_errors
    async def get_case(self, clinic_id: int, patient_id: int, vendor_type: str) -> Optional[Case]:
        result = await self.db.execute(
            select(Case).where(
                Case.clinic_id == clinic_id,
                Case.patient_id == patient_id,
                Case.vendor_type == vendor_type,
            )
        )
        return result.scalar_one_or_none()

    @_translate_store_errors
    async def get_case_by_id(self, case_id: int) -> Optional[Case]:
        return await self.db.get(Case, case_id)

    @_translate_store_errors
    async def save_case(self, case: Case) -> Case:
        async with self.db.begin_nested():
            self.db.add(case)
            await self.db.flush()
        return case

    @_translate_store_errors
    async def commit(self) -> None:
        await self.db.commit()

    @_translate_store_errors
    async def rollback(self) -> None:
        await self.db.rollback()


class InMemorySyncStore:
    """In-memory sync store for tests and local demos."""

    def __init__(self):
        self.clinics: dict[int, ClinicSettings] = {}
        self.credentials: dict[int, PMSCredential] = {}
        self.patients: dict[tuple[int, str, str], Patient] = {}
        self.appointments: dict[tuple[int, str, str], Appointment] = {}
        self.cases: dict[tuple[int, int, str], Case] = {}
        self.runs: list[SyncRun] = []
        self.commits = 0
        self._next_ids: dict[str, int] = {}

    def _next_id(self, kind: str) -> int:
        self._next_ids[kind] = self._next_ids.get(kind, 0) + 1
        return self._next_ids[kind]

    # Seeding helpers

    def add_clinic(
        self,
        clinic_id: int,
        name: str = "Clinic",
        *,
        epc_tags: Any = DEFAULT_EPC_TAGS,
        wc_tags: Any = DEFAULT_WC_TAGS,
        default_location: str | None = None,
    ) -> ClinicSettings:
        clinic = ClinicSettings(
            id=clinic_id,
            name=name,
            epc_tags=parse_tags(epc_tags, DEFAULT_EPC_TAGS),
            wc_tags=parse_tags(wc_tags, DEFAULT_WC_TAGS),
            default_location=default_location,
        )
        self.clinics[clinic_id] = clinic
        return clinic

    def add_credential(
        self,
        clinic_id: int,
        vendor_type: str,
        encrypted_secret: str,
        *,
        base_url: str | None = None,
        is_active: bool = True,
    ) -> PMSCredential:
        credential = PMSCredential(
            id=self._next_id("credential"),
            clinic_id=clinic_id,
            vendor_type=vendor_type,
            encrypted_secret=encrypted_secret,
            base_url=base_url,
            is_active=is_active,
            consecutive_failures=0,
            force_full_requested=False,
            deactivated_reason=None,
        )
        self.credentials[credential.id] = credential
        return credential

    # Tenancy

    async def list_credentials(
        self,
        *,
        clinic_id: Optional[int] = None,
        vendor_type: Optional[str] = None,
        include_inactive: bool = False,
    ) -> list[CredentialRef]:
        rows = sorted(self.credentials.values(), key=lambda c: (c.clinic_id, c.id))
        if not include_inactive:
            rows = [c for c in rows if c.is_active]
        if clinic_id is not None:
            rows = [c for c in rows if c.clinic_id == clinic_id]
        if vendor_type:
            rows = [c for c in rows if c.vendor_type == vendor_type]
        return [_credential_ref(c) for c in rows]

    async def get_clinic(self, clinic_id: int) -> Optional[ClinicSettings]:
        return self.clinics.get(clinic_id)

    async def save_credential(
        self,
        clinic_id: int,
        vendor_type: str,
        encrypted_secret: str,
        *,
        base_url: Optional[str] = None,
    ) -> CredentialRef:
        for credential in self.credentials.values():
            if credential.clinic_id == clinic_id and credential.vendor_type == vendor_type:
                break
        else:
            credential = self.add_credential(clinic_id, vendor_type, encrypted_secret)
        _reset_credential(credential, encrypted_secret, base_url)
        return _credential_ref(credential)

    async def update_credential(
        self,
        clinic_id: int,
        vendor_type: str,
        **changes: Any,
    ) -> Optional[CredentialRef]:
        for credential in self.credentials.values():
            if credential.clinic_id == clinic_id and credential.vendor_type == vendor_type:
                for key, value in changes.items():
                    setattr(credential, key, value)
                return _credential_ref(credential)
        return None

    async def record_credential_failure(
        self,
        credential_id: int,
        message: str,
        *,
        threshold: int,
        at: datetime,
    ) -> bool:
        credential = self.credentials.get(credential_id)
        if credential is None:
            return False
        credential.consecutive_failures += 1
        credential.last_error = message[:500]
        credential.last_failure_at = at
        if credential.consecutive_failures >= threshold:
            credential.is_active = False
            credential.deactivated_reason = "credential_failures"
            return True
        return False

    async def reset_credential_failures(self, credential_id: int) -> None:
        credential = self.credentials.get(credential_id)
        if credential is not None:
            credential.consecutive_failures = 0
            credential.last_error = None

    # Sync log

    async def fail_stale_runs(
        self,
        clinic_id: int,
        vendor_type: str,
        *,
        heartbeat_before: datetime,
        now: datetime,
    ) -> int:
        failed = 0
        for run in self.runs:
            if (
                run.clinic_id == clinic_id
                and run.vendor_type == vendor_type
                and run.status == "running"
                and (run.heartbeat_at or run.started_at) < heartbeat_before
            ):
                run.status = "failed"
                run.completed_at = now
                run.error_message = "abandoned: no heartbeat within the stale threshold"
                failed += 1
        return failed

    async def start_run(
        self,
        clinic_id: int,
        vendor_type: str,
        *,
        strategy: str,
        trigger: str,
        started_at: datetime,
    ) -> Optional[int]:
        if any(
            run.clinic_id == clinic_id and run.vendor_type == vendor_type and run.status == "running"
            for run in self.runs
        ):
            return None
        run = SyncRun(
            id=self._next_id("run"),
            clinic_id=clinic_id,
            vendor_type=vendor_type,
            strategy=strategy,
            trigger=trigger,
            status="running",
            started_at=started_at,
            heartbeat_at=started_at,
            completed_at=None,
            patients_processed=0,
            appointments_processed=0,
            cases_created=0,
            cases_updated=0,
            issues=[],
            error_message=None,
            progress=None,
            sync_cursor=None,
        )
        self.runs.append(run)
        return run.id

    def _run(self, run_id: int) -> SyncRun:
        for run in self.runs:
            if run.id == run_id:
                return run
        raise LookupError(f"SyncRun {run_id} not found")

    async def touch_run(self, run_id: int, at: datetime) -> bool:
        run = self._run(run_id)
        if run.status != "running":
            return False
        run.heartbeat_at = at
        return True

    async def save_progress(self, run_id: int, progress: dict[str, Any]) -> bool:
        run = self._run(run_id)
        if run.status != "running":
            return False
        run.progress = dict(progress)
        self.commits += 1
        return True

    async def finish_run(self, run_id: int, result: RunResult) -> bool:
        run = self._run(run_id)
        if run.status != "running":
            return False
        _apply_run_result(run, result)
        self.commits += 1
        return True

    def _latest_runs(self, clinic_id: int, vendor_type: str) -> list[SyncRun]:
        runs = [r for r in self.runs if r.clinic_id == clinic_id and r.vendor_type == vendor_type]
        return sorted(runs, key=lambda r: (r.started_at, r.id), reverse=True)

    async def latest_progress(self, clinic_id: int, vendor_type: str) -> Optional[dict[str, Any]]:
        for run in self._latest_runs(clinic_id, vendor_type):
            if run.progress is not None:
                return dict(run.progress)
        return None

    async def latest_cursor(self, clinic_id: int, vendor_type: str) -> Optional[datetime]:
        for run in self._latest_runs(clinic_id, vendor_type):
            if run.status == "completed" and run.sync_cursor is not None:
                return run.sync_cursor
        return None

    async def list_runs(
        self,
        *,
        clinic_id: Optional[int] = None,
        vendor_type: Optional[str] = None,
        limit: int = 50,
    ) -> list[SyncRun]:
        runs = sorted(self.runs, key=lambda r: (r.started_at, r.id), reverse=True)
        if clinic_id is not None:
            runs = [r for r in runs if r.clinic_id == clinic_id]
        if vendor_type:
            runs = [r for r in runs if r.vendor_type == vendor_type]
        return runs[:limit]

    # Mirrored PMS data

    async def get_patient(
        self,
        clinic_id: int,
        vendor_type: str,
        vendor_patient_id: str,
    ) -> Optional[Patient]:
        return self.patients.get((clinic_id, vendor_patient_id, vendor_type))

    async def get_patient_by_id(self, patient_id: int) -> Optional[Patient]:
        for patient in self.patients.values():
            if patient.id == patient_id:
                return patient
        return None

    async def upsert_patient(
        self,
        clinic_id: int,
        vendor_type: str,
        remote: RemotePatient,
        scheme_type: str,
    ) -> Patient:
        key = (clinic_id, remote.id, vendor_type)
        patient = self.patients.get(key)
        if patient is None:
            patient = Patient(
                id=self._next_id("patient"),
                clinic_id=clinic_id,
                vendor_type=vendor_type,
                vendor_patient_id=remote.id,
                quota=0,
                sessions_used=0,
                physio_name=None,
                remote_modified_at=None,
            )
            self.patients[key] = patient
        _apply_remote_patient(patient, remote, scheme_type)
        return patient

    async def upsert_appointment(
        self,
        clinic_id: int,
        vendor_type: str,
        patient_id: int,
        remote: RemoteAppointment,
    ) -> Appointment:
        key = (clinic_id, remote.id, vendor_type)
        appointment = self.appointments.get(key)
        if appointment is None:
            appointment = Appointment(
                id=self._next_id("appointment"),
                clinic_id=clinic_id,
                vendor_type=vendor_type,
                vendor_appointment_id=remote.id,
            )
            self.appointments[key] = appointment
        appointment.patient_id = patient_id
        _apply_remote_appointment(appointment, remote)
        return appointment

    async def count_patients(self, clinic_id: int, vendor_type: str) -> int:
        return sum(
            1 for p in self.patients.values() if p.clinic_id == clinic_id and p.vendor_type == vendor_type
        )

    async def list_patients_with_appointments(
        self,
        clinic_id: int,
        vendor_type: str,
    ) -> list[Patient]:
        with_appointments = {a.patient_id for a in self.appointments.values()}
        patients = [
            p
            for p in self.patients.values()
            if p.clinic_id == clinic_id and p.vendor_type == vendor_type and p.id in with_appointments
        ]
        return sorted(patients, key=lambda p: p.id)

    async def list_appointments(self, patient_id: int) -> list[Appointment]:
        appointments = [a for a in self.appointments.values() if a.patient_id == patient_id]
        return sorted(appointments, key=lambda a: (a.appointment_date, a.id), reverse=True)

    async def count_appointments(self, patient_id: int) -> int:
        return sum(1 for a in self.appointments.values() if a.patient_id == patient_id)

    async def latest_completed_appointment_date(self, clinic_id: int) -> Optional[date]:
        dates = [
            a.appointment_date
            for a in self.appointments.values()
            if a.clinic_id == clinic_id and a.status in COMPLETED_STATUSES
        ]
        return max(dates) if dates else None

    async def update_patient_quota(self, patient: Patient, *, quota: int, sessions_used: int) -> None:
        patient.quota = quota
        patient.sessions_used = sessions_used

    # Cases

    async def get_case(self, clinic_id: int, patient_id: int, vendor_type: str) -> Optional[Case]:
        return self.cases.get((clinic_id, patient_id, vendor_type))

    async def get_case_by_id(self, case_id: int) -> Optional[Case]:
        for case in self.cases.values():
            if case.id == case_id:
                return case
        return None

    async def save_case(self, case: Case) -> Case:
        if case.id is None:
            case.id = self._next_id("case")
        self.cases[(case.clinic_id, case.patient_id, case.vendor_type)] = case
        return case

    # Transactions

    async def commit(self) -> None:
        self.commits += 1

    async def rollback(self) -> None:
        return None
