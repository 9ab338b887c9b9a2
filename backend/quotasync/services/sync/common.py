"""Per-patient processing shared by the incremental and batch strategies."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field
from datetime import datetime

from quotasync.config import settings
from quotasync.exceptions import CredentialError, UnsupportedVendorError
from quotasync.schemas.pms import RemoteAppointment, RemotePatient
from quotasync.services.pms.base import PMSAdapter, SchemeType
from quotasync.services.store import ClinicSettings, SyncStore

logger = logging.getLogger("quotasync.sync")

MAX_RECORDED_ISSUES = 200

Heartbeat = Callable[[], Awaitable[None]]


@dataclass
class SyncStats:
    """Counters accumulated while one SyncRun executes."""

    patients_processed: int = 0
    patients_skipped: int = 0
    appointments_processed: int = 0
    pages_fetched: int = 0
    issues: list[str] = field(default_factory=list)

    def add_issue(self, message: str) -> None:
        if len(self.issues) < MAX_RECORDED_ISSUES:
            self.issues.append(message[:500])


def escalates(exc: BaseException) -> bool:
    """True for errors that must fail the whole run instead of one record."""
    if getattr(exc, "fatal", False):
        return True
    return isinstance(exc, (CredentialError, UnsupportedVendorError))


def drain_rejections(adapter: PMSAdapter, stats: SyncStats) -> int:
    """Move records the adapter dropped during normalization into the issue list."""
    rejected = list(adapter.rejected)
    adapter.rejected.clear()
    for exc in rejected:
        record = f" {exc.record_id}" if exc.record_id else ""
        stats.add_issue(f"Invalid {adapter.vendor_type} record{record}: {exc}")
    return len(rejected)


def _scheme_from_clinic_tags(
    appointments: Sequence[RemoteAppointment],
    clinic: ClinicSettings,
) -> SchemeType:
    epc = {tag.lower() for tag in clinic.epc_tags}
    wc = {tag.lower() for tag in clinic.wc_tags}
    for appointment in appointments:
        type_name = (appointment.type_name or "").strip().lower()
        if type_name in epc:
            return SchemeType.EPC
        if type_name in wc:
            return SchemeType.WC
    return SchemeType.UNKNOWN


class PatientProcessor:
    """Classifies and upserts remote patients and their completed appointments."""

    def __init__(
        self,
        *,
        store: SyncStore,
        adapter: PMSAdapter,
        clinic: ClinicSettings,
        vendor_type: str,
        stats: SyncStats,
        since: datetime | None = None,
        heartbeat: Heartbeat | None = None,
    ) -> None:
        self.store = store
        self.adapter = adapter
        self.clinic = clinic
        self.vendor_type = vendor_type
        self.stats = stats
        self.since = since
        self.heartbeat = heartbeat

    async def process_all(self, patients: Sequence[RemotePatient]) -> None:
        """Process patients in chunks; appointment reads run concurrently.

        Each committed chunk renews the run heartbeat, which raises
        ``RunLockLost`` once the run has been failed as abandoned.
        """
        concurrency = max(1, settings.pms_fetch_concurrency)
        chunk_size = concurrency * 5
        for start in range(0, len(patients), chunk_size):
            chunk = patients[start : start + chunk_size]
            fetched = await self._fetch_appointments(chunk, concurrency)
            for patient, appointments in fetched:
                await self.process_patient(patient, appointments)
            drain_rejections(self.adapter, self.stats)
            await self.store.commit()
            if self.heartbeat is not None:
                await self.heartbeat()

    async def _fetch_appointments(
        self,
        patients: Sequence[RemotePatient],
        concurrency: int,
    ) -> list[tuple[RemotePatient, list[RemoteAppointment]]]:
        semaphore = asyncio.Semaphore(concurrency)

        async def _fetch(patient: RemotePatient):
            async with semaphore:
                try:
                    return patient, await self.adapter.get_appointments(patient.id, self.since), None
                except Exception as exc:
                    return patient, None, exc

        results = await asyncio.gather(*(_fetch(patient) for patient in patients))
        for _patient, _appointments, error in results:
            if error is not None and escalates(error):
                raise error

        fetched: list[tuple[RemotePatient, list[RemoteAppointment]]] = []
        for patient, appointments, error in results:
            if error is not None:
                logger.warning(
                    "Appointment fetch failed for %s patient=%s: %s",
                    self.vendor_type,
                    patient.id,
                    error,
                )
                self.stats.add_issue(f"Failed to fetch appointments for patient {patient.id}: {error}")
                continue
            fetched.append((patient, appointments))
        return fetched

    async def classify(
        self,
        patient: RemotePatient,
        appointments: Sequence[RemoteAppointment],
    ) -> SchemeType:
        scheme = self.adapter.classify_scheme(patient, appointments)
        if scheme is SchemeType.UNKNOWN:
            scheme = _scheme_from_clinic_tags(appointments, self.clinic)
        if scheme is SchemeType.UNKNOWN:
            existing = await self.store.get_patient(self.clinic.id, self.vendor_type, patient.id)
            if existing is not None and existing.scheme_type in (SchemeType.EPC.value, SchemeType.WC.value):
                scheme = SchemeType(existing.scheme_type)
        return scheme

    async def process_patient(
        self,
        patient: RemotePatient,
        appointments: Sequence[RemoteAppointment],
    ) -> bool:
        """Upsert one patient and its completed appointments; False when skipped."""
        try:
            scheme = await self.classify(patient, appointments)
            if scheme is SchemeType.UNKNOWN:
                self.stats.patients_skipped += 1
                return False
            local = await self.store.upsert_patient(
                self.clinic.id,
                self.vendor_type,
                patient,
                scheme.value,
            )
        except Exception as exc:
            if escalates(exc):
                raise
            logger.warning("Patient upsert failed for %s patient=%s: %s", self.vendor_type, patient.id, exc)
            self.stats.add_issue(f"Failed to store patient {patient.id}: {exc}")
            return False
        self.stats.patients_processed += 1

        for appointment in appointments:
            if not self.adapter.is_completed_appointment(appointment):
                continue
            try:
                await self.store.upsert_appointment(
                    self.clinic.id,
                    self.vendor_type,
                    local.id,
                    appointment,
                )
            except Exception as exc:
                if escalates(exc):
                    raise
                logger.warning(
                    "Appointment upsert failed for %s appointment=%s: %s",
                    self.vendor_type,
                    appointment.id,
                    exc,
                )
                self.stats.add_issue(f"Failed to store appointment {appointment.id}: {exc}")
                continue
            self.stats.appointments_processed += 1
        return True
