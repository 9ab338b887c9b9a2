"""Nookal adapter (enumeration-only).

Nookal cannot filter by modification time, so the engine walks its patient
list page by page with the batch strategy.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from datetime import datetime
from typing import Any

from quotasync.exceptions import CredentialError, PMSRequestError, RecordValidationError
from quotasync.schemas.pms import (
    RemoteAppointment,
    RemotePatient,
    build_remote_appointment,
    build_remote_patient,
)
from quotasync.services.pms.base import (
    COMPLETED_STATUS,
    Capability,
    PMSConnectionConfig,
    SchemeType,
    classify_from_records,
    http_get_json,
    map_appointment_status,
)
from quotasync.utils.coerce import coerce_int, coerce_str

logger = logging.getLogger("quotasync.pms.nookal")

DEFAULT_BASE_URL = "https://api.nookal.com/production/v1"
_AUTH_ERROR_MARKERS = ("api key", "unauthori", "authentication")


class NookalAdapter:
    """Talks to the Nookal API; the key travels as the ``api_key`` parameter."""

    vendor_type = "nookal"
    capabilities = frozenset({Capability.PAGED_LISTING})

    def __init__(self, config: PMSConnectionConfig) -> None:
        self.config = config
        self.rejected: list[RecordValidationError] = []

    async def _get(self, endpoint: str, params: dict[str, str] | None = None) -> dict[str, Any]:
        request_params = {"api_key": self.config.api_key}
        request_params.update(params or {})
        payload = await http_get_json(
            config=self.config,
            url=f"{self.config.base_url}{endpoint}",
            params=request_params,
        )
        if payload.get("status") != "success":
            message = str(payload.get("message") or "Unknown error")
            if any(marker in message.lower() for marker in _AUTH_ERROR_MARKERS):
                raise CredentialError(f"nookal rejected credentials: {message}")
            raise PMSRequestError(f"nookal {endpoint} failed: {message}")
        data = payload.get("data")
        if not isinstance(data, dict):
            data = {}
        details = payload.get("details")
        if isinstance(details, dict):
            data.setdefault("_details", details)
        return data

    async def test_connection(self) -> bool:
        await self._get("/getLocations")
        return True

    async def get_total_patient_count(self) -> int:
        data = await self._get("/getPatients", {"page": "1", "page_length": "1"})
        details = data.get("_details") or {}
        total = coerce_int(details.get("totalItems"))
        if total is None:
            total = coerce_int(data.get("totalItems"))
        if total is None:
            raise PMSRequestError("nookal /getPatients did not report totalItems")
        return total

    async def get_patients_page(self, page: int, page_size: int) -> list[RemotePatient]:
        data = await self._get(
            "/getPatients",
            {"page": str(page), "page_length": str(page_size)},
        )
        patients: list[RemotePatient] = []
        for raw in data.get("patients") or []:
            if not isinstance(raw, dict):
                continue
            try:
                patients.append(self._map_patient(raw))
            except RecordValidationError as exc:
                self._reject(exc)
        return patients

    async def get_patients(self, since: datetime | None = None) -> list[RemotePatient]:
        """Enumerate every page; ``since`` is applied client-side."""
        patients: list[RemotePatient] = []
        page_size = 200
        for page in range(1, self.config.max_pages + 1):
            batch = await self.get_patients_page(page, page_size)
            if not batch:
                break
            patients.extend(batch)
            if len(batch) < page_size:
                break
        if since is None:
            return patients
        return [
            patient
            for patient in patients
            if patient.modified_at is None or patient.modified_at > since
        ]

    async def get_appointments(
        self,
        patient_id: str,
        since: datetime | None = None,
    ) -> list[RemoteAppointment]:
        data = await self._get("/getAppointments", {"patient_id": patient_id})
        appointments: list[RemoteAppointment] = []
        for raw in data.get("appointments") or []:
            if not isinstance(raw, dict):
                continue
            try:
                appointment = build_remote_appointment(
                    id=raw.get("ID"),
                    patient_id=patient_id,
                    appointment_date=raw.get("Date") or raw.get("AppointmentDate"),
                    type_name=coerce_str(raw.get("AppointmentType")),
                    practitioner_name=coerce_str(raw.get("Practitioner")),
                    location_name=coerce_str(raw.get("Location")),
                    status=map_appointment_status(raw.get("Status")),
                    modified_at=raw.get("LastModified"),
                )
            except RecordValidationError as exc:
                self._reject(exc)
                continue
            if since is not None and appointment.modified_at is not None and appointment.modified_at <= since:
                continue
            appointments.append(appointment)
        return appointments

    def classify_scheme(
        self,
        patient: RemotePatient,
        appointments: Iterable[RemoteAppointment] = (),
    ) -> SchemeType:
        return classify_from_records(patient, appointments)

    def is_completed_appointment(self, appointment: RemoteAppointment) -> bool:
        return appointment.status == COMPLETED_STATUS

    def _map_patient(self, raw: dict[str, Any]) -> RemotePatient:
        return build_remote_patient(
            id=raw.get("ID"),
            first_name=coerce_str(raw.get("FirstName")),
            last_name=coerce_str(raw.get("LastName")),
            email=coerce_str(raw.get("Email")),
            phone=coerce_str(raw.get("Mobile") or raw.get("Phone")),
            date_of_birth=raw.get("DOB"),
            physio_name=coerce_str(raw.get("PrimaryPractitioner")),
            modified_at=raw.get("LastModified"),
            scheme_hints=[
                text
                for text in (
                    coerce_str(raw.get("ReferralSource")),
                    coerce_str(raw.get("Category")),
                    coerce_str(raw.get("Notes")),
                )
                if text
            ],
        )

    def _reject(self, exc: RecordValidationError) -> None:
        logger.warning("Skipping invalid %s record: %s", self.vendor_type, exc)
        self.rejected.append(exc)
