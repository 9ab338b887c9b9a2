"""Halaxy adapter (cursor-capable)."""

from __future__ import annotations

import logging
from collections.abc import Iterable
from datetime import datetime
from typing import Any

from quotasync.exceptions import RecordValidationError
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
from quotasync.utils.coerce import coerce_str, format_timestamp

logger = logging.getLogger("quotasync.pms.halaxy")

DEFAULT_BASE_URL = "https://api.halaxy.com/v1"


def _nested_name(value: Any) -> str | None:
    if isinstance(value, dict):
        return coerce_str(value.get("name"))
    return coerce_str(value)


class HalaxyAdapter:
    """Talks to the Halaxy API using a bearer token."""

    vendor_type = "halaxy"
    capabilities = frozenset({Capability.MODIFIED_SINCE})

    def __init__(self, config: PMSConnectionConfig) -> None:
        self.config = config
        self.rejected: list[RecordValidationError] = []

    async def _get(self, path: str, params: dict[str, str] | None = None) -> dict[str, Any]:
        url = path if path.startswith("http") else f"{self.config.base_url}{path}"
        return await http_get_json(
            config=self.config,
            url=url,
            params=params,
            headers={"Authorization": f"Bearer {self.config.api_key}"},
        )

    async def _get_all(self, path: str, params: dict[str, str]) -> list[dict[str, Any]]:
        items: list[dict[str, Any]] = []
        next_url: str | None = path
        request_params: dict[str, str] | None = params
        pages = 0
        while next_url and pages < self.config.max_pages:
            payload = await self._get(next_url, request_params)
            items.extend(item for item in payload.get("data") or [] if isinstance(item, dict))
            links = payload.get("links") or {}
            next_url = links.get("next") if isinstance(links, dict) else None
            request_params = None
            pages += 1
        return items

    async def test_connection(self) -> bool:
        await self._get("/profile")
        return True

    async def get_patients(self, since: datetime | None = None) -> list[RemotePatient]:
        params = {"limit": "100"}
        if since is not None:
            params["modified_since"] = format_timestamp(since)
        patients: list[RemotePatient] = []
        for raw in await self._get_all("/patients", params):
            try:
                patients.append(
                    build_remote_patient(
                        id=raw.get("id"),
                        first_name=coerce_str(raw.get("first_name")),
                        last_name=coerce_str(raw.get("last_name")),
                        email=coerce_str(raw.get("email")),
                        phone=coerce_str(raw.get("mobile_phone") or raw.get("home_phone")),
                        date_of_birth=raw.get("date_of_birth"),
                        physio_name=_nested_name(raw.get("primary_practitioner")),
                        modified_at=raw.get("updated_at"),
                        scheme_hints=[
                            text
                            for text in (
                                _nested_name(raw.get("referral")),
                                coerce_str(raw.get("funding_type")),
                                coerce_str(raw.get("notes")),
                            )
                            if text
                        ],
                    )
                )
            except RecordValidationError as exc:
                self._reject(exc)
        return patients

    async def get_appointments(
        self,
        patient_id: str,
        since: datetime | None = None,
    ) -> list[RemoteAppointment]:
        params: dict[str, str] = {"limit": "100"}
        if since is not None:
            params["modified_since"] = format_timestamp(since)
        appointments: list[RemoteAppointment] = []
        for raw in await self._get_all(f"/patients/{patient_id}/appointments", params):
            try:
                appointments.append(
                    build_remote_appointment(
                        id=raw.get("id"),
                        patient_id=patient_id,
                        appointment_date=raw.get("start_time"),
                        type_name=_nested_name(raw.get("appointment_type")),
                        practitioner_name=_nested_name(raw.get("practitioner")),
                        location_name=_nested_name(raw.get("location") or raw.get("clinic")),
                        status=map_appointment_status(raw.get("status")),
                        modified_at=raw.get("updated_at"),
                    )
                )
            except RecordValidationError as exc:
                self._reject(exc)
        return appointments

    def classify_scheme(
        self,
        patient: RemotePatient,
        appointments: Iterable[RemoteAppointment] = (),
    ) -> SchemeType:
        return classify_from_records(patient, appointments)

    def is_completed_appointment(self, appointment: RemoteAppointment) -> bool:
        return appointment.status == COMPLETED_STATUS

    def _reject(self, exc: RecordValidationError) -> None:
        logger.warning("Skipping invalid %s record: %s", self.vendor_type, exc)
        self.rejected.append(exc)
