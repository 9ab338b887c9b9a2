"""Cliniko adapter (cursor-capable)."""

from __future__ import annotations

import logging
import re
from collections.abc import Iterable
from datetime import UTC, datetime
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
    link_id,
)
from quotasync.utils.coerce import coerce_datetime, coerce_str, format_timestamp

logger = logging.getLogger("quotasync.pms.cliniko")

DEFAULT_SHARD = "au1"
_SHARD_PATTERN = re.compile(r"^[a-zA-Z0-9]{2,4}$")


def shard_from_api_key(api_key: str) -> str | None:
    """Cliniko keys end in ``-<shard>`` (e.g. ``-au2``)."""
    parts = (api_key or "").strip().split("-")
    if len(parts) < 2:
        return None
    shard = parts[-1]
    return shard if _SHARD_PATTERN.match(shard) else None


def base_url_for_key(api_key: str) -> str:
    return f"https://api.{shard_from_api_key(api_key) or DEFAULT_SHARD}.cliniko.com/v1"


class ClinikoAdapter:
    """Talks to the Cliniko REST API using HTTP basic auth."""

    vendor_type = "cliniko"
    capabilities = frozenset({Capability.MODIFIED_SINCE})

    def __init__(self, config: PMSConnectionConfig) -> None:
        self.config = config
        self.rejected: list[RecordValidationError] = []
        self._name_cache: dict[tuple[str, str], str | None] = {}

    async def _get(self, path: str, params: dict[str, str] | None = None) -> dict[str, Any]:
        url = path if path.startswith("http") else f"{self.config.base_url}{path}"
        return await http_get_json(
            config=self.config,
            url=url,
            params=params,
            auth=(self.config.api_key, ""),
        )

    async def _get_all(
        self,
        path: str,
        key: str,
        params: dict[str, str],
    ) -> list[dict[str, Any]]:
        items: list[dict[str, Any]] = []
        next_url: str | None = path
        request_params: dict[str, str] | None = params
        pages = 0
        while next_url and pages < self.config.max_pages:
            payload = await self._get(next_url, request_params)
            batch = payload.get(key) or []
            items.extend(item for item in batch if isinstance(item, dict))
            links = payload.get("links") or {}
            next_url = links.get("next") if isinstance(links, dict) else None
            # links.next already carries the query string
            request_params = None
            pages += 1
        if next_url:
            logger.warning("Cliniko %s listing truncated after %d pages", path, pages)
        return items

    async def test_connection(self) -> bool:
        await self._get("/patients", {"per_page": "1"})
        return True

    async def get_patients(self, since: datetime | None = None) -> list[RemotePatient]:
        params = {"per_page": "100"}
        if since is not None:
            params["updated_since"] = format_timestamp(since)
        raw_patients = await self._get_all("/patients", "patients", params)

        patients: list[RemotePatient] = []
        for raw in raw_patients:
            try:
                patients.append(self._map_patient(raw))
            except RecordValidationError as exc:
                self._reject(exc)
        return patients

    async def get_appointments(
        self,
        patient_id: str,
        since: datetime | None = None,
    ) -> list[RemoteAppointment]:
        params = {"per_page": "50"}
        if since is not None:
            params["updated_since"] = format_timestamp(since)
        bookings = await self._get_all(
            f"/patients/{patient_id}/bookings",
            "bookings",
            params,
        )
        now = datetime.now(UTC)
        appointments: list[RemoteAppointment] = []
        for booking in bookings:
            try:
                appointments.append(await self._map_booking(booking, patient_id, now))
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

    def _map_patient(self, raw: dict[str, Any]) -> RemotePatient:
        phones = raw.get("patient_phone_numbers") or []
        phone = None
        if phones and isinstance(phones[0], dict):
            phone = coerce_str(phones[0].get("number"))
        return build_remote_patient(
            id=raw.get("id"),
            first_name=coerce_str(raw.get("first_name")),
            last_name=coerce_str(raw.get("last_name")),
            email=coerce_str(raw.get("email")),
            phone=phone or coerce_str(raw.get("phone_number")),
            date_of_birth=raw.get("date_of_birth"),
            modified_at=raw.get("updated_at"),
            scheme_hints=[
                text
                for text in (
                    coerce_str(raw.get("referral_source")),
                    coerce_str(raw.get("notes")),
                    coerce_str(raw.get("medicare_reference_number")) and "medicare",
                )
                if text
            ],
        )

    async def _map_booking(
        self,
        booking: dict[str, Any],
        patient_id: str,
        now: datetime,
    ) -> RemoteAppointment:
        starts_at = coerce_datetime(booking.get("starts_at"))
        ends_at = coerce_datetime(booking.get("ends_at"))
        if booking.get("cancelled_at"):
            status = "cancelled"
        elif booking.get("did_not_arrive"):
            status = "dna"
        elif ends_at is not None and ends_at < now:
            status = COMPLETED_STATUS
        else:
            status = "scheduled"

        return build_remote_appointment(
            id=booking.get("id"),
            patient_id=link_id(booking.get("patient")) or patient_id,
            appointment_date=starts_at or booking.get("starts_at"),
            type_name=await self._resolve_name(
                "appointment_types", link_id(booking.get("appointment_type"))
            ),
            practitioner_name=await self._resolve_name(
                "practitioners", link_id(booking.get("practitioner"))
            ),
            location_name=await self._resolve_name(
                "businesses", link_id(booking.get("business"))
            ),
            status=status,
            modified_at=booking.get("updated_at"),
        )

    async def _resolve_name(self, collection: str, resource_id: str | None) -> str | None:
        if not resource_id:
            return None
        cache_key = (collection, resource_id)
        if cache_key not in self._name_cache:
            payload = await self._get(f"/{collection}/{resource_id}")
            self._name_cache[cache_key] = _display_name(payload)
        return self._name_cache[cache_key]

    def _reject(self, exc: RecordValidationError) -> None:
        logger.warning("Skipping invalid %s record: %s", self.vendor_type, exc)
        self.rejected.append(exc)


def _display_name(payload: dict[str, Any]) -> str | None:
    for key in ("name", "display_name", "business_name", "label"):
        value = coerce_str(payload.get(key))
        if value:
            return value
    full_name = " ".join(
        part for part in (coerce_str(payload.get("first_name")), coerce_str(payload.get("last_name"))) if part
    )
    return full_name or None
