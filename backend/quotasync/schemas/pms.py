"""Normalized records returned by PMS adapters."""

from datetime import date, datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from quotasync.exceptions import RecordValidationError
from quotasync.utils.coerce import coerce_date, coerce_datetime


class RemotePatient(BaseModel):
    """A patient as reported by a PMS, before local upsert."""

    model_config = ConfigDict(str_strip_whitespace=True)

    id: str = Field(..., min_length=1)
    first_name: str | None = None
    last_name: str | None = None
    email: str | None = None
    phone: str | None = None
    date_of_birth: date | None = None
    physio_name: str | None = None
    modified_at: datetime | None = None
    # Free text used for scheme classification (referral source, notes, ...)
    scheme_hints: list[str] = Field(default_factory=list)

    @field_validator("id", mode="before")
    @classmethod
    def _stringify_id(cls, value: Any) -> Any:
        if isinstance(value, int):
            return str(value)
        return value

    @field_validator("date_of_birth", mode="before")
    @classmethod
    def _lenient_birth_date(cls, value: Any) -> date | None:
        return coerce_date(value)

    @field_validator("modified_at", mode="before")
    @classmethod
    def _lenient_modified_at(cls, value: Any) -> datetime | None:
        return coerce_datetime(value)


class RemoteAppointment(BaseModel):
    """An appointment as reported by a PMS, before local upsert."""

    model_config = ConfigDict(str_strip_whitespace=True)

    id: str = Field(..., min_length=1)
    patient_id: str = Field(..., min_length=1)
    appointment_date: date
    type_name: str | None = None
    practitioner_name: str | None = None
    location_name: str | None = None
    status: str = "scheduled"
    modified_at: datetime | None = None

    @field_validator("id", "patient_id", mode="before")
    @classmethod
    def _stringify_ids(cls, value: Any) -> Any:
        if isinstance(value, int):
            return str(value)
        return value

    @field_validator("appointment_date", mode="before")
    @classmethod
    def _parse_appointment_date(cls, value: Any) -> Any:
        parsed = coerce_date(value)
        return parsed if parsed is not None else value

    @field_validator("modified_at", mode="before")
    @classmethod
    def _lenient_modified_at(cls, value: Any) -> datetime | None:
        return coerce_datetime(value)


def build_remote_patient(**fields: Any) -> RemotePatient:
    """Validate adapter output, raising RecordValidationError on bad input."""
    try:
        return RemotePatient(**fields)
    except ValidationError as exc:
        raise RecordValidationError(
            f"Invalid patient record: {exc.errors()[0].get('msg', 'validation failed')}",
            record_id=str(fields.get("id") or "") or None,
        ) from exc


def build_remote_appointment(**fields: Any) -> RemoteAppointment:
    """Validate adapter output, raising RecordValidationError on bad input."""
    try:
        return RemoteAppointment(**fields)
    except ValidationError as exc:
        raise RecordValidationError(
            f"Invalid appointment record: {exc.errors()[0].get('msg', 'validation failed')}",
            record_id=str(fields.get("id") or "") or None,
        ) from exc
