"""Schemas for manual case status actions."""

from datetime import date, datetime
from typing import Literal

from pydantic import ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel

from quotasync.schemas.sync import CamelModel


class CaseStatusUpdate(CamelModel):
    action: Literal["move_to_pending", "move_to_active", "archive_case", "update_quota"]
    reason: str | None = Field(default=None, max_length=1000)
    changed_by: str | None = Field(default=None, max_length=128)
    quota: int | None = Field(default=None, ge=0, le=100)

    @model_validator(mode="after")
    def _require_quota(self) -> "CaseStatusUpdate":
        if self.action == "update_quota" and self.quota is None:
            raise ValueError("quota is required for update_quota")
        return self


class CaseResponse(CamelModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        from_attributes=True,
    )

    id: int
    clinic_id: int
    patient_id: int
    vendor_type: str
    case_number: str
    case_title: str
    scheme_type: str
    quota: int
    quota_override: int | None = None
    sessions_used: int
    sessions_remaining: int
    quota_degraded: bool
    status: str
    priority: str
    alert_message: str | None = None
    is_alert_active: bool
    physio_name: str | None = None
    location_name: str | None = None
    appointment_type_name: str | None = None
    last_visit_date: date | None = None
    status_change_reason: str | None = None
    last_status_change: datetime | None = None
    status_changed_by: str | None = None
