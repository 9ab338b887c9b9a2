"""Schemas for the sync trigger, control and run log endpoints."""

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class SyncTriggerRequest(CamelModel):
    clinic_id: int | None = None
    vendor_type: str | None = Field(default=None, max_length=32)
    force_full: bool = False


class ClinicSyncResult(CamelModel):
    clinic_id: int
    vendor_type: str
    success: bool
    skipped: bool = False
    run_id: int | None = None
    strategy: str | None = None
    patients_processed: int = 0
    appointments_processed: int = 0
    cases_created: int = 0
    cases_updated: int = 0
    issues: int = 0
    error: str | None = None


class SyncSummary(CamelModel):
    total: int
    succeeded: int
    failed: int
    skipped: int
    patients_processed: int
    appointments_processed: int
    cases_created: int
    cases_updated: int


class SyncTriggerResponse(CamelModel):
    results: list[ClinicSyncResult]
    summary: SyncSummary


class SyncControlRequest(CamelModel):
    clinic_id: int
    vendor_type: str = Field(..., min_length=1, max_length=32)
    action: Literal["pause", "resume", "force_full"]


class SyncControlResponse(CamelModel):
    clinic_id: int
    vendor_type: str
    action: str
    is_active: bool
    force_full_requested: bool


class SyncProgress(CamelModel):
    state: str | None = None
    next_page: int | None = None
    total: int | None = None
    processed: int | None = None
    has_more: bool | None = None


class SyncRunResponse(CamelModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        from_attributes=True,
    )

    id: int
    clinic_id: int
    vendor_type: str
    strategy: str
    trigger: str
    status: str
    started_at: datetime
    completed_at: datetime | None = None
    patients_processed: int
    appointments_processed: int
    cases_created: int
    cases_updated: int
    issues: list[str] = Field(default_factory=list)
    error_message: str | None = None
    progress: SyncProgress | None = None

    @classmethod
    def from_run(cls, run: Any) -> "SyncRunResponse":
        response = cls.model_validate(run, from_attributes=True)
        if run.progress:
            response.progress = SyncProgress(
                state=run.progress.get("state"),
                next_page=run.progress.get("next_page"),
                total=run.progress.get("total"),
                processed=run.progress.get("processed"),
                has_more=run.progress.get("has_more"),
            )
        return response
