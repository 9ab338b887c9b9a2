"""Schemas for testing and storing clinic PMS credentials."""

from pydantic import Field

from quotasync.schemas.sync import CamelModel


class PMSConnectionTestRequest(CamelModel):
    vendor_type: str = Field(..., min_length=1, max_length=32)
    api_key: str = Field(..., min_length=1, max_length=512)
    base_url: str | None = Field(default=None, max_length=500)


class PMSConnectionTestResponse(CamelModel):
    ok: bool
    vendor_type: str
    message: str


class PMSCredentialRequest(PMSConnectionTestRequest):
    clinic_id: int


class PMSCredentialResponse(CamelModel):
    clinic_id: int
    vendor_type: str
    is_active: bool
    message: str
