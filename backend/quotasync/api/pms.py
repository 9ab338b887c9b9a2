"""Connecting a clinic to its PMS: key checks and credential storage."""

from fastapi import APIRouter, Depends, HTTPException, status

from quotasync.api.deps import get_adapter_factory, get_sync_store, get_vault, require_cron_secret
from quotasync.schemas.connections import (
    PMSConnectionTestRequest,
    PMSConnectionTestResponse,
    PMSCredentialRequest,
    PMSCredentialResponse,
)
from quotasync.services.credentials import CredentialVault
from quotasync.services.pms.connection import (
    AdapterFactory,
    check_pms_connection,
    store_pms_credential,
)
from quotasync.services.store import SyncStore

router = APIRouter(
    prefix="/pms",
    tags=["PMS"],
    dependencies=[Depends(require_cron_secret)],
)


@router.post("/test-connection", response_model=PMSConnectionTestResponse)
async def test_pms_connection(
    request: PMSConnectionTestRequest,
    adapter_factory: AdapterFactory = Depends(get_adapter_factory),
):
    """Check a key against the vendor without storing anything."""
    check = await check_pms_connection(
        request.vendor_type,
        request.api_key,
        request.base_url,
        adapter_factory=adapter_factory,
    )
    return PMSConnectionTestResponse(ok=check.ok, vendor_type=check.vendor_type, message=check.message)


@router.post("/credentials", response_model=PMSCredentialResponse)
async def store_credentials(
    request: PMSCredentialRequest,
    store: SyncStore = Depends(get_sync_store),
    vault: CredentialVault = Depends(get_vault),
    adapter_factory: AdapterFactory = Depends(get_adapter_factory),
):
    """Verify the key, then encrypt and save it for the clinic.

    Saving an existing clinic+vendor replaces its key and re-enables it with a
    clean failure count.
    """
    if await store.get_clinic(request.clinic_id) is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Clinic not found")
    check = await check_pms_connection(
        request.vendor_type,
        request.api_key,
        request.base_url,
        adapter_factory=adapter_factory,
    )
    if not check.ok:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=check.message)
    credential = await store_pms_credential(
        store,
        vault,
        clinic_id=request.clinic_id,
        vendor_type=check.vendor_type,
        api_key=request.api_key,
        base_url=request.base_url,
    )
    return PMSCredentialResponse(
        clinic_id=credential.clinic_id,
        vendor_type=credential.vendor_type,
        is_active=credential.is_active,
        message="API credentials stored",
    )
