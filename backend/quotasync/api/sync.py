"""Sync trigger, manual controls and run log."""

from dataclasses import asdict

from fastapi import APIRouter, Depends, HTTPException, Query, status

from quotasync.api.deps import get_orchestrator, get_sync_store, require_cron_secret
from quotasync.schemas.sync import (
    ClinicSyncResult,
    SyncControlRequest,
    SyncControlResponse,
    SyncRunResponse,
    SyncSummary,
    SyncTriggerRequest,
    SyncTriggerResponse,
)
from quotasync.services.pms import normalize_vendor_type
from quotasync.services.store import SyncStore
from quotasync.services.sync import ClinicSyncOutcome, SyncOrchestrator

router = APIRouter(
    prefix="/sync",
    tags=["Sync"],
    dependencies=[Depends(require_cron_secret)],
)


def build_summary(outcomes: list[ClinicSyncOutcome]) -> SyncSummary:
    skipped = [o for o in outcomes if o.skipped]
    succeeded = [o for o in outcomes if o.success and not o.skipped]
    return SyncSummary(
        total=len(outcomes),
        succeeded=len(succeeded),
        failed=len([o for o in outcomes if not o.success]),
        skipped=len(skipped),
        patients_processed=sum(o.patients_processed for o in outcomes),
        appointments_processed=sum(o.appointments_processed for o in outcomes),
        cases_created=sum(o.cases_created for o in outcomes),
        cases_updated=sum(o.cases_updated for o in outcomes),
    )


@router.post("/trigger", response_model=SyncTriggerResponse)
async def trigger_sync(
    request: SyncTriggerRequest | None = None,
    orchestrator: SyncOrchestrator = Depends(get_orchestrator),
):
    """Run a sync pass for every active clinic credential (or the filtered one).

    Per-clinic failures are reported in ``results`` and never fail the request.
    """
    request = request or SyncTriggerRequest()
    vendor_type = normalize_vendor_type(request.vendor_type) if request.vendor_type else None
    outcomes = await orchestrator.run(
        clinic_id=request.clinic_id,
        vendor_type=vendor_type,
        force_full=request.force_full,
        trigger="manual" if request.clinic_id is not None else "scheduled",
    )
    return SyncTriggerResponse(
        results=[ClinicSyncResult(**asdict(o)) for o in outcomes],
        summary=build_summary(outcomes),
    )


@router.post("/control", response_model=SyncControlResponse)
async def control_sync(
    request: SyncControlRequest,
    orchestrator: SyncOrchestrator = Depends(get_orchestrator),
):
    """Pause, resume or force a full refresh for one clinic+vendor."""
    vendor_type = normalize_vendor_type(request.vendor_type)
    actions = {
        "pause": orchestrator.pause,
        "resume": orchestrator.resume,
        "force_full": orchestrator.request_full_sync,
    }
    credential = await actions[request.action](request.clinic_id, vendor_type)
    if credential is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="No PMS credential for this clinic and vendor",
        )
    return SyncControlResponse(
        clinic_id=credential.clinic_id,
        vendor_type=credential.vendor_type,
        action=request.action,
        is_active=credential.is_active,
        force_full_requested=credential.force_full_requested,
    )


@router.get("/runs", response_model=list[SyncRunResponse])
async def list_sync_runs(
    clinic_id: int | None = Query(None, description="Filter by clinic ID"),
    vendor_type: str | None = Query(None, description="Filter by vendor"),
    limit: int = Query(50, ge=1, le=500),
    store: SyncStore = Depends(get_sync_store),
):
    """List recent sync runs, newest first."""
    runs = await store.list_runs(
        clinic_id=clinic_id,
        vendor_type=normalize_vendor_type(vendor_type) if vendor_type else None,
        limit=limit,
    )
    return [SyncRunResponse.from_run(run) for run in runs]
