"""Manual case status transitions."""

from fastapi import APIRouter, Depends, HTTPException, status

from quotasync.api.deps import get_sync_store, require_cron_secret
from quotasync.schemas.cases import CaseResponse, CaseStatusUpdate
from quotasync.services.cases import reactivate_case, set_case_override, set_quota_override
from quotasync.services.store import SyncStore

router = APIRouter(
    prefix="/cases",
    tags=["Cases"],
    dependencies=[Depends(require_cron_secret)],
)


@router.get("/{case_id}", response_model=CaseResponse)
async def get_case(
    case_id: int,
    store: SyncStore = Depends(get_sync_store),
):
    case = await store.get_case_by_id(case_id)
    if case is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Case not found")
    return CaseResponse.model_validate(case)


@router.post("/{case_id}/status", response_model=CaseResponse)
async def update_case_status(
    case_id: int,
    update: CaseStatusUpdate,
    store: SyncStore = Depends(get_sync_store),
):
    """Apply a manual status action.

    ``move_to_pending`` and ``archive_case`` pin the case so later syncs leave
    its status alone; ``move_to_active`` clears the pin and re-derives it;
    ``update_quota`` replaces the scheme quota for this case.
    """
    case = await store.get_case_by_id(case_id)
    if case is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Case not found")

    if update.action == "move_to_pending":
        case = await set_case_override(
            store, case, "pending", reason=update.reason, changed_by=update.changed_by
        )
    elif update.action == "archive_case":
        case = await set_case_override(
            store, case, "archived", reason=update.reason, changed_by=update.changed_by
        )
    elif update.action == "move_to_active":
        case = await reactivate_case(store, case, reason=update.reason, changed_by=update.changed_by)
    else:
        case = await set_quota_override(
            store,
            case,
            update.quota,
            reason=update.reason,
            changed_by=update.changed_by,
        )
    return CaseResponse.model_validate(case)
