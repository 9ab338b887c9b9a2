"""Resumable paginated sync for vendors that can only enumerate patients.

Progress is explicit data persisted on the SyncRun:

- ``Uninitialized``: no usable progress; the next run bootstraps.
- ``InProgress``: the next page to fetch, the remote total observed at
  bootstrap and how many records have been processed so far.
- ``Exhausted``: the full list has been walked; no pages are fetched until a
  forced full sync or the periodic refresh reopens it.

Progress is saved only after a page has been completely processed, so an
interrupted run re-fetches at most the page it was working on.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Union

from quotasync.exceptions import RunLockLost
from quotasync.services.pms.base import PagedPMSAdapter
from quotasync.services.store import ClinicSettings, SyncStore
from quotasync.services.sync.common import Heartbeat, PatientProcessor, SyncStats, drain_rejections
from quotasync.utils.coerce import coerce_datetime, coerce_int

logger = logging.getLogger("quotasync.sync.batch")


@dataclass(frozen=True)
class Uninitialized:
    state = "uninitialized"


@dataclass(frozen=True)
class InProgress:
    next_page: int
    total: int
    processed: int

    state = "in_progress"


@dataclass(frozen=True)
class Exhausted:
    total: int
    processed: int
    completed_at: datetime | None = None

    state = "exhausted"


PaginationState = Union[Uninitialized, InProgress, Exhausted]


def state_to_payload(state: PaginationState) -> dict[str, Any]:
    if isinstance(state, InProgress):
        return {
            "state": state.state,
            "next_page": state.next_page,
            "total": state.total,
            "processed": state.processed,
            "has_more": True,
        }
    if isinstance(state, Exhausted):
        return {
            "state": state.state,
            "total": state.total,
            "processed": state.processed,
            "has_more": False,
            "completed_at": state.completed_at.isoformat() if state.completed_at else None,
        }
    return {"state": Uninitialized.state}


def state_from_payload(payload: dict[str, Any] | None) -> PaginationState:
    """Rebuild state from a stored payload; anything unusable is Uninitialized."""
    if not payload:
        return Uninitialized()
    total = coerce_int(payload.get("total"))
    processed = coerce_int(payload.get("processed"))
    if total is None or processed is None:
        return Uninitialized()
    state = payload.get("state")
    if state is None:
        state = "in_progress" if payload.get("has_more") else "exhausted"
    if state == InProgress.state:
        next_page = coerce_int(payload.get("next_page"))
        if next_page is None or next_page < 1:
            return Uninitialized()
        return InProgress(next_page=next_page, total=total, processed=processed)
    if state == Exhausted.state:
        return Exhausted(
            total=total,
            processed=processed,
            completed_at=coerce_datetime(payload.get("completed_at")),
        )
    return Uninitialized()


def bootstrap_page(existing_count: int, page_size: int) -> int:
    """First page to fetch when no progress exists but patients are already stored."""
    return existing_count // page_size + 1 if existing_count > 0 else 1


def start_state(total: int, first_page: int, page_size: int, now: datetime) -> PaginationState:
    processed = min((first_page - 1) * page_size, total)
    if processed >= total:
        return Exhausted(total=total, processed=processed, completed_at=now)
    return InProgress(next_page=first_page, total=total, processed=processed)


def advance(state: InProgress, page_length: int, now: datetime) -> PaginationState:
    """Move past a fully processed page."""
    processed = state.processed + page_length
    if page_length == 0 or processed >= state.total:
        return Exhausted(total=state.total, processed=processed, completed_at=now)
    return InProgress(next_page=state.next_page + 1, total=state.total, processed=processed)


def refresh_due(state: Exhausted, now: datetime, refresh_hours: int) -> bool:
    if refresh_hours <= 0 or state.completed_at is None:
        return False
    return now - state.completed_at >= timedelta(hours=refresh_hours)


@dataclass
class BatchOutcome:
    state: PaginationState
    pages_fetched: int


async def _save_state(store: SyncStore, run_id: int, state: PaginationState) -> None:
    if not await store.save_progress(run_id, state_to_payload(state)):
        raise RunLockLost(f"SyncRun {run_id} was failed as abandoned; progress not saved")


async def run_batch_sync(
    *,
    store: SyncStore,
    adapter: PagedPMSAdapter,
    clinic: ClinicSettings,
    vendor_type: str,
    stats: SyncStats,
    run_id: int,
    now: datetime,
    page_size: int,
    max_pages: int = 0,
    full_refresh_hours: int = 0,
    force_full: bool = False,
    heartbeat: Heartbeat | None = None,
) -> BatchOutcome:
    """Continue (or start) the paginated walk of the vendor's patient list."""
    if force_full:
        logger.info("Forced full batch sync for clinic=%s vendor=%s", clinic.id, vendor_type)
        state: PaginationState = Uninitialized()
        first_page = 1
    else:
        state = state_from_payload(await store.latest_progress(clinic.id, vendor_type))
        first_page = None
        if isinstance(state, Exhausted) and refresh_due(state, now, full_refresh_hours):
            logger.info(
                "Batch sync for clinic=%s vendor=%s exhausted at %s; starting refresh pass",
                clinic.id,
                vendor_type,
                state.completed_at.isoformat() if state.completed_at else "-",
            )
            state = Uninitialized()
            first_page = 1

    if isinstance(state, Uninitialized):
        if first_page is None:
            first_page = bootstrap_page(await store.count_patients(clinic.id, vendor_type), page_size)
        total = await adapter.get_total_patient_count()
        state = start_state(total, first_page, page_size, now)
        logger.info(
            "Batch sync bootstrap clinic=%s vendor=%s total=%d first_page=%d",
            clinic.id,
            vendor_type,
            total,
            first_page,
        )
        await _save_state(store, run_id, state)

    if isinstance(state, Exhausted):
        logger.info("Batch sync for clinic=%s vendor=%s is exhausted; nothing to fetch", clinic.id, vendor_type)
        await _save_state(store, run_id, state)
        return BatchOutcome(state=state, pages_fetched=0)

    processor = PatientProcessor(
        store=store,
        adapter=adapter,
        clinic=clinic,
        vendor_type=vendor_type,
        stats=stats,
        heartbeat=heartbeat,
    )
    pages_fetched = 0
    while isinstance(state, InProgress):
        if max_pages and pages_fetched >= max_pages:
            logger.info(
                "Batch sync clinic=%s vendor=%s paused at page %d after %d pages",
                clinic.id,
                vendor_type,
                state.next_page,
                pages_fetched,
            )
            break
        page = await adapter.get_patients_page(state.next_page, page_size)
        pages_fetched += 1
        stats.pages_fetched += 1
        rejected = drain_rejections(adapter, stats)

        await processor.process_all(page)
        state = advance(state, len(page) + rejected, now)
        await _save_state(store, run_id, state)
        logger.info(
            "Batch sync clinic=%s vendor=%s page done processed=%d total=%d",
            clinic.id,
            vendor_type,
            state.processed,
            state.total,
        )

    return BatchOutcome(state=state, pages_fetched=pages_fetched)
