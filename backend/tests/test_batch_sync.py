from datetime import timedelta

import pytest

from conftest import NOW, FakePagedAdapter, make_patient
from quotasync.exceptions import RunLockLost, TransientNetworkError
from quotasync.services.store import RunResult
from quotasync.services.sync.batch import (
    Exhausted,
    InProgress,
    Uninitialized,
    advance,
    bootstrap_page,
    run_batch_sync,
    state_from_payload,
    state_to_payload,
)
from quotasync.services.sync.common import SyncStats

PAGE_SIZE = 200


def _adapter(count=450):
    return FakePagedAdapter(patients=[make_patient(i) for i in range(1, count + 1)])


async def _run(store, adapter, *, now=NOW, max_pages=0, force_full=False, refresh_hours=0):
    run_id = await store.start_run(1, "nookal", strategy="batch", trigger="scheduled", started_at=now)
    stats = SyncStats()
    try:
        outcome = await run_batch_sync(
            store=store,
            adapter=adapter,
            clinic=store.clinics[1],
            vendor_type="nookal",
            stats=stats,
            run_id=run_id,
            now=now,
            page_size=PAGE_SIZE,
            max_pages=max_pages,
            full_refresh_hours=refresh_hours,
            force_full=force_full,
        )
    except Exception:
        await store.finish_run(run_id, RunResult(status="failed", completed_at=now))
        raise
    await store.finish_run(run_id, RunResult(status="completed", completed_at=now))
    return outcome


def test_state_payload_round_trip_and_defaults():
    state = InProgress(next_page=3, total=450, processed=400)

    assert state_from_payload(state_to_payload(state)) == state
    assert state_to_payload(state)["has_more"] is True
    assert isinstance(state_from_payload(None), Uninitialized)
    assert isinstance(state_from_payload({"next_page": 2}), Uninitialized)
    assert isinstance(
        state_from_payload({"total": 10, "processed": 10, "has_more": False}),
        Exhausted,
    )


def test_advance_and_bootstrap_page():
    assert advance(InProgress(next_page=1, total=450, processed=0), 200, NOW) == InProgress(
        next_page=2, total=450, processed=200
    )
    assert isinstance(advance(InProgress(next_page=3, total=450, processed=400), 50, NOW), Exhausted)
    assert isinstance(advance(InProgress(next_page=3, total=450, processed=400), 0, NOW), Exhausted)
    assert bootstrap_page(0, PAGE_SIZE) == 1
    assert bootstrap_page(250, PAGE_SIZE) == 2


@pytest.mark.anyio
async def test_walks_450_patients_in_exactly_three_fetches(store):
    adapter = _adapter()

    outcome = await _run(store, adapter)

    assert adapter.page_calls == [(1, 200), (2, 200), (3, 200)]
    assert outcome.pages_fetched == 3
    assert isinstance(outcome.state, Exhausted)
    assert outcome.state.processed == 450
    assert len(store.patients) == 450
    assert store.runs[-1].progress["has_more"] is False


@pytest.mark.anyio
async def test_restarts_resume_without_refetching(store):
    adapter = _adapter()

    for _ in range(4):
        await _run(store, adapter, max_pages=1)

    assert adapter.page_calls == [(1, 200), (2, 200), (3, 200)]
    assert isinstance(state_from_payload(store.runs[-1].progress), Exhausted)


@pytest.mark.anyio
async def test_failed_page_is_retried_from_last_saved_progress(store):
    adapter = _adapter()
    original = adapter.get_patients_page

    async def _fail_on_page_two(page, page_size):
        if page == 2:
            raise TransientNetworkError("nookal returned HTTP 503")
        return await original(page, page_size)

    adapter.get_patients_page = _fail_on_page_two
    with pytest.raises(TransientNetworkError):
        await _run(store, adapter)

    adapter.get_patients_page = original
    await _run(store, adapter, now=NOW + timedelta(minutes=10))

    assert adapter.page_calls == [(1, 200), (2, 200), (3, 200)]
    assert len(store.patients) == 450


@pytest.mark.anyio
async def test_bootstrap_skips_pages_already_mirrored(store):
    adapter = _adapter()
    for patient in adapter.patients[:250]:
        await store.upsert_patient(1, "nookal", patient, "EPC")

    outcome = await _run(store, adapter)

    assert adapter.page_calls == [(2, 200), (3, 200)]
    assert outcome.state.processed == 450


@pytest.mark.anyio
async def test_exhausted_state_fetches_nothing_until_forced(store):
    adapter = _adapter()
    await _run(store, adapter)
    adapter.page_calls.clear()

    idle = await _run(store, adapter, now=NOW + timedelta(hours=1))
    forced = await _run(store, adapter, now=NOW + timedelta(hours=2), force_full=True)

    assert idle.pages_fetched == 0
    assert forced.pages_fetched == 3
    assert adapter.page_calls[0] == (1, 200)
    assert len(store.patients) == 450


@pytest.mark.anyio
async def test_periodic_refresh_reopens_exhausted_walk(store):
    adapter = _adapter()
    await _run(store, adapter)
    adapter.page_calls.clear()

    early = await _run(store, adapter, now=NOW + timedelta(hours=2), refresh_hours=24)
    due = await _run(store, adapter, now=NOW + timedelta(hours=25), refresh_hours=24)

    assert early.pages_fetched == 0
    assert due.pages_fetched == 3


@pytest.mark.anyio
async def test_reaped_run_stops_before_fetching_pages(store):
    adapter = _adapter()
    run_id = await store.start_run(1, "nookal", strategy="batch", trigger="scheduled", started_at=NOW)
    later = NOW + timedelta(hours=2)
    await store.fail_stale_runs(1, "nookal", heartbeat_before=later - timedelta(hours=1), now=later)

    with pytest.raises(RunLockLost, match="progress not saved"):
        await run_batch_sync(
            store=store,
            adapter=adapter,
            clinic=store.clinics[1],
            vendor_type="nookal",
            stats=SyncStats(),
            run_id=run_id,
            now=later,
            page_size=PAGE_SIZE,
        )

    assert adapter.page_calls == []
    assert store.runs[0].progress is None
    assert store.runs[0].status == "failed"
