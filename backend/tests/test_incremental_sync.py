from datetime import date, timedelta

import pytest

from conftest import NOW, FakeCursorAdapter, make_appointment, make_patient
from quotasync.exceptions import CredentialError, RecordValidationError
from quotasync.services.store import RunResult
from quotasync.services.sync.common import SyncStats
from quotasync.services.sync.incremental import run_incremental_sync


def _adapter():
    return FakeCursorAdapter(
        patients=[
            make_patient(1),
            make_patient(2, hint="WorkCover claim"),
            make_patient(3, hint=None),
        ],
        appointments={
            "1": [
                make_appointment(10, 1),
                make_appointment(11, 1, status="cancelled"),
            ],
            "2": [make_appointment(20, 2, type_name="WC")],
            "3": [make_appointment(30, 3, type_name="Standard Consult")],
        },
    )


async def _run(store, adapter, *, force_full=False, started_at=NOW):
    stats = SyncStats()
    outcome = await run_incremental_sync(
        store=store,
        adapter=adapter,
        clinic=store.clinics[1],
        vendor_type="cliniko",
        stats=stats,
        run_started_at=started_at,
        force_full=force_full,
    )
    return outcome, stats


@pytest.mark.anyio
async def test_first_run_pulls_everything_and_skips_unknown_scheme(store):
    adapter = _adapter()

    outcome, stats = await _run(store, adapter)

    assert adapter.patient_calls == [None]
    assert outcome.since is None
    assert outcome.cursor == NOW
    assert stats.patients_processed == 2
    assert stats.patients_skipped == 1
    # cancelled appointments are not mirrored
    assert stats.appointments_processed == 2
    assert {p.scheme_type for p in store.patients.values()} == {"EPC", "WC"}


@pytest.mark.anyio
async def test_repeat_run_is_idempotent(store):
    adapter = _adapter()

    await _run(store, adapter)
    await _run(store, adapter)

    assert len(store.patients) == 2
    assert len(store.appointments) == 2


@pytest.mark.anyio
async def test_next_run_uses_cursor_of_last_completed_run(store):
    earlier = NOW - timedelta(hours=1)
    run_id = await store.start_run(1, "cliniko", strategy="incremental", trigger="scheduled", started_at=earlier)
    await store.finish_run(
        run_id,
        RunResult(status="completed", completed_at=earlier, sync_cursor=earlier),
    )
    failed_id = await store.start_run(1, "cliniko", strategy="incremental", trigger="scheduled", started_at=NOW)
    await store.finish_run(failed_id, RunResult(status="failed", completed_at=NOW, sync_cursor=NOW))
    adapter = _adapter()

    outcome, _stats = await _run(store, adapter, started_at=NOW + timedelta(minutes=5))

    assert adapter.patient_calls == [earlier]
    assert outcome.since == earlier


@pytest.mark.anyio
async def test_force_full_ignores_cursor(store):
    run_id = await store.start_run(1, "cliniko", strategy="incremental", trigger="scheduled", started_at=NOW)
    await store.finish_run(run_id, RunResult(status="completed", completed_at=NOW, sync_cursor=NOW))
    adapter = _adapter()

    await _run(store, adapter, force_full=True)

    assert adapter.patient_calls == [None]


@pytest.mark.anyio
async def test_rejected_records_become_issues(store):
    adapter = _adapter()
    adapter.rejected.append(RecordValidationError("Invalid patient record: missing id", record_id="99"))

    _outcome, stats = await _run(store, adapter)

    assert stats.patients_processed == 2
    assert any("99" in issue for issue in stats.issues)
    assert adapter.rejected == []


@pytest.mark.anyio
async def test_clinic_tags_classify_untagged_patients(store):
    store.add_clinic(1, "North Clinic", epc_tags="EPC, Care Plan", wc_tags=["WC"])
    adapter = FakeCursorAdapter(
        patients=[make_patient(5, hint=None)],
        appointments={"5": [make_appointment(50, 5, type_name="Care Plan")]},
    )

    _outcome, stats = await _run(store, adapter)

    assert stats.patients_processed == 1
    assert store.patients[(1, "5", "cliniko")].scheme_type == "EPC"


@pytest.mark.anyio
async def test_credential_error_on_appointment_fetch_fails_the_run(store):
    adapter = _adapter()

    async def _rejecting(_patient_id, since=None):
        raise CredentialError("cliniko rejected credentials (HTTP 401)")

    adapter.get_appointments = _rejecting

    with pytest.raises(CredentialError):
        await _run(store, adapter)


@pytest.mark.anyio
async def test_other_appointment_fetch_errors_are_recorded_per_patient(store):
    adapter = _adapter()
    original = adapter.get_appointments

    async def _flaky(patient_id, since=None):
        if patient_id == "2":
            raise RuntimeError("boom")
        return await original(patient_id, since)

    adapter.get_appointments = _flaky

    _outcome, stats = await _run(store, adapter)

    assert stats.patients_processed == 1
    assert any("patient 2" in issue for issue in stats.issues)
    assert (1, "1", "cliniko") in store.patients


def test_appointment_date_parses_vendor_timestamps():
    appointment = make_appointment(1, 1, appointment_date="2026-03-04T23:30:00Z")

    assert appointment.appointment_date == date(2026, 3, 4)
    assert appointment.modified_at is None
