from datetime import date, timedelta

import pytest
from sqlalchemy.exc import IntegrityError, OperationalError

from conftest import NOW, make_appointment, make_patient
from quotasync.exceptions import StoreUnavailableError
from quotasync.services.store import RunResult, SQLSyncStore, parse_tags


@pytest.mark.parametrize(
    ("value", "expected"),
    [
        ("EPC, CDM ,", ("EPC", "CDM")),
        (["WC", " Workcover "], ("WC", "Workcover")),
        ("", ("EPC",)),
        (None, ("EPC",)),
        ([], ("EPC",)),
    ],
)
def test_parse_tags(value, expected):
    assert parse_tags(value, ("EPC",)) == expected


@pytest.mark.anyio
async def test_upsert_patient_uses_natural_key(store):
    first = await store.upsert_patient(1, "cliniko", make_patient("p1"), "EPC")
    second = await store.upsert_patient(
        1, "cliniko", make_patient("p1", first_name="Patricia"), "EPC"
    )
    other_vendor = await store.upsert_patient(1, "halaxy", make_patient("p1"), "EPC")

    assert first is second
    assert second.first_name == "Patricia"
    assert other_vendor.id != first.id
    assert await store.count_patients(1, "cliniko") == 1


@pytest.mark.anyio
async def test_upsert_appointment_does_not_duplicate(store):
    patient = await store.upsert_patient(1, "cliniko", make_patient("p1"), "EPC")
    await store.upsert_appointment(1, "cliniko", patient.id, make_appointment("a1", "p1"))
    await store.upsert_appointment(
        1,
        "cliniko",
        patient.id,
        make_appointment("a1", "p1", appointment_date=date(2026, 4, 2)),
    )

    appointments = await store.list_appointments(patient.id)
    assert len(appointments) == 1
    assert appointments[0].appointment_date == date(2026, 4, 2)
    assert await store.latest_completed_appointment_date(1) == date(2026, 4, 2)


@pytest.mark.anyio
async def test_only_one_running_run_per_clinic_vendor(store):
    first = await store.start_run(1, "cliniko", strategy="incremental", trigger="manual", started_at=NOW)
    blocked = await store.start_run(1, "cliniko", strategy="incremental", trigger="manual", started_at=NOW)
    other_vendor = await store.start_run(1, "nookal", strategy="batch", trigger="manual", started_at=NOW)

    assert first is not None
    assert blocked is None
    assert other_vendor is not None


@pytest.mark.anyio
async def test_stale_runs_are_failed(store):
    run_id = await store.start_run(
        1,
        "cliniko",
        strategy="incremental",
        trigger="scheduled",
        started_at=NOW - timedelta(hours=2),
    )

    failed = await store.fail_stale_runs(
        1,
        "cliniko",
        heartbeat_before=NOW - timedelta(hours=1),
        now=NOW,
    )

    assert failed == 1
    run = store.runs[0]
    assert run.id == run_id
    assert run.status == "failed"
    assert run.error_message.startswith("abandoned")


@pytest.mark.anyio
async def test_heartbeat_keeps_long_run_from_being_reaped(store):
    run_id = await store.start_run(1, "nookal", strategy="batch", trigger="scheduled", started_at=NOW)
    assert await store.save_progress(run_id, {"next_page": 2, "total": 450, "processed": 200})
    assert await store.touch_run(run_id, NOW + timedelta(minutes=55))

    reaped = await store.fail_stale_runs(
        1,
        "nookal",
        heartbeat_before=NOW + timedelta(minutes=61) - timedelta(minutes=60),
        now=NOW + timedelta(minutes=61),
    )
    second = await store.start_run(
        1, "nookal", strategy="batch", trigger="manual", started_at=NOW + timedelta(minutes=61)
    )

    assert reaped == 0
    assert second is None
    assert await store.finish_run(run_id, RunResult(status="completed", completed_at=NOW))
    assert [(run.id, run.status) for run in store.runs] == [(run_id, "completed")]


@pytest.mark.anyio
async def test_reaped_run_cannot_finish_or_write_progress(store):
    run_id = await store.start_run(1, "nookal", strategy="batch", trigger="scheduled", started_at=NOW)
    later = NOW + timedelta(minutes=90)
    await store.fail_stale_runs(1, "nookal", heartbeat_before=later - timedelta(minutes=60), now=later)
    replacement = await store.start_run(1, "nookal", strategy="batch", trigger="manual", started_at=later)

    assert await store.touch_run(run_id, later) is False
    assert await store.save_progress(run_id, {"next_page": 3}) is False
    assert await store.finish_run(run_id, RunResult(status="completed", completed_at=later)) is False
    assert [(run.id, run.status) for run in store.runs] == [
        (run_id, "failed"),
        (replacement, "running"),
    ]
    assert store.runs[0].progress is None


@pytest.mark.anyio
async def test_latest_cursor_ignores_failed_runs(store):
    ok = await store.start_run(1, "cliniko", strategy="incremental", trigger="manual", started_at=NOW)
    await store.finish_run(ok, RunResult(status="completed", completed_at=NOW, sync_cursor=NOW))
    later = NOW + timedelta(hours=1)
    bad = await store.start_run(1, "cliniko", strategy="incremental", trigger="manual", started_at=later)
    await store.finish_run(
        bad,
        RunResult(status="failed", completed_at=later, error_message="boom", sync_cursor=later),
    )

    assert await store.latest_cursor(1, "cliniko") == NOW


@pytest.mark.anyio
async def test_credential_failures_deactivate_at_threshold(store, vault):
    credential = store.add_credential(1, "cliniko", vault.encrypt("key"))

    assert not await store.record_credential_failure(credential.id, "401", threshold=2, at=NOW)
    assert await store.record_credential_failure(credential.id, "401", threshold=2, at=NOW)

    assert credential.is_active is False
    assert credential.deactivated_reason == "credential_failures"
    assert await store.list_credentials() == []
    assert len(await store.list_credentials(include_inactive=True)) == 1


class _BrokenSession:
    def __init__(self, exc: Exception) -> None:
        self.exc = exc

    async def execute(self, *_args, **_kwargs):
        raise self.exc

    async def get(self, *_args, **_kwargs):
        raise self.exc


@pytest.mark.anyio
async def test_sql_store_translates_lost_connection():
    store = SQLSyncStore(_BrokenSession(OperationalError("SELECT 1", {}, Exception("refused"))))

    with pytest.raises(StoreUnavailableError) as exc_info:
        await store.list_credentials()

    assert exc_info.value.fatal is True


@pytest.mark.anyio
async def test_sql_store_translates_unreachable_host():
    store = SQLSyncStore(_BrokenSession(ConnectionRefusedError("refused")))

    with pytest.raises(StoreUnavailableError):
        await store.get_clinic(1)


@pytest.mark.anyio
async def test_sql_store_keeps_integrity_errors():
    store = SQLSyncStore(_BrokenSession(IntegrityError("INSERT", {}, Exception("dup"))))

    with pytest.raises(IntegrityError):
        await store.list_credentials()
