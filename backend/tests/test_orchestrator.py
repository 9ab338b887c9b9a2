import asyncio
from datetime import date, timedelta

import pytest

from conftest import NOW, FakeCursorAdapter, FakePagedAdapter, make_appointment, make_patient
from quotasync.exceptions import CredentialError, SecretDecryptionError
from quotasync.services.pms import create_pms_adapter
from quotasync.services.store import RunResult
from quotasync.services.sync import SyncOrchestrator
from quotasync.services.sync.orchestrator import select_strategy


def _critical_adapter():
    return FakeCursorAdapter(
        patients=[make_patient(1), make_patient(2)],
        appointments={
            "1": [make_appointment(f"1-{i}", 1, appointment_date=date(2026, 2, i + 1)) for i in range(5)],
            "2": [make_appointment("2-0", 2)],
        },
    )


def _orchestrator(store, vault, notifier, adapters, keys=None):
    def _factory(vendor_type, api_key, base_url=None):
        if keys is not None:
            keys.append(api_key)
        adapter = adapters[vendor_type] if isinstance(adapters, dict) else adapters
        return adapter

    return SyncOrchestrator(
        store,
        vault=vault,
        adapter_factory=_factory,
        notifier=notifier,
        clock=lambda: NOW,
    )


@pytest.mark.anyio
async def test_successful_incremental_run(store, vault, notifier):
    store.add_credential(1, "cliniko", vault.encrypt("secret-key-au2"))
    keys: list[str] = []
    orchestrator = _orchestrator(store, vault, notifier, _critical_adapter(), keys)

    outcomes = await orchestrator.run()
    await orchestrator.wait_for_notifications()

    assert keys == ["secret-key-au2"]
    [outcome] = outcomes
    assert outcome.success is True
    assert outcome.strategy == "incremental"
    assert outcome.patients_processed == 2
    assert outcome.cases_created == 2
    run = store.runs[-1]
    assert run.status == "completed"
    assert run.sync_cursor == NOW
    assert run.trigger == "scheduled"
    critical_patient = store.patients[(1, "1", "cliniko")]
    assert notifier.calls == [(1, [critical_patient.id])]


@pytest.mark.anyio
async def test_second_run_is_idempotent_and_silent(store, vault, notifier):
    store.add_credential(1, "cliniko", vault.encrypt("secret-key-au2"))
    adapter = _critical_adapter()
    orchestrator = _orchestrator(store, vault, notifier, adapter)

    await orchestrator.run()
    outcomes = await orchestrator.run()
    await orchestrator.wait_for_notifications()

    assert adapter.patient_calls == [None, NOW]
    assert outcomes[0].cases_created == 0
    assert outcomes[0].cases_updated == 2
    assert len(store.cases) == 2
    assert len(notifier.calls) == 1


@pytest.mark.anyio
async def test_running_sync_is_skipped(store, vault, notifier):
    store.add_credential(1, "cliniko", vault.encrypt("secret-key-au2"))
    await store.start_run(1, "cliniko", strategy="incremental", trigger="manual", started_at=NOW)
    adapter = _critical_adapter()

    outcomes = await _orchestrator(store, vault, notifier, adapter).run()

    assert outcomes[0].skipped is True
    assert outcomes[0].success is True
    assert adapter.patient_calls == []
    assert len(store.runs) == 1


@pytest.mark.anyio
async def test_stale_running_sync_is_failed_and_replaced(store, vault, notifier):
    store.add_credential(1, "cliniko", vault.encrypt("secret-key-au2"))
    await store.start_run(
        1,
        "cliniko",
        strategy="incremental",
        trigger="scheduled",
        started_at=NOW - timedelta(hours=3),
    )

    outcomes = await _orchestrator(store, vault, notifier, _critical_adapter()).run()

    assert outcomes[0].success is True
    assert store.runs[0].status == "failed"
    assert store.runs[0].error_message.startswith("abandoned")
    assert store.runs[1].status == "completed"


@pytest.mark.anyio
async def test_repeated_credential_errors_deactivate_credential(store, vault, notifier):
    credential = store.add_credential(1, "cliniko", vault.encrypt("expired-key-au2"))
    adapter = _critical_adapter()
    adapter.error = CredentialError("cliniko rejected credentials (HTTP 401)")
    orchestrator = _orchestrator(store, vault, notifier, adapter)

    for _ in range(3):
        [outcome] = await orchestrator.run()
        assert outcome.success is False
        assert "rejected credentials" in outcome.error

    assert credential.is_active is False
    assert credential.deactivated_reason == "credential_failures"
    assert credential.consecutive_failures == 3
    assert [run.status for run in store.runs] == ["failed", "failed", "failed"]
    assert await orchestrator.run() == []


@pytest.mark.anyio
async def test_success_resets_credential_failure_count(store, vault, notifier):
    credential = store.add_credential(1, "cliniko", vault.encrypt("key-au2"))
    adapter = _critical_adapter()
    adapter.error = CredentialError("cliniko rejected credentials (HTTP 401)")
    orchestrator = _orchestrator(store, vault, notifier, adapter)

    await orchestrator.run()
    adapter.error = None
    await orchestrator.run()

    assert credential.consecutive_failures == 0
    assert credential.is_active is True


@pytest.mark.anyio
async def test_failure_in_one_clinic_does_not_abort_others(store, vault, notifier):
    store.add_clinic(2, "South Clinic")
    store.add_credential(1, "cliniko", vault.encrypt("key-au2"))
    store.add_credential(2, "halaxy", vault.encrypt("halaxy-token"))
    broken = _critical_adapter()
    broken.error = RuntimeError("unexpected payload")
    healthy = _critical_adapter()

    outcomes = await _orchestrator(
        store, vault, notifier, {"cliniko": broken, "halaxy": healthy}
    ).run()

    assert [(o.clinic_id, o.success) for o in outcomes] == [(1, False), (2, True)]
    assert outcomes[0].error == "unexpected payload"
    assert len(store.cases) == 2


@pytest.mark.anyio
async def test_undecryptable_secret_is_fatal(store, vault, notifier):
    store.add_credential(1, "cliniko", "not-a-fernet-token")

    with pytest.raises(SecretDecryptionError):
        await _orchestrator(store, vault, notifier, _critical_adapter()).run()


@pytest.mark.anyio
async def test_unsupported_vendor_fails_only_that_clinic(store, vault, notifier):
    store.add_credential(1, "acme", vault.encrypt("key"))
    orchestrator = SyncOrchestrator(
        store,
        vault=vault,
        adapter_factory=create_pms_adapter,
        notifier=notifier,
        clock=lambda: NOW,
    )

    [outcome] = await orchestrator.run()

    assert outcome.success is False
    assert "Unsupported PMS type" in outcome.error


@pytest.mark.anyio
async def test_paged_vendor_uses_batch_strategy(store, vault, notifier):
    store.add_credential(1, "nookal", vault.encrypt("nookal-key"))
    adapter = FakePagedAdapter(
        patients=[make_patient(i) for i in range(1, 4)],
        appointments={"1": [make_appointment(10, 1)]},
    )

    [outcome] = await _orchestrator(store, vault, notifier, adapter).run()

    assert outcome.strategy == "batch"
    assert outcome.success is True
    assert adapter.page_calls == [(1, 200)]
    assert store.runs[-1].progress["state"] == "exhausted"
    assert store.runs[-1].sync_cursor is None


@pytest.mark.anyio
async def test_pause_resume_and_force_full_controls(store, vault, notifier):
    credential = store.add_credential(1, "cliniko", vault.encrypt("key-au2"))
    adapter = _critical_adapter()
    orchestrator = _orchestrator(store, vault, notifier, adapter)
    await orchestrator.run()

    await orchestrator.pause(1, "cliniko")
    assert await orchestrator.run() == []
    assert credential.deactivated_reason == "paused"

    await orchestrator.resume(1, "cliniko")
    ref = await orchestrator.request_full_sync(1, "cliniko")
    assert ref.force_full_requested is True
    await orchestrator.run()

    assert adapter.patient_calls == [None, None]
    assert store.runs[-1].trigger == "force_full"
    assert credential.force_full_requested is False
    assert await orchestrator.pause(9, "cliniko") is None


@pytest.mark.anyio
async def test_pending_override_sticks_across_sync(store, vault, notifier):
    from quotasync.services.cases import set_case_override

    store.add_credential(1, "cliniko", vault.encrypt("key-au2"))
    orchestrator = _orchestrator(store, vault, notifier, _critical_adapter())
    await orchestrator.run()
    patient = store.patients[(1, "1", "cliniko")]
    case = await store.get_case(1, patient.id, "cliniko")
    await set_case_override(store, case, "pending", reason="On hold")

    await orchestrator.run()

    assert case.status == "pending"
    assert case.sessions_remaining == 0


@pytest.mark.anyio
async def test_cancellation_marks_run_failed(store, vault, notifier):
    store.add_credential(1, "cliniko", vault.encrypt("key-au2"))
    adapter = _critical_adapter()
    adapter.error = asyncio.CancelledError()

    with pytest.raises(asyncio.CancelledError):
        await _orchestrator(store, vault, notifier, adapter).run()

    assert store.runs[-1].status == "failed"
    assert store.runs[-1].error_message == "cancelled"


@pytest.mark.anyio
async def test_notifier_errors_never_fail_the_run(store, vault):
    class _BrokenNotifier:
        async def notify(self, clinic_id, patient_ids):
            raise RuntimeError("webhook down")

    store.add_credential(1, "cliniko", vault.encrypt("key-au2"))
    orchestrator = _orchestrator(store, vault, _BrokenNotifier(), _critical_adapter())

    [outcome] = await orchestrator.run()
    await orchestrator.wait_for_notifications()

    assert outcome.success is True


def test_select_strategy_by_capability():
    assert select_strategy(FakeCursorAdapter()) == "incremental"
    assert select_strategy(FakePagedAdapter()) == "batch"


@pytest.mark.anyio
async def test_failed_run_keeps_previous_cursor(store, vault, notifier):
    store.add_credential(1, "cliniko", vault.encrypt("key-au2"))
    earlier = NOW - timedelta(days=1)
    run_id = await store.start_run(1, "cliniko", strategy="incremental", trigger="scheduled", started_at=earlier)
    await store.finish_run(run_id, RunResult(status="completed", completed_at=earlier, sync_cursor=earlier))
    adapter = _critical_adapter()
    adapter.error = RuntimeError("boom")
    orchestrator = _orchestrator(store, vault, notifier, adapter)

    await orchestrator.run()
    adapter.error = None
    await orchestrator.run()

    assert adapter.patient_calls == [earlier, earlier]


class _HookedPagedAdapter(FakePagedAdapter):
    def __init__(self, patients, on_page) -> None:
        super().__init__(patients=patients)
        self.on_page = on_page

    async def get_patients_page(self, page, page_size):
        await self.on_page(page)
        return await super().get_patients_page(page, page_size)


@pytest.mark.anyio
async def test_long_batch_run_keeps_its_lock_through_heartbeats(store, vault, notifier):
    store.add_credential(1, "nookal", vault.encrypt("nookal-key"))
    clock = [NOW]
    overlapping = []

    async def _on_page(page):
        if page == 1:
            clock[0] = NOW + timedelta(minutes=50)
        elif page == 2:
            clock[0] = NOW + timedelta(minutes=100)
            second = SyncOrchestrator(
                store,
                vault=vault,
                adapter_factory=lambda *_args: FakePagedAdapter(patients=[make_patient(1)]),
                notifier=notifier,
                clock=lambda: clock[0],
            )
            [credential] = await store.list_credentials()
            overlapping.append(await second.sync_credential(credential))

    adapter = _HookedPagedAdapter([make_patient(i) for i in range(1, 451)], _on_page)
    orchestrator = SyncOrchestrator(
        store,
        vault=vault,
        adapter_factory=lambda *_args: adapter,
        notifier=notifier,
        clock=lambda: clock[0],
    )

    [outcome] = await orchestrator.run()

    assert overlapping[0].skipped is True
    assert outcome.success is True
    assert outcome.patients_processed == 450
    assert [run.status for run in store.runs] == ["completed"]
    assert store.runs[0].heartbeat_at == NOW + timedelta(minutes=100)


@pytest.mark.anyio
async def test_run_reaped_mid_sync_stops_and_stays_failed(store, vault, notifier):
    store.add_credential(1, "nookal", vault.encrypt("nookal-key"))
    later = NOW + timedelta(hours=3)
    replacement = []

    async def _on_page(page):
        if page == 2:
            await store.fail_stale_runs(
                1, "nookal", heartbeat_before=later - timedelta(hours=1), now=later
            )
            replacement.append(
                await store.start_run(1, "nookal", strategy="batch", trigger="manual", started_at=later)
            )

    adapter = _HookedPagedAdapter([make_patient(i) for i in range(1, 451)], _on_page)

    [outcome] = await _orchestrator(store, vault, notifier, adapter).run()

    assert outcome.success is False
    assert "abandoned" in outcome.error
    assert [page for page, _size in adapter.page_calls] == [1, 2]
    first, second = store.runs
    assert first.status == "failed"
    assert first.error_message.startswith("abandoned")
    assert second.id == replacement[0]
    assert second.status == "running"
    assert notifier.calls == []
