"""End-to-end sync against PostgreSQL; skipped unless TEST_DATABASE_URL is set."""

from __future__ import annotations

import os
from datetime import date

import pytest
from fastapi import Depends, FastAPI
from httpx import ASGITransport, AsyncClient
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from conftest import NOW, FakeCursorAdapter, _no_lifespan, make_appointment, make_patient
from quotasync.config import settings
from quotasync.models import Appointment, Base, Case, Clinic, Patient, PMSCredential, SyncRun
from quotasync.services.store import RunResult, SQLSyncStore
from quotasync.services.sync import SyncOrchestrator

pytestmark = pytest.mark.anyio


@pytest.fixture(scope="session")
def database_url():
    url = os.getenv("TEST_DATABASE_URL")
    if not url:
        pytest.skip("TEST_DATABASE_URL is required for DB tests")
    return url


@pytest.fixture(scope="session")
async def async_engine(database_url: str):
    engine = create_async_engine(database_url, echo=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest.fixture(scope="session")
def session_maker(async_engine):
    return async_sessionmaker(
        async_engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autocommit=False,
        autoflush=False,
    )


@pytest.fixture(autouse=True)
async def clear_tables(async_engine):
    async with async_engine.begin() as conn:
        for table in reversed(Base.metadata.sorted_tables):
            await conn.execute(table.delete())
    yield


@pytest.fixture()
async def seeded(session_maker, vault):
    async with session_maker() as session:
        session.add(Clinic(id=1, name="North Clinic", epc_tags=["EPC"], wc_tags=["WC"]))
        await session.flush()
        session.add(
            PMSCredential(
                clinic_id=1,
                vendor_type="cliniko",
                encrypted_secret=vault.encrypt("key-au2"),
            )
        )
        await session.commit()


@pytest.fixture()
async def client(session_maker, seeded, vault, notifier):
    from quotasync import database
    from quotasync.api import cases, sync
    from quotasync.api.deps import get_orchestrator, get_sync_store

    app = FastAPI(lifespan=_no_lifespan)
    app.include_router(sync.router, prefix=settings.api_prefix)
    app.include_router(cases.router, prefix=settings.api_prefix)

    async def _override_get_db():
        async with session_maker() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise
            finally:
                await session.close()

    def _override_get_orchestrator(store: SQLSyncStore = Depends(get_sync_store)):
        adapter = FakeCursorAdapter(
            patients=[make_patient(1)],
            appointments={
                "1": [
                    make_appointment(10, 1, appointment_date=date(2026, 2, 1)),
                    make_appointment(11, 1, appointment_date=date(2026, 3, 1)),
                ]
            },
        )
        return SyncOrchestrator(
            store,
            vault=vault,
            adapter_factory=lambda _vendor, _key, _base_url=None: adapter,
            notifier=notifier,
            clock=lambda: NOW,
        )

    app.dependency_overrides[database.get_db] = _override_get_db
    app.dependency_overrides[get_orchestrator] = _override_get_orchestrator

    async with AsyncClient(
        transport=ASGITransport(app=app), base_url="http://test"
    ) as async_client:
        yield async_client

    app.dependency_overrides.clear()


def _auth():
    return {"Authorization": f"Bearer {settings.sync_cron_secret}"}


async def _count(session_maker, model) -> int:
    async with session_maker() as session:
        return int(await session.scalar(select(func.count()).select_from(model)) or 0)


async def test_trigger_persists_patients_appointments_and_cases(client, session_maker):
    response = await client.post("/api/v1/sync/trigger", json={}, headers=_auth())

    assert response.status_code == 200
    result = response.json()["results"][0]
    assert result["success"] is True
    assert result["patientsProcessed"] == 1
    assert result["appointmentsProcessed"] == 2
    assert result["casesCreated"] == 1

    async with session_maker() as session:
        case = await session.scalar(select(Case))
        run = await session.scalar(select(SyncRun))
    assert case.case_number == "CASE-1"
    assert case.sessions_used == 2
    assert case.sessions_remaining == 3
    assert case.status == "warning"
    assert run.status == "completed"
    assert run.sync_cursor == NOW


async def test_repeated_trigger_does_not_duplicate_rows(client, session_maker):
    await client.post("/api/v1/sync/trigger", json={}, headers=_auth())
    second = await client.post("/api/v1/sync/trigger", json={"forceFull": True}, headers=_auth())

    assert second.status_code == 200
    assert second.json()["results"][0]["casesUpdated"] == 1
    assert await _count(session_maker, Patient) == 1
    assert await _count(session_maker, Appointment) == 2
    assert await _count(session_maker, Case) == 1
    assert await _count(session_maker, SyncRun) == 2


async def test_running_run_blocks_a_second_start(session_maker, seeded):
    async with session_maker() as session:
        store = SQLSyncStore(session)
        first = await store.start_run(
            1, "cliniko", strategy="incremental", trigger="manual", started_at=NOW
        )
        second = await store.start_run(
            1, "cliniko", strategy="incremental", trigger="manual", started_at=NOW
        )

    assert first is not None
    assert second is None


async def test_credential_failures_deactivate_credential(session_maker, seeded):
    async with session_maker() as session:
        store = SQLSyncStore(session)
        [credential] = await store.list_credentials()
        for _ in range(settings.credential_failure_threshold):
            deactivated = await store.record_credential_failure(
                credential.id,
                "401 unauthorized",
                threshold=settings.credential_failure_threshold,
                at=NOW,
            )
        assert deactivated is True
        assert await store.list_credentials() == []


async def test_save_credential_replaces_secret_and_reactivates(session_maker, seeded, vault):
    async with session_maker() as session:
        store = SQLSyncStore(session)
        [credential] = await store.list_credentials()
        for _ in range(settings.credential_failure_threshold):
            await store.record_credential_failure(
                credential.id,
                "401 unauthorized",
                threshold=settings.credential_failure_threshold,
                at=NOW,
            )
        saved = await store.save_credential(1, "cliniko", vault.encrypt("fresh-key-au2"))

    assert saved.id == credential.id
    assert saved.is_active is True
    assert saved.consecutive_failures == 0
    assert vault.decrypt(saved.encrypted_secret) == "fresh-key-au2"
    assert await _count(session_maker, PMSCredential) == 1


async def test_heartbeat_survives_reaper_and_reaped_run_is_not_overwritten(session_maker, seeded):
    async with session_maker() as session:
        store = SQLSyncStore(session)
        live = await store.start_run(1, "cliniko", strategy="incremental", trigger="manual", started_at=NOW)
        assert await store.touch_run(live, NOW.replace(hour=10))
        kept = await store.fail_stale_runs(
            1, "cliniko", heartbeat_before=NOW.replace(hour=9, minute=30), now=NOW.replace(hour=10)
        )
        reaped = await store.fail_stale_runs(
            1, "cliniko", heartbeat_before=NOW.replace(hour=11), now=NOW.replace(hour=11)
        )
        finalized = await store.finish_run(
            live, RunResult(status="completed", completed_at=NOW.replace(hour=11))
        )

    async with session_maker() as session:
        run = await session.get(SyncRun, live)
    assert kept == 0
    assert reaped == 1
    assert finalized is False
    assert run.status == "failed"
    assert run.error_message.startswith("abandoned")
