"""Per-clinic sync orchestration.

For each enabled credential the orchestrator takes the clinic+vendor lock (a
``running`` SyncRun row), picks a strategy from the adapter's capabilities,
syncs, re-derives cases, fires notifications and finalizes the run. The run
renews a heartbeat after every committed chunk; a run without a heartbeat for
``SYNC_RUN_STALE_MINUTES`` is failed as abandoned and loses the lock. A failure
in one clinic is recorded on its SyncRun and never stops the others; only
fatal errors (undecryptable secrets, an unreachable store) end the invocation.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta

from quotasync.config import settings
from quotasync.exceptions import CredentialError, RunLockLost, SyncError
from quotasync.logging import sync_run_var
from quotasync.services.cases import DerivationResult, derive_cases
from quotasync.services.credentials import CredentialVault, get_credential_vault
from quotasync.services.notifications import NotificationTrigger, get_notification_trigger
from quotasync.services.pms.base import Capability, PMSAdapter
from quotasync.services.pms.factory import create_pms_adapter
from quotasync.services.store import ClinicSettings, CredentialRef, RunResult, SyncStore
from quotasync.services.sync.batch import Exhausted, run_batch_sync
from quotasync.services.sync.common import Heartbeat, SyncStats
from quotasync.services.sync.incremental import run_incremental_sync

logger = logging.getLogger("quotasync.sync.orchestrator")

AdapterFactory = Callable[[str, str, str | None], PMSAdapter]


@dataclass
class ClinicSyncOutcome:
    """What happened for one clinic+vendor during an invocation."""

    clinic_id: int
    vendor_type: str
    success: bool
    skipped: bool = False
    run_id: int | None = None
    strategy: str | None = None
    patients_processed: int = 0
    appointments_processed: int = 0
    cases_created: int = 0
    cases_updated: int = 0
    issues: int = 0
    error: str | None = None


def select_strategy(adapter: PMSAdapter) -> str:
    if Capability.MODIFIED_SINCE in adapter.capabilities:
        return "incremental"
    if Capability.PAGED_LISTING in adapter.capabilities:
        return "batch"
    raise SyncError(f"{adapter.vendor_type} adapter declares no supported listing capability")


class SyncOrchestrator:
    """Runs sync for every enabled clinic credential."""

    def __init__(
        self,
        store: SyncStore,
        *,
        vault: CredentialVault | None = None,
        adapter_factory: AdapterFactory = create_pms_adapter,
        notifier: NotificationTrigger | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.store = store
        self._vault = vault
        self.adapter_factory = adapter_factory
        self.notifier = notifier or get_notification_trigger()
        self.clock = clock or (lambda: datetime.now(UTC))
        self._notification_tasks: set[asyncio.Task[None]] = set()

    @property
    def vault(self) -> CredentialVault:
        if self._vault is None:
            self._vault = get_credential_vault()
        return self._vault

    async def run(
        self,
        *,
        clinic_id: int | None = None,
        vendor_type: str | None = None,
        force_full: bool = False,
        trigger: str = "scheduled",
    ) -> list[ClinicSyncOutcome]:
        """Sync all matching active credentials, one clinic at a time."""
        credentials = await self.store.list_credentials(
            clinic_id=clinic_id,
            vendor_type=vendor_type,
        )
        logger.info(
            "Sync invocation trigger=%s credentials=%d force_full=%s",
            trigger,
            len(credentials),
            force_full,
        )
        outcomes: list[ClinicSyncOutcome] = []
        for credential in credentials:
            try:
                outcome = await self.sync_credential(
                    credential,
                    force_full=force_full,
                    trigger=trigger,
                )
            except Exception as exc:
                if getattr(exc, "fatal", False):
                    raise
                logger.exception(
                    "Sync failed for clinic=%s vendor=%s",
                    credential.clinic_id,
                    credential.vendor_type,
                )
                outcome = ClinicSyncOutcome(
                    clinic_id=credential.clinic_id,
                    vendor_type=credential.vendor_type,
                    success=False,
                    error=str(exc) or exc.__class__.__name__,
                )
            outcomes.append(outcome)
        return outcomes

    async def sync_credential(
        self,
        credential: CredentialRef,
        *,
        force_full: bool = False,
        trigger: str = "scheduled",
    ) -> ClinicSyncOutcome:
        clinic_id = credential.clinic_id
        vendor_type = credential.vendor_type
        now = self.clock()

        stale = await self.store.fail_stale_runs(
            clinic_id,
            vendor_type,
            heartbeat_before=now - timedelta(minutes=settings.sync_run_stale_minutes),
            now=now,
        )
        if stale:
            logger.warning(
                "Marked %d abandoned run(s) failed for clinic=%s vendor=%s",
                stale,
                clinic_id,
                vendor_type,
            )

        api_key = self.vault.decrypt(credential.encrypted_secret)
        adapter = self.adapter_factory(vendor_type, api_key, credential.base_url)
        strategy = select_strategy(adapter)
        force = force_full or credential.force_full_requested
        if force and trigger == "scheduled":
            trigger = "force_full"

        run_id = await self.store.start_run(
            clinic_id,
            vendor_type,
            strategy=strategy,
            trigger=trigger,
            started_at=now,
        )
        if run_id is None:
            logger.info("Sync already running for clinic=%s vendor=%s; skipping", clinic_id, vendor_type)
            return ClinicSyncOutcome(
                clinic_id=clinic_id,
                vendor_type=vendor_type,
                success=True,
                skipped=True,
                strategy=strategy,
                error="sync already running",
            )

        clinic = await self.store.get_clinic(clinic_id) or ClinicSettings(id=clinic_id, name="")
        stats = SyncStats()
        heartbeat = self._heartbeat(run_id)
        token = sync_run_var.set(str(run_id))
        try:
            cursor = None
            if strategy == "incremental":
                incremental = await run_incremental_sync(
                    store=self.store,
                    adapter=adapter,
                    clinic=clinic,
                    vendor_type=vendor_type,
                    stats=stats,
                    run_started_at=now,
                    force_full=force,
                    heartbeat=heartbeat,
                )
                cursor = incremental.cursor
            else:
                batch = await run_batch_sync(
                    store=self.store,
                    adapter=adapter,
                    clinic=clinic,
                    vendor_type=vendor_type,
                    stats=stats,
                    run_id=run_id,
                    now=now,
                    page_size=settings.batch_page_size,
                    max_pages=settings.batch_max_pages_per_run,
                    full_refresh_hours=settings.batch_full_refresh_hours,
                    force_full=force,
                    heartbeat=heartbeat,
                )
                if isinstance(batch.state, Exhausted) and batch.pages_fetched:
                    logger.info("Batch pass complete for clinic=%s vendor=%s", clinic_id, vendor_type)

            await heartbeat()
            derivation = await derive_cases(self.store, clinic, vendor_type, today=now.date())
        except asyncio.CancelledError:
            await self.store.rollback()
            await self.store.finish_run(run_id, self._failed_result(stats, "cancelled"))
            raise
        except Exception as exc:
            if getattr(exc, "fatal", False):
                raise
            return await self._fail(credential, run_id, strategy, stats, exc)
        finally:
            sync_run_var.reset(token)

        for issue in derivation.issues:
            stats.add_issue(issue)
        finalized = await self.store.finish_run(
            run_id,
            RunResult(
                status="completed",
                completed_at=self.clock(),
                patients_processed=stats.patients_processed,
                appointments_processed=stats.appointments_processed,
                cases_created=derivation.cases_created,
                cases_updated=derivation.cases_updated,
                issues=stats.issues,
                sync_cursor=cursor,
            ),
        )
        if not finalized:
            return await self._fail(
                credential,
                run_id,
                strategy,
                stats,
                RunLockLost(f"SyncRun {run_id} was failed as abandoned before it completed"),
            )
        await self.store.reset_credential_failures(credential.id)
        if credential.force_full_requested:
            await self.store.update_credential(clinic_id, vendor_type, force_full_requested=False)
        self._notify(clinic_id, derivation)
        logger.info(
            "Sync completed clinic=%s vendor=%s strategy=%s patients=%d appointments=%d "
            "cases_created=%d cases_updated=%d issues=%d",
            clinic_id,
            vendor_type,
            strategy,
            stats.patients_processed,
            stats.appointments_processed,
            derivation.cases_created,
            derivation.cases_updated,
            len(stats.issues),
        )
        return ClinicSyncOutcome(
            clinic_id=clinic_id,
            vendor_type=vendor_type,
            success=True,
            run_id=run_id,
            strategy=strategy,
            patients_processed=stats.patients_processed,
            appointments_processed=stats.appointments_processed,
            cases_created=derivation.cases_created,
            cases_updated=derivation.cases_updated,
            issues=len(stats.issues),
        )

    def _heartbeat(self, run_id: int) -> Heartbeat:
        async def _beat() -> None:
            if not await self.store.touch_run(run_id, self.clock()):
                raise RunLockLost(f"SyncRun {run_id} was failed as abandoned by another worker")

        return _beat

    def _failed_result(self, stats: SyncStats, message: str) -> RunResult:
        return RunResult(
            status="failed",
            completed_at=self.clock(),
            patients_processed=stats.patients_processed,
            appointments_processed=stats.appointments_processed,
            issues=stats.issues,
            error_message=message[:1000],
        )

    async def _fail(
        self,
        credential: CredentialRef,
        run_id: int,
        strategy: str,
        stats: SyncStats,
        exc: Exception,
    ) -> ClinicSyncOutcome:
        message = str(exc) or exc.__class__.__name__
        logger.error(
            "Sync failed clinic=%s vendor=%s run=%s: %s",
            credential.clinic_id,
            credential.vendor_type,
            run_id,
            message,
        )
        await self.store.rollback()
        if isinstance(exc, CredentialError):
            deactivated = await self.store.record_credential_failure(
                credential.id,
                message,
                threshold=settings.credential_failure_threshold,
                at=self.clock(),
            )
            if deactivated:
                logger.warning(
                    "Deactivated credential for clinic=%s vendor=%s after %d consecutive failures",
                    credential.clinic_id,
                    credential.vendor_type,
                    settings.credential_failure_threshold,
                )
        if not await self.store.finish_run(run_id, self._failed_result(stats, message)):
            logger.warning("SyncRun %s had already been failed as abandoned", run_id)
        return ClinicSyncOutcome(
            clinic_id=credential.clinic_id,
            vendor_type=credential.vendor_type,
            success=False,
            run_id=run_id,
            strategy=strategy,
            patients_processed=stats.patients_processed,
            appointments_processed=stats.appointments_processed,
            issues=len(stats.issues),
            error=message,
        )

    def _notify(self, clinic_id: int, derivation: DerivationResult) -> None:
        if not derivation.alert_patient_ids:
            return
        task = asyncio.create_task(
            self._send_notification(clinic_id, list(derivation.alert_patient_ids)),
            name=f"notify-clinic-{clinic_id}",
        )
        self._notification_tasks.add(task)
        task.add_done_callback(self._notification_tasks.discard)

    async def _send_notification(self, clinic_id: int, patient_ids: Sequence[int]) -> None:
        try:
            await self.notifier.notify(clinic_id, patient_ids)
        except Exception:
            logger.exception("Notification trigger failed for clinic=%s", clinic_id)

    async def wait_for_notifications(self) -> None:
        """Wait for in-flight notification tasks (shutdown and tests)."""
        if self._notification_tasks:
            await asyncio.gather(*self._notification_tasks, return_exceptions=True)

    # Manual controls

    async def pause(self, clinic_id: int, vendor_type: str) -> CredentialRef | None:
        logger.info("Pausing sync for clinic=%s vendor=%s", clinic_id, vendor_type)
        return await self.store.update_credential(
            clinic_id,
            vendor_type,
            is_active=False,
            deactivated_reason="paused",
        )

    async def resume(self, clinic_id: int, vendor_type: str) -> CredentialRef | None:
        logger.info("Resuming sync for clinic=%s vendor=%s", clinic_id, vendor_type)
        return await self.store.update_credential(
            clinic_id,
            vendor_type,
            is_active=True,
            deactivated_reason=None,
            consecutive_failures=0,
            last_error=None,
        )

    async def request_full_sync(self, clinic_id: int, vendor_type: str) -> CredentialRef | None:
        logger.info("Full sync requested for clinic=%s vendor=%s", clinic_id, vendor_type)
        return await self.store.update_credential(
            clinic_id,
            vendor_type,
            force_full_requested=True,
        )
