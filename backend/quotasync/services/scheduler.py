"""Background scheduler that runs the sync engine on a fixed interval."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass

from quotasync.config import settings
from quotasync.database import get_db_context
from quotasync.services.store import SQLSyncStore
from quotasync.services.sync.orchestrator import ClinicSyncOutcome, SyncOrchestrator

logger = logging.getLogger("quotasync.scheduler")


@dataclass
class SchedulerCycleStats:
    """Telemetry emitted for one scheduler cycle."""

    clinics: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0

    @classmethod
    def from_outcomes(cls, outcomes: list[ClinicSyncOutcome]) -> "SchedulerCycleStats":
        stats = cls(clinics=len(outcomes))
        for outcome in outcomes:
            if outcome.skipped:
                stats.skipped += 1
            elif outcome.success:
                stats.succeeded += 1
            else:
                stats.failed += 1
        return stats


class SyncScheduler:
    """Polling scheduler that syncs every active clinic in the background."""

    def __init__(self) -> None:
        self._task: asyncio.Task[None] | None = None
        self._stop_event = asyncio.Event()

    async def start(self) -> None:
        """Start background scheduler loop if enabled."""
        if not settings.background_sync_enabled:
            logger.info("Sync scheduler disabled by configuration")
            return
        if self._task and not self._task.done():
            return
        self._stop_event = asyncio.Event()
        self._task = asyncio.create_task(
            self._run_loop(),
            name="pms-sync-scheduler",
        )
        logger.info(
            "Sync scheduler started (poll=%ss)",
            settings.background_sync_poll_interval_seconds,
        )

    async def stop(self) -> None:
        """Stop background scheduler loop."""
        self._stop_event.set()
        if self._task is None:
            return
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        finally:
            self._task = None
        logger.info("Sync scheduler stopped")

    async def run_once(self) -> SchedulerCycleStats:
        """Run one scheduler cycle (used by background loop and tests)."""
        if not settings.background_sync_enabled:
            return SchedulerCycleStats()

        async with get_db_context() as db:
            orchestrator = SyncOrchestrator(SQLSyncStore(db))
            outcomes = await orchestrator.run(trigger="scheduled")
            await orchestrator.wait_for_notifications()
        return SchedulerCycleStats.from_outcomes(outcomes)

    async def _run_loop(self) -> None:
        while not self._stop_event.is_set():
            started_at = asyncio.get_running_loop().time()
            try:
                stats = await self.run_once()
                if stats.clinics:
                    logger.info(
                        "Sync cycle: clinics=%s succeeded=%s failed=%s skipped=%s",
                        stats.clinics,
                        stats.succeeded,
                        stats.failed,
                        stats.skipped,
                    )
            except Exception:
                logger.exception("Sync scheduler cycle failed")

            elapsed = asyncio.get_running_loop().time() - started_at
            sleep_seconds = max(
                1,
                settings.background_sync_poll_interval_seconds - int(elapsed),
            )
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=sleep_seconds)
            except TimeoutError:
                continue


_scheduler_instance: SyncScheduler | None = None


def get_sync_scheduler() -> SyncScheduler:
    """Get singleton sync scheduler instance."""
    global _scheduler_instance
    if _scheduler_instance is None:
        _scheduler_instance = SyncScheduler()
    return _scheduler_instance
