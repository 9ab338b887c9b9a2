"""Incremental sync for vendors that can filter by modification time."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime

from quotasync.services.pms.base import PMSAdapter
from quotasync.services.store import ClinicSettings, SyncStore
from quotasync.services.sync.common import Heartbeat, PatientProcessor, SyncStats, drain_rejections

logger = logging.getLogger("quotasync.sync.incremental")


@dataclass
class IncrementalOutcome:
    since: datetime | None
    cursor: datetime


async def run_incremental_sync(
    *,
    store: SyncStore,
    adapter: PMSAdapter,
    clinic: ClinicSettings,
    vendor_type: str,
    stats: SyncStats,
    run_started_at: datetime,
    force_full: bool = False,
    heartbeat: Heartbeat | None = None,
) -> IncrementalOutcome:
    """Pull records modified since the last completed run.

    The returned cursor is the run's start time; the caller persists it only
    when the whole run succeeds, so a failed run is retried from the previous
    cursor.
    """
    since = None if force_full else await store.latest_cursor(clinic.id, vendor_type)
    logger.info(
        "Incremental sync clinic=%s vendor=%s since=%s",
        clinic.id,
        vendor_type,
        since.isoformat() if since else "beginning",
    )

    patients = await adapter.get_patients(since)
    drain_rejections(adapter, stats)

    processor = PatientProcessor(
        store=store,
        adapter=adapter,
        clinic=clinic,
        vendor_type=vendor_type,
        stats=stats,
        since=since,
        heartbeat=heartbeat,
    )
    await processor.process_all(patients)

    logger.info(
        "Incremental sync clinic=%s vendor=%s fetched=%d processed=%d skipped=%d appointments=%d",
        clinic.id,
        vendor_type,
        len(patients),
        stats.patients_processed,
        stats.patients_skipped,
        stats.appointments_processed,
    )
    return IncrementalOutcome(since=since, cursor=run_started_at)
