"""Sync strategies and orchestration."""

from quotasync.services.sync.orchestrator import ClinicSyncOutcome, SyncOrchestrator

__all__ = ["ClinicSyncOutcome", "SyncOrchestrator"]
