"""API routes for the sync service."""

from quotasync.api import cases, health, pms, sync

__all__ = [
    "cases",
    "health",
    "pms",
    "sync",
]
