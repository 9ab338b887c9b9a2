"""Business logic services for the sync engine.

This package avoids eager imports to prevent circular import chains during
application startup.
"""

from importlib import import_module

__all__ = [
    # PMS adapters
    "create_pms_adapter",
    # Storage
    "SQLSyncStore",
    "InMemorySyncStore",
    # Sync
    "SyncOrchestrator",
    "SyncScheduler",
    # Credentials
    "CredentialVault",
]

_LAZY_IMPORTS = {
    "create_pms_adapter": ("quotasync.services.pms", "create_pms_adapter"),
    "SQLSyncStore": ("quotasync.services.store", "SQLSyncStore"),
    "InMemorySyncStore": ("quotasync.services.store", "InMemorySyncStore"),
    "SyncOrchestrator": ("quotasync.services.sync", "SyncOrchestrator"),
    "SyncScheduler": ("quotasync.services.scheduler", "SyncScheduler"),
    "CredentialVault": ("quotasync.services.credentials", "CredentialVault"),
}


def __getattr__(name: str):
    target = _LAZY_IMPORTS.get(name)
    if target is None:
        raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
    module_name, attr_name = target
    return getattr(import_module(module_name), attr_name)
