"""Shared API dependencies."""

import hmac
from typing import Annotated

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.ext.asyncio import AsyncSession

from quotasync.config import settings
from quotasync.database import get_db
from quotasync.services.credentials import CredentialVault, get_credential_vault
from quotasync.services.pms import create_pms_adapter
from quotasync.services.pms.connection import AdapterFactory
from quotasync.services.store import SQLSyncStore, SyncStore
from quotasync.services.sync import SyncOrchestrator

security = HTTPBearer(auto_error=False)


async def require_cron_secret(
    credentials: Annotated[HTTPAuthorizationCredentials | None, Depends(security)],
) -> None:
    """Require ``Authorization: Bearer <SYNC_CRON_SECRET>``."""
    unauthorized = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Invalid or missing sync secret",
        headers={"WWW-Authenticate": "Bearer"},
    )
    expected = settings.sync_cron_secret
    if not expected or credentials is None:
        raise unauthorized
    if not hmac.compare_digest(credentials.credentials.encode(), expected.encode()):
        raise unauthorized


def get_sync_store(
    db: AsyncSession = Depends(get_db),
) -> SyncStore:
    return SQLSyncStore(db)


def get_orchestrator(
    store: SyncStore = Depends(get_sync_store),
) -> SyncOrchestrator:
    return SyncOrchestrator(store)


def get_vault() -> CredentialVault:
    return get_credential_vault()


def get_adapter_factory() -> AdapterFactory:
    return create_pms_adapter
