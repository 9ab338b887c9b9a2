"""Credential checks run before a clinic's PMS key is stored."""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass

from quotasync.exceptions import CredentialError, PMSRequestError, TransientNetworkError
from quotasync.services.credentials import CredentialVault
from quotasync.services.pms.base import PMSAdapter
from quotasync.services.pms.factory import (
    create_pms_adapter,
    normalize_vendor_type,
    supported_vendor_types,
    validate_api_key_format,
)
from quotasync.services.store import CredentialRef, SyncStore

logger = logging.getLogger("quotasync.pms.connection")

AdapterFactory = Callable[[str, str, str | None], PMSAdapter]


@dataclass(frozen=True)
class ConnectionCheck:
    ok: bool
    vendor_type: str
    message: str


async def check_pms_connection(
    vendor_type: str,
    api_key: str,
    base_url: str | None = None,
    *,
    adapter_factory: AdapterFactory = create_pms_adapter,
) -> ConnectionCheck:
    """Validate the key format, then make one authenticated call to the vendor.

    Vendor refusals and unreachable vendors come back as ``ok=False`` with a
    message for the operator; anything else propagates.
    """
    slug = normalize_vendor_type(vendor_type)
    if slug not in supported_vendor_types():
        return ConnectionCheck(False, slug, f"Unsupported PMS type: {vendor_type}")
    api_key = (api_key or "").strip()
    if not validate_api_key_format(slug, api_key):
        return ConnectionCheck(False, slug, f"Invalid API key format for {slug}")

    adapter = adapter_factory(slug, api_key, base_url)
    try:
        accepted = await adapter.test_connection()
    except CredentialError as exc:
        logger.info("Connection test rejected by %s: %s", slug, exc)
        return ConnectionCheck(False, slug, f"{slug} rejected the API key")
    except (TransientNetworkError, PMSRequestError) as exc:
        logger.warning("Connection test could not reach %s: %s", slug, exc)
        return ConnectionCheck(False, slug, f"Could not reach {slug}: {exc}")
    if not accepted:
        return ConnectionCheck(False, slug, f"{slug} rejected the API key")
    return ConnectionCheck(True, slug, f"Connected to {slug}")


async def store_pms_credential(
    store: SyncStore,
    vault: CredentialVault,
    *,
    clinic_id: int,
    vendor_type: str,
    api_key: str,
    base_url: str | None = None,
) -> CredentialRef:
    """Encrypt and upsert a key that already passed ``check_pms_connection``."""
    slug = normalize_vendor_type(vendor_type)
    credential = await store.save_credential(
        clinic_id,
        slug,
        vault.encrypt(api_key.strip()),
        base_url=base_url,
    )
    logger.info("Stored %s credential for clinic=%s", slug, clinic_id)
    return credential
