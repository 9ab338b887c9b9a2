"""Adapter registry keyed by vendor type."""

from __future__ import annotations

from collections.abc import Callable

from quotasync.config import settings
from quotasync.exceptions import UnsupportedVendorError
from quotasync.services.pms import cliniko, halaxy, nookal
from quotasync.services.pms.base import PMSAdapter, PMSConnectionConfig

AdapterFactory = Callable[[PMSConnectionConfig], PMSAdapter]

_ADAPTER_REGISTRY: dict[str, AdapterFactory] = {
    "cliniko": cliniko.ClinikoAdapter,
    "halaxy": halaxy.HalaxyAdapter,
    "nookal": nookal.NookalAdapter,
}

_DEFAULT_BASE_URLS: dict[str, Callable[[str], str]] = {
    "cliniko": cliniko.base_url_for_key,
    "halaxy": lambda _key: halaxy.DEFAULT_BASE_URL,
    "nookal": lambda _key: nookal.DEFAULT_BASE_URL,
}


def supported_vendor_types() -> list[str]:
    return sorted(_ADAPTER_REGISTRY)


def normalize_vendor_type(vendor_type: str) -> str:
    return (vendor_type or "").strip().lower()


def validate_api_key_format(vendor_type: str, api_key: str) -> bool:
    """Cheap format check before a credential is stored or used."""
    slug = normalize_vendor_type(vendor_type)
    if slug not in _ADAPTER_REGISTRY:
        return False
    key = (api_key or "").strip()
    if not key:
        return False
    if slug == "cliniko":
        return cliniko.shard_from_api_key(key) is not None
    return True


def build_connection_config(
    vendor_type: str,
    api_key: str,
    base_url: str | None = None,
) -> PMSConnectionConfig:
    slug = normalize_vendor_type(vendor_type)
    if slug not in _ADAPTER_REGISTRY:
        raise UnsupportedVendorError(f"Unsupported PMS type: {vendor_type}")
    return PMSConnectionConfig(
        vendor_type=slug,
        api_key=api_key,
        base_url=(base_url or _DEFAULT_BASE_URLS[slug](api_key)).rstrip("/"),
        timeout_seconds=settings.pms_request_timeout_seconds,
        call_timeout_seconds=settings.pms_call_timeout_seconds,
        retry_attempts=settings.pms_retry_attempts,
        retry_base_delay_seconds=settings.pms_retry_base_delay_seconds,
        retry_max_delay_seconds=settings.pms_retry_max_delay_seconds,
        max_pages=settings.pms_max_pages_per_listing,
    )


def create_pms_adapter(
    vendor_type: str,
    api_key: str,
    base_url: str | None = None,
) -> PMSAdapter:
    """Build the adapter registered for ``vendor_type``."""
    config = build_connection_config(vendor_type, api_key, base_url)
    return _ADAPTER_REGISTRY[config.vendor_type](config)
