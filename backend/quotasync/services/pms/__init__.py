"""PMS vendor adapters."""

from quotasync.services.pms.base import (
    Capability,
    PagedPMSAdapter,
    PMSAdapter,
    PMSConnectionConfig,
    SchemeType,
    classify_scheme_text,
)
from quotasync.services.pms.factory import (
    create_pms_adapter,
    normalize_vendor_type,
    supported_vendor_types,
    validate_api_key_format,
)

__all__ = [
    "Capability",
    "PMSAdapter",
    "PagedPMSAdapter",
    "PMSConnectionConfig",
    "SchemeType",
    "classify_scheme_text",
    "create_pms_adapter",
    "normalize_vendor_type",
    "supported_vendor_types",
    "validate_api_key_format",
]
