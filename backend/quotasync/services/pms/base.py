"""Uniform contract shared by PMS vendor adapters.

Adapters come in two families, distinguished by declared capabilities:

- cursor-capable vendors (``MODIFIED_SINCE``) can list patients and
  appointments changed since a timestamp.
- enumeration-only vendors (``PAGED_LISTING``) can only walk the full patient
  list page by page and report a total count.

The sync engine picks a strategy from ``adapter.capabilities`` and never calls
a method the adapter did not declare.
"""

from __future__ import annotations

import asyncio
import logging
import re
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Protocol

import requests

from quotasync.exceptions import (
    CredentialError,
    PMSRequestError,
    RecordValidationError,
    TransientNetworkError,
)
from quotasync.schemas.pms import RemoteAppointment, RemotePatient

logger = logging.getLogger("quotasync.pms")

USER_AGENT = "QuotaSync/0.1"
COMPLETED_STATUS = "completed"


class Capability(str, Enum):
    MODIFIED_SINCE = "modified_since"
    PAGED_LISTING = "paged_listing"


class SchemeType(str, Enum):
    EPC = "EPC"
    WC = "WC"
    UNKNOWN = "UNKNOWN"


@dataclass(frozen=True)
class PMSConnectionConfig:
    """Resolved runtime configuration for one vendor connection."""

    vendor_type: str
    api_key: str
    base_url: str
    timeout_seconds: float = 30.0
    call_timeout_seconds: float = 120.0
    retry_attempts: int = 3
    retry_base_delay_seconds: float = 1.0
    retry_max_delay_seconds: float = 30.0
    max_pages: int = 200
    verify_ssl: bool = True


class PMSAdapter(Protocol):
    """Capabilities every vendor adapter provides."""

    vendor_type: str
    capabilities: frozenset[Capability]
    # Records dropped during normalization since the adapter was built
    rejected: list[RecordValidationError]

    async def test_connection(self) -> bool:
        """Return True when the credential is accepted by the vendor."""

    async def get_patients(self, since: datetime | None = None) -> list[RemotePatient]:
        """List patients, optionally only those modified since ``since``."""

    async def get_appointments(
        self,
        patient_id: str,
        since: datetime | None = None,
    ) -> list[RemoteAppointment]:
        """List one patient's appointments, optionally modified since ``since``."""

    def classify_scheme(
        self,
        patient: RemotePatient,
        appointments: Iterable[RemoteAppointment] = (),
    ) -> SchemeType:
        """Classify the patient's funding scheme from vendor free text."""

    def is_completed_appointment(self, appointment: RemoteAppointment) -> bool:
        """Return True when the appointment counts as an attended session."""


class PagedPMSAdapter(PMSAdapter, Protocol):
    """Additional listing methods of enumeration-only vendors."""

    async def get_total_patient_count(self) -> int:
        """Total number of patients the vendor will enumerate."""

    async def get_patients_page(self, page: int, page_size: int) -> list[RemotePatient]:
        """Fetch one 1-based page of patients."""


EPC_KEYWORDS = ("enhanced primary care", "medicare", "epc")
WC_KEYWORDS = ("workers comp", "workcover", "work cover", "work injury", "wc")

# Short keywords only match as whole words ("wc" must not match "gwcare").
_SHORT_KEYWORD_MAX = 3


def _contains_keyword(text: str, keyword: str) -> bool:
    if len(keyword) <= _SHORT_KEYWORD_MAX:
        return re.search(rf"\b{re.escape(keyword)}\b", text) is not None
    return keyword in text


def classify_scheme_text(texts: Iterable[str | None]) -> SchemeType:
    """Classify free text into a funding scheme; EPC wins over WC."""
    normalized = [text.lower() for text in texts if text]
    for text in normalized:
        if any(_contains_keyword(text, keyword) for keyword in EPC_KEYWORDS):
            return SchemeType.EPC
    for text in normalized:
        if any(_contains_keyword(text, keyword) for keyword in WC_KEYWORDS):
            return SchemeType.WC
    return SchemeType.UNKNOWN


def classify_from_records(
    patient: RemotePatient,
    appointments: Iterable[RemoteAppointment] = (),
) -> SchemeType:
    texts: list[str | None] = list(patient.scheme_hints)
    texts.extend(appointment.type_name for appointment in appointments)
    return classify_scheme_text(texts)


def map_appointment_status(raw: Any) -> str:
    """Normalize vendor status text to completed|cancelled|dna|scheduled."""
    status = str(raw or "").strip().lower()
    if "completed" in status or "attended" in status or "finished" in status:
        if "not attend" not in status:
            return COMPLETED_STATUS
    if "cancel" in status:
        return "cancelled"
    if (
        status == "dna"
        or "did not attend" in status
        or "did not arrive" in status
        or "no show" in status
    ):
        return "dna"
    return "scheduled"


def _parse_retry_after(value: str | None) -> float | None:
    if not value:
        return None
    try:
        return max(0.0, float(value.strip()))
    except ValueError:
        return None


async def http_get_json(
    *,
    config: PMSConnectionConfig,
    url: str,
    params: dict[str, str] | None = None,
    headers: dict[str, str] | None = None,
    auth: tuple[str, str] | None = None,
) -> dict[str, Any]:
    """GET a JSON object from a vendor API with timeouts and bounded retries.

    401/403 raise ``CredentialError``; timeouts, connection failures, 429 and
    5xx raise ``TransientNetworkError`` and are retried with exponential
    backoff; anything else non-2xx raises ``PMSRequestError``.
    """
    request_headers = {"Accept": "application/json", "User-Agent": USER_AGENT}
    request_headers.update(headers or {})

    def _request() -> dict[str, Any]:
        try:
            response = requests.get(
                url,
                headers=request_headers,
                params=params,
                auth=auth,
                timeout=config.timeout_seconds,
                verify=config.verify_ssl,
            )
        except requests.Timeout as exc:
            raise TransientNetworkError(f"{config.vendor_type} request timed out for {url}") from exc
        except requests.RequestException as exc:
            raise TransientNetworkError(
                f"{config.vendor_type} request failed for {url}: {exc}"
            ) from exc

        status_code = response.status_code
        if status_code in (401, 403):
            raise CredentialError(
                f"{config.vendor_type} rejected credentials (HTTP {status_code})"
            )
        if status_code == 429 or status_code >= 500:
            raise TransientNetworkError(
                f"{config.vendor_type} returned HTTP {status_code} for {url}",
                retry_after=_parse_retry_after(response.headers.get("Retry-After")),
            )
        if status_code >= 400:
            snippet = response.text.strip().replace("\n", " ")[:240]
            raise PMSRequestError(
                f"{config.vendor_type} returned HTTP {status_code} for {url}: {snippet}",
                status_code=status_code,
            )

        try:
            payload = response.json()
        except ValueError as exc:
            raise PMSRequestError(f"{config.vendor_type} response for {url} is not valid JSON") from exc

        if not isinstance(payload, dict):
            raise PMSRequestError(f"{config.vendor_type} response for {url} is not a JSON object")
        return payload

    async def _with_retries() -> dict[str, Any]:
        total_attempts = max(1, config.retry_attempts)
        for attempt in range(1, total_attempts + 1):
            try:
                return await asyncio.to_thread(_request)
            except TransientNetworkError as exc:
                if attempt >= total_attempts:
                    raise
                delay_seconds = min(
                    config.retry_base_delay_seconds * (2 ** (attempt - 1)),
                    config.retry_max_delay_seconds,
                )
                if exc.retry_after is not None:
                    delay_seconds = min(
                        max(delay_seconds, exc.retry_after),
                        config.retry_max_delay_seconds,
                    )
                logger.warning(
                    "%s request attempt %d/%d failed (%s). Retrying in %.1fs.",
                    config.vendor_type,
                    attempt,
                    total_attempts,
                    exc,
                    delay_seconds,
                )
                await asyncio.sleep(delay_seconds)
        raise TransientNetworkError(f"{config.vendor_type} request to {url} was not attempted")

    try:
        return await asyncio.wait_for(_with_retries(), timeout=config.call_timeout_seconds)
    except TimeoutError as exc:
        raise TransientNetworkError(
            f"{config.vendor_type} call to {url} exceeded {config.call_timeout_seconds}s"
        ) from exc


def link_id(resource: Any) -> str | None:
    """Extract the trailing id from a ``{"links": {"self": ".../123"}}`` reference."""
    if not isinstance(resource, dict):
        return None
    links = resource.get("links")
    if not isinstance(links, dict):
        return None
    self_link = links.get("self")
    if not isinstance(self_link, str) or not self_link.strip():
        return None
    return self_link.rstrip("/").rsplit("/", 1)[-1] or None
