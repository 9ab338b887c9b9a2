"""Session quota calculation.

EPC referrals allow 5 sessions per calendar year, counted only within the
clinic's active year. WorkCover claims allow 8 sessions per claim, counted
across all years. A session is an appointment whose type tag matches one of
the clinic's tags for the scheme and whose status is a completion status.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from datetime import UTC, date, datetime
from typing import Any

from quotasync.exceptions import QuotaCalculationError

logger = logging.getLogger("quotasync.quota")

EPC_QUOTA = 5
# TODO: WorkCover claims older than three months are entitled to a single
# review session; needs the claim injury date, which no adapter reports yet.
WC_QUOTA = 8
COMPLETED_STATUSES = frozenset({"completed", "attended", "finished"})


@dataclass(frozen=True)
class QuotaResult:
    scheme_type: str
    quota: int
    sessions_used: int
    degraded: bool = False
    status_fallback: bool = False

    @property
    def sessions_remaining(self) -> int:
        return max(0, self.quota - self.sessions_used)


def default_quota(scheme_type: str) -> int:
    if scheme_type == "EPC":
        return EPC_QUOTA
    if scheme_type == "WC":
        return WC_QUOTA
    raise ValueError(f"No quota rule for scheme {scheme_type!r}")


def tags_for_scheme(scheme_type: str, *, epc_tags: Sequence[str], wc_tags: Sequence[str]) -> Sequence[str]:
    return epc_tags if scheme_type == "EPC" else wc_tags


def _tag_matches(type_tag: str | None, tags: Iterable[str]) -> bool:
    if not type_tag:
        return False
    normalized = type_tag.strip().lower()
    return any(normalized == tag.strip().lower() for tag in tags)


def _appointment_year(appointment: Any) -> int:
    try:
        return appointment.appointment_date.year
    except AttributeError as exc:
        raise QuotaCalculationError(
            f"Appointment {getattr(appointment, 'id', None)} has no usable date"
        ) from exc


def count_sessions(
    scheme_type: str,
    appointments: Iterable[Any],
    tags: Sequence[str],
    active_year: int,
    *,
    require_completed: bool = True,
) -> int:
    """Count appointments that consume the scheme's quota."""
    count = 0
    for appointment in appointments:
        if not _tag_matches(appointment.type_tag, tags):
            continue
        if require_completed and (appointment.status or "").lower() not in COMPLETED_STATUSES:
            continue
        if scheme_type == "EPC" and _appointment_year(appointment) != active_year:
            continue
        count += 1
    return count


def calculate_quota(
    scheme_type: str,
    appointments: Sequence[Any],
    tags: Sequence[str],
    active_year: int,
    *,
    quota_override: int | None = None,
) -> QuotaResult:
    """Pure quota computation over a patient's appointment history.

    When nothing matches with the completion filter, the count is repeated
    without it; the result records that the fallback was used.
    """
    quota = quota_override if quota_override is not None else default_quota(scheme_type)
    sessions_used = count_sessions(scheme_type, appointments, tags, active_year)
    status_fallback = False
    if sessions_used == 0:
        unfiltered = count_sessions(
            scheme_type,
            appointments,
            tags,
            active_year,
            require_completed=False,
        )
        if unfiltered:
            sessions_used = unfiltered
            status_fallback = True
    return QuotaResult(
        scheme_type=scheme_type,
        quota=quota,
        sessions_used=sessions_used,
        status_fallback=status_fallback,
    )


def determine_active_year(latest_completed: date | None, today: date | None = None) -> int:
    """Year of the clinic's latest completed appointment, else the current year."""
    if latest_completed is not None:
        return latest_completed.year
    return (today or datetime.now(UTC).date()).year


async def resolve_active_year(store, clinic_id: int, today: date | None = None) -> int:
    latest = await store.latest_completed_appointment_date(clinic_id)
    return determine_active_year(latest, today)


async def compute_patient_quota(
    store,
    patient,
    *,
    epc_tags: Sequence[str],
    wc_tags: Sequence[str],
    active_year: int,
    quota_override: int | None = None,
) -> QuotaResult:
    """Quota state for one stored patient.

    Counting failures (including ``QuotaCalculationError``) degrade to the raw
    appointment count; a scheme without a quota rule still raises.
    """
    scheme_type = patient.scheme_type
    quota = quota_override if quota_override is not None else default_quota(scheme_type)
    tags = tags_for_scheme(scheme_type, epc_tags=epc_tags, wc_tags=wc_tags)
    try:
        appointments = await store.list_appointments(patient.id)
        result = calculate_quota(
            scheme_type,
            appointments,
            tags,
            active_year,
            quota_override=quota,
        )
    except Exception as exc:
        if getattr(exc, "fatal", False):
            raise
        logger.warning(
            "Session count failed for patient=%s (%s); using raw appointment count",
            patient.id,
            exc,
        )
        raw_count = await store.count_appointments(patient.id)
        return QuotaResult(
            scheme_type=scheme_type,
            quota=quota,
            sessions_used=raw_count,
            degraded=True,
        )

    if result.status_fallback:
        logger.info(
            "No completed %s sessions for patient=%s; counted %d without status filter",
            scheme_type,
            patient.id,
            result.sessions_used,
        )
    return result
