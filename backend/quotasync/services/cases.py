"""Case derivation: turn per-patient quota state into a clinic-facing case.

Every derivation recomputes quota, sessions and attribution from the stored
appointments. Status and priority come from ``classify_case``; cases a user
moved to ``pending`` or ``archived`` keep that status until a user reactivates
them.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import UTC, date, datetime

from quotasync.config import settings
from quotasync.models import OVERRIDE_STATUSES, Case, Patient
from quotasync.services.quota import QuotaResult, compute_patient_quota, resolve_active_year
from quotasync.services.store import ClinicSettings, SyncStore

logger = logging.getLogger("quotasync.cases")

ALERT_STATUSES = frozenset({"critical", "warning"})
OVERRIDE_ALERTS = {
    "pending": "Case moved to pending - automatic alerts paused",
    "archived": "Case archived",
}
DEFAULT_OVERRIDE_REASONS = {
    "pending": "Moved to pending",
    "archived": "Case closed",
    "active": "Moved to active",
}


@dataclass(frozen=True)
class CaseClassification:
    status: str
    priority: str
    alert_message: str | None
    is_alert_active: bool


@dataclass
class DerivationResult:
    cases_created: int = 0
    cases_updated: int = 0
    alert_patient_ids: list[int] = field(default_factory=list)
    issues: list[str] = field(default_factory=list)


def classify_case(
    scheme_type: str,
    sessions_remaining: int,
    *,
    override_status: str | None = None,
) -> CaseClassification:
    """Map remaining sessions to status/priority; the first matching rule wins."""
    if override_status in OVERRIDE_STATUSES:
        return CaseClassification(
            status=override_status,
            priority="low",
            alert_message=OVERRIDE_ALERTS[override_status],
            is_alert_active=False,
        )
    if sessions_remaining <= 0:
        return CaseClassification(
            status="critical",
            priority="urgent",
            alert_message=f"{scheme_type} quota exhausted - renewal needed immediately",
            is_alert_active=True,
        )
    if sessions_remaining <= 2:
        return CaseClassification(
            status="warning",
            priority="high",
            alert_message=f"{scheme_type} referral expires soon - {sessions_remaining} sessions left",
            is_alert_active=True,
        )
    if sessions_remaining <= 3:
        return CaseClassification(
            status="warning",
            priority="normal",
            alert_message=f"{scheme_type} sessions running low - {sessions_remaining} sessions left",
            is_alert_active=True,
        )
    return CaseClassification(
        status="active",
        priority="low",
        alert_message=None,
        is_alert_active=False,
    )


def _apply_quota(case: Case, quota: QuotaResult, *, override_status: str | None) -> CaseClassification:
    classification = classify_case(
        quota.scheme_type,
        quota.sessions_remaining,
        override_status=override_status,
    )
    case.scheme_type = quota.scheme_type
    case.quota = quota.quota
    case.sessions_used = quota.sessions_used
    case.sessions_remaining = quota.sessions_remaining
    case.quota_degraded = quota.degraded
    case.status = classification.status
    case.priority = classification.priority
    case.alert_message = classification.alert_message
    case.is_alert_active = classification.is_alert_active
    return classification


async def derive_case_for_patient(
    store: SyncStore,
    clinic: ClinicSettings,
    vendor_type: str,
    patient: Patient,
    *,
    active_year: int,
) -> tuple[Case, bool, bool]:
    """Create or refresh one case. Returns (case, created, needs_alert)."""
    case = await store.get_case(clinic.id, patient.id, vendor_type)
    created = case is None
    if case is None:
        case = Case(
            clinic_id=clinic.id,
            patient_id=patient.id,
            vendor_type=vendor_type,
            status="active",
            priority="low",
            quota_override=None,
            is_alert_active=False,
        )
    previous = (case.status, case.priority)

    quota = await compute_patient_quota(
        store,
        patient,
        epc_tags=clinic.epc_tags,
        wc_tags=clinic.wc_tags,
        active_year=active_year,
        quota_override=case.quota_override,
    )
    override_status = case.status if case.status in OVERRIDE_STATUSES else None
    classification = _apply_quota(case, quota, override_status=override_status)

    appointments = await store.list_appointments(patient.id)
    latest = appointments[0] if appointments else None
    case.case_number = f"CASE-{patient.vendor_patient_id}"
    case.case_title = f"{patient.full_name} - {quota.scheme_type}"
    case.physio_name = (
        (latest.practitioner_name if latest else None)
        or patient.physio_name
        or settings.default_practitioner_name
    )
    case.location_name = (
        (latest.location_name if latest else None)
        or clinic.default_location
        or settings.default_location_name
    )
    case.appointment_type_name = (latest.type_tag if latest else None) or quota.scheme_type
    case.last_visit_date = _last_visit(appointments)

    await store.save_case(case)
    await store.update_patient_quota(
        patient,
        quota=quota.quota,
        sessions_used=quota.sessions_used,
    )

    needs_alert = classification.status in ALERT_STATUSES and (
        created or previous != (classification.status, classification.priority)
    )
    return case, created, needs_alert


def _last_visit(appointments) -> date | None:
    completed = [a.appointment_date for a in appointments if a.status == "completed"]
    return max(completed) if completed else None


async def derive_cases(
    store: SyncStore,
    clinic: ClinicSettings,
    vendor_type: str,
    *,
    today: date | None = None,
) -> DerivationResult:
    """Derive cases for every patient of the clinic+vendor that has appointments."""
    result = DerivationResult()
    active_year = await resolve_active_year(store, clinic.id, today)
    patients = await store.list_patients_with_appointments(clinic.id, vendor_type)
    logger.info(
        "Deriving cases for clinic=%s vendor=%s patients=%d active_year=%d",
        clinic.id,
        vendor_type,
        len(patients),
        active_year,
    )

    for patient in patients:
        try:
            _case, created, needs_alert = await derive_case_for_patient(
                store,
                clinic,
                vendor_type,
                patient,
                active_year=active_year,
            )
        except Exception as exc:
            if getattr(exc, "fatal", False):
                raise
            logger.warning("Case derivation failed for patient=%s: %s", patient.id, exc)
            result.issues.append(f"Error deriving case for patient {patient.id}: {exc}")
            continue
        if created:
            result.cases_created += 1
        else:
            result.cases_updated += 1
        if needs_alert:
            result.alert_patient_ids.append(patient.id)

    await store.commit()
    return result


async def set_case_override(
    store: SyncStore,
    case: Case,
    status: str,
    *,
    reason: str | None = None,
    changed_by: str | None = None,
    now: datetime | None = None,
) -> Case:
    """Pin a case to ``pending`` or ``archived``; re-derivation will not touch it."""
    if status not in OVERRIDE_STATUSES:
        raise ValueError(f"Cannot pin a case to status {status!r}")
    classification = classify_case(case.scheme_type, case.sessions_remaining, override_status=status)
    case.status = classification.status
    case.priority = classification.priority
    case.alert_message = classification.alert_message
    case.is_alert_active = classification.is_alert_active
    _record_change(case, reason or DEFAULT_OVERRIDE_REASONS[status], changed_by, now)
    await store.save_case(case)
    await store.commit()
    return case


async def reactivate_case(
    store: SyncStore,
    case: Case,
    *,
    reason: str | None = None,
    changed_by: str | None = None,
    now: datetime | None = None,
) -> Case:
    """Clear a manual override and re-derive the case from current quota state."""
    case.status = "active"
    _record_change(case, reason or DEFAULT_OVERRIDE_REASONS["active"], changed_by, now)
    return await _rederive(store, case)


async def set_quota_override(
    store: SyncStore,
    case: Case,
    quota: int,
    *,
    reason: str | None = None,
    changed_by: str | None = None,
    now: datetime | None = None,
) -> Case:
    """Replace the scheme quota for this case and re-derive it."""
    if quota < 0:
        raise ValueError("quota must not be negative")
    case.quota_override = quota
    case.status_change_reason = reason or "Quota updated"
    case.status_changed_by = changed_by
    return await _rederive(store, case)


def _record_change(case: Case, reason: str, changed_by: str | None, now: datetime | None) -> None:
    case.status_change_reason = reason
    case.status_changed_by = changed_by
    case.last_status_change = now or datetime.now(UTC)


async def _rederive(store: SyncStore, case: Case) -> Case:
    clinic = await store.get_clinic(case.clinic_id)
    patient = await store.get_patient_by_id(case.patient_id)
    if clinic is None or patient is None:
        await store.save_case(case)
        await store.commit()
        return case
    active_year = await resolve_active_year(store, clinic.id)
    refreshed, _created, _needs_alert = await derive_case_for_patient(
        store,
        clinic,
        case.vendor_type,
        patient,
        active_year=active_year,
    )
    await store.commit()
    return refreshed
