"""
Pure compliance derivations.

Category status is a function of the newest document's expiration date and
today's date. Overall status, compliance score and risk level are a function
of the five category statuses and the active-conflict count. Nothing here
stores state: the reconciler calls refresh_vehicle() whenever a vehicle is
mutated or read.
"""

from __future__ import annotations

from datetime import date, datetime, timezone
from decimal import ROUND_HALF_UP, Decimal
from types import MappingProxyType
from typing import Mapping, Optional

from .models import (
    CategoryStatus,
    ComplianceCategory,
    ComplianceStatus,
    DocumentStatus,
    DocumentType,
    OverallStatus,
    RiskLevel,
    Urgency,
    VehicleRecord,
)


# ─── Constants ───────────────────────────────────────────────────────

CATEGORY_DOCUMENT_TYPES: Mapping[ComplianceCategory, DocumentType] = MappingProxyType({
    ComplianceCategory.REGISTRATION: DocumentType.REGISTRATION,
    ComplianceCategory.INSURANCE: DocumentType.INSURANCE,
    ComplianceCategory.INSPECTION: DocumentType.INSPECTION,
    ComplianceCategory.CDL: DocumentType.CDL,
    ComplianceCategory.MEDICAL: DocumentType.MEDICAL_CERTIFICATE,
})

DOCUMENT_CATEGORIES: Mapping[DocumentType, ComplianceCategory] = MappingProxyType(
    {document_type: category for category, document_type in CATEGORY_DOCUMENT_TYPES.items()}
)

STATUS_BASE_SCORE: Mapping[CategoryStatus, int] = MappingProxyType({
    CategoryStatus.CURRENT: 100,
    CategoryStatus.EXPIRES_SOON: 80,
    CategoryStatus.UNDER_REVIEW: 60,
    CategoryStatus.INVALID: 40,
    CategoryStatus.EXPIRED: 0,
})
MISSING_WITH_EVIDENCE_SCORE = 20

CURRENT_CONFIDENCE_THRESHOLD = 70
DEFAULT_EXPIRES_SOON_DAYS = 30

RISK_ORDER: Mapping[RiskLevel, int] = MappingProxyType({
    RiskLevel.CRITICAL: 0,
    RiskLevel.HIGH: 1,
    RiskLevel.MEDIUM: 2,
    RiskLevel.LOW: 3,
})


# ─── Primitives ──────────────────────────────────────────────────────


def round_half_up(value: float) -> int:
    return int(Decimal(str(value)).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def days_until(expiration: Optional[str], today: date) -> Optional[int]:
    """Calendar days from today to an ISO date; negative once passed, None if unparseable."""
    if not expiration:
        return None
    try:
        return (date.fromisoformat(expiration) - today).days
    except ValueError:
        return None


def urgency_for(days: int) -> Urgency:
    if days < 0:
        return Urgency.EXPIRED
    if days <= 7:
        return Urgency.CRITICAL
    if days <= 30:
        return Urgency.WARNING
    return Urgency.NORMAL


def category_status_for(
    days: Optional[int],
    confidence: float,
    expires_soon_days: int = DEFAULT_EXPIRES_SOON_DAYS,
) -> CategoryStatus:
    if days is None:
        if confidence > CURRENT_CONFIDENCE_THRESHOLD:
            return CategoryStatus.CURRENT
        return CategoryStatus.UNDER_REVIEW
    if days < 0:
        return CategoryStatus.EXPIRED
    if days <= expires_soon_days:
        return CategoryStatus.EXPIRES_SOON
    return CategoryStatus.CURRENT


# ─── Vehicle Derivations ─────────────────────────────────────────────


def refresh_supersession(vehicle: VehicleRecord, today: date) -> None:
    """Expired documents with a newer document of the same type become superseded."""
    for ids in vehicle.documents_by_type.values():
        for doc_id in ids[:-1]:
            document = vehicle.documents.get(doc_id)
            if document is None or document.status == DocumentStatus.SUPERSEDED:
                continue
            days = days_until(document.expiration_date, today)
            if days is not None and days < 0:
                document.status = DocumentStatus.SUPERSEDED


def refresh_category(
    vehicle: VehicleRecord,
    category: ComplianceCategory,
    today: date,
    expires_soon_days: int = DEFAULT_EXPIRES_SOON_DAYS,
) -> None:
    """Re-derive one category from its newest document. A category without documents is left as is."""
    documents = vehicle.documents_of_type(CATEGORY_DOCUMENT_TYPES[category])
    if not documents:
        return

    current = documents[-1]
    days = days_until(current.expiration_date, today)
    status = category_status_for(days, current.confidence, expires_soon_days)
    warnings = [
        conflict.description
        for conflict in vehicle.active_conflicts
        if not conflict.resolved and current.id in conflict.conflicting_documents
    ]

    entry = vehicle.compliance_status.category(category)
    changed = (
        entry.status != status
        or entry.current_document != current.id
        or entry.days_until_expiry != days
        or entry.warnings != warnings
    )
    entry.status = status
    entry.current_document = current.id
    entry.expiration_date = current.expiration_date
    entry.days_until_expiry = days
    entry.confidence = current.confidence
    entry.warnings = warnings
    if changed:
        entry.last_updated = datetime.now(timezone.utc)


def derive_overall(status: ComplianceStatus, active_conflicts: int) -> tuple[OverallStatus, RiskLevel]:
    """Overall status and the status-implied risk level."""
    statuses = [entry.status for _, entry in status.categories()]
    if CategoryStatus.EXPIRED in statuses or active_conflicts > 0:
        return OverallStatus.NON_COMPLIANT, RiskLevel.HIGH
    if CategoryStatus.EXPIRES_SOON in statuses:
        return OverallStatus.EXPIRES_SOON, RiskLevel.MEDIUM
    if CategoryStatus.MISSING in statuses or CategoryStatus.UNDER_REVIEW in statuses:
        return OverallStatus.REVIEW_NEEDED, RiskLevel.MEDIUM
    if all(s == CategoryStatus.CURRENT for s in statuses):
        return OverallStatus.COMPLIANT, RiskLevel.LOW
    return OverallStatus.INCOMPLETE, RiskLevel.MEDIUM


def compliance_score(status: ComplianceStatus) -> int:
    """Confidence-weighted mean of the five category base scores, 0-100."""
    total = 0.0
    categories = status.categories()
    for _, entry in categories:
        if entry.status == CategoryStatus.MISSING:
            base = MISSING_WITH_EVIDENCE_SCORE if entry.confidence > 0 else 0
        else:
            base = STATUS_BASE_SCORE[entry.status]
        total += base * entry.confidence / 100
    return max(0, min(100, round_half_up(total / len(categories))))


def risk_from_score(score: int) -> RiskLevel:
    if score >= 90:
        return RiskLevel.LOW
    if score >= 70:
        return RiskLevel.MEDIUM
    if score >= 40:
        return RiskLevel.HIGH
    return RiskLevel.CRITICAL


def recompute_derived(vehicle: VehicleRecord) -> None:
    active = sum(1 for conflict in vehicle.active_conflicts if not conflict.resolved)
    overall, risk = derive_overall(vehicle.compliance_status, active)
    vehicle.compliance_status.overall = overall
    vehicle.risk_level = risk
    vehicle.compliance_score = compliance_score(vehicle.compliance_status)
    # The score band overrides the status-implied risk.
    vehicle.risk_level = risk_from_score(vehicle.compliance_score)


def refresh_vehicle(
    vehicle: VehicleRecord,
    today: date,
    expires_soon_days: int = DEFAULT_EXPIRES_SOON_DAYS,
) -> None:
    """Bring a vehicle's time-dependent and derived fields up to date."""
    refresh_supersession(vehicle, today)
    for category in ComplianceCategory:
        refresh_category(vehicle, category, today, expires_soon_days)
    recompute_derived(vehicle)
