"""
Pydantic models for fleet compliance data.

Two families live here:
  - The inbound boundary schema (RawExtraction). Every field is optional and
    before-validators coerce junk into safe defaults, so ad hoc probing of
    nested OCR output never happens past this point.
  - The reconciled domain (VehicleRecord, DocumentRecord, Conflict, ...),
    which is what the engine mutates and what hosts serialize.
"""

from __future__ import annotations

import re
from datetime import date, datetime, timezone
from enum import Enum
from typing import Any, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, computed_field, field_validator

RAW_EXTRACTION_SCHEMA_VERSION = 1


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ─── Enumerations ────────────────────────────────────────────────────


class DocumentType(str, Enum):
    """Kind of uploaded document."""

    REGISTRATION = "registration"
    INSURANCE = "insurance"
    CDL = "cdl"
    MEDICAL_CERTIFICATE = "medical_certificate"
    INSPECTION = "inspection"
    PERMIT = "permit"
    OTHER = "other"


class DocumentStatus(str, Enum):
    ACTIVE = "active"
    SUPERSEDED = "superseded"


class ComplianceCategory(str, Enum):
    """The five independently tracked compliance categories."""

    REGISTRATION = "registration"
    INSURANCE = "insurance"
    INSPECTION = "inspection"
    CDL = "cdl"
    MEDICAL = "medical"


class CategoryStatus(str, Enum):
    """Status of one compliance category.

    INVALID is never derived by the engine; it exists because the score table
    prices it and imported state may carry it.
    """

    CURRENT = "current"
    EXPIRES_SOON = "expires_soon"
    EXPIRED = "expired"
    MISSING = "missing"
    UNDER_REVIEW = "under_review"
    INVALID = "invalid"


class OverallStatus(str, Enum):
    COMPLIANT = "compliant"
    NON_COMPLIANT = "non_compliant"
    EXPIRES_SOON = "expires_soon"
    REVIEW_NEEDED = "review_needed"
    INCOMPLETE = "incomplete"


class RiskLevel(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class ConflictType(str, Enum):
    DATE_MISMATCH = "date_mismatch"
    DATA_INCONSISTENCY = "data_inconsistency"


class ConflictSeverity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class Urgency(str, Enum):
    """Expiration urgency tier."""

    EXPIRED = "expired"
    CRITICAL = "critical"
    WARNING = "warning"
    NORMAL = "normal"


class FieldKind(str, Enum):
    VIN = "vin"
    DATE = "date"
    LICENSE_PLATE = "license_plate"
    POLICY_NUMBER = "policy_number"
    STATE = "state"
    NUMBER = "number"
    TEXT = "text"


class FieldStatus(str, Enum):
    """Trust band of a single validated field."""

    EXCELLENT = "excellent"
    GOOD = "good"
    ACCEPTABLE = "acceptable"
    QUESTIONABLE = "questionable"


class ValidationStatus(str, Enum):
    SUCCESS = "success"
    SUCCESS_WITH_WARNINGS = "success_with_warnings"
    NEEDS_REVIEW = "needs_review"


class ProcessingRecommendation(str, Enum):
    AUTO_APPROVE = "auto_approve"
    REVIEW_RECOMMENDED = "review_recommended"
    MANUAL_REVIEW_REQUIRED = "manual_review_required"


# ─── Boundary Coercion Helpers ──────────────────────────────────────


def _as_dict(value: Any) -> dict:
    return dict(value) if isinstance(value, dict) else {}


def _as_list(value: Any) -> list:
    return list(value) if isinstance(value, (list, tuple)) else []


def unwrap_field_value(value: Any) -> Any:
    """Field objects like `{"value": "Honda", "confidence": 88}` carry their payload under "value"."""
    if isinstance(value, dict) and "value" in value:
        return value["value"]
    return value


def _as_optional_str(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, (date, datetime)):
        return value.isoformat()
    text = str(value).strip()
    return text or None


def coerce_confidence(value: Any) -> Optional[float]:
    """Read a 0-100 confidence from numbers or strings like '85%'; None if unusable."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        number = float(value)
    else:
        match = re.search(r"-?\d+(?:\.\d+)?", str(value))
        if not match:
            return None
        number = float(match.group())
    if number != number:  # NaN
        return None
    return max(0.0, min(100.0, number))


# ─── Inbound Extraction Schema ──────────────────────────────────────


class ExtractedField(BaseModel):
    """One `{field, value}` pair from an upstream flexible validation pass."""

    model_config = ConfigDict(extra="allow")

    field: str
    value: Any = None

    @field_validator("field", mode="before")
    @classmethod
    def _field_name(cls, value: Any) -> str:
        return "" if value is None else str(value)

    @field_validator("value", mode="before")
    @classmethod
    def _value(cls, value: Any) -> Any:
        return unwrap_field_value(value)


class FlexibleValidationPayload(BaseModel):
    """Upstream validation block attached to an extraction, if any."""

    model_config = ConfigDict(extra="allow")

    extracted_fields: list[ExtractedField] = Field(default_factory=list)
    confidence_score: Optional[float] = None

    @field_validator("extracted_fields", mode="before")
    @classmethod
    def _fields(cls, value: Any) -> list:
        return [item for item in _as_list(value) if isinstance(item, dict) and "field" in item]

    @field_validator("confidence_score", mode="before")
    @classmethod
    def _score(cls, value: Any) -> Optional[float]:
        return coerce_confidence(value)


class RawExtraction(BaseModel):
    """What an OCR/LLM collaborator hands us for ONE document.

    Every field is optional. Accepts both the collaborator's camelCase keys
    and snake_case names. Unknown top-level keys are kept (extra="allow") but
    never read by the engine.
    """

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    schema_version: int = Field(default=RAW_EXTRACTION_SCHEMA_VERSION, alias="schemaVersion")
    document_type: Optional[str] = Field(default=None, alias="documentType")
    extracted_data: dict[str, Any] = Field(default_factory=dict, alias="extractedData")
    confidence: Optional[float] = None
    flexible_validation: Optional[FlexibleValidationPayload] = Field(
        default=None, alias="flexibleValidation"
    )
    file_name: Optional[str] = Field(default=None, alias="fileName")
    upload_date: Optional[str] = Field(default=None, alias="uploadDate")
    source: Optional[str] = None
    vin_numbers: list[Any] = Field(default_factory=list, alias="vinNumbers")
    vins: list[Any] = Field(default_factory=list)
    dates: list[Any] = Field(default_factory=list)
    raw_text: Optional[str] = Field(default=None, alias="rawText")

    @field_validator("schema_version", mode="before")
    @classmethod
    def _version(cls, value: Any) -> int:
        try:
            return int(value)
        except (TypeError, ValueError):
            return RAW_EXTRACTION_SCHEMA_VERSION

    @field_validator("extracted_data", mode="before")
    @classmethod
    def _data(cls, value: Any) -> dict:
        return {key: unwrap_field_value(item) for key, item in _as_dict(value).items()}

    @field_validator("vin_numbers", "vins", "dates", mode="before")
    @classmethod
    def _lists(cls, value: Any) -> list:
        return [unwrap_field_value(item) for item in _as_list(value)]

    @field_validator("confidence", mode="before")
    @classmethod
    def _confidence(cls, value: Any) -> Optional[float]:
        return coerce_confidence(value)

    @field_validator("flexible_validation", mode="before")
    @classmethod
    def _flexible(cls, value: Any) -> Optional[dict]:
        return value if isinstance(value, (dict, FlexibleValidationPayload)) else None

    @field_validator(
        "document_type", "file_name", "upload_date", "source", "raw_text", mode="before"
    )
    @classmethod
    def _text(cls, value: Any) -> Optional[str]:
        return _as_optional_str(value)


class DocumentMetadata(BaseModel):
    """Ingestion metadata supplied by the caller alongside the extraction."""

    model_config = ConfigDict(populate_by_name=True)

    file_name: Optional[str] = Field(default=None, alias="fileName")
    upload_date: Optional[str] = Field(default=None, alias="uploadDate")
    source: Optional[str] = None
    document_id: Optional[str] = Field(default=None, alias="documentId")


# ─── Extraction Validator Output ────────────────────────────────────


class FieldValidation(BaseModel):
    """Validation outcome for one extracted field (transient)."""

    field: str
    kind: FieldKind = FieldKind.TEXT
    original_value: Any = None
    final_value: Any = None
    confidence: int = Field(default=0, ge=0, le=100)
    status: FieldStatus = FieldStatus.QUESTIONABLE
    corrections: list[str] = Field(default_factory=list)
    notes: list[str] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)


class ValidationSummary(BaseModel):
    fields_found: int = 0
    high_confidence_fields: int = 0
    questionable_fields: int = 0
    corrected_fields: int = 0


class ValidationResult(BaseModel):
    """The Extraction Validator's contract with the reconciliation engine."""

    schema_version: int = RAW_EXTRACTION_SCHEMA_VERSION
    status: ValidationStatus = ValidationStatus.NEEDS_REVIEW
    processing_recommendation: ProcessingRecommendation = (
        ProcessingRecommendation.MANUAL_REVIEW_REQUIRED
    )
    confidence_score: int = Field(default=0, ge=0, le=100)
    field_validations: list[FieldValidation] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)
    suggestions: list[str] = Field(default_factory=list)
    notes: list[str] = Field(default_factory=list)
    summary: ValidationSummary = Field(default_factory=ValidationSummary)

    def fields_of_kind(self, kind: FieldKind) -> list[FieldValidation]:
        return [f for f in self.field_validations if f.kind == kind]


class ValidationDigest(BaseModel):
    """The part of a ValidationResult kept on a stored document."""

    status: ValidationStatus
    confidence_score: int
    processing_recommendation: ProcessingRecommendation
    warnings: list[str] = Field(default_factory=list)


# ─── Reconciled Domain ──────────────────────────────────────────────


class Conflict(BaseModel):
    """A disagreement between exactly two documents of the same type."""

    id: str = Field(default_factory=lambda: f"cfl_{uuid4().hex[:12]}")
    type: ConflictType
    severity: ConflictSeverity
    description: str
    conflicting_documents: tuple[str, str]
    suggested_resolution: str
    field: Optional[str] = None
    resolved: bool = False
    detected_at: datetime = Field(default_factory=utcnow)
    resolved_at: Optional[datetime] = None
    resolution_note: Optional[str] = None


class DocumentRecord(BaseModel):
    """One processed file attached to a vehicle. Extracted values are never edited."""

    id: str
    file_name: str
    document_type: DocumentType = DocumentType.OTHER
    vin: str
    extracted_data: dict[str, Any] = Field(default_factory=dict)
    confidence: float = Field(default=0.0, ge=0, le=100)
    status: DocumentStatus = DocumentStatus.ACTIVE
    effective_date: Optional[str] = None
    expiration_date: Optional[str] = None
    issue_date: Optional[str] = None
    upload_date: Optional[str] = None
    processed_date: datetime = Field(default_factory=utcnow)
    source: Optional[str] = None
    processing_notes: list[str] = Field(default_factory=list)
    conflicts: list[str] = Field(default_factory=list)
    validation: Optional[ValidationDigest] = None


class ComplianceCategoryStatus(BaseModel):
    status: CategoryStatus = CategoryStatus.MISSING
    current_document: Optional[str] = None
    expiration_date: Optional[str] = None
    days_until_expiry: Optional[int] = None
    confidence: float = 0.0
    last_updated: datetime = Field(default_factory=utcnow)
    warnings: list[str] = Field(default_factory=list)


class ComplianceStatus(BaseModel):
    """Five category statuses plus the derived overall status."""

    registration: ComplianceCategoryStatus = Field(default_factory=ComplianceCategoryStatus)
    insurance: ComplianceCategoryStatus = Field(default_factory=ComplianceCategoryStatus)
    inspection: ComplianceCategoryStatus = Field(default_factory=ComplianceCategoryStatus)
    cdl: ComplianceCategoryStatus = Field(default_factory=ComplianceCategoryStatus)
    medical: ComplianceCategoryStatus = Field(default_factory=ComplianceCategoryStatus)
    overall: OverallStatus = OverallStatus.INCOMPLETE

    def category(self, category: ComplianceCategory) -> ComplianceCategoryStatus:
        return getattr(self, category.value)

    def categories(self) -> list[tuple[ComplianceCategory, ComplianceCategoryStatus]]:
        return [(c, self.category(c)) for c in ComplianceCategory]


class TimelineEntry(BaseModel):
    date: datetime = Field(default_factory=utcnow)
    document_id: str
    document: str
    action: str = "added"
    details: str = ""


class UpcomingExpiration(BaseModel):
    document_id: str
    document: str
    expiration_date: str
    days_until_expiry: int
    urgency: Urgency


class ComplianceHistory(BaseModel):
    """Per-document-type lifecycle timeline."""

    document_type: DocumentType
    timeline: list[TimelineEntry] = Field(default_factory=list)
    current_document: Optional[str] = None
    upcoming_expiration: Optional[UpcomingExpiration] = None


class VehicleRecord(BaseModel):
    """The authoritative, continuously reconciled view of one vehicle.

    `documents_by_type` holds document ids in arrival order; the documents
    themselves live in `documents`. `overall`, `compliance_score` and
    `risk_level` are derived (see compliance.recompute_derived).
    """

    vin: str
    alternative_vins: list[str] = Field(default_factory=list)
    make: Optional[str] = None
    model: Optional[str] = None
    year: Optional[str] = None
    license_plate: Optional[str] = None
    state: Optional[str] = None
    documents: dict[str, DocumentRecord] = Field(default_factory=dict)
    documents_by_type: dict[DocumentType, list[str]] = Field(default_factory=dict)
    compliance_status: ComplianceStatus = Field(default_factory=ComplianceStatus)
    compliance_history: dict[DocumentType, ComplianceHistory] = Field(default_factory=dict)
    active_conflicts: list[Conflict] = Field(default_factory=list)
    resolved_conflicts: list[Conflict] = Field(default_factory=list)
    compliance_score: int = Field(default=0, ge=0, le=100)
    risk_level: RiskLevel = RiskLevel.CRITICAL
    first_seen: datetime = Field(default_factory=utcnow)
    last_updated: datetime = Field(default_factory=utcnow)

    @computed_field  # type: ignore[prop-decorator]
    @property
    def document_count(self) -> int:
        return len(self.documents)

    def documents_of_type(self, document_type: DocumentType) -> list[DocumentRecord]:
        """Documents of one type, oldest arrival first."""
        ids = self.documents_by_type.get(document_type, [])
        return [self.documents[doc_id] for doc_id in ids if doc_id in self.documents]


# ─── Engine Results & Queries ───────────────────────────────────────


class AddDocumentResult(BaseModel):
    """Outcome of one ingestion. `success=False` is the only hard-failure path."""

    success: bool
    vehicle_vin: Optional[str] = None
    conflicts: list[Conflict] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)
    document: Optional[DocumentRecord] = None
    vehicle: Optional[VehicleRecord] = None
    validation: Optional[ValidationResult] = None


class ExpiringDocument(BaseModel):
    document_type: DocumentType
    document_id: str
    file_name: str
    expiration_date: str
    days_until_expiry: int
    urgency: Urgency


class ExpiringVehicle(BaseModel):
    vin: str
    vehicle: VehicleRecord
    expiring_documents: list[ExpiringDocument] = Field(default_factory=list)


class SearchCriteria(BaseModel):
    """Filters for search_vehicles. Unset filters match everything."""

    model_config = ConfigDict(populate_by_name=True)

    vin: Optional[str] = None
    make: Optional[str] = None
    model: Optional[str] = None
    license_plate: Optional[str] = Field(default=None, alias="licensePlate")
    state: Optional[str] = None
    compliance_status: Optional[OverallStatus] = Field(default=None, alias="complianceStatus")
    has_conflicts: Optional[bool] = Field(default=None, alias="hasConflicts")
    expires_within_days: Optional[int] = Field(default=None, alias="expiresWithinDays")


class DocumentsPerVehicle(BaseModel):
    avg: int = 0
    min: int = 0
    max: int = 0


class ComplianceBreakdown(BaseModel):
    compliant: int = 0
    non_compliant: int = 0
    expires_soon: int = 0
    review_needed: int = 0
    incomplete: int = 0


class ConflictsSummary(BaseModel):
    active: int = 0
    resolved: int = 0
    by_type: dict[str, int] = Field(default_factory=dict)
    by_severity: dict[str, int] = Field(default_factory=dict)


class ExpirationAlert(BaseModel):
    expired: int = 0
    expires_today: int = 0
    expires_this_week: int = 0
    expires_this_month: int = 0


class FleetStats(BaseModel):
    total_vehicles: int = 0
    total_documents: int = 0
    documents_per_vehicle: DocumentsPerVehicle = Field(default_factory=DocumentsPerVehicle)
    compliance_breakdown: ComplianceBreakdown = Field(default_factory=ComplianceBreakdown)
    conflicts_summary: ConflictsSummary = Field(default_factory=ConflictsSummary)
    expiration_alert: ExpirationAlert = Field(default_factory=ExpirationAlert)


class FleetSnapshot(BaseModel):
    """Whole-engine export tree: `{vehicles, vinAliases, documentIndex, stats, exportDate}`."""

    model_config = ConfigDict(populate_by_name=True)

    vehicles: dict[str, VehicleRecord] = Field(default_factory=dict)
    vin_aliases: dict[str, str] = Field(default_factory=dict, alias="vinAliases")
    document_index: dict[str, str] = Field(default_factory=dict, alias="documentIndex")
    stats: Optional[FleetStats] = None
    export_date: datetime = Field(default_factory=utcnow, alias="exportDate")
