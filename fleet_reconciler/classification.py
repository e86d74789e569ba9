"""
Lookup tables for document classification and field-name synonyms.

Upstream extractors do not agree on key names ("expirationDate",
"expires_on", "validUntil", ...) or on document type labels. Everything the
engine reads from an extraction goes through one of these tables, so adding
a synonym is a one-line change here and nowhere else.

All tables are immutable (MappingProxyType / tuples).
"""

from __future__ import annotations

import logging
import re
from types import MappingProxyType
from typing import Any, Mapping, Optional

from .models import DocumentType

logger = logging.getLogger(__name__)


# ─── Document Types ─────────────────────────────────────────────────

DOCUMENT_TYPE_SYNONYMS: Mapping[str, DocumentType] = MappingProxyType({
    "registration": DocumentType.REGISTRATION,
    "vehicle_registration": DocumentType.REGISTRATION,
    "insurance": DocumentType.INSURANCE,
    "auto_insurance": DocumentType.INSURANCE,
    "cdl": DocumentType.CDL,
    "commercial_drivers_license": DocumentType.CDL,
    "medical_certificate": DocumentType.MEDICAL_CERTIFICATE,
    "medical": DocumentType.MEDICAL_CERTIFICATE,
    "dot_medical": DocumentType.MEDICAL_CERTIFICATE,
    "inspection": DocumentType.INSPECTION,
    "vehicle_inspection": DocumentType.INSPECTION,
    "permit": DocumentType.PERMIT,
    "operating_permit": DocumentType.PERMIT,
    "other": DocumentType.OTHER,
})

# (keyword, type, whole token only). Checked in order against the file name.
FILENAME_KEYWORDS: tuple[tuple[str, DocumentType, bool], ...] = (
    ("registration", DocumentType.REGISTRATION, False),
    ("reg", DocumentType.REGISTRATION, True),
    ("insurance", DocumentType.INSURANCE, False),
    ("cdl", DocumentType.CDL, False),
    ("medical", DocumentType.MEDICAL_CERTIFICATE, False),
    ("inspection", DocumentType.INSPECTION, False),
)


# ─── Field-Name Synonyms ────────────────────────────────────────────

VIN_KEYS: tuple[str, ...] = ("vin", "VIN", "vinNumber", "vin_number")

EXPIRATION_DATE_KEYS: tuple[str, ...] = (
    "expirationDate", "expiry", "expiration_date", "due_date", "dueDate",
    "expires", "expiresOn", "expires_on", "validUntil", "valid_until",
    "endDate", "end_date", "renewalDate", "renewal_date",
)
EFFECTIVE_DATE_KEYS: tuple[str, ...] = (
    "effectiveDate", "effective_date", "startDate", "issue_date", "issueDate",
)
ISSUE_DATE_KEYS: tuple[str, ...] = (
    "issueDate", "issue_date", "issuedDate", "issued_date", "dateIssued", "date_issued",
)

DATE_FIELD_KEYS: Mapping[str, tuple[str, ...]] = MappingProxyType({
    "expiration_date": EXPIRATION_DATE_KEYS,
    "effective_date": EFFECTIVE_DATE_KEYS,
    "issue_date": ISSUE_DATE_KEYS,
})

MAKE_KEYS: tuple[str, ...] = ("make", "vehicleMake", "vehicle_make")
MODEL_KEYS: tuple[str, ...] = ("model", "vehicleModel", "vehicle_model")
YEAR_KEYS: tuple[str, ...] = ("year", "vehicleYear", "vehicle_year", "modelYear", "model_year")
LICENSE_PLATE_KEYS: tuple[str, ...] = (
    "licensePlate", "license_plate", "plate", "plateNumber", "plate_number",
)
STATE_KEYS: tuple[str, ...] = ("state", "registrationState", "registration_state")
POLICY_NUMBER_KEYS: tuple[str, ...] = ("policyNumber", "policy_number", "policyNo", "policy_no")
INSURANCE_COMPANY_KEYS: tuple[str, ...] = (
    "insuranceCompany", "insurance_company", "insurer", "carrier",
)

# Backfilled onto the vehicle when its own value is empty.
DESCRIPTIVE_FIELD_KEYS: Mapping[str, tuple[str, ...]] = MappingProxyType({
    "make": MAKE_KEYS,
    "model": MODEL_KEYS,
    "year": YEAR_KEYS,
    "license_plate": LICENSE_PLATE_KEYS,
    "state": STATE_KEYS,
})

# Compared pairwise between documents of the same type.
CONFLICT_FIELD_KEYS: Mapping[str, tuple[str, ...]] = MappingProxyType({
    "make": MAKE_KEYS,
    "model": MODEL_KEYS,
    "year": YEAR_KEYS,
    "license_plate": LICENSE_PLATE_KEYS,
})


# ─── Lookups ─────────────────────────────────────────────────────────


def is_empty(value: Any) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


def find_field(data: Mapping[str, Any], keys: tuple[str, ...]) -> tuple[bool, Any]:
    """(present, value) for the first non-empty synonym; present is True if any key exists."""
    present = False
    for key in keys:
        if key not in data:
            continue
        present = True
        if not is_empty(data[key]):
            return True, data[key]
    return present, None


def first_value(data: Mapping[str, Any], keys: tuple[str, ...]) -> Any:
    return find_field(data, keys)[1]


def _normalize_label(label: str) -> str:
    return re.sub(r"[\s\-]+", "_", label.strip().lower())


def infer_document_type(explicit: Optional[str], file_name: Optional[str]) -> DocumentType:
    """Explicit label via the synonym table, then file-name keywords, then OTHER."""
    if explicit:
        label = _normalize_label(explicit)
        if label in DOCUMENT_TYPE_SYNONYMS:
            return DOCUMENT_TYPE_SYNONYMS[label]
        logger.debug("Unknown document type label %r; trying file name", explicit)

    if file_name:
        lowered = file_name.lower()
        tokens = set(re.split(r"[^a-z0-9]+", lowered))
        for keyword, document_type, whole_token in FILENAME_KEYWORDS:
            if (keyword in tokens) if whole_token else (keyword in lowered):
                return document_type

    return DocumentType.OTHER
