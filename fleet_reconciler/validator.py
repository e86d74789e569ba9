"""
Extraction Validator: the "never fail" layer between OCR output and the engine.

Takes one document's raw extraction, validates every VIN-like, date-like and
descriptive field it can find, and returns a confidence-scored
ValidationResult. Malformed input degrades the result; it never raises.

Each field validator:
  - Takes a field name and a raw value
  - Returns one FieldValidation (confidence, status, corrections, notes)
  - Is independently testable (see vin.py, dates.py, fields.py)

validate_extraction() runs every check and assesses the document as a whole.
"""

from __future__ import annotations

import logging
from datetime import date
from typing import Any, Optional

from pydantic import ValidationError

from .classification import DATE_FIELD_KEYS, VIN_KEYS, find_field, is_empty
from .compliance import round_half_up
from .dates import validate_date
from .fields import FIELD_RULES, validate_field
from .models import (
    RAW_EXTRACTION_SCHEMA_VERSION,
    FieldKind,
    FieldStatus,
    FieldValidation,
    ProcessingRecommendation,
    RawExtraction,
    ValidationResult,
    ValidationStatus,
    ValidationSummary,
)
from .vin import clean_vin, validate_vin

logger = logging.getLogger(__name__)


# ─── Thresholds ──────────────────────────────────────────────────────

AUTO_APPROVE_CONFIDENCE = 80
REVIEW_CONFIDENCE = 60
MAX_WARNINGS_FOR_REVIEW = 2

LOW_FIELD_CONFIDENCE = 60
LOW_VIN_CONFIDENCE = 70
LOW_DATE_CONFIDENCE = 60
LOW_OVERALL_CONFIDENCE = 70


# ─── Boundary ────────────────────────────────────────────────────────


def coerce_extraction(payload: Any) -> tuple[RawExtraction, list[str]]:
    """Validate a raw payload against the boundary schema; fall back to an empty extraction."""
    if isinstance(payload, RawExtraction):
        extraction, notes = payload, []
    elif not isinstance(payload, dict):
        logger.warning("Extraction payload of type %s ignored", type(payload).__name__)
        return RawExtraction(), [
            f"Extraction payload of type {type(payload).__name__} could not be read; treated as empty"
        ]
    else:
        try:
            extraction, notes = RawExtraction.model_validate(payload), []
        except ValidationError as exc:
            logger.warning("Extraction payload failed schema validation: %d error(s)", exc.error_count())
            return RawExtraction(), ["Extraction payload could not be parsed; treated as empty"]

    if extraction.schema_version != RAW_EXTRACTION_SCHEMA_VERSION:
        notes.append(
            f"Unknown extraction schema version {extraction.schema_version}; "
            f"read as version {RAW_EXTRACTION_SCHEMA_VERSION}"
        )
    return extraction, notes


def merged_fields(extraction: RawExtraction) -> dict[str, Any]:
    """Flexible-validation fields overlaid by extracted_data (extracted_data wins)."""
    fields: dict[str, Any] = {}
    if extraction.flexible_validation is not None:
        for item in extraction.flexible_validation.extracted_fields:
            if item.field and item.field not in fields:
                fields[item.field] = item.value
    fields.update(extraction.extracted_data)
    return fields


def vin_sources(extraction: RawExtraction) -> list[tuple[str, Any]]:
    """Every (field name, value) pair that may hold a VIN, de-duplicated on the cleaned value."""
    sources: list[tuple[str, Any]] = []
    for key in VIN_KEYS:
        if key in extraction.extracted_data:
            sources.append((key, extraction.extracted_data[key]))
    if extraction.flexible_validation is not None:
        for item in extraction.flexible_validation.extracted_fields:
            if "vin" in item.field.lower():
                sources.append((item.field, item.value))
    sources.extend((f"vin_numbers[{i}]", v) for i, v in enumerate(extraction.vin_numbers))
    sources.extend((f"vins[{i}]", v) for i, v in enumerate(extraction.vins))

    seen: set[str] = set()
    unique: list[tuple[str, Any]] = []
    for name, value in sources:
        if is_empty(value) or isinstance(value, (dict, list)):
            continue
        cleaned = clean_vin(value)
        if cleaned in seen:
            continue
        seen.add(cleaned)
        unique.append((name, value))
    return unique


# ─── Field Collection ────────────────────────────────────────────────


def collect_field_validations(
    extraction: RawExtraction, today: Optional[date] = None
) -> list[FieldValidation]:
    fields = merged_fields(extraction)
    validations: list[FieldValidation] = []

    for name, value in vin_sources(extraction):
        validations.append(validate_vin(name, value))

    for name, keys in DATE_FIELD_KEYS.items():
        present, value = find_field(fields, keys)
        if present:
            validations.append(validate_date(name, value, today))
    for index, value in enumerate(extraction.dates):
        if not isinstance(value, (dict, list)):
            validations.append(validate_date(f"dates[{index}]", value, today))

    for name, (kind, keys) in FIELD_RULES.items():
        present, value = find_field(fields, keys)
        if present and not isinstance(value, (dict, list)):
            validations.append(validate_field(kind, name, value, today))

    return validations


# ─── Assessment ──────────────────────────────────────────────────────


def build_suggestions(validations: list[FieldValidation], confidence_score: int) -> list[str]:
    """Human-facing advice. Suggestions are never executed."""
    suggestions: list[str] = []
    for validation in validations:
        if validation.confidence < LOW_FIELD_CONFIDENCE:
            suggestions.append(
                f"Verify '{validation.field}' manually (confidence {validation.confidence}%)"
            )
        if validation.kind == FieldKind.VIN and validation.confidence < LOW_VIN_CONFIDENCE:
            suggestions.append(
                f"Double-check VIN '{validation.final_value}' against the vehicle or its title"
            )
        if validation.kind == FieldKind.DATE and validation.confidence < LOW_DATE_CONFIDENCE:
            suggestions.append(
                f"Confirm the date in '{validation.field}'; expected a format like MM/DD/YYYY"
            )
    if confidence_score < LOW_OVERALL_CONFIDENCE:
        suggestions.append(
            "Overall extraction confidence is low; consider rescanning at a higher resolution"
        )
    corrected = sum(1 for v in validations if v.corrections)
    if corrected:
        suggestions.append(
            f"{corrected} field(s) were auto-corrected; review the corrections before approving"
        )
    return suggestions


def assess(
    validations: list[FieldValidation], warnings: list[str]
) -> tuple[int, ValidationStatus, ProcessingRecommendation]:
    if not validations:
        return 0, ValidationStatus.NEEDS_REVIEW, ProcessingRecommendation.MANUAL_REVIEW_REQUIRED

    score = round_half_up(sum(v.confidence for v in validations) / len(validations))
    if score >= AUTO_APPROVE_CONFIDENCE and not warnings:
        return score, ValidationStatus.SUCCESS, ProcessingRecommendation.AUTO_APPROVE
    if score >= REVIEW_CONFIDENCE and len(warnings) <= MAX_WARNINGS_FOR_REVIEW:
        return (
            score,
            ValidationStatus.SUCCESS_WITH_WARNINGS,
            ProcessingRecommendation.REVIEW_RECOMMENDED,
        )
    return score, ValidationStatus.NEEDS_REVIEW, ProcessingRecommendation.MANUAL_REVIEW_REQUIRED


def validate_extraction(payload: Any, today: Optional[date] = None) -> ValidationResult:
    """Validate one document's raw extraction. Never raises on malformed input."""
    extraction, notes = coerce_extraction(payload)
    validations = collect_field_validations(extraction, today)

    warnings = [warning for v in validations for warning in v.warnings]
    if not validations:
        warnings.append("No recognizable fields were found in the extraction")
        notes.append("Nothing to validate: no VIN, date or descriptive fields present")

    score, status, recommendation = assess(validations, warnings)
    result = ValidationResult(
        schema_version=extraction.schema_version,
        status=status,
        processing_recommendation=recommendation,
        confidence_score=score,
        field_validations=validations,
        warnings=warnings,
        suggestions=build_suggestions(validations, score),
        notes=notes,
        summary=ValidationSummary(
            fields_found=len(validations),
            high_confidence_fields=sum(
                1 for v in validations if v.status in (FieldStatus.EXCELLENT, FieldStatus.GOOD)
            ),
            questionable_fields=sum(1 for v in validations if v.status == FieldStatus.QUESTIONABLE),
            corrected_fields=sum(1 for v in validations if v.corrections),
        ),
    )
    logger.debug(
        "Validated extraction: %d field(s), confidence %d, status %s",
        len(validations), score, status.value,
    )
    return result
