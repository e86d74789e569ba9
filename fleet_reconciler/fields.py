"""
Descriptive field validators: license plates, policy numbers, states,
free text and numbers.

Each validator:
  - Takes a field name and a raw value
  - Returns one FieldValidation scored 0-100
  - Never raises

FIELD_RULES says which extraction keys feed which validator;
validate_field() dispatches on FieldKind. VINs and dates have their own
modules (vin.py, dates.py).
"""

from __future__ import annotations

import re
from datetime import date
from types import MappingProxyType
from typing import Any, Callable, Mapping, Optional

from .classification import (
    INSURANCE_COMPANY_KEYS,
    LICENSE_PLATE_KEYS,
    MAKE_KEYS,
    MODEL_KEYS,
    POLICY_NUMBER_KEYS,
    STATE_KEYS,
    YEAR_KEYS,
    is_empty,
)
from .models import FieldKind, FieldStatus, FieldValidation


# ─── Constants ───────────────────────────────────────────────────────

VALID_US_STATES: frozenset[str] = frozenset({
    "AL", "AK", "AZ", "AR", "CA", "CO", "CT", "DE", "FL", "GA",
    "HI", "ID", "IL", "IN", "IA", "KS", "KY", "LA", "ME", "MD",
    "MA", "MI", "MN", "MS", "MO", "MT", "NE", "NV", "NH", "NJ",
    "NM", "NY", "NC", "ND", "OH", "OK", "OR", "PA", "RI", "SC",
    "SD", "TN", "TX", "UT", "VT", "VA", "WA", "WV", "WI", "WY",
    "DC",
})

PLATE_MIN_LENGTH = 2
PLATE_MAX_LENGTH = 8
POLICY_MIN_LENGTH = 3
TEXT_MIN_LENGTH = 1
TEXT_MAX_LENGTH = 200

# Model years run ahead of the calendar.
EARLIEST_MODEL_YEAR = 1900
MODEL_YEARS_AHEAD = 2

_PLATE_CHARS = re.compile(r"[^A-Z0-9]")
_POLICY_FORMAT = re.compile(r"^[A-Z0-9\-\s]+$", re.IGNORECASE)
_STANDARD_TEXT = re.compile(r"^[A-Za-z0-9\s\-\.']+$")
_NUMBER_CHARS = re.compile(r"[^0-9.\-]")


# field name -> (kind, extraction keys)
FIELD_RULES: Mapping[str, tuple[FieldKind, tuple[str, ...]]] = MappingProxyType({
    "license_plate": (FieldKind.LICENSE_PLATE, LICENSE_PLATE_KEYS),
    "policy_number": (FieldKind.POLICY_NUMBER, POLICY_NUMBER_KEYS),
    "state": (FieldKind.STATE, STATE_KEYS),
    "insurance_company": (FieldKind.TEXT, INSURANCE_COMPANY_KEYS),
    "make": (FieldKind.TEXT, MAKE_KEYS),
    "model": (FieldKind.TEXT, MODEL_KEYS),
    "year": (FieldKind.NUMBER, YEAR_KEYS),
})


# ─── Helpers ─────────────────────────────────────────────────────────


def _status_for(confidence: int) -> FieldStatus:
    if confidence >= 90:
        return FieldStatus.EXCELLENT
    if confidence >= 75:
        return FieldStatus.GOOD
    if confidence >= 60:
        return FieldStatus.ACCEPTABLE
    return FieldStatus.QUESTIONABLE


def _finish(result: FieldValidation, score: int) -> FieldValidation:
    result.confidence = max(0, min(100, score))
    result.status = _status_for(result.confidence)
    return result


def _empty(field: str, kind: FieldKind, value: Any) -> FieldValidation:
    return FieldValidation(
        field=field,
        kind=kind,
        original_value=value,
        final_value=value,
        notes=["Field present but empty"],
    )


# ─── Individual Validators ───────────────────────────────────────────


def validate_license_plate(field: str, value: Any) -> FieldValidation:
    """Plates are 2-8 alphanumerics once spaces and punctuation are removed."""
    if is_empty(value):
        return _empty(field, FieldKind.LICENSE_PLATE, value)

    raw = str(value).strip().upper()
    cleaned = _PLATE_CHARS.sub("", raw)
    result = FieldValidation(
        field=field, kind=FieldKind.LICENSE_PLATE, original_value=value, final_value=cleaned
    )

    score = 0
    if PLATE_MIN_LENGTH <= len(cleaned) <= PLATE_MAX_LENGTH:
        score += 60
    else:
        score += 20
        result.notes.append(f"Unusual length for a license plate: {len(cleaned)}")
    if cleaned:
        score += 40
    else:
        score += 10
        result.notes.append("No alphanumeric characters in license plate")

    if cleaned != raw:
        result.corrections.append(f"Cleaned: '{raw}' -> '{cleaned}'")
    return _finish(result, score)


def validate_policy_number(field: str, value: Any) -> FieldValidation:
    if is_empty(value):
        return _empty(field, FieldKind.POLICY_NUMBER, value)

    policy = str(value).strip()
    result = FieldValidation(
        field=field, kind=FieldKind.POLICY_NUMBER, original_value=value, final_value=policy
    )

    score = 15
    if len(policy) >= POLICY_MIN_LENGTH:
        score += 50
    else:
        score += 15
        result.notes.append(f"Very short for a policy number: {len(policy)} character(s)")
    if _POLICY_FORMAT.match(policy):
        score += 35
    else:
        score += 20
        result.notes.append("Contains unusual characters for a policy number")
    return _finish(result, score)


def validate_state(field: str, value: Any) -> FieldValidation:
    """Two-letter US state codes (plus DC) score 100; other 2-letter codes 60."""
    if is_empty(value):
        return _empty(field, FieldKind.STATE, value)

    state = str(value).strip().upper()
    result = FieldValidation(
        field=field, kind=FieldKind.STATE, original_value=value, final_value=state
    )
    if state != str(value):
        result.notes.append(f"Normalized: '{value}' -> '{state}'")

    if state in VALID_US_STATES:
        return _finish(result, 100)
    if re.fullmatch(r"[A-Z]{2}", state):
        result.notes.append(f"'{state}' is not a recognized US state code")
        return _finish(result, 60)
    result.notes.append(f"'{state}' is not a state code")
    return _finish(result, 25)


def validate_text(
    field: str,
    value: Any,
    min_length: int = TEXT_MIN_LENGTH,
    max_length: int = TEXT_MAX_LENGTH,
) -> FieldValidation:
    if is_empty(value):
        return _empty(field, FieldKind.TEXT, value)

    text = str(value).strip()
    result = FieldValidation(field=field, kind=FieldKind.TEXT, original_value=value, final_value=text)

    score = 15
    if min_length <= len(text) <= max_length:
        score += 50
    else:
        score += 20
        result.notes.append(f"Length {len(text)} outside expected range {min_length}-{max_length}")
    if _STANDARD_TEXT.match(text):
        score += 35
    else:
        score += 20
        result.notes.append("Contains special characters")
    return _finish(result, score)


def validate_number(
    field: str,
    value: Any,
    min_value: Optional[float] = None,
    max_value: Optional[float] = None,
) -> FieldValidation:
    """Numbers are read leniently ("2,021" -> 2021); each bound missed costs 20."""
    if is_empty(value):
        return _empty(field, FieldKind.NUMBER, value)

    result = FieldValidation(field=field, kind=FieldKind.NUMBER, original_value=value)
    try:
        number = float(_NUMBER_CHARS.sub("", str(value)))
    except ValueError:
        result.final_value = value
        result.notes.append(f"'{value}' is not a number")
        return _finish(result, 15)

    result.final_value = int(number) if number.is_integer() else number
    score = 85
    if min_value is not None and number < min_value:
        score -= 20
        result.notes.append(f"Below minimum value {min_value:g}")
    if max_value is not None and number > max_value:
        score -= 20
        result.notes.append(f"Above maximum value {max_value:g}")
    if str(result.final_value) != str(value).strip():
        result.notes.append(f"Read '{value}' as {result.final_value}")
    return _finish(result, score)


def validate_model_year(field: str, value: Any, today: Optional[date] = None) -> FieldValidation:
    today = today or date.today()
    return validate_number(
        field, value, min_value=EARLIEST_MODEL_YEAR, max_value=today.year + MODEL_YEARS_AHEAD
    )


# ─── Dispatch ────────────────────────────────────────────────────────

_VALIDATORS: Mapping[FieldKind, Callable[[str, Any], FieldValidation]] = MappingProxyType({
    FieldKind.LICENSE_PLATE: validate_license_plate,
    FieldKind.POLICY_NUMBER: validate_policy_number,
    FieldKind.STATE: validate_state,
    FieldKind.TEXT: validate_text,
})


def validate_field(
    kind: FieldKind, field: str, value: Any, today: Optional[date] = None
) -> FieldValidation:
    """Route one descriptive field to its validator by kind."""
    if kind == FieldKind.NUMBER:
        return validate_model_year(field, value, today)
    validator = _VALIDATORS.get(kind, validate_text)
    return validator(field, value)
