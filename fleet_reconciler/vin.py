"""
VIN cleaning, OCR correction and check-digit validation.

OCR engines routinely read a 1 as I and a 0 as O or Q. Those three letters
are never legal in a VIN, so substituting them back is always safe and is
the ONLY correction applied here. Everything else is scored, not repaired.

The check digit (position 9) is verified but never trusted to fix anything:
a mismatch downgrades the field to questionable and says what was expected.
The manufacturer (WMI prefix) and, for a few heavy-truck makers, the engine
are decoded into notes; neither affects the score.
"""

from __future__ import annotations

import re
from types import MappingProxyType
from typing import Any, Optional

from .models import FieldKind, FieldStatus, FieldValidation


# ─── Constants ───────────────────────────────────────────────────────

VIN_LENGTH = 17
LIKELY_VIN_MIN_LENGTH = 15
LIKELY_VIN_MAX_LENGTH = 19
CHECK_DIGIT_INDEX = 8

CHECK_DIGIT_WEIGHTS: tuple[int, ...] = (8, 7, 6, 5, 4, 3, 2, 10, 0, 9, 8, 7, 6, 5, 4, 3, 2)

TRANSLITERATION = MappingProxyType({
    "A": 1, "B": 2, "C": 3, "D": 4, "E": 5, "F": 6, "G": 7, "H": 8,
    "J": 1, "K": 2, "L": 3, "M": 4, "N": 5, "P": 7, "R": 9,
    "S": 2, "T": 3, "U": 4, "V": 5, "W": 6, "X": 7, "Y": 8, "Z": 9,
})

OCR_CORRECTIONS = MappingProxyType({"I": "1", "O": "0", "Q": "0"})

# World Manufacturer Identifier (first three characters) -> manufacturer.
MANUFACTURER_CODES = MappingProxyType({
    **{f"1F{c}": "Ford (USA)" for c in "ABCDEFGHJKLMNPRSTUWXYZ"},
    "1FV": "Freightliner (USA)",
    **{f"1G{c}": "General Motors (USA)" for c in "1234678CDEGHJKLMNPRSTUWYZ"},
    **{wmi: "Volvo (Sweden)" for wmi in ("5VC", "5VF", "5V1", "5V2", "5V3", "5V4")},
    "1HG": "Honda (USA)",
    "2HG": "Honda (Canada)",
    "3HG": "Honda (Mexico)",
    "JHM": "Honda (Japan)",
})

# Engine code (position 8) for the heavy-truck makers we can decode.
ENGINE_CODES = MappingProxyType({
    "1FV": MappingProxyType({
        "Y": "Cummins ISL 8.9L Diesel",
        "S": "Cummins ISL 8.9L Diesel",
        "T": "Cummins ISX 15L Diesel",
        "U": "Cummins X15 Diesel",
        "V": "Detroit Diesel DD13",
        "W": "Detroit Diesel DD15",
        "H": "Caterpillar C7",
        "J": "Caterpillar C13",
    }),
    "5VC": MappingProxyType({
        "F": "Volvo D13 Diesel",
        "G": "Volvo D16 Diesel",
        "H": "Volvo D11 Diesel",
        "J": "Cummins ISX (Volvo Application)",
        "K": "Volvo D13TC Diesel",
    }),
})
ENGINE_CODE_INDEX = 7

VIN_FORMAT = re.compile(r"^[A-HJ-NPR-Z0-9]{15,17}$")

_NON_ALNUM = re.compile(r"[^A-Z0-9]")
_VIN_TOKEN = re.compile(r"(?<![A-Za-z0-9])[A-Za-z0-9]{15,17}(?![A-Za-z0-9])")


# ─── Primitives ──────────────────────────────────────────────────────


def clean_vin(value: Any) -> str:
    """Uppercase and drop every character outside [A-Z0-9]."""
    if value is None:
        return ""
    return _NON_ALNUM.sub("", str(value).upper())


def correct_ocr_errors(vin: str) -> tuple[str, list[str]]:
    """Replace I/O/Q with 1/0/0. Returns the corrected VIN and one note per position."""
    corrected: list[str] = []
    corrections: list[str] = []
    for position, char in enumerate(vin, start=1):
        replacement = OCR_CORRECTIONS.get(char)
        if replacement is None:
            corrected.append(char)
            continue
        corrected.append(replacement)
        corrections.append(f"Position {position}: '{char}' -> '{replacement}'")
    return "".join(corrected), corrections


def compute_check_digit(vin: str) -> Optional[str]:
    """Expected check digit for a 17-character VIN, or None if it cannot be computed."""
    if len(vin) != VIN_LENGTH:
        return None
    total = 0
    for char, weight in zip(vin, CHECK_DIGIT_WEIGHTS):
        if char.isdigit():
            value = int(char)
        elif char in TRANSLITERATION:
            value = TRANSLITERATION[char]
        else:
            return None
        total += value * weight
    remainder = total % 11
    return "X" if remainder == 10 else str(remainder)


def has_valid_check_digit(vin: str) -> bool:
    expected = compute_check_digit(vin)
    return expected is not None and vin[CHECK_DIGIT_INDEX] == expected


def is_well_formed(vin: Any) -> bool:
    """Legal characters only and a length in [15, 17]."""
    return isinstance(vin, str) and bool(VIN_FORMAT.match(vin))


def manufacturer_for(vin: str) -> Optional[str]:
    """Manufacturer named by the VIN's WMI prefix, if we know it."""
    return MANUFACTURER_CODES.get(vin[:3]) if isinstance(vin, str) else None


def decode_engine(vin: str) -> Optional[str]:
    """Engine description from position 8, for makers with a known engine table."""
    if not isinstance(vin, str) or len(vin) != VIN_LENGTH:
        return None
    table = ENGINE_CODES.get(vin[:3])
    if table is None:
        return None
    code = vin[ENGINE_CODE_INDEX]
    return table.get(code, f"unlisted engine code {code}")


def extract_vin_token(text: Any) -> Optional[str]:
    """Find a 15-17 character alphanumeric token in free text, 17-character tokens first.

    Tokens without a digit are skipped; long words are not VINs.
    """
    if not isinstance(text, str) or not text:
        return None
    tokens = [t.upper() for t in _VIN_TOKEN.findall(text) if any(c.isdigit() for c in t)]
    tokens.sort(key=lambda t: len(t) != VIN_LENGTH)
    for token in tokens:
        corrected, _ = correct_ocr_errors(token)
        if is_well_formed(corrected):
            return corrected
    return None


# ─── Field Validation ────────────────────────────────────────────────


def _status_for(confidence: int) -> FieldStatus:
    if confidence >= 85:
        return FieldStatus.EXCELLENT
    if confidence >= 65:
        return FieldStatus.GOOD
    if confidence >= 45:
        return FieldStatus.ACCEPTABLE
    return FieldStatus.QUESTIONABLE


def validate_vin(field: str, value: Any) -> FieldValidation:
    """Clean, correct, score and check-digit-verify one VIN-like value. Never raises."""
    cleaned = clean_vin(value)
    result = FieldValidation(field=field, kind=FieldKind.VIN, original_value=value)

    if not cleaned:
        result.final_value = value
        result.notes.append("No VIN characters found")
        result.warnings.append(f"{field}: no VIN characters found")
        return result

    score = 0
    candidate = cleaned
    length = len(cleaned)
    if length == VIN_LENGTH:
        score += 40
    elif LIKELY_VIN_MIN_LENGTH <= length <= LIKELY_VIN_MAX_LENGTH:
        score += 25
        result.notes.append(f"Likely VIN, length mismatch ({length} characters, expected 17)")
        result.warnings.append(f"{field}: VIN length is {length}, expected 17")
        if length > VIN_LENGTH:
            candidate = cleaned[:VIN_LENGTH]
            result.notes.append(f"Truncated to first 17 characters: {candidate}")
    else:
        score += 10
        result.notes.append(f"Value has {length} characters; not a VIN length")

    if any(char in OCR_CORRECTIONS for char in cleaned):
        score += 20
    else:
        score += 35

    candidate, corrections = correct_ocr_errors(candidate)
    if corrections:
        result.corrections.extend(corrections)
        result.notes.append(f"OCR correction applied: {cleaned[:len(candidate)]} -> {candidate}")

    score += 25 if VIN_FORMAT.match(candidate) else 5

    result.final_value = candidate
    result.confidence = min(100, score)
    result.status = _status_for(result.confidence)

    if len(candidate) == VIN_LENGTH and VIN_FORMAT.match(candidate):
        expected = compute_check_digit(candidate)
        found = candidate[CHECK_DIGIT_INDEX]
        if expected is not None and found != expected:
            result.status = FieldStatus.QUESTIONABLE
            result.notes.append(f"Check digit mismatch: expected '{expected}', found '{found}'")
            result.warnings.append(
                f"{field}: VIN check digit mismatch (expected '{expected}', found '{found}')"
            )
        manufacturer = manufacturer_for(candidate)
        if manufacturer:
            result.notes.append(f"WMI {candidate[:3]}: {manufacturer}")
        else:
            result.notes.append(f"Unrecognized WMI code {candidate[:3]}")
        engine = decode_engine(candidate)
        if engine:
            result.notes.append(f"Engine: {engine}")

    return result


def select_vin_candidate(validations: list[FieldValidation]) -> Optional[FieldValidation]:
    """First well-formed VIN candidate, preferring 17-character values."""
    well_formed = [v for v in validations if is_well_formed(v.final_value)]
    for validation in well_formed:
        if len(validation.final_value) == VIN_LENGTH:
            return validation
    return well_formed[0] if well_formed else None
