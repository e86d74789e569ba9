"""
Multi-format date parsing for OCR-extracted document dates.

Strategy:
1. Try explicit formats in a fixed order (ISO first, US numeric next, then
   European dotted, named month, and finally an OCR-damaged slash pattern)
2. Fall back to fuzzy parsing when the text holds exactly three numbers
3. Reject anything outside [1900, 2100]; flag anything outside
   [2000, today + 5 years] without rejecting it

Output is always YYYY-MM-DD. A value that cannot be parsed is kept as-is
with a low confidence, never dropped.
"""

from __future__ import annotations

import logging
import re
from datetime import date, datetime
from types import MappingProxyType
from typing import Any, Optional

from pydantic import BaseModel, Field

from .models import FieldKind, FieldStatus, FieldValidation

logger = logging.getLogger(__name__)


class DateParseResult(BaseModel):
    raw_text: str
    parsed_date: Optional[date] = None
    format_detected: str = "UNKNOWN"
    fuzzy: bool = False
    corrections: list[str] = Field(default_factory=list)

    @property
    def success(self) -> bool:
        return self.parsed_date is not None

    @property
    def iso(self) -> Optional[str]:
        return self.parsed_date.isoformat() if self.parsed_date else None


# ─── Constants ───────────────────────────────────────────────────────

MIN_YEAR = 1900
MAX_YEAR = 2100
REASONABLE_MIN_YEAR = 2000
REASONABLE_YEARS_AHEAD = 5
TWO_DIGIT_YEAR_PIVOT = 30

MONTHS = MappingProxyType({
    "january": 1, "february": 2, "march": 3, "april": 4,
    "may": 5, "june": 6, "july": 7, "august": 8,
    "september": 9, "october": 10, "november": 11, "december": 12,
    "jan": 1, "feb": 2, "mar": 3, "apr": 4, "jun": 6, "jul": 7,
    "aug": 8, "sep": 9, "sept": 9, "oct": 10, "nov": 11, "dec": 12,
})

# (pattern, format name, group order). Ordered: first match wins.
DATE_FORMATS: tuple[tuple[re.Pattern, str, str], ...] = (
    (re.compile(r"^(\d{4})-(\d{1,2})-(\d{1,2})(?:[T\s].*)?$"), "YYYY-MM-DD", "ymd"),
    (re.compile(r"^(\d{1,2})/(\d{1,2})/(\d{4})$"), "MM/DD/YYYY", "mdy"),
    (re.compile(r"^(\d{1,2})/(\d{1,2})/(\d{2})$"), "MM/DD/YY", "mdy"),
    (re.compile(r"^(\d{1,2})\.(\d{1,2})\.(\d{4})$"), "DD.MM.YYYY", "dmy"),
    (re.compile(r"^(\d{1,2})\.(\d{1,2})\.(\d{2})$"), "DD.MM.YY", "dmy"),
    (re.compile(r"^(\d{1,2})-(\d{1,2})-(\d{4})$"), "MM-DD-YYYY", "mdy"),
    (re.compile(r"^(\d{4})/(\d{1,2})/(\d{1,2})$"), "YYYY/MM/DD", "ymd"),
    (
        re.compile(r"^([A-Za-z]+)\.?\s+(\d{1,2})(?:st|nd|rd|th)?,?\s+(\d{4})$"),
        "MONTH DD, YYYY",
        "name",
    ),
    (
        re.compile(r"^([\dOo]{1,2})/([\dOo]{1,2})/([\dOo]{4}|[\dOo]{2})$"),
        "MM/DD/YYYY (OCR)",
        "ocr",
    ),
)

_NUMERIC_RUN = re.compile(r"\d+")


# ─── Parsing ─────────────────────────────────────────────────────────


def expand_two_digit_year(year: str) -> int:
    """'24' -> 2024, '95' -> 1995. Longer strings are returned as-is."""
    value = int(year)
    if len(year) != 2:
        return value
    return 2000 + value if value <= TWO_DIGIT_YEAR_PIVOT else 1900 + value


def _build(year: int, month: int, day: int) -> Optional[date]:
    if not MIN_YEAR <= year <= MAX_YEAR:
        return None
    try:
        return date(year, month, day)
    except ValueError:
        return None


def _from_match(groups: tuple[str, ...], order: str) -> Optional[date]:
    if order == "ymd":
        year, month, day = groups
    elif order == "dmy":
        day, month, year = groups
    elif order == "name":
        month_name, day, year = groups
        month_number = MONTHS.get(month_name.lower())
        if month_number is None:
            return None
        return _build(int(year), month_number, int(day))
    else:
        month, day, year = groups
    return _build(expand_two_digit_year(year), int(month), int(day))


def _parse_fuzzy(text: str) -> Optional[date]:
    runs = _NUMERIC_RUN.findall(text)
    if len(runs) != 3:
        return None
    n0, n1, n2 = runs
    attempts = (
        (int(n2), int(n0), int(n1)),
        (int(n2), int(n1), int(n0)),
        (expand_two_digit_year(n2), int(n0), int(n1)),
    )
    for year, month, day in attempts:
        parsed = _build(year, month, day)
        if parsed is not None:
            return parsed
    return None


def parse_date(value: Any) -> DateParseResult:
    """Parse one date value with explicit formats first, then the fuzzy fallback."""
    if isinstance(value, datetime):
        value = value.date()
    if isinstance(value, date):
        return DateParseResult(raw_text=value.isoformat(), parsed_date=value, format_detected="date")

    raw = "" if value is None else str(value).strip()
    if not raw:
        return DateParseResult(raw_text=raw)

    for pattern, format_name, order in DATE_FORMATS:
        match = pattern.match(raw)
        if not match:
            continue
        groups = match.groups()
        corrections: list[str] = []
        if order == "ocr":
            fixed = tuple(g.replace("O", "0").replace("o", "0") for g in groups)
            if fixed != groups:
                corrections.append(f"OCR correction: '{raw}' read with O as 0")
            groups, order = fixed, "mdy"
        parsed = _from_match(groups, order)
        if parsed is not None:
            return DateParseResult(
                raw_text=raw,
                parsed_date=parsed,
                format_detected=format_name,
                corrections=corrections,
            )

    parsed = _parse_fuzzy(raw)
    if parsed is not None:
        logger.debug("Fuzzy date parse: %r -> %s", raw, parsed)
        return DateParseResult(raw_text=raw, parsed_date=parsed, format_detected="FUZZY", fuzzy=True)

    return DateParseResult(raw_text=raw)


def normalize_date(value: Any) -> Optional[str]:
    """YYYY-MM-DD for anything parse_date understands, else None."""
    return parse_date(value).iso


def is_reasonable(parsed: date, today: date | None = None) -> bool:
    today = today or date.today()
    return REASONABLE_MIN_YEAR <= parsed.year <= today.year + REASONABLE_YEARS_AHEAD


# ─── Field Validation ────────────────────────────────────────────────


def _status_for(confidence: int) -> FieldStatus:
    if confidence >= 80:
        return FieldStatus.EXCELLENT
    if confidence >= 60:
        return FieldStatus.GOOD
    if confidence >= 40:
        return FieldStatus.ACCEPTABLE
    return FieldStatus.QUESTIONABLE


def validate_date(field: str, value: Any, today: date | None = None) -> FieldValidation:
    """Parse, score and normalise one date field. Never raises."""
    result = parse_date(value)
    validation = FieldValidation(field=field, kind=FieldKind.DATE, original_value=value)

    if not result.success:
        validation.final_value = value
        validation.confidence = 15 if result.raw_text else 0
        validation.status = FieldStatus.QUESTIONABLE
        validation.notes.append(f"Could not parse date '{result.raw_text}'")
        validation.warnings.append(f"{field}: unparseable date '{result.raw_text}'")
        return validation

    score = 30 if result.fuzzy else 50
    if result.fuzzy:
        validation.notes.append(f"Parsed by fuzzy fallback: '{result.raw_text}' -> {result.iso}")
    if is_reasonable(result.parsed_date, today):
        score += 35
    else:
        score += 10
        validation.notes.append(f"Date {result.iso} is outside the expected range")
    score += 15

    validation.final_value = result.iso
    validation.confidence = min(100, score)
    validation.status = _status_for(validation.confidence)
    validation.corrections.extend(result.corrections)
    if result.iso != result.raw_text:
        validation.notes.append(f"Normalized '{result.raw_text}' to {result.iso}")
    if validation.status == FieldStatus.QUESTIONABLE:
        validation.warnings.append(f"{field}: low-confidence date {result.iso}")
    return validation
