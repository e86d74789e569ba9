"""
Pairwise conflict detection between documents of the same type.

Conflicts are informational data, never errors, and never auto-resolved.
Comparison is deterministic: trimmed, case-insensitive string equality for
descriptive fields, and a one-day tolerance for expiration dates.
"""

from __future__ import annotations

from datetime import date
from typing import Any, Iterable

from .classification import CONFLICT_FIELD_KEYS, first_value, is_empty
from .models import Conflict, ConflictSeverity, ConflictType, DocumentRecord

DATE_MISMATCH_TOLERANCE_DAYS = 1


def _normalize(value: Any) -> str:
    return str(value).strip().lower()


def _date_gap(a: str, b: str) -> int | None:
    try:
        return abs((date.fromisoformat(a) - date.fromisoformat(b)).days)
    except ValueError:
        return None


def _date_mismatch(existing: DocumentRecord, new: DocumentRecord) -> Conflict | None:
    if not existing.expiration_date or not new.expiration_date:
        return None
    gap = _date_gap(existing.expiration_date, new.expiration_date)
    if gap is None or gap <= DATE_MISMATCH_TOLERANCE_DAYS:
        return None
    return Conflict(
        type=ConflictType.DATE_MISMATCH,
        severity=ConflictSeverity.MEDIUM,
        field="expiration_date",
        description=(
            f"{new.document_type.value} expiration dates differ: "
            f"{existing.file_name} ({existing.expiration_date}) vs "
            f"{new.file_name} ({new.expiration_date})"
        ),
        conflicting_documents=(existing.id, new.id),
        suggested_resolution="Verify which document is more recent and accurate",
    )


def _data_inconsistencies(existing: DocumentRecord, new: DocumentRecord) -> list[Conflict]:
    conflicts: list[Conflict] = []
    for field, keys in CONFLICT_FIELD_KEYS.items():
        old_value = first_value(existing.extracted_data, keys)
        new_value = first_value(new.extracted_data, keys)
        if is_empty(old_value) or is_empty(new_value):
            continue
        if _normalize(old_value) == _normalize(new_value):
            continue
        conflicts.append(
            Conflict(
                type=ConflictType.DATA_INCONSISTENCY,
                severity=ConflictSeverity.LOW,
                field=field,
                description=(
                    f'Vehicle {field} mismatch: {existing.file_name} has "{old_value}", '
                    f'{new.file_name} has "{new_value}"'
                ),
                conflicting_documents=(existing.id, new.id),
                suggested_resolution="Use the value from the more recent or reliable document",
            )
        )
    return conflicts


def detect_conflicts(new: DocumentRecord, existing: Iterable[DocumentRecord]) -> list[Conflict]:
    """Conflicts between a new document and the same-type documents already on file."""
    conflicts: list[Conflict] = []
    for other in existing:
        if other.id == new.id or other.document_type != new.document_type:
            continue
        mismatch = _date_mismatch(other, new)
        if mismatch is not None:
            conflicts.append(mismatch)
        conflicts.extend(_data_inconsistencies(other, new))
    return conflicts
