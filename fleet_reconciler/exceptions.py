"""
Custom exception hierarchy for the reconciliation engine.

Noisy extraction data never raises: it degrades confidence instead.
These exceptions cover the host-facing operations that receive bad
identifiers or bad state (unknown VIN, unknown conflict, corrupt backup).
"""

from __future__ import annotations


class ReconcilerError(Exception):
    """Base exception for all reconciliation engine failures."""

    def __init__(self, code: str, message: str, details: dict | None = None):
        self.code = code
        self.details = details or {}
        super().__init__(message)


class VehicleNotFoundError(ReconcilerError):
    """No vehicle is keyed on (or aliased to) the requested VIN."""

    def __init__(self, message: str, details: dict | None = None):
        super().__init__("VEHICLE_NOT_FOUND", message, details)


class ConflictNotFoundError(ReconcilerError):
    """The vehicle has no active conflict with the requested id."""

    def __init__(self, message: str, details: dict | None = None):
        super().__init__("CONFLICT_NOT_FOUND", message, details)


class AliasConflictError(ReconcilerError):
    """An alias would shadow another vehicle's canonical VIN."""

    def __init__(self, message: str, details: dict | None = None):
        super().__init__("ALIAS_CONFLICT", message, details)


class StateImportError(ReconcilerError):
    """An exported state tree could not be restored."""

    def __init__(self, message: str, details: dict | None = None):
        super().__init__("STATE_IMPORT_FAILED", message, details)
