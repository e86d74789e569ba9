"""
Fleet Reconciler: FastAPI Server
================================

Thin HTTP host around one VehicleReconciler. No auth, no persistence beyond
an optional JSON backup imported at startup (FLEET_STATE_FILE).

Endpoints:
    POST /documents                                   Add one extracted document
    POST /validate                                    Validate an extraction (no state change)
    GET  /vehicles                                    All vehicles, highest risk first
    GET  /vehicles/expiring?days=30                   Vehicles with documents expiring soon
    GET  /vehicles/search?make=...                    Filter vehicles
    GET  /vehicles/{vin}                              One vehicle (VIN or alias)
    POST /vehicles/{vin}/conflicts/{conflict_id}/resolve
    POST /aliases                                     Register a VIN alias
    GET  /fleet/stats                                 Fleet statistics
    GET  /fleet/export                                Export engine state
    POST /fleet/import                                Replace engine state
    GET  /health                                      Health and readiness check

Run:
    uvicorn api:app --reload              # Dev (http://localhost:8000)

Docs:
    http://localhost:8000/docs             # Swagger UI (auto-generated)
"""

from __future__ import annotations

import json
import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from fleet_reconciler import __version__
from fleet_reconciler.config import Settings
from fleet_reconciler.exceptions import ReconcilerError, StateImportError
from fleet_reconciler.models import (
    AddDocumentResult,
    Conflict,
    DocumentMetadata,
    ExpiringVehicle,
    FleetStats,
    OverallStatus,
    SearchCriteria,
    ValidationResult,
    VehicleRecord,
)
from fleet_reconciler.reconciler import VehicleReconciler
from fleet_reconciler.validator import validate_extraction

logger = logging.getLogger(__name__)


# ─── Application Lifespan ───────────────────────────────────────────

_reconciler: VehicleReconciler | None = None


def _load_backup(reconciler: VehicleReconciler, path: str) -> None:
    backup = Path(path)
    if not backup.is_file():
        logger.info("No state backup at %s; starting empty", backup)
        return
    try:
        reconciler.import_state(json.loads(backup.read_text(encoding="utf-8")))
    except (OSError, json.JSONDecodeError, StateImportError) as exc:
        logger.error("Could not restore state from %s: %s", backup, exc)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the engine (and restore the optional backup) on startup."""
    global _reconciler  # noqa: PLW0603
    settings = Settings.from_env()
    logging.basicConfig(level=settings.log_level)
    _reconciler = VehicleReconciler(settings)
    if settings.state_file:
        _load_backup(_reconciler, settings.state_file)
    yield
    _reconciler = None


# ─── FastAPI App ─────────────────────────────────────────────────────

app = FastAPI(
    title="Fleet Reconciler API",
    description=(
        "Document reconciliation for fleet compliance. Validates noisy OCR "
        "extractions, merges them into per-vehicle records, tracks conflicts "
        "and derives compliance scores."
    ),
    version=__version__,
    lifespan=lifespan,
)

_STATUS_BY_CODE = {
    "VEHICLE_NOT_FOUND": 404,
    "CONFLICT_NOT_FOUND": 404,
    "ALIAS_CONFLICT": 409,
    "STATE_IMPORT_FAILED": 422,
}


@app.exception_handler(ReconcilerError)
async def _reconciler_error(request: Request, exc: ReconcilerError) -> JSONResponse:
    return JSONResponse(
        status_code=_STATUS_BY_CODE.get(exc.code, 400),
        content={"detail": str(exc), "code": exc.code, "details": exc.details},
    )


# ─── Request / Response Schemas ─────────────────────────────────────


class AddDocumentRequest(BaseModel):
    """Request body for POST /documents."""

    document: dict[str, Any] = Field(
        ...,
        description="Raw extraction as produced by the OCR/LLM collaborator.",
        json_schema_extra={
            "example": {
                "documentType": "registration",
                "extractedData": {
                    "vin": "1HGBH41JXMN109186",
                    "expirationDate": "12/31/2026",
                    "make": "Honda",
                    "licensePlate": "7ABC123",
                },
                "confidence": 92,
            }
        },
    )
    metadata: Optional[DocumentMetadata] = None


class ValidateRequest(BaseModel):
    document: dict[str, Any]


class AliasRequest(BaseModel):
    alias: str = Field(..., min_length=1)
    canonical: str = Field(..., min_length=1)


class ResolveConflictRequest(BaseModel):
    note: Optional[str] = None


class HealthResponse(BaseModel):
    status: str
    version: str
    vehicles_tracked: int


# ─── Helpers ─────────────────────────────────────────────────────────


def _get_reconciler() -> VehicleReconciler:
    if _reconciler is None:
        raise HTTPException(status_code=503, detail="Reconciler not initialised")
    return _reconciler


# ─── Documents ───────────────────────────────────────────────────────


@app.post("/documents", summary="Add an extracted document", tags=["Documents"])
def add_document(request: AddDocumentRequest) -> AddDocumentResult:
    """Validate one extraction and merge it into its vehicle.

    `success` is false (and nothing is stored) when no usable VIN was found.
    """
    return _get_reconciler().add_document(request.document, request.metadata)


@app.post("/validate", summary="Validate an extraction without storing it", tags=["Documents"])
def validate_document(request: ValidateRequest) -> ValidationResult:
    reconciler = _get_reconciler()
    return validate_extraction(request.document, reconciler.today())


# ─── Vehicles ────────────────────────────────────────────────────────


@app.get("/vehicles", summary="List vehicles, highest risk first", tags=["Vehicles"])
def list_vehicles() -> list[VehicleRecord]:
    return _get_reconciler().get_all_vehicles()


@app.get("/vehicles/expiring", summary="Vehicles with documents expiring soon", tags=["Vehicles"])
def expiring_vehicles(days: int = 30) -> list[ExpiringVehicle]:
    return _get_reconciler().get_expiring_soon(days)


@app.get("/vehicles/search", summary="Search vehicles", tags=["Vehicles"])
def search_vehicles(
    vin: Optional[str] = None,
    make: Optional[str] = None,
    model: Optional[str] = None,
    license_plate: Optional[str] = None,
    state: Optional[str] = None,
    compliance_status: Optional[OverallStatus] = None,
    has_conflicts: Optional[bool] = None,
    expires_within_days: Optional[int] = None,
) -> list[VehicleRecord]:
    criteria = SearchCriteria(
        vin=vin,
        make=make,
        model=model,
        license_plate=license_plate,
        state=state,
        compliance_status=compliance_status,
        has_conflicts=has_conflicts,
        expires_within_days=expires_within_days,
    )
    return _get_reconciler().search_vehicles(criteria)


@app.get(
    "/vehicles/{vin}",
    summary="Get one vehicle",
    tags=["Vehicles"],
    responses={404: {"description": "Unknown VIN"}},
)
def get_vehicle(vin: str) -> VehicleRecord:
    vehicle = _get_reconciler().get_vehicle(vin)
    if vehicle is None:
        raise HTTPException(status_code=404, detail=f"No vehicle with VIN {vin!r}")
    return vehicle


@app.post(
    "/vehicles/{vin}/conflicts/{conflict_id}/resolve",
    summary="Resolve an active conflict",
    tags=["Vehicles"],
    responses={404: {"description": "Unknown VIN or conflict"}},
)
def resolve_conflict(
    vin: str, conflict_id: str, request: Optional[ResolveConflictRequest] = None
) -> Conflict:
    note = request.note if request else None
    return _get_reconciler().resolve_conflict(vin, conflict_id, note)


@app.post(
    "/aliases",
    summary="Register a VIN alias",
    tags=["Vehicles"],
    responses={404: {"description": "Unknown canonical VIN"}, 409: {"description": "Alias conflict"}},
)
def register_alias(request: AliasRequest) -> VehicleRecord:
    return _get_reconciler().register_alias(request.alias, request.canonical)


# ─── Fleet ───────────────────────────────────────────────────────────


@app.get("/fleet/stats", summary="Fleet statistics", tags=["Fleet"])
def fleet_stats() -> FleetStats:
    return _get_reconciler().get_stats()


@app.get("/fleet/export", summary="Export engine state", tags=["Fleet"])
def export_state() -> dict[str, Any]:
    return _get_reconciler().export_state()


@app.post(
    "/fleet/import",
    summary="Replace engine state with an export",
    tags=["Fleet"],
    responses={422: {"description": "State tree does not validate"}},
)
def import_state(state: dict[str, Any]) -> dict[str, int]:
    return {"vehicles_imported": _get_reconciler().import_state(state)}


@app.get(
    "/health",
    summary="Health check",
    tags=["System"],
    responses={503: {"description": "Reconciler not yet initialised"}},
)
def health_check() -> HealthResponse:
    reconciler = _get_reconciler()
    return HealthResponse(status="healthy", version=__version__, vehicles_tracked=len(reconciler))
