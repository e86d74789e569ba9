"""
Reconciliation engine: the per-vehicle aggregate store.

Flow for one document:
  ┌────────────────┐
  │ Raw extraction │
  └───────┬────────┘
          │
  ┌───────▼────────┐
  │   Validator    │   ← VIN / date / text fields scored & corrected
  └───────┬────────┘
          │
  ┌───────▼────────┐
  │  VIN + alias   │   ← Canonical key, or reject the document
  └───────┬────────┘
          │
  ┌───────▼────────┐
  │   Conflicts    │   ← Against same-type documents already on file
  └───────┬────────┘
          │
  ┌───────▼────────┐
  │   Compliance   │   ← Category, overall, score, risk
  └────────────────┘

Design principles:
  - Hosts construct a VehicleReconciler. There is no module-level instance.
  - A document without a usable VIN is the ONLY hard failure, and it is
    reported in the result, not raised.
  - One lock per VIN serialises mutation of one vehicle; the store lock
    guards only the shared maps. The VIN lock is always taken first, and
    the store lock is never held while waiting for a VIN lock.
  - Readers refresh time-dependent fields lazily and get deep copies.
  - import_state waits out in-flight mutations and holds off new ones while
    it swaps the store.
"""

from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from datetime import date
from typing import Any, Callable, Iterator, Optional
from uuid import uuid4

from pydantic import ValidationError

from .classification import (
    DATE_FIELD_KEYS,
    DESCRIPTIVE_FIELD_KEYS,
    first_value,
    infer_document_type,
    is_empty,
)
from .compliance import (
    RISK_ORDER,
    days_until,
    refresh_vehicle,
    round_half_up,
    urgency_for,
)
from .config import Settings
from .conflicts import detect_conflicts
from .dates import normalize_date
from .exceptions import (
    AliasConflictError,
    ConflictNotFoundError,
    StateImportError,
    VehicleNotFoundError,
)
from .models import (
    AddDocumentResult,
    ComplianceBreakdown,
    ComplianceHistory,
    Conflict,
    ConflictsSummary,
    DocumentMetadata,
    DocumentRecord,
    DocumentStatus,
    DocumentsPerVehicle,
    ExpirationAlert,
    ExpiringDocument,
    ExpiringVehicle,
    FieldKind,
    FleetSnapshot,
    FleetStats,
    RawExtraction,
    SearchCriteria,
    TimelineEntry,
    UpcomingExpiration,
    ValidationDigest,
    ValidationResult,
    VehicleRecord,
    utcnow,
)
from .validator import coerce_extraction, merged_fields, validate_extraction
from .vin import (
    clean_vin,
    correct_ocr_errors,
    extract_vin_token,
    is_well_formed,
    select_vin_candidate,
)

logger = logging.getLogger(__name__)

LOW_CONFIDENCE_WARNING = 70
MAX_ACTIVE_CONFLICTS = 3
LOW_SCORE_WARNING = 50


class VehicleReconciler:
    """Merges documents into authoritative per-vehicle compliance records.

    Usage:
        reconciler = VehicleReconciler()
        result = reconciler.add_document(extraction, {"fileName": "reg.pdf"})
        if result.success:
            vehicle = reconciler.get_vehicle(result.vehicle_vin)
    """

    def __init__(
        self,
        settings: Settings | None = None,
        today: Callable[[], date] = date.today,
    ):
        self.settings = settings or Settings()
        self._today = today
        self._vehicles: dict[str, VehicleRecord] = {}
        self._aliases: dict[str, str] = {}
        self._document_index: dict[str, str] = {}
        self._store_lock = threading.RLock()
        self._vin_locks: dict[str, threading.Lock] = {}
        # Mutations in flight; import_state waits for zero before swapping the store.
        self._gate = threading.Condition()
        self._mutations = 0
        self._importing = False

    def today(self) -> date:
        return self._today()

    def __len__(self) -> int:
        with self._store_lock:
            return len(self._vehicles)

    # ─── Locking ────────────────────────────────────────────────────

    def _vin_lock(self, vin: str) -> threading.Lock:
        with self._store_lock:
            return self._vin_locks.setdefault(vin, threading.Lock())

    @contextmanager
    def _mutating(self) -> Iterator[None]:
        with self._gate:
            while self._importing:
                self._gate.wait()
            self._mutations += 1
        try:
            yield
        finally:
            with self._gate:
                self._mutations -= 1
                self._gate.notify_all()

    @contextmanager
    def _quiesced(self) -> Iterator[None]:
        """Hold off new mutations and wait out the ones in flight."""
        with self._gate:
            while self._importing:
                self._gate.wait()
            self._importing = True
            while self._mutations:
                self._gate.wait()
        try:
            yield
        finally:
            with self._gate:
                self._importing = False
                self._gate.notify_all()

    def _canonical(self, vin: str) -> str:
        with self._store_lock:
            return self._aliases.get(vin, vin)

    def _refresh(self, vehicle: VehicleRecord) -> None:
        refresh_vehicle(vehicle, self._today(), self.settings.expires_soon_days)

    def _snapshot(self, vin: str) -> Optional[VehicleRecord]:
        with self._store_lock:
            vehicle = self._vehicles.get(vin)
        if vehicle is None:
            return None
        with self._vin_lock(vin):
            self._refresh(vehicle)
            return vehicle.model_copy(deep=True)

    def _snapshots(self) -> list[VehicleRecord]:
        with self._store_lock:
            vins = list(self._vehicles)
        snapshots = (self._snapshot(vin) for vin in vins)
        return [s for s in snapshots if s is not None]

    # ─── Ingestion ──────────────────────────────────────────────────

    def add_document(
        self,
        document: Any,
        metadata: DocumentMetadata | dict | None = None,
    ) -> AddDocumentResult:
        """Validate one extraction and merge it into its vehicle's record.

        Args:
            document: Raw extraction (dict or RawExtraction); any field may be absent.
            metadata: File name, upload date, source and optional document id.

        Returns:
            AddDocumentResult with snapshots of the new document and the vehicle.
            success=False (and no state change) when no usable VIN was found.
        """
        meta = _coerce_metadata(metadata)
        today = self._today()

        # ── Step 1: Validate the extraction ─────────────────────────
        extraction, coercion_notes = coerce_extraction(document)
        validation = validate_extraction(extraction, today)
        validation.notes[:0] = [n for n in coercion_notes if n not in validation.notes]
        file_name = meta.file_name or extraction.file_name or "untitled"

        # ── Step 2: Choose the VIN ──────────────────────────────────
        vin_fields = validation.fields_of_kind(FieldKind.VIN)
        chosen = select_vin_candidate(vin_fields)
        aliases: list[str] = []
        if chosen is not None:
            vin = chosen.final_value
            if chosen.corrections:
                aliases.append(clean_vin(chosen.original_value)[: len(vin)])
            aliases.extend(
                f.final_value for f in vin_fields
                if f is not chosen and is_well_formed(f.final_value) and f.final_value != vin
            )
        else:
            vin = _scan_for_vin(extraction)

        if not vin:
            logger.warning("Rejected document %r: no usable VIN", file_name)
            return AddDocumentResult(
                success=False,
                warnings=[f"No usable VIN found in document '{file_name}'"] + validation.warnings,
                validation=validation,
            )

        with self._mutating():
            canonical = self._canonical(vin)
            with self._vin_lock(canonical):
                # ── Step 3: Look up or create the vehicle ───────────────
                with self._store_lock:
                    vehicle = self._vehicles.get(canonical)
                    if vehicle is None:
                        vehicle = VehicleRecord(vin=canonical)
                        self._vehicles[canonical] = vehicle
                        logger.info("Created vehicle %s", canonical)
                    doc_id = meta.document_id
                    if not doc_id or doc_id in self._document_index:
                        doc_id = f"doc_{uuid4().hex[:12]}"
                    self._document_index[doc_id] = canonical
                for alias in aliases:
                    self._attach_alias(vehicle, alias)

                # ── Step 4: Build the document record ───────────────────
                record = self._build_document(
                    extraction, meta, validation, doc_id, vin, file_name, today
                )

                # ── Step 5: Detect conflicts ────────────────────────────
                conflicts = detect_conflicts(
                    record, vehicle.documents_of_type(record.document_type)
                )
                record.conflicts.extend(c.id for c in conflicts)

                # ── Step 6: Attach and backfill ─────────────────────────
                vehicle.documents[record.id] = record
                vehicle.documents_by_type.setdefault(record.document_type, []).append(record.id)
                vehicle.active_conflicts.extend(conflicts)
                _backfill(vehicle, record.extracted_data)

                # ── Step 7: Recompute compliance ────────────────────────
                self._refresh(vehicle)

                # ── Step 8: Timeline ────────────────────────────────────
                _record_history(vehicle, record, today)
                vehicle.last_updated = utcnow()

                warnings = _document_warnings(vehicle, record, conflicts, validation, today)
                logger.info(
                    "Added %s document %s to %s (%d conflict(s), score %d)",
                    record.document_type.value, record.id, canonical,
                    len(conflicts), vehicle.compliance_score,
                )
                return AddDocumentResult(
                    success=True,
                    vehicle_vin=canonical,
                    conflicts=[c.model_copy(deep=True) for c in conflicts],
                    warnings=warnings,
                    document=record.model_copy(deep=True),
                    vehicle=vehicle.model_copy(deep=True),
                    validation=validation,
                )

    def _build_document(
        self,
        extraction: RawExtraction,
        meta: DocumentMetadata,
        validation: ValidationResult,
        doc_id: str,
        vin: str,
        file_name: str,
        today: date,
    ) -> DocumentRecord:
        fields = merged_fields(extraction)
        document_type = infer_document_type(extraction.document_type, file_name)

        confidence = extraction.confidence
        if confidence is None and extraction.flexible_validation is not None:
            confidence = extraction.flexible_validation.confidence_score
        if confidence is None:
            confidence = float(self.settings.default_confidence)

        processing_notes = list(validation.notes)
        dates: dict[str, Optional[str]] = {}
        for name, keys in DATE_FIELD_KEYS.items():
            raw = first_value(fields, keys)
            dates[name] = normalize_date(raw)
            if raw is not None and dates[name] is None:
                processing_notes.append(f"Ignored unparseable {name.replace('_', ' ')} '{raw}'")
        processing_notes.append(f"Document type: {document_type.value}")
        logger.debug("Document %s classified as %s", doc_id, document_type.value)

        return DocumentRecord(
            id=doc_id,
            file_name=file_name,
            document_type=document_type,
            vin=vin,
            extracted_data=fields,
            confidence=confidence,
            upload_date=meta.upload_date or extraction.upload_date or today.isoformat(),
            source=meta.source or extraction.source,
            processing_notes=processing_notes,
            validation=ValidationDigest(
                status=validation.status,
                confidence_score=validation.confidence_score,
                processing_recommendation=validation.processing_recommendation,
                warnings=list(validation.warnings),
            ),
            **dates,
        )

    # ─── Aliases ────────────────────────────────────────────────────

    def _attach_alias(self, vehicle: VehicleRecord, alias: str) -> bool:
        """Map alias to the vehicle. Caller holds the vehicle's VIN lock."""
        if not alias or alias == vehicle.vin:
            return False
        with self._store_lock:
            if alias in self._vehicles:
                logger.warning("Alias %s is the canonical VIN of another vehicle; skipped", alias)
                return False
            owner = self._aliases.get(alias)
            if owner is not None and owner != vehicle.vin:
                logger.warning("Alias %s already maps to %s; skipped", alias, owner)
                return False
            self._aliases[alias] = vehicle.vin
        if alias not in vehicle.alternative_vins:
            vehicle.alternative_vins = sorted({*vehicle.alternative_vins, alias})
        return True

    def register_alias(self, alias: str, canonical: str) -> VehicleRecord:
        """Register `alias` as another spelling of an existing vehicle's VIN.

        Raises:
            VehicleNotFoundError: `canonical` does not resolve to a vehicle.
            AliasConflictError: `alias` is itself a vehicle's VIN or maps elsewhere.
        """
        with self._mutating():
            alias_vin = clean_vin(alias)
            target = self._canonical(clean_vin(canonical))
            with self._store_lock:
                vehicle = self._vehicles.get(target)
                if vehicle is None:
                    raise VehicleNotFoundError(
                        f"No vehicle with VIN {canonical!r}", {"vin": canonical}
                    )
                if alias_vin != target and alias_vin in self._vehicles:
                    raise AliasConflictError(
                        f"{alias_vin} is the VIN of another vehicle",
                        {"alias": alias_vin, "canonical": target},
                    )
                owner = self._aliases.get(alias_vin)
                if owner is not None and owner != target:
                    raise AliasConflictError(
                        f"{alias_vin} is already an alias of {owner}",
                        {"alias": alias_vin, "canonical": target, "existing": owner},
                    )

            with self._vin_lock(target):
                if self._attach_alias(vehicle, alias_vin):
                    logger.info("Registered alias %s -> %s", alias_vin, target)
                self._refresh(vehicle)
                return vehicle.model_copy(deep=True)

    # ─── Conflict Resolution ────────────────────────────────────────

    def resolve_conflict(self, vin: str, conflict_id: str, note: str | None = None) -> Conflict:
        """Move an active conflict to the resolved list. Human-driven only."""
        with self._mutating():
            target = self._canonical(clean_vin(vin))
            with self._store_lock:
                vehicle = self._vehicles.get(target)
            if vehicle is None:
                raise VehicleNotFoundError(f"No vehicle with VIN {vin!r}", {"vin": vin})

            with self._vin_lock(target):
                for index, conflict in enumerate(vehicle.active_conflicts):
                    if conflict.id == conflict_id:
                        break
                else:
                    raise ConflictNotFoundError(
                        f"Vehicle {target} has no active conflict {conflict_id!r}",
                        {"vin": target, "conflict_id": conflict_id},
                    )
                conflict = vehicle.active_conflicts.pop(index)
                conflict.resolved = True
                conflict.resolved_at = utcnow()
                conflict.resolution_note = note
                vehicle.resolved_conflicts.append(conflict)
                vehicle.last_updated = utcnow()
                self._refresh(vehicle)
                logger.info("Resolved conflict %s on %s", conflict_id, target)
                return conflict.model_copy(deep=True)

    # ─── Queries ────────────────────────────────────────────────────

    def get_vehicle(self, vin: str) -> Optional[VehicleRecord]:
        """Snapshot of one vehicle, looked up by canonical VIN or alias."""
        return self._snapshot(self._canonical(clean_vin(vin)))

    def get_all_vehicles(self) -> list[VehicleRecord]:
        """All vehicles, critical risk first, then by VIN."""
        return sorted(self._snapshots(), key=lambda v: (RISK_ORDER[v.risk_level], v.vin))

    def get_expiring_soon(self, days: int = 30) -> list[ExpiringVehicle]:
        """Vehicles with active documents expiring within `days` (expired ones included)."""
        today = self._today()
        results: list[ExpiringVehicle] = []
        for vehicle in self._snapshots():
            expiring = []
            for document in vehicle.documents.values():
                if document.status != DocumentStatus.ACTIVE:
                    continue
                remaining = days_until(document.expiration_date, today)
                if remaining is None or remaining > days:
                    continue
                expiring.append(
                    ExpiringDocument(
                        document_type=document.document_type,
                        document_id=document.id,
                        file_name=document.file_name,
                        expiration_date=document.expiration_date,
                        days_until_expiry=remaining,
                        urgency=urgency_for(remaining),
                    )
                )
            if expiring:
                expiring.sort(key=lambda d: d.days_until_expiry)
                results.append(
                    ExpiringVehicle(vin=vehicle.vin, vehicle=vehicle, expiring_documents=expiring)
                )
        results.sort(key=lambda r: (r.expiring_documents[0].days_until_expiry, r.vin))
        return results

    def search_vehicles(self, criteria: SearchCriteria | dict | None = None) -> list[VehicleRecord]:
        """Vehicles matching every set criterion, ordered like get_all_vehicles()."""
        if criteria is None:
            criteria = SearchCriteria()
        elif isinstance(criteria, dict):
            criteria = SearchCriteria.model_validate(criteria)
        today = self._today()
        return [v for v in self.get_all_vehicles() if _matches(v, criteria, today)]

    def get_stats(self) -> FleetStats:
        return _fleet_stats(self._snapshots(), self._today())

    # ─── Export / Import ────────────────────────────────────────────

    def export_state(self) -> dict[str, Any]:
        """JSON-serialisable snapshot: {vehicles, vinAliases, documentIndex, stats, exportDate}."""
        vehicles = self._snapshots()
        with self._store_lock:
            aliases = dict(self._aliases)
            document_index = dict(self._document_index)
        snapshot = FleetSnapshot(
            vehicles={v.vin: v for v in vehicles},
            vin_aliases=aliases,
            document_index=document_index,
            stats=_fleet_stats(vehicles, self._today()),
        )
        return snapshot.model_dump(mode="json", by_alias=True)

    def import_state(self, state: Any) -> int:
        """Replace all engine state with an exported tree. Returns the vehicle count.

        Raises:
            StateImportError: the tree does not validate or is internally inconsistent.
        """
        if not isinstance(state, dict):
            raise StateImportError(
                f"Expected an exported state object, got {type(state).__name__}"
            )
        try:
            snapshot = FleetSnapshot.model_validate(state)
        except ValidationError as exc:
            raise StateImportError(
                f"Exported state failed validation with {exc.error_count()} error(s)",
                {"errors": [f"{'.'.join(map(str, e['loc']))}: {e['msg']}" for e in exc.errors()]},
            ) from exc

        mismatched = [key for key, v in snapshot.vehicles.items() if key != v.vin]
        if mismatched:
            raise StateImportError(
                "Vehicle keys do not match their VINs", {"keys": sorted(mismatched)}
            )

        document_index = {
            doc_id: vin
            for vin, vehicle in snapshot.vehicles.items()
            for doc_id in vehicle.documents
        }
        aliases = {
            alias: vin
            for alias, vin in snapshot.vin_aliases.items()
            if vin in snapshot.vehicles and alias not in snapshot.vehicles
        }
        dropped = len(snapshot.vin_aliases) - len(aliases)
        if dropped:
            logger.warning("Dropped %d alias(es) pointing at unknown vehicles", dropped)

        with self._quiesced(), self._store_lock:
            self._vehicles = dict(snapshot.vehicles)
            self._aliases = aliases
            self._document_index = document_index
        logger.info(
            "Imported %d vehicle(s), %d document(s)", len(snapshot.vehicles), len(document_index)
        )
        return len(snapshot.vehicles)


# ─── Helpers ─────────────────────────────────────────────────────────


def _coerce_metadata(metadata: DocumentMetadata | dict | None) -> DocumentMetadata:
    if isinstance(metadata, DocumentMetadata):
        return metadata
    if isinstance(metadata, dict):
        try:
            return DocumentMetadata.model_validate(metadata)
        except ValidationError:
            logger.warning("Ignoring malformed document metadata")
    return DocumentMetadata()


def _scan_for_vin(extraction: RawExtraction) -> Optional[str]:
    """Last resort: look for a VIN-shaped token anywhere a collaborator may have put one."""
    candidates: list[Any] = [
        extraction.extracted_data.get("vin"),
        extraction.extracted_data.get("vinNumber"),
    ]
    if extraction.flexible_validation is not None:
        candidates.extend(
            item.value for item in extraction.flexible_validation.extracted_fields
            if "vin" in item.field.lower()
        )
    candidates.extend(extraction.vin_numbers[:1])
    candidates.extend(extraction.vins[:1])
    candidates.append(extraction.raw_text)

    for candidate in candidates:
        if is_empty(candidate):
            continue
        token = extract_vin_token(str(candidate))
        if token is None:
            cleaned, _ = correct_ocr_errors(clean_vin(candidate))
            token = cleaned if is_well_formed(cleaned) else None
        if token:
            return token
    return None


def _backfill(vehicle: VehicleRecord, fields: dict[str, Any]) -> None:
    for attribute, keys in DESCRIPTIVE_FIELD_KEYS.items():
        if getattr(vehicle, attribute):
            continue
        value = first_value(fields, keys)
        if not is_empty(value):
            setattr(vehicle, attribute, str(value).strip())


def _record_history(vehicle: VehicleRecord, record: DocumentRecord, today: date) -> None:
    history = vehicle.compliance_history.setdefault(
        record.document_type, ComplianceHistory(document_type=record.document_type)
    )
    history.timeline.append(
        TimelineEntry(
            document_id=record.id,
            document=record.file_name,
            details=f"Document processed with {record.confidence:g}% confidence",
        )
    )
    history.current_document = record.id
    remaining = days_until(record.expiration_date, today)
    history.upcoming_expiration = (
        UpcomingExpiration(
            document_id=record.id,
            document=record.file_name,
            expiration_date=record.expiration_date,
            days_until_expiry=remaining,
            urgency=urgency_for(remaining),
        )
        if remaining is not None
        else None
    )


def _document_warnings(
    vehicle: VehicleRecord,
    record: DocumentRecord,
    conflicts: list[Conflict],
    validation: ValidationResult,
    today: date,
) -> list[str]:
    warnings = list(validation.warnings)
    if record.confidence < LOW_CONFIDENCE_WARNING:
        warnings.append(f"Low extraction confidence ({record.confidence:g}%)")
    remaining = days_until(record.expiration_date, today)
    if remaining is not None and remaining < 0:
        warnings.append(f"{record.document_type.value} expired {-remaining} day(s) ago")
    elif remaining is not None and remaining <= 30:
        warnings.append(f"{record.document_type.value} expires soon ({remaining} day(s))")
    if conflicts:
        warnings.append(f"{len(conflicts)} conflict(s) detected")
    if len(vehicle.active_conflicts) > MAX_ACTIVE_CONFLICTS:
        warnings.append(
            f"Vehicle has {len(vehicle.active_conflicts)} active conflicts; review required"
        )
    if vehicle.compliance_score < LOW_SCORE_WARNING:
        warnings.append(f"Compliance score is low ({vehicle.compliance_score})")
    return list(dict.fromkeys(warnings))


def _matches(vehicle: VehicleRecord, criteria: SearchCriteria, today: date) -> bool:
    if criteria.vin:
        needle = clean_vin(criteria.vin)
        if not any(needle in vin for vin in (vehicle.vin, *vehicle.alternative_vins)):
            return False
    for attribute in ("make", "model"):
        wanted = getattr(criteria, attribute)
        if wanted and wanted.strip().lower() not in (getattr(vehicle, attribute) or "").lower():
            return False
    if criteria.license_plate:
        wanted = criteria.license_plate.replace(" ", "").lower()
        if wanted not in (vehicle.license_plate or "").replace(" ", "").lower():
            return False
    if criteria.state and criteria.state.strip().lower() != (vehicle.state or "").lower():
        return False
    if criteria.compliance_status and vehicle.compliance_status.overall != criteria.compliance_status:
        return False
    if criteria.has_conflicts is not None and bool(vehicle.active_conflicts) != criteria.has_conflicts:
        return False
    if criteria.expires_within_days is not None:
        window = criteria.expires_within_days
        remaining = (
            days_until(d.expiration_date, today)
            for d in vehicle.documents.values()
            if d.status == DocumentStatus.ACTIVE
        )
        if not any(r is not None and 0 <= r <= window for r in remaining):
            return False
    return True


def _fleet_stats(vehicles: list[VehicleRecord], today: date) -> FleetStats:
    counts = [v.document_count for v in vehicles]
    breakdown = ComplianceBreakdown()
    conflicts = ConflictsSummary()
    alert = ExpirationAlert()

    for vehicle in vehicles:
        field = vehicle.compliance_status.overall.value
        setattr(breakdown, field, getattr(breakdown, field) + 1)

        conflicts.active += len(vehicle.active_conflicts)
        conflicts.resolved += len(vehicle.resolved_conflicts)
        for conflict in vehicle.active_conflicts:
            conflicts.by_type[conflict.type.value] = conflicts.by_type.get(conflict.type.value, 0) + 1
            conflicts.by_severity[conflict.severity.value] = (
                conflicts.by_severity.get(conflict.severity.value, 0) + 1
            )

        for document in vehicle.documents.values():
            if document.status != DocumentStatus.ACTIVE:
                continue
            remaining = days_until(document.expiration_date, today)
            if remaining is None:
                continue
            if remaining < 0:
                alert.expired += 1
            elif remaining == 0:
                alert.expires_today += 1
            elif remaining <= 7:
                alert.expires_this_week += 1
            elif remaining <= 30:
                alert.expires_this_month += 1

    return FleetStats(
        total_vehicles=len(vehicles),
        total_documents=sum(counts),
        documents_per_vehicle=DocumentsPerVehicle(
            avg=round_half_up(sum(counts) / len(counts)) if counts else 0,
            min=min(counts, default=0),
            max=max(counts, default=0),
        ),
        compliance_breakdown=breakdown,
        conflicts_summary=conflicts,
        expiration_alert=alert,
    )
