"""
Reconciliation engine tests: ingestion, conflicts, aliases, queries,
export/import and concurrency.

Every test gets a fresh VehicleReconciler pinned to a fixed 'today'
(see the `reconciler` fixture in conftest.py).
"""

from __future__ import annotations

import json
import threading
from concurrent.futures import ThreadPoolExecutor, wait
from datetime import date, timedelta
from typing import Any, Optional

import pytest

from conftest import TODAY
from fleet_reconciler.compliance import risk_from_score
from fleet_reconciler.config import Settings
from fleet_reconciler.exceptions import (
    AliasConflictError,
    ConflictNotFoundError,
    StateImportError,
    VehicleNotFoundError,
)
from fleet_reconciler.models import (
    CategoryStatus,
    ConflictSeverity,
    ConflictType,
    DocumentStatus,
    DocumentType,
    OverallStatus,
    RiskLevel,
    SearchCriteria,
    Urgency,
)
import fleet_reconciler.reconciler as engine
from fleet_reconciler.reconciler import VehicleReconciler

VIN_A = "1HGBH41JXMN109186"
VIN_B = "1M8GDM9AXKP042788"


def _in(days: int) -> str:
    return (TODAY + timedelta(days=days)).isoformat()


def _make_extraction(
    document_type: str = "registration",
    vin: str = VIN_A,
    expires_in: Optional[int] = 200,
    confidence: Optional[float] = 100,
    **data: Any,
) -> dict[str, Any]:
    """Factory for one document's raw extraction."""
    extracted: dict[str, Any] = {"vin": vin, **data}
    if expires_in is not None:
        extracted["expirationDate"] = _in(expires_in)
    payload: dict[str, Any] = {"documentType": document_type, "extractedData": extracted}
    if confidence is not None:
        payload["confidence"] = confidence
    return payload


def _add_all_current(reconciler: VehicleReconciler, skip: tuple[str, ...] = ()) -> None:
    for document_type in ("registration", "insurance", "inspection", "cdl", "medical_certificate"):
        if document_type not in skip:
            reconciler.add_document(_make_extraction(document_type), {"fileName": f"{document_type}.pdf"})


# ═══════════════════════════════════════════════════════════════════════
# INGESTION
# ═══════════════════════════════════════════════════════════════════════


class TestAddDocument:
    def test_registration_creates_vehicle(self, reconciler):
        result = reconciler.add_document(
            _make_extraction(expires_in=45, make="Honda"), {"fileName": "reg.pdf"}
        )
        assert result.success
        assert result.vehicle_vin == VIN_A
        assert result.document.document_type == DocumentType.REGISTRATION
        assert result.document.expiration_date == _in(45)
        assert result.vehicle.compliance_status.registration.status == CategoryStatus.CURRENT
        assert result.vehicle.make == "Honda"
        assert len(reconciler) == 1

    def test_all_categories_current_is_compliant(self, reconciler):
        _add_all_current(reconciler)
        vehicle = reconciler.get_vehicle(VIN_A)
        assert vehicle.compliance_status.overall == OverallStatus.COMPLIANT
        assert vehicle.compliance_score == 100
        assert vehicle.risk_level == RiskLevel.LOW
        assert vehicle.document_count == 5

    def test_insurance_expiring_soon_with_default_confidence(self, reconciler):
        _add_all_current(reconciler, skip=("insurance",))
        result = reconciler.add_document(
            _make_extraction("insurance", expires_in=5, confidence=None),
            {"fileName": "insurance.pdf"},
        )
        vehicle = result.vehicle
        assert result.document.confidence == 50
        assert vehicle.compliance_status.insurance.status == CategoryStatus.EXPIRES_SOON
        assert vehicle.compliance_status.overall == OverallStatus.EXPIRES_SOON
        assert vehicle.risk_level == RiskLevel.MEDIUM
        assert 70 < vehicle.compliance_score < 100

    def test_no_vin_fails_without_mutation(self, reconciler):
        result = reconciler.add_document({"extractedData": {"make": "Honda"}}, {"fileName": "x.pdf"})
        assert not result.success
        assert result.vehicle_vin is None
        assert "No usable VIN" in result.warnings[0]
        assert len(reconciler) == 0
        assert reconciler.get_stats().total_documents == 0

    def test_garbage_payload_fails_softly(self, reconciler):
        assert not reconciler.add_document(None).success

    def test_vin_found_in_raw_text(self, reconciler):
        result = reconciler.add_document({"rawText": f"Unit VIN {VIN_B} registered to ACME"})
        assert result.success
        assert result.vehicle_vin == VIN_B

    def test_confidence_from_flexible_validation(self, reconciler):
        result = reconciler.add_document(
            {"extractedData": {"vin": VIN_A}, "flexibleValidation": {"confidence_score": "71%"}}
        )
        assert result.document.confidence == 71

    def test_configured_default_confidence(self):
        reconciler = VehicleReconciler(Settings(default_confidence=65), today=lambda: TODAY)
        result = reconciler.add_document(_make_extraction(confidence=None))
        assert result.document.confidence == 65

    def test_document_type_from_file_name(self, reconciler):
        payload = _make_extraction()
        del payload["documentType"]
        result = reconciler.add_document(payload, {"fileName": "fleet_insurance_card.jpg"})
        assert result.document.document_type == DocumentType.INSURANCE

    def test_metadata_fields_recorded(self, reconciler):
        result = reconciler.add_document(
            _make_extraction(),
            {"fileName": "reg.pdf", "uploadDate": "2025-05-30", "source": "email", "documentId": "doc-1"},
        )
        assert result.document.id == "doc-1"
        assert result.document.upload_date == "2025-05-30"
        assert result.document.source == "email"

    def test_duplicate_document_id_replaced(self, reconciler):
        first = reconciler.add_document(_make_extraction(), {"documentId": "doc-1"})
        second = reconciler.add_document(_make_extraction("cdl"), {"documentId": "doc-1"})
        assert first.document.id == "doc-1"
        assert second.document.id != "doc-1"

    def test_timeline_and_upcoming_expiration(self, reconciler):
        result = reconciler.add_document(_make_extraction(expires_in=5, confidence=90))
        history = result.vehicle.compliance_history[DocumentType.REGISTRATION]
        assert history.current_document == result.document.id
        assert history.timeline[0].action == "added"
        assert history.timeline[0].details == "Document processed with 90% confidence"
        assert history.upcoming_expiration.urgency == Urgency.CRITICAL

    def test_no_expiration_low_confidence_is_under_review(self, reconciler):
        result = reconciler.add_document(_make_extraction("cdl", expires_in=None, confidence=60))
        assert result.vehicle.compliance_status.cdl.status == CategoryStatus.UNDER_REVIEW

    def test_descriptive_fields_backfilled_not_overwritten(self, reconciler):
        reconciler.add_document(_make_extraction(make="Honda"))
        result = reconciler.add_document(_make_extraction("cdl", make="Acura", state="CA"))
        assert result.vehicle.make == "Honda"
        assert result.vehicle.state == "CA"

    def test_document_warnings(self, reconciler):
        result = reconciler.add_document(_make_extraction(expires_in=-3, confidence=40))
        assert "Low extraction confidence (40%)" in result.warnings
        assert "registration expired 3 day(s) ago" in result.warnings

    def test_value_objects_in_extracted_data(self, reconciler):
        result = reconciler.add_document(
            {
                "documentType": "insurance",
                "extractedData": {
                    "vin": {"value": VIN_A, "confidence": 95},
                    "expirationDate": {"value": "12/18/2025", "confidence": 90},
                    "make": {"value": "Honda", "confidence": 88},
                },
                "confidence": 95,
            }
        )
        assert result.success
        assert result.vehicle_vin == VIN_A
        assert result.document.expiration_date == "2025-12-18"
        assert result.document.extracted_data["make"] == "Honda"
        assert result.vehicle.make == "Honda"
        assert result.vehicle.compliance_status.insurance.status == CategoryStatus.CURRENT
        assert not any("unparseable" in n for n in result.document.processing_notes)

    def test_vin_numbers_value_objects(self, reconciler):
        result = reconciler.add_document({"vinNumbers": [{"value": VIN_B, "confidence": 80}]})
        assert result.vehicle_vin == VIN_B


# ═══════════════════════════════════════════════════════════════════════
# CONFLICTS
# ═══════════════════════════════════════════════════════════════════════


class TestConflicts:
    def test_insurance_ten_days_apart_is_one_date_mismatch(self, reconciler):
        first = reconciler.add_document(_make_extraction("insurance", expires_in=200))
        second = reconciler.add_document(_make_extraction("insurance", expires_in=210))
        assert len(second.conflicts) == 1
        conflict = second.conflicts[0]
        assert conflict.type == ConflictType.DATE_MISMATCH
        assert conflict.severity == ConflictSeverity.MEDIUM
        assert set(conflict.conflicting_documents) == {first.document.id, second.document.id}
        assert second.document.conflicts == [conflict.id]
        assert second.vehicle.compliance_status.overall == OverallStatus.NON_COMPLIANT

    def test_one_day_apart_is_tolerated(self, reconciler):
        reconciler.add_document(_make_extraction("insurance", expires_in=200))
        assert reconciler.add_document(_make_extraction("insurance", expires_in=201)).conflicts == []

    def test_different_types_never_conflict(self, reconciler):
        reconciler.add_document(_make_extraction("insurance", expires_in=200))
        assert reconciler.add_document(_make_extraction("registration", expires_in=300)).conflicts == []

    def test_make_mismatch_is_data_inconsistency(self, reconciler):
        reconciler.add_document(_make_extraction(make="Honda"))
        result = reconciler.add_document(_make_extraction(make="Toyota"))
        (conflict,) = result.conflicts
        assert conflict.type == ConflictType.DATA_INCONSISTENCY
        assert conflict.severity == ConflictSeverity.LOW
        assert conflict.field == "make"

    def test_case_and_whitespace_ignored(self, reconciler):
        reconciler.add_document(_make_extraction(make="Honda"))
        assert reconciler.add_document(_make_extraction(make=" HONDA ")).conflicts == []

    def test_conflict_warning_on_current_category(self, reconciler):
        reconciler.add_document(_make_extraction("insurance", expires_in=200))
        result = reconciler.add_document(_make_extraction("insurance", expires_in=210))
        assert result.vehicle.compliance_status.insurance.warnings == [result.conflicts[0].description]

    def test_resolve_conflict(self, reconciler):
        reconciler.add_document(_make_extraction("insurance", expires_in=200))
        conflict = reconciler.add_document(_make_extraction("insurance", expires_in=210)).conflicts[0]

        resolved = reconciler.resolve_conflict(VIN_A, conflict.id, "Renewal supersedes")
        assert resolved.resolved
        assert resolved.resolution_note == "Renewal supersedes"

        vehicle = reconciler.get_vehicle(VIN_A)
        assert vehicle.active_conflicts == []
        assert [c.id for c in vehicle.resolved_conflicts] == [conflict.id]
        assert vehicle.compliance_status.insurance.warnings == []
        assert vehicle.compliance_status.overall != OverallStatus.NON_COMPLIANT

    def test_resolve_unknown_conflict_raises(self, reconciler):
        reconciler.add_document(_make_extraction())
        with pytest.raises(ConflictNotFoundError):
            reconciler.resolve_conflict(VIN_A, "cfl_missing")

    def test_resolve_on_unknown_vehicle_raises(self, reconciler):
        with pytest.raises(VehicleNotFoundError):
            reconciler.resolve_conflict(VIN_B, "cfl_missing")


# ═══════════════════════════════════════════════════════════════════════
# VIN ALIASES
# ═══════════════════════════════════════════════════════════════════════


class TestAliases:
    def test_ocr_damaged_vin_keyed_on_corrected_value(self, reconciler):
        result = reconciler.add_document(_make_extraction(vin="1HGBH41JXMNIO9186"))
        assert result.vehicle_vin == VIN_A
        assert result.document.vin == VIN_A
        assert "1HGBH41JXMNIO9186" in result.vehicle.alternative_vins

    def test_lookup_by_alias(self, reconciler):
        reconciler.add_document(_make_extraction(vin="1HGBH41JXMNIO9186"))
        assert reconciler.get_vehicle("1HGBH41JXMNIO9186").vin == VIN_A

    def test_extra_vin_candidates_become_aliases(self, reconciler):
        payload = _make_extraction()
        payload["vin_numbers"] = ["1HGBH41JXMN10918"]
        result = reconciler.add_document(payload)
        assert result.vehicle.alternative_vins == ["1HGBH41JXMN10918"]
        assert reconciler.get_vehicle("1HGBH41JXMN10918").vin == VIN_A

    def test_register_alias_merges_future_documents(self, reconciler):
        reconciler.add_document(_make_extraction())
        reconciler.register_alias("1HGBH41JXMN10918", VIN_A)
        result = reconciler.add_document(_make_extraction("cdl", vin="1HGBH41JXMN10918"))
        assert result.vehicle_vin == VIN_A
        assert len(reconciler) == 1

    def test_alias_cannot_shadow_another_vehicle(self, reconciler):
        reconciler.add_document(_make_extraction(vin=VIN_A))
        reconciler.add_document(_make_extraction(vin=VIN_B))
        with pytest.raises(AliasConflictError):
            reconciler.register_alias(VIN_B, VIN_A)

    def test_alias_for_unknown_vehicle_raises(self, reconciler):
        with pytest.raises(VehicleNotFoundError):
            reconciler.register_alias("1HGBH41JXMN10918", VIN_A)


# ═══════════════════════════════════════════════════════════════════════
# QUERIES
# ═══════════════════════════════════════════════════════════════════════


class TestQueries:
    def test_get_vehicle_unknown_is_none(self, reconciler):
        assert reconciler.get_vehicle(VIN_A) is None

    def test_snapshots_are_deep_copies(self, reconciler):
        reconciler.add_document(_make_extraction())
        snapshot = reconciler.get_vehicle(VIN_A)
        snapshot.documents.clear()
        snapshot.compliance_status.registration.status = CategoryStatus.EXPIRED
        fresh = reconciler.get_vehicle(VIN_A)
        assert fresh.document_count == 1
        assert fresh.compliance_status.registration.status == CategoryStatus.CURRENT

    def test_all_vehicles_ordered_by_risk(self, reconciler):
        _add_all_current(reconciler)
        reconciler.add_document(_make_extraction(vin=VIN_B))
        vehicles = reconciler.get_all_vehicles()
        assert [v.vin for v in vehicles] == [VIN_B, VIN_A]
        assert vehicles[0].risk_level == RiskLevel.CRITICAL

    def test_expiring_soon(self, reconciler):
        reconciler.add_document(_make_extraction("insurance", expires_in=5))
        reconciler.add_document(_make_extraction("insurance", vin=VIN_B, expires_in=90))
        (expiring,) = reconciler.get_expiring_soon(30)
        assert expiring.vin == VIN_A
        assert expiring.expiring_documents[0].urgency == Urgency.CRITICAL
        assert expiring.expiring_documents[0].days_until_expiry == 5

    def test_superseded_documents_not_reported_as_expiring(self, reconciler):
        old = reconciler.add_document(_make_extraction("insurance", expires_in=-10))
        reconciler.add_document(_make_extraction("insurance", expires_in=200))
        vehicle = reconciler.get_vehicle(VIN_A)
        assert vehicle.documents[old.document.id].status == DocumentStatus.SUPERSEDED
        assert vehicle.compliance_status.insurance.status == CategoryStatus.CURRENT
        assert reconciler.get_expiring_soon(30) == []

    def test_search(self, reconciler):
        reconciler.add_document(_make_extraction(make="Honda", licensePlate="7ABC 123", state="CA"))
        reconciler.add_document(_make_extraction(vin=VIN_B, make="Motor Coach", expires_in=10))
        assert [v.vin for v in reconciler.search_vehicles({"make": "honda"})] == [VIN_A]
        assert [v.vin for v in reconciler.search_vehicles({"licensePlate": "7abc123"})] == [VIN_A]
        assert [v.vin for v in reconciler.search_vehicles({"state": "ca"})] == [VIN_A]
        assert [v.vin for v in reconciler.search_vehicles({"vin": "M8GDM"})] == [VIN_B]
        assert [v.vin for v in reconciler.search_vehicles({"expiresWithinDays": 30})] == [VIN_B]
        assert reconciler.search_vehicles(SearchCriteria(has_conflicts=True)) == []
        assert len(reconciler.search_vehicles()) == 2

    def test_search_by_compliance_status(self, reconciler):
        _add_all_current(reconciler)
        reconciler.add_document(_make_extraction(vin=VIN_B))
        matches = reconciler.search_vehicles({"complianceStatus": "compliant"})
        assert [v.vin for v in matches] == [VIN_A]

    def test_stats(self, reconciler):
        _add_all_current(reconciler)
        reconciler.add_document(_make_extraction("insurance", vin=VIN_B, expires_in=3))
        reconciler.add_document(_make_extraction("insurance", vin=VIN_B, expires_in=-2))
        stats = reconciler.get_stats()
        assert stats.total_vehicles == 2
        assert stats.total_documents == 7
        assert (stats.documents_per_vehicle.min, stats.documents_per_vehicle.max) == (2, 5)
        assert stats.documents_per_vehicle.avg == 4
        assert stats.compliance_breakdown.compliant == 1
        assert stats.compliance_breakdown.non_compliant == 1
        assert stats.conflicts_summary.active == 1
        assert stats.conflicts_summary.by_type == {"date_mismatch": 1}
        assert stats.expiration_alert.expires_this_week == 1
        assert stats.expiration_alert.expired == 1

    def test_lazy_refresh_follows_the_clock(self):
        clock = [TODAY]
        reconciler = VehicleReconciler(Settings(), today=lambda: clock[0])
        reconciler.add_document(_make_extraction(expires_in=10))
        assert reconciler.get_vehicle(VIN_A).compliance_status.registration.status == CategoryStatus.EXPIRES_SOON

        clock[0] = TODAY + timedelta(days=20)
        vehicle = reconciler.get_vehicle(VIN_A)
        assert vehicle.compliance_status.registration.status == CategoryStatus.EXPIRED
        assert vehicle.compliance_status.registration.days_until_expiry == -10
        assert vehicle.compliance_status.overall == OverallStatus.NON_COMPLIANT

    def test_risk_always_matches_score_band(self, reconciler):
        _add_all_current(reconciler, skip=("cdl",))
        reconciler.add_document(_make_extraction("insurance", vin=VIN_B, expires_in=-1, confidence=30))
        for vehicle in reconciler.get_all_vehicles():
            assert 0 <= vehicle.compliance_score <= 100
            assert vehicle.risk_level == risk_from_score(vehicle.compliance_score)


# ═══════════════════════════════════════════════════════════════════════
# EXPORT / IMPORT
# ═══════════════════════════════════════════════════════════════════════


class TestExportImport:
    def test_export_shape_is_json_serialisable(self, reconciler):
        reconciler.add_document(_make_extraction(vin="1HGBH41JXMNIO9186"))
        state = reconciler.export_state()
        assert set(state) == {"vehicles", "vinAliases", "documentIndex", "stats", "exportDate"}
        assert state["vinAliases"] == {"1HGBH41JXMNIO9186": VIN_A}
        json.dumps(state)

    def test_round_trip_is_lossless(self, reconciler):
        _add_all_current(reconciler)
        reconciler.add_document(_make_extraction("insurance", vin=VIN_B, expires_in=3, confidence=None))
        reconciler.add_document(_make_extraction("insurance", vin=VIN_B, expires_in=40))
        state = json.loads(json.dumps(reconciler.export_state()))

        restored = VehicleReconciler(Settings(), today=lambda: TODAY)
        assert restored.import_state(state) == 2

        before = {v.vin: (v.document_count, v.compliance_score) for v in reconciler.get_all_vehicles()}
        after = {v.vin: (v.document_count, v.compliance_score) for v in restored.get_all_vehicles()}
        assert after == before
        assert restored.get_vehicle(VIN_B).active_conflicts[0].conflicting_documents == (
            reconciler.get_vehicle(VIN_B).active_conflicts[0].conflicting_documents
        )

    def test_import_replaces_existing_state(self, reconciler):
        reconciler.add_document(_make_extraction(vin=VIN_B))
        reconciler.import_state({"vehicles": {}})
        assert len(reconciler) == 0

    @pytest.mark.parametrize(
        "state",
        [
            "not a tree",
            {"vehicles": {"X": {"documents": "nope"}}},
            {"vehicles": {"WRONGKEY": {"vin": VIN_A}}},
        ],
    )
    def test_bad_state_raises(self, reconciler, state):
        with pytest.raises(StateImportError):
            reconciler.import_state(state)


# ═══════════════════════════════════════════════════════════════════════
# CONCURRENCY
# ═══════════════════════════════════════════════════════════════════════


class TestConcurrency:
    def test_parallel_additions_to_one_vehicle_are_not_lost(self, reconciler):
        payloads = [_make_extraction("other", expires_in=None) for _ in range(40)]
        with ThreadPoolExecutor(max_workers=8) as pool:
            results = list(pool.map(reconciler.add_document, payloads))
        assert all(r.success for r in results)
        assert reconciler.get_vehicle(VIN_A).document_count == 40

    def test_parallel_additions_across_vehicles(self, reconciler):
        payloads = [_make_extraction("other", vin=vin, expires_in=None) for vin in (VIN_A, VIN_B) * 20]
        with ThreadPoolExecutor(max_workers=8) as pool:
            list(pool.map(reconciler.add_document, payloads))
        stats = reconciler.get_stats()
        assert stats.total_vehicles == 2
        assert stats.total_documents == 40

    def test_import_waits_for_in_flight_addition(self, reconciler, monkeypatch):
        source = VehicleReconciler(Settings(), today=lambda: TODAY)
        source.add_document(_make_extraction(vin=VIN_B))
        state = source.export_state()

        entered, release = threading.Event(), threading.Event()
        detect = engine.detect_conflicts

        def held_detect(*args):
            entered.set()
            release.wait(5)
            return detect(*args)

        monkeypatch.setattr(engine, "detect_conflicts", held_detect)
        with ThreadPoolExecutor(max_workers=2) as pool:
            adding = pool.submit(reconciler.add_document, _make_extraction(vin=VIN_A))
            assert entered.wait(5)
            importing = pool.submit(reconciler.import_state, state)
            done, _ = wait([importing], timeout=0.2)
            assert not done
            release.set()
            assert adding.result(timeout=5).success
            assert importing.result(timeout=5) == 1

        assert [v.vin for v in reconciler.get_all_vehicles()] == [VIN_B]
        assert reconciler.add_document(_make_extraction(vin=VIN_A)).success
        assert len(reconciler) == 2
