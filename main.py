#!/usr/bin/env python3
"""
Fleet Reconciler: Entry Point
=============================

Demonstrates the reconciliation engine on a small batch of noisy,
OCR-extracted fleet documents and prints the resulting fleet report.

Usage:
    python main.py                          # Exit 0 if no vehicle is non-compliant, else 1
    FLEET_LOG_LEVEL=DEBUG python main.py    # Show engine logging
"""

from __future__ import annotations

import logging
import sys
from datetime import date, timedelta

from fleet_reconciler.config import Settings
from fleet_reconciler.models import OverallStatus, RiskLevel, VehicleRecord
from fleet_reconciler.reconciler import VehicleReconciler


# ─── Sample Batch: Ugly on Purpose ──────────────────────────────────


def _in(days: int) -> str:
    return (date.today() + timedelta(days=days)).strftime("%m/%d/%Y")


SAMPLE_BATCH = [
    (
        {
            "documentType": "Vehicle Registration",
            "extractedData": {
                "vin": "1HGBH41JXMNIO9186",  # OCR read 1 as I and 0 as O
                "make": "Honda",
                "model": "Accord",
                "year": "2021",
                "licensePlate": "7ABC123",
                "state": "CA",
                "expirationDate": _in(45),
            },
            "confidence": 94,
        },
        {"fileName": "honda_registration.pdf", "source": "upload"},
    ),
    (
        {
            "extractedData": {
                "vin": "1HGBH41JXMN109186",
                "policyNumber": "PA-88213",
                "expires": {"value": _in(5), "confidence": 82},
            },
            "flexibleValidation": {"confidence_score": "71%"},
        },
        {"fileName": "honda_insurance_card.jpg", "source": "email"},
    ),
    (
        {
            "documentType": "auto_insurance",
            "extractedData": {"vin": "1M8GDM9AXKP042788", "make": "Motor Coach", "validUntil": _in(200)},
            "confidence": 88,
        },
        {"fileName": "bus_policy_2025.pdf"},
    ),
    (
        {
            "documentType": "insurance",
            "extractedData": {"vin": "1M8GDM9AXKP042788", "make": "MCI", "validUntil": _in(90)},
            "confidence": 81,
        },
        {"fileName": "bus_policy_renewal.pdf"},
    ),
    (
        {"extractedData": {"notes": "page 2 of 3"}, "rawText": "Continued from previous page"},
        {"fileName": "scan_0042.pdf"},
    ),
]


# ─── ANSI Color Constants ───────────────────────────────────────────

_RED = "\033[91m"
_YELLOW = "\033[93m"
_GREEN = "\033[92m"
_CYAN = "\033[96m"
_DIM = "\033[2m"
_BOLD = "\033[1m"
_RESET = "\033[0m"
_WIDTH = 72

_RISK_COLORS = {
    RiskLevel.LOW: _GREEN,
    RiskLevel.MEDIUM: _YELLOW,
    RiskLevel.HIGH: _RED,
    RiskLevel.CRITICAL: _RED + _BOLD,
}


# ─── Pretty Printer Helpers ─────────────────────────────────────────


def _print_vehicle(vehicle: VehicleRecord) -> None:
    """Print one vehicle's categories and conflicts."""
    color = _RISK_COLORS[vehicle.risk_level]
    description = " ".join(filter(None, [vehicle.year, vehicle.make, vehicle.model])) or "unknown vehicle"
    print(f"  {_BOLD}{vehicle.vin}{_RESET}  {_DIM}{description}{_RESET}")
    if vehicle.alternative_vins:
        print(f"    Aliases:     {', '.join(vehicle.alternative_vins)}")
    print(
        f"    Overall:     {vehicle.compliance_status.overall.value}  "
        f"{color}score {vehicle.compliance_score} / risk {vehicle.risk_level.value}{_RESET}"
    )
    for category, entry in vehicle.compliance_status.categories():
        days = f" ({entry.days_until_expiry}d)" if entry.days_until_expiry is not None else ""
        print(f"    {category.value:<13}{entry.status.value}{days}")
    for conflict in vehicle.active_conflicts:
        print(f"    {_YELLOW}[{conflict.type.value}]{_RESET} {conflict.description}")
    print()


# ─── Pretty Printer ─────────────────────────────────────────────────


def print_report(reconciler: VehicleReconciler, rejected: list[str]) -> int:
    """Pretty-print the fleet report with ANSI color codes.

    Returns:
        0 if no vehicle is non-compliant, 1 otherwise.
    """
    stats = reconciler.get_stats()
    vehicles = reconciler.get_all_vehicles()

    print(f"\n{'=' * _WIDTH}")
    print(f"{_BOLD}{_CYAN}  FLEET COMPLIANCE REPORT{_RESET}")
    print(f"{'=' * _WIDTH}")
    print(f"  Vehicles:    {stats.total_vehicles}")
    print(f"  Documents:   {stats.total_documents}")
    print(f"  Conflicts:   {stats.conflicts_summary.active} active")
    print(f"{'─' * _WIDTH}")

    for vehicle in vehicles:
        _print_vehicle(vehicle)

    if rejected:
        print(f"  {_RED}{_BOLD}REJECTED ({len(rejected)}){_RESET}")
        for message in rejected:
            print(f"    {message}")
        print()

    failing = [v for v in vehicles if v.compliance_status.overall == OverallStatus.NON_COMPLIANT]
    print(f"{'=' * _WIDTH}")
    if failing:
        print(f"  {_RED}{_BOLD}{len(failing)} VEHICLE(S) NON-COMPLIANT{_RESET}")
    else:
        print(f"  {_GREEN}{_BOLD}NO NON-COMPLIANT VEHICLES{_RESET}")
    print(f"{'=' * _WIDTH}\n")

    return 1 if failing else 0


# ─── Main ────────────────────────────────────────────────────────────


def main():
    """Ingest the sample batch and print the fleet report."""
    settings = Settings.from_env()
    logging.basicConfig(level=settings.log_level)

    print("\n  Starting Fleet Reconciler...")
    print(f"  Ingesting {len(SAMPLE_BATCH)} documents...\n")

    reconciler = VehicleReconciler(settings)
    rejected: list[str] = []
    for document, metadata in SAMPLE_BATCH:
        result = reconciler.add_document(document, metadata)
        if not result.success:
            rejected.extend(result.warnings[:1])

    sys.exit(print_report(reconciler, rejected))


if __name__ == "__main__":
    main()
