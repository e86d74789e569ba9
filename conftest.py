"""Pytest configuration: makes the project root importable and pins the engine's clock."""

import sys
from datetime import date
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).parent))

from fleet_reconciler.config import Settings  # noqa: E402
from fleet_reconciler.reconciler import VehicleReconciler  # noqa: E402

TODAY = date(2025, 6, 1)


@pytest.fixture
def today() -> date:
    return TODAY


@pytest.fixture
def reconciler() -> VehicleReconciler:
    """A fresh engine with default settings and a fixed 'today'."""
    return VehicleReconciler(Settings(), today=lambda: TODAY)
