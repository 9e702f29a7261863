"""
Root conftest.py - Sets environment variables before any module imports.

This file is loaded by pytest before any test modules, ensuring environment
variables are set before the settings module is imported.

Test Modes:
1. Unit Tests (default) - In-memory store, mocked BigQuery client
2. Integration Tests - Real BigQuery (requires GOOGLE_APPLICATION_CREDENTIALS)

To run integration tests:
    pytest -m integration --run-integration
"""

import os

# Set environment variables BEFORE any imports that might load settings
if os.environ.get("GCP_PROJECT_ID") in [None, "", "test-project"]:
    os.environ["GCP_PROJECT_ID"] = "test-project"
    os.environ.setdefault("ENVIRONMENT", "development")
    os.environ.setdefault("HIERARCHY_STORE_BACKEND", "memory")
    os.environ.setdefault("TELEMETRY_ENABLED", "false")
else:
    os.environ.setdefault("ENVIRONMENT", "development")

from typing import List

import pytest

from account_hierarchy.app.models import CreateAccountRequest
from account_hierarchy.core.services.account_hierarchy import AccountHierarchyService
from account_hierarchy.core.services.telemetry import TelemetryEvent, TelemetrySink
from account_hierarchy.core.stores import InMemoryHierarchyStore


# ============================================
# Pytest Configuration
# ============================================

def pytest_addoption(parser):
    """Add custom pytest options."""
    parser.addoption(
        "--run-integration",
        action="store_true",
        default=False,
        help="Run integration tests that require BigQuery"
    )


def pytest_collection_modifyitems(config, items):
    """Skip integration tests unless explicitly requested."""
    if config.getoption("--run-integration"):
        return

    skip_integration = pytest.mark.skip(reason="Need --run-integration option to run")
    for item in items:
        if "integration" in item.keywords:
            item.add_marker(skip_integration)


# ============================================
# Engine Fixtures
# ============================================

class RecordingTelemetrySink(TelemetrySink):
    """Keeps every emitted event in memory."""

    def __init__(self):
        self.events: List[TelemetryEvent] = []

    async def emit(self, event: TelemetryEvent) -> None:
        self.events.append(event)

    def operations(self) -> List[str]:
        return [e.operation for e in self.events]


@pytest.fixture
def store():
    """Empty in-memory store with two labelled tenants."""
    return InMemoryHierarchyStore(client_names={"client_a": "Acme", "client_b": "Globex"})


@pytest.fixture
def telemetry():
    return RecordingTelemetrySink()


@pytest.fixture
def service(store, telemetry):
    return AccountHierarchyService(store=store, telemetry=telemetry)


@pytest.fixture
def create(service):
    """Shortcut: create an account and return it."""
    async def _create(name: str, client_id: str = "client_a", parent_id=None):
        return await service.create_account(
            CreateAccountRequest(name=name, client_id=client_id, parent_id=parent_id)
        )
    return _create
