# tests/conftest.py
"""Shared fixtures: in-memory stores, engine and runner wired over them."""

import pytest
from uuid import uuid4

from fakes import FakeAuditService, FakeDuplicateStore, FakeLeadStore

from app.models import User
from app.services.merge_engine import MergeEngine
from app.services.dedupe_runner import DedupeRunner


# ============================================================================
# FIXTURES
# ============================================================================

@pytest.fixture
def lead_store():
    return FakeLeadStore()


@pytest.fixture
def duplicate_store():
    return FakeDuplicateStore()


@pytest.fixture
def audit_service():
    return FakeAuditService()


@pytest.fixture
def merge_engine(lead_store, duplicate_store, audit_service):
    return MergeEngine(lead_store, duplicate_store, audit_service)


@pytest.fixture
def runner(lead_store, duplicate_store, merge_engine):
    return DedupeRunner(
        lead_store,
        duplicate_store,
        merge_engine,
        cross_batch_limit=500,
        sweep_limit=1000,
    )


@pytest.fixture
def admin_user():
    return User(id=uuid4(), email="admin@test.com", full_name="Admin User", role="admin", is_active=True)


@pytest.fixture
def client_user():
    return User(id=uuid4(), email="client@test.com", full_name="Client User", role="client", is_active=True)


def pytest_configure(config):
    config.addinivalue_line("markers", "unit: unit tests")
    config.addinivalue_line("markers", "integration: integration tests")
