"""
Shared fixtures: an engine wired to in-memory fakes, and a TestClient whose
engine dependency is overridden with it.
"""
import pytest
from unittest.mock import patch
from fastapi.testclient import TestClient

from tenant_sync.api.deps import get_engine
from tenant_sync.core.config import settings
from tenant_sync.main import app
from tenant_sync.services.error_classifier import ErrorClassifier
from tenant_sync.services.reconciliation_engine import ReconciliationEngine
from tenant_sync.services.ttl_store import InMemoryCredentialCache, InMemoryLockStore

from tests.fakes import SETTING_TEAM, SETTING_TOKEN, FakeClock, FakePlatform, InMemoryRecordStore


@pytest.fixture(autouse=True)
def no_environment_token():
    """Keep a developer's VERCEL_TOKEN out of credential resolution"""
    with patch.object(settings, "VERCEL_TOKEN", None), patch.object(settings, "VERCEL_TEAM_ID", None):
        yield


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store():
    store = InMemoryRecordStore()
    store.global_setting = {"vercel_token": SETTING_TOKEN, "vercel_team_id": SETTING_TEAM}
    return store


@pytest.fixture
def platform():
    return FakePlatform()


@pytest.fixture
def classifier():
    return ErrorClassifier(read_attempts=3, retry_base_delay=0)


@pytest.fixture
def engine(store, platform, clock, classifier):
    return ReconciliationEngine(
        store=store,
        platform_factory=platform,
        lock_store=InMemoryLockStore(clock=clock),
        credential_cache=InMemoryCredentialCache(clock=clock),
        classifier=classifier,
    )


@pytest.fixture
def client(engine):
    app.dependency_overrides[get_engine] = lambda: engine
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()

