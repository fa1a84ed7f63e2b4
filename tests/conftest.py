"""
Pytest configuration and fixtures.
"""
from typing import AsyncGenerator

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from oradb_operator.core.reconciler import Reconciler
from oradb_operator.core.retry_policy import BackoffPolicy, ReconcilerConfig
from oradb_operator.models.resource import ResourceKind

from tests.fakes import Clock, FakeActuator, FakeRegistry, FakeResourceStore, adb_body, pdb_body


@pytest_asyncio.fixture
async def test_client() -> AsyncGenerator[AsyncClient, None]:
    """Create test client without running the operator lifespan."""
    from oradb_operator.main import app

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client


@pytest.fixture
def store() -> FakeResourceStore:
    return FakeResourceStore()


@pytest.fixture
def actuator() -> FakeActuator:
    return FakeActuator()


@pytest.fixture
def clock() -> Clock:
    return Clock()


@pytest.fixture
def reconciler_config() -> ReconcilerConfig:
    return ReconcilerConfig(
        resync_interval=60.0,
        poll_interval=15.0,
        conflict_requeue=5.0,
        precondition_max_wait=1800.0,
        pending_action_timeout=600.0,
        deletion_wait_timeout=300.0,
        backoff=BackoffPolicy(base_delay=2.0, max_delay=300.0),
    )


@pytest.fixture
def reconciler(store, actuator, clock, reconciler_config) -> Reconciler:
    return Reconciler(store, FakeRegistry(actuator), reconciler_config, clock=clock)


@pytest.fixture
def make_adb(store):
    def _make(name: str = "adb1", **details):
        resource = store.put(ResourceKind.AUTONOMOUS_DATABASE, adb_body(name, **details))
        store.put_secret("default", "admin-password", {"admin-password": b"Welcome_12345#"})
        return resource.key
    return _make


@pytest.fixture
def make_pdb(store):
    def _make(name: str = "pdb1", action: str = "Create", **spec):
        resource = store.put(ResourceKind.PDB, pdb_body(name, action, **spec))
        return resource.key
    return _make
