"""
Pytest configuration and shared fixtures.

Test environment variables are set here, before any eventchat import, so the
cached settings and the engine are built against the test database.
"""

import hashlib
import hmac
import os

import pytest

os.environ.setdefault("DATABASE_URL", "sqlite:///./test_eventchat.db")
os.environ.setdefault("LOG_LEVEL", "WARNING")
os.environ.setdefault("WEBHOOK_SECRET", "testsecret")
os.environ.setdefault("DISPATCH_CONCURRENCY", "1")
os.environ.setdefault("DISPATCH_DEADLINE_SECONDS", "0.5")

# Clear settings cache before any app imports to ensure test env vars are used
from eventchat.config import get_settings  # noqa: E402
get_settings.cache_clear()

from fastapi.testclient import TestClient  # noqa: E402

from eventchat import models  # noqa: E402,F401
from eventchat.main import app  # noqa: E402
from eventchat.storage import Base, SessionLocal, engine  # noqa: E402
from fakes import FakePushGateway, FakeRemoteStore  # noqa: E402


TEST_WEBHOOK_SECRET = os.environ["WEBHOOK_SECRET"]


def compute_signature(body: str, secret: str = TEST_WEBHOOK_SECRET) -> str:
    """Compute HMAC-SHA256 signature for request body."""
    return hmac.new(
        secret.encode("utf-8"),
        body.encode("utf-8"),
        hashlib.sha256
    ).hexdigest()


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture(scope="function")
def database():
    """Fresh tables for each test."""
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)


@pytest.fixture
def db(database):
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def push_gateway():
    return FakePushGateway()


@pytest.fixture(scope="function")
def client(database, push_gateway):
    """Create test client with fresh database and a scripted push gateway."""
    app.state.push_gateway = push_gateway
    with TestClient(app) as test_client:
        yield test_client
    del app.state.push_gateway


@pytest.fixture
def conversation(client) -> dict:
    response = client.post(
        "/conversations",
        json={
            "event_id": "evt-gala-2026",
            "admin_identity": "staff@example.com",
            "guest_identity": "guest@example.com",
        },
    )
    assert response.status_code == 201
    return response.json()


@pytest.fixture
def drain(client):
    """Wait for the notification outbox to finish everything queued."""
    def _drain():
        client.portal.call(app.state.outbox.drain)
    return _drain


@pytest.fixture
def remote_store() -> FakeRemoteStore:
    return FakeRemoteStore()
