"""
Pytest configuration and shared fixtures.

Test settings are put into the environment before any app import so the
cached Settings object and the engine pick them up.
"""

import os

os.environ.setdefault("DATABASE_URL", "sqlite:///./test_sms_forwarder.db")
os.environ.setdefault("LOG_LEVEL", "WARNING")
os.environ.setdefault("EVENT_WORKERS", "2")

import pytest

# Clear settings cache before any app imports to ensure test env vars are used
from app.config import get_settings
get_settings.cache_clear()

from app import models  # noqa: E402,F401
from app.models import Device, DeviceStatus
from app.storage import SessionLocal, Base, engine


@pytest.fixture(scope="function")
def db_tables():
    """Fresh schema for each test."""
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)


@pytest.fixture
def db(db_tables):
    """Session for arranging and asserting database state."""
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def device(db):
    """A registered device with external id DEV1."""
    dev = Device(dev_id="DEV1", name="客厅网关", status=DeviceStatus.OFFLINE.value)
    db.add(dev)
    db.commit()
    db.refresh(dev)
    return dev


@pytest.fixture(scope="function")
def client(db_tables):
    """Test client running the full lifespan (tables, default settings, workers)."""
    from fastapi.testclient import TestClient
    from app.main import app

    with TestClient(app) as test_client:
        yield test_client
