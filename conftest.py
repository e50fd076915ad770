"""
Pytest configuration and shared fixtures.

Environment variables may be provided by the caller (e.g. from .env.test);
the defaults below are applied before any chatsync import so settings are
built with test values.
"""

import os

os.environ.setdefault("DATABASE_URL", "sqlite:///./test_chatsync.db")
os.environ.setdefault("LOG_LEVEL", "WARNING")
os.environ.setdefault("ADMIN_TOKEN", "test-admin-token")
os.environ.setdefault("REAPER_INTERVAL_SECONDS", "0")

import pytest
from fastapi.testclient import TestClient

# Clear settings cache before any app imports to ensure test env vars are used
from chatsync.config import get_settings
get_settings.cache_clear()

from chatsync import models  # noqa: E402,F401  (registers tables)
from chatsync import utils
from chatsync.storage import Base, SessionLocal, engine


START_NS = 1_700_000_000 * utils.NANOS_PER_SECOND


class FakeClock:
    """Replaces utils.now_ns so tests can move time forward."""

    def __init__(self, start: int = START_NS):
        self.now = start

    def __call__(self) -> int:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += utils.seconds_to_ns(seconds)


@pytest.fixture
def clock(monkeypatch):
    fake = FakeClock()
    monkeypatch.setattr(utils, "now_ns", fake)
    return fake


@pytest.fixture(scope="function")
def tables():
    """Fresh schema for each test. Dropping resets the id sequence."""
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)


@pytest.fixture(scope="function")
def db(tables):
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture(scope="function")
def client():
    """Create test client with fresh database for each test."""
    from chatsync.main import app

    # Create tables
    Base.metadata.create_all(bind=engine)

    with TestClient(app) as test_client:
        yield test_client

    # Cleanup - drop all tables after test
    Base.metadata.drop_all(bind=engine)
