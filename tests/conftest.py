"""
Pytest configuration and shared fixtures.

Test settings are placed in the environment before any app import, so the
engine and blob store are bound to a throwaway directory.
"""

import os
import tempfile

import pytest

_test_dir = tempfile.mkdtemp(prefix="chat-receipts-test-")
os.environ.setdefault("DATABASE_URL", f"sqlite:///{_test_dir}/test.db")
os.environ.setdefault("LOG_LEVEL", "DEBUG")
os.environ.setdefault("BLOB_DIR", os.path.join(_test_dir, "blobs"))

# Clear settings cache before any app imports to ensure test env vars are used
from app.config import get_settings
get_settings.cache_clear()

from fastapi.testclient import TestClient

from app.identity import Identity
from app import models  # noqa: F401  registers tables with Base.metadata
from app.storage import Base, SessionLocal, engine


ALICE = Identity(user_id="alice", email="alice@example.com")
BOB = Identity(user_id="bob", email="bob@example.com")
CAROL = Identity(user_id="carol", email="carol@example.com")


def auth_headers(identity: Identity) -> dict:
    """Headers the identity provider forwards for a signed-in user."""
    return {"X-User-Id": identity.user_id, "X-User-Email": identity.email}


@pytest.fixture(scope="function")
def tables():
    """Fresh tables for each test."""
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)


@pytest.fixture
def db(tables):
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture(scope="function")
def client(tables):
    """Create test client with fresh database for each test."""
    from app.main import app

    with TestClient(app) as test_client:
        yield test_client
