"""
Test configuration and fixtures for Task Log API tests.

Provides:
- Test database with SQLite in-memory for speed
- In-memory document store (mongomock) for audit logs
- FastAPI test client with database and log collection overrides
- A log collection stand-in that fails every call, for degraded-store tests
- Helpers for creating tasks through the API or directly in the database
"""

import os
import sys
import logging
from datetime import timedelta
from typing import Any, Dict, Generator

# Keep module-level engine creation off PostgreSQL during tests
os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")
os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("LOG_WRITE_RETRY_DELAY", "0")

import mongomock
import pytest
from fastapi.testclient import TestClient
from pymongo.errors import ServerSelectionTimeoutError
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

# Add backend directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import config
import models
from concurrency import task_locks
from database import Base, get_db
from document_store import get_log_collection
from main import app
from time_utils import utc_now

# Configure logging for tests
logging.basicConfig(level=logging.WARNING)
logger = logging.getLogger(__name__)

# SQLite in-memory database for fast testing
SQLALCHEMY_TEST_DATABASE_URL = "sqlite:///:memory:"

API = config.API_PREFIX


class UnavailableCollection:
    """Stands in for a pymongo collection whose server cannot be reached."""

    def __getattr__(self, name: str):
        def _fail(*args, **kwargs):
            raise ServerSelectionTimeoutError("localhost:27017: [Errno 111] Connection refused")
        return _fail


@pytest.fixture(scope="function")
def test_db() -> Generator[Session, None, None]:
    """
    Create a fresh in-memory SQLite database for each test.

    This ensures test isolation and fast execution.
    """
    logger.debug("Creating test database")

    engine = create_engine(
        SQLALCHEMY_TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)

    TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    db = TestingSessionLocal()

    try:
        yield db
    finally:
        db.close()
        Base.metadata.drop_all(bind=engine)
        logger.debug("Test database cleaned up")


@pytest.fixture(scope="function")
def log_collection():
    """Fresh in-memory audit log collection."""
    return mongomock.MongoClient()["task_logs_test"]["task_logs"]


def _make_client(test_db: Session, collection) -> TestClient:
    def override_get_db():
        try:
            yield test_db
        finally:
            pass

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_log_collection] = lambda: collection
    task_locks.clear()
    # Startup hooks are not run: they target the real stores
    return TestClient(app)


@pytest.fixture(scope="function")
def client(test_db: Session, log_collection) -> Generator[TestClient, None, None]:
    """
    Create FastAPI test client with database and log collection overrides.
    """
    yield _make_client(test_db, log_collection)
    app.dependency_overrides.clear()


@pytest.fixture(scope="function")
def degraded_client(test_db: Session) -> Generator[TestClient, None, None]:
    """Test client whose document store is unreachable."""
    yield _make_client(test_db, UnavailableCollection())
    app.dependency_overrides.clear()


def future(days: int = 7):
    return utc_now() + timedelta(days=days)


def create_task(client: TestClient, headers: Dict[str, str] = None, **fields: Any) -> Dict[str, Any]:
    """Create a task through the API and return its representation."""
    payload = {"title": "Test task"}
    payload.update(fields)
    response = client.post(f"{API}/tasks", json=payload, headers=headers or {})
    assert response.status_code == 201, f"Expected 201, got {response.status_code}: {response.json()}"
    return response.json()["data"]


def insert_task(db: Session, **fields: Any) -> models.Task:
    """Insert a task directly, bypassing API validation (e.g. for past due dates)."""
    fields.setdefault("title", "Inserted task")
    task = models.Task(**fields)
    db.add(task)
    db.commit()
    db.refresh(task)
    return task
