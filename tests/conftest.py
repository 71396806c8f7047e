"""
Test configuration and fixtures for the Sitemap Checker API.

The environment is pointed at a throwaway SQLite database, an in-memory
Celery broker and eager task execution before anything from the app is
imported, so settings, the engine and the Celery app all pick it up.
"""

import os
import tempfile
from typing import Generator
from unittest.mock import MagicMock

from dotenv import load_dotenv

load_dotenv()

_test_dir = tempfile.mkdtemp(prefix="sitemap-checker-tests-")
os.environ["DATABASE_URL"] = f"sqlite:///{os.path.join(_test_dir, 'test.db')}"
os.environ["ENVIRONMENT"] = "test"
os.environ["CELERY_BROKER_URL"] = "memory://"
os.environ["CELERY_RESULT_BACKEND"] = "cache+memory://"
os.environ["CELERY_TASK_ALWAYS_EAGER"] = "true"
os.environ["LOG_DIR"] = os.path.join(_test_dir, "logs")
os.environ["JWT_SECRET_KEY"] = "test-secret-key"

import httpx
import pytest
from fastapi.testclient import TestClient

from app.features.auth.dependencies.current_user import get_current_user_id
from app.features.scan.routes.scan import get_scan_orchestrator
from app.platform.db.base import Base
from app.platform.db.session import SessionLocal, engine, init_db

TEST_USER_ID = "0190d2c4-7b1e-7c3a-9f00-000000000001"
OTHER_USER_ID = "0190d2c4-7b1e-7c3a-9f00-000000000002"


@pytest.fixture(scope="function")
def session_factory():
    """Fresh tables for every test; yields the app's session factory."""
    init_db()
    yield SessionLocal
    Base.metadata.drop_all(bind=engine)


@pytest.fixture(scope="function")
def db_session(session_factory):
    db = session_factory()
    try:
        yield db
    finally:
        db.close()


@pytest.fixture(scope="session")
def test_app():
    """Create FastAPI test application."""
    from app.main import app

    return app


@pytest.fixture(scope="function")
def client(test_app, session_factory) -> Generator[TestClient, None, None]:
    with TestClient(test_app) as test_client:
        yield test_client


@pytest.fixture
def mock_orchestrator(test_app):
    orchestrator = MagicMock()
    test_app.dependency_overrides[get_scan_orchestrator] = lambda: orchestrator
    yield orchestrator
    test_app.dependency_overrides.pop(get_scan_orchestrator, None)


@pytest.fixture
def auth_client(client, test_app):
    """Client with the current-user dependency overridden for authenticated tests."""
    test_app.dependency_overrides[get_current_user_id] = lambda: TEST_USER_ID
    yield client
    test_app.dependency_overrides.pop(get_current_user_id, None)


@pytest.fixture
def user_id():
    return TEST_USER_ID


@pytest.fixture
def other_user_id():
    return OTHER_USER_ID


@pytest.fixture
def mock_http():
    """Factory for httpx clients whose requests are answered by `handler(request)`."""
    clients = []

    def make(handler) -> httpx.Client:
        http_client = httpx.Client(transport=httpx.MockTransport(handler), follow_redirects=True, max_redirects=5)
        clients.append(http_client)
        return http_client

    yield make
    for http_client in clients:
        http_client.close()
