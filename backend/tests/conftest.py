"""Pytest configuration and shared fixtures."""

import os
from datetime import datetime, timezone
from typing import Any, Generator

import pytest
from fastapi.testclient import TestClient

# Set test environment variables before importing app
os.environ.update({
    "APP_BASE_URL": "http://localhost:8000",
    "SESSION_SECRET": "test-session-secret-32-bytes-long",
    "CRON_SECRET": "test-cron-secret",
    "DATABASE_URL": "sqlite://",
    "GOOGLE_CLIENT_ID": "test-google-client-id",
    "GOOGLE_CLIENT_SECRET": "test-google-client-secret",
    "RESEND_API_KEY": "",
    "ENABLE_SCHEDULER": "false",
    "OTEL_TRACES_EXPORTER": "none",
})

from sqlmodel import Session, SQLModel  # noqa: E402

from outreach.core.db import engine  # noqa: E402
from outreach.models import MailboxAccount  # noqa: E402

TEST_USER_ID = "user-123"
TEST_USER_EMAIL = "candidate@example.com"


@pytest.fixture
def db_session() -> Generator[Session, None, None]:
    """Fresh in-memory schema for every test."""
    SQLModel.metadata.drop_all(engine)
    SQLModel.metadata.create_all(engine)
    with Session(engine) as session:
        yield session
    SQLModel.metadata.drop_all(engine)


@pytest.fixture
def now() -> datetime:
    return datetime(2025, 3, 10, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def account(db_session: Session) -> MailboxAccount:
    account = MailboxAccount(
        user_id=TEST_USER_ID,
        email=TEST_USER_EMAIL,
        name="Test Candidate",
        google_refresh_token="1//mock-refresh-token",
    )
    db_session.add(account)
    db_session.commit()
    db_session.refresh(account)
    return account


@pytest.fixture
def mock_auth_session() -> dict[str, Any]:
    """Mock signed-in session for testing authenticated endpoints."""
    return {
        "user": {
            "sub": TEST_USER_ID,
            "email": TEST_USER_EMAIL,
            "name": "Test Candidate",
        },
    }


@pytest.fixture
def client(db_session: Session, mock_auth_session: dict[str, Any]) -> Generator[TestClient, None, None]:
    """FastAPI test client with the session dependency overridden."""
    from outreach.core.auth import auth_client
    from outreach.main import app

    app.dependency_overrides[auth_client.require_session] = lambda: mock_auth_session
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def cron_headers() -> dict[str, str]:
    return {"X-Cron-Secret": "test-cron-secret"}
