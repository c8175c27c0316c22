from __future__ import annotations

import uuid
from collections.abc import Generator

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app.core.config import get_settings
from app.core.database import Base, get_db
from app.main import app
from app.middleware.rate_limit import reset_rate_limiter


@pytest.fixture()
def db_session() -> Generator[Session, None, None]:
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture(autouse=True)
def clear_state(monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    monkeypatch.setenv("RATE_LIMIT_DISABLED", "true")
    reset_rate_limiter(app)
    get_settings.cache_clear()
    yield
    reset_rate_limiter(app)
    get_settings.cache_clear()


@pytest.fixture()
def client(db_session: Session) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def test_generated_correlation_id_returned_in_header_and_error_envelope(client: TestClient) -> None:
    response = client.get(f"/api/users/{uuid.uuid4()}")
    assert response.status_code == 401
    header_value = response.headers.get("x-correlation-id")
    assert header_value
    body = response.json()
    assert body["correlation_id"] == header_value


def test_correlation_id_respected_when_provided(client: TestClient) -> None:
    response = client.post(
        "/api/auth/login",
        json={"email": "nobody@example.com", "password": "wrong-pass"},
        headers={"X-Correlation-Id": "abc-123"},
    )
    assert response.status_code == 401
    assert response.headers.get("x-correlation-id") == "abc-123"
    assert response.json()["correlation_id"] == "abc-123"


def test_validation_errors_carry_correlation_id(client: TestClient) -> None:
    response = client.post("/api/auth/refresh", json={}, headers={"X-Correlation-Id": "corr-422"})
    assert response.status_code == 422
    assert response.json()["correlation_id"] == "corr-422"


def test_request_id_mirrors_correlation_id(client: TestClient) -> None:
    response = client.get("/health", headers={"X-Correlation-Id": "corr-health"})
    assert response.status_code == 200
    assert response.headers.get("x-request-id") == "corr-health"


def test_authenticated_context_carries_correlation_id(client: TestClient) -> None:
    bootstrap = client.post(
        "/api/auth/bootstrap-admin",
        json={"full_name": "Root Admin", "email": "root@example.com", "phone": "11999990000", "password": "secret1"},
    )
    access_token = bootstrap.json()["tokens"]["access_token"]

    missing = client.get(
        f"/api/users/{uuid.uuid4()}",
        headers={"Authorization": f"Bearer {access_token}", "X-Correlation-Id": "corr-404"},
    )
    assert missing.status_code == 404
    assert missing.json()["correlation_id"] == "corr-404"


def test_malformed_correlation_id_is_replaced(client: TestClient) -> None:
    supplied = "bad id\twith spaces" + "x" * 200
    response = client.get("/health", headers={"X-Correlation-Id": supplied})
    assert response.status_code == 200
    echoed = response.headers.get("x-correlation-id")
    assert echoed
    assert echoed != supplied
    assert str(uuid.UUID(echoed)) == echoed
