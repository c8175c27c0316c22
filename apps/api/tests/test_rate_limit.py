from __future__ import annotations

from collections.abc import Generator

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app.core.config import get_settings
from app.core.database import Base, get_db
from app.main import app, create_app
from app.middleware.rate_limit import TokenBucketLimiter, reset_rate_limiter


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
def configure_rate_limiter_env(monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    monkeypatch.setenv("RATE_LIMIT_DISABLED", "false")
    monkeypatch.setenv("RATE_LIMIT_AUTH_PER_MINUTE", "3")
    get_settings.cache_clear()
    reset_rate_limiter(app)
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


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


def _login(client: TestClient, **headers: str):  # type: ignore[no-untyped-def]
    return client.post(
        "/api/auth/login",
        json={"email": "nobody@example.com", "password": "wrong-pass"},
        headers=headers,
    )


def test_login_is_rate_limited_per_client(client: TestClient) -> None:
    responses = [_login(client) for _ in range(5)]

    assert [response.status_code for response in responses[:3]] == [401, 401, 401]
    limited = [response for response in responses if response.status_code == 429]
    assert len(limited) == 2

    body = limited[0].json()
    assert body["code"] == "RATE_LIMITED"
    assert body["message"] == "Too many requests"
    assert body["correlation_id"] is not None
    assert int(limited[0].headers["Retry-After"]) >= 1


def test_rate_limit_buckets_are_per_ip(client: TestClient) -> None:
    for _ in range(3):
        assert _login(client, **{"X-Forwarded-For": "10.0.0.1"}).status_code == 401
    assert _login(client, **{"X-Forwarded-For": "10.0.0.1"}).status_code == 429
    assert _login(client, **{"X-Forwarded-For": "10.0.0.2"}).status_code == 401


def test_rate_limited_response_echoes_correlation_id(client: TestClient) -> None:
    for _ in range(3):
        _login(client)
    limited = _login(client, **{"X-Correlation-Id": "corr-rate-1"})

    assert limited.status_code == 429
    assert limited.json()["correlation_id"] == "corr-rate-1"
    assert limited.headers.get("x-correlation-id") == "corr-rate-1"


def test_get_endpoints_are_not_rate_limited(client: TestClient) -> None:
    responses = [client.get("/health") for _ in range(10)]
    assert all(response.status_code == 200 for response in responses)


def test_disabled_rate_limit_lets_every_request_through(
    client: TestClient,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.setenv("RATE_LIMIT_DISABLED", "true")
    get_settings.cache_clear()

    assert all(_login(client).status_code == 401 for _ in range(6))


def test_apps_do_not_share_buckets(db_session: Session) -> None:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    first_app = create_app(TokenBucketLimiter())
    second_app = create_app(TokenBucketLimiter())
    for application in (first_app, second_app):
        application.dependency_overrides[get_db] = override_get_db

    with TestClient(first_app) as first, TestClient(second_app) as second:
        for _ in range(3):
            _login(first)
        assert _login(first).status_code == 429
        assert _login(second).status_code == 401


def test_bucket_refills_over_time() -> None:
    clock = FakeClock()
    limiter = TokenBucketLimiter(clock=clock)

    assert limiter.take("1.1.1.1", "login", capacity=2, window_seconds=60) == (True, 0)
    assert limiter.take("1.1.1.1", "login", capacity=2, window_seconds=60) == (True, 0)
    assert limiter.take("1.1.1.1", "login", capacity=2, window_seconds=60) == (False, 30)

    clock.now = 30.0
    assert limiter.take("1.1.1.1", "login", capacity=2, window_seconds=60) == (True, 0)


def test_route_groups_have_separate_buckets() -> None:
    limiter = TokenBucketLimiter(clock=FakeClock())

    assert limiter.take("1.1.1.1", "login", capacity=1, window_seconds=60)[0] is True
    assert limiter.take("1.1.1.1", "login", capacity=1, window_seconds=60)[0] is False
    assert limiter.take("1.1.1.1", "refresh", capacity=1, window_seconds=60)[0] is True


def test_idle_buckets_are_evicted() -> None:
    clock = FakeClock()
    limiter = TokenBucketLimiter(idle_ttl_seconds=100.0, clock=clock)

    limiter.take("1.1.1.1", "login", capacity=5, window_seconds=60)
    limiter.take("2.2.2.2", "login", capacity=5, window_seconds=60)
    assert len(limiter) == 2

    clock.now = 150.0
    limiter.take("3.3.3.3", "login", capacity=5, window_seconds=60)
    assert len(limiter) == 1
