from __future__ import annotations

import asyncio
from collections.abc import Generator
from datetime import datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, select
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app.auth.models import RateLimitHit
from app.core.config import get_settings
from app.core.database import Base, get_db
from app.main import app
from app.middleware.rate_limit import (
    DbSlidingWindowLimiter,
    InMemorySlidingWindowLimiter,
    RateLimitRule,
    get_rate_limiter,
    reset_rate_limiter,
)


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
    monkeypatch.setenv("RATE_LIMIT_BACKEND", "memory")
    monkeypatch.setenv("RATE_LIMIT_LOGIN_ATTEMPTS", "3")
    monkeypatch.setenv("ARGON2_MEMORY_COST", "1024")
    monkeypatch.setenv("ARGON2_TIME_COST", "1")
    get_settings.cache_clear()
    reset_rate_limiter()
    yield
    reset_rate_limiter()
    get_settings.cache_clear()


@pytest.fixture()
def client(db_session: Session) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def _attempt_logins(client: TestClient, count: int, correlation_id: str | None = None) -> list:
    headers = {"X-Correlation-Id": correlation_id} if correlation_id else {}
    return [
        client.post(
            "/api/auth/login",
            json={"email": "ghost@example.com", "password": "Wr0ng-password!"},
            headers=headers,
        )
        for _ in range(count)
    ]


def test_login_is_rate_limited_per_ip(client: TestClient) -> None:
    responses = _attempt_logins(client, 5, correlation_id="corr-rate-1")

    assert [response.status_code for response in responses] == [401, 401, 401, 429, 429]

    first_limited = responses[3]
    body = first_limited.json()
    assert body["code"] == "RATE_LIMITED"
    assert body["message"].startswith("Too many attempts")
    assert body["details"]["retry_after"] > 0
    assert body["correlation_id"] == "corr-rate-1"
    assert first_limited.headers.get("x-correlation-id") == "corr-rate-1"
    assert int(first_limited.headers["Retry-After"]) == body["details"]["retry_after"]


def test_route_groups_have_separate_budgets(client: TestClient) -> None:
    _attempt_logins(client, 4)

    response = client.post("/api/auth/forgot-password", json={"email": "ghost@example.com"})
    assert response.status_code == 202


def test_get_endpoints_are_not_rate_limited(client: TestClient) -> None:
    _attempt_logins(client, 4)

    responses = [client.get("/health") for _ in range(10)]
    assert all(response.status_code == 200 for response in responses)


def test_rate_limit_can_be_disabled(client: TestClient, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("RATE_LIMIT_DISABLED", "true")
    get_settings.cache_clear()

    responses = _attempt_logins(client, 5)
    assert all(response.status_code == 401 for response in responses)


def test_db_backend_shares_counts_through_the_database(
    client: TestClient,
    db_session: Session,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.setenv("RATE_LIMIT_BACKEND", "db")
    get_settings.cache_clear()

    responses = _attempt_logins(client, 4)

    assert [response.status_code for response in responses] == [401, 401, 401, 429]
    hits = db_session.scalars(select(RateLimitHit)).all()
    assert len(hits) == 3
    assert all(hit.bucket_key.startswith("login:") for hit in hits)


def test_memory_limiter_sliding_window() -> None:
    limiter = InMemorySlidingWindowLimiter()
    rule = RateLimitRule(attempts=2, window_seconds=60)

    assert limiter.hit("login:1.2.3.4", rule) == (True, 0)
    assert limiter.hit("login:1.2.3.4", rule) == (True, 0)
    allowed, retry_after = limiter.hit("login:1.2.3.4", rule)
    assert allowed is False
    assert 0 < retry_after <= 60
    assert limiter.hit("login:5.6.7.8", rule) == (True, 0)

    limiter.clear()
    assert limiter.hit("login:1.2.3.4", rule) == (True, 0)


def test_db_limiter_counts_per_key(db_session: Session) -> None:
    limiter = DbSlidingWindowLimiter()
    rule = RateLimitRule(attempts=1, window_seconds=60)

    assert limiter.hit("register:1.2.3.4", rule, db_session) == (True, 0)
    allowed, retry_after = limiter.hit("register:1.2.3.4", rule, db_session)
    assert allowed is False
    assert 0 < retry_after <= 60
    assert limiter.hit("register:5.6.7.8", rule, db_session) == (True, 0)

    with pytest.raises(RuntimeError):
        limiter.hit("register:1.2.3.4", rule, None)


def test_auto_backend_uses_database_in_production(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("RATE_LIMIT_BACKEND", "auto")
    monkeypatch.setenv("APP_ENV", "production")
    get_settings.cache_clear()
    assert isinstance(get_rate_limiter(get_settings()), DbSlidingWindowLimiter)

    monkeypatch.setenv("APP_ENV", "local")
    get_settings.cache_clear()
    assert isinstance(get_rate_limiter(get_settings()), InMemorySlidingWindowLimiter)


def test_db_backend_runs_off_the_event_loop(
    client: TestClient,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.setenv("RATE_LIMIT_BACKEND", "db")
    get_settings.cache_clear()
    loop_running: list[bool] = []
    original_hit = DbSlidingWindowLimiter.hit

    def recording_hit(self, key, rule, session):  # type: ignore[no-untyped-def]
        try:
            asyncio.get_running_loop()
            loop_running.append(True)
        except RuntimeError:
            loop_running.append(False)
        return original_hit(self, key, rule, session)

    monkeypatch.setattr(DbSlidingWindowLimiter, "hit", recording_hit)

    _attempt_logins(client, 2)

    assert loop_running == [False, False]


def test_db_limiter_counts_hits_committed_by_other_instances(db_session: Session) -> None:
    limiter = DbSlidingWindowLimiter()
    rule = RateLimitRule(attempts=2, window_seconds=60)
    earlier = datetime.now(timezone.utc) - timedelta(seconds=30)
    db_session.add(RateLimitHit(bucket_key="login:9.9.9.9", created_at=earlier))
    db_session.commit()

    assert limiter.hit("login:9.9.9.9", rule, db_session) == (True, 0)
    allowed, retry_after = limiter.hit("login:9.9.9.9", rule, db_session)

    assert allowed is False
    assert 0 < retry_after <= 30
    # the refused attempt does not occupy a slot
    hits = db_session.scalars(select(RateLimitHit).where(RateLimitHit.bucket_key == "login:9.9.9.9")).all()
    assert len(hits) == 2
