from __future__ import annotations

from collections.abc import Generator
from datetime import timedelta

import pytest
from sqlalchemy import create_engine, select
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from app.auth.models import RateLimitHit, RefreshToken, User, utcnow
from app.core import celery_app
from app.core.database import Base


@pytest.fixture()
def session_factory() -> Generator[sessionmaker, None, None]:
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield sessionmaker(bind=engine, autocommit=False, autoflush=False)
    Base.metadata.drop_all(bind=engine)


def test_beat_schedules_hourly_cleanup() -> None:
    entry = celery_app.celery_app.conf.beat_schedule["cleanup-expired-auth-tokens"]
    assert entry["task"] == "app.tasks.cleanup_expired_auth_tokens"
    assert entry["schedule"] == 3600.0


def test_cleanup_task_purges_expired_rows(session_factory: sessionmaker, monkeypatch: pytest.MonkeyPatch) -> None:
    now = utcnow()
    with session_factory() as session:
        user = User(email="ada@example.com", first_name="Ada", last_name="L")
        session.add(user)
        session.flush()
        session.add_all(
            [
                RefreshToken(user_id=user.id, token_hash="a" * 64, expires_at=now - timedelta(hours=1)),
                RefreshToken(user_id=user.id, token_hash="b" * 64, expires_at=now + timedelta(days=1)),
                RateLimitHit(bucket_key="login:10.0.0.1", created_at=now - timedelta(days=3)),
            ]
        )
        session.commit()

    monkeypatch.setattr(celery_app, "SessionLocal", session_factory)

    counts = celery_app.cleanup_expired_auth_tokens.run()

    assert counts["refresh_tokens"] == 1
    assert counts["rate_limit_hits"] == 1
    with session_factory() as session:
        remaining = session.scalars(select(RefreshToken.token_hash)).all()
        assert list(remaining) == ["b" * 64]
