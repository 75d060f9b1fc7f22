from __future__ import annotations

import logging
import math
import threading
import time
from collections import deque
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Protocol

from sqlalchemy import delete, func, select
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from app.auth.models import RateLimitHit, as_utc
from app.core.config import Settings, get_settings
from app.core.context import resolve_client_ip
from app.core.database import get_db
from app.core.errors import RateLimitedError, error_response
from app.metrics import observe_rate_limited


logger = logging.getLogger("app.auth.rate_limit")


@dataclass(frozen=True, slots=True)
class RateLimitRule:
    attempts: int
    window_seconds: int


class RateLimiter(Protocol):
    def hit(self, key: str, rule: RateLimitRule, session: Session | None) -> tuple[bool, int]: ...

    def clear(self) -> None: ...


class InMemorySlidingWindowLimiter:
    """Process-local sliding window log; only meaningful for a single instance."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._hits: dict[str, deque[float]] = {}

    def hit(self, key: str, rule: RateLimitRule, session: Session | None = None) -> tuple[bool, int]:
        if rule.attempts <= 0:
            return False, rule.window_seconds

        now = time.monotonic()
        cutoff = now - rule.window_seconds
        with self._lock:
            hits = self._hits.setdefault(key, deque())
            while hits and hits[0] <= cutoff:
                hits.popleft()

            if len(hits) >= rule.attempts:
                retry_after = max(1, math.ceil(hits[0] + rule.window_seconds - now))
                return False, retry_after

            hits.append(now)
            return True, 0

    def clear(self) -> None:
        with self._lock:
            self._hits.clear()


class DbSlidingWindowLimiter:
    """Sliding window log kept in the shared database so every instance sees the same counts."""

    def hit(self, key: str, rule: RateLimitRule, session: Session | None) -> tuple[bool, int]:
        if session is None:
            raise RuntimeError("database rate limiter requires a session")
        if rule.attempts <= 0:
            return False, rule.window_seconds

        now = datetime.now(timezone.utc)
        cutoff = now - timedelta(seconds=rule.window_seconds)
        session.execute(delete(RateLimitHit).where(RateLimitHit.bucket_key == key, RateLimitHit.created_at <= cutoff))

        # committed before counting so concurrent instances always see each other's hits
        hit = RateLimitHit(bucket_key=key, created_at=now)
        session.add(hit)
        session.commit()

        count, oldest = session.execute(
            select(func.count(RateLimitHit.id), func.min(RateLimitHit.created_at)).where(
                RateLimitHit.bucket_key == key,
                RateLimitHit.created_at > cutoff,
            )
        ).one()
        if count <= rule.attempts:
            return True, 0

        session.delete(hit)
        session.commit()
        remaining = (as_utc(oldest) + timedelta(seconds=rule.window_seconds) - now).total_seconds()
        return False, max(1, math.ceil(remaining))

    def clear(self) -> None:
        return None


_memory_limiter = InMemorySlidingWindowLimiter()
_db_limiter = DbSlidingWindowLimiter()


def get_rate_limiter(settings: Settings) -> RateLimiter:
    backend = settings.rate_limit_backend.lower()
    if backend == "auto":
        backend = "db" if settings.is_production else "memory"
    if backend == "db":
        return _db_limiter
    return _memory_limiter


_ROUTE_GROUPS = {
    "/api/auth/login": "login",
    "/api/auth/register": "register",
    "/api/auth/refresh": "refresh",
    "/api/auth/forgot-password": "password_reset",
    "/api/auth/reset-password": "password_reset",
    "/api/auth/verify-email": "verify_email",
}


def resolve_rule(route_group: str, settings: Settings) -> RateLimitRule:
    return RateLimitRule(
        attempts=getattr(settings, f"rate_limit_{route_group}_attempts"),
        window_seconds=getattr(settings, f"rate_limit_{route_group}_window_seconds"),
    )


class AuthRateLimitMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):  # type: ignore[no-untyped-def]
        settings = get_settings()
        if settings.rate_limit_disabled or request.method.upper() != "POST":
            return await call_next(request)

        route_group = _ROUTE_GROUPS.get(request.url.path.rstrip("/"))
        if route_group is None:
            return await call_next(request)

        client_ip = resolve_client_ip(request)
        limiter = get_rate_limiter(settings)
        allowed, retry_after = await run_in_threadpool(
            _check_limit, request, limiter, f"{route_group}:{client_ip}", resolve_rule(route_group, settings)
        )
        if allowed:
            return await call_next(request)

        observe_rate_limited(route_group)
        logger.warning(
            "auth.rate_limited",
            extra={"route_group": route_group, "client_ip": client_ip, "retry_after": retry_after},
        )
        # exception handlers do not run for errors raised inside middleware
        exc = RateLimitedError(
            f"Too many attempts. Try again in {retry_after} seconds.",
            details={"retry_after": retry_after},
            retry_after=retry_after,
        )
        return error_response(
            request,
            status_code=exc.status_code,
            code=exc.code,
            message=exc.message,
            details=exc.details,
            retry_after=exc.retry_after,
        )


def _check_limit(request: Request, limiter: RateLimiter, key: str, rule: RateLimitRule) -> tuple[bool, int]:
    with _limiter_session(request, limiter) as session:
        return limiter.hit(key, rule, session)


@contextmanager
def _limiter_session(request: Request, limiter: RateLimiter) -> Iterator[Session | None]:
    if not isinstance(limiter, DbSlidingWindowLimiter):
        yield None
        return

    provider = request.app.dependency_overrides.get(get_db, get_db)
    generator = provider()
    session = next(generator)
    try:
        yield session
    finally:
        try:
            next(generator)
        except StopIteration:
            pass


def reset_rate_limiter() -> None:
    _memory_limiter.clear()
