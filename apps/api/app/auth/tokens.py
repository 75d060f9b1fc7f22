from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Literal

from jose import JWTError, jwt

from app.core.config import Settings, get_settings


TokenType = Literal["access", "refresh"]


@dataclass(slots=True)
class TokenPayload:
    user_id: str
    email: str
    role: str
    type: TokenType
    jti: str
    expires_at: datetime


@dataclass(slots=True)
class TokenPair:
    access_token: str
    refresh_token: str


def _secret_for(token_type: TokenType, settings: Settings) -> str:
    if token_type == "access":
        return settings.jwt_access_secret
    return settings.jwt_refresh_secret


def _ttl_for(token_type: TokenType, settings: Settings) -> timedelta:
    if token_type == "access":
        return timedelta(minutes=settings.access_token_ttl_minutes)
    return timedelta(days=settings.refresh_token_ttl_days)


def encode_token(
    *,
    user_id: str,
    email: str,
    role: str,
    token_type: TokenType,
    now: datetime | None = None,
) -> tuple[str, datetime]:
    settings = get_settings()
    issued_at = now or datetime.now(timezone.utc)
    expires_at = issued_at + _ttl_for(token_type, settings)
    claims: dict[str, Any] = {
        "sub": user_id,
        "email": email,
        "role": role,
        "type": token_type,
        "jti": uuid.uuid4().hex,
        "iss": settings.jwt_issuer,
        "aud": settings.jwt_audience,
        "iat": int(issued_at.timestamp()),
        "exp": int(expires_at.timestamp()),
    }
    token = jwt.encode(claims, _secret_for(token_type, settings), algorithm=settings.jwt_algorithm)
    return token, expires_at


def _decode(token: str, token_type: TokenType) -> TokenPayload | None:
    settings = get_settings()
    try:
        claims = jwt.decode(
            token,
            _secret_for(token_type, settings),
            algorithms=[settings.jwt_algorithm],
            audience=settings.jwt_audience,
            issuer=settings.jwt_issuer,
        )
    except JWTError:
        return None

    if claims.get("type") != token_type:
        return None
    subject = claims.get("sub")
    if not isinstance(subject, str) or not subject:
        return None
    return TokenPayload(
        user_id=subject,
        email=str(claims.get("email", "")),
        role=str(claims.get("role", "user")),
        type=token_type,
        jti=str(claims.get("jti", "")),
        expires_at=datetime.fromtimestamp(int(claims["exp"]), tz=timezone.utc),
    )


def verify_access_token(token: str) -> TokenPayload | None:
    return _decode(token, "access")


def verify_refresh_token(token: str) -> TokenPayload | None:
    return _decode(token, "refresh")
