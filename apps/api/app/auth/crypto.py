"""Password hashing, strength rules and opaque token helpers.

Passwords are hashed with argon2id; cost parameters come from settings so test
runs can lower them. One-time tokens (email verification, password reset) are
random hex strings whose SHA-256 digest is the only thing persisted.
"""

from __future__ import annotations

import hashlib
import re
import secrets
from dataclasses import dataclass, field
from functools import lru_cache

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHashError, VerificationError, VerifyMismatchError

from app.core.config import get_settings


MIN_PASSWORD_LENGTH = 8
_SPECIAL_CHARACTERS = re.compile(r"[!@#$%^&*()_+\-=\[\]{};':\"\\|,.<>/?`~]")


@dataclass(slots=True)
class PasswordStrength:
    valid: bool
    errors: list[str] = field(default_factory=list)


@lru_cache(maxsize=8)
def _hasher(memory_cost: int, time_cost: int, parallelism: int) -> PasswordHasher:
    return PasswordHasher(
        time_cost=time_cost,
        memory_cost=memory_cost,
        parallelism=parallelism,
        type=Type.ID,
    )


def _configured_hasher() -> PasswordHasher:
    settings = get_settings()
    return _hasher(settings.argon2_memory_cost, settings.argon2_time_cost, settings.argon2_parallelism)


def hash_password(plain: str) -> str:
    return _configured_hasher().hash(plain)


def verify_password(password_hash: str | None, plain: str) -> bool:
    if not password_hash:
        return False
    try:
        return _configured_hasher().verify(password_hash, plain)
    except (VerifyMismatchError, VerificationError, InvalidHashError):
        return False


def validate_password_strength(plain: str) -> PasswordStrength:
    errors: list[str] = []
    if len(plain) < MIN_PASSWORD_LENGTH:
        errors.append(f"Password must be at least {MIN_PASSWORD_LENGTH} characters long")
    if not re.search(r"[a-z]", plain):
        errors.append("Password must contain at least one lowercase letter")
    if not re.search(r"[A-Z]", plain):
        errors.append("Password must contain at least one uppercase letter")
    if not re.search(r"\d", plain):
        errors.append("Password must contain at least one number")
    if not _SPECIAL_CHARACTERS.search(plain):
        errors.append("Password must contain at least one special character")
    return PasswordStrength(valid=not errors, errors=errors)


def generate_secure_token() -> str:
    return secrets.token_hex(32)


def hash_token(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()
