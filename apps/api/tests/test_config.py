from __future__ import annotations

import pytest
from pydantic import ValidationError

from app.core.config import Settings


def test_defaults_match_auth_policy() -> None:
    settings = Settings(_env_file=None)

    assert settings.access_token_ttl_minutes == 15
    assert settings.refresh_token_ttl_days == 30
    assert settings.max_failed_logins == 5
    assert settings.lockout_minutes == 30
    assert settings.jwt_access_secret != settings.jwt_refresh_secret


def test_identical_jwt_secrets_refused_outside_local(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("JWT_ACCESS_SECRET", "same-secret")
    monkeypatch.setenv("JWT_REFRESH_SECRET", "same-secret")

    monkeypatch.setenv("APP_ENV", "local")
    assert Settings(_env_file=None).jwt_access_secret == "same-secret"

    monkeypatch.setenv("APP_ENV", "production")
    with pytest.raises(ValidationError):
        Settings(_env_file=None)
