"""
tests/test_config.py -- Settings validation.

Covers:
  - production mode without signing secrets refuses to start
  - dev mode generates a distinct secret per purpose
  - short secrets rejected in both modes
  - malformed token lifetimes rejected at load time
  - lockout threshold must be positive
"""

from __future__ import annotations

import pytest
from pydantic import ValidationError

from core.config import Settings

SECRETS = {
    "jwt_secret": "a" * 32,
    "jwt_refresh_secret": "b" * 32,
    "jwt_email_secret": "c" * 32,
    "jwt_reset_secret": "d" * 32,
}


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch):
    for name in ("DEBUG", "JWT_SECRET", "JWT_REFRESH_SECRET", "JWT_EMAIL_SECRET", "JWT_RESET_SECRET"):
        monkeypatch.delenv(name, raising=False)


def _settings(**overrides) -> Settings:
    return Settings(_env_file=None, **overrides)


def test_production_requires_secrets():
    with pytest.raises(ValidationError, match="JWT_SECRET"):
        _settings(debug=False)


def test_production_with_secrets():
    settings = _settings(debug=False, **SECRETS)
    assert settings.jwt_reset_secret == "d" * 32


def test_debug_generates_distinct_secrets():
    settings = _settings(debug=True)
    generated = {settings.jwt_secret, settings.jwt_refresh_secret, settings.jwt_email_secret, settings.jwt_reset_secret}
    assert len(generated) == 4
    assert all(len(s) >= 32 for s in generated)


def test_short_secret_rejected():
    with pytest.raises(ValidationError, match="at least 32"):
        _settings(debug=True, jwt_secret="too-short")


@pytest.mark.parametrize("value", ["15", "fifteen minutes", "1w"])
def test_bad_duration_rejected(value):
    with pytest.raises(ValidationError, match="Invalid duration"):
        _settings(debug=True, jwt_access_token_expires_in=value)


def test_duration_is_normalized():
    assert _settings(debug=True, jwt_refresh_token_expires_in=" 7d ").jwt_refresh_token_expires_in == "7d"


def test_lockout_threshold_must_be_positive():
    with pytest.raises(ValidationError):
        _settings(debug=True, max_failed_login_attempts=0)
