"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads for the auth core happen here. No module should
call os.getenv() or os.environ.get() directly -- import get_settings() instead.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call. This is
      the official FastAPI dependency injection pattern for config.

  BaseSettings (pydantic-settings): Reads values from environment variables
      and an optional .env file automatically. Field names map to env var names
      (e.g. jwt_secret -> JWT_SECRET). Type coercion and validation are built in.

  @model_validator(mode="after"): Runs cross-field validation after all fields
      are resolved from environment. Used for the DEBUG-conditional signing
      secret logic: dev mode generates missing secrets with a warning,
      production mode refuses to start without them.

Security notes:
  [S1] Each token purpose (access, refresh, email-verify, reset) has its own
       signing secret. A token minted for one purpose can never verify under
       another purpose's secret.

  [S2] Secrets shorter than 32 chars are rejected outright. HS256 signing
       relies on key entropy -- a short key weakens every token.

Layer rule: core/ is the kernel. This module may not import from api/ or auth/.
"""

import logging
import secrets
from functools import lru_cache
from pathlib import Path

from pydantic import field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from core.durations import DURATION_PATTERN

logger = logging.getLogger("authcore.config")

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).resolve().parent.parent / 'authcore.db'}"

# Field name -> env var name, used in startup error messages.
_SECRET_FIELDS = ("jwt_secret", "jwt_refresh_secret", "jwt_email_secret", "jwt_reset_secret")


class Settings(BaseSettings):
    """Application settings loaded from environment variables and .env file.

    All fields have defaults so Settings() can be instantiated in test
    environments without a real .env file (as long as DEBUG=true, or the
    secrets are provided). The model_validator enforces production-safety
    rules at startup.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ------------------------------------------------------------------
    # Core
    # ------------------------------------------------------------------

    debug: bool = False
    database_url: str = _DEFAULT_DB_URL

    # ------------------------------------------------------------------
    # Token signing -- one secret and lifetime per purpose [S1]
    # ------------------------------------------------------------------

    # Empty string is the sentinel for "not configured".
    jwt_secret: str = ""
    jwt_refresh_secret: str = ""
    jwt_email_secret: str = ""
    jwt_reset_secret: str = ""

    jwt_access_token_expires_in: str = "15m"
    jwt_refresh_token_expires_in: str = "7d"
    jwt_email_token_expires_in: str = "1d"
    jwt_reset_token_expires_in: str = "1h"

    # ------------------------------------------------------------------
    # Login lockout
    # ------------------------------------------------------------------

    max_failed_login_attempts: int = 3
    account_lock_time_minutes: int = 15
    login_rate_limit: str = "10/minute"

    # ------------------------------------------------------------------
    # Bootstrap role names
    # ------------------------------------------------------------------

    default_role_name: str = "user"
    admin_role_name: str = "admin"

    # ------------------------------------------------------------------
    # Outbound mail (optional -- empty SMTP_HOST disables sending)
    # ------------------------------------------------------------------

    smtp_host: str = ""
    smtp_port: int = 587
    smtp_user: str = ""
    smtp_pass: str = ""
    smtp_secure: bool = False
    from_email: str = "no-reply@localhost"
    frontend_url: str = "http://localhost:3000"

    # ------------------------------------------------------------------
    # Identity providers (optional -- empty string means provider is disabled)
    # ------------------------------------------------------------------

    google_client_id: str = ""
    google_client_secret: str = ""
    microsoft_client_id: str = ""
    fb_client_id: str = ""
    fb_client_secret: str = ""
    provider_timeout_seconds: float = 10.0

    # ------------------------------------------------------------------
    # Cookies
    # ------------------------------------------------------------------

    secure_cookies: bool = False

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @field_validator(
        "jwt_access_token_expires_in",
        "jwt_refresh_token_expires_in",
        "jwt_email_token_expires_in",
        "jwt_reset_token_expires_in",
    )
    @classmethod
    def validate_duration(cls, value: str) -> str:
        if not DURATION_PATTERN.fullmatch(value.strip()):
            raise ValueError(f"Invalid duration {value!r}; expected <int><s|m|h|d>, e.g. '15m'.")
        return value.strip()

    @model_validator(mode="after")
    def validate_signing_secrets(self) -> "Settings":
        """Enforce the signing-secret policy.

        Dev mode (DEBUG=true): auto-generate every missing secret with a
            warning. Tokens will not survive restart -- acceptable for local dev.

        Production mode (DEBUG=false or not set): refuse to start if any
            secret is missing. Serving without secrets is never safe.

        Both modes: reject secrets shorter than 32 characters [S2].
        """
        missing = [name for name in _SECRET_FIELDS if not getattr(self, name)]
        if missing:
            if self.debug:
                for name in missing:
                    setattr(self, name, secrets.token_hex(32))
                logger.warning(
                    "Using auto-generated signing secrets for %s. Tokens will not persist across restarts.",
                    ", ".join(n.upper() for n in missing),
                )
            else:
                raise ValueError(
                    f"{', '.join(n.upper() for n in missing)} required in production mode. "
                    "Set them in your environment or .env file. "
                    "To run in development mode, set DEBUG=true."
                )
        for name in _SECRET_FIELDS:
            if len(getattr(self, name)) < 32:
                raise ValueError(f"{name.upper()} must be at least 32 characters.")
        if self.max_failed_login_attempts < 1:
            raise ValueError("MAX_FAILED_LOGIN_ATTEMPTS must be at least 1.")
        return self

    @property
    def smtp_configured(self) -> bool:
        return bool(self.smtp_host)


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    Uses lru_cache so Settings() is instantiated exactly once -- at first call.
    All modules should call get_settings() rather than constructing Settings() directly.

    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables.
    """
    return Settings()
