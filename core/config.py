"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads for LibraryAuth happen here. No module should
call os.getenv() or os.environ.get() directly -- import get_settings() instead.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call.

  BaseSettings (pydantic-settings): Reads values from environment variables
      and an optional .env file automatically. Field names map to env var names
      (e.g. secret_key -> SECRET_KEY, max_login_attempts -> MAX_LOGIN_ATTEMPTS).

  @model_validator(mode="after"): cross-field validation once all fields are
      resolved. Dev mode generates a SECRET_KEY with a warning, production mode
      refuses to start without one.

Security notes:
  SECRET_KEY shorter than 32 chars is rejected outright. It signs both the
  session cookie and bearer JWTs.

Layer rule: core/ is the kernel. This module may not import from api/ or auth/.
"""

import logging
import secrets
from functools import lru_cache
from pathlib import Path

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("libraryauth.config")

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).resolve().parent.parent / 'libraryauth.db'}"


class Settings(BaseSettings):
    """Application settings loaded from environment variables and .env file.

    All fields have defaults so Settings() can be instantiated in test
    environments without a real .env file.
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
    # Empty string is the sentinel for "not configured".
    secret_key: str = ""
    database_url: str = _DEFAULT_DB_URL
    public_base_url: str = "http://localhost:8000"
    allowed_hosts: list[str] = ["localhost", "127.0.0.1", "*.localhost", "testserver"]
    cors_origins: list[str] = ["http://localhost", "http://localhost:3000", "http://127.0.0.1"]

    # ------------------------------------------------------------------
    # Auth
    # ------------------------------------------------------------------

    secure_cookies: bool = False
    token_expire_seconds: int = 3600
    # bcrypt work factor. 4 is the bcrypt minimum; tests use it for speed.
    bcrypt_rounds: int = Field(default=12, ge=4, le=31)
    password_expiry_days: int = 60
    self_registration_enabled: bool = True

    # ------------------------------------------------------------------
    # Account lockout
    # ------------------------------------------------------------------

    max_login_attempts: int = Field(default=5, ge=1)
    lockout_minutes: int = Field(default=15, ge=1)

    # ------------------------------------------------------------------
    # Password reset
    # ------------------------------------------------------------------

    reset_token_ttl_seconds: int = 3600

    # ------------------------------------------------------------------
    # Rate limiting
    # ------------------------------------------------------------------

    login_rate_limit: str = "10/minute"

    # ------------------------------------------------------------------
    # Outgoing mail (empty smtp_host disables delivery)
    # ------------------------------------------------------------------

    smtp_host: str = ""
    smtp_port: int = 587
    smtp_user: str = ""
    smtp_password: str = ""
    smtp_from: str = "no-reply@localhost"
    smtp_starttls: bool = True

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def check_secret_key(self) -> "Settings":
        """Fill in or reject SECRET_KEY.

        With DEBUG=true a missing key is replaced by a random one, so sessions
        and bearer tokens die with the process. Without DEBUG a missing key is
        a startup error. A key under 32 characters is always an error.
        """
        if self.secret_key:
            if len(self.secret_key) < 32:
                raise ValueError("SECRET_KEY must be at least 32 characters.")
            return self
        if not self.debug:
            raise ValueError(
                "SECRET_KEY is required in production mode. "
                "Set it in the environment or .env, or set DEBUG=true for local development."
            )
        self.secret_key = secrets.token_hex(32)
        logger.warning("DEBUG is on and SECRET_KEY is unset; generated a throwaway key.")
        return self


@lru_cache
def get_settings() -> Settings:
    """Cached Settings instance. Tests that change the environment call get_settings.cache_clear()."""
    return Settings()
