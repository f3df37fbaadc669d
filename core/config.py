"""
core/config.py -- LoginGuard settings (pydantic-settings).

Every tunable of the service lives on Settings: token lifetime, the password
policy constants, the lockout threshold and tier table, the bootstrap admin
password, HTTP limits and the SMTP hook. Values come from the process
environment or a .env file; env names are the upper-cased field names
(password_max_age_days -> PASSWORD_MAX_AGE_DAYS). List fields
(LOCKOUT_TIERS_SECONDS, CORS_ORIGINS, ALLOWED_HOSTS) are read as JSON.

Nothing else in the code base reads os.environ; call get_settings().

Security notes:
  [M6] SECRET_KEY signs every session token and must be 32+ characters.
  [M7] With DEBUG off a missing SECRET_KEY stops startup. With DEBUG on a
       throwaway key is generated, so tokens die with the process.

Layer rule: core/ is the kernel. This module may not import from api/ or auth/.
"""

import logging
import secrets
from functools import lru_cache
from typing import Literal

from pydantic import field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("loginguard.config")


class Settings(BaseSettings):
    """Service configuration. Defaults match the documented password and lockout policy."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ------------------------------------------------------------------
    # Service
    # ------------------------------------------------------------------

    debug: bool = False
    secret_key: str = ""  # filled in or rejected by check_secret_and_ranges()
    database_url: str = ""  # empty -> auth/loginguard_auth.db next to the store

    # ------------------------------------------------------------------
    # Session tokens
    # ------------------------------------------------------------------

    token_expire_seconds: int = 7200

    # ------------------------------------------------------------------
    # Password policy
    # ------------------------------------------------------------------

    password_min_length: int = 12
    password_max_length: int = 128
    password_require_uppercase: bool = True
    password_require_lowercase: bool = True
    password_require_digit: bool = True
    password_require_special: bool = True
    password_max_age_days: int = 90
    password_history_size: int = 5

    # ------------------------------------------------------------------
    # Lockout
    # ------------------------------------------------------------------

    lockout_threshold: int = 5
    lockout_tiers_seconds: list[int] = [30, 60, 300, 900, 3600]
    # "clamped" reproduces the historical saturation at the second tier;
    # "progressive" walks every tier using the unclamped violation count.
    lockout_escalation: Literal["clamped", "progressive"] = "clamped"

    # ------------------------------------------------------------------
    # Bootstrap
    # ------------------------------------------------------------------

    # Used only when no admin account exists at startup. Empty means a random
    # strong password is generated and logged once.
    default_admin_password: str = ""

    # ------------------------------------------------------------------
    # HTTP
    # ------------------------------------------------------------------

    login_rate_limit: str = "10/minute"
    cors_origins: list[str] = ["http://localhost:3000"]
    allowed_hosts: list[str] = ["localhost", "127.0.0.1", "*.localhost", "testserver"]

    # ------------------------------------------------------------------
    # Login alerts (SMTP hook)
    # ------------------------------------------------------------------

    login_alerts_enabled: bool = True
    smtp_host: str = ""
    smtp_port: int = 587
    smtp_user: str = ""
    smtp_password: str = ""
    smtp_from: str = ""
    smtp_use_tls: bool = True
    notify_max_attempts: int = 3
    notify_backoff_seconds: float = 1.0

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @field_validator("lockout_tiers_seconds")
    @classmethod
    def validate_tiers(cls, value: list[int]) -> list[int]:
        """Escalation tiers must be non-empty and strictly positive."""
        if not value or any(v <= 0 for v in value):
            raise ValueError("LOCKOUT_TIERS_SECONDS must be a non-empty list of positive integers.")
        return value

    @model_validator(mode="after")
    def check_secret_and_ranges(self) -> "Settings":
        """SECRET_KEY rules [M6][M7] plus the password length range."""
        if not self.secret_key:
            if not self.debug:
                raise ValueError("SECRET_KEY must be set unless DEBUG=true.")
            self.secret_key = secrets.token_hex(32)
            logger.warning("DEBUG is on and SECRET_KEY is unset; issued tokens will not survive a restart.")
        if len(self.secret_key) < 32:
            raise ValueError("SECRET_KEY is too short (minimum 32 characters).")
        if self.password_min_length > self.password_max_length:
            raise ValueError("PASSWORD_MIN_LENGTH cannot exceed PASSWORD_MAX_LENGTH.")
        return self


@lru_cache
def get_settings() -> Settings:
    """Process-wide Settings, built on first use.

    Tests that change the environment must call get_settings.cache_clear().
    """
    return Settings()
