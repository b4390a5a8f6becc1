"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads for Gatehouse happen here. No module should
call os.getenv() or os.environ.get() directly -- import get_settings() instead.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call. This is
      the official FastAPI dependency injection pattern for config.

  BaseSettings (pydantic-settings): Reads values from environment variables
      and an optional .env file automatically. Field names map to env var names
      (e.g. secret_key -> SECRET_KEY, lockout_threshold -> LOCKOUT_THRESHOLD).

  @model_validator(mode="after"): Cross-field validation after all fields are
      resolved. Dev mode (DEBUG=true) generates a SECRET_KEY with a warning;
      production mode refuses to start without one.

Security notes:
  SECRET_KEY shorter than 32 chars is rejected outright. JWT signing relies
  on key entropy -- a short key weakens every session cookie we issue.

  PII_ENCRYPTION_KEY must decode to exactly 32 bytes (AES-256). It is
  optional in dev mode; two-factor secrets are then stored unencrypted.

Layer rule: core/ is the kernel. This module may not import from api/ or auth/.
"""

import base64
import binascii
import logging
import secrets
from functools import lru_cache

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("gatehouse.config")


class Settings(BaseSettings):
    """Application settings loaded from environment variables and .env file.

    All fields have defaults so Settings() can be instantiated in test
    environments without a real .env file. The model_validator enforces
    production-safety rules at startup.
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
    # Empty string is the sentinel for "not configured". The model_validator
    # below either generates a dev key or raises, so callers never see "".
    secret_key: str = ""
    environment: str = "development"
    database_url: str = "sqlite:///gatehouse.db"

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    token_expire_seconds: int = 8 * 3600
    default_redirect: str = "/dashboard"

    # ------------------------------------------------------------------
    # Account protection
    # ------------------------------------------------------------------

    lockout_threshold: int = 5
    lockout_minutes: int = 15
    high_block_minutes: int = 15
    critical_block_minutes: int = 60
    risk_timeout_seconds: float = 2.0
    # Driver-level bound on one credential store call (sqlite busy wait,
    # postgres connect and statement timeout).
    store_timeout_seconds: float = 5.0
    block_purge_interval_seconds: int = 300
    bcrypt_rounds: int = 12
    login_rate_limit: str = "10/minute"

    # Base64-encoded 32-byte key for two-factor secrets at rest.
    pii_encryption_key: str = ""

    # ------------------------------------------------------------------
    # Deployment / base URL detection (tried in this order)
    # ------------------------------------------------------------------

    app_base_url: str = ""
    public_app_url: str = ""
    vercel_url: str = ""
    railway_public_domain: str = ""
    port: int = 3000

    trusted_hosts: list[str] = ["localhost", "127.0.0.1", "*.localhost", "testserver"]
    cors_origins: list[str] = ["http://localhost:3000", "http://127.0.0.1:3000"]

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_secrets(self) -> "Settings":
        """Enforce SECRET_KEY and PII_ENCRYPTION_KEY policy.

        Dev mode (DEBUG=true): auto-generate a random SECRET_KEY with a
            warning. Sessions will not survive restart.

        Production mode: refuse to start without SECRET_KEY.

        Both modes: reject keys shorter than 32 characters, reject an
            encryption key that is not 32 bytes of base64, and keep the
            critical-risk block inside its 30-60 minute window.
        """
        if not self.secret_key:
            if self.debug:
                self.secret_key = secrets.token_hex(32)
                logger.warning(
                    "WARNING: Using auto-generated SECRET_KEY. " "Sessions will not persist across restarts."
                )
            else:
                raise ValueError(
                    "SECRET_KEY is required in production mode. "
                    "Set SECRET_KEY in your environment or .env file. "
                    "To run in development mode, set DEBUG=true."
                )
        if len(self.secret_key) < 32:
            raise ValueError("SECRET_KEY must be at least 32 characters.")

        if self.pii_encryption_key:
            try:
                raw = base64.b64decode(self.pii_encryption_key, validate=True)
            except (binascii.Error, ValueError) as exc:
                raise ValueError("PII_ENCRYPTION_KEY must be base64-encoded.") from exc
            if len(raw) != 32:
                raise ValueError("PII_ENCRYPTION_KEY must be 32 bytes (base64-encoded).")
        elif not self.debug:
            logger.warning("PII_ENCRYPTION_KEY not set -- two-factor secrets are read as plaintext.")

        if not 30 <= self.critical_block_minutes <= 60:
            raise ValueError("CRITICAL_BLOCK_MINUTES must be between 30 and 60.")
        if self.lockout_threshold < 1:
            raise ValueError("LOCKOUT_THRESHOLD must be at least 1.")
        return self

    @property
    def is_production(self) -> bool:
        return self.environment.lower() == "production"


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables.
    """
    return Settings()
