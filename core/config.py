"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads for IDecs happen here. No module should call
os.getenv() or os.environ.get() directly -- import get_settings() instead.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call.

  BaseSettings (pydantic-settings): Reads values from environment variables
      and an optional .env file automatically. Field names map to env var names
      (e.g. secret_key -> SECRET_KEY). List fields are read as JSON arrays
      (e.g. SSO_ALLOWED_SERVICES='["https://app.example.com/"]').

Security notes:
  SECRET_KEY shorter than 32 chars is rejected outright. JWT signing and the
  HMAC over stored tickets / OTP codes both rely on key entropy.

  In production mode (DEBUG not set or false), a missing SECRET_KEY is a hard
  startup failure. OTP_TEST_CODE is only honoured in debug mode.

Layer rule: core/ is the kernel. This module may not import from api/, web/,
sso/, accounts/, or nav/.
"""

import logging
import secrets
from functools import lru_cache
from pathlib import Path

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("idecs.config")

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).parent.parent / 'idecs.db'}"

PASSWORD_PATTERN = r"^(?=.*[A-Z])(?=.*[a-z])(?=.*[0-9])(?=.*[\W_]).{8,20}$"


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
    secret_key: str = ""
    database_url: str = _DEFAULT_DB_URL
    app_name: str = "IDecs"
    app_tagline: str = "a low-cost, fully open, easy to configure identity service"
    version: str = "1.0.0"

    # ------------------------------------------------------------------
    # Sessions and tickets
    # ------------------------------------------------------------------

    secure_cookies: bool = False
    token_expire_seconds: int = 7 * 24 * 3600
    ticket_expire_seconds: int = 60

    # ------------------------------------------------------------------
    # Request signing
    # ------------------------------------------------------------------

    api_signature_enabled: bool = True
    api_key_salt: str = "idecs"
    api_timestamp_tolerance_ms: int = 5 * 60 * 1000

    # ------------------------------------------------------------------
    # Password policy
    # ------------------------------------------------------------------

    password_pattern: str = PASSWORD_PATTERN

    # ------------------------------------------------------------------
    # OTP
    # ------------------------------------------------------------------

    otp_length: int = 6
    otp_expire_seconds: int = 300
    otp_max_attempts: int = 5
    otp_resend_cooldown_seconds: int = 60
    # Fixed code accepted for any identity. Debug mode only.
    otp_test_code: str = ""

    sms_gateway_url: str = ""
    sms_gateway_token: str = ""

    smtp_host: str = ""
    smtp_port: int = 587
    smtp_user: str = ""
    smtp_password: str = ""
    smtp_timeout: int = 10
    mail_from: str = "no-reply@idecs.local"

    # ------------------------------------------------------------------
    # Rate limiting
    # ------------------------------------------------------------------

    rate_limit_enabled: bool = True
    login_rate_limit: str = "10/minute"
    signup_rate_limit: str = "5/minute"
    otp_rate_limit: str = "5/minute"

    # ------------------------------------------------------------------
    # Registration / SSO / HTTP
    # ------------------------------------------------------------------

    self_registration_enabled: bool = True
    sso_allowed_services: list[str] = []
    allowed_hosts: list[str] = ["localhost", "127.0.0.1", "*.localhost", "testserver"]
    cors_origins: list[str] = ["http://localhost", "http://localhost:3000", "http://127.0.0.1"]

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_secret_key(self) -> "Settings":
        """Enforce the SECRET_KEY policy.

        Dev mode (DEBUG=true): auto-generate a random key with a warning.
            Sessions will not survive restart -- acceptable for local dev.

        Production mode: refuse to start if SECRET_KEY is missing.

        Both modes: reject keys shorter than 32 characters.
        """
        if not self.secret_key:
            if self.debug:
                self.secret_key = secrets.token_hex(32)
                logger.warning("Using auto-generated SECRET_KEY. Sessions will not persist across restarts.")
            else:
                raise ValueError(
                    "SECRET_KEY is required in production mode. "
                    "Set SECRET_KEY in your environment or .env file. "
                    "To run in development mode, set DEBUG=true."
                )
        if len(self.secret_key) < 32:
            raise ValueError("SECRET_KEY must be at least 32 characters.")
        if self.otp_test_code and not self.debug:
            logger.warning("OTP_TEST_CODE is ignored outside debug mode.")
        return self


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables.
    """
    return Settings()
