"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads for Gatehouse happen here. No module should
call os.getenv() or os.environ.get() directly -- import get_settings() instead.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call.

  BaseSettings (pydantic-settings): Reads values from environment variables
      and an optional .env file automatically. Field names map to env var names
      (e.g. secret_key -> SECRET_KEY, api_rate_limit -> API_RATE_LIMIT).

  @model_validator(mode="after"): DEBUG-conditional SECRET_KEY logic. Dev mode
      generates a key with a warning, production mode refuses to start.

Security notes:
  [M6] SECRET_KEY shorter than 32 chars is rejected outright. The session
       token is an HS256 JWT -- a short key weakens it.

  [M7] In production mode (DEBUG not set or false), a missing SECRET_KEY is a
       hard startup failure.

  Values in this module are defaults. The security_settings table can
  override apiRateLimit, loginAttemptsLimit, lockoutDuration,
  passwordExpiration and captchaType at runtime (see security/store.py).

Layer rule: core/ is the kernel. This module may not import from api/,
auth/, or security/.
"""

import logging
import secrets
from functools import lru_cache
from pathlib import Path

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("gatehouse.config")

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).resolve().parent.parent / 'gatehouse.db'}"

CAPTCHA_MODES = ("disabled", "local", "google", "cloudflare")


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

    # ------------------------------------------------------------------
    # HTTP
    # ------------------------------------------------------------------

    allowed_hosts: list[str] = ["localhost", "127.0.0.1", "*.localhost", "testserver"]
    cors_origins: list[str] = ["http://localhost", "http://localhost:5000", "http://127.0.0.1"]
    # Only enable behind a reverse proxy that overwrites X-Forwarded-For.
    # Otherwise clients can pick their own IP and walk around every per-IP check.
    trust_forwarded_for: bool = False

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    secure_cookies: bool = False
    session_ttl_hours: int = 24
    pending_auth_ttl_seconds: int = 600

    # ------------------------------------------------------------------
    # Rate limiting and lockout
    # ------------------------------------------------------------------

    api_rate_limit: int = 1000
    api_rate_window_seconds: int = 3600
    login_attempts_limit: int = 5
    lockout_duration_minutes: int = 15
    reaper_interval_seconds: int = 300
    # slowapi limit string applied to the login endpoints on top of the lockout.
    login_rate_limit: str = "10/minute"
    # Separate slowapi cap on second-factor completion (TOTP and WebAuthn).
    # 2FA failures never touch the lockout; this only bounds code guessing
    # per IP, and its counters are not shared with the login routes.
    two_factor_rate_limit: str = "30/minute"

    # ------------------------------------------------------------------
    # Password policy
    # ------------------------------------------------------------------

    password_expiration_enabled: bool = False
    password_max_age_days: int = 90

    # ------------------------------------------------------------------
    # Captcha
    # ------------------------------------------------------------------

    captcha_type: str = "disabled"
    recaptcha_secret_key: str = ""
    recaptcha_min_score: float = 0.5
    turnstile_secret_key: str = ""
    captcha_min_solve_ms: int = 2000

    # ------------------------------------------------------------------
    # Second factors
    # ------------------------------------------------------------------

    rp_id: str = "localhost"
    rp_name: str = "Gatehouse"
    webauthn_origin: str = "http://localhost:5000"
    totp_issuer: str = "Gatehouse"
    totp_valid_window: int = 2

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_secret_key(self) -> "Settings":
        """Enforce SECRET_KEY policy [M7].

        Dev mode (DEBUG=true): auto-generate a random key with a warning.
            Sessions will not survive restart -- acceptable for local dev.

        Production mode: refuse to start if SECRET_KEY is missing.

        Both modes: reject keys shorter than 32 characters [M6].
        """
        if not self.secret_key:
            if self.debug:
                self.secret_key = secrets.token_hex(32)
                logger.warning("WARNING: Using auto-generated SECRET_KEY. Sessions will not persist across restarts.")
            else:
                raise ValueError(
                    "SECRET_KEY is required in production mode. "
                    "Set SECRET_KEY in your environment or .env file. "
                    "To run in development mode, set DEBUG=true."
                )
        if len(self.secret_key) < 32:
            raise ValueError("SECRET_KEY must be at least 32 characters.")
        return self

    @model_validator(mode="after")
    def validate_captcha_type(self) -> "Settings":
        if self.captcha_type not in CAPTCHA_MODES:
            raise ValueError(f"CAPTCHA_TYPE must be one of {', '.join(CAPTCHA_MODES)}.")
        return self


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables.
    """
    return Settings()
