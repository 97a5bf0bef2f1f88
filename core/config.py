"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads for Keyway happen here. No module should
call os.getenv() or os.environ.get() directly -- import get_settings() instead.
main.py is the one exception: it writes CLI flags into the environment before
the first get_settings() call so both entry points share one source of truth.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call.

  BaseSettings (pydantic-settings): Reads values from environment variables
      and an optional .env file automatically. Field names map to env var names
      (e.g. smtp_host -> SMTP_HOST). Type coercion and validation are built in.

  @model_validator(mode="after"): Cross-field validation after all fields are
      resolved. Dev mode (DEBUG=true) fills in a localhost base URL and skips
      mail delivery; production mode refuses to start without a base URL and
      an SMTP relay, because verification links are the only way in.

Layer rule: core/ is the kernel. This module may not import from api/, auth/,
or mail/.
"""

import logging
from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("keyway.config")

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).resolve().parent.parent / 'keyway.db'}"
_DEV_BASE_URL = "http://localhost:8080"


class Settings(BaseSettings):
    """Application settings loaded from environment variables and .env file.

    All fields have defaults so Settings() can be instantiated in test
    environments without a real .env file (with DEBUG=true).
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
    port: int = 8080
    # Absolute origin used to build verification links, e.g. https://example.com
    base_url: str = ""

    # ------------------------------------------------------------------
    # Storage
    # ------------------------------------------------------------------

    storage_backend: Literal["sql", "memory"] = "sql"
    database_url: str = _DEFAULT_DB_URL
    # Upper bound for any single store call. Calls that exceed it fail fast.
    db_timeout_seconds: float = 3.0

    # ------------------------------------------------------------------
    # Verification tokens and sessions
    # ------------------------------------------------------------------

    verification_ttl_seconds: int = 3600
    resend_cooldown_seconds: int = 300
    session_lifetime_seconds: int = 86400
    session_cookie_name: str = "session"
    secure_cookies: bool = False

    # ------------------------------------------------------------------
    # Mail (SMTP relay)
    # ------------------------------------------------------------------

    smtp_host: str = ""
    smtp_port: int = 2525
    smtp_username: str = ""
    smtp_password: str = ""
    smtp_sender: str = ""
    mail_workers: int = 2

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_delivery(self) -> "Settings":
        """Enforce the base URL and SMTP policy.

        Dev mode (DEBUG=true): default the base URL to localhost. Mail is not
            delivered in dev mode; links are logged at DEBUG instead.

        Production mode: BASE_URL, SMTP_HOST and SMTP_SENDER are required.
            Without them no user could ever complete signup or reset.
        """
        self.base_url = self.base_url.rstrip("/")
        if self.debug:
            if not self.base_url:
                self.base_url = _DEV_BASE_URL
                logger.warning("WARNING: BASE_URL not set, using %s for verification links.", _DEV_BASE_URL)
            return self

        missing = [
            name
            for name, value in (
                ("BASE_URL", self.base_url),
                ("SMTP_HOST", self.smtp_host),
                ("SMTP_SENDER", self.smtp_sender),
            )
            if not value
        ]
        if missing:
            raise ValueError(
                f"{', '.join(missing)} required in production mode. "
                "Set them in your environment or .env file. "
                "To run in development mode, set DEBUG=true."
            )
        if not self.base_url.startswith(("http://", "https://")):
            raise ValueError("BASE_URL must be an absolute http(s) URL.")
        return self


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables.
    """
    return Settings()
