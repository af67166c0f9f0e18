"""
core/config.py -- Centralized configuration for the SafeVault security core.

All environment variable reads happen here. No module should call os.getenv()
or os.environ.get() directly -- import get_settings() instead.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call.

  BaseSettings (pydantic-settings): Reads values from environment variables
      and an optional .env file automatically. Field names map to env var names
      (e.g. salt_bytes -> SALT_BYTES). Type coercion and validation are built in.

  @model_validator(mode="after"): Runs cross-field validation after all fields
      are resolved. Used for the DEBUG-conditional KDF cost policy: dev mode
      accepts cheap Argon2 parameters with a warning, production refuses them.

Security notes:
  Salts shorter than 32 bytes are rejected in every mode.

  Argon2 cost floor (time_cost >= 2, memory >= 19 MiB) follows the OWASP
  Password Storage baseline for Argon2id. Anything lower is only accepted
  with DEBUG=true so test suites can run quickly.

Layer rule: core/ is the kernel. This module may not import from auth/.
"""

import logging
from datetime import datetime, timezone
from functools import lru_cache
from pathlib import Path

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("safevault.config")

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).resolve().parent.parent / 'auth' / 'safevault_auth.db'}"

_MIN_SALT_BYTES = 32
_MIN_TIME_COST = 2
_MIN_MEMORY_COST_KIB = 19456


def now_iso() -> str:
    """Current UTC time as an ISO 8601 string (the storage format for timestamps)."""
    return datetime.now(timezone.utc).isoformat()


class Settings(BaseSettings):
    """Settings loaded from environment variables and .env file.

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
    database_url: str = _DEFAULT_DB_URL
    log_level: str = "INFO"

    # ------------------------------------------------------------------
    # Credentials (Argon2id)
    # ------------------------------------------------------------------

    salt_bytes: int = 32
    hash_bytes: int = 32
    argon2_time_cost: int = 3
    argon2_memory_cost_kib: int = 65536
    argon2_parallelism: int = 4

    min_password_length: int = 8
    # Keeps a single login attempt from pinning the KDF on a megabyte of input.
    max_password_length: int = 255

    # ------------------------------------------------------------------
    # Time bounds
    # ------------------------------------------------------------------

    # Budget for screening one string against the whole signature table. A scan
    # that runs past it yields an indeterminate verdict, which callers treat as a threat.
    scan_timeout_seconds: float = 0.05
    store_timeout_seconds: float = 5.0

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_credential_policy(self) -> "Settings":
        """Enforce salt length and KDF cost floors.

        Both modes: reject salts shorter than 32 bytes and non-positive
            time bounds.

        Production mode (DEBUG=false or not set): refuse Argon2 parameters
            below the cost floor.

        Dev mode (DEBUG=true): accept cheap parameters with a warning so
            tests do not spend seconds per hash.
        """
        if self.salt_bytes < _MIN_SALT_BYTES:
            raise ValueError(f"SALT_BYTES must be at least {_MIN_SALT_BYTES}.")
        if self.hash_bytes < 16:
            raise ValueError("HASH_BYTES must be at least 16.")
        if self.scan_timeout_seconds <= 0 or self.store_timeout_seconds <= 0:
            raise ValueError("SCAN_TIMEOUT_SECONDS and STORE_TIMEOUT_SECONDS must be positive.")
        if self.min_password_length < 1 or self.max_password_length < self.min_password_length:
            raise ValueError("Password length bounds are inconsistent.")

        weak = self.argon2_time_cost < _MIN_TIME_COST or self.argon2_memory_cost_kib < _MIN_MEMORY_COST_KIB
        if weak:
            if not self.debug:
                raise ValueError(
                    "Argon2 cost parameters are below the production floor "
                    f"(time_cost >= {_MIN_TIME_COST}, memory >= {_MIN_MEMORY_COST_KIB} KiB). "
                    "To run with cheap parameters, set DEBUG=true."
                )
            logger.warning("WARNING: Using Argon2 parameters below the production floor (DEBUG mode).")
        return self


@lru_cache
def get_settings() -> Settings:
    """Return the Settings singleton.

    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables.
    """
    return Settings()
