"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads for QC Guard happen here. No module should
call os.getenv() or os.environ.get() directly -- import get_settings() instead.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call.

  BaseSettings (pydantic-settings): Reads values from environment variables
      and an optional .env file automatically. Field names map to env var names
      (e.g. secret_key -> SECRET_KEY). Type coercion and validation are built in.

  @model_validator(mode="after"): Runs cross-field validation after all fields
      are resolved from environment. Dev mode generates a SECRET_KEY with a
      warning, production mode refuses to start without one. The password
      salt and cost factor are checked here so a bad value fails at startup
      rather than on the first login.

Password parameters:
  PASSWORD_SALT and PASSWORD_ROUNDS are shared by every stored digest. Changing
  either one invalidates all existing password hashes. Treat a change as a
  migration (reset every password), not as a tuning knob.

Layer rule: core/ is the kernel. This module may not import from api/ or auth/.
"""

import logging
import secrets
from functools import lru_cache
from pathlib import Path

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("qcguard.config")

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).resolve().parent.parent / 'auth' / 'qcguard_identity.db'}"

# bcrypt's base64 alphabet. The 22nd salt character only contributes its two
# high bits, so the low four bits must be zero for the salt to decode.
_BCRYPT_ALPHABET = "./ABCDEFGHIJKLMNOPQRSTUVWXYZabcdefghijklmnopqrstuvwxyz0123456789"
_BCRYPT_SALT_TAILS = ".Oeu"


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
    # Empty string is the sentinel for "not configured". The model_validator
    # below either generates a dev key or raises, so callers never see "".
    secret_key: str = ""
    database_url: str = _DEFAULT_DB_URL

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    session_inactivity_seconds: int = 1800
    session_poll_seconds: float = 60.0
    # 0 means no absolute cap: activity can keep a session alive indefinitely.
    session_max_lifetime_seconds: int = 0
    # Ceiling on the signed session handle. The session manager decides
    # liveness; the JWT expiry only bounds how long a leaked handle is usable.
    session_token_ttl_seconds: int = 43200
    secure_cookies: bool = False

    remember_me_days: int = 30
    remember_me_max_days: int = 30

    # ------------------------------------------------------------------
    # Enrollment codes
    # ------------------------------------------------------------------

    code_expiry_hours: int = 24
    code_generation_attempts: int = 10

    # ------------------------------------------------------------------
    # Credentials
    # ------------------------------------------------------------------

    password_salt: str = "QcGuardFixedSaltV1abce"
    password_rounds: int = 12

    login_max_attempts: int = 5
    login_lockout_seconds: int = 900
    login_rate_limit: str = "10/minute"

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_secret_key(self) -> "Settings":
        """Enforce the SECRET_KEY policy.

        Dev mode (DEBUG=true): auto-generate a random key with a warning.
            Session handles and remember tokens will not survive restart.

        Production mode (DEBUG=false or not set): refuse to start if
            SECRET_KEY is missing.

        Both modes: reject keys shorter than 32 characters.
        """
        if not self.secret_key:
            if self.debug:
                self.secret_key = secrets.token_hex(32)
                logger.warning(
                    "WARNING: Using auto-generated SECRET_KEY. "
                    "Sessions and remember-me tokens will not persist across restarts."
                )
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
    def validate_password_parameters(self) -> "Settings":
        """Reject a salt or cost factor that bcrypt would refuse at hash time."""
        salt = self.password_salt
        if len(salt) != 22 or any(ch not in _BCRYPT_ALPHABET for ch in salt):
            raise ValueError("PASSWORD_SALT must be exactly 22 characters from the bcrypt alphabet.")
        if salt[-1] not in _BCRYPT_SALT_TAILS:
            raise ValueError(f"PASSWORD_SALT must end with one of {_BCRYPT_SALT_TAILS!r}.")
        if not 4 <= self.password_rounds <= 31:
            raise ValueError("PASSWORD_ROUNDS must be between 4 and 31.")
        if self.remember_me_days < 1 or self.remember_me_days > self.remember_me_max_days:
            raise ValueError("REMEMBER_ME_DAYS must be between 1 and REMEMBER_ME_MAX_DAYS.")
        return self


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables.
    """
    return Settings()
