"""
core/config.py -- Storefront settings, read once from the environment.

Every environment read goes through get_settings(); nothing else in the tree
touches os.environ. Field names double as variable names, so
payos_checksum_key is filled from PAYOS_CHECKSUM_KEY (or the .env file).

SECRET_KEY rules:
  - shorter than 32 characters: startup fails, in every mode;
  - missing with DEBUG=true: a throwaway key is generated and a warning is
    logged, so tokens die with the process;
  - missing otherwise: startup fails.

The PayOS fields are only a fallback. An active "PayOS" PaymentGateway row
wins over them (payments/payos.resolve_payos_config).

core/ sits below every other package and imports none of them.
"""

import logging
import secrets
from functools import lru_cache

from pydantic import field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("ktk.config")


class Settings(BaseSettings):
    """Environment-backed settings for the storefront process.

    Every field has a default so tests can build Settings() with only
    SECRET_KEY (or DEBUG) set.
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

    # ------------------------------------------------------------------
    # HTTP surface
    # ------------------------------------------------------------------

    cors_origins: list[str] = ["http://localhost:3000", "http://127.0.0.1:3000"]
    allowed_hosts: list[str] = ["*"]
    # "vi" or "en". Selects the wording of rewritten 401/403 responses.
    error_locale: str = "vi"

    # ------------------------------------------------------------------
    # Auth
    # ------------------------------------------------------------------

    secure_cookies: bool = False
    token_expire_seconds: int = 3600
    login_rate_limit: str = "10/minute"
    self_registration_enabled: bool = True

    # ------------------------------------------------------------------
    # PayOS (fallback when no PaymentGateway row is configured)
    # ------------------------------------------------------------------

    payos_client_id: str = ""
    payos_api_key: str = ""
    payos_checksum_key: str = ""
    payos_endpoint: str = "https://api-merchant.payos.vn/v2/payment-requests"
    payos_frontend_base_url: str = "http://localhost:3000"

    # ------------------------------------------------------------------
    # Background sweep
    # ------------------------------------------------------------------

    payment_timeout_minutes: int = 5
    sweep_interval_seconds: int = 60

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @field_validator("error_locale")
    @classmethod
    def validate_locale(cls, value: str) -> str:
        value = value.strip().lower()
        if value not in ("vi", "en"):
            raise ValueError("ERROR_LOCALE must be 'vi' or 'en'.")
        return value

    @model_validator(mode="after")
    def validate_secret_key(self) -> "Settings":
        """Fill in or reject SECRET_KEY according to DEBUG (see module docstring)."""
        if not self.secret_key:
            if self.debug:
                self.secret_key = secrets.token_hex(32)
                logger.warning(
                    "SECRET_KEY not set; generated a temporary key. Issued tokens stop working on restart."
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


@lru_cache
def get_settings() -> Settings:
    """Cached Settings instance.

    Tests that change the environment must call get_settings.cache_clear()
    first.
    """
    return Settings()
