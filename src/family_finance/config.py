"""Configuration module for the Family Finance API.

Config discovery order:
    1. the file named by the ``FAMILY_FINANCE_CONFIG_PATH`` environment variable,
    2. ``.ffin`` in the project root,
    3. ``.env`` in the project root,
    4. environment variables only.

The ``Settings`` class uses Pydantic's ``BaseSettings`` and allows extra environment
variables without error. Secrets (JWT key, cron secret, provider credentials) are never
hardcoded; validators reject empty or placeholder values at startup.

To add a setting, declare it on ``Settings`` with a default and a short comment.
"""

import os
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv
from pydantic import SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# --- Constants ---
FFIN_FILENAME: str = ".ffin"
DEFAULT_ENV_FILENAME: str = ".env"
CONFIG_ENV_VAR: str = "FAMILY_FINANCE_CONFIG_PATH"
PROJECT_ROOT: Path = Path(__file__).resolve().parent.parent.parent


# --- Config file discovery (no logging) ---
def get_config_path() -> Optional[str]:
    """Determine the config file path to use, in order of precedence:
    1. Environment variable FAMILY_FINANCE_CONFIG_PATH
    2. .ffin in project root
    3. .env in project root
    4. None (fallback to environment variables only)

    Returns:
        Optional[str]: Path to config file, or None if not found.
    """
    env_path: Optional[str] = os.environ.get(CONFIG_ENV_VAR)
    if env_path and os.path.exists(env_path):
        return env_path
    ffin_path: Path = PROJECT_ROOT / FFIN_FILENAME
    if ffin_path.exists():
        return str(ffin_path)
    env_path_file: Path = PROJECT_ROOT / DEFAULT_ENV_FILENAME
    if env_path_file.exists():
        return str(env_path_file)
    return None


CONFIG_PATH: Optional[str] = get_config_path()
if CONFIG_PATH:
    load_dotenv(dotenv_path=CONFIG_PATH, override=True)


class Settings(BaseSettings):
    """Application settings with environment variable support.
    All fields are loaded from the environment or the .ffin/.env file.
    """

    model_config = SettingsConfigDict(
        env_file=CONFIG_PATH if CONFIG_PATH else None,
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="allow",  # Allow extra env vars not defined as fields
    )

    # Server configuration
    HOST: str = "127.0.0.1"
    PORT: int = 8000
    DEBUG: bool = True
    APP_NAME: str = "Family_Finance"
    ENV: str = "dev"

    # Public URL used in emailed links (invitations, password reset)
    BASE_URL: str = "http://localhost:3000"

    # JWT configuration
    SECRET_KEY: SecretStr = SecretStr("")  # Must be set in .ffin or environment
    ALGORITHM: str = "HS256"
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 60 * 24

    # MongoDB configuration
    MONGODB_URL: str = ""  # Must be set in .ffin or environment
    MONGODB_DATABASE: str = "family_finance"
    MONGODB_CONNECTION_TIMEOUT: int = 10000
    MONGODB_SERVER_SELECTION_TIMEOUT: int = 5000
    MONGODB_USERNAME: Optional[str] = None
    MONGODB_PASSWORD: Optional[SecretStr] = None

    # Redis configuration
    # REDIS_URL is the effective URL; when unset it is built from host/port/db below.
    REDIS_URL: Optional[str] = None
    REDIS_HOST: str = "127.0.0.1"
    REDIS_PORT: int = 6379
    REDIS_DB: int = 0
    REDIS_PASSWORD: Optional[SecretStr] = None

    # Rate limiting configuration
    RATE_LIMIT_REQUESTS: int = 60
    RATE_LIMIT_PERIOD_SECONDS: int = 60
    BLACKLIST_THRESHOLD: int = 10  # Number of violations before blacklisting
    BLACKLIST_DURATION: int = 60 * 60  # Blacklist for 1 hour (in seconds)
    ENV_PREFIX: str = "dev"

    # Scheduled sweeps
    CRON_SECRET: SecretStr = SecretStr("")  # Shared secret for /cron/* callers
    EMAIL_BATCH_SIZE: int = 10  # Jobs claimed per queue-processing run
    EMAIL_MAX_ATTEMPTS: int = 3
    EMAIL_CLAIM_TIMEOUT_SECONDS: int = 10 * 60  # PROCESSING jobs older than this are reclaimed
    REMINDER_NOTIFY_COOLDOWN_HOURS: int = 24
    REMINDER_MAX_NOTIFY_DAYS: int = 30  # Upper bound of notify_days_before

    # Family / auth lifetimes
    INVITATION_EXPIRY_DAYS: int = 7
    PASSWORD_RESET_EXPIRY_HOURS: int = 1
    BCRYPT_ROUNDS: int = 12

    # Email delivery
    EMAIL_PROVIDER: str = "console"  # "console" or "http"
    EMAIL_API_URL: str = "https://api.resend.com/emails"
    EMAIL_API_KEY: Optional[SecretStr] = None
    EMAIL_FROM: str = "Family Finance <no-reply@familyfinance.local>"
    EMAIL_TIMEOUT_SECONDS: float = 10.0

    # Open-banking aggregator (Belvo)
    BELVO_ENVIRONMENT: str = "sandbox"
    BELVO_SECRET_ID: Optional[str] = None
    BELVO_SECRET_PASSWORD: Optional[SecretStr] = None
    BELVO_TIMEOUT_SECONDS: float = 30.0

    # Display
    DEFAULT_CURRENCY: str = "COP"

    # Logging
    LOG_LEVEL: str = "INFO"
    LOKI_ENABLED: bool = False
    LOKI_URL: str = "http://localhost:3100/loki/api/v1/push"
    LOG_DIR: str = "logs"

    @field_validator("SECRET_KEY", "CRON_SECRET", mode="before")
    @classmethod
    def no_hardcoded_secrets(cls, v, info):
        if not v or "change" in str(v).lower() or "0000" in str(v) or not str(v).strip():
            raise ValueError(f"{info.field_name} must be set via environment or .ffin and not hardcoded!")
        return v

    @field_validator("MONGODB_URL", mode="before")
    @classmethod
    def no_empty_urls(cls, v, info):
        if not v or not str(v).strip():
            raise ValueError(f"{info.field_name} must be set via environment or .ffin and not empty!")
        return v

    @field_validator("EMAIL_PROVIDER", mode="before")
    @classmethod
    def validate_email_provider(cls, v):
        """Only the console and HTTP providers are wired up."""
        value = str(v).strip().lower()
        if value not in ("console", "http"):
            raise ValueError("EMAIL_PROVIDER must be 'console' or 'http'")
        return value

    @property
    def is_production(self) -> bool:
        """Check if running in production environment."""
        return not self.DEBUG

    @property
    def belvo_base_url(self) -> str:
        """Belvo API root for the configured environment."""
        if self.BELVO_ENVIRONMENT == "production":
            return "https://api.belvo.com"
        return "https://sandbox.belvo.com"


# Global settings instance
settings: Settings = Settings()

# Compute effective REDIS_URL if not explicitly provided.
if not settings.REDIS_URL:
    creds = ""
    if settings.REDIS_PASSWORD:
        creds = f":{settings.REDIS_PASSWORD.get_secret_value()}@"
    settings.REDIS_URL = f"redis://{creds}{settings.REDIS_HOST}:{settings.REDIS_PORT}/{settings.REDIS_DB}"
