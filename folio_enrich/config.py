"""
Configuration module using Pydantic Settings.

Provides validated, type-safe configuration from environment variables
and an optional .env file. API keys are SecretStr so they never end up in
log output; use the get_*_api_key() accessors to read them.

Settings are constructed once at process start (see services.build_services)
and passed explicitly to every service object.
"""

import logging
import os
import sys
from pathlib import Path

import structlog
from pydantic import Field, SecretStr, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from folio_enrich.exceptions import ConfigurationError

# --- Logging Setup (must happen before Settings to capture validation errors) ---
logging.basicConfig(
    format="%(asctime)s [%(levelname)-8s] %(message)s",
    stream=sys.stderr,
    level=logging.INFO,
    force=True,
)

structlog.configure(
    processors=[
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
        structlog.processors.KeyValueRenderer(
            key_order=["timestamp", "level", "event"]
        ),
    ],
    wrapper_class=structlog.stdlib.BoundLogger,
    logger_factory=structlog.stdlib.LoggerFactory(),
    cache_logger_on_first_use=True,
)

logger = structlog.get_logger(__name__)


class Settings(BaseSettings):
    """
    Configuration for the portfolio enrichment service.

    Quota defaults mirror the free tiers of each provider:
    Alpha Vantage 5/minute and 25/day, Tiingo 50/hour and 1000/day.
    """

    # --- Directory Paths ---
    data_cache_dir: Path = Field(
        default=Path("./data_cache"),
        validation_alias="DATA_CACHE_DIR",
        description="Directory for persisted fundamentals caches",
    )

    # --- Alpha Vantage (primary fundamentals provider) ---
    alphavantage_per_minute: int | None = Field(
        default=5, validation_alias="ALPHAVANTAGE_PER_MINUTE"
    )
    alphavantage_per_hour: int | None = Field(
        default=None, validation_alias="ALPHAVANTAGE_PER_HOUR"
    )
    alphavantage_per_day: int | None = Field(
        default=25, validation_alias="ALPHAVANTAGE_PER_DAY"
    )
    # 12 seconds keeps a draining queue under 5 calls/minute
    alphavantage_spacing_seconds: float = Field(
        default=12.0, ge=0.0, validation_alias="ALPHAVANTAGE_SPACING_SECONDS"
    )
    alphavantage_cache_ttl_hours: float = Field(
        default=24.0, gt=0.0, validation_alias="ALPHAVANTAGE_CACHE_TTL_HOURS"
    )

    # --- Tiingo (secondary fundamentals provider) ---
    tiingo_per_minute: int | None = Field(
        default=None, validation_alias="TIINGO_PER_MINUTE"
    )
    tiingo_per_hour: int | None = Field(
        default=50, validation_alias="TIINGO_PER_HOUR"
    )
    tiingo_per_day: int | None = Field(
        default=1000, validation_alias="TIINGO_PER_DAY"
    )
    tiingo_spacing_seconds: float = Field(
        default=0.1, ge=0.0, validation_alias="TIINGO_SPACING_SECONDS"
    )
    tiingo_cache_ttl_hours: float = Field(
        default=24.0 * 7, gt=0.0, validation_alias="TIINGO_CACHE_TTL_HOURS"
    )

    # --- Trading212 (broker) ---
    trading212_base_url: str = Field(
        default="https://live.trading212.com/api/v0",
        validation_alias="TRADING212_BASE_URL",
    )
    positions_cache_seconds: float = Field(
        default=5.0, ge=0.0, validation_alias="POSITIONS_CACHE_SECONDS"
    )

    # --- Request Handling ---
    request_timeout: float = Field(
        default=30.0,
        gt=0.0,
        validation_alias="REQUEST_TIMEOUT",
        description="Per-call timeout for live provider requests (seconds)",
    )
    max_retries: int = Field(
        default=2,
        ge=0,
        validation_alias="MAX_RETRIES",
        description="Retries after the first attempt on transient failures",
    )
    retry_delay: float = Field(
        default=1.0, ge=0.0, validation_alias="RETRY_DELAY"
    )
    queue_timeout: float | None = Field(
        default=120.0,
        validation_alias="QUEUE_TIMEOUT",
        description="Longest a request may wait in a provider queue before falling back",
    )
    stale_after_hours: float = Field(
        default=1.0,
        ge=0.0,
        validation_alias="STALE_AFTER_HOURS",
        description="Cached data older than this is flagged as stale",
    )
    enrich_concurrency: int = Field(
        default=4, ge=1, validation_alias="ENRICH_CONCURRENCY"
    )
    extra_unsupported_symbols: list[str] = Field(
        default_factory=list,
        validation_alias="EXTRA_UNSUPPORTED_SYMBOLS",
        description="Additional bare symbols to skip during enrichment",
    )

    # --- Logging ---
    log_level: str = Field(
        default="INFO",
        validation_alias="LOG_LEVEL",
        description="Logging level (DEBUG, INFO, WARNING, ERROR)",
    )

    # --- Environment ---
    environment: str = Field(
        default="development",
        validation_alias="ENVIRONMENT",
        description="Environment (development, production, test)",
    )

    # --- API Keys (SecretStr prevents accidental logging) ---
    trading212_api_key: SecretStr = Field(
        default=SecretStr(""),
        validation_alias="TRADING212_API_KEY",
        description="Trading212 API key (required)",
    )
    alpha_vantage_api_key: SecretStr = Field(
        default=SecretStr(""),
        validation_alias="ALPHAVANTAGE_API_KEY",
        description="Alpha Vantage API key (required)",
    )
    tiingo_api_key: SecretStr = Field(
        default=SecretStr(""),
        validation_alias="TIINGO_API_KEY",
        description="Tiingo API key (required)",
    )

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        case_sensitive=False,
        frozen=False,
        populate_by_name=True,
    )

    @model_validator(mode="after")
    def setup_environment(self) -> "Settings":
        """Expand and create the cache directory, apply the log level."""
        self.data_cache_dir = Path(os.path.expanduser(str(self.data_cache_dir)))
        self.data_cache_dir.mkdir(parents=True, exist_ok=True)

        log_level_value = getattr(logging, self.log_level.upper(), logging.INFO)
        logging.getLogger().setLevel(log_level_value)
        return self

    def get_trading212_api_key(self) -> str:
        """Get Trading212 API key securely from SecretStr field."""
        return self.trading212_api_key.get_secret_value()

    def get_alpha_vantage_api_key(self) -> str:
        """Get Alpha Vantage API key securely from SecretStr field."""
        return self.alpha_vantage_api_key.get_secret_value()

    def get_tiingo_api_key(self) -> str:
        """Get Tiingo API key securely from SecretStr field."""
        return self.tiingo_api_key.get_secret_value()


def validate_environment_variables(settings: Settings) -> None:
    """Fail fast when a required credential is missing.

    Raises:
        ConfigurationError: listing every missing variable.
    """
    required_checks = [
        ("TRADING212_API_KEY", settings.get_trading212_api_key),
        ("ALPHAVANTAGE_API_KEY", settings.get_alpha_vantage_api_key),
        ("TIINGO_API_KEY", settings.get_tiingo_api_key),
    ]

    missing_vars = [name for name, getter in required_checks if not getter()]

    if missing_vars:
        logger.error("missing_required_credentials", missing=missing_vars)
        raise ConfigurationError(
            f"Missing required environment variables: {', '.join(missing_vars)}",
            missing=missing_vars,
        )

    logger.info("environment_variables_validated", environment=settings.environment)
