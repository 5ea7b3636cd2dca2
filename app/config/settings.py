"""
Application settings.

Loads configuration from environment variables using pydantic-settings.
"""

from decimal import Decimal

from loguru import logger
from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from app.config.business_constants import (
    DEFAULT_GENERATION_RATES_PERCENT,
    MAX_RATE_PERCENT,
    ROUNDING_MODES,
)


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Database
    database_url: str
    database_echo: bool = False

    # Redis (for distributed locks and Dramatiq)
    redis_host: str = "localhost"
    redis_port: int = 6379
    redis_password: str | None = None
    redis_db: int = 0

    # Application
    environment: str = "production"
    debug: bool = False
    log_level: str = "INFO"
    health_check_port: int = Field(
        default=8080, ge=1, le=65535, description="Health check HTTP server port"
    )

    # Reconciler
    reconciler_interval_seconds: int = Field(
        default=900,
        gt=0,
        description="Interval between scheduled reconciliation runs (seconds)",
    )

    # Event intake
    intake_queue_capacity: int = Field(
        default=10_000,
        gt=0,
        description="Bounded intake queue size; new events are rejected when full",
    )
    intake_workers: int = Field(
        default=4, gt=0, description="Number of intake queue workers"
    )

    # Store calls
    store_call_deadline_seconds: float = Field(
        default=5.0,
        gt=0,
        description="Deadline applied to every ledger store transaction",
    )
    retry_backoff_ms: str = Field(
        default="50,200,1000",
        description="Comma-separated backoff delays for transient store errors",
    )
    retry_max_attempts: int = Field(
        default=5, ge=1, description="Attempts before a transient error is fatal"
    )

    # Commission arithmetic
    rounding_mode: str = Field(
        default="half-even", description="half-even or half-up"
    )
    default_rate_generation_1: Decimal = Field(
        default=DEFAULT_GENERATION_RATES_PERCENT[1], ge=0, le=MAX_RATE_PERCENT
    )
    default_rate_generation_2: Decimal = Field(
        default=DEFAULT_GENERATION_RATES_PERCENT[2], ge=0, le=MAX_RATE_PERCENT
    )
    default_rate_generation_3: Decimal = Field(
        default=DEFAULT_GENERATION_RATES_PERCENT[3], ge=0, le=MAX_RATE_PERCENT
    )

    # Optional out-of-process notification sink
    notification_webhook_url: str | None = None

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    @model_validator(mode='after')
    def validate_production(self) -> 'Settings':
        """Validate production-specific requirements."""
        if self.environment == 'production':
            if self.debug:
                raise ValueError(
                    'DEBUG must be False in production environment. '
                    'Set DEBUG=false in your .env file.'
                )
            if self.database_url.startswith('sqlite'):
                logger.warning(
                    'DATABASE_URL points at SQLite in production. '
                    'Aggregate locks fall back to in-process locking.'
                )
        return self

    @field_validator('database_url')
    @classmethod
    def validate_database_url(cls, v: str) -> str:
        """Validate database URL."""
        if not v.startswith(
            ('postgresql://', 'postgresql+asyncpg://', 'sqlite+aiosqlite://')
        ):
            raise ValueError(
                'DATABASE_URL must start with postgresql://, '
                'postgresql+asyncpg:// or sqlite+aiosqlite://'
            )
        return v

    @field_validator('rounding_mode')
    @classmethod
    def validate_rounding_mode(cls, v: str) -> str:
        """Validate rounding mode name."""
        normalized = v.strip().lower().replace("_", "-")
        if normalized not in ROUNDING_MODES:
            raise ValueError(
                f'ROUNDING_MODE must be one of {sorted(ROUNDING_MODES)}'
            )
        return normalized

    @field_validator('retry_backoff_ms')
    @classmethod
    def validate_retry_backoff(cls, v: str) -> str:
        """Validate backoff sequence format."""
        parts = [p.strip() for p in v.split(",") if p.strip()]
        if not parts:
            raise ValueError('RETRY_BACKOFF_MS must list at least one delay')
        for part in parts:
            if not part.isdigit() or int(part) <= 0:
                raise ValueError(
                    f'Invalid backoff delay "{part}": expected positive milliseconds'
                )
        return ",".join(parts)

    def get_retry_backoff(self) -> tuple[float, ...]:
        """Backoff delays in seconds."""
        return tuple(int(p) / 1000 for p in self.retry_backoff_ms.split(","))

    def get_default_rates(self) -> dict[int, Decimal]:
        """Default per-generation rates (percent)."""
        return {
            1: self.default_rate_generation_1,
            2: self.default_rate_generation_2,
            3: self.default_rate_generation_3,
        }


# Global settings instance
settings = Settings()
