"""
Centralized Configuration for the Feedback Rewards backend.

All environment variables are managed here using Pydantic Settings.

Usage:
    from feedback_rewards.config import settings

    db_url = settings.database_url
    model = settings.categorization_model
"""

from typing import Optional, Literal
from pydantic import Field, field_validator, ConfigDict
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    Environment variables are prefixed with REWARDS_ where applicable.
    """

    # =============================================================================
    # Application Environment
    # =============================================================================

    environment: Literal["development", "staging", "production"] = Field(
        default="development",
        description="Application environment",
        validation_alias="REWARDS_ENVIRONMENT"
    )

    testing: bool = Field(
        default=False,
        description="Enable testing mode",
        validation_alias="TESTING"
    )

    log_level: str = Field(
        default="INFO",
        description="Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)",
        validation_alias="REWARDS_LOG_LEVEL"
    )

    # =============================================================================
    # Database
    # =============================================================================

    database_url: str = Field(
        default="sqlite:///./feedback_rewards.db",
        description="Database connection URL (PostgreSQL or SQLite)",
        validation_alias="DATABASE_URL"
    )

    # =============================================================================
    # Redis & Background Jobs
    # =============================================================================

    redis_url: str = Field(
        default="redis://localhost:6379/0",
        description="Redis connection URL",
        validation_alias="REDIS_URL"
    )

    celery_broker_url: Optional[str] = Field(
        default=None,
        description="Celery broker URL (defaults to redis_url)",
        validation_alias="CELERY_BROKER_URL"
    )

    celery_result_backend: Optional[str] = Field(
        default=None,
        description="Celery result backend URL (defaults to redis_url)",
        validation_alias="CELERY_RESULT_BACKEND"
    )

    # =============================================================================
    # Categorization Provider
    # =============================================================================

    categorization_provider: Literal["openai", "mock"] = Field(
        default="openai",
        description="Provider used to categorize feedback comments",
        validation_alias="CATEGORIZATION_PROVIDER"
    )

    openai_api_key: Optional[str] = Field(
        default=None,
        description="API key for the OpenAI-compatible endpoint",
        validation_alias="OPENAI_API_KEY"
    )

    openai_base_url: Optional[str] = Field(
        default=None,
        description="Base URL for an OpenAI-compatible endpoint (e.g. https://openrouter.ai/api/v1)",
        validation_alias="OPENAI_BASE_URL"
    )

    categorization_model: str = Field(
        default="gpt-4o-mini",
        description="Model used for feedback categorization",
        validation_alias="CATEGORIZATION_MODEL"
    )

    categorization_max_attempts: int = Field(
        default=2,
        ge=1,
        le=5,
        description="Attempts per categorization call on transient network errors",
        validation_alias="CATEGORIZATION_MAX_ATTEMPTS"
    )

    categorization_timeout_seconds: float = Field(
        default=20.0,
        gt=0,
        description="Timeout for a single categorization request",
        validation_alias="CATEGORIZATION_TIMEOUT_SECONDS"
    )

    # =============================================================================
    # Categorization Cache
    # =============================================================================

    cache_eviction_enabled: bool = Field(
        default=True,
        description="Schedule periodic eviction of the categorization cache",
        validation_alias="CACHE_EVICTION_ENABLED"
    )

    cache_max_entries: Optional[int] = Field(
        default=100_000,
        ge=1,
        description="Keep at most this many cache rows (least recently used go first)",
        validation_alias="CACHE_MAX_ENTRIES"
    )

    cache_max_idle_days: Optional[int] = Field(
        default=180,
        ge=1,
        description="Drop cache rows not accessed for this many days",
        validation_alias="CACHE_MAX_IDLE_DAYS"
    )

    usage_queue_size: int = Field(
        default=1000,
        ge=1,
        description="Maximum pending cache hit-count updates before new ones are dropped",
        validation_alias="USAGE_QUEUE_SIZE"
    )

    # =============================================================================
    # Computed Properties
    # =============================================================================

    @property
    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.environment == "production"

    @property
    def is_testing(self) -> bool:
        """Check if running in test mode."""
        return self.testing

    @property
    def effective_celery_broker_url(self) -> str:
        """Get Celery broker URL (falls back to redis_url)."""
        return self.celery_broker_url or self.redis_url

    @property
    def effective_celery_result_backend(self) -> str:
        """Get Celery result backend URL (falls back to redis_url)."""
        return self.celery_result_backend or self.redis_url

    # =============================================================================
    # Pydantic Model Configuration
    # =============================================================================

    model_config = ConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # =============================================================================
    # Field Validators
    # =============================================================================

    @field_validator("database_url")
    @classmethod
    def validate_database_url(cls, v):
        """Convert postgres:// to postgresql:// for SQLAlchemy compatibility."""
        if v.startswith("postgres://"):
            return v.replace("postgres://", "postgresql://", 1)
        return v

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v):
        """Ensure log level is uppercase and valid."""
        v = v.upper()
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v not in valid_levels:
            raise ValueError(f"Invalid log level: {v}. Must be one of {valid_levels}")
        return v

    @field_validator("environment", mode="before")
    @classmethod
    def validate_environment(cls, v):
        """Ensure environment is lowercase."""
        return v.lower() if isinstance(v, str) else v


# =============================================================================
# Global Settings Instance
# =============================================================================

settings = Settings()


def get_settings() -> Settings:
    """Get settings instance (for dependency injection)."""
    return settings


__all__ = ["settings", "get_settings", "Settings"]
