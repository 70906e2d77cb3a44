"""
Centralized configuration management with validation.

All environment variables are loaded and validated here.
This ensures consistent configuration across the API, the worker and beat.
"""
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field
from typing import List, Optional
from dotenv import load_dotenv

load_dotenv()


class Settings(BaseSettings):
    """Application settings with validation."""

    # Pydantic v2 configuration
    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=True,
        extra="ignore"
    )

    # Database Configuration
    POSTGRES_USER: str = Field(default="postgres")
    POSTGRES_PASSWORD: str = Field(default="postgres")
    POSTGRES_DB: str = Field(default="profile_sync")
    POSTGRES_HOST: str = Field(default="postgres")
    POSTGRES_PORT: int = Field(default=5432)
    # Full URL override (tests use "sqlite://")
    DATABASE_URL: Optional[str] = Field(default=None)

    # Database Pool Configuration
    DB_POOL_SIZE: int = Field(default=20)
    DB_MAX_OVERFLOW: int = Field(default=10)
    DB_POOL_TIMEOUT: int = Field(default=30)
    DB_POOL_RECYCLE: int = Field(default=3600)  # 1 hour

    # Redis Configuration
    REDIS_URL: str = Field(default="redis://redis:6379/0")

    # Celery Configuration
    CELERY_BROKER_URL: str = Field(default="redis://redis:6379/0")
    CELERY_RESULT_BACKEND: str = Field(default="redis://redis:6379/0")

    # Logging Configuration
    LOG_LEVEL: str = Field(default="INFO")
    LOG_FORMAT: str = Field(default="json")  # json or text

    # Environment
    ENVIRONMENT: str = Field(default="development")
    DEBUG: bool = Field(default=False)

    # Connector plugins: comma-separated module paths, each exposing register(registry)
    CONNECTOR_MODULES: str = Field(default="")

    # Property resolution
    # How far a deferred ProfileProperty's eligibility is pushed when a dependency is not ready.
    PROPERTY_DEPENDENCY_RETRY_DELAY_S: int = Field(default=10, ge=1)
    # A claimed-but-unfinished row becomes eligible again after this long (worker died mid-task).
    PROFILE_PROPERTY_CLAIM_TIMEOUT_S: int = Field(default=300, ge=1)
    PROFILE_PROPERTY_BATCH_SIZE: int = Field(default=100, ge=1)

    # Retryable tasks
    TASK_MAX_ATTEMPTS: int = Field(default=5, ge=1)
    TASK_RETRY_DELAY_S: int = Field(default=60, ge=1)
    TASK_RETRY_DELAY_MAX_S: int = Field(default=60 * 60, ge=1)
    TASK_TIME_LIMIT_S: int = Field(default=30 * 60, ge=1)
    TASK_SOFT_TIME_LIMIT_S: int = Field(default=25 * 60, ge=1)

    # Exports
    EXPORT_BATCH_SIZE: int = Field(default=100, ge=1)
    EXPORT_MAX_ATTEMPTS: int = Field(default=5, ge=1)
    # Claimed exports go back to pending after this long; keep it above TASK_TIME_LIMIT_S
    # so a batch that is still being sent is never claimed twice.
    EXPORT_CLAIM_TIMEOUT_S: int = Field(default=40 * 60, ge=1)
    EXPORT_PROCESSOR_MAX_ATTEMPTS: int = Field(default=20, ge=1)

    # Imports
    IMPORT_BATCH_SIZE: int = Field(default=100, ge=1)

    # Groups
    GROUP_RULE_LIMIT: int = Field(default=10, ge=1)

    # Per-App connector throttling (caps concurrent connector calls across all workers)
    APP_PARALLELISM_DEFAULT: int = Field(default=4, ge=1)
    # How long a worker waits for a slot before deferring the task.
    APP_SLOT_ACQUIRE_TIMEOUT_S: int = Field(default=10, ge=1)
    APP_SLOT_ACQUIRE_POLL_S: float = Field(default=0.5)
    APP_SLOT_DEFER_S: int = Field(default=15, ge=1)
    # A slot holder that never released (worker killed) expires after this long;
    # keep it above TASK_TIME_LIMIT_S.
    APP_SLOT_TTL_S: int = Field(default=35 * 60, ge=1)

    # Sentry Error Tracking
    SENTRY_DSN: Optional[str] = Field(default=None)

    @property
    def connector_modules(self) -> List[str]:
        return [m.strip() for m in self.CONNECTOR_MODULES.split(",") if m.strip()]


# Global settings instance
settings = Settings()
