from enum import Enum
from typing import Literal

from fastapi import Depends
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class KeyGranularity(str, Enum):
    """What a derived idempotency key digests when no explicit id is given."""

    JOB_ID = "job_id"
    JOB_ARGS = "job_args"


class AdapterKind(str, Enum):
    INLINE = "inline"
    QUEUE = "queue"


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Application
    app_name: str = Field(default="Jobflow", description="Application name")
    version: str = Field(default="0.1.0", description="Application version")
    environment: str = Field(default="development", description="Environment")
    debug: bool = Field(default=True, description="Debug mode")

    # Logging
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(
        default="INFO", description="Logging level"
    )

    # Server
    host: str = Field(default="127.0.0.1", description="Server host")
    port: int = Field(default=8000, description="Server port")

    # Database
    database_url: str = Field(
        default="sqlite+aiosqlite:///./jobflow.db",
        description="Database connection URL",
    )
    db_pool_size: int = Field(default=10, description="Database connection pool size")
    db_max_overflow: int = Field(
        default=20, description="Database max overflow connections"
    )
    db_pool_timeout: int = Field(
        default=30, description="Database pool timeout in seconds"
    )
    db_pool_recycle: int = Field(
        default=3600, description="Database connection recycle time in seconds"
    )
    db_echo: bool = Field(default=False, description="Echo SQL statements")

    # Workflow engine
    lock_stale_after_s: int = Field(
        default=3600,
        description="Age after which a held run lock is considered abandoned",
    )
    key_granularity: KeyGranularity = Field(
        default=KeyGranularity.JOB_ARGS,
        description="Default idempotency key derivation when no job id is supplied",
    )
    default_adapter: AdapterKind = Field(
        default=AdapterKind.QUEUE, description="Adapter used to enqueue staged jobs"
    )
    staged_sweep_after_s: int = Field(
        default=60,
        description="Minimum age of a staged job before the sweep re-enqueues it",
    )

    # Host queue
    job_concurrency: int = Field(default=4, description="Jobs processed in parallel")
    job_poll_interval_ms: int = Field(default=1000, description="Queue poll interval")
    job_max_attempts: int = Field(default=5, description="Attempts before deadletter")
    job_backoff_base_ms: int = Field(default=2000, description="Retry backoff base")
    job_max_backoff_s: int = Field(default=600, description="Retry backoff ceiling")
    job_visibility_timeout_s: int = Field(
        default=300, description="Heartbeat age after which a running job is stuck"
    )
    job_cleanup_after_days: int = Field(
        default=14, description="Retention for completed queue jobs"
    )
    job_modules: list[str] = Field(
        default_factory=list,
        description="Modules imported by the worker so their jobs get registered",
    )

    def model_post_init(self, __context) -> None:
        """Validate settings after initialization."""
        if self.lock_stale_after_s <= 0:
            raise ValueError("LOCK_STALE_AFTER_S must be a positive number of seconds")

        # SQLite has no row-level locking for concurrent workers
        if self.environment == "production" and self.database_url.startswith(
            "sqlite"
        ):
            raise ValueError(
                "SQLite DATABASE_URL is not allowed in production environment. "
                "Use a postgresql+asyncpg URL for production deployments."
            )


# Global settings instance
settings = Settings()


def get_settings() -> Settings:
    """Dependency injection function for settings."""
    return settings


# Convenience type alias for dependency injection
SettingsDep = Depends(get_settings)
