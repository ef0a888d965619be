"""
Application Configuration
=========================

Environment-driven settings for the API, the export worker and Alembic.
Every key can be set in the environment or in a local .env file.
"""

from typing import List, Optional
from functools import lru_cache

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Service settings; names match the environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
    )

    # -------------------------------------------------------------------------
    # Application
    # -------------------------------------------------------------------------
    APP_NAME: str = "CHEFS Export Service"
    APP_ENV: str = "development"
    DEBUG: bool = False
    LOG_LEVEL: str = "INFO"

    # -------------------------------------------------------------------------
    # API
    # -------------------------------------------------------------------------
    API_PREFIX: str = "/api/v1"
    CORS_ORIGINS: List[str] = Field(default_factory=list)

    @field_validator("CORS_ORIGINS", mode="before")
    @classmethod
    def parse_cors_origins(cls, v):
        """Parse CORS origins from string or list."""
        if v is None:
            return []
        if isinstance(v, str):
            return [origin.strip() for origin in v.split(",") if origin.strip()]
        return v

    # Header carrying the caller identity. Credential checks happen upstream
    # (gateway / auth middleware); this service only records ownership.
    REQUESTER_HEADER: str = "X-User-ID"

    # -------------------------------------------------------------------------
    # Database
    # -------------------------------------------------------------------------
    POSTGRES_HOST: str = "localhost"
    POSTGRES_PORT: int = 5432
    POSTGRES_USER: str = "chefs"
    POSTGRES_PASSWORD: str = "chefs_dev_password"
    POSTGRES_DB: str = "chefs"

    # Optional full DSN overrides (used by some deployments and tooling)
    POSTGRES_URL: Optional[str] = None
    POSTGRES_URL_SYNC: Optional[str] = None

    # Test-only DB overrides (used by pytest fixtures)
    TEST_DATABASE_URL: Optional[str] = None
    TEST_DATABASE_URL_SYNC: Optional[str] = None

    DB_POOL_SIZE: int = 10
    DB_MAX_OVERFLOW: int = 20

    @property
    def DATABASE_URL(self) -> str:
        """Build the async database URL."""
        if self.APP_ENV == "test" and self.TEST_DATABASE_URL:
            return self.TEST_DATABASE_URL
        if self.POSTGRES_URL:
            return self.POSTGRES_URL
        return (
            f"postgresql+asyncpg://{self.POSTGRES_USER}:{self.POSTGRES_PASSWORD}"
            f"@{self.POSTGRES_HOST}:{self.POSTGRES_PORT}/{self.POSTGRES_DB}"
        )

    @property
    def DATABASE_URL_SYNC(self) -> str:
        """Build the sync database URL (for Alembic)."""
        if self.APP_ENV == "test" and self.TEST_DATABASE_URL_SYNC:
            return self.TEST_DATABASE_URL_SYNC
        if self.POSTGRES_URL_SYNC:
            return self.POSTGRES_URL_SYNC
        return (
            f"postgresql://{self.POSTGRES_USER}:{self.POSTGRES_PASSWORD}"
            f"@{self.POSTGRES_HOST}:{self.POSTGRES_PORT}/{self.POSTGRES_DB}"
        )

    # -------------------------------------------------------------------------
    # Celery
    # -------------------------------------------------------------------------
    CELERY_BROKER_URL: str | None = None
    CELERY_RESULT_BACKEND: str | None = None

    # -------------------------------------------------------------------------
    # Schema snapshots
    # -------------------------------------------------------------------------
    # Attempts at claiming the next (form_id, version) pair before giving up
    # with a conflict.
    SNAPSHOT_VERSION_MAX_ATTEMPTS: int = Field(5, ge=1, le=50)

    # -------------------------------------------------------------------------
    # Submission exports
    # -------------------------------------------------------------------------
    # Directory for async export artifacts. Defaults to exports/submissions.
    EXPORT_DIR: str | None = None

    # Rows fetched per storage round trip.
    EXPORT_BATCH_SIZE: int = Field(500, ge=1, le=10000)

    # Estimated row counts above this force asynchronous mode.
    EXPORT_SYNC_ROW_THRESHOLD: int = Field(5000, ge=0)

    # Hard wall-clock limit for inline (synchronous) exports.
    EXPORT_SYNC_TIMEOUT_SECONDS: float = 30.0

    # Per-batch retry policy for storage reads.
    EXPORT_STORAGE_RETRY_ATTEMPTS: int = Field(3, ge=1, le=10)
    EXPORT_STORAGE_RETRY_BACKOFF_SECONDS: float = 0.25

    # Finished artifacts are kept this long (default 7 days).
    EXPORT_RETENTION_SECONDS: int = 7 * 24 * 3600

    # Garbage collection policy for finished artifacts:
    # - retention: delete once EXPORT_RETENTION_SECONDS have elapsed
    # - first_retrieval: delete after the first successful download
    #   (or at retention expiry, whichever comes first)
    EXPORT_GC_POLICY: str = "retention"

    # Progress is persisted at most once per this many rows.
    EXPORT_PROGRESS_FLUSH_ROWS: int = Field(500, ge=1)

    @field_validator("EXPORT_GC_POLICY")
    @classmethod
    def validate_gc_policy(cls, v: str) -> str:
        value = (v or "").strip().lower()
        if value not in {"retention", "first_retrieval"}:
            raise ValueError("EXPORT_GC_POLICY must be 'retention' or 'first_retrieval'")
        return value


@lru_cache
def get_settings() -> Settings:
    return Settings()


# Global settings instance
settings = get_settings()
