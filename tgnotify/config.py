"""Application configuration loaded from .env via Pydantic settings."""

from __future__ import annotations

from functools import lru_cache
from urllib.parse import quote_plus

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Runtime settings for the notification API, workers and infrastructure."""

    app_name: str = Field(default="tgnotify", alias="APP_NAME")
    app_env: str = Field(default="development", alias="APP_ENV")
    debug: bool = Field(default=False, alias="DEBUG")
    api_v1_prefix: str = Field(default="/api/v1", alias="API_V1_PREFIX")
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")

    postgres_host: str = Field(default="localhost", alias="POSTGRES_HOST")
    postgres_port: int = Field(default=5432, alias="POSTGRES_PORT")
    postgres_user: str = Field(default="postgres", alias="POSTGRES_USER")
    postgres_password: str = Field(default="postgres", alias="POSTGRES_PASSWORD")
    postgres_db: str = Field(default="telegram_bot", alias="POSTGRES_DB")
    postgres_pool_size: int = Field(default=10, alias="POSTGRES_POOL_SIZE")
    postgres_max_overflow: int = Field(default=10, alias="POSTGRES_MAX_OVERFLOW")
    database_url_override: str | None = Field(default=None, alias="DATABASE_URL")
    sqlalchemy_echo: bool = Field(default=False, alias="SQLALCHEMY_ECHO")

    redis_host: str = Field(default="localhost", alias="REDIS_HOST")
    redis_port: int = Field(default=6379, alias="REDIS_PORT")
    redis_db: int = Field(default=1, alias="REDIS_DB")
    redis_password: str | None = Field(default=None, alias="REDIS_PASSWORD")
    redis_max_connections: int = Field(default=20, alias="REDIS_MAX_CONNECTIONS")
    redis_socket_connect_timeout_seconds: float = Field(
        default=5.0,
        alias="REDIS_SOCKET_CONNECT_TIMEOUT_SECONDS",
    )

    celery_broker_url: str | None = Field(default=None, alias="CELERY_BROKER_URL")
    celery_result_backend: str | None = Field(default=None, alias="CELERY_RESULT_BACKEND")
    celery_result_expires_seconds: int = Field(
        default=3600,
        alias="CELERY_RESULT_EXPIRES_SECONDS",
    )
    celery_worker_prefetch_multiplier: int = Field(
        default=1,
        alias="CELERY_WORKER_PREFETCH_MULTIPLIER",
    )
    celery_task_acks_late: bool = Field(default=True, alias="CELERY_TASK_ACKS_LATE")
    celery_task_always_eager: bool = Field(default=False, alias="CELERY_TASK_ALWAYS_EAGER")
    celery_visibility_timeout_seconds: int = Field(
        default=3600,
        alias="CELERY_VISIBILITY_TIMEOUT_SECONDS",
    )
    celery_timezone: str = Field(default="UTC", alias="CELERY_TIMEZONE")

    telegram_bot_token: str = Field(default="", alias="TELEGRAM_BOT_TOKEN")
    telegram_parse_mode: str = Field(default="Markdown", alias="TELEGRAM_PARSE_MODE")

    notifications_enabled: bool = Field(default=True, alias="NOTIFICATIONS_ENABLED")
    notifications_queue_name: str = Field(default="notifications", alias="NOTIFICATIONS_QUEUE_NAME")
    notifications_retry_max_attempts: int = Field(
        default=3,
        alias="NOTIFICATIONS_RETRY_MAX_ATTEMPTS",
    )
    notifications_retry_backoff_seconds: float = Field(
        default=60.0,
        alias="NOTIFICATIONS_RETRY_BACKOFF_SECONDS",
    )
    notifications_worker_concurrency: int = Field(
        default=3,
        alias="NOTIFICATIONS_WORKER_CONCURRENCY",
    )
    notifications_global_rate_limit: int = Field(
        default=20,
        alias="NOTIFICATIONS_GLOBAL_RATE_LIMIT",
    )
    notifications_global_rate_interval_seconds: float = Field(
        default=1.0,
        alias="NOTIFICATIONS_GLOBAL_RATE_INTERVAL_SECONDS",
    )
    notifications_global_max_concurrent: int = Field(
        default=3,
        alias="NOTIFICATIONS_GLOBAL_MAX_CONCURRENT",
    )
    notifications_user_rate_limit: int = Field(
        default=15,
        alias="NOTIFICATIONS_USER_RATE_LIMIT",
    )
    notifications_user_rate_interval_seconds: float = Field(
        default=60.0,
        alias="NOTIFICATIONS_USER_RATE_INTERVAL_SECONDS",
    )
    notifications_user_limiter_max: int = Field(
        default=500,
        alias="NOTIFICATIONS_USER_LIMITER_MAX",
    )
    notifications_limiter_cleanup_interval_seconds: float = Field(
        default=1800.0,
        alias="NOTIFICATIONS_LIMITER_CLEANUP_INTERVAL_SECONDS",
    )
    notifications_job_lock_ttl_seconds: int = Field(
        default=3600,
        alias="NOTIFICATIONS_JOB_LOCK_TTL_SECONDS",
    )
    notifications_completed_retention: int = Field(
        default=100,
        alias="NOTIFICATIONS_COMPLETED_RETENTION",
    )
    notifications_failed_retention: int = Field(
        default=500,
        alias="NOTIFICATIONS_FAILED_RETENTION",
    )
    notifications_delivery_timeout_seconds: float = Field(
        default=10.0,
        alias="NOTIFICATIONS_DELIVERY_TIMEOUT_SECONDS",
    )
    notifications_default_currency: str = Field(
        default="RUB",
        alias="NOTIFICATIONS_DEFAULT_CURRENCY",
    )

    sentry_dsn: str = Field(default="", alias="SENTRY_DSN")
    sentry_environment: str = Field(default="", alias="SENTRY_ENVIRONMENT")
    sentry_traces_sample_rate: float = Field(default=0.0, alias="SENTRY_TRACES_SAMPLE_RATE")

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    @field_validator("notifications_default_currency", mode="before")
    @classmethod
    def _normalize_currency(cls, value: object) -> object:
        if isinstance(value, str):
            return value.strip().upper() or "RUB"
        return value

    @property
    def database_url(self) -> str:
        if isinstance(self.database_url_override, str) and self.database_url_override.strip():
            return self.database_url_override.strip()
        user = quote_plus(self.postgres_user)
        password = quote_plus(self.postgres_password)
        return (
            f"postgresql+asyncpg://{user}:{password}@"
            f"{self.postgres_host}:{self.postgres_port}/{self.postgres_db}"
        )

    @property
    def redis_url(self) -> str:
        if self.redis_password:
            password = quote_plus(self.redis_password)
            return (
                f"redis://:{password}@{self.redis_host}:{self.redis_port}/{self.redis_db}"
            )
        return f"redis://{self.redis_host}:{self.redis_port}/{self.redis_db}"

    @property
    def effective_celery_broker_url(self) -> str:
        if isinstance(self.celery_broker_url, str) and self.celery_broker_url.strip():
            return self.celery_broker_url.strip()
        return self.redis_url

    @property
    def effective_celery_result_backend(self) -> str:
        if isinstance(self.celery_result_backend, str) and self.celery_result_backend.strip():
            return self.celery_result_backend.strip()
        return self.redis_url

    @property
    def runtime_env(self) -> str:
        mode = self.app_env.strip().lower()
        if mode in {"prod", "production"}:
            return "prod"
        if mode in {"test", "testing"}:
            return "test"
        return "dev"


@lru_cache
def get_settings() -> Settings:
    return Settings()


settings = get_settings()
