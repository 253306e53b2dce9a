from __future__ import annotations

from pathlib import Path

import pytest
from pydantic import ValidationError

from tgnotify.config import Settings

ALL_SETTING_KEYS = [
    "APP_NAME",
    "APP_ENV",
    "DEBUG",
    "LOG_LEVEL",
    "POSTGRES_HOST",
    "POSTGRES_PORT",
    "POSTGRES_USER",
    "POSTGRES_PASSWORD",
    "POSTGRES_DB",
    "DATABASE_URL",
    "REDIS_HOST",
    "REDIS_PORT",
    "REDIS_DB",
    "REDIS_PASSWORD",
    "CELERY_BROKER_URL",
    "CELERY_RESULT_BACKEND",
    "TELEGRAM_BOT_TOKEN",
    "NOTIFICATIONS_ENABLED",
    "NOTIFICATIONS_RETRY_MAX_ATTEMPTS",
    "NOTIFICATIONS_RETRY_BACKOFF_SECONDS",
    "NOTIFICATIONS_GLOBAL_RATE_LIMIT",
    "NOTIFICATIONS_USER_RATE_LIMIT",
    "NOTIFICATIONS_DEFAULT_CURRENCY",
    "SENTRY_DSN",
]


def _clear_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for key in ALL_SETTING_KEYS:
        monkeypatch.delenv(key, raising=False)


def test_settings_reads_dotenv_file(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    _clear_env(monkeypatch)
    env_file = tmp_path / ".env"
    env_file.write_text(
        "\n".join(
            [
                "APP_NAME=notify-test",
                "APP_ENV=test",
                "POSTGRES_HOST=db",
                "POSTGRES_USER=bot",
                "POSTGRES_PASSWORD=p@ss word",
                "POSTGRES_DB=telegram_bot",
                "REDIS_HOST=cache",
                "REDIS_DB=2",
                "TELEGRAM_BOT_TOKEN=123:abc",
                "NOTIFICATIONS_RETRY_MAX_ATTEMPTS=5",
                "NOTIFICATIONS_GLOBAL_RATE_LIMIT=25",
                "NOTIFICATIONS_DEFAULT_CURRENCY= usd ",
            ]
        ),
        encoding="utf-8",
    )

    settings = Settings(_env_file=env_file)

    assert settings.app_name == "notify-test"
    assert settings.runtime_env == "test"
    assert settings.database_url == "postgresql+asyncpg://bot:p%40ss+word@db:5432/telegram_bot"
    assert settings.redis_url == "redis://cache:6379/2"
    assert settings.effective_celery_broker_url == "redis://cache:6379/2"
    assert settings.telegram_bot_token == "123:abc"
    assert settings.notifications_retry_max_attempts == 5
    assert settings.notifications_global_rate_limit == 25
    assert settings.notifications_default_currency == "USD"


def test_defaults_follow_the_delivery_contract(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    _clear_env(monkeypatch)

    settings = Settings(_env_file=tmp_path / "missing.env")

    assert settings.notifications_retry_max_attempts == 3
    assert settings.notifications_retry_backoff_seconds == 60.0
    assert settings.notifications_worker_concurrency == 3
    assert settings.notifications_global_rate_limit == 20
    assert settings.notifications_global_rate_interval_seconds == 1.0
    assert settings.notifications_user_rate_limit == 15
    assert settings.notifications_user_rate_interval_seconds == 60.0
    assert settings.notifications_completed_retention == 100
    assert settings.notifications_failed_retention == 500


def test_explicit_urls_override_composed_ones(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    _clear_env(monkeypatch)
    monkeypatch.setenv("DATABASE_URL", "sqlite+aiosqlite:///./local.db")
    monkeypatch.setenv("CELERY_BROKER_URL", "redis://broker:6379/5")
    monkeypatch.setenv("REDIS_PASSWORD", "secret")

    settings = Settings(_env_file=tmp_path / "missing.env")

    assert settings.database_url == "sqlite+aiosqlite:///./local.db"
    assert settings.effective_celery_broker_url == "redis://broker:6379/5"
    assert settings.effective_celery_result_backend == "redis://:secret@localhost:6379/1"


def test_invalid_numeric_value_raises_validation_error(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    _clear_env(monkeypatch)
    env_file = tmp_path / ".env"
    env_file.write_text("NOTIFICATIONS_RETRY_MAX_ATTEMPTS=many\n", encoding="utf-8")

    with pytest.raises(ValidationError):
        Settings(_env_file=env_file)
