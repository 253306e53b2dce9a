from __future__ import annotations

import pytest

from tgnotify.observability import sentry_setup
from tgnotify.observability.sentry_setup import init_backend_sentry, sentry_before_send


def test_sentry_before_send_redacts_sensitive_fields_and_bot_tokens() -> None:
    event = {
        "request": {
            "headers": {"Authorization": "Bearer secret", "X-Request-Id": "req-1"},
            "data": {"bot_token": "123:abc", "chat_id": "100"},
        },
        "extra": {"telegram_token": "x", "notification_id": 7},
        "breadcrumbs": {
            "values": [
                {
                    "category": "httpx",
                    "data": {
                        "url": "https://api.telegram.org/bot123456:AAAAAAAAAAAAAAAAAAAAAAAAAAAA/sendMessage",
                    },
                }
            ]
        },
    }

    sanitized = sentry_before_send(event, {})

    assert sanitized["request"]["headers"]["Authorization"] == "[REDACTED]"
    assert sanitized["request"]["headers"]["X-Request-Id"] == "req-1"
    assert sanitized["request"]["data"]["bot_token"] == "[REDACTED]"
    assert sanitized["request"]["data"]["chat_id"] == "100"
    assert sanitized["extra"]["telegram_token"] == "[REDACTED]"
    assert sanitized["extra"]["notification_id"] == 7
    url = sanitized["breadcrumbs"]["values"][0]["data"]["url"]
    assert "AAAAAAAA" not in url
    assert url.endswith("bot[REDACTED]/sendMessage")


def test_sentry_before_send_does_not_mutate_original_event() -> None:
    event = {"request": {"headers": {"Authorization": "Bearer keep-in-source"}}}

    sentry_before_send(event, {})

    assert event["request"]["headers"]["Authorization"] == "Bearer keep-in-source"


def test_init_is_noop_without_dsn(monkeypatch: pytest.MonkeyPatch) -> None:
    calls: list[dict] = []
    monkeypatch.setattr(sentry_setup.settings, "sentry_dsn", "")
    monkeypatch.setattr(sentry_setup.sentry_sdk, "init", lambda **kwargs: calls.append(kwargs))

    assert init_backend_sentry(source="celery") is False
    assert calls == []


def test_init_uses_source_integrations(monkeypatch: pytest.MonkeyPatch) -> None:
    calls: list[dict] = []
    tags: list[tuple[str, str]] = []
    monkeypatch.setattr(sentry_setup.settings, "sentry_dsn", "https://key@example.invalid/1")
    monkeypatch.setattr(sentry_setup.settings, "sentry_environment", "")
    monkeypatch.setattr(sentry_setup.settings, "app_env", "production")
    monkeypatch.setattr(sentry_setup.sentry_sdk, "init", lambda **kwargs: calls.append(kwargs))
    monkeypatch.setattr(sentry_setup.sentry_sdk, "set_tag", lambda key, value: tags.append((key, value)))

    assert init_backend_sentry(source="celery") is True

    assert calls[0]["environment"] == "production"
    assert calls[0]["before_send"] is sentry_before_send
    assert calls[0]["send_default_pii"] is False
    assert type(calls[0]["integrations"][0]).__name__ == "CeleryIntegration"
    assert tags == [("service_source", "celery")]
