"""FastAPI dependency providers."""

from __future__ import annotations

from fastapi import Request

from tgnotify.services.notification_service import NotificationService
from tgnotify.services.notification_store import NotificationStore
from tgnotify.workers.delivery_queue import CeleryDeliveryQueue


def get_store(request: Request) -> NotificationStore:
    return request.app.state.store


def get_queue(request: Request) -> CeleryDeliveryQueue | None:
    return getattr(request.app.state, "queue", None)


def get_notification_service(request: Request) -> NotificationService | None:
    return getattr(request.app.state, "notifications", None)
