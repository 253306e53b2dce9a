"""FastAPI application factory and lifecycle management."""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any

from fastapi import FastAPI

from tgnotify.api.router import api_router
from tgnotify.config import settings
from tgnotify.models.database import Database
from tgnotify.models.redis import RedisConnection
from tgnotify.observability.sentry_setup import init_backend_sentry
from tgnotify.services.delivery_job import DeliveryQueue
from tgnotify.services.notification_events import EventBus
from tgnotify.services.notification_service import NotificationService
from tgnotify.services.notification_store import NotificationStore
from tgnotify.util.logger import configure_logging, log_success, logger
from tgnotify.workers.delivery_queue import CeleryDeliveryQueue

configure_logging(settings.log_level, show_sql=settings.sqlalchemy_echo)


def create_app(
    *,
    database: Database | None = None,
    redis: RedisConnection | None = None,
    queue: DeliveryQueue | None = None,
    event_bus: EventBus | None = None,
    app_settings: Any = None,
) -> FastAPI:
    """Application factory for uvicorn and testing.

    Every infrastructure component can be injected; whatever is missing is
    built from settings when the lifespan starts.
    """
    cfg = app_settings or settings

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Open store and queue, start the producer, close everything on exit."""
        logger.info("Starting application lifecycle.")
        db = database or Database.from_settings(cfg)
        await db.open()

        redis_connection = redis
        delivery_queue = queue
        if delivery_queue is None:
            redis_connection = redis_connection or RedisConnection.from_settings(cfg)
            try:
                await redis_connection.open()
            except Exception as exc:  # noqa: BLE001
                logger.warning("Redis unavailable at startup error=%s", type(exc).__name__)
            if redis_connection.redis is not None:
                delivery_queue = CeleryDeliveryQueue.from_settings(cfg, redis_connection.redis)

        store = NotificationStore(db.sessions())
        bus = event_bus or EventBus()
        notifications: NotificationService | None = None
        if delivery_queue is not None and cfg.notifications_enabled:
            notifications = NotificationService.from_settings(
                cfg,
                store=store,
                queue=delivery_queue,
                event_bus=bus,
            )
            await notifications.start()

        app.state.database = db
        app.state.store = store
        app.state.queue = delivery_queue
        app.state.event_bus = bus
        app.state.notifications = notifications
        log_success("Infrastructure initialized.")
        try:
            yield
        finally:
            if notifications is not None:
                await notifications.close()
            if redis_connection is not None and redis is None:
                await redis_connection.close()
            if database is None:
                await db.close()
            logger.info("Application lifecycle closed.")

    app = FastAPI(
        title=cfg.app_name,
        debug=cfg.debug,
        lifespan=lifespan,
    )
    app.include_router(api_router, prefix=cfg.api_v1_prefix)

    @app.get("/")
    async def root() -> dict[str, str]:
        return {"name": cfg.app_name, "status": "running"}

    return app


def build_app() -> FastAPI:
    """Uvicorn factory entrypoint: ``uvicorn tgnotify.main:build_app --factory``."""
    init_backend_sentry(source="fastapi")
    return create_app()
