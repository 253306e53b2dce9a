"""Per-process asyncio runtime that owns the notification worker's resources."""

from __future__ import annotations

import asyncio
from collections.abc import Coroutine
from concurrent.futures import TimeoutError as FutureTimeoutError
import threading
from typing import Any, TypeVar

from tgnotify.models.database import Database
from tgnotify.models.redis import RedisConnection
from tgnotify.services.notification_rate_limiter import (
    NotificationRateLimiter,
    limiter_stats_payload,
)
from tgnotify.services.notification_store import NotificationStore
from tgnotify.services.notification_worker import NotificationWorker, Transport
from tgnotify.services.telegram_transport import TelegramTransport
from tgnotify.util.logger import logger
from tgnotify.workers.delivery_queue import CeleryDeliveryQueue

T = TypeVar("T")


class NotificationRuntime:
    """One event loop thread per worker process.

    Celery runs jobs on a thread pool; every job submits its coroutine to this
    loop, so the database engine, the Redis pool and above all the rate
    limiter are shared by all jobs of the process.
    """

    def __init__(
        self,
        settings: Any,
        *,
        database: Database | None = None,
        redis: RedisConnection | None = None,
        transport: Transport | None = None,
        limiter: NotificationRateLimiter | None = None,
    ) -> None:
        self.settings = settings
        self.database = database or Database.from_settings(settings)
        self.redis = redis or RedisConnection.from_settings(settings)
        self._transport = transport
        self.limiter = limiter or NotificationRateLimiter.from_settings(settings)
        self.store: NotificationStore | None = None
        self.queue: CeleryDeliveryQueue | None = None
        self.worker: NotificationWorker | None = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._thread: threading.Thread | None = None
        self._lock = threading.Lock()

    @property
    def started(self) -> bool:
        return self._loop is not None and self.worker is not None

    def start(self) -> NotificationRuntime:
        with self._lock:
            if self.started:
                return self
            loop = asyncio.new_event_loop()
            thread = threading.Thread(
                target=self._run_loop,
                args=(loop,),
                name="notifications-runtime",
                daemon=True,
            )
            thread.start()
            self._loop = loop
            self._thread = thread
            try:
                self._submit(self._open()).result()
            except Exception:
                self._stop_loop()
                raise
        logger.info("[notifications-runtime] started")
        return self

    def run(self, coro: Coroutine[Any, Any, T], *, timeout: float | None = None) -> T:
        """Run ``coro`` on the runtime loop and block the calling thread for its result."""
        if self._loop is None:
            coro.close()
            raise RuntimeError("Notification runtime is not started.")
        future = self._submit(coro)
        try:
            return future.result(timeout)
        except FutureTimeoutError:
            future.cancel()
            raise

    def stop(self) -> None:
        with self._lock:
            if self._loop is None:
                return
            try:
                self._submit(self._close()).result(timeout=30)
            except Exception as exc:  # noqa: BLE001
                logger.warning(
                    "[notifications-runtime] shutdown incomplete error=%s",
                    type(exc).__name__,
                )
            self._stop_loop()
        logger.info("[notifications-runtime] stopped")

    def _submit(self, coro: Coroutine[Any, Any, T]):  # noqa: ANN202
        assert self._loop is not None
        return asyncio.run_coroutine_threadsafe(coro, self._loop)

    @staticmethod
    def _run_loop(loop: asyncio.AbstractEventLoop) -> None:
        asyncio.set_event_loop(loop)
        try:
            loop.run_forever()
        finally:
            loop.close()

    def _stop_loop(self) -> None:
        if self._loop is not None:
            self._loop.call_soon_threadsafe(self._loop.stop)
        if self._thread is not None:
            self._thread.join(timeout=10)
        self._loop = None
        self._thread = None

    async def _open(self) -> None:
        # Worker processes may start in parallel; schema creation belongs to the API.
        await self.database.open(ensure_schema=False)
        redis = await self.redis.open()
        if self._transport is None:
            self._transport = TelegramTransport.from_settings(self.settings)
        opener = getattr(self._transport, "open", None)
        if opener is not None:
            await opener()
        self.limiter.start_cleanup(self.settings.notifications_limiter_cleanup_interval_seconds)

        self.store = NotificationStore(self.database.sessions())
        self.queue = CeleryDeliveryQueue.from_settings(self.settings, redis)
        self.worker = NotificationWorker(
            store=self.store,
            limiter=self.limiter,
            transport=self._transport,
        )

    async def _close(self) -> None:
        await self.limiter.close()
        closer = getattr(self._transport, "close", None)
        if closer is not None:
            await closer()
        await self.redis.close()
        await self.database.close()
        self.worker = None
        self.queue = None
        self.store = None

    async def publish_limiter_stats(self) -> None:
        if self.queue is None:
            return
        await self.queue.publish_limiter_stats(limiter_stats_payload(self.limiter.stats()))
