"""Celery/Redis delivery queue with idempotent enqueue and bounded job history."""

from __future__ import annotations

import asyncio
import json
from typing import Any

from celery import Celery
from redis.asyncio import Redis

from tgnotify.models.base import utcnow
from tgnotify.services.delivery_job import DeliveryJob, DeliveryOptions
from tgnotify.services.errors import QueueUnavailableError
from tgnotify.util.logger import log_queue, logger

DELIVER_TASK_NAME = "notifications.deliver"

_JOB_LOCK_PREFIX = "notifications:job:"
_COMPLETED_KEY = "notifications:jobs:completed"
_DEAD_LETTER_KEY = "notifications:jobs:failed"
LIMITER_STATS_KEY = "notifications:limiter:stats"


def _dump(value: dict[str, Any]) -> str:
    return json.dumps(value, ensure_ascii=False, default=str)


class CeleryDeliveryQueue:
    """Publishes delivery jobs to Celery and keeps their Redis bookkeeping.

    A job key (``notification-<id>``) is held in Redis with ``SET NX`` from
    enqueue until the job completes or fails for good, so re-enqueueing a
    waiting or running notification is a no-op.  The same key is the Celery
    task id.
    """

    def __init__(
        self,
        redis: Redis,
        *,
        app: Celery | None = None,
        queue_name: str = "notifications",
        lock_ttl_seconds: int = 3600,
        completed_retention: int = 100,
        failed_retention: int = 500,
        priority_steps: list[int] | None = None,
        priority_separator: str = ":",
    ) -> None:
        self._redis = redis
        self._app = app
        self._queue_name = queue_name
        self._lock_ttl_seconds = max(1, int(lock_ttl_seconds))
        self._completed_retention = max(1, int(completed_retention))
        self._failed_retention = max(1, int(failed_retention))
        self._priority_steps = priority_steps if priority_steps is not None else list(range(10))
        self._priority_separator = priority_separator

    @classmethod
    def from_settings(cls, settings: Any, redis: Redis, *, app: Celery | None = None) -> CeleryDeliveryQueue:
        return cls(
            redis,
            app=app,
            queue_name=settings.notifications_queue_name,
            lock_ttl_seconds=settings.notifications_job_lock_ttl_seconds,
            completed_retention=settings.notifications_completed_retention,
            failed_retention=settings.notifications_failed_retention,
        )

    @property
    def app(self) -> Celery:
        if self._app is None:
            from tgnotify.workers.celery_app import celery_app

            self._app = celery_app
        return self._app

    @staticmethod
    def lock_key(job_key: str) -> str:
        return f"{_JOB_LOCK_PREFIX}{job_key}"

    async def ping(self) -> bool:
        try:
            return bool(await self._redis.ping())
        except Exception as exc:
            raise QueueUnavailableError(f"Queue broker unreachable: {type(exc).__name__}") from exc

    async def enqueue(self, job: DeliveryJob, options: DeliveryOptions) -> str | None:
        """Publish ``job`` unless its key is already held; returns the task id or None."""
        job_key = job.job_key
        lock_key = self.lock_key(job_key)
        acquired = await self._redis.set(lock_key, utcnow().isoformat(), nx=True, ex=self._lock_ttl_seconds)
        if not acquired:
            log_queue("duplicate", job_key)
            return None

        try:
            await asyncio.to_thread(self._publish, job, options)
        except Exception:
            await self._redis.delete(lock_key)
            raise
        log_queue("enqueued", f"{job_key} priority={options.priority}")
        return job_key

    def _publish(self, job: DeliveryJob, options: DeliveryOptions) -> None:
        self.app.send_task(
            DELIVER_TASK_NAME,
            kwargs={
                "payload": job.to_payload(),
                "max_attempts": int(options.max_attempts),
                "backoff_seconds": float(options.backoff_seconds),
            },
            task_id=job.job_key,
            priority=int(options.priority),
            queue=self._queue_name,
        )

    async def extend_hold(self, job_key: str, seconds: float) -> bool:
        """Keep the job key held for ``seconds`` plus the usual lock TTL."""
        ttl = max(0, int(seconds)) + self._lock_ttl_seconds
        return bool(await self._redis.expire(self.lock_key(job_key), ttl))

    async def release(self, job_key: str) -> None:
        await self._redis.delete(self.lock_key(job_key))

    async def record_completed(self, job_key: str, result: dict[str, Any] | None) -> None:
        entry = {"job_key": job_key, "result": result or {}, "finished_at": utcnow().isoformat()}
        await self._push_bounded(_COMPLETED_KEY, entry, self._completed_retention)

    async def record_dead_letter(self, job_key: str, payload: dict[str, Any], error: str) -> None:
        entry = {
            "job_key": job_key,
            "payload": payload,
            "error": error[:1000],
            "failed_at": utcnow().isoformat(),
        }
        await self._push_bounded(_DEAD_LETTER_KEY, entry, self._failed_retention)

    async def _push_bounded(self, key: str, entry: dict[str, Any], limit: int) -> None:
        async with self._redis.pipeline(transaction=True) as pipe:
            pipe.lpush(key, _dump(entry))
            pipe.ltrim(key, 0, limit - 1)
            await pipe.execute()

    async def dead_letters(self, limit: int = 50) -> list[dict[str, Any]]:
        rows = await self._redis.lrange(_DEAD_LETTER_KEY, 0, max(0, int(limit) - 1))
        return [json.loads(row) for row in rows]

    def _priority_queue_keys(self) -> list[str]:
        keys = []
        for step in self._priority_steps:
            if step:
                keys.append(f"{self._queue_name}{self._priority_separator}{step}")
            else:
                keys.append(self._queue_name)
        return keys

    async def stats(self) -> dict[str, int]:
        """Waiting jobs across priority lists, held job keys and history sizes."""
        async with self._redis.pipeline(transaction=False) as pipe:
            for key in self._priority_queue_keys():
                pipe.llen(key)
            pipe.llen(_COMPLETED_KEY)
            pipe.llen(_DEAD_LETTER_KEY)
            counts = await pipe.execute()

        active_keys = 0
        async for _ in self._redis.scan_iter(match=f"{_JOB_LOCK_PREFIX}*", count=500):
            active_keys += 1

        waiting = sum(int(count or 0) for count in counts[:-2])
        return {
            "waiting": waiting,
            "active_jobs": active_keys,
            "completed": int(counts[-2] or 0),
            "failed": int(counts[-1] or 0),
        }

    async def publish_limiter_stats(self, payload: dict[str, Any], *, ttl_seconds: int = 300) -> None:
        snapshot = {**payload, "updated_at": utcnow().isoformat()}
        await self._redis.set(LIMITER_STATS_KEY, _dump(snapshot), ex=max(1, int(ttl_seconds)))

    async def limiter_stats(self) -> dict[str, Any] | None:
        raw = await self._redis.get(LIMITER_STATS_KEY)
        if not raw:
            return None
        try:
            return json.loads(raw)
        except ValueError:
            logger.warning("[notifications-queue] malformed limiter snapshot ignored")
            return None

    async def close(self) -> None:
        """No-op; the Redis client belongs to its ``RedisConnection`` owner."""
