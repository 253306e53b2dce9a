"""Celery application bootstrap for notification delivery."""

from __future__ import annotations

from celery import Celery
from kombu import Queue

from tgnotify.config import settings
from tgnotify.observability.sentry_setup import init_backend_sentry

init_backend_sentry(source="celery")

# Redis has no native priorities; kombu fans each queue out into one list per step.
PRIORITY_STEPS: list[int] = list(range(10))
PRIORITY_SEPARATOR = ":"

celery_app = Celery(
    "tgnotify",
    broker=settings.effective_celery_broker_url,
    backend=settings.effective_celery_result_backend,
    include=["tgnotify.workers.notification_tasks"],
)

celery_app.conf.update(
    task_default_queue=settings.notifications_queue_name,
    task_default_priority=5,
    task_acks_late=settings.celery_task_acks_late,
    task_reject_on_worker_lost=True,
    task_track_started=True,
    worker_prefetch_multiplier=settings.celery_worker_prefetch_multiplier,
    # One asyncio loop per worker process drives the limiter, so jobs run on threads.
    # The threads pool enforces no task time limits; each send is bounded by
    # NOTIFICATIONS_DELIVERY_TIMEOUT_SECONDS in the transport instead.
    worker_pool="threads",
    worker_concurrency=settings.notifications_worker_concurrency,
    task_default_retry_delay=settings.notifications_retry_backoff_seconds,
    task_publish_retry=True,
    task_publish_retry_policy={
        "max_retries": 3,
        "interval_start": 0,
        "interval_step": 0.2,
        "interval_max": 2.0,
    },
    task_serializer="json",
    result_serializer="json",
    accept_content=["json"],
    result_expires=settings.celery_result_expires_seconds,
    task_always_eager=settings.celery_task_always_eager,
    broker_connection_retry_on_startup=True,
    broker_transport_options={
        "queue_order_strategy": "priority",
        "priority_steps": PRIORITY_STEPS,
        "sep": PRIORITY_SEPARATOR,
        # Unacked jobs of a crashed worker are redelivered after this many seconds.
        "visibility_timeout": settings.celery_visibility_timeout_seconds,
    },
    timezone=settings.celery_timezone,
    enable_utc=settings.celery_timezone.strip().upper() == "UTC",
    task_queues=(Queue(settings.notifications_queue_name),),
    task_routes={
        "notifications.*": {"queue": settings.notifications_queue_name},
    },
)
