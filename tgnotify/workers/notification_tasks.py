"""Celery task that delivers one notification job, with retry and dead-letter hooks."""

from __future__ import annotations

import threading
from typing import Any

from celery import Task
from celery.signals import worker_shutdown

from tgnotify.config import settings
from tgnotify.services.delivery_job import DeliveryJob, job_key_for
from tgnotify.services.errors import RetryableDeliveryError
from tgnotify.util.logger import logger
from tgnotify.workers.celery_app import celery_app
from tgnotify.workers.delivery_queue import DELIVER_TASK_NAME
from tgnotify.workers.runtime import NotificationRuntime

_runtime: NotificationRuntime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> NotificationRuntime:
    """Return this process's runtime, starting it on first use."""
    global _runtime
    with _runtime_lock:
        if _runtime is None:
            _runtime = NotificationRuntime(settings).start()
        return _runtime


def shutdown_runtime() -> None:
    global _runtime
    with _runtime_lock:
        runtime, _runtime = _runtime, None
    if runtime is not None:
        runtime.stop()


@worker_shutdown.connect
def _stop_runtime_on_shutdown(**_kwargs: Any) -> None:
    shutdown_runtime()


def retry_countdown(attempt: int, backoff_seconds: float, *, retry_after: float | None = None) -> float:
    """Exponential backoff ``base * 2**(attempt-1)``; a throttling hint can only lengthen it."""
    delay = max(0.0, float(backoff_seconds)) * (2 ** (max(1, int(attempt)) - 1))
    if retry_after is not None:
        delay = max(delay, float(retry_after))
    return delay


def _payload_from(args: Any, kwargs: Any) -> dict[str, Any]:
    if isinstance(kwargs, dict) and isinstance(kwargs.get("payload"), dict):
        return kwargs["payload"]
    if args and isinstance(args[0], dict):
        return args[0]
    return {}


class DeliveryTask(Task):
    """Keeps queue bookkeeping in step with the task's final state."""

    def on_success(self, retval: Any, task_id: str, args: Any, kwargs: Any) -> None:
        payload = _payload_from(args, kwargs)
        job_key = _job_key(task_id, payload)
        try:
            runtime = get_runtime()
            runtime.run(runtime.queue.record_completed(job_key, retval if isinstance(retval, dict) else None))
            runtime.run(runtime.queue.release(job_key))
        except Exception as exc:  # noqa: BLE001
            logger.warning(
                "[notifications-worker] completion bookkeeping failed job=%s error=%s",
                job_key,
                type(exc).__name__,
            )

    def on_retry(self, exc: Exception, task_id: str, args: Any, kwargs: Any, einfo: Any) -> None:
        logger.info("[notifications-worker] job %s scheduled for retry: %s", task_id, exc)

    def on_failure(self, exc: Exception, task_id: str, args: Any, kwargs: Any, einfo: Any) -> None:
        payload = _payload_from(args, kwargs)
        job_key = _job_key(task_id, payload)
        logger.error("[notifications-worker] job %s failed: %s", job_key, exc)
        try:
            runtime = get_runtime()
            notification_id = payload.get("notification_id")
            if notification_id is not None:
                runtime.run(runtime.worker.mark_exhausted(int(notification_id), str(exc)))
            runtime.run(runtime.queue.record_dead_letter(job_key, payload, str(exc)))
            runtime.run(runtime.queue.release(job_key))
        except Exception as hook_exc:  # noqa: BLE001
            logger.warning(
                "[notifications-worker] failure bookkeeping failed job=%s error=%s",
                job_key,
                type(hook_exc).__name__,
            )


def _hold_for_retry(runtime: NotificationRuntime, job_key: str, countdown: float) -> None:
    # The key outlives the countdown so re-enqueueing stays a no-op.
    try:
        runtime.run(runtime.queue.extend_hold(job_key, countdown))
    except Exception as exc:  # noqa: BLE001
        logger.warning(
            "[notifications-worker] job key refresh failed job=%s error=%s",
            job_key,
            type(exc).__name__,
        )


def _job_key(task_id: str | None, payload: dict[str, Any]) -> str:
    if payload.get("notification_id") is not None:
        return job_key_for(int(payload["notification_id"]))
    return str(task_id)


@celery_app.task(name=DELIVER_TASK_NAME, bind=True, base=DeliveryTask, acks_late=True)
def deliver_notification_task(
    self: DeliveryTask,
    payload: dict[str, Any],
    max_attempts: int = 3,
    backoff_seconds: float = 60.0,
) -> dict[str, Any]:
    """Run one delivery attempt; retryable failures go back to the broker with backoff."""
    attempt = int(self.request.retries or 0) + 1
    job = DeliveryJob.from_payload(payload, attempt=attempt)
    max_retries = max(0, int(max_attempts) - 1)
    runtime = get_runtime()

    try:
        outcome = runtime.run(runtime.worker.process(job))
    except RetryableDeliveryError as exc:
        countdown = retry_countdown(attempt, backoff_seconds, retry_after=exc.retry_after)
        _hold_for_retry(runtime, job.job_key, countdown)
        raise self.retry(exc=exc, countdown=countdown, max_retries=max_retries) from exc
    except Exception as exc:
        # Store or broker trouble mid-job; the attempt is retried like a transient send failure.
        logger.warning(
            "[notifications-worker] job %s errored error=%s",
            job.job_key,
            type(exc).__name__,
        )
        countdown = retry_countdown(attempt, backoff_seconds)
        _hold_for_retry(runtime, job.job_key, countdown)
        raise self.retry(exc=exc, countdown=countdown, max_retries=max_retries) from exc
    finally:
        try:
            runtime.run(runtime.publish_limiter_stats())
        except Exception as exc:  # noqa: BLE001
            logger.warning(
                "[notifications-worker] limiter snapshot publish failed error=%s",
                type(exc).__name__,
            )

    return outcome.as_dict()
