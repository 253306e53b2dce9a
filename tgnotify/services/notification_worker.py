"""Consumer side of the pipeline: one delivery job through the notification state machine."""

from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Any, Protocol

from tgnotify.models.base import utcnow
from tgnotify.models.notification import Notification
from tgnotify.services.delivery_job import DeliveryJob
from tgnotify.services.errors import RetryableDeliveryError, TemplateNotFoundError
from tgnotify.services.notification_rate_limiter import NotificationRateLimiter
from tgnotify.services.notification_store import NotificationStore
from tgnotify.services.notification_templates import render_notification
from tgnotify.services.notification_types import (
    NON_TERMINAL_STATUSES,
    TERMINAL_STATUSES,
    NotificationStatus,
)
from tgnotify.services.telegram_transport import (
    FailureKind,
    SentMessage,
    TransportFailure,
    classify_transport_error,
)
from tgnotify.util.logger import logger

BOT_BLOCKED_MESSAGE = "Bot blocked by user"


class Transport(Protocol):
    async def send(self, chat_id: str, text: str) -> SentMessage: ...


@dataclass(frozen=True, slots=True)
class DeliveryOutcome:
    status: str
    reason: str | None = None
    message_id: str | None = None

    def as_dict(self) -> dict[str, Any]:
        return {key: value for key, value in asdict(self).items() if value is not None}


class NotificationWorker:
    """Runs one job: blocked check, render, rate-limited send, record update.

    ``process`` either returns a ``DeliveryOutcome`` (the job is complete, even
    when the notification failed) or raises ``RetryableDeliveryError`` so the
    queue schedules another attempt.
    """

    def __init__(
        self,
        *,
        store: NotificationStore,
        limiter: NotificationRateLimiter,
        transport: Transport,
    ) -> None:
        self.store = store
        self.limiter = limiter
        self.transport = transport

    async def process(self, job: DeliveryJob) -> DeliveryOutcome:
        notification_id = job.notification_id
        user_id = str(job.user_id)
        logger.info(
            "[notifications-worker] processing notification %s for user %s attempt=%s",
            notification_id,
            user_id,
            job.attempt,
        )

        if await self.store.is_blocked(user_id):
            await self.store.update_status(
                notification_id,
                NotificationStatus.CANCELLED,
                error_message=BOT_BLOCKED_MESSAGE,
                expected_statuses=NON_TERMINAL_STATUSES,
            )
            logger.info("[notifications-worker] notification %s cancelled, bot blocked", notification_id)
            return DeliveryOutcome(status="cancelled", reason="bot_blocked")

        notification = await self.store.get(notification_id)
        if notification is None:
            logger.error("[notifications-worker] notification %s not found, dropping job", notification_id)
            return DeliveryOutcome(status="skipped", reason="notification_not_found")
        if notification.status in TERMINAL_STATUSES:
            # Redelivered after the record was already settled.
            logger.info(
                "[notifications-worker] notification %s already %s, skipping",
                notification_id,
                notification.status,
            )
            return DeliveryOutcome(status="skipped", reason=f"already_{notification.status}")

        try:
            text = render_notification(notification.type, notification.content or {})
        except TemplateNotFoundError as exc:
            await self.store.update_status(
                notification_id,
                NotificationStatus.FAILED,
                error_message=str(exc),
            )
            logger.error("[notifications-worker] %s", exc)
            return DeliveryOutcome(status="failed", reason="template_not_found")

        await self.store.update_status(notification_id, NotificationStatus.SENDING)

        try:
            sent = await self.limiter.schedule(
                user_id,
                lambda: self.transport.send(user_id, text),
            )
        except Exception as exc:  # noqa: BLE001
            return await self._handle_send_failure(notification, classify_transport_error(exc), exc)

        await self.store.update_status(
            notification_id,
            NotificationStatus.SENT,
            sent_at=utcnow(),
            transport_message_id=sent.message_id,
        )
        await self.store.touch_last_notification(user_id)
        logger.info("[notifications-worker] notification %s sent", notification_id)
        return DeliveryOutcome(status="sent", message_id=sent.message_id)

    async def _handle_send_failure(
        self,
        notification: Notification,
        failure: TransportFailure,
        exc: Exception,
    ) -> DeliveryOutcome:
        notification_id = notification.id
        user_id = notification.user_id

        if failure.kind is FailureKind.BLOCKED:
            await self.store.set_blocked(user_id, True)
            await self.store.update_status(
                notification_id,
                NotificationStatus.FAILED,
                error_message=failure.error_message,
            )
            logger.info("[notifications-worker] user %s blocked the bot", user_id)
            return DeliveryOutcome(status="failed", reason="bot_blocked")

        if failure.kind is FailureKind.NOT_FOUND:
            await self.store.update_status(
                notification_id,
                NotificationStatus.FAILED,
                error_message=failure.error_message,
            )
            logger.info("[notifications-worker] chat not found for user %s", user_id)
            return DeliveryOutcome(status="failed", reason="chat_not_found")

        if failure.kind is FailureKind.THROTTLED:
            await self.store.update_status(
                notification_id,
                NotificationStatus.PENDING,
                error_message=failure.error_message,
            )
            logger.warning(
                "[notifications-worker] rate limited, retry after %ss notification=%s",
                failure.retry_after,
                notification_id,
            )
            raise RetryableDeliveryError(
                failure.error_message,
                retry_after=failure.retry_after,
                throttled=True,
            ) from exc

        await self.store.update_status(
            notification_id,
            NotificationStatus.PENDING,
            retry_count=int(notification.retry_count or 0) + 1,
            error_message=failure.error_message,
        )
        logger.warning(
            "[notifications-worker] delivery failed notification=%s error=%s",
            notification_id,
            type(exc).__name__,
        )
        raise RetryableDeliveryError(failure.error_message) from exc

    async def mark_exhausted(self, notification_id: int, reason: str) -> bool:
        """Settle a record whose job ran out of attempts; terminal records are left alone."""
        row = await self.store.update_status(
            notification_id,
            NotificationStatus.FAILED,
            error_message=f"Delivery attempts exhausted: {reason}",
            expected_statuses=NON_TERMINAL_STATUSES,
        )
        if row is not None:
            logger.warning(
                "[notifications-worker] notification %s failed after exhausting retries",
                notification_id,
            )
        return row is not None
