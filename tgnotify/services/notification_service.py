"""Producer: turns business events into stored notifications and delivery jobs."""

from __future__ import annotations

from collections.abc import Callable, Mapping
from datetime import datetime
from decimal import Decimal
from typing import Any

from tgnotify.models.base import utcnow
from tgnotify.services.delivery_job import DeliveryJob, DeliveryOptions, DeliveryQueue
from tgnotify.services.notification_events import (
    EventBus,
    IncomeCreditedEvent,
    PurchaseCompletedEvent,
    ReferralPurchaseEvent,
    ReferralRegisteredEvent,
)
from tgnotify.services.notification_store import NotificationStore
from tgnotify.services.notification_types import NOTIFICATION_PRIORITY, NotificationType
from tgnotify.util.logger import logger

DEFAULT_REWARD_PERCENTAGE = 30
DEFAULT_REFERRAL_LEVEL = 1
DEFAULT_FIRST_NAME = "Пользователь"


def _iso(value: datetime | None) -> str:
    return (value or utcnow()).isoformat()


def _amount(value: Decimal | None) -> str | None:
    return None if value is None else str(value)


class NotificationService:
    """Event-to-job bridge.

    Each handler checks the target user's preference for the notification type,
    stores a ``pending`` record and enqueues its delivery job.  Handlers never
    raise: delivery is best-effort and must not break the code that published
    the event.  When the queue is unreachable at ``start()`` the service turns
    itself off and every later event is a no-op.
    """

    def __init__(
        self,
        *,
        store: NotificationStore,
        queue: DeliveryQueue,
        event_bus: EventBus,
        max_attempts: int = 3,
        backoff_seconds: float = 60.0,
        default_currency: str = "RUB",
    ) -> None:
        self.store = store
        self.queue = queue
        self.event_bus = event_bus
        self.enabled = False
        self._max_attempts = max(1, int(max_attempts))
        self._backoff_seconds = max(0.0, float(backoff_seconds))
        self._default_currency = default_currency
        self._unsubscribers: list[Callable[[], None]] = []

    @classmethod
    def from_settings(
        cls,
        settings: Any,
        *,
        store: NotificationStore,
        queue: DeliveryQueue,
        event_bus: EventBus,
    ) -> NotificationService:
        return cls(
            store=store,
            queue=queue,
            event_bus=event_bus,
            max_attempts=settings.notifications_retry_max_attempts,
            backoff_seconds=settings.notifications_retry_backoff_seconds,
            default_currency=settings.notifications_default_currency,
        )

    async def start(self) -> bool:
        """Check the queue and register event handlers; returns the enabled flag."""
        try:
            reachable = await self.queue.ping()
        except Exception as exc:  # noqa: BLE001
            logger.warning(
                "[notifications-producer] queue unavailable, notifications disabled error=%s",
                type(exc).__name__,
            )
            reachable = False
        else:
            if not reachable:
                logger.warning("[notifications-producer] queue did not answer ping, notifications disabled")

        self.enabled = bool(reachable)
        if self.enabled and not self._unsubscribers:
            self._unsubscribers = [
                self.event_bus.subscribe(PurchaseCompletedEvent, self.handle_purchase),
                self.event_bus.subscribe(ReferralRegisteredEvent, self.handle_referral_registered),
                self.event_bus.subscribe(ReferralPurchaseEvent, self.handle_referral_purchase),
                self.event_bus.subscribe(IncomeCreditedEvent, self.handle_income_credited),
            ]
            logger.info("[notifications-producer] event listeners registered")
        return self.enabled

    async def close(self) -> None:
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers = []
        self.enabled = False
        try:
            await self.queue.close()
        except Exception as exc:  # noqa: BLE001
            logger.warning("[notifications-producer] queue close failed error=%s", type(exc).__name__)
        logger.info("[notifications-producer] service closed")

    async def handle_purchase(self, event: PurchaseCompletedEvent) -> int | None:
        payment = event.payment
        content = {
            "amount": _amount(payment.amount),
            "currency": payment.currency or self._default_currency,
            "product_name": payment.product_name or payment.description,
            "product_id": payment.product_id,
            "payment_id": payment.id,
            "purchase_date": _iso(payment.created_at),
        }
        return await self._notify(event.user_id, NotificationType.PURCHASE, content)

    async def handle_referral_registered(self, event: ReferralRegisteredEvent) -> int | None:
        referral = event.referral
        content = {
            "referral_id": referral.user_id,
            "referral_username": referral.username,
            "referral_first_name": referral.first_name or DEFAULT_FIRST_NAME,
            "registration_date": _iso(referral.registered_at),
            "total_referrals": referral.total_referrals or 1,
        }
        return await self._notify(event.referrer_id, NotificationType.REFERRAL_REGISTERED, content)

    async def handle_referral_purchase(self, event: ReferralPurchaseEvent) -> int | None:
        purchase = event.purchase
        reward_percentage = (
            purchase.reward_percentage
            if purchase.reward_percentage is not None
            else DEFAULT_REWARD_PERCENTAGE
        )
        content = {
            "referral_id": event.referral.user_id,
            "referral_username": event.referral.username,
            "purchase_amount": _amount(purchase.amount),
            "currency": purchase.currency or self._default_currency,
            "expected_reward": _amount(purchase.expected_reward),
            "reward_percentage": str(reward_percentage),
            "purchase_date": _iso(purchase.created_at),
        }
        return await self._notify(event.referrer_id, NotificationType.REFERRAL_PURCHASE, content)

    async def handle_income_credited(self, event: IncomeCreditedEvent) -> int | None:
        income = event.income
        content = {
            "amount": _amount(income.amount),
            "currency": income.currency or self._default_currency,
            "from_referral_id": income.from_referral_id,
            "from_referral_username": income.from_referral_username,
            "referral_level": income.referral_level or DEFAULT_REFERRAL_LEVEL,
            "new_balance": _amount(income.new_balance),
            "transaction_id": income.transaction_id,
            "credited_at": _iso(income.credited_at),
        }
        return await self._notify(event.user_id, NotificationType.INCOME_CREDITED, content)

    async def _notify(
        self,
        user_id: str,
        notification_type: NotificationType,
        content: Mapping[str, Any],
    ) -> int | None:
        """Returns the stored notification id, or None when nothing was created."""
        if not self.enabled:
            return None
        try:
            preferences = await self.store.get_preferences(user_id)
            if not preferences.is_enabled(notification_type):
                logger.info(
                    "[notifications-producer] %s notification disabled user_id=%s",
                    notification_type,
                    user_id,
                )
                return None

            notification = await self.store.create(
                user_id=user_id,
                notification_type=notification_type,
                content=content,
            )
        except Exception:
            logger.exception(
                "[notifications-producer] failed to create %s notification user_id=%s",
                notification_type,
                user_id,
            )
            return None

        await self._enqueue(DeliveryJob(notification.id, notification.user_id, notification.type))
        logger.info(
            "[notifications-producer] %s notification created id=%s",
            notification_type,
            notification.id,
        )
        return notification.id

    async def _enqueue(self, job: DeliveryJob) -> None:
        options = DeliveryOptions(
            priority=NOTIFICATION_PRIORITY[NotificationType(job.type)],
            max_attempts=self._max_attempts,
            backoff_seconds=self._backoff_seconds,
        )
        try:
            task_id = await self.queue.enqueue(job, options)
        except Exception as exc:  # noqa: BLE001
            # The record stays pending; an operator can re-enqueue it.
            logger.warning(
                "[notifications-producer] enqueue failed id=%s error=%s",
                job.notification_id,
                type(exc).__name__,
            )
            return
        if task_id is None:
            logger.info("[notifications-producer] job %s already queued", job.job_key)
