"""Notification type/status vocabulary and the per-type lookup tables."""

from __future__ import annotations

from enum import StrEnum


class NotificationType(StrEnum):
    PURCHASE = "purchase"
    REFERRAL_REGISTERED = "referral_registered"
    REFERRAL_PURCHASE = "referral_purchase"
    INCOME_CREDITED = "income_credited"


class NotificationStatus(StrEnum):
    PENDING = "pending"
    SENDING = "sending"
    SENT = "sent"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_STATUSES: frozenset[NotificationStatus] = frozenset(
    {NotificationStatus.SENT, NotificationStatus.FAILED, NotificationStatus.CANCELLED}
)
NON_TERMINAL_STATUSES: tuple[NotificationStatus, ...] = (
    NotificationStatus.PENDING,
    NotificationStatus.SENDING,
)

# Celery's Redis transport orders priorities 0..9, lower first.
NOTIFICATION_PRIORITY: dict[NotificationType, int] = {
    NotificationType.PURCHASE: 1,
    NotificationType.INCOME_CREDITED: 1,
    NotificationType.REFERRAL_PURCHASE: 5,
    NotificationType.REFERRAL_REGISTERED: 9,
}

NOTIFICATION_PREFERENCE_FIELD: dict[NotificationType, str] = {
    NotificationType.PURCHASE: "purchase_enabled",
    NotificationType.REFERRAL_REGISTERED: "referral_registered_enabled",
    NotificationType.REFERRAL_PURCHASE: "referral_purchase_enabled",
    NotificationType.INCOME_CREDITED: "income_credited_enabled",
}

PREFERENCE_FIELDS: tuple[str, ...] = tuple(NOTIFICATION_PREFERENCE_FIELD.values())


def parse_notification_type(value: str | NotificationType) -> NotificationType | None:
    """Return the enum member for ``value`` or None when it is not a known type."""
    if isinstance(value, NotificationType):
        return value
    try:
        return NotificationType(str(value).strip().lower())
    except ValueError:
        return None
