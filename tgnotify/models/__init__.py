"""ORM model exports."""

from tgnotify.models.base import Base
from tgnotify.models.notification import Notification
from tgnotify.models.notification_preference import NotificationPreference
from tgnotify.models.notification_recipient import NotificationRecipient

__all__ = [
    "Base",
    "Notification",
    "NotificationPreference",
    "NotificationRecipient",
]
