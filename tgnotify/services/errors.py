"""Exceptions raised inside the notification pipeline."""

from __future__ import annotations


class NotificationError(Exception):
    """Base class for notification pipeline errors."""


class TemplateNotFoundError(NotificationError):
    """No template is registered for the notification type."""

    def __init__(self, notification_type: str) -> None:
        super().__init__(f"Template not found for type: {notification_type}")
        self.notification_type = notification_type


class TransportError(NotificationError):
    """Structured failure reported by the Telegram transport.

    ``code`` is the Bot API ``error_code`` (403, 400, 429, ...) or None for
    network-level failures.
    """

    def __init__(
        self,
        description: str,
        *,
        code: int | None = None,
        retry_after: float | None = None,
    ) -> None:
        super().__init__(description)
        self.description = description
        self.code = code
        self.retry_after = retry_after

    def __str__(self) -> str:
        if self.code is None:
            return self.description
        return f"{self.code}: {self.description}"


class RetryableDeliveryError(NotificationError):
    """Raised by the worker to hand a job back to the queue's retry policy."""

    def __init__(
        self,
        message: str,
        *,
        retry_after: float | None = None,
        throttled: bool = False,
    ) -> None:
        super().__init__(message)
        self.retry_after = retry_after
        self.throttled = throttled


class QueueUnavailableError(NotificationError):
    """The delivery queue broker cannot be reached."""
