"""Delivery job payload shared by the producer, the queue and the worker."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Protocol

JOB_KEY_PREFIX = "notification-"


def job_key_for(notification_id: int) -> str:
    return f"{JOB_KEY_PREFIX}{int(notification_id)}"


@dataclass(frozen=True, slots=True)
class DeliveryJob:
    notification_id: int
    user_id: str
    type: str
    attempt: int = 1

    @property
    def job_key(self) -> str:
        return job_key_for(self.notification_id)

    def to_payload(self) -> dict[str, Any]:
        return {
            "notification_id": int(self.notification_id),
            "user_id": str(self.user_id),
            "type": str(self.type),
        }

    @classmethod
    def from_payload(cls, payload: dict[str, Any], *, attempt: int = 1) -> DeliveryJob:
        return cls(
            notification_id=int(payload["notification_id"]),
            user_id=str(payload["user_id"]),
            type=str(payload["type"]),
            attempt=max(1, int(attempt)),
        )


@dataclass(frozen=True, slots=True)
class DeliveryOptions:
    priority: int
    max_attempts: int = 3
    backoff_seconds: float = 60.0


class DeliveryQueue(Protocol):
    async def ping(self) -> bool: ...

    async def enqueue(self, job: DeliveryJob, options: DeliveryOptions) -> str | None: ...

    async def close(self) -> None: ...
