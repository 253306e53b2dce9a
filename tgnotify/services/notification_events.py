"""Business events consumed by the notification producer, plus the bus that carries them."""

from __future__ import annotations

from collections import defaultdict
from collections.abc import Awaitable, Callable
from datetime import datetime
from decimal import Decimal
from typing import Any, TypeVar

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

from tgnotify.util.logger import logger


class _EventModel(BaseModel):
    # Publishers may send either camelCase or snake_case keys.
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")


class PaymentInfo(_EventModel):
    id: str
    amount: Decimal
    currency: str | None = None
    product_id: str | None = None
    product_name: str | None = None
    description: str | None = None
    created_at: datetime | None = None


class PurchaseCompletedEvent(_EventModel):
    user_id: str
    payment: PaymentInfo


class RegisteredReferral(_EventModel):
    user_id: str
    username: str | None = None
    first_name: str | None = None
    registered_at: datetime | None = None
    total_referrals: int | None = None


class ReferralRegisteredEvent(_EventModel):
    referrer_id: str
    referral: RegisteredReferral


class ReferralRef(_EventModel):
    user_id: str
    username: str | None = None


class ReferralPurchaseInfo(_EventModel):
    amount: Decimal
    currency: str | None = None
    expected_reward: Decimal | None = None
    reward_percentage: Decimal | None = None
    created_at: datetime | None = None


class ReferralPurchaseEvent(_EventModel):
    referrer_id: str
    referral: ReferralRef
    purchase: ReferralPurchaseInfo


class IncomeInfo(_EventModel):
    amount: Decimal
    currency: str | None = None
    from_referral_id: str | None = None
    from_referral_username: str | None = None
    referral_level: int | None = None
    new_balance: Decimal | None = None
    transaction_id: str | None = None
    credited_at: datetime | None = None


class IncomeCreditedEvent(_EventModel):
    user_id: str
    income: IncomeInfo


EventT = TypeVar("EventT", bound=BaseModel)
EventHandler = Callable[[Any], Awaitable[None]]


class EventBus:
    """In-process async pub/sub keyed by event model class.

    Handlers run in subscription order.  A failing handler is logged and does
    not stop the others or reach the publisher.
    """

    def __init__(self) -> None:
        self._handlers: dict[type[BaseModel], list[EventHandler]] = defaultdict(list)

    def subscribe(
        self,
        event_type: type[EventT],
        handler: Callable[[EventT], Awaitable[None]],
    ) -> Callable[[], None]:
        self._handlers[event_type].append(handler)

        def _unsubscribe() -> None:
            handlers = self._handlers.get(event_type, [])
            if handler in handlers:
                handlers.remove(handler)

        return _unsubscribe

    def handler_count(self, event_type: type[BaseModel]) -> int:
        return len(self._handlers.get(event_type, []))

    async def publish(self, event: BaseModel) -> int:
        """Deliver ``event`` to its subscribers; returns how many handlers succeeded."""
        delivered = 0
        for handler in list(self._handlers.get(type(event), [])):
            try:
                await handler(event)
            except Exception as exc:  # noqa: BLE001
                logger.warning(
                    "[notifications-events] handler failed event=%s error=%s",
                    type(event).__name__,
                    type(exc).__name__,
                )
                continue
            delivered += 1
        return delivered
