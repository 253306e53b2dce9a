"""Repository over notification records, preferences and recipient flags."""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta
from typing import Any, TypeVar

from sqlalchemy import case, func, select, text, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from tgnotify.models.base import utcnow
from tgnotify.models.notification import Notification
from tgnotify.models.notification_preference import NotificationPreference
from tgnotify.models.notification_recipient import NotificationRecipient
from tgnotify.services.notification_types import (
    NOTIFICATION_PREFERENCE_FIELD,
    PREFERENCE_FIELDS,
    NotificationStatus,
    NotificationType,
)

_ERROR_MESSAGE_MAX_LENGTH = 1000
_HISTORY_MAX_LIMIT = 100

STATS_PERIODS: dict[str, timedelta] = {
    "day": timedelta(days=1),
    "week": timedelta(days=7),
    "month": timedelta(days=30),
}

_UserScopedRow = TypeVar("_UserScopedRow", NotificationPreference, NotificationRecipient)


@dataclass(frozen=True, slots=True)
class NotificationPreferences:
    user_id: str
    purchase_enabled: bool = True
    referral_registered_enabled: bool = True
    referral_purchase_enabled: bool = True
    income_credited_enabled: bool = True

    def is_enabled(self, notification_type: NotificationType) -> bool:
        return bool(getattr(self, NOTIFICATION_PREFERENCE_FIELD[notification_type]))

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True, slots=True)
class StatsBucket:
    type: str
    status: str
    count: int


@dataclass(frozen=True, slots=True)
class NotificationStats:
    period: str
    total: int = 0
    by_type: dict[str, int] = field(default_factory=dict)
    by_status: dict[str, int] = field(default_factory=dict)
    breakdown: list[StatsBucket] = field(default_factory=list)
    avg_delivery_seconds: float | None = None


def _preferences_view(row: NotificationPreference) -> NotificationPreferences:
    return NotificationPreferences(
        user_id=row.user_id,
        purchase_enabled=bool(row.purchase_enabled),
        referral_registered_enabled=bool(row.referral_registered_enabled),
        referral_purchase_enabled=bool(row.referral_purchase_enabled),
        income_credited_enabled=bool(row.income_credited_enabled),
    )


class NotificationStore:
    """Durable reads/writes for the notification pipeline.

    Every call runs in its own session and commits before returning; nothing is
    cached between calls.  Status changes are single ``UPDATE ... RETURNING``
    statements so concurrent retries of the same job cannot lose updates.
    """

    def __init__(self, sessions: async_sessionmaker[AsyncSession]) -> None:
        self._sessions = sessions

    # ------------------------------------------------------------------
    # Notification records
    # ------------------------------------------------------------------
    async def create(
        self,
        *,
        user_id: str,
        notification_type: NotificationType,
        content: Mapping[str, Any],
    ) -> Notification:
        row = Notification(
            user_id=str(user_id),
            type=str(notification_type),
            content=dict(content),
            status=str(NotificationStatus.PENDING),
            retry_count=0,
        )
        async with self._sessions() as session:
            session.add(row)
            await session.commit()
        return row

    async def get(self, notification_id: int) -> Notification | None:
        async with self._sessions() as session:
            return await session.get(Notification, notification_id)

    async def update_status(
        self,
        notification_id: int,
        status: NotificationStatus,
        *,
        sent_at: datetime | None = None,
        transport_message_id: str | None = None,
        error_message: str | None = None,
        retry_count: int | None = None,
        expected_statuses: Iterable[NotificationStatus] | None = None,
    ) -> Notification | None:
        """Apply a partial update; returns None when no row matched.

        ``retry_count`` never moves backwards.  ``expected_statuses`` restricts
        the update to rows currently in one of those statuses.
        """
        values: dict[str, Any] = {"status": str(status), "updated_at": utcnow()}
        if sent_at is not None:
            values["sent_at"] = sent_at
        if transport_message_id is not None:
            values["transport_message_id"] = str(transport_message_id)
        if error_message is not None:
            values["error_message"] = str(error_message)[:_ERROR_MESSAGE_MAX_LENGTH]
        if retry_count is not None:
            new_count = max(0, int(retry_count))
            values["retry_count"] = case(
                (Notification.retry_count < new_count, new_count),
                else_=Notification.retry_count,
            )

        statement = update(Notification).where(Notification.id == notification_id)
        if expected_statuses is not None:
            allowed = [str(item) for item in expected_statuses]
            statement = statement.where(Notification.status.in_(allowed))
        statement = (
            statement.values(**values)
            .returning(Notification)
            .execution_options(synchronize_session=False)
        )

        async with self._sessions() as session:
            row = (await session.scalars(statement)).one_or_none()
            await session.commit()
        return row

    async def history(
        self,
        user_id: str,
        *,
        limit: int = 20,
        offset: int = 0,
        notification_type: str | None = None,
        status: str | None = None,
    ) -> list[Notification]:
        statement = select(Notification).where(Notification.user_id == str(user_id))
        if notification_type:
            statement = statement.where(Notification.type == str(notification_type))
        if status:
            statement = statement.where(Notification.status == str(status))
        statement = (
            statement.order_by(Notification.created_at.desc(), Notification.id.desc())
            .limit(max(1, min(int(limit), _HISTORY_MAX_LIMIT)))
            .offset(max(0, int(offset)))
        )
        async with self._sessions() as session:
            return list((await session.scalars(statement)).all())

    async def stats(self, user_id: str, *, period: str = "month") -> NotificationStats:
        window = STATS_PERIODS.get(period)
        if window is None:
            raise ValueError(f"period must be one of: {', '.join(STATS_PERIODS)}")
        since = utcnow() - window

        counts_statement = (
            select(Notification.type, Notification.status, func.count(Notification.id))
            .where(Notification.user_id == str(user_id), Notification.created_at > since)
            .group_by(Notification.type, Notification.status)
            .order_by(Notification.type, Notification.status)
        )
        latency_statement = select(Notification.created_at, Notification.sent_at).where(
            Notification.user_id == str(user_id),
            Notification.created_at > since,
            Notification.status == str(NotificationStatus.SENT),
            Notification.sent_at.is_not(None),
        )
        async with self._sessions() as session:
            grouped = (await session.execute(counts_statement)).all()
            delivered = (await session.execute(latency_statement)).all()

        by_type: dict[str, int] = {}
        by_status: dict[str, int] = {}
        breakdown: list[StatsBucket] = []
        for notification_type, status, count in grouped:
            count = int(count)
            breakdown.append(StatsBucket(type=notification_type, status=status, count=count))
            by_type[notification_type] = by_type.get(notification_type, 0) + count
            by_status[status] = by_status.get(status, 0) + count

        latencies = [
            max(0.0, (sent_at - created_at).total_seconds()) for created_at, sent_at in delivered
        ]
        return NotificationStats(
            period=period,
            total=sum(by_type.values()),
            by_type=by_type,
            by_status=by_status,
            breakdown=breakdown,
            avg_delivery_seconds=(sum(latencies) / len(latencies)) if latencies else None,
        )

    # ------------------------------------------------------------------
    # Preferences
    # ------------------------------------------------------------------
    async def get_preferences(self, user_id: str) -> NotificationPreferences:
        async with self._sessions() as session:
            row = await session.scalar(
                select(NotificationPreference).where(NotificationPreference.user_id == str(user_id))
            )
        if row is None:
            return NotificationPreferences(user_id=str(user_id))
        return _preferences_view(row)

    async def update_preferences(
        self,
        user_id: str,
        updates: Mapping[str, Any],
    ) -> NotificationPreferences:
        values = {
            key: bool(value)
            for key, value in updates.items()
            if key in PREFERENCE_FIELDS and value is not None
        }
        row = await self._upsert_by_user(
            NotificationPreference,
            str(user_id),
            values,
            defaults={name: True for name in PREFERENCE_FIELDS},
        )
        return _preferences_view(row)

    # ------------------------------------------------------------------
    # Recipient flags
    # ------------------------------------------------------------------
    async def is_blocked(self, user_id: str) -> bool:
        async with self._sessions() as session:
            blocked = await session.scalar(
                select(NotificationRecipient.bot_blocked).where(
                    NotificationRecipient.user_id == str(user_id)
                )
            )
        return bool(blocked)

    async def set_blocked(self, user_id: str, blocked: bool = True) -> None:
        await self._upsert_by_user(
            NotificationRecipient,
            str(user_id),
            {"bot_blocked": bool(blocked), "bot_blocked_at": utcnow() if blocked else None},
            defaults={"bot_blocked": False},
        )

    async def touch_last_notification(self, user_id: str) -> None:
        await self._upsert_by_user(
            NotificationRecipient,
            str(user_id),
            {"last_notification_at": utcnow()},
            defaults={"bot_blocked": False},
        )

    async def ping(self) -> bool:
        async with self._sessions() as session:
            result = await session.execute(text("SELECT 1"))
            return result.scalar() == 1

    async def _upsert_by_user(
        self,
        model: type[_UserScopedRow],
        user_id: str,
        values: Mapping[str, Any],
        *,
        defaults: Mapping[str, Any],
    ) -> _UserScopedRow:
        # A concurrent first write can win the unique(user_id) race; the second
        # pass then finds the row and updates it.
        for attempt in range(2):
            async with self._sessions() as session:
                row = await session.scalar(select(model).where(model.user_id == user_id))
                if row is None:
                    row = model(user_id=user_id, **defaults)
                    session.add(row)
                for key, value in values.items():
                    setattr(row, key, value)
                try:
                    await session.commit()
                except IntegrityError:
                    await session.rollback()
                    if attempt:
                        raise
                    continue
                return row
        raise RuntimeError("Upsert loop exhausted unexpectedly.")
