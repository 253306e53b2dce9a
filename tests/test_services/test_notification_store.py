from __future__ import annotations

from datetime import timedelta

import pytest

from tgnotify.models.base import utcnow
from tgnotify.services.notification_store import NotificationStore
from tgnotify.services.notification_types import (
    NON_TERMINAL_STATUSES,
    NotificationStatus,
    NotificationType,
)


@pytest.mark.asyncio
async def test_create_persists_pending_record(store: NotificationStore) -> None:
    created = await store.create(
        user_id="100",
        notification_type=NotificationType.PURCHASE,
        content={"amount": "990", "currency": "RUB"},
    )

    loaded = await store.get(created.id)

    assert loaded is not None
    assert loaded.user_id == "100"
    assert loaded.type == "purchase"
    assert loaded.status == "pending"
    assert loaded.retry_count == 0
    assert loaded.content == {"amount": "990", "currency": "RUB"}
    assert loaded.sent_at is None
    assert loaded.transport_message_id is None


@pytest.mark.asyncio
async def test_get_returns_none_for_unknown_id(store: NotificationStore) -> None:
    assert await store.get(424242) is None


@pytest.mark.asyncio
async def test_update_status_sets_only_given_fields(store: NotificationStore) -> None:
    created = await store.create(
        user_id="100",
        notification_type=NotificationType.PURCHASE,
        content={},
    )
    sent_at = utcnow()

    updated = await store.update_status(
        created.id,
        NotificationStatus.SENT,
        sent_at=sent_at,
        transport_message_id="555",
    )

    assert updated is not None
    assert updated.status == "sent"
    assert updated.transport_message_id == "555"
    assert updated.sent_at is not None
    assert updated.error_message is None
    assert updated.retry_count == 0


@pytest.mark.asyncio
async def test_update_status_returns_none_for_missing_record(store: NotificationStore) -> None:
    assert await store.update_status(99999, NotificationStatus.FAILED) is None


@pytest.mark.asyncio
async def test_retry_count_never_moves_backwards(store: NotificationStore) -> None:
    created = await store.create(
        user_id="100",
        notification_type=NotificationType.PURCHASE,
        content={},
    )

    await store.update_status(created.id, NotificationStatus.PENDING, retry_count=2)
    lowered = await store.update_status(created.id, NotificationStatus.PENDING, retry_count=1)

    assert lowered is not None
    assert lowered.retry_count == 2


@pytest.mark.asyncio
async def test_error_message_is_truncated(store: NotificationStore) -> None:
    created = await store.create(
        user_id="100",
        notification_type=NotificationType.PURCHASE,
        content={},
    )

    updated = await store.update_status(
        created.id,
        NotificationStatus.FAILED,
        error_message="x" * 5000,
    )

    assert updated is not None
    assert len(updated.error_message) == 1000


@pytest.mark.asyncio
async def test_expected_statuses_guard_terminal_records(store: NotificationStore) -> None:
    created = await store.create(
        user_id="100",
        notification_type=NotificationType.PURCHASE,
        content={},
    )
    await store.update_status(created.id, NotificationStatus.SENT, transport_message_id="1")

    skipped = await store.update_status(
        created.id,
        NotificationStatus.FAILED,
        error_message="late failure",
        expected_statuses=NON_TERMINAL_STATUSES,
    )
    loaded = await store.get(created.id)

    assert skipped is None
    assert loaded is not None
    assert loaded.status == "sent"
    assert loaded.error_message is None


@pytest.mark.asyncio
async def test_history_is_newest_first_with_filters_and_paging(store: NotificationStore) -> None:
    first = await store.create(
        user_id="7",
        notification_type=NotificationType.PURCHASE,
        content={"n": 1},
    )
    second = await store.create(
        user_id="7",
        notification_type=NotificationType.INCOME_CREDITED,
        content={"n": 2},
    )
    third = await store.create(
        user_id="7",
        notification_type=NotificationType.PURCHASE,
        content={"n": 3},
    )
    await store.create(
        user_id="8",
        notification_type=NotificationType.PURCHASE,
        content={"n": 4},
    )
    await store.update_status(third.id, NotificationStatus.SENT, transport_message_id="9")

    everything = await store.history("7")
    purchases = await store.history("7", notification_type="purchase")
    sent = await store.history("7", status="sent")
    page = await store.history("7", limit=1, offset=1)

    assert [row.id for row in everything] == [third.id, second.id, first.id]
    assert [row.id for row in purchases] == [third.id, first.id]
    assert [row.id for row in sent] == [third.id]
    assert [row.id for row in page] == [second.id]


@pytest.mark.asyncio
async def test_stats_groups_by_type_and_status(store: NotificationStore) -> None:
    sent = await store.create(
        user_id="7",
        notification_type=NotificationType.PURCHASE,
        content={},
    )
    await store.create(user_id="7", notification_type=NotificationType.PURCHASE, content={})
    await store.create(
        user_id="7",
        notification_type=NotificationType.REFERRAL_REGISTERED,
        content={},
    )
    await store.create(user_id="8", notification_type=NotificationType.PURCHASE, content={})
    await store.update_status(
        sent.id,
        NotificationStatus.SENT,
        sent_at=utcnow() + timedelta(seconds=2),
        transport_message_id="1",
    )

    stats = await store.stats("7", period="day")

    assert stats.period == "day"
    assert stats.total == 3
    assert stats.by_type == {"purchase": 2, "referral_registered": 1}
    assert stats.by_status == {"pending": 2, "sent": 1}
    assert {(bucket.type, bucket.status, bucket.count) for bucket in stats.breakdown} == {
        ("purchase", "pending", 1),
        ("purchase", "sent", 1),
        ("referral_registered", "pending", 1),
    }
    assert stats.avg_delivery_seconds is not None
    assert stats.avg_delivery_seconds >= 1.0


@pytest.mark.asyncio
async def test_stats_rejects_unknown_period(store: NotificationStore) -> None:
    with pytest.raises(ValueError):
        await store.stats("7", period="year")


@pytest.mark.asyncio
async def test_preferences_default_to_enabled_and_merge(store: NotificationStore) -> None:
    defaults = await store.get_preferences("55")
    assert defaults.purchase_enabled is True
    assert defaults.income_credited_enabled is True

    first = await store.update_preferences("55", {"purchase_enabled": False})
    second = await store.update_preferences(
        "55",
        {"referral_registered_enabled": False, "purchase_enabled": None, "unknown": False},
    )
    loaded = await store.get_preferences("55")

    assert first.purchase_enabled is False
    assert second.purchase_enabled is False
    assert second.referral_registered_enabled is False
    assert loaded == second
    assert loaded.is_enabled(NotificationType.PURCHASE) is False
    assert loaded.is_enabled(NotificationType.REFERRAL_PURCHASE) is True


@pytest.mark.asyncio
async def test_blocked_flag_round_trip(store: NotificationStore) -> None:
    assert await store.is_blocked("12") is False

    await store.set_blocked("12", True)
    assert await store.is_blocked("12") is True

    await store.set_blocked("12", False)
    assert await store.is_blocked("12") is False


@pytest.mark.asyncio
async def test_touch_last_notification_does_not_block(store: NotificationStore) -> None:
    await store.touch_last_notification("12")
    await store.touch_last_notification("12")

    assert await store.is_blocked("12") is False


@pytest.mark.asyncio
async def test_ping(store: NotificationStore) -> None:
    assert await store.ping() is True
