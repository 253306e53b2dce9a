"""Notification preferences, history, stats and health endpoints."""

from __future__ import annotations

from dataclasses import asdict
from typing import Literal

from fastapi import APIRouter, Depends, Query, status
from fastapi.responses import JSONResponse

from tgnotify.api.schemas.notifications import (
    NotificationHealthResponse,
    NotificationHistoryResponse,
    NotificationItem,
    NotificationPreferencesResponse,
    NotificationPreferencesUpdateRequest,
    NotificationStatsResponse,
    Pagination,
    StatsBucketItem,
)
from tgnotify.dependencies import get_notification_service, get_queue, get_store
from tgnotify.services.notification_service import NotificationService
from tgnotify.services.notification_store import NotificationStore
from tgnotify.services.notification_types import NotificationStatus, NotificationType
from tgnotify.util.logger import logger
from tgnotify.workers.delivery_queue import CeleryDeliveryQueue

router = APIRouter(prefix="/notifications", tags=["notifications"])


@router.get("/preferences", response_model=NotificationPreferencesResponse)
async def get_notification_preferences(
    user_id: str = Query(min_length=1, max_length=64),
    store: NotificationStore = Depends(get_store),
) -> NotificationPreferencesResponse:
    view = await store.get_preferences(user_id)
    return NotificationPreferencesResponse(**asdict(view))


@router.put("/preferences", response_model=NotificationPreferencesResponse)
async def update_notification_preferences(
    payload: NotificationPreferencesUpdateRequest,
    store: NotificationStore = Depends(get_store),
) -> NotificationPreferencesResponse:
    updates = payload.model_dump(exclude_none=True, exclude={"user_id"})
    view = await store.update_preferences(payload.user_id, updates)
    logger.info("Notification preferences updated user_id=%s fields=%s", payload.user_id, sorted(updates))
    return NotificationPreferencesResponse(**asdict(view))


@router.get("/history", response_model=NotificationHistoryResponse)
async def get_notification_history(
    user_id: str = Query(min_length=1, max_length=64),
    limit: int = Query(default=20, ge=1, le=100),
    offset: int = Query(default=0, ge=0),
    type: NotificationType | None = Query(default=None),  # noqa: A002
    status_filter: NotificationStatus | None = Query(default=None, alias="status"),
    store: NotificationStore = Depends(get_store),
) -> NotificationHistoryResponse:
    rows = await store.history(
        user_id,
        limit=limit,
        offset=offset,
        notification_type=type,
        status=status_filter,
    )
    return NotificationHistoryResponse(
        history=[NotificationItem.model_validate(row) for row in rows],
        pagination=Pagination(limit=limit, offset=offset, count=len(rows)),
    )


@router.get("/stats", response_model=NotificationStatsResponse)
async def get_notification_stats(
    user_id: str = Query(min_length=1, max_length=64),
    period: Literal["day", "week", "month"] = Query(default="month"),
    store: NotificationStore = Depends(get_store),
) -> NotificationStatsResponse:
    stats = await store.stats(user_id, period=period)
    return NotificationStatsResponse(
        period=period,
        total=stats.total,
        by_type=stats.by_type,
        by_status=stats.by_status,
        breakdown=[StatsBucketItem(**asdict(bucket)) for bucket in stats.breakdown],
        avg_delivery_seconds=stats.avg_delivery_seconds,
    )


@router.get("/health", response_model=NotificationHealthResponse)
async def notifications_health(
    store: NotificationStore = Depends(get_store),
    queue: CeleryDeliveryQueue | None = Depends(get_queue),
    service: NotificationService | None = Depends(get_notification_service),
) -> JSONResponse:
    try:
        store_ok = await store.ping()
    except Exception as exc:  # noqa: BLE001
        logger.warning("[notifications-health] store ping failed error=%s", type(exc).__name__)
        store_ok = False

    queue_stats = None
    limiter_stats = None
    if queue is not None:
        try:
            queue_stats = await queue.stats()
            limiter_stats = await queue.limiter_stats()
        except Exception as exc:  # noqa: BLE001
            logger.warning("[notifications-health] queue stats failed error=%s", type(exc).__name__)

    enabled = bool(service is not None and service.enabled)
    if not store_ok:
        state = "down"
    elif queue_stats is None or not enabled:
        state = "degraded"
    else:
        state = "healthy"

    body = NotificationHealthResponse(
        status=state,
        enabled=enabled,
        store=store_ok,
        queue=queue_stats,
        limiter=limiter_stats,
    )
    status_code = status.HTTP_200_OK if store_ok else status.HTTP_503_SERVICE_UNAVAILABLE
    return JSONResponse(status_code=status_code, content=body.model_dump(mode="json"))
