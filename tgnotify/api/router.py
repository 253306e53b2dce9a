"""Top-level API router registry."""

from __future__ import annotations

from fastapi import APIRouter

from tgnotify.api.routers.notifications import router as notifications_router

api_router = APIRouter()
api_router.include_router(notifications_router)
