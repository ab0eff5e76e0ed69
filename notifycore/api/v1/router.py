"""
Aggregates all v1 API routers into a single APIRouter.
"""
from __future__ import annotations

from fastapi import APIRouter

from notifycore.api.v1 import notifications, websocket

api_router = APIRouter()

api_router.include_router(notifications.router)
api_router.include_router(websocket.router)
