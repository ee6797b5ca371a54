"""API endpoints module."""

from fastapi import APIRouter

from syncengine.api.integrations import router as integrations_router
from syncengine.api.sync import router as sync_router
from syncengine.api.webhooks import router as webhooks_router

api_router = APIRouter(prefix="/api")

api_router.include_router(integrations_router)
api_router.include_router(sync_router)
api_router.include_router(webhooks_router)

__all__ = ["api_router"]
