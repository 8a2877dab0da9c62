"""Routers package."""

from services.payments_service.routers.webhooks import router as webhooks_router

__all__ = [
    "webhooks_router",
]
