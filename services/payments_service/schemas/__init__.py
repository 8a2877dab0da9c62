"""Payments Service schemas package."""

from services.payments_service.schemas.webhooks import (
    StripeEventData,
    StripeEventEnvelope,
    WebhookAck,
)

__all__ = [
    "StripeEventData",
    "StripeEventEnvelope",
    "WebhookAck",
]
