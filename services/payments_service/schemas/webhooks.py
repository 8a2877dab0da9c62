from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field


class StripeEventData(BaseModel):
    # "object" is the Stripe field name; alias keeps the builtin unshadowed.
    object_: dict[str, Any] = Field(alias="object")

    model_config = ConfigDict(populate_by_name=True, extra="allow")


class StripeEventEnvelope(BaseModel):
    """Top-level Stripe event as delivered to the webhook."""

    id: str
    type: str
    created: Optional[int] = None
    livemode: bool = False
    data: StripeEventData

    model_config = ConfigDict(extra="allow")


class WebhookAck(BaseModel):
    received: bool = True
    message: Optional[str] = None
    session_id: Optional[str] = None
    outcome: Optional[str] = None
