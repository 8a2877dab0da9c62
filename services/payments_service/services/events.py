"""Parsing and classification of inbound Stripe events.

A raw webhook body becomes a ``StripeEventEnvelope``; checkout-session events
(and payment intents resolved back to their session) become a flat
``PaymentEvent`` the reconciler works from.
"""

import enum
import json
import uuid
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Iterable, Optional

from libs.common.currency import parse_exchange_rate
from pydantic import ValidationError
from services.payments_service.models import FeeType, PaymentMethod
from services.payments_service.schemas import StripeEventEnvelope


class InvalidPayloadError(ValueError):
    """The webhook body is not a Stripe event."""


class EventKind(str, enum.Enum):
    CHECKOUT_COMPLETED = "checkout.session.completed"
    ASYNC_PAYMENT_SUCCEEDED = "checkout.session.async_payment_succeeded"
    ASYNC_PAYMENT_FAILED = "checkout.session.async_payment_failed"
    PAYMENT_INTENT_SUCCEEDED = "payment_intent.succeeded"
    UNSUPPORTED = "unsupported"

    @property
    def reconciles(self) -> bool:
        """Kinds whose session goes straight to reconciliation."""
        return self in (EventKind.CHECKOUT_COMPLETED, EventKind.ASYNC_PAYMENT_SUCCEEDED)


def classify(event_type: str) -> EventKind:
    try:
        return EventKind(event_type)
    except ValueError:
        return EventKind.UNSUPPORTED


def parse_envelope(raw_body: bytes) -> StripeEventEnvelope:
    """Decode the body into an event envelope.

    Raises:
        InvalidPayloadError: not JSON, or missing id/type/data.object.
    """
    try:
        payload = json.loads(raw_body.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise InvalidPayloadError("Body is not valid JSON") from exc
    if not isinstance(payload, dict):
        raise InvalidPayloadError("Body is not a JSON object")
    try:
        return StripeEventEnvelope.model_validate(payload)
    except ValidationError as exc:
        raise InvalidPayloadError(f"Not a Stripe event: {exc.error_count()} errors") from exc


def _truthy(value: Optional[str]) -> bool:
    return str(value or "").strip().lower() in ("true", "1", "yes")


def _int_or_none(value: Any) -> Optional[int]:
    if value is None or value == "":
        return None
    try:
        return int(str(value).strip())
    except ValueError:
        return None


def _uuid_or_none(value: Optional[str]) -> Optional[uuid.UUID]:
    if not value:
        return None
    try:
        return uuid.UUID(str(value))
    except ValueError:
        return None


def split_ids(raw: Optional[str]) -> list[str]:
    """Scholarship ids arrive as ``"a,b,c"`` or as a JSON array string."""
    if not raw:
        return []
    text = raw.strip()
    if text.startswith("["):
        try:
            values = json.loads(text)
        except json.JSONDecodeError:
            values = []
        return [str(v).strip() for v in values if str(v).strip()]
    return [part.strip() for part in text.split(",") if part.strip()]


@dataclass
class PaymentEvent:
    """One checkout session's payment, as seen through a Stripe event."""

    event_id: str
    event_type: str
    kind: EventKind
    session_id: str
    payment_intent_id: Optional[str]
    amount_total: Optional[int]  # minor units
    currency: str
    payment_status: Optional[str]
    payment_method_types: list[str] = field(default_factory=list)
    metadata: dict[str, str] = field(default_factory=dict)
    customer_email: Optional[str] = None
    customer_name: Optional[str] = None

    @classmethod
    def from_session(
        cls, *, event_id: str, event_type: str, session: dict[str, Any]
    ) -> "PaymentEvent":
        details = session.get("customer_details") or {}
        payment_intent = session.get("payment_intent")
        if isinstance(payment_intent, dict):
            payment_intent = payment_intent.get("id")
        metadata = {
            str(k): "" if v is None else str(v)
            for k, v in (session.get("metadata") or {}).items()
        }
        return cls(
            event_id=event_id,
            event_type=event_type,
            kind=classify(event_type),
            session_id=session.get("id", ""),
            payment_intent_id=payment_intent,
            amount_total=_int_or_none(session.get("amount_total")),
            currency=(session.get("currency") or "usd").lower(),
            payment_status=session.get("payment_status"),
            payment_method_types=list(session.get("payment_method_types") or []),
            metadata=metadata,
            customer_email=session.get("customer_email") or details.get("email"),
            customer_name=details.get("name"),
        )

    # -- metadata accessors ------------------------------------------------

    @property
    def user_id(self) -> Optional[str]:
        return self.metadata.get("user_id") or self.metadata.get("student_id") or None

    @property
    def fee_type(self) -> Optional[FeeType]:
        return FeeType.parse(
            self.metadata.get("fee_type") or self.metadata.get("payment_type")
        )

    @property
    def application_id(self) -> Optional[uuid.UUID]:
        return _uuid_or_none(self.metadata.get("application_id"))

    @property
    def university_id(self) -> Optional[uuid.UUID]:
        return _uuid_or_none(self.metadata.get("university_id"))

    @property
    def scholarship_ids(self) -> list[uuid.UUID]:
        ids = (_uuid_or_none(v) for v in split_ids(self.metadata.get("scholarships_ids")))
        return [i for i in ids if i is not None]

    @property
    def exchange_rate(self) -> Optional[Decimal]:
        return parse_exchange_rate(self.metadata.get("exchange_rate"))

    @property
    def requires_transfer(self) -> bool:
        return _truthy(self.metadata.get("requires_transfer"))

    @property
    def connect_account_id(self) -> Optional[str]:
        return self.metadata.get("stripe_connect_account_id") or None

    @property
    def transfer_amount(self) -> Optional[int]:
        explicit = _int_or_none(self.metadata.get("transfer_amount"))
        return explicit if explicit is not None else self.amount_total

    @property
    def base_amount(self) -> Optional[int]:
        """Pre-markup amount in minor units, when checkout recorded one."""
        return _int_or_none(self.metadata.get("base_amount"))

    # -- payment method ----------------------------------------------------

    def _matched_async_method(self, async_methods: Iterable[str]) -> Optional[str]:
        methods = {m.lower() for m in async_methods}
        for method in self.payment_method_types:
            if method.lower() in methods:
                return method.lower()
        declared = (self.metadata.get("payment_method") or "").lower()
        return declared if declared in methods else None

    def is_async_method(self, async_methods: Iterable[str]) -> bool:
        return self._matched_async_method(async_methods) is not None

    def payment_method(self, async_methods: Iterable[str]) -> PaymentMethod:
        """Label for the ledger: the async method that matched, else card rails.

        A configured async method with no ``PaymentMethod`` member is labelled
        ``STRIPE``.
        """
        matched = self._matched_async_method(async_methods)
        if matched is None:
            return PaymentMethod.STRIPE
        try:
            return PaymentMethod(matched)
        except ValueError:
            return PaymentMethod.STRIPE

    @property
    def log_fields(self) -> dict[str, Any]:
        return {
            "event_id": self.event_id,
            "event_type": self.event_type,
            "session_id": self.session_id,
            "fee_type": self.fee_type.value if self.fee_type else None,
            "user_id": self.user_id,
        }
