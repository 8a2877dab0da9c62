"""Normalized financial ledger: one ``individual_fee_payments`` row per session."""

from datetime import datetime
from typing import Optional

from libs.common.currency import to_base_minor
from libs.common.logging import get_logger
from services.payments_service.models import FeePaymentRecord, FeeType, PaymentMethod
from services.payments_service.services.events import PaymentEvent
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

logger = get_logger(__name__)


async def record_fee_payment(
    db: AsyncSession,
    event: PaymentEvent,
    *,
    user_id: str,
    fee_type: FeeType,
    payment_method: PaymentMethod,
    base_currency: str,
    paid_at: datetime,
) -> Optional[FeePaymentRecord]:
    """Add the ledger row for this payment to the current transaction.

    Amounts stay in minor units. A charge in a currency other than
    ``base_currency`` is converted with the session's ``exchange_rate``; with
    no usable rate the row keeps the charged currency as its base.

    Returns None when the session already has a row or carries no amount.
    """
    existing = await db.execute(
        select(FeePaymentRecord).where(FeePaymentRecord.session_id == event.session_id)
    )
    if existing.scalar_one_or_none() is not None:
        logger.info("Ledger row already present for session %s", event.session_id)
        return None

    if event.amount_total is None:
        logger.warning(
            "Session %s has no amount_total, no ledger row recorded",
            event.session_id,
            extra={"extra_fields": event.log_fields},
        )
        return None

    currency = event.currency.lower()
    base_currency = base_currency.lower()
    rate = event.exchange_rate

    if currency == base_currency:
        base_amount, rate = event.amount_total, None
    elif rate is not None:
        base_amount = to_base_minor(event.amount_total, rate)
    else:
        logger.warning(
            "No exchange rate for %s charge on session %s, storing unconverted",
            currency,
            event.session_id,
        )
        base_amount, base_currency = event.amount_total, currency

    record = FeePaymentRecord(
        user_id=user_id,
        fee_type=fee_type,
        amount_minor=event.amount_total,
        currency=currency,
        base_amount_minor=base_amount,
        base_currency=base_currency,
        exchange_rate=rate,
        payment_method=payment_method.value,
        session_id=event.session_id,
        payment_intent_id=event.payment_intent_id,
        application_id=event.application_id,
        payment_date=paid_at,
    )
    db.add(record)
    return record
