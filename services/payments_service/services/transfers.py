"""Stripe Connect transfers of application fees to university accounts.

Every attempt leaves a ``stripe_connect_transfers`` row, succeeded or failed.
Transfers for one session share the Stripe idempotency key
``transfer-{session_id}``, so a retry can never move the funds twice.
"""

import uuid
from typing import Optional

from libs.common.logging import get_logger
from services.payments_service.models import (
    ActionType,
    ConnectTransfer,
    StudentActionLog,
    TransferStatus,
)
from services.payments_service.services.events import PaymentEvent
from services.payments_service.stripe_client import StripeClient, StripeError
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

logger = get_logger(__name__)


def transfer_idempotency_key(session_id: str) -> str:
    return f"transfer-{session_id}"


async def log_platform_balance(client: StripeClient, currency: str) -> None:
    """Diagnostic only: the transfer is attempted whatever the balance says."""
    try:
        balances = await client.retrieve_balance()
    except StripeError as exc:
        logger.warning("Could not read platform balance: %s", exc.message)
        return
    logger.info(
        "Platform balance before transfer (%s): %s %s",
        client.environment_name,
        balances.get(currency.lower(), 0),
        currency,
    )


async def log_destination_account(client: StripeClient, destination: str) -> None:
    """Diagnostic only: log whether the connected account can receive funds."""
    try:
        account = await client.retrieve_account(destination)
    except StripeError as exc:
        logger.warning(
            "Could not read connected account %s: %s", destination, exc.message
        )
        return
    if not account.get("charges_enabled") or not account.get("payouts_enabled"):
        logger.warning(
            "Connected account %s is not fully enabled (charges=%s payouts=%s)",
            destination,
            account.get("charges_enabled"),
            account.get("payouts_enabled"),
        )


async def execute_transfer(
    db: AsyncSession,
    client: StripeClient,
    *,
    session_id: str,
    user_id: str,
    amount: int,
    currency: str,
    destination: str,
    payment_intent_id: Optional[str] = None,
    application_id: Optional[uuid.UUID] = None,
    university_id: Optional[uuid.UUID] = None,
    attempt: int = 1,
) -> ConnectTransfer:
    """Create the transfer and commit its audit row, whatever the outcome."""
    await log_platform_balance(client, currency)
    await log_destination_account(client, destination)

    row = ConnectTransfer(
        session_id=session_id,
        payment_intent_id=payment_intent_id,
        application_id=application_id,
        university_id=university_id,
        user_id=user_id,
        amount=amount,
        currency=currency.lower(),
        destination_account=destination,
        attempt=attempt,
        stripe_environment=client.environment_name,
    )

    try:
        result = await client.create_transfer(
            amount=amount,
            currency=currency.lower(),
            destination=destination,
            description=f"Application fee transfer for session {session_id}",
            metadata={
                "session_id": session_id,
                "user_id": user_id,
                "application_id": str(application_id) if application_id else None,
                "university_id": str(university_id) if university_id else None,
            },
            idempotency_key=transfer_idempotency_key(session_id),
        )
    except StripeError as exc:
        row.status = TransferStatus.FAILED
        row.error_message = exc.message
        db.add(row)
        db.add(
            StudentActionLog(
                student_id=user_id,
                action_type=ActionType.TRANSFER_FAILED,
                action_description=f"Transfer to {destination} failed: {exc.message}",
                session_id=session_id,
                log_metadata={
                    "amount": amount,
                    "currency": currency.lower(),
                    "attempt": attempt,
                    "status_code": exc.status_code,
                },
            )
        )
        await db.commit()
        logger.error(
            "Transfer failed for session %s (attempt %d): %s",
            session_id,
            attempt,
            exc.message,
        )
        return row

    row.status = TransferStatus.SUCCEEDED
    row.transfer_id = result.id
    db.add(row)
    await db.commit()
    logger.info(
        "Transfer %s of %d %s to %s for session %s",
        result.id,
        amount,
        currency,
        destination,
        session_id,
    )
    return row


async def transfer_for_event(
    db: AsyncSession,
    client: StripeClient,
    event: PaymentEvent,
    *,
    user_id: str,
) -> Optional[ConnectTransfer]:
    """Transfer an application fee when its checkout asked for one."""
    destination = event.connect_account_id
    amount = event.transfer_amount
    if not destination or not amount or amount <= 0:
        logger.warning(
            "Transfer requested for session %s without destination or amount",
            event.session_id,
            extra={"extra_fields": event.log_fields},
        )
        return None

    return await execute_transfer(
        db,
        client,
        session_id=event.session_id,
        user_id=user_id,
        amount=amount,
        currency=event.currency,
        destination=destination,
        payment_intent_id=event.payment_intent_id,
        application_id=event.application_id,
        university_id=event.university_id,
    )


async def list_retryable_transfers(
    db: AsyncSession, *, max_attempts: int
) -> list[ConnectTransfer]:
    """Latest failed attempt per session that never succeeded, under the attempt cap."""
    succeeded = select(ConnectTransfer.session_id).where(
        ConnectTransfer.status == TransferStatus.SUCCEEDED
    )
    latest = (
        select(
            ConnectTransfer.session_id,
            func.max(ConnectTransfer.attempt).label("attempt"),
        )
        .group_by(ConnectTransfer.session_id)
        .subquery()
    )
    result = await db.execute(
        select(ConnectTransfer)
        .join(
            latest,
            (ConnectTransfer.session_id == latest.c.session_id)
            & (ConnectTransfer.attempt == latest.c.attempt),
        )
        .where(
            ConnectTransfer.status == TransferStatus.FAILED,
            ConnectTransfer.attempt < max_attempts,
            ConnectTransfer.session_id.not_in(succeeded),
        )
        .order_by(ConnectTransfer.created_at)
    )
    return list(result.scalars().all())


async def retry_transfer(
    db: AsyncSession, client: StripeClient, failed: ConnectTransfer
) -> ConnectTransfer:
    return await execute_transfer(
        db,
        client,
        session_id=failed.session_id,
        user_id=failed.user_id,
        amount=failed.amount,
        currency=failed.currency,
        destination=failed.destination_account,
        payment_intent_id=failed.payment_intent_id,
        application_id=failed.application_id,
        university_id=failed.university_id,
        attempt=failed.attempt + 1,
    )
