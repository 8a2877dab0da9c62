"""Reconciliation markers: at-most-once processing per checkout session.

The marker is inserted in the same transaction as the ledger mutation, so it
only becomes durable together with that mutation. The unique constraint on
``reconciliation_markers.session_id`` decides races between concurrent
deliveries: the loser's insert fails and it backs out without mutating.
"""

import enum
from typing import Optional

from libs.common.config import StripeEnvironment
from libs.common.logging import get_logger
from services.payments_service.models import (
    ActionType,
    ReconciliationMarker,
    StudentActionLog,
)
from services.payments_service.services.events import PaymentEvent
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

logger = get_logger(__name__)


class ClaimResult(str, enum.Enum):
    CLAIMED = "claimed"
    DUPLICATE = "duplicate"
    # Marker write failed for a reason other than a duplicate; processing
    # continues without one.
    UNMARKED = "unmarked"


async def _find_marker(
    db: AsyncSession, session_id: str
) -> Optional[ReconciliationMarker]:
    result = await db.execute(
        select(ReconciliationMarker).where(
            ReconciliationMarker.session_id == session_id
        )
    )
    return result.scalar_one_or_none()


async def is_session_processed(db: AsyncSession, session_id: str) -> bool:
    """True if the session carries a marker or a ``fee_payment`` audit entry."""
    if await _find_marker(db, session_id) is not None:
        return True
    result = await db.execute(
        select(StudentActionLog.id)
        .where(
            StudentActionLog.session_id == session_id,
            StudentActionLog.action_type == ActionType.FEE_PAYMENT,
        )
        .limit(1)
    )
    return result.scalar_one_or_none() is not None


async def claim_session(
    db: AsyncSession,
    event: PaymentEvent,
    environment: Optional[StripeEnvironment] = None,
) -> ClaimResult:
    """Insert the marker for ``event.session_id`` without committing.

    Must be the first write of the transaction: on a conflict the whole
    transaction is rolled back.
    """
    if await _find_marker(db, event.session_id) is not None:
        logger.info(
            "Session %s already reconciled, skipping",
            event.session_id,
            extra={"extra_fields": event.log_fields},
        )
        return ClaimResult.DUPLICATE

    marker = ReconciliationMarker(
        session_id=event.session_id,
        action_type=ActionType.CHECKOUT_SESSION_PROCESSED,
        event_id=event.event_id,
        event_type=event.event_type,
        stripe_environment=environment.name if environment else None,
        marker_metadata={
            "session_id": event.session_id,
            "payment_intent_id": event.payment_intent_id,
            "fee_type": event.fee_type.value if event.fee_type else None,
            "user_id": event.user_id,
        },
    )
    db.add(marker)
    try:
        await db.flush()
    except IntegrityError:
        await db.rollback()
        logger.info(
            "Lost reconciliation race for session %s",
            event.session_id,
            extra={"extra_fields": event.log_fields},
        )
        return ClaimResult.DUPLICATE
    except SQLAlchemyError:
        await db.rollback()
        logger.exception(
            "Could not write reconciliation marker for session %s, continuing",
            event.session_id,
            extra={"extra_fields": event.log_fields},
        )
        return ClaimResult.UNMARKED

    return ClaimResult.CLAIMED
