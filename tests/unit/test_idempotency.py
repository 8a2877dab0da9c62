"""Unit tests for reconciliation markers."""

from unittest.mock import AsyncMock, patch

import pytest
from libs.common.config import StripeEnvironment
from services.payments_service.models import (
    ActionType,
    ReconciliationMarker,
    StudentActionLog,
)
from services.payments_service.services.events import PaymentEvent
from services.payments_service.services.idempotency import (
    ClaimResult,
    claim_session,
    is_session_processed,
)
from sqlalchemy import func, select
from tests.factories import checkout_session

TEST_ENV = StripeEnvironment("test", "sk_test", "whsec_test")


def _event(session_id: str = "cs_test_1") -> PaymentEvent:
    return PaymentEvent.from_session(
        event_id="evt_1",
        event_type="checkout.session.completed",
        session=checkout_session(user_id="user-1", session_id=session_id),
    )


async def _marker_count(db, session_id: str) -> int:
    result = await db.execute(
        select(func.count())
        .select_from(ReconciliationMarker)
        .where(ReconciliationMarker.session_id == session_id)
    )
    return result.scalar_one()


@pytest.mark.asyncio
@pytest.mark.unit
async def test_first_claim_wins(db_session):
    result = await claim_session(db_session, _event(), TEST_ENV)
    await db_session.commit()

    assert result is ClaimResult.CLAIMED
    marker = (
        await db_session.execute(select(ReconciliationMarker))
    ).scalar_one()
    assert marker.action_type is ActionType.CHECKOUT_SESSION_PROCESSED
    assert marker.stripe_environment == "test"
    assert marker.marker_metadata["session_id"] == "cs_test_1"


@pytest.mark.asyncio
@pytest.mark.unit
async def test_second_claim_is_duplicate(db_session):
    await claim_session(db_session, _event(), TEST_ENV)
    await db_session.commit()

    result = await claim_session(db_session, _event(), TEST_ENV)

    assert result is ClaimResult.DUPLICATE
    assert await _marker_count(db_session, "cs_test_1") == 1


@pytest.mark.asyncio
@pytest.mark.unit
async def test_race_loser_hits_unique_constraint(db_session):
    """A claim that passes the read check still loses on the unique insert."""
    await claim_session(db_session, _event(), TEST_ENV)
    await db_session.commit()

    with patch(
        "services.payments_service.services.idempotency._find_marker",
        AsyncMock(return_value=None),
    ):
        result = await claim_session(db_session, _event(), TEST_ENV)

    assert result is ClaimResult.DUPLICATE
    assert await _marker_count(db_session, "cs_test_1") == 1


@pytest.mark.asyncio
@pytest.mark.unit
async def test_uncommitted_claim_leaves_no_marker(db_session):
    """The marker only becomes durable with the ledger transaction."""
    await claim_session(db_session, _event(), TEST_ENV)
    await db_session.rollback()

    assert await _marker_count(db_session, "cs_test_1") == 0


@pytest.mark.asyncio
@pytest.mark.unit
async def test_session_processed_via_marker(db_session):
    assert not await is_session_processed(db_session, "cs_test_1")

    await claim_session(db_session, _event(), TEST_ENV)
    await db_session.commit()

    assert await is_session_processed(db_session, "cs_test_1")


@pytest.mark.asyncio
@pytest.mark.unit
async def test_session_processed_via_fee_payment_log(db_session):
    db_session.add(
        StudentActionLog(
            student_id="user-1",
            action_type=ActionType.FEE_PAYMENT,
            action_description="paid",
            session_id="cs_legacy",
        )
    )
    db_session.add(
        StudentActionLog(
            student_id="user-1",
            action_type=ActionType.PAYMENT_FAILED,
            action_description="failed",
            session_id="cs_failed",
        )
    )
    await db_session.commit()

    assert await is_session_processed(db_session, "cs_legacy")
    assert not await is_session_processed(db_session, "cs_failed")
