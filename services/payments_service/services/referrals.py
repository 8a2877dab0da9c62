"""Referral rewards and affiliate commissions for referred students."""

from typing import Optional

from libs.common.datetime_utils import utc_now
from libs.common.logging import get_logger
from services.payments_service.models import (
    AffiliateReferral,
    ReferralStatus,
    RewardAccount,
    RewardTransaction,
    RewardTransactionType,
    UsedReferralCode,
)
from services.payments_service.services.events import PaymentEvent
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

logger = get_logger(__name__)


async def find_referral(
    db: AsyncSession, referred_user_id: str
) -> Optional[UsedReferralCode]:
    """Most recent referral code the student applied, if any."""
    result = await db.execute(
        select(UsedReferralCode)
        .where(UsedReferralCode.user_id == referred_user_id)
        .order_by(UsedReferralCode.applied_at.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()


async def get_or_create_reward_account(db: AsyncSession, user_id: str) -> RewardAccount:
    """Return the account row locked for update, creating it if needed."""
    locked = (
        select(RewardAccount).where(RewardAccount.user_id == user_id).with_for_update()
    )
    account = (await db.execute(locked)).scalar_one_or_none()
    if account:
        return account

    db.add(RewardAccount(user_id=user_id, balance=0, lifetime_earned=0))
    try:
        await db.flush()
    except IntegrityError:
        # Created concurrently by another delivery
        await db.rollback()
    return (await db.execute(locked)).scalar_one()


async def credit_referral_reward(
    db: AsyncSession,
    *,
    referred_user_id: str,
    coins: int,
    session_id: str,
) -> Optional[RewardTransaction]:
    """Credit the referrer of ``referred_user_id`` once per referred student.

    The balance is incremented in a single UPDATE so concurrent credits for
    the same referrer never overwrite each other.

    Returns the new transaction, or None when the student was not referred or
    the reward was already credited.
    """
    referral = await find_referral(db, referred_user_id)
    if referral is None:
        return None
    referrer_id = referral.referrer_id
    if referrer_id == referred_user_id:
        logger.warning("Ignoring self-referral for user %s", referred_user_id)
        return None

    idempotency_key = f"referral-reward-{referred_user_id}"
    existing = await db.execute(
        select(RewardTransaction).where(
            RewardTransaction.idempotency_key == idempotency_key
        )
    )
    if existing.scalar_one_or_none():
        logger.info("Referral reward already credited for %s", referred_user_id)
        return None

    account = await get_or_create_reward_account(db, referrer_id)
    result = await db.execute(
        update(RewardAccount)
        .where(RewardAccount.id == account.id)
        .values(
            balance=RewardAccount.balance + coins,
            lifetime_earned=RewardAccount.lifetime_earned + coins,
            updated_at=utc_now(),
        )
        .returning(RewardAccount.balance)
        .execution_options(synchronize_session="fetch")
    )
    balance_after = result.scalar_one()

    txn = RewardTransaction(
        account_id=account.id,
        idempotency_key=idempotency_key,
        transaction_type=RewardTransactionType.REFERRAL_REWARD,
        amount=coins,
        balance_before=balance_after - coins,
        balance_after=balance_after,
        description=f"Referral reward for {referred_user_id} ({coins} coins)",
        reference_type="checkout_session",
        reference_id=session_id,
    )
    db.add(txn)

    await db.commit()
    logger.info(
        "Credited %d coins to referrer %s for referred user %s (balance %d)",
        coins,
        referrer_id,
        referred_user_id,
        balance_after,
    )
    return txn


async def upsert_referral_commission(
    db: AsyncSession,
    event: PaymentEvent,
    *,
    referred_user_id: str,
) -> Optional[AffiliateReferral]:
    """Record the commission for a referred student's scholarship fee.

    The row is keyed on the referred student. Its amount is the pre-markup
    ``base_amount`` from checkout metadata when present, else the charged total.
    """
    referral = await find_referral(db, referred_user_id)
    if referral is None:
        return None

    amount = event.base_amount
    if amount is None:
        amount = event.amount_total or 0

    result = await db.execute(
        select(AffiliateReferral).where(
            AffiliateReferral.referred_id == referred_user_id
        )
    )
    commission = result.scalar_one_or_none()
    if commission is None:
        commission = AffiliateReferral(
            referrer_id=referral.referrer_id,
            referred_id=referred_user_id,
            affiliate_code=referral.affiliate_code,
        )
        db.add(commission)

    commission.payment_amount = amount
    commission.status = ReferralStatus.COMPLETED
    commission.payment_session_id = event.session_id
    commission.completed_at = utc_now()

    await db.commit()
    logger.info(
        "Commission for referred user %s recorded (referrer=%s amount=%d)",
        referred_user_id,
        referral.referrer_id,
        amount,
    )
    return commission
