"""Fee-type dispatcher and the four fee lifecycles.

Each handler applies its ledger transition inside the caller's transaction
and reports whether the fee flipped from unpaid to paid. Updates are plain
overwrites, so replaying a handler leaves the same state behind.
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Awaitable, Callable, Optional

from libs.common.logging import get_logger
from services.payments_service.models import (
    ApplicationStatus,
    FeeType,
    PaymentMethod,
    ScholarshipApplication,
    ScholarshipFeePayment,
    StudentProfile,
)
from services.payments_service.services.events import PaymentEvent
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

logger = get_logger(__name__)


class LedgerWriteError(Exception):
    """The store rejected the ledger mutation for a session."""

    def __init__(self, session_id: str, message: str):
        self.session_id = session_id
        super().__init__(f"Ledger write failed for session {session_id}: {message}")


@dataclass
class FeeContext:
    event: PaymentEvent
    user_id: str
    fee_type: FeeType
    payment_method: PaymentMethod
    paid_at: datetime


@dataclass
class FeeOutcome:
    """What a fee lifecycle changed, for the side effects that follow."""

    fee_type: FeeType
    newly_paid: bool
    profile: Optional[StudentProfile] = None
    applications: list[ScholarshipApplication] = field(default_factory=list)

    @property
    def application(self) -> Optional[ScholarshipApplication]:
        return self.applications[0] if self.applications else None


# ---------------------------------------------------------------------------
# Lookups
# ---------------------------------------------------------------------------


async def get_profile(db: AsyncSession, user_id: str) -> Optional[StudentProfile]:
    result = await db.execute(
        select(StudentProfile).where(StudentProfile.user_id == user_id)
    )
    return result.scalar_one_or_none()


async def get_application(
    db: AsyncSession, application_id: Optional[uuid.UUID], user_id: str
) -> Optional[ScholarshipApplication]:
    if application_id is None:
        return None
    result = await db.execute(
        select(ScholarshipApplication).where(
            ScholarshipApplication.id == application_id,
            ScholarshipApplication.student_id == user_id,
        )
    )
    application = result.scalar_one_or_none()
    if application is None:
        logger.warning(
            "Application %s not found for student %s", application_id, user_id
        )
    return application


def _missing_profile(ctx: FeeContext) -> None:
    logger.warning(
        "No student profile for user %s, profile flags not updated",
        ctx.user_id,
        extra={"extra_fields": ctx.event.log_fields},
    )


# ---------------------------------------------------------------------------
# Lifecycles
# ---------------------------------------------------------------------------


async def handle_selection_process(db: AsyncSession, ctx: FeeContext) -> FeeOutcome:
    """Gating fee. Its false -> true flip is what entitles the referrer to coins."""
    profile = await get_profile(db, ctx.user_id)
    if profile is None:
        _missing_profile(ctx)
        return FeeOutcome(fee_type=ctx.fee_type, newly_paid=False)

    newly_paid = not profile.has_paid_selection_process_fee
    profile.has_paid_selection_process_fee = True
    profile.selection_process_fee_payment_method = ctx.payment_method.value
    profile.selection_process_fee_paid_at = (
        profile.selection_process_fee_paid_at or ctx.paid_at
    )
    return FeeOutcome(fee_type=ctx.fee_type, newly_paid=newly_paid, profile=profile)


async def handle_application_fee(db: AsyncSession, ctx: FeeContext) -> FeeOutcome:
    profile = await get_profile(db, ctx.user_id)
    application = await get_application(db, ctx.event.application_id, ctx.user_id)

    if application is not None:
        newly_paid = not application.is_application_fee_paid
        application.is_application_fee_paid = True
        application.application_fee_payment_method = ctx.payment_method.value
        application.payment_status = "paid"
        application.paid_at = application.paid_at or ctx.paid_at
        # An approved or enrolled application stays where it is.
        if not application.status.is_settled:
            application.status = ApplicationStatus.UNDER_REVIEW
        else:
            logger.info(
                "Application %s already %s, status kept",
                application.id,
                application.status.value,
            )
    else:
        newly_paid = profile is not None and not profile.is_application_fee_paid

    if profile is not None:
        profile.is_application_fee_paid = True
        profile.application_fee_payment_method = ctx.payment_method.value
        profile.application_fee_paid_at = profile.application_fee_paid_at or ctx.paid_at
    else:
        _missing_profile(ctx)

    return FeeOutcome(
        fee_type=ctx.fee_type,
        newly_paid=newly_paid,
        profile=profile,
        applications=[application] if application else [],
    )


async def handle_scholarship_fee(db: AsyncSession, ctx: FeeContext) -> FeeOutcome:
    """Marks every application covered by the checkout's scholarship list."""
    profile = await get_profile(db, ctx.user_id)
    scholarship_ids = ctx.event.scholarship_ids

    applications: list[ScholarshipApplication] = []
    if scholarship_ids:
        result = await db.execute(
            select(ScholarshipApplication).where(
                ScholarshipApplication.student_id == ctx.user_id,
                ScholarshipApplication.scholarship_id.in_(scholarship_ids),
            )
        )
        applications = list(result.scalars().all())
    else:
        application = await get_application(db, ctx.event.application_id, ctx.user_id)
        if application is not None:
            applications = [application]

    if not applications:
        logger.warning(
            "No applications matched scholarship fee for user %s",
            ctx.user_id,
            extra={"extra_fields": ctx.event.log_fields},
        )

    newly_paid = any(not app.is_scholarship_fee_paid for app in applications)
    for app in applications:
        app.is_scholarship_fee_paid = True
        app.scholarship_fee_payment_method = ctx.payment_method.value

    if profile is not None:
        newly_paid = newly_paid or not profile.is_scholarship_fee_paid
        profile.is_scholarship_fee_paid = True
        profile.scholarship_fee_payment_method = ctx.payment_method.value
        profile.scholarship_fee_paid_at = profile.scholarship_fee_paid_at or ctx.paid_at
    else:
        _missing_profile(ctx)

    existing = await db.execute(
        select(ScholarshipFeePayment.id).where(
            ScholarshipFeePayment.session_id == ctx.event.session_id
        )
    )
    if existing.scalar_one_or_none() is None:
        db.add(
            ScholarshipFeePayment(
                user_id=ctx.user_id,
                scholarships_ids=[str(sid) for sid in scholarship_ids],
                payment_intent_id=ctx.event.payment_intent_id,
                session_id=ctx.event.session_id,
            )
        )

    return FeeOutcome(
        fee_type=ctx.fee_type,
        newly_paid=newly_paid,
        profile=profile,
        applications=applications,
    )


async def handle_i20_control_fee(db: AsyncSession, ctx: FeeContext) -> FeeOutcome:
    """Final-stage fee, flagged on both the profile and the application."""
    profile = await get_profile(db, ctx.user_id)
    application = await get_application(db, ctx.event.application_id, ctx.user_id)

    newly_paid = False
    if profile is not None:
        newly_paid = not profile.has_paid_i20_control_fee
        profile.has_paid_i20_control_fee = True
        profile.i20_control_fee_payment_method = ctx.payment_method.value
        profile.i20_control_fee_paid_at = profile.i20_control_fee_paid_at or ctx.paid_at
    else:
        _missing_profile(ctx)

    if application is not None:
        newly_paid = newly_paid or not application.is_i20_control_fee_paid
        application.is_i20_control_fee_paid = True
        application.i20_control_fee_payment_method = ctx.payment_method.value

    return FeeOutcome(
        fee_type=ctx.fee_type,
        newly_paid=newly_paid,
        profile=profile,
        applications=[application] if application else [],
    )


FeeHandler = Callable[[AsyncSession, FeeContext], Awaitable[FeeOutcome]]

FEE_HANDLERS: dict[FeeType, FeeHandler] = {
    FeeType.SELECTION_PROCESS: handle_selection_process,
    FeeType.APPLICATION: handle_application_fee,
    FeeType.SCHOLARSHIP: handle_scholarship_fee,
    FeeType.I20_CONTROL: handle_i20_control_fee,
}

# Adding a FeeType without a lifecycle fails at import.
_unhandled = set(FeeType) - set(FEE_HANDLERS)
if _unhandled:
    raise RuntimeError(f"Fee types without a handler: {sorted(_unhandled)}")


async def dispatch_fee(db: AsyncSession, ctx: FeeContext) -> FeeOutcome:
    handler = FEE_HANDLERS[ctx.fee_type]
    outcome = await handler(db, ctx)
    logger.info(
        "Applied %s for user %s (newly_paid=%s)",
        ctx.fee_type.value,
        ctx.user_id,
        outcome.newly_paid,
        extra={"extra_fields": ctx.event.log_fields},
    )
    return outcome
