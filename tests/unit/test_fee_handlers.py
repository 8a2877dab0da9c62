"""Unit tests for the four fee lifecycles."""

import uuid

import pytest
from libs.common.datetime_utils import utc_now
from services.payments_service.models import (
    ApplicationStatus,
    FeeType,
    PaymentMethod,
    ScholarshipFeePayment,
)
from services.payments_service.services.events import PaymentEvent
from services.payments_service.services.fee_handlers import (
    FEE_HANDLERS,
    FeeContext,
    dispatch_fee,
)
from sqlalchemy import select
from tests.factories import ApplicationFactory, StudentProfileFactory, checkout_session


def _ctx(user_id: str, fee_type: FeeType, method=PaymentMethod.STRIPE, **metadata) -> FeeContext:
    event = PaymentEvent.from_session(
        event_id="evt_1",
        event_type="checkout.session.completed",
        session=checkout_session(user_id=user_id, fee_type=fee_type.value, **metadata),
    )
    return FeeContext(
        event=event,
        user_id=user_id,
        fee_type=fee_type,
        payment_method=method,
        paid_at=utc_now(),
    )


@pytest.mark.unit
def test_every_fee_type_has_a_handler():
    assert set(FEE_HANDLERS) == set(FeeType)


# ---------------------------------------------------------------------------
# selection process
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
@pytest.mark.unit
async def test_selection_process_flips_once(db_session):
    profile = StudentProfileFactory.create()
    db_session.add(profile)
    await db_session.commit()

    first = await dispatch_fee(db_session, _ctx(profile.user_id, FeeType.SELECTION_PROCESS))
    await db_session.commit()
    second = await dispatch_fee(
        db_session, _ctx(profile.user_id, FeeType.SELECTION_PROCESS, PaymentMethod.PIX)
    )

    assert first.newly_paid is True
    assert second.newly_paid is False
    assert profile.has_paid_selection_process_fee is True
    assert profile.selection_process_fee_payment_method == "pix"
    assert profile.selection_process_fee_paid_at is not None


@pytest.mark.asyncio
@pytest.mark.unit
async def test_missing_profile_is_not_newly_paid(db_session):
    outcome = await dispatch_fee(db_session, _ctx("user-ghost", FeeType.SELECTION_PROCESS))

    assert outcome.newly_paid is False
    assert outcome.profile is None


# ---------------------------------------------------------------------------
# application fee
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
@pytest.mark.unit
async def test_application_fee_moves_submitted_to_under_review(db_session):
    profile = StudentProfileFactory.create()
    application = ApplicationFactory.create(student_id=profile.user_id)
    db_session.add_all([profile, application])
    await db_session.commit()

    outcome = await dispatch_fee(
        db_session,
        _ctx(profile.user_id, FeeType.APPLICATION, application_id=application.id),
    )

    assert outcome.newly_paid is True
    assert outcome.application is application
    assert application.status is ApplicationStatus.UNDER_REVIEW
    assert application.is_application_fee_paid is True
    assert application.payment_status == "paid"
    assert profile.is_application_fee_paid is True


@pytest.mark.asyncio
@pytest.mark.unit
@pytest.mark.parametrize("status", [ApplicationStatus.APPROVED, ApplicationStatus.ENROLLED])
async def test_application_fee_never_downgrades_settled_status(db_session, status):
    profile = StudentProfileFactory.create()
    application = ApplicationFactory.create(student_id=profile.user_id, status=status)
    db_session.add_all([profile, application])
    await db_session.commit()

    await dispatch_fee(
        db_session,
        _ctx(profile.user_id, FeeType.APPLICATION, application_id=application.id),
    )

    assert application.status is status
    assert application.is_application_fee_paid is True


@pytest.mark.asyncio
@pytest.mark.unit
async def test_application_of_another_student_is_untouched(db_session):
    profile = StudentProfileFactory.create()
    foreign = ApplicationFactory.create()
    db_session.add_all([profile, foreign])
    await db_session.commit()

    outcome = await dispatch_fee(
        db_session,
        _ctx(profile.user_id, FeeType.APPLICATION, application_id=foreign.id),
    )

    assert outcome.application is None
    assert foreign.is_application_fee_paid is False
    assert profile.is_application_fee_paid is True


# ---------------------------------------------------------------------------
# scholarship fee
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
@pytest.mark.unit
async def test_scholarship_fee_marks_every_listed_application(db_session):
    profile = StudentProfileFactory.create()
    s1, s2, s3 = uuid.uuid4(), uuid.uuid4(), uuid.uuid4()
    apps = [
        ApplicationFactory.create(student_id=profile.user_id, scholarship_id=sid)
        for sid in (s1, s2, s3)
    ]
    db_session.add(profile)
    db_session.add_all(apps)
    await db_session.commit()

    ctx = _ctx(profile.user_id, FeeType.SCHOLARSHIP, scholarships_ids=f"{s1},{s2}")
    outcome = await dispatch_fee(db_session, ctx)
    await db_session.commit()

    assert outcome.newly_paid is True
    assert {a.scholarship_id for a in outcome.applications} == {s1, s2}
    assert [a.is_scholarship_fee_paid for a in apps] == [True, True, False]
    assert profile.is_scholarship_fee_paid is True

    record = (await db_session.execute(select(ScholarshipFeePayment))).scalar_one()
    assert record.session_id == ctx.event.session_id
    assert set(record.scholarships_ids) == {str(s1), str(s2)}


@pytest.mark.asyncio
@pytest.mark.unit
async def test_scholarship_fee_replay_adds_no_second_record(db_session):
    profile = StudentProfileFactory.create()
    db_session.add(profile)
    await db_session.commit()
    ctx = _ctx(profile.user_id, FeeType.SCHOLARSHIP, scholarships_ids=str(uuid.uuid4()))

    await dispatch_fee(db_session, ctx)
    await db_session.commit()
    replay = await dispatch_fee(db_session, ctx)
    await db_session.commit()

    assert replay.newly_paid is False
    rows = (await db_session.execute(select(ScholarshipFeePayment))).scalars().all()
    assert len(rows) == 1


# ---------------------------------------------------------------------------
# i20 control fee
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
@pytest.mark.unit
async def test_i20_fee_marks_profile_and_application(db_session):
    profile = StudentProfileFactory.create()
    application = ApplicationFactory.create(
        student_id=profile.user_id, status=ApplicationStatus.ENROLLED
    )
    db_session.add_all([profile, application])
    await db_session.commit()

    outcome = await dispatch_fee(
        db_session,
        _ctx(profile.user_id, FeeType.I20_CONTROL, PaymentMethod.PIX, application_id=application.id),
    )

    assert outcome.newly_paid is True
    assert profile.has_paid_i20_control_fee is True
    assert profile.i20_control_fee_payment_method == "pix"
    assert application.is_i20_control_fee_paid is True
    assert application.i20_control_fee_payment_method == "pix"
    assert application.status is ApplicationStatus.ENROLLED
