"""Payment event reconciler: one idempotent state transition per Stripe event.

verify signature -> parse and classify -> confirm payment -> claim session ->
apply fee lifecycle and ledger row (one transaction) -> side effects.

Only authenticity and payload errors are raised to the caller as request
errors. A ledger write failure is raised as ``LedgerWriteError`` after the
transaction (marker included) has been rolled back, so a redelivery can
retry it. Everything after the commit is best effort.
"""

import enum
import uuid
from dataclasses import dataclass, field
from typing import Any, Optional

from libs.common.config import Settings, StripeEnvironment
from libs.common.datetime_utils import utc_now
from libs.common.logging import get_logger
from services.payments_service.models import (
    ActionType,
    FeeType,
    Scholarship,
    StudentActionLog,
    University,
)
from services.payments_service.schemas import StripeEventEnvelope
from services.payments_service.services.applications import (
    clear_cart,
    migrate_profile_documents,
)
from services.payments_service.services.events import (
    EventKind,
    PaymentEvent,
    classify,
    parse_envelope,
)
from services.payments_service.services.fee_handlers import (
    FeeContext,
    FeeOutcome,
    LedgerWriteError,
    dispatch_fee,
)
from services.payments_service.services.financial_ledger import record_fee_payment
from services.payments_service.services.idempotency import (
    ClaimResult,
    claim_session,
    is_session_processed,
)
from services.payments_service.services.notifications import (
    NotificationClient,
    seller_payment_notification,
    student_payment_notification,
    university_payment_notification,
)
from services.payments_service.services.referrals import (
    credit_referral_reward,
    upsert_referral_commission,
)
from services.payments_service.services.side_effects import (
    SideEffect,
    SideEffectResult,
    run_side_effects,
)
from services.payments_service.services.signature import verify_signature
from services.payments_service.services.transfers import transfer_for_event
from services.payments_service.stripe_client import StripeClient, StripeError
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

logger = get_logger(__name__)


class Outcome(str, enum.Enum):
    PROCESSED = "processed"
    DUPLICATE = "duplicate"
    IGNORED = "ignored"
    NOT_PAID = "not_paid"
    NO_SESSION = "no_session"
    PAYMENT_FAILED = "payment_failed"
    INVALID_METADATA = "invalid_metadata"


@dataclass
class ReconcileResult:
    outcome: Outcome
    message: str
    session_id: Optional[str] = None
    environment: Optional[str] = None
    side_effects: list[SideEffectResult] = field(default_factory=list)


class PaymentEventReconciler:
    """Handles verified Stripe events against the student ledger.

    Clients are injected once at process start and shared by every request;
    the database session is per request.
    """

    def __init__(
        self,
        *,
        settings: Settings,
        stripe_clients: dict[str, StripeClient],
        notifier: NotificationClient,
        environments: Optional[list[StripeEnvironment]] = None,
    ):
        self.settings = settings
        self.stripe_clients = stripe_clients
        self.notifier = notifier
        self.environments = (
            environments if environments is not None else settings.stripe_environments()
        )

    async def handle(
        self, db: AsyncSession, raw_body: bytes, signature_header: Optional[str]
    ) -> ReconcileResult:
        """
        Reconcile one webhook delivery.

        Raises:
            SignatureVerificationError: no configured secret signed the body
            InvalidPayloadError: the body is not a Stripe event
            LedgerWriteError: the ledger transaction was rolled back
        """
        environment = verify_signature(
            raw_body,
            signature_header,
            self.environments,
            tolerance_seconds=self.settings.STRIPE_WEBHOOK_TOLERANCE_SECONDS,
        )
        envelope = parse_envelope(raw_body)
        kind = classify(envelope.type)
        logger.info(
            "Stripe event %s (%s) from %s",
            envelope.id,
            envelope.type,
            environment.name,
            extra={
                "extra_fields": {
                    "event_id": envelope.id,
                    "event_type": envelope.type,
                    "stripe_environment": environment.name,
                }
            },
        )

        if kind.reconciles:
            event = PaymentEvent.from_session(
                event_id=envelope.id,
                event_type=envelope.type,
                session=envelope.data.object_,
            )
            result = await self._reconcile(db, environment, event)
        elif kind is EventKind.ASYNC_PAYMENT_FAILED:
            result = await self._record_async_failure(db, envelope)
        elif kind is EventKind.PAYMENT_INTENT_SUCCEEDED:
            result = await self._handle_payment_intent(db, environment, envelope)
        else:
            result = ReconcileResult(
                outcome=Outcome.IGNORED,
                message=f"Event type {envelope.type} not handled",
            )

        result.environment = environment.name
        return result

    # -- event paths -------------------------------------------------------

    def _client_for(self, environment: StripeEnvironment) -> Optional[StripeClient]:
        client = self.stripe_clients.get(environment.name)
        if client is None:
            logger.error("No Stripe client configured for %s", environment.name)
        return client

    async def _record_async_failure(
        self, db: AsyncSession, envelope: StripeEventEnvelope
    ) -> ReconcileResult:
        event = PaymentEvent.from_session(
            event_id=envelope.id, event_type=envelope.type, session=envelope.data.object_
        )
        logger.warning(
            "Async payment failed for session %s",
            event.session_id,
            extra={"extra_fields": event.log_fields},
        )
        db.add(
            StudentActionLog(
                student_id=event.user_id,
                action_type=ActionType.PAYMENT_FAILED,
                action_description=(
                    f"Async payment failed ({event.fee_type.value if event.fee_type else 'unknown fee'})"
                ),
                session_id=event.session_id,
                log_metadata={
                    "event_id": event.event_id,
                    "payment_intent_id": event.payment_intent_id,
                    "amount_total": event.amount_total,
                    "currency": event.currency,
                    "payment_method_types": event.payment_method_types,
                },
            )
        )
        try:
            await db.commit()
        except SQLAlchemyError:
            await db.rollback()
            logger.exception(
                "Could not record payment failure for session %s", event.session_id
            )
        return ReconcileResult(
            outcome=Outcome.PAYMENT_FAILED,
            message="Async payment failure recorded",
            session_id=event.session_id,
        )

    async def _handle_payment_intent(
        self,
        db: AsyncSession,
        environment: StripeEnvironment,
        envelope: StripeEventEnvelope,
    ) -> ReconcileResult:
        intent = envelope.data.object_
        intent_id = intent.get("id", "")
        methods = [m.lower() for m in intent.get("payment_method_types") or []]
        metadata_method = str((intent.get("metadata") or {}).get("payment_method", ""))
        async_methods = {m.lower() for m in self.settings.ASYNC_PAYMENT_METHODS}
        if not (async_methods & set(methods)) and metadata_method.lower() not in async_methods:
            return ReconcileResult(
                outcome=Outcome.IGNORED,
                message="Card payments reconcile through checkout.session.completed",
            )

        client = self._client_for(environment)
        if client is None:
            return ReconcileResult(
                outcome=Outcome.NO_SESSION, message="No Stripe client for environment"
            )
        try:
            session = await client.find_session_for_payment_intent(intent_id)
        except StripeError as exc:
            logger.error(
                "Session lookup failed for payment intent %s: %s", intent_id, exc.message
            )
            return ReconcileResult(
                outcome=Outcome.NO_SESSION, message="Checkout session lookup failed"
            )

        if session is None:
            logger.warning(
                "No checkout session found for payment intent %s",
                intent_id,
                extra={"extra_fields": {"event_id": envelope.id}},
            )
            return ReconcileResult(
                outcome=Outcome.NO_SESSION, message="No checkout session for payment intent"
            )

        if await is_session_processed(db, session.id):
            logger.info("Session %s already reconciled via checkout event", session.id)
            return ReconcileResult(
                outcome=Outcome.DUPLICATE,
                message="Session already processed",
                session_id=session.id,
            )

        event = PaymentEvent.from_session(
            event_id=envelope.id, event_type=envelope.type, session=session.raw
        )
        if not event.payment_method_types:
            event.payment_method_types = methods
        if not event.payment_intent_id:
            event.payment_intent_id = intent_id
        return await self._reconcile(db, environment, event)

    # -- reconciliation ----------------------------------------------------

    async def _confirm_paid(
        self, event: PaymentEvent, environment: StripeEnvironment
    ) -> bool:
        """Session status, except for async methods where it is re-checked at Stripe."""
        if event.payment_status == "paid":
            return True
        if not event.is_async_method(self.settings.ASYNC_PAYMENT_METHODS):
            return False
        if not event.payment_intent_id:
            return False

        client = self._client_for(environment)
        if client is None:
            return False
        try:
            intent = await client.retrieve_payment_intent(event.payment_intent_id)
        except StripeError as exc:
            logger.error(
                "Could not confirm payment intent %s: %s",
                event.payment_intent_id,
                exc.message,
                extra={"extra_fields": event.log_fields},
            )
            return False

        logger.info(
            "Payment intent %s status=%s amount_received=%d",
            intent.id,
            intent.status,
            intent.amount_received,
        )
        return intent.is_settled

    async def _reconcile(
        self, db: AsyncSession, environment: StripeEnvironment, event: PaymentEvent
    ) -> ReconcileResult:
        user_id = event.user_id
        fee_type = event.fee_type
        if not event.session_id or not user_id or fee_type is None:
            logger.error(
                "Checkout session missing user or fee type metadata",
                extra={"extra_fields": {**event.log_fields, "metadata": event.metadata}},
            )
            return ReconcileResult(
                outcome=Outcome.INVALID_METADATA,
                message="Missing user_id or fee_type metadata",
                session_id=event.session_id or None,
            )

        if not await self._confirm_paid(event, environment):
            logger.info(
                "Session %s not paid (payment_status=%s), no changes made",
                event.session_id,
                event.payment_status,
                extra={"extra_fields": event.log_fields},
            )
            return ReconcileResult(
                outcome=Outcome.NOT_PAID,
                message="Payment not completed",
                session_id=event.session_id,
            )

        claim = await claim_session(db, event, environment)
        if claim is ClaimResult.DUPLICATE:
            return ReconcileResult(
                outcome=Outcome.DUPLICATE,
                message="Session already processed",
                session_id=event.session_id,
            )

        ctx = FeeContext(
            event=event,
            user_id=user_id,
            fee_type=fee_type,
            payment_method=event.payment_method(self.settings.ASYNC_PAYMENT_METHODS),
            paid_at=utc_now(),
        )
        outcome = await self._apply_ledger(db, ctx)

        notifications = await self._build_notifications(db, ctx, outcome)
        effects = self._plan_side_effects(db, environment, ctx, outcome, notifications)
        results = await run_side_effects(effects, db=db, context=event.log_fields)

        return ReconcileResult(
            outcome=Outcome.PROCESSED,
            message=f"{fee_type.value} reconciled",
            session_id=event.session_id,
            side_effects=results,
        )

    async def _apply_ledger(self, db: AsyncSession, ctx: FeeContext) -> FeeOutcome:
        event = ctx.event
        try:
            outcome = await dispatch_fee(db, ctx)
            await record_fee_payment(
                db,
                event,
                user_id=ctx.user_id,
                fee_type=ctx.fee_type,
                payment_method=ctx.payment_method,
                base_currency=self.settings.BASE_CURRENCY,
                paid_at=ctx.paid_at,
            )
            db.add(
                StudentActionLog(
                    student_id=ctx.user_id,
                    action_type=ActionType.FEE_PAYMENT,
                    action_description=f"{ctx.fee_type.value} paid via {ctx.payment_method.value}",
                    session_id=event.session_id,
                    log_metadata={
                        "session_id": event.session_id,
                        "payment_intent_id": event.payment_intent_id,
                        "amount_total": event.amount_total,
                        "currency": event.currency,
                        "newly_paid": outcome.newly_paid,
                    },
                )
            )
            await db.commit()
        except SQLAlchemyError as exc:
            await db.rollback()
            logger.exception(
                "Ledger write failed for session %s",
                event.session_id,
                extra={"extra_fields": event.log_fields},
            )
            raise LedgerWriteError(event.session_id, str(exc)) from exc
        return outcome

    # -- side effects ------------------------------------------------------

    def _plan_side_effects(
        self,
        db: AsyncSession,
        environment: StripeEnvironment,
        ctx: FeeContext,
        outcome: FeeOutcome,
        notifications: list[dict[str, Any]],
    ) -> list[SideEffect]:
        event = ctx.event
        user_id = ctx.user_id
        effects: list[SideEffect] = []

        if ctx.fee_type is FeeType.SELECTION_PROCESS and outcome.newly_paid:
            effects.append(
                SideEffect(
                    "referral_reward",
                    lambda: credit_referral_reward(
                        db,
                        referred_user_id=user_id,
                        coins=self.settings.REFERRAL_REWARD_COINS,
                        session_id=event.session_id,
                    ),
                    uses_db=True,
                )
            )

        if ctx.fee_type is FeeType.APPLICATION:
            if outcome.application is not None:
                application_id = outcome.application.id
                effects.append(
                    SideEffect(
                        "migrate_documents",
                        lambda: migrate_profile_documents(
                            db, user_id=user_id, application_id=application_id
                        ),
                        uses_db=True,
                    )
                )
            effects.append(
                SideEffect("clear_cart", lambda: clear_cart(db, user_id=user_id), uses_db=True)
            )
            if event.requires_transfer:
                client = self._client_for(environment)
                if client is not None:
                    effects.append(
                        SideEffect(
                            "connect_transfer",
                            lambda: transfer_for_event(db, client, event, user_id=user_id),
                            uses_db=True,
                        )
                    )

        if ctx.fee_type is FeeType.SCHOLARSHIP:
            effects.append(
                SideEffect(
                    "referral_commission",
                    lambda: upsert_referral_commission(
                        db, event, referred_user_id=user_id
                    ),
                    uses_db=True,
                )
            )

        for payload in notifications:
            effects.append(
                SideEffect(
                    f"notify_{payload['target_role']}",
                    lambda payload=payload: self.notifier.send(payload),
                )
            )
        return effects

    async def _build_notifications(
        self, db: AsyncSession, ctx: FeeContext, outcome: FeeOutcome
    ) -> list[dict[str, Any]]:
        """Notification payloads, built before side effects can expire loaded rows."""
        event = ctx.event
        profile = outcome.profile
        student_name = (profile.full_name if profile else None) or event.customer_name or ""
        student_email = (profile.email if profile else None) or event.customer_email or ""
        common = dict(
            fee_type=ctx.fee_type,
            student_name=student_name,
            student_email=student_email,
            amount_minor=event.amount_total,
            currency=event.currency,
            payment_method=ctx.payment_method,
            payment_id=event.payment_intent_id or event.session_id,
        )

        payloads: list[dict[str, Any]] = []
        if student_email:
            payloads.append(student_payment_notification(**common))
        else:
            logger.warning("No email for student %s, skipping confirmation", ctx.user_id)

        try:
            if ctx.fee_type is FeeType.APPLICATION and outcome.application is not None:
                university_payload = await self._university_notification(
                    db, outcome.application.scholarship_id, outcome.application.id, common
                )
                if university_payload:
                    payloads.append(university_payload)
        except SQLAlchemyError:
            logger.exception("Could not load university for session %s", event.session_id)

        if profile is not None and profile.seller_referral_code:
            payloads.append(
                seller_payment_notification(
                    admin_email=self.settings.ADMIN_NOTIFICATION_EMAIL,
                    seller_referral_code=profile.seller_referral_code,
                    **common,
                )
            )
        return payloads

    async def _university_notification(
        self,
        db: AsyncSession,
        scholarship_id: Optional[uuid.UUID],
        application_id: uuid.UUID,
        common: dict[str, Any],
    ) -> Optional[dict[str, Any]]:
        if scholarship_id is None:
            return None
        scholarship = await db.get(Scholarship, scholarship_id)
        if scholarship is None or scholarship.university_id is None:
            return None
        university = await db.get(University, scholarship.university_id)
        if university is None or not university.admissions_email:
            logger.warning("No admissions email for scholarship %s", scholarship_id)
            return None
        return university_payment_notification(
            university_name=university.name,
            university_email=university.admissions_email,
            scholarship_title=scholarship.title,
            application_id=str(application_id),
            **common,
        )
