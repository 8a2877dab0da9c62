"""Idempotency markers, audit log and the normalized financial ledger."""

import uuid
from datetime import datetime
from decimal import Decimal
from typing import Optional

from libs.common.datetime_utils import utc_now
from libs.db.base import Base, JSONType
from services.payments_service.models.enums import ActionType, FeeType, enum_values
from sqlalchemy import BigInteger, DateTime
from sqlalchemy import Enum as SAEnum
from sqlalchemy import Numeric, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column


class ReconciliationMarker(Base):
    """Proof that a checkout session has been claimed for reconciliation.

    The unique constraint on ``session_id`` is the duplicate signal: a second
    insert for the same session fails with an IntegrityError.
    """

    __tablename__ = "reconciliation_markers"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    session_id: Mapped[str] = mapped_column(
        String(128), unique=True, index=True, nullable=False
    )
    action_type: Mapped[ActionType] = mapped_column(
        SAEnum(
            ActionType,
            name="reconciliation_action_enum",
            values_callable=enum_values,
            validate_strings=True,
        ),
        default=ActionType.CHECKOUT_SESSION_PROCESSED,
        nullable=False,
    )
    event_id: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    event_type: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    stripe_environment: Mapped[Optional[str]] = mapped_column(
        String(32), nullable=True
    )
    marker_metadata: Mapped[Optional[dict]] = mapped_column(
        "metadata", JSONType, nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now
    )

    def __repr__(self) -> str:
        return f"<ReconciliationMarker {self.session_id}>"


class StudentActionLog(Base):
    """Append-only audit trail of payment actions per student."""

    __tablename__ = "student_action_logs"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    student_id: Mapped[Optional[str]] = mapped_column(
        String, index=True, nullable=True
    )
    action_type: Mapped[ActionType] = mapped_column(
        SAEnum(
            ActionType,
            name="student_action_type_enum",
            values_callable=enum_values,
            validate_strings=True,
        ),
        nullable=False,
    )
    action_description: Mapped[str] = mapped_column(Text, nullable=False)
    session_id: Mapped[Optional[str]] = mapped_column(
        String(128), index=True, nullable=True
    )
    performed_by_type: Mapped[str] = mapped_column(
        String(32), default="system", nullable=False
    )
    log_metadata: Mapped[Optional[dict]] = mapped_column(
        "metadata", JSONType, nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now
    )


class FeePaymentRecord(Base):
    """Normalized financial ledger row, one per reconciled checkout session.

    All amounts are integer minor units (cents, centavos).
    """

    __tablename__ = "individual_fee_payments"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[str] = mapped_column(String, index=True, nullable=False)
    fee_type: Mapped[FeeType] = mapped_column(
        SAEnum(
            FeeType,
            name="fee_type_enum",
            values_callable=enum_values,
            validate_strings=True,
        ),
        nullable=False,
    )
    amount_minor: Mapped[int] = mapped_column(BigInteger, nullable=False)
    currency: Mapped[str] = mapped_column(String(8), nullable=False)
    base_amount_minor: Mapped[int] = mapped_column(BigInteger, nullable=False)
    base_currency: Mapped[str] = mapped_column(String(8), nullable=False)
    exchange_rate: Mapped[Optional[Decimal]] = mapped_column(
        Numeric(18, 8, asdecimal=True), nullable=True
    )
    payment_method: Mapped[str] = mapped_column(String(32), nullable=False)
    session_id: Mapped[str] = mapped_column(
        String(128), unique=True, index=True, nullable=False
    )
    payment_intent_id: Mapped[Optional[str]] = mapped_column(
        String(128), nullable=True
    )
    application_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, nullable=True)
    payment_date: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now
    )

    def __repr__(self) -> str:
        return f"<FeePaymentRecord {self.fee_type.value} {self.session_id}>"
