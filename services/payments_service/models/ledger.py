"""Student ledger models: profile fee flags, applications and their lookups."""

import uuid
from datetime import datetime
from typing import Optional

from libs.common.datetime_utils import utc_now
from libs.db.base import Base, JSONType
from services.payments_service.models.enums import ApplicationStatus, enum_values
from sqlalchemy import Boolean, DateTime
from sqlalchemy import Enum as SAEnum
from sqlalchemy import ForeignKey, String, Uuid
from sqlalchemy.orm import Mapped, mapped_column


class StudentProfile(Base):
    """Per-student fee ledger. Each fee flag flips false -> true once."""

    __tablename__ = "user_profiles"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[str] = mapped_column(
        String, unique=True, index=True, nullable=False
    )
    full_name: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    email: Mapped[Optional[str]] = mapped_column(String, index=True, nullable=True)
    seller_referral_code: Mapped[Optional[str]] = mapped_column(
        String(50), nullable=True
    )

    has_paid_selection_process_fee: Mapped[bool] = mapped_column(
        Boolean, default=False, nullable=False
    )
    selection_process_fee_payment_method: Mapped[Optional[str]] = mapped_column(
        String(32), nullable=True
    )
    selection_process_fee_paid_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    is_application_fee_paid: Mapped[bool] = mapped_column(
        Boolean, default=False, nullable=False
    )
    application_fee_payment_method: Mapped[Optional[str]] = mapped_column(
        String(32), nullable=True
    )
    application_fee_paid_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    is_scholarship_fee_paid: Mapped[bool] = mapped_column(
        Boolean, default=False, nullable=False
    )
    scholarship_fee_payment_method: Mapped[Optional[str]] = mapped_column(
        String(32), nullable=True
    )
    scholarship_fee_paid_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    has_paid_i20_control_fee: Mapped[bool] = mapped_column(
        Boolean, default=False, nullable=False
    )
    i20_control_fee_payment_method: Mapped[Optional[str]] = mapped_column(
        String(32), nullable=True
    )
    i20_control_fee_paid_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    # Documents uploaded before an application exists:
    # [{"type": "passport", "url": "...", "uploaded_at": "..."}]
    documents: Mapped[Optional[list]] = mapped_column(JSONType, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, onupdate=utc_now
    )

    def __repr__(self) -> str:
        return f"<StudentProfile {self.user_id}>"


class University(Base):
    __tablename__ = "universities"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    name: Mapped[str] = mapped_column(String, nullable=False)
    # {"admissionsEmail": "...", "email": "..."}
    contact: Mapped[Optional[dict]] = mapped_column(JSONType, nullable=True)
    stripe_connect_account_id: Mapped[Optional[str]] = mapped_column(
        String(64), nullable=True
    )

    @property
    def admissions_email(self) -> str:
        contact = self.contact or {}
        return contact.get("admissionsEmail") or contact.get("email") or ""


class Scholarship(Base):
    __tablename__ = "scholarships"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    title: Mapped[str] = mapped_column(String, nullable=False)
    university_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("universities.id"), nullable=True
    )


class ScholarshipApplication(Base):
    """A student's application to one scholarship."""

    __tablename__ = "scholarship_applications"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    student_id: Mapped[str] = mapped_column(String, index=True, nullable=False)
    scholarship_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("scholarships.id"), index=True, nullable=True
    )
    status: Mapped[ApplicationStatus] = mapped_column(
        SAEnum(
            ApplicationStatus,
            name="application_status_enum",
            values_callable=enum_values,
            validate_strings=True,
        ),
        default=ApplicationStatus.PENDING,
        nullable=False,
    )

    is_application_fee_paid: Mapped[bool] = mapped_column(
        Boolean, default=False, nullable=False
    )
    is_scholarship_fee_paid: Mapped[bool] = mapped_column(
        Boolean, default=False, nullable=False
    )
    is_i20_control_fee_paid: Mapped[bool] = mapped_column(
        Boolean, default=False, nullable=False
    )
    payment_status: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    paid_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    application_fee_payment_method: Mapped[Optional[str]] = mapped_column(
        String(32), nullable=True
    )
    scholarship_fee_payment_method: Mapped[Optional[str]] = mapped_column(
        String(32), nullable=True
    )
    i20_control_fee_payment_method: Mapped[Optional[str]] = mapped_column(
        String(32), nullable=True
    )
    documents: Mapped[Optional[list]] = mapped_column(JSONType, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, onupdate=utc_now
    )

    def __repr__(self) -> str:
        return f"<ScholarshipApplication {self.id} {self.status.value}>"


class UserCartItem(Base):
    """Scholarships a student has shortlisted but not yet applied to."""

    __tablename__ = "user_cart"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[str] = mapped_column(String, index=True, nullable=False)
    scholarship_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now
    )


class ScholarshipFeePayment(Base):
    """Which scholarships a scholarship-fee checkout covered."""

    __tablename__ = "scholarship_fee_payments"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[str] = mapped_column(String, index=True, nullable=False)
    scholarships_ids: Mapped[list] = mapped_column(JSONType, nullable=False)
    payment_intent_id: Mapped[Optional[str]] = mapped_column(
        String(128), nullable=True
    )
    session_id: Mapped[str] = mapped_column(
        String(128), unique=True, index=True, nullable=False
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now
    )
