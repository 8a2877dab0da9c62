"""Enum definitions for payments service models."""

import enum
from typing import Optional


def enum_values(enum_cls):
    """Return persistent DB values for SAEnum mappings."""
    return [member.value for member in enum_cls]


class FeeType(str, enum.Enum):
    SELECTION_PROCESS = "selection_process"
    APPLICATION = "application_fee"
    SCHOLARSHIP = "scholarship_fee"
    I20_CONTROL = "i20_control_fee"

    @classmethod
    def parse(cls, raw: Optional[str]) -> Optional["FeeType"]:
        """Map a metadata fee label (including legacy aliases) to a FeeType."""
        if not raw:
            return None
        return _FEE_TYPE_ALIASES.get(raw.strip().lower())


_FEE_TYPE_ALIASES = {
    "selection_process": FeeType.SELECTION_PROCESS,
    "selection_process_fee": FeeType.SELECTION_PROCESS,
    "application_fee": FeeType.APPLICATION,
    "application": FeeType.APPLICATION,
    "scholarship_fee": FeeType.SCHOLARSHIP,
    "scholarship": FeeType.SCHOLARSHIP,
    "i20_control_fee": FeeType.I20_CONTROL,
    "i20_control": FeeType.I20_CONTROL,
    "i-20_control_fee": FeeType.I20_CONTROL,
}


class ApplicationStatus(str, enum.Enum):
    PENDING = "pending"
    SUBMITTED = "submitted"
    UNDER_REVIEW = "under_review"
    APPROVED = "approved"
    REJECTED = "rejected"
    ENROLLED = "enrolled"

    @property
    def is_settled(self) -> bool:
        """Statuses a fee payment must never move back to under_review."""
        return self in (ApplicationStatus.APPROVED, ApplicationStatus.ENROLLED)


class PaymentMethod(str, enum.Enum):
    STRIPE = "stripe"
    PIX = "pix"
    BOLETO = "boleto"


class ActionType(str, enum.Enum):
    CHECKOUT_SESSION_PROCESSED = "checkout_session_processed"
    FEE_PAYMENT = "fee_payment"
    PAYMENT_FAILED = "payment_failed"
    TRANSFER_FAILED = "transfer_failed"


class TransferStatus(str, enum.Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class ReferralStatus(str, enum.Enum):
    PENDING = "pending"
    COMPLETED = "completed"


class RewardTransactionType(str, enum.Enum):
    REFERRAL_REWARD = "referral_reward"
    REDEMPTION = "redemption"
    ADMIN_ADJUSTMENT = "admin_adjustment"
