"""Payments Service models package."""

from services.payments_service.models.enums import (
    ActionType,
    ApplicationStatus,
    FeeType,
    PaymentMethod,
    ReferralStatus,
    RewardTransactionType,
    TransferStatus,
)
from services.payments_service.models.ledger import (
    Scholarship,
    ScholarshipApplication,
    ScholarshipFeePayment,
    StudentProfile,
    University,
    UserCartItem,
)
from services.payments_service.models.reconciliation import (
    FeePaymentRecord,
    ReconciliationMarker,
    StudentActionLog,
)
from services.payments_service.models.referral import (
    AffiliateReferral,
    RewardAccount,
    RewardTransaction,
    UsedReferralCode,
)
from services.payments_service.models.transfer import ConnectTransfer

__all__ = [
    "ActionType",
    "AffiliateReferral",
    "ApplicationStatus",
    "ConnectTransfer",
    "FeePaymentRecord",
    "FeeType",
    "PaymentMethod",
    "ReconciliationMarker",
    "ReferralStatus",
    "RewardAccount",
    "RewardTransaction",
    "RewardTransactionType",
    "Scholarship",
    "ScholarshipApplication",
    "ScholarshipFeePayment",
    "StudentActionLog",
    "StudentProfile",
    "TransferStatus",
    "University",
    "UserCartItem",
    "UsedReferralCode",
]
