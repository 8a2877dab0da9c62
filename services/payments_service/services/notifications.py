"""
Payment notifications through the external messaging webhook.

The messaging endpoint owns templates and routing; this module only posts a
flat field set per recipient:

    await notifier.send(
        student_payment_notification(
            fee_type=FeeType.APPLICATION,
            student_name="Ana",
            student_email="ana@example.com",
            amount_minor=35000,
            currency="usd",
            payment_method=PaymentMethod.STRIPE,
            payment_id="cs_test_123",
        )
    )
"""

from typing import Any, Optional

import httpx
from libs.common.config import get_settings
from libs.common.currency import minor_to_major
from libs.common.logging import get_logger
from services.payments_service.models import FeeType, PaymentMethod

logger = get_logger(__name__)

FEE_LABELS = {
    FeeType.SELECTION_PROCESS: "Selection Process Fee",
    FeeType.APPLICATION: "Application Fee",
    FeeType.SCHOLARSHIP: "Scholarship Fee",
    FeeType.I20_CONTROL: "I-20 Control Fee",
}


class NotificationError(Exception):
    """The messaging endpoint did not accept a notification."""


def _base_fields(
    *,
    notification_type: str,
    target_role: str,
    fee_type: FeeType,
    student_name: str,
    student_email: str,
    amount_minor: Optional[int],
    currency: str,
    payment_method: PaymentMethod,
    payment_id: str,
) -> dict[str, Any]:
    amount = minor_to_major(amount_minor, currency) if amount_minor is not None else None
    return {
        "notification_type": notification_type,
        "target_role": target_role,
        "fee_type": fee_type.value,
        "fee_label": FEE_LABELS[fee_type],
        "student_name": student_name,
        "student_email": student_email,
        "amount": str(amount) if amount is not None else None,
        "amount_minor": amount_minor,
        "currency": currency.upper(),
        "payment_method": payment_method.value,
        "payment_id": payment_id,
    }


def student_payment_notification(**fields: Any) -> dict[str, Any]:
    """Payment confirmation sent to the student for every fee type."""
    payload = _base_fields(
        notification_type="student_payment_confirmation",
        target_role="student",
        **fields,
    )
    payload["email"] = payload["student_email"]
    return payload


def university_payment_notification(
    *,
    university_name: str,
    university_email: str,
    scholarship_title: str,
    application_id: str,
    **fields: Any,
) -> dict[str, Any]:
    """Application-fee notice for the university's admissions office."""
    payload = _base_fields(
        notification_type="university_application_fee_paid",
        target_role="school",
        **fields,
    )
    payload.update(
        {
            "email": university_email,
            "university_name": university_name,
            "scholarship_title": scholarship_title,
            "application_id": application_id,
        }
    )
    return payload


def seller_payment_notification(
    *, admin_email: str, seller_referral_code: str, **fields: Any
) -> dict[str, Any]:
    """Notice to the admin team that a seller-referred student paid."""
    payload = _base_fields(
        notification_type="seller_student_payment",
        target_role="admin",
        **fields,
    )
    payload.update(
        {"email": admin_email, "seller_referral_code": seller_referral_code}
    )
    return payload


class NotificationClient:
    """Posts notification payloads to the configured messaging webhook."""

    def __init__(
        self,
        url: Optional[str] = None,
        *,
        http_client: Optional[httpx.AsyncClient] = None,
        timeout: Optional[float] = None,
    ):
        settings = get_settings()
        self.url = settings.NOTIFICATION_WEBHOOK_URL if url is None else url
        self.timeout = timeout or settings.NOTIFICATION_TIMEOUT_SECONDS
        self._http_client = http_client

    @property
    def enabled(self) -> bool:
        return bool(self.url)

    async def send(self, payload: dict[str, Any]) -> bool:
        """
        Post one notification.

        Returns:
            True when delivered, False when no endpoint is configured

        Raises:
            NotificationError: the endpoint was unreachable or refused it
        """
        if not self.enabled:
            logger.info(
                "Notification endpoint not configured, skipping %s",
                payload.get("notification_type"),
            )
            return False

        try:
            if self._http_client is not None:
                response = await self._http_client.post(self.url, json=payload)
            else:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    response = await client.post(self.url, json=payload)
        except httpx.HTTPError as e:
            raise NotificationError(f"Notification endpoint unreachable: {e}") from e

        if not response.is_success:
            raise NotificationError(
                f"Notification endpoint returned {response.status_code}: {response.text}"
            )

        logger.info(
            "Sent %s notification to %s",
            payload.get("notification_type"),
            payload.get("target_role"),
        )
        return True
