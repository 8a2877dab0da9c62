"""
Stripe API client for the follow-up calls the webhook reconciler makes.

Provides async methods for:
- Finding the checkout session behind a payment intent
- Reading a payment intent's authoritative status
- Creating Connect transfers to university accounts
- Reading the platform balance and a connected account (diagnostics)

One client exists per Stripe environment (production, staging, test); the
webhook signature decides which one a given event uses.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Optional

import httpx
from libs.common.config import StripeEnvironment, get_settings

logger = logging.getLogger(__name__)


@dataclass
class CheckoutSessionRef:
    """The parts of a checkout session the reconciler needs."""

    id: str
    payment_intent: Optional[str]
    payment_status: Optional[str]
    amount_total: Optional[int]
    currency: Optional[str]
    metadata: dict[str, str] = field(default_factory=dict)
    raw: dict[str, Any] = field(default_factory=dict)


@dataclass
class PaymentIntentStatus:
    """Result of retrieving a payment intent."""

    id: str
    status: str  # requires_payment_method, processing, succeeded, canceled, ...
    amount: int
    amount_received: int
    currency: str

    @property
    def is_settled(self) -> bool:
        return self.status == "succeeded" and self.amount_received > 0


@dataclass
class TransferResult:
    """Result of creating a transfer."""

    id: str
    amount: int  # minor units
    currency: str
    destination: str
    reversed: bool = False


class StripeError(Exception):
    """Base exception for Stripe API errors."""

    def __init__(
        self, message: str, status_code: int = None, response_data: dict = None
    ):
        self.message = message
        self.status_code = status_code
        self.response_data = response_data or {}
        super().__init__(message)


def _form_encode(data: dict, prefix: str = "") -> dict[str, str]:
    """Flatten nested dicts into Stripe's ``metadata[key]=value`` form fields."""
    flat: dict[str, str] = {}
    for key, value in data.items():
        if value is None:
            continue
        name = f"{prefix}[{key}]" if prefix else key
        if isinstance(value, dict):
            flat.update(_form_encode(value, name))
        elif isinstance(value, bool):
            flat[name] = "true" if value else "false"
        else:
            flat[name] = str(value)
    return flat


class StripeClient:
    """Async client for the Stripe REST API, bound to one environment."""

    def __init__(
        self,
        environment: StripeEnvironment,
        *,
        http_client: Optional[httpx.AsyncClient] = None,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
    ):
        settings = get_settings()
        if not environment.secret_key:
            raise ValueError(f"Stripe secret key missing for {environment.name}")
        self.environment = environment
        self.base_url = (base_url or settings.STRIPE_API_BASE).rstrip("/")
        self.timeout = timeout or settings.STRIPE_TIMEOUT_SECONDS
        self._http_client = http_client
        self._headers = {"Authorization": f"Bearer {environment.secret_key}"}

    @property
    def environment_name(self) -> str:
        return self.environment.name

    async def _request(
        self,
        method: str,
        endpoint: str,
        params: dict = None,
        form_data: dict = None,
        idempotency_key: str = None,
    ) -> dict:
        """Make an async request to the Stripe API."""
        url = f"{self.base_url}{endpoint}"
        headers = dict(self._headers)
        if idempotency_key:
            headers["Idempotency-Key"] = idempotency_key

        kwargs: dict[str, Any] = {"headers": headers}
        if params:
            kwargs["params"] = _form_encode(params)
        if form_data:
            kwargs["data"] = _form_encode(form_data)

        try:
            if self._http_client is not None:
                response = await self._http_client.request(method, url, **kwargs)
            else:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    response = await client.request(method, url, **kwargs)
        except httpx.HTTPError as exc:
            raise StripeError(f"Stripe request failed: {exc}") from exc

        try:
            data = response.json()
        except ValueError:
            data = {}

        if not response.is_success:
            error = data.get("error") or {}
            logger.error(
                f"Stripe API error ({self.environment.name}): "
                f"{response.status_code} - {error.get('message')}"
            )
            raise StripeError(
                message=error.get("message", "Unknown Stripe error"),
                status_code=response.status_code,
                response_data=data,
            )

        return data

    # =========================================================================
    # Checkout / payment intents
    # =========================================================================

    async def find_session_for_payment_intent(
        self, payment_intent_id: str
    ) -> Optional[CheckoutSessionRef]:
        """
        Look up the checkout session that created a payment intent.

        Returns:
            The session, or None when Stripe has no session for the intent.
        """
        data = await self._request(
            "GET",
            "/v1/checkout/sessions",
            params={"payment_intent": payment_intent_id, "limit": 1},
        )
        sessions = data.get("data") or []
        if not sessions:
            return None

        session = sessions[0]
        return CheckoutSessionRef(
            id=session["id"],
            payment_intent=session.get("payment_intent"),
            payment_status=session.get("payment_status"),
            amount_total=session.get("amount_total"),
            currency=session.get("currency"),
            metadata=session.get("metadata") or {},
            raw=session,
        )

    async def retrieve_payment_intent(self, payment_intent_id: str) -> PaymentIntentStatus:
        """Read the authoritative status of a payment intent."""
        data = await self._request("GET", f"/v1/payment_intents/{payment_intent_id}")
        return PaymentIntentStatus(
            id=data.get("id", payment_intent_id),
            status=data.get("status", "unknown"),
            amount=int(data.get("amount") or 0),
            amount_received=int(data.get("amount_received") or 0),
            currency=data.get("currency", ""),
        )

    # =========================================================================
    # Connect transfers
    # =========================================================================

    async def create_transfer(
        self,
        *,
        amount: int,
        currency: str,
        destination: str,
        description: str,
        metadata: Optional[dict] = None,
        idempotency_key: Optional[str] = None,
    ) -> TransferResult:
        """
        Move funds from the platform balance to a connected account.

        Args:
            amount: Amount in minor units
            currency: ISO currency code
            destination: Connected account id (acct_...)
            description: Shown on the transfer in the Stripe dashboard
            metadata: Flat string metadata stored on the transfer
            idempotency_key: Replays with the same key return the first transfer

        Returns:
            TransferResult with the Stripe transfer id
        """
        data = await self._request(
            "POST",
            "/v1/transfers",
            form_data={
                "amount": amount,
                "currency": currency,
                "destination": destination,
                "description": description,
                "metadata": metadata or {},
            },
            idempotency_key=idempotency_key,
        )
        return TransferResult(
            id=data.get("id", ""),
            amount=int(data.get("amount") or amount),
            currency=data.get("currency", currency),
            destination=data.get("destination", destination),
            reversed=bool(data.get("reversed", False)),
        )

    async def retrieve_balance(self) -> dict[str, int]:
        """
        Get available platform balance per currency, in minor units.
        """
        data = await self._request("GET", "/v1/balance")
        return {
            entry.get("currency", ""): int(entry.get("amount") or 0)
            for entry in data.get("available", [])
        }

    async def retrieve_account(self, account_id: str) -> dict:
        """Fetch a connected account (charges/payouts enabled flags)."""
        return await self._request("GET", f"/v1/accounts/{account_id}")


def build_stripe_clients(
    environments: list[StripeEnvironment],
    *,
    http_client: Optional[httpx.AsyncClient] = None,
) -> dict[str, StripeClient]:
    """One client per configured environment, keyed by environment name."""
    return {
        env.name: StripeClient(env, http_client=http_client) for env in environments
    }
