"""Unit tests for the Stripe REST client."""

from urllib.parse import parse_qs

import httpx
import pytest
from libs.common.config import StripeEnvironment
from services.payments_service.stripe_client import (
    StripeClient,
    StripeError,
    build_stripe_clients,
)

ENV = StripeEnvironment("test", "sk_test_123", "whsec_test")


def _client(handler) -> tuple[StripeClient, httpx.AsyncClient]:
    http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return StripeClient(ENV, http_client=http, base_url="https://stripe.test"), http


@pytest.mark.asyncio
@pytest.mark.unit
async def test_find_session_for_payment_intent():
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/v1/checkout/sessions"
        assert request.url.params["payment_intent"] == "pi_1"
        assert request.headers["Authorization"] == "Bearer sk_test_123"
        return httpx.Response(
            200,
            json={
                "data": [
                    {
                        "id": "cs_1",
                        "payment_intent": "pi_1",
                        "payment_status": "unpaid",
                        "amount_total": 196000,
                        "currency": "brl",
                        "metadata": {"user_id": "user-1"},
                    }
                ]
            },
        )

    client, http = _client(handler)
    async with http:
        session = await client.find_session_for_payment_intent("pi_1")

    assert session.id == "cs_1"
    assert session.amount_total == 196000
    assert session.metadata == {"user_id": "user-1"}
    assert session.raw["currency"] == "brl"


@pytest.mark.asyncio
@pytest.mark.unit
async def test_find_session_returns_none_when_empty():
    client, http = _client(lambda request: httpx.Response(200, json={"data": []}))
    async with http:
        assert await client.find_session_for_payment_intent("pi_1") is None


@pytest.mark.asyncio
@pytest.mark.unit
@pytest.mark.parametrize(
    "status,received,settled",
    [("succeeded", 100, True), ("succeeded", 0, False), ("processing", 100, False)],
)
async def test_payment_intent_settlement(status, received, settled):
    body = {"id": "pi_1", "status": status, "amount": 100, "amount_received": received, "currency": "brl"}
    client, http = _client(lambda request: httpx.Response(200, json=body))
    async with http:
        intent = await client.retrieve_payment_intent("pi_1")

    assert intent.is_settled is settled


@pytest.mark.asyncio
@pytest.mark.unit
async def test_create_transfer_form_encodes_and_sends_idempotency_key():
    captured = {}

    def handler(request: httpx.Request) -> httpx.Response:
        captured["form"] = parse_qs(request.content.decode())
        captured["key"] = request.headers.get("Idempotency-Key")
        return httpx.Response(
            200,
            json={"id": "tr_1", "amount": 5000, "currency": "usd", "destination": "acct_1"},
        )

    client, http = _client(handler)
    async with http:
        result = await client.create_transfer(
            amount=5000,
            currency="usd",
            destination="acct_1",
            description="Application fee",
            metadata={"session_id": "cs_1", "application_id": None},
            idempotency_key="transfer-cs_1",
        )

    assert result.id == "tr_1"
    assert captured["key"] == "transfer-cs_1"
    assert captured["form"]["amount"] == ["5000"]
    assert captured["form"]["metadata[session_id]"] == ["cs_1"]
    assert "metadata[application_id]" not in captured["form"]


@pytest.mark.asyncio
@pytest.mark.unit
async def test_api_error_raises_stripe_error():
    body = {"error": {"message": "No such payment_intent"}}
    client, http = _client(lambda request: httpx.Response(404, json=body))
    async with http:
        with pytest.raises(StripeError) as exc_info:
            await client.retrieve_payment_intent("pi_missing")

    assert exc_info.value.status_code == 404
    assert exc_info.value.message == "No such payment_intent"


@pytest.mark.asyncio
@pytest.mark.unit
async def test_transport_error_raises_stripe_error():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectTimeout("timed out", request=request)

    client, http = _client(handler)
    async with http:
        with pytest.raises(StripeError):
            await client.retrieve_balance()


@pytest.mark.asyncio
@pytest.mark.unit
async def test_retrieve_balance_by_currency():
    body = {"available": [{"currency": "usd", "amount": 1200}, {"currency": "brl", "amount": 50}]}
    client, http = _client(lambda request: httpx.Response(200, json=body))
    async with http:
        assert await client.retrieve_balance() == {"usd": 1200, "brl": 50}


@pytest.mark.asyncio
@pytest.mark.unit
async def test_retrieve_account():
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.method == "GET"
        assert request.url.path == "/v1/accounts/acct_uni"
        return httpx.Response(
            200, json={"id": "acct_uni", "charges_enabled": True, "payouts_enabled": False}
        )

    client, http = _client(handler)
    async with http:
        account = await client.retrieve_account("acct_uni")

    assert account["payouts_enabled"] is False


@pytest.mark.unit
def test_build_clients_keyed_by_environment():
    prod = StripeEnvironment("production", "sk_live", "whsec_prod")

    clients = build_stripe_clients([prod, ENV])

    assert set(clients) == {"production", "test"}
    assert clients["test"].environment_name == "test"
