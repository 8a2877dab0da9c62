"""Unit tests for event parsing, classification and checkout metadata."""

import json
import uuid
from decimal import Decimal

import pytest
from services.payments_service.models import FeeType, PaymentMethod
from services.payments_service.services.events import (
    EventKind,
    InvalidPayloadError,
    PaymentEvent,
    classify,
    parse_envelope,
    split_ids,
)
from tests.factories import checkout_session, stripe_event


def _event(session: dict, event_type: str = "checkout.session.completed") -> PaymentEvent:
    return PaymentEvent.from_session(event_id="evt_1", event_type=event_type, session=session)


# ---------------------------------------------------------------------------
# classify / parse_envelope
# ---------------------------------------------------------------------------


@pytest.mark.unit
@pytest.mark.parametrize(
    "event_type,kind",
    [
        ("checkout.session.completed", EventKind.CHECKOUT_COMPLETED),
        ("checkout.session.async_payment_succeeded", EventKind.ASYNC_PAYMENT_SUCCEEDED),
        ("checkout.session.async_payment_failed", EventKind.ASYNC_PAYMENT_FAILED),
        ("payment_intent.succeeded", EventKind.PAYMENT_INTENT_SUCCEEDED),
        ("charge.refunded", EventKind.UNSUPPORTED),
        ("unsupported", EventKind.UNSUPPORTED),
        ("", EventKind.UNSUPPORTED),
    ],
)
def test_classify(event_type, kind):
    assert classify(event_type) is kind


@pytest.mark.unit
def test_only_completed_and_async_succeeded_reconcile_directly():
    assert {k for k in EventKind if k.reconciles} == {
        EventKind.CHECKOUT_COMPLETED,
        EventKind.ASYNC_PAYMENT_SUCCEEDED,
    }


@pytest.mark.unit
def test_parse_envelope_reads_data_object():
    obj = checkout_session(user_id="user-1")
    body = json.dumps(stripe_event("checkout.session.completed", obj, "evt_abc")).encode()

    envelope = parse_envelope(body)

    assert envelope.id == "evt_abc"
    assert envelope.type == "checkout.session.completed"
    assert envelope.data.object_["id"] == obj["id"]


@pytest.mark.unit
@pytest.mark.parametrize(
    "body",
    [b"not json", b"[1, 2]", b'{"id": "evt_1"}', b'{"id": "e", "type": "t", "data": {}}', b"\xff\xfe"],
)
def test_parse_envelope_rejects_non_events(body):
    with pytest.raises(InvalidPayloadError):
        parse_envelope(body)


# ---------------------------------------------------------------------------
# PaymentEvent metadata
# ---------------------------------------------------------------------------


@pytest.mark.unit
def test_metadata_aliases():
    session = checkout_session(user_id="ignored")
    session["metadata"] = {"student_id": "user-9", "payment_type": "i20_control"}

    event = _event(session)

    assert event.user_id == "user-9"
    assert event.fee_type is FeeType.I20_CONTROL


@pytest.mark.unit
@pytest.mark.parametrize(
    "raw,expected",
    [
        ("selection_process_fee", FeeType.SELECTION_PROCESS),
        ("Application_Fee", FeeType.APPLICATION),
        ("scholarship_fee", FeeType.SCHOLARSHIP),
        ("i20_control_fee", FeeType.I20_CONTROL),
        ("tuition", None),
    ],
)
def test_fee_type_normalization(raw, expected):
    event = _event(checkout_session(user_id="u", fee_type=raw))
    assert event.fee_type is expected


@pytest.mark.unit
def test_scholarship_ids_accept_comma_list_and_json():
    a, b = uuid.uuid4(), uuid.uuid4()

    comma = _event(checkout_session(user_id="u", scholarships_ids=f"{a}, {b},"))
    as_json = _event(checkout_session(user_id="u", scholarships_ids=json.dumps([str(a), str(b)])))

    assert comma.scholarship_ids == [a, b]
    assert as_json.scholarship_ids == [a, b]


@pytest.mark.unit
def test_split_ids_drops_blanks():
    assert split_ids(" , a ,, b ") == ["a", "b"]
    assert split_ids(None) == []
    assert split_ids("[not json") == []


@pytest.mark.unit
def test_invalid_uuids_are_ignored():
    event = _event(checkout_session(user_id="u", application_id="nope", scholarships_ids="x,y"))

    assert event.application_id is None
    assert event.scholarship_ids == []


@pytest.mark.unit
def test_transfer_fields():
    event = _event(
        checkout_session(
            user_id="u",
            amount_total=50000,
            requires_transfer="true",
            stripe_connect_account_id="acct_123",
        )
    )

    assert event.requires_transfer is True
    assert event.connect_account_id == "acct_123"
    assert event.transfer_amount == 50000


@pytest.mark.unit
def test_explicit_transfer_amount_wins():
    event = _event(checkout_session(user_id="u", amount_total=50000, transfer_amount="42000"))
    assert event.transfer_amount == 42000


@pytest.mark.unit
def test_exchange_rate_and_base_amount():
    event = _event(
        checkout_session(user_id="u", currency="BRL", exchange_rate="5.6", base_amount="35000")
    )

    assert event.currency == "brl"
    assert event.exchange_rate == Decimal("5.6")
    assert event.base_amount == 35000


@pytest.mark.unit
def test_async_method_detection():
    pix_types = _event(checkout_session(user_id="u", payment_method_types=["card", "pix"]))
    pix_metadata = _event(checkout_session(user_id="u", payment_method="PIX"))
    card = _event(checkout_session(user_id="u"))

    assert pix_types.is_async_method(["pix"])
    assert pix_metadata.payment_method(["pix"]) is PaymentMethod.PIX
    assert not card.is_async_method(["pix"])
    assert card.payment_method(["pix"]) is PaymentMethod.STRIPE


@pytest.mark.unit
def test_payment_method_label_follows_matched_method():
    boleto = _event(checkout_session(user_id="u", payment_method_types=["card", "boleto"]))
    pix = _event(checkout_session(user_id="u", payment_method_types=["pix"]))
    unknown = _event(checkout_session(user_id="u", payment_method_types=["oxxo"]))

    assert boleto.payment_method(["pix", "boleto"]) is PaymentMethod.BOLETO
    assert pix.payment_method(["pix", "boleto"]) is PaymentMethod.PIX
    assert unknown.is_async_method(["oxxo"])
    assert unknown.payment_method(["oxxo"]) is PaymentMethod.STRIPE


@pytest.mark.unit
def test_customer_fallbacks():
    session = checkout_session(user_id="u")
    session["customer_email"] = "direct@test.com"

    event = _event(session)

    assert event.customer_email == "direct@test.com"
    assert event.customer_name == "Checkout Name"


@pytest.mark.unit
def test_expanded_payment_intent_object():
    session = checkout_session(user_id="u")
    session["payment_intent"] = {"id": "pi_expanded"}

    assert _event(session).payment_intent_id == "pi_expanded"
