import hashlib
import hmac
import time
from decimal import Decimal

import pytest
import stripe

from consultpay.core.errors import (
    InvalidSignatureError,
    PaymentError,
    ProviderUnreachableError,
    RateLimitedError,
    ValidationError,
)
from consultpay.providers.base import (
    PAYMENT_CANCELED,
    PAYMENT_FAILED,
    PAYMENT_PROCESSING,
    PAYMENT_SUCCEEDED,
    UNHANDLED_EVENT,
    PaymentProvider,
)
from consultpay.providers.stripe_provider import StripeConfig, StripeProvider

SECRET = "whsec_unit"


def compute_signature(secret: str, ts: int, raw: bytes) -> str:
    return hmac.new(secret.encode(), f"{ts}.".encode() + raw, hashlib.sha256).hexdigest()


@pytest.fixture
def provider():
    return StripeProvider(StripeConfig(
        secret_key="sk_test_unit", webhook_secret=SECRET, webhook_tolerance=300,
        success_url="http://localhost:3000/payment/success?session_id={CHECKOUT_SESSION_ID}",
        cancel_url="http://localhost:3000/payment/cancel",
    ))


def _header(raw: bytes, ts: int | None = None, secret: str = SECRET) -> str:
    ts = ts or int(time.time())
    return f"t={ts},v1={compute_signature(secret, ts, raw)}"


def test_satisfies_provider_contract(provider):
    assert isinstance(provider, PaymentProvider)


def test_valid_signature_returns_event(provider):
    raw = b'{"id": "evt_1", "type": "payment_intent.succeeded", "data": {"object": {"id": "pi_1"}}}'
    event = provider.verify_webhook_signature(raw, _header(raw))
    assert event["id"] == "evt_1"
    assert provider.event_identity(event) == ("evt_1", "payment_intent.succeeded")
    assert provider.extract_reference(event) == "pi_1"


def test_tampered_payload_rejected(provider):
    raw = b'{"id": "evt_1", "type": "payment_intent.succeeded"}'
    header = _header(raw)
    with pytest.raises(InvalidSignatureError):
        provider.verify_webhook_signature(raw.replace(b"evt_1", b"evt_2"), header)


def test_wrong_secret_and_missing_header_rejected(provider):
    raw = b'{"id": "evt_1"}'
    with pytest.raises(InvalidSignatureError):
        provider.verify_webhook_signature(raw, _header(raw, secret="whsec_other"))
    with pytest.raises(InvalidSignatureError):
        provider.verify_webhook_signature(raw, None)
    with pytest.raises(InvalidSignatureError):
        provider.verify_webhook_signature(raw, "garbage")


def test_any_matching_v1_signature_is_accepted(provider):
    raw = b'{"id": "evt_1"}'
    ts = int(time.time())
    header = f"t={ts},v1={'0' * 64},v1={compute_signature(SECRET, ts, raw)}"
    assert provider.verify_webhook_signature(raw, header)["id"] == "evt_1"


def test_old_timestamp_rejected_unless_replayed(provider):
    raw = b'{"id": "evt_old"}'
    header = _header(raw, ts=int(time.time()) - 3600)
    with pytest.raises(InvalidSignatureError):
        provider.verify_webhook_signature(raw, header)
    assert provider.verify_webhook_signature(raw, header, replay=True)["id"] == "evt_old"


def test_signed_garbage_is_invalid_payload(provider):
    raw = b"not json"
    with pytest.raises(ValidationError):
        provider.verify_webhook_signature(raw, _header(raw))


def test_event_mapping(provider):
    obj = {"id": "pi_1", "amount": 5000, "currency": "usd", "status": "succeeded", "created": 1700000000}
    out = provider.process_webhook_event({"type": "payment_intent.succeeded", "data": {"object": obj}})
    assert out.type == PAYMENT_SUCCEEDED
    assert out.payment_intent.amount == Decimal("50.00")
    assert out.payment_intent.confirmed_at is not None

    failed = provider.process_webhook_event({"type": "payment_intent.payment_failed", "data": {"object": {
        **obj, "status": "requires_payment_method",
        "last_payment_error": {"code": "card_declined", "message": "Your card was declined.", "type": "card_error"},
    }}})
    assert failed.type == PAYMENT_FAILED
    assert failed.payment_intent.last_error["code"] == "card_declined"
    assert failed.payment_intent.confirmed_at is None


def test_unknown_event_is_unhandled_not_error(provider):
    out = provider.process_webhook_event({"type": "customer.created", "data": {"object": {"id": "cus_1"}}})
    assert out.type == UNHANDLED_EVENT
    assert out.original_type == "customer.created"


def test_unmapped_status_defaults(provider):
    intent = provider.normalize_payment_intent({"id": "pi_1", "amount": 100, "currency": "USD", "status": "something_new"})
    assert intent.status == "requires_payment_method"
    assert intent.currency == "usd"


def test_create_intent_sends_smallest_units(provider, mocker):
    create = mocker.patch("stripe.PaymentIntent.create", return_value={
        "id": "pi_new", "amount": 5000, "currency": "usd", "status": "requires_payment_method",
        "client_secret": "pi_new_secret_x", "metadata": {"provider": "stripe"}, "created": 1700000000,
    })
    intent = provider.create_payment_intent(Decimal("50.00"), "USD", metadata={"user_id": "u1"}, email="a@b.c")

    kwargs = create.call_args.kwargs
    assert kwargs["amount"] == 5000
    assert kwargs["currency"] == "usd"
    assert kwargs["metadata"] == {"user_id": "u1", "provider": "stripe"}
    assert kwargs["receipt_email"] == "a@b.c"
    assert kwargs["api_key"] == "sk_test_unit"
    assert intent.id == "pi_new"
    assert intent.client_secret == "pi_new_secret_x"
    assert intent.amount == Decimal("50.00")


@pytest.mark.parametrize("error,expected,status", [
    (stripe.CardError("Your card was declined.", "card", "card_declined"), PaymentError, 402),
    (stripe.InvalidRequestError("No such payment_intent", "id"), PaymentError, 400),
    (stripe.RateLimitError("Too many requests"), RateLimitedError, 429),
    (stripe.APIConnectionError("Network down"), ProviderUnreachableError, 503),
    (stripe.AuthenticationError("Bad key"), PaymentError, 500),
    (stripe.APIError("Boom"), PaymentError, 502),
])
def test_sdk_errors_are_translated(provider, mocker, error, expected, status):
    mocker.patch("stripe.PaymentIntent.retrieve", side_effect=error)
    with pytest.raises(expected) as exc:
        provider.get_payment_intent("pi_1")
    assert exc.value.status_code == status


def test_card_error_keeps_decline_code(provider, mocker):
    mocker.patch("stripe.PaymentIntent.create", side_effect=stripe.CardError("Declined", "card", "card_declined"))
    with pytest.raises(PaymentError) as exc:
        provider.create_payment_intent(Decimal("5"), "usd")
    assert exc.value.code == "card_declined"
    assert exc.value.provider == "stripe"


def test_refund_above_charge_rejected_before_refund_call(provider, mocker):
    mocker.patch("stripe.PaymentIntent.retrieve", return_value={
        "id": "pi_1", "amount": 5000, "amount_received": 5000, "currency": "usd", "latest_charge": "ch_1",
    })
    refund = mocker.patch("stripe.Refund.create")
    with pytest.raises(ValidationError):
        provider.create_refund("pi_1", Decimal("75.00"))
    refund.assert_not_called()


def test_refund_requires_charge(provider, mocker):
    mocker.patch("stripe.PaymentIntent.retrieve", return_value={"id": "pi_1", "amount": 5000, "currency": "usd"})
    with pytest.raises(PaymentError) as exc:
        provider.create_refund("pi_1")
    assert exc.value.code == "invalid_request"


def test_partial_refund(provider, mocker):
    mocker.patch("stripe.PaymentIntent.retrieve", return_value={
        "id": "pi_1", "amount": 5000, "amount_received": 5000, "currency": "usd", "latest_charge": "ch_1",
    })
    create = mocker.patch("stripe.Refund.create", return_value={
        "id": "re_1", "amount": 2000, "currency": "usd", "status": "succeeded", "reason": "requested_by_customer",
        "payment_intent": "pi_1", "created": 1700000000,
    })
    refund = provider.create_refund("pi_1", Decimal("20.00"))
    assert create.call_args.kwargs["amount"] == 2000
    assert create.call_args.kwargs["charge"] == "ch_1"
    assert refund.amount == Decimal("20.00")
    assert refund.payment_reference == "pi_1"


def test_signature_is_checked_by_the_sdk(provider, mocker):
    verify = mocker.patch(
        "stripe.WebhookSignature.verify_header",
        side_effect=stripe.SignatureVerificationError("No signatures found", "t=1,v1=x"),
    )
    raw = b'{"id": "evt_1"}'
    with pytest.raises(InvalidSignatureError):
        provider.verify_webhook_signature(raw, "t=1,v1=x")
    verify.assert_called_once_with('{"id": "evt_1"}', "t=1,v1=x", SECRET, tolerance=300)


def test_replay_disables_sdk_tolerance(provider, mocker):
    verify = mocker.patch("stripe.WebhookSignature.verify_header", return_value=True)
    provider.verify_webhook_signature(b'{"id": "evt_1"}', "t=1,v1=x", replay=True)
    assert verify.call_args.kwargs["tolerance"] is None


def test_non_utf8_payload_rejected(provider):
    raw = b"\xff\xfe{}"
    with pytest.raises(InvalidSignatureError):
        provider.verify_webhook_signature(raw, _header(raw))


CHECKOUT_SESSION = {
    "id": "cs_test_1",
    "object": "checkout.session",
    "amount_total": 5000,
    "currency": "usd",
    "status": "open",
    "payment_status": "unpaid",
    "url": "https://checkout.stripe.com/c/pay/cs_test_1",
    "payment_method_types": ["card"],
    "metadata": {"user_id": "u1", "provider": "stripe"},
    "created": 1700000000,
}


def test_create_checkout_session_inline_price(provider, mocker):
    create = mocker.patch("stripe.checkout.Session.create", return_value=CHECKOUT_SESSION)

    session = provider.create_checkout_session(Decimal("50.00"), "USD", metadata={"user_id": "u1"}, email="a@b.c")

    kwargs = create.call_args.kwargs
    assert kwargs["mode"] == "payment"
    assert kwargs["line_items"] == [{
        "price_data": {"currency": "usd", "unit_amount": 5000, "product_data": {"name": "Consultation"}},
        "quantity": 1,
    }]
    assert kwargs["metadata"] == {"user_id": "u1", "provider": "stripe"}
    assert kwargs["customer_email"] == "a@b.c"
    assert kwargs["success_url"].endswith("session_id={CHECKOUT_SESSION_ID}")
    assert kwargs["cancel_url"] == "http://localhost:3000/payment/cancel"
    assert kwargs["expires_at"] > int(time.time())
    assert kwargs["api_key"] == "sk_test_unit"
    assert session.id == "cs_test_1"
    assert session.amount == Decimal("50.00")
    assert session.status == "requires_payment_method"
    assert session.authorization_url == "https://checkout.stripe.com/c/pay/cs_test_1"


def test_create_checkout_session_with_catalogue_price(provider, mocker):
    create = mocker.patch("stripe.checkout.Session.create", return_value=CHECKOUT_SESSION)

    provider.create_checkout_session(Decimal("50.00"), "usd", price_id="price_123", success_url="https://app/ok")

    kwargs = create.call_args.kwargs
    assert kwargs["line_items"] == [{"price": "price_123", "quantity": 1}]
    assert kwargs["success_url"] == "https://app/ok"
    assert "customer_email" not in kwargs


def test_checkout_completed_maps_to_success(provider):
    event = {"id": "evt_cs", "type": "checkout.session.completed", "data": {"object": {
        **CHECKOUT_SESSION, "status": "complete", "payment_status": "paid",
    }}}
    assert provider.extract_reference(event) == "cs_test_1"

    out = provider.process_webhook_event(event)

    assert out.type == PAYMENT_SUCCEEDED
    assert out.payment_intent.id == "cs_test_1"
    assert out.payment_intent.status == "succeeded"
    assert out.payment_intent.confirmed_at is not None


def test_checkout_completed_but_unpaid_is_processing(provider):
    event = {"type": "checkout.session.completed", "data": {"object": {**CHECKOUT_SESSION, "status": "complete"}}}
    out = provider.process_webhook_event(event)
    assert out.type == PAYMENT_PROCESSING
    assert out.payment_intent.status == "processing"


def test_checkout_expired_maps_to_canceled(provider):
    event = {"type": "checkout.session.expired", "data": {"object": {**CHECKOUT_SESSION, "status": "expired"}}}
    out = provider.process_webhook_event(event)
    assert out.type == PAYMENT_CANCELED
    assert out.payment_intent.status == "canceled"


def test_session_reference_is_read_from_checkout(provider, mocker):
    retrieve = mocker.patch("stripe.checkout.Session.retrieve", return_value={**CHECKOUT_SESSION, "payment_status": "paid"})
    intent_retrieve = mocker.patch("stripe.PaymentIntent.retrieve")

    intent = provider.get_payment_intent("cs_test_1")

    assert intent.status == "succeeded"
    retrieve.assert_called_once_with("cs_test_1", api_key="sk_test_unit")
    intent_retrieve.assert_not_called()


def test_open_session_is_cancelled_by_expiring(provider, mocker):
    expire = mocker.patch("stripe.checkout.Session.expire", return_value={**CHECKOUT_SESSION, "status": "expired"})
    cancel = mocker.patch("stripe.PaymentIntent.cancel")

    intent = provider.cancel_payment_intent("cs_test_1")

    assert intent.status == "canceled"
    expire.assert_called_once_with("cs_test_1", api_key="sk_test_unit")
    cancel.assert_not_called()


def test_session_refund_goes_through_its_payment_intent(provider, mocker):
    mocker.patch("stripe.checkout.Session.retrieve", return_value={**CHECKOUT_SESSION, "payment_intent": {
        "id": "pi_from_cs", "amount": 5000, "amount_received": 5000, "currency": "usd", "latest_charge": "ch_cs",
    }})
    create = mocker.patch("stripe.Refund.create", return_value={
        "id": "re_cs", "amount": 5000, "currency": "usd", "status": "succeeded",
        "payment_intent": "pi_from_cs", "created": 1700000000,
    })

    refund = provider.create_refund("cs_test_1")

    assert create.call_args.kwargs["charge"] == "ch_cs"
    assert create.call_args.kwargs["metadata"] == {"payment_intent_id": "pi_from_cs"}
    assert refund.id == "re_cs"


def test_unpaid_session_cannot_be_refunded(provider, mocker):
    mocker.patch("stripe.checkout.Session.retrieve", return_value=CHECKOUT_SESSION)
    refund = mocker.patch("stripe.Refund.create")
    with pytest.raises(PaymentError) as exc:
        provider.create_refund("cs_test_1")
    assert exc.value.code == "invalid_request"
    refund.assert_not_called()
