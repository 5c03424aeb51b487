import hashlib
import hmac
import json
from decimal import Decimal

import pytest
import requests

from consultpay.core.errors import (
    InvalidSignatureError,
    NotFoundError,
    PaymentError,
    ProviderUnreachableError,
    RateLimitedError,
    ValidationError,
)
from consultpay.providers.base import PAYMENT_FAILED, PAYMENT_SUCCEEDED, UNHANDLED_EVENT
from consultpay.providers.paystack_client import PaystackClient, PaystackConfig
from consultpay.providers.paystack_provider import PaystackProvider

SECRET = "sk_test_unit"


@pytest.fixture
def provider():
    return PaystackProvider(PaystackConfig(secret_key=SECRET, webhook_secret=SECRET, callback_url="http://localhost:3000/payment/callback"))


def _sig(raw: bytes) -> str:
    return hmac.new(SECRET.encode(), raw, hashlib.sha512).hexdigest()


def _response(mocker, status_code=200, body=None):
    r = mocker.Mock()
    r.status_code = status_code
    r.text = json.dumps(body) if body is not None else ""
    r.json.return_value = body
    return r


def test_signature_is_hmac_sha512_of_raw_body(provider):
    raw = b'{"event":"charge.success","data":{"id":42,"reference":"ref_1"}}'
    event = provider.verify_webhook_signature(raw, _sig(raw))
    assert event["event"] == "charge.success"
    assert provider.event_identity(event) == ("charge.success:42", "charge.success")
    assert provider.extract_reference(event) == "ref_1"


def test_bad_signature_rejected(provider):
    raw = b'{"event":"charge.success","data":{"reference":"ref_1"}}'
    with pytest.raises(InvalidSignatureError):
        provider.verify_webhook_signature(raw, "deadbeef")
    with pytest.raises(InvalidSignatureError):
        provider.verify_webhook_signature(raw + b" ", _sig(raw))
    with pytest.raises(InvalidSignatureError):
        provider.verify_webhook_signature(raw, None)


def test_event_identity_falls_back_to_reference(provider):
    assert provider.event_identity({"event": "charge.failed", "data": {"reference": "ref_9"}}) == ("charge.failed:ref_9", "charge.failed")
    assert provider.event_identity({"event": "charge.failed", "data": {}}) == (None, "charge.failed")


def test_event_mapping(provider):
    ok = provider.process_webhook_event({"event": "charge.success", "data": {
        "reference": "ref_1", "amount": 500000, "currency": "NGN", "status": "success",
        "gateway_response": "Successful", "channel": "card", "paid_at": "2026-10-19T10:00:00.000Z",
        "customer": {"customer_code": "CUS_1"}, "authorization": {"authorization_code": "AUTH_1"},
    }})
    assert ok.type == PAYMENT_SUCCEEDED
    intent = ok.payment_intent
    assert intent.id == "ref_1"
    assert intent.amount == Decimal("5000.00")
    assert intent.currency == "ngn"
    assert intent.status == "succeeded"
    assert intent.customer_id == "CUS_1"
    assert intent.payment_method_id == "AUTH_1"
    assert intent.payment_method == "card"
    assert intent.last_error is None
    assert intent.confirmed_at.year == 2026

    failed = provider.process_webhook_event({"event": "charge.failed", "data": {
        "reference": "ref_2", "amount": 1000, "currency": "NGN", "status": "failed", "gateway_response": "Declined",
    }})
    assert failed.type == PAYMENT_FAILED
    assert failed.payment_intent.status == "payment_failed"
    assert failed.payment_intent.last_error["message"] == "Declined"

    assert provider.process_webhook_event({"event": "transfer.success", "data": {}}).type == UNHANDLED_EVENT


@pytest.mark.parametrize("native,normalized", [
    ("success", "succeeded"),
    ("failed", "payment_failed"),
    ("abandoned", "canceled"),
    ("pending", "processing"),
    ("ongoing", "requires_payment_method"),
])
def test_status_table(provider, native, normalized):
    assert provider.normalize_payment_intent({"reference": "r", "amount": 100, "status": native}).status == normalized


def test_create_intent_requires_email(provider):
    with pytest.raises(ValidationError):
        provider.create_payment_intent(Decimal("10"), "NGN")


def test_create_intent_initializes_in_kobo(provider, mocker):
    init = mocker.patch.object(provider.client, "initialize_transaction", return_value={
        "authorization_url": "https://checkout.paystack.com/abc", "access_code": "abc", "reference": "ref_x",
    })
    intent = provider.create_payment_intent(Decimal("5000.00"), "ngn", metadata={"user_id": "u1"}, email="ada@example.com")

    kwargs = init.call_args.kwargs
    assert kwargs["amount"] == 500000
    assert kwargs["currency"] == "NGN"
    assert kwargs["email"] == "ada@example.com"
    assert kwargs["metadata"]["provider"] == "paystack"
    assert kwargs["reference"].startswith("ref_")
    assert "card" in kwargs["channels"]
    assert intent.id == "ref_x"
    assert intent.client_secret == "abc"
    assert intent.authorization_url == "https://checkout.paystack.com/abc"
    assert intent.amount == Decimal("5000.00")


def test_unsupported_currency_rejected(provider):
    with pytest.raises(ValidationError):
        provider.create_payment_intent(Decimal("10"), "EUR", email="ada@example.com")


def test_cancel_is_not_supported(provider):
    with pytest.raises(PaymentError) as exc:
        provider.cancel_payment_intent("ref_1")
    assert exc.value.code == "not_supported"


def test_refund_above_original_rejected(provider, mocker):
    mocker.patch.object(provider.client, "verify_transaction", return_value={"reference": "ref_1", "amount": 500000, "currency": "NGN"})
    refund = mocker.patch.object(provider.client, "create_refund")
    with pytest.raises(ValidationError):
        provider.create_refund("ref_1", Decimal("6000.00"))
    refund.assert_not_called()


def test_refund_uses_original_currency(provider, mocker):
    mocker.patch.object(provider.client, "verify_transaction", return_value={"reference": "ref_1", "amount": 500000, "currency": "NGN"})
    create = mocker.patch.object(provider.client, "create_refund", return_value={
        "id": 77, "amount": 100000, "currency": "NGN", "status": "pending", "transaction": {"reference": "ref_1"},
    })
    refund = provider.create_refund("ref_1", Decimal("1000.00"), reason="duplicate")
    assert create.call_args.kwargs == {
        "transaction": "ref_1", "currency": "NGN", "amount": 100000, "merchant_note": "Refund requested: duplicate",
    }
    assert refund.id == "77"
    assert refund.amount == Decimal("1000.00")
    assert refund.payment_reference == "ref_1"


def test_client_returns_envelope_data(mocker):
    session = mocker.Mock()
    session.request.return_value = _response(mocker, 200, {"status": True, "message": "ok", "data": {"reference": "ref_1"}})
    client = PaystackClient(PaystackConfig(secret_key=SECRET, webhook_secret=SECRET, timeout=7), session=session)

    assert client.verify_transaction("ref_1") == {"reference": "ref_1"}
    kwargs = session.request.call_args.kwargs
    assert kwargs["url"] == "https://api.paystack.co/transaction/verify/ref_1"
    assert kwargs["headers"]["Authorization"] == f"Bearer {SECRET}"
    assert kwargs["timeout"] == 7


@pytest.mark.parametrize("status_code,body,expected", [
    (400, {"status": False, "message": "Invalid amount"}, PaymentError),
    (401, {"status": False, "message": "Invalid key"}, PaymentError),
    (404, {"status": False, "message": "Transaction reference not found"}, NotFoundError),
    (429, {"status": False, "message": "slow down"}, RateLimitedError),
    (503, None, PaymentError),
    (200, {"status": False, "message": "Duplicate reference"}, PaymentError),
])
def test_client_error_mapping(mocker, status_code, body, expected):
    session = mocker.Mock()
    session.request.return_value = _response(mocker, status_code, body)
    client = PaystackClient(PaystackConfig(secret_key=SECRET, webhook_secret=SECRET), session=session)
    with pytest.raises(expected):
        client.verify_transaction("ref_1")


def test_client_auth_failure_is_server_side(mocker):
    session = mocker.Mock()
    session.request.return_value = _response(mocker, 401, {"status": False, "message": "Invalid key"})
    client = PaystackClient(PaystackConfig(secret_key=SECRET, webhook_secret=SECRET), session=session)
    with pytest.raises(PaymentError) as exc:
        client.verify_transaction("ref_1")
    assert exc.value.code == "authentication_error"
    assert exc.value.status_code == 500


def test_client_timeout_is_unreachable(mocker):
    session = mocker.Mock()
    session.request.side_effect = requests.Timeout("read timed out")
    client = PaystackClient(PaystackConfig(secret_key=SECRET, webhook_secret=SECRET), session=session)
    with pytest.raises(ProviderUnreachableError):
        client.verify_transaction("ref_1")
