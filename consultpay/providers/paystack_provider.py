import hashlib
import hmac
import json
import logging
import time
import uuid
from datetime import datetime, timezone

from consultpay.core.errors import InvalidSignatureError, PaymentError, ValidationError
from consultpay.providers.base import (
    DEFAULT_INTENT_STATUS,
    PAYMENT_FAILED,
    PAYMENT_SUCCEEDED,
    UNHANDLED_EVENT,
    NormalizedIntent,
    NormalizedRefund,
    ProviderName,
    WebhookOutcome,
)
from consultpay.providers.paystack_client import PaystackClient, PaystackConfig
from consultpay.services.amounts import from_provider_units, normalize_currency, to_provider_units

logger = logging.getLogger(__name__)

STATUS_MAP = {
    "success": "succeeded",
    "failed": "payment_failed",
    "abandoned": "canceled",
    "pending": "processing",
}

EVENT_MAP = {
    "charge.success": PAYMENT_SUCCEEDED,
    "charge.failed": PAYMENT_FAILED,
}

CHANNEL_MAP = {
    "card": "card",
    "bank_transfer": "bank_transfer",
    "bank": "bank",
    "ussd": "ussd",
    "mobile_money": "mobile_money",
    "qr": "qr",
}

SUPPORTED_CURRENCIES = ["ngn", "usd", "ghs", "zar", "kes"]
SUPPORTED_PAYMENT_METHODS = ["card", "bank_transfer", "ussd", "mobile_money", "qr"]


def _parse_dt(value) -> datetime | None:
    if not value:
        return None
    try:
        dt = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return None
    return dt if dt.tzinfo else dt.replace(tzinfo=timezone.utc)


def compute_signature(secret: str, raw_payload: bytes) -> str:
    return hmac.new(secret.encode("utf-8"), raw_payload, hashlib.sha512).hexdigest()


def generate_reference() -> str:
    return f"ref_{int(time.time() * 1000)}_{uuid.uuid4().hex[:6]}"


class PaystackProvider:
    name = ProviderName.PAYSTACK

    def __init__(self, cfg: PaystackConfig, client: PaystackClient | None = None):
        self.cfg = cfg
        self.client = client or PaystackClient(cfg)

    def create_payment_intent(self, amount, currency, customer_id=None, metadata=None, email=None, return_url=None, payment_method_types=None) -> NormalizedIntent:
        code = normalize_currency(currency)
        if code not in SUPPORTED_CURRENCIES:
            raise ValidationError(f"Currency {code.upper()} is not supported by Paystack", field="currency")
        if not email:
            raise ValidationError("Customer email is required for Paystack payments", field="customer_email")

        units = to_provider_units(amount, code)
        meta = {**(metadata or {}), "provider": "paystack"}
        if customer_id:
            meta["customer_id"] = customer_id
        channels = [CHANNEL_MAP[t] for t in (payment_method_types or SUPPORTED_PAYMENT_METHODS) if t in CHANNEL_MAP]
        reference = generate_reference()
        data = self.client.initialize_transaction(
            email=email,
            amount=units,
            currency=code.upper(),
            reference=reference,
            metadata=meta,
            channels=channels,
            callback_url=return_url,
        )
        # initialize only echoes the access code and redirect URL
        return self.normalize_payment_intent(
            {**data, "reference": data.get("reference") or reference},
            init={"amount": units, "currency": code, "metadata": meta},
        )

    def confirm_payment_intent(self, provider_payment_id, payment_method=None) -> NormalizedIntent:
        # Paystack has no separate confirm step; verification is the confirmation
        return self.get_payment_intent(provider_payment_id)

    def get_payment_intent(self, provider_payment_id) -> NormalizedIntent:
        return self.normalize_payment_intent(self.client.verify_transaction(provider_payment_id))

    def cancel_payment_intent(self, provider_payment_id, reason="requested_by_customer") -> NormalizedIntent:
        raise PaymentError(
            "Payment cancellation not supported after initialization in Paystack",
            provider="paystack",
            code="not_supported",
        )

    def create_refund(self, provider_payment_id, amount=None, reason="requested_by_customer") -> NormalizedRefund:
        tx = self.client.verify_transaction(provider_payment_id)
        currency = (tx.get("currency") or "NGN").lower()
        units = None
        if amount is not None:
            units = to_provider_units(amount, currency)
            if units > int(tx.get("amount") or 0):
                raise ValidationError("Refund amount exceeds the original charge", field="amount")
        data = self.client.create_refund(
            transaction=provider_payment_id,
            currency=currency.upper(),
            amount=units,
            merchant_note=f"Refund requested: {reason}",
        )
        return self.normalize_refund(data, provider_payment_id, reason)

    def verify_webhook_signature(self, raw_payload: bytes, signature_header, *, replay=False) -> dict:
        if not self.cfg.webhook_secret or not signature_header:
            raise InvalidSignatureError(provider="paystack")
        expected = compute_signature(self.cfg.webhook_secret, raw_payload)
        if not hmac.compare_digest(expected, signature_header.strip().lower()):
            raise InvalidSignatureError(provider="paystack")
        try:
            event = json.loads(raw_payload.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError):
            raise ValidationError("invalid payload")
        if not isinstance(event, dict):
            raise ValidationError("invalid payload")
        return event

    def event_identity(self, event: dict) -> tuple[str | None, str]:
        event_type = event.get("event") or "unknown"
        data = event.get("data") or {}
        ident = data.get("id") or data.get("reference")
        # Paystack has no event id; one transaction can emit several event types
        return (f"{event_type}:{ident}" if ident else None), event_type

    def extract_reference(self, event: dict) -> str | None:
        return (event.get("data") or {}).get("reference")

    def process_webhook_event(self, event: dict) -> WebhookOutcome:
        event_type = event.get("event")
        data = event.get("data") or {}
        outcome_type = EVENT_MAP.get(event_type)
        if outcome_type is None:
            return WebhookOutcome(type=UNHANDLED_EVENT, original_type=event_type, data=data)
        return WebhookOutcome(type=outcome_type, payment_intent=self.normalize_payment_intent(data), original_type=event_type)

    def normalize_payment_intent(self, tx: dict, init: dict | None = None) -> NormalizedIntent:
        init = init or {}
        currency = (tx.get("currency") or init.get("currency") or "ngn").lower()
        units = tx.get("amount") if tx.get("amount") is not None else init.get("amount")
        native_status = tx.get("status")
        metadata = tx.get("metadata")
        if not isinstance(metadata, dict):
            metadata = init.get("metadata") or {}
        gateway_response = tx.get("gateway_response")
        customer = tx.get("customer") or {}
        authorization = tx.get("authorization") or {}
        created_at = _parse_dt(tx.get("created_at") or tx.get("createdAt")) or datetime.now(timezone.utc)

        return NormalizedIntent(
            id=tx.get("reference") or str(tx.get("id") or ""),
            provider="paystack",
            amount=from_provider_units(units or 0, currency),
            currency=currency,
            status=STATUS_MAP.get(native_status, DEFAULT_INTENT_STATUS),
            client_secret=tx.get("access_code"),
            customer_id=customer.get("customer_code") if isinstance(customer, dict) else None,
            payment_method_id=authorization.get("authorization_code") if isinstance(authorization, dict) else None,
            payment_method=tx.get("channel"),
            authorization_url=tx.get("authorization_url"),
            metadata=dict(metadata),
            created_at=created_at,
            confirmed_at=(_parse_dt(tx.get("paid_at")) or created_at) if native_status == "success" else None,
            last_error=(
                {"code": "payment_failed", "message": gateway_response, "type": "card_error"}
                if gateway_response and gateway_response != "Successful"
                else None
            ),
            raw=tx,
        )

    def normalize_refund(self, data: dict, provider_payment_id: str, reason: str | None = None) -> NormalizedRefund:
        currency = (data.get("currency") or "ngn").lower()
        transaction = data.get("transaction")
        if isinstance(transaction, dict):
            transaction = transaction.get("reference") or transaction.get("id")
        return NormalizedRefund(
            id=str(data.get("id") or ""),
            provider="paystack",
            amount=from_provider_units(data.get("amount") or 0, currency),
            currency=currency,
            status=data.get("status") or "pending",
            reason=reason,
            payment_reference=provider_payment_id or (str(transaction) if transaction else None),
            metadata=data.get("metadata") if isinstance(data.get("metadata"), dict) else {},
            created_at=_parse_dt(data.get("createdAt") or data.get("created_at")),
            raw=data,
        )

    def get_supported_currencies(self) -> list[str]:
        return list(SUPPORTED_CURRENCIES)

    def get_supported_payment_methods(self) -> list[str]:
        return list(SUPPORTED_PAYMENT_METHODS)
