import json
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal

import stripe

from consultpay.core.errors import (
    InvalidSignatureError,
    PaymentError,
    ProviderUnreachableError,
    RateLimitedError,
    ValidationError,
)
from consultpay.providers.base import (
    DEFAULT_INTENT_STATUS,
    PAYMENT_CANCELED,
    PAYMENT_FAILED,
    PAYMENT_PROCESSING,
    PAYMENT_SUCCEEDED,
    UNHANDLED_EVENT,
    NormalizedIntent,
    NormalizedRefund,
    ProviderName,
    WebhookOutcome,
)
from consultpay.services.amounts import from_provider_units, normalize_currency, to_provider_units

logger = logging.getLogger(__name__)

STATUS_MAP = {
    "requires_payment_method": "requires_payment_method",
    "requires_confirmation": "requires_confirmation",
    "requires_action": "requires_action",
    "processing": "processing",
    "requires_capture": "requires_capture",
    "canceled": "canceled",
    "succeeded": "succeeded",
}

EVENT_MAP = {
    "payment_intent.succeeded": PAYMENT_SUCCEEDED,
    "payment_intent.payment_failed": PAYMENT_FAILED,
    "payment_intent.canceled": PAYMENT_CANCELED,
    "payment_intent.processing": PAYMENT_PROCESSING,
}

CHECKOUT_SESSION_PREFIX = "cs_"
CHECKOUT_COMPLETED = "checkout.session.completed"
# sessions paid by delayed methods settle through the async events
CHECKOUT_EVENT_MAP = {
    "checkout.session.async_payment_succeeded": PAYMENT_SUCCEEDED,
    "checkout.session.async_payment_failed": PAYMENT_FAILED,
    "checkout.session.expired": PAYMENT_CANCELED,
}

SUPPORTED_CURRENCIES = [
    "usd", "eur", "gbp", "cad", "aud", "jpy", "chf", "sek", "nok", "dkk",
    "pln", "czk", "huf", "bgn", "ron", "ils", "inr", "krw", "myr",
    "php", "sgd", "thb", "vnd", "brl", "mxn", "hkd", "nzd",
]

SUPPORTED_PAYMENT_METHODS = [
    "card", "acss_debit", "afterpay_clearpay", "alipay", "au_becs_debit",
    "bacs_debit", "bancontact", "boleto", "eps", "fpx", "giropay", "grabpay",
    "ideal", "klarna", "oxxo", "p24", "sepa_debit", "sofort", "wechat_pay",
]


@dataclass
class StripeConfig:
    secret_key: str
    webhook_secret: str
    webhook_tolerance: int = 300  # seconds between signed timestamp and now
    timeout: int = 20
    # Checkout redirects; {CHECKOUT_SESSION_ID} is filled in by Stripe
    success_url: str = ""
    cancel_url: str = ""
    checkout_expires_minutes: int = 30


def _as_dict(obj) -> dict:
    if obj is None:
        return {}
    if hasattr(obj, "to_dict_recursive"):
        return obj.to_dict_recursive()
    if isinstance(obj, dict):
        return obj
    if hasattr(obj, "to_dict"):
        return obj.to_dict()
    return dict(obj)


def _ts(value) -> datetime | None:
    if not value:
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc)


class StripeProvider:
    name = ProviderName.STRIPE

    def __init__(self, cfg: StripeConfig):
        self.cfg = cfg
        stripe.default_http_client = stripe.RequestsClient(timeout=cfg.timeout)

    # -- intents -----------------------------------------------------------

    def create_payment_intent(self, amount, currency, customer_id=None, metadata=None, email=None, return_url=None) -> NormalizedIntent:
        code = normalize_currency(currency)
        params = {
            "amount": to_provider_units(amount, code),
            "currency": code,
            "metadata": {**(metadata or {}), "provider": "stripe"},
            "automatic_payment_methods": {"enabled": True},
        }
        if customer_id:
            params["customer"] = customer_id
        if email:
            params["receipt_email"] = email
        try:
            intent = stripe.PaymentIntent.create(api_key=self.cfg.secret_key, **params)
        except stripe.StripeError as e:
            raise self._translate(e)
        return self.normalize_payment_intent(intent)

    def confirm_payment_intent(self, provider_payment_id, payment_method=None) -> NormalizedIntent:
        params = {}
        if payment_method:
            params["payment_method"] = payment_method
        try:
            intent = stripe.PaymentIntent.confirm(provider_payment_id, api_key=self.cfg.secret_key, **params)
        except stripe.StripeError as e:
            raise self._translate(e)
        return self.normalize_payment_intent(intent)

    def get_payment_intent(self, provider_payment_id) -> NormalizedIntent:
        try:
            if provider_payment_id.startswith(CHECKOUT_SESSION_PREFIX):
                return self.normalize_checkout_session(
                    stripe.checkout.Session.retrieve(provider_payment_id, api_key=self.cfg.secret_key)
                )
            intent = stripe.PaymentIntent.retrieve(provider_payment_id, api_key=self.cfg.secret_key)
        except stripe.StripeError as e:
            raise self._translate(e)
        return self.normalize_payment_intent(intent)

    def cancel_payment_intent(self, provider_payment_id, reason="requested_by_customer") -> NormalizedIntent:
        try:
            if provider_payment_id.startswith(CHECKOUT_SESSION_PREFIX):
                # an open Checkout Session is cancelled by expiring it
                return self.normalize_checkout_session(
                    stripe.checkout.Session.expire(provider_payment_id, api_key=self.cfg.secret_key)
                )
            intent = stripe.PaymentIntent.cancel(
                provider_payment_id, api_key=self.cfg.secret_key, cancellation_reason=reason,
            )
        except stripe.StripeError as e:
            raise self._translate(e)
        return self.normalize_payment_intent(intent)

    # -- checkout ----------------------------------------------------------

    def create_checkout_session(self, amount, currency, price_id=None, metadata=None, email=None,
                                description=None, success_url=None, cancel_url=None) -> NormalizedIntent:
        """Hosted Stripe Checkout for one line item.

        With ``price_id`` the catalogue price is charged; otherwise an inline
        price is built from ``amount``. The session id becomes the payment's
        provider reference.
        """
        code = normalize_currency(currency)
        if price_id:
            line_item = {"price": price_id, "quantity": 1}
        else:
            line_item = {
                "price_data": {
                    "currency": code,
                    "unit_amount": to_provider_units(amount, code),
                    "product_data": {"name": description or "Consultation"},
                },
                "quantity": 1,
            }
        params = {
            "mode": "payment",
            "line_items": [line_item],
            "metadata": {**(metadata or {}), "provider": "stripe"},
            "success_url": success_url or self.cfg.success_url,
            "cancel_url": cancel_url or self.cfg.cancel_url,
            "expires_at": int(time.time()) + self.cfg.checkout_expires_minutes * 60,
        }
        if email:
            params["customer_email"] = email
        try:
            session = stripe.checkout.Session.create(api_key=self.cfg.secret_key, **params)
        except stripe.StripeError as e:
            raise self._translate(e)
        return self.normalize_checkout_session(session)

    def _intent_for(self, provider_payment_id) -> dict:
        if not provider_payment_id.startswith(CHECKOUT_SESSION_PREFIX):
            return _as_dict(stripe.PaymentIntent.retrieve(provider_payment_id, api_key=self.cfg.secret_key))
        session = _as_dict(stripe.checkout.Session.retrieve(
            provider_payment_id, api_key=self.cfg.secret_key, expand=["payment_intent"],
        ))
        pi = session.get("payment_intent")
        if not pi:
            raise PaymentError("Checkout session has no payment yet", provider="stripe", code="invalid_request")
        if isinstance(pi, dict):
            return pi
        return _as_dict(stripe.PaymentIntent.retrieve(pi, api_key=self.cfg.secret_key))

    # -- refunds -----------------------------------------------------------

    def create_refund(self, provider_payment_id, amount=None, reason="requested_by_customer") -> NormalizedRefund:
        try:
            intent = self._intent_for(provider_payment_id)
        except stripe.StripeError as e:
            raise self._translate(e)

        charge = intent.get("latest_charge")
        if isinstance(charge, dict):
            charge = charge.get("id")
        if not charge:
            raise PaymentError("No charge found for this payment intent", provider="stripe", code="invalid_request")

        currency = intent.get("currency") or "usd"
        params = {
            "charge": charge,
            "reason": reason,
            "metadata": {"payment_intent_id": intent.get("id") or provider_payment_id},
        }
        if amount is not None:
            units = to_provider_units(amount, currency)
            captured = intent.get("amount_received") or intent.get("amount") or 0
            if units > captured:
                raise ValidationError("Refund amount exceeds the original charge", field="amount")
            params["amount"] = units
        try:
            refund = stripe.Refund.create(api_key=self.cfg.secret_key, **params)
        except stripe.StripeError as e:
            raise self._translate(e)
        return self.normalize_refund(refund, provider_payment_id)

    # -- webhooks ----------------------------------------------------------

    def verify_webhook_signature(self, raw_payload: bytes, signature_header, *, replay=False) -> dict:
        if not self.cfg.webhook_secret or not signature_header:
            raise InvalidSignatureError(provider="stripe")
        try:
            payload = raw_payload.decode("utf-8")
        except UnicodeDecodeError:
            # Stripe only ever signs UTF-8 JSON
            raise InvalidSignatureError(provider="stripe")
        try:
            stripe.WebhookSignature.verify_header(
                payload,
                signature_header,
                self.cfg.webhook_secret,
                # stored deliveries are replayed long after signing
                tolerance=None if replay else (self.cfg.webhook_tolerance or None),
            )
        except stripe.SignatureVerificationError as e:
            logger.warning("Stripe signature rejected: %s", e)
            raise InvalidSignatureError(provider="stripe")
        try:
            event = json.loads(payload)
        except json.JSONDecodeError:
            raise ValidationError("invalid payload")
        if not isinstance(event, dict):
            raise ValidationError("invalid payload")
        return event

    def event_identity(self, event: dict) -> tuple[str | None, str]:
        return event.get("id"), event.get("type") or "unknown"

    def extract_reference(self, event: dict) -> str | None:
        obj = (event.get("data") or {}).get("object") or {}
        if (event.get("type") or "").startswith(("payment_intent.", "checkout.session.")):
            return obj.get("id")
        pi = obj.get("payment_intent")
        if isinstance(pi, dict):
            return pi.get("id")
        return pi

    def process_webhook_event(self, event: dict) -> WebhookOutcome:
        event_type = event.get("type")
        obj = (event.get("data") or {}).get("object") or {}
        if event_type == CHECKOUT_COMPLETED or event_type in CHECKOUT_EVENT_MAP:
            session = self.normalize_checkout_session(obj)
            if event_type in CHECKOUT_EVENT_MAP:
                outcome_type = CHECKOUT_EVENT_MAP[event_type]
            elif session.status == "succeeded":
                outcome_type = PAYMENT_SUCCEEDED
            else:
                outcome_type = PAYMENT_PROCESSING
            return WebhookOutcome(type=outcome_type, payment_intent=session, original_type=event_type)
        outcome_type = EVENT_MAP.get(event_type)
        if outcome_type is None:
            return WebhookOutcome(type=UNHANDLED_EVENT, original_type=event_type, data=obj)
        return WebhookOutcome(type=outcome_type, payment_intent=self.normalize_payment_intent(obj), original_type=event_type)

    # -- normalisation -----------------------------------------------------

    def normalize_payment_intent(self, obj) -> NormalizedIntent:
        pi = _as_dict(obj)
        currency = (pi.get("currency") or "usd").lower()
        native_status = pi.get("status")
        status = STATUS_MAP.get(native_status, DEFAULT_INTENT_STATUS)
        err = pi.get("last_payment_error")
        last_error = None
        if err:
            last_error = {"code": err.get("code"), "message": err.get("message"), "type": err.get("type")}

        customer = pi.get("customer")
        if isinstance(customer, dict):
            customer = customer.get("id")
        payment_method_id = pi.get("payment_method")
        if isinstance(payment_method_id, dict):
            payment_method_id = payment_method_id.get("id")

        return NormalizedIntent(
            id=pi.get("id"),
            provider="stripe",
            amount=from_provider_units(pi.get("amount"), currency),
            currency=currency,
            status=status,
            client_secret=pi.get("client_secret"),
            customer_id=customer,
            payment_method_id=payment_method_id,
            payment_method=self._payment_method_descriptor(pi),
            metadata=dict(pi.get("metadata") or {}),
            created_at=_ts(pi.get("created")),
            confirmed_at=datetime.now(timezone.utc) if native_status == "succeeded" else None,
            last_error=last_error,
            raw=pi,
        )

    def normalize_checkout_session(self, obj) -> NormalizedIntent:
        s = _as_dict(obj)
        currency = (s.get("currency") or "usd").lower()
        if s.get("payment_status") in ("paid", "no_payment_required"):
            status = "succeeded"
        elif s.get("status") == "expired":
            status = "canceled"
        elif s.get("status") == "complete":
            status = "processing"
        else:
            status = DEFAULT_INTENT_STATUS

        customer = s.get("customer")
        if isinstance(customer, dict):
            customer = customer.get("id")
        types = s.get("payment_method_types") or []

        return NormalizedIntent(
            id=s.get("id"),
            provider="stripe",
            amount=from_provider_units(s.get("amount_total"), currency),
            currency=currency,
            status=status,
            customer_id=customer,
            payment_method=types[0] if types else None,
            authorization_url=s.get("url"),
            metadata=dict(s.get("metadata") or {}),
            created_at=_ts(s.get("created")),
            confirmed_at=datetime.now(timezone.utc) if status == "succeeded" else None,
            raw=s,
        )

    def normalize_refund(self, obj, provider_payment_id: str | None = None) -> NormalizedRefund:
        r = _as_dict(obj)
        currency = (r.get("currency") or "usd").lower()
        return NormalizedRefund(
            id=r.get("id"),
            provider="stripe",
            amount=from_provider_units(r.get("amount"), currency),
            currency=currency,
            status=r.get("status") or "pending",
            reason=r.get("reason"),
            payment_reference=provider_payment_id or r.get("payment_intent"),
            metadata=dict(r.get("metadata") or {}),
            created_at=_ts(r.get("created")),
            raw=r,
        )

    @staticmethod
    def _payment_method_descriptor(pi: dict) -> str | None:
        charge = pi.get("latest_charge")
        if isinstance(charge, dict):
            details = charge.get("payment_method_details") or {}
            if details.get("type"):
                return details["type"]
        types = pi.get("payment_method_types") or []
        return types[0] if types else None

    def _translate(self, e: Exception):
        logger.warning("Stripe error: %s (%s)", type(e).__name__, getattr(e, "code", None))
        msg = getattr(e, "user_message", None) or str(e) or "Payment provider error"
        if isinstance(e, stripe.CardError):
            return PaymentError(msg, provider="stripe", code=getattr(e, "code", None) or "card_declined", status_code=402)
        if isinstance(e, stripe.RateLimitError):
            return RateLimitedError(provider="stripe")
        if isinstance(e, stripe.InvalidRequestError):
            return PaymentError(msg, provider="stripe", code="invalid_request")
        if isinstance(e, stripe.AuthenticationError):
            return PaymentError("Payment service configuration error", provider="stripe", code="authentication_error", status_code=500)
        if isinstance(e, stripe.APIConnectionError):
            return ProviderUnreachableError(provider="stripe")
        return PaymentError("Payment provider error", provider="stripe", code="provider_error", status_code=502)

    def get_supported_currencies(self) -> list[str]:
        return list(SUPPORTED_CURRENCIES)

    def get_supported_payment_methods(self) -> list[str]:
        return list(SUPPORTED_PAYMENT_METHODS)
