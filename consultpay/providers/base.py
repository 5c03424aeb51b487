"""Capability contract implemented by every payment provider adapter.

Adapters normalise their gateway's data shapes into the dataclasses below and
translate every gateway error into ``consultpay.core.errors``. Amounts passed
in and returned are always in major units.
"""
from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Protocol, runtime_checkable


class ProviderName(str, enum.Enum):
    STRIPE = "stripe"
    PAYSTACK = "paystack"


# Normalized outcome types produced by process_webhook_event
PAYMENT_SUCCEEDED = "payment_succeeded"
PAYMENT_FAILED = "payment_failed"
PAYMENT_CANCELED = "payment_canceled"
PAYMENT_PROCESSING = "payment_processing"
UNHANDLED_EVENT = "unhandled_event"

# Normalized intent statuses
INTENT_STATUSES = (
    "requires_payment_method",
    "requires_confirmation",
    "requires_action",
    "processing",
    "requires_capture",
    "canceled",
    "succeeded",
    "payment_failed",
)
DEFAULT_INTENT_STATUS = "requires_payment_method"


@dataclass
class NormalizedIntent:
    id: str
    provider: str
    amount: Decimal
    currency: str
    status: str
    client_secret: str | None = None  # Stripe client_secret / Paystack access_code
    customer_id: str | None = None
    payment_method_id: str | None = None
    payment_method: str | None = None  # descriptor such as "card" or "bank_transfer"
    authorization_url: str | None = None
    metadata: dict = field(default_factory=dict)
    created_at: datetime | None = None
    confirmed_at: datetime | None = None
    last_error: dict | None = None
    raw: Any = None


@dataclass
class NormalizedRefund:
    id: str
    provider: str
    amount: Decimal
    currency: str
    status: str
    reason: str | None = None
    payment_reference: str | None = None
    metadata: dict = field(default_factory=dict)
    created_at: datetime | None = None
    raw: Any = None


@dataclass
class WebhookOutcome:
    type: str
    payment_intent: NormalizedIntent | None = None
    refund: NormalizedRefund | None = None
    original_type: str | None = None
    data: Any = None


@runtime_checkable
class PaymentProvider(Protocol):
    name: ProviderName

    def create_payment_intent(
        self,
        amount: Decimal,
        currency: str,
        customer_id: str | None = None,
        metadata: dict | None = None,
        email: str | None = None,
        return_url: str | None = None,
    ) -> NormalizedIntent: ...

    def confirm_payment_intent(self, provider_payment_id: str, payment_method: str | None = None) -> NormalizedIntent: ...

    def get_payment_intent(self, provider_payment_id: str) -> NormalizedIntent: ...

    def cancel_payment_intent(self, provider_payment_id: str, reason: str = "requested_by_customer") -> NormalizedIntent: ...

    def create_refund(self, provider_payment_id: str, amount: Decimal | None = None, reason: str = "requested_by_customer") -> NormalizedRefund: ...

    def verify_webhook_signature(self, raw_payload: bytes, signature_header: str | None, *, replay: bool = False) -> dict: ...

    def event_identity(self, event: dict) -> tuple[str | None, str]: ...

    def extract_reference(self, event: dict) -> str | None: ...

    def process_webhook_event(self, event: dict) -> WebhookOutcome: ...

    def get_supported_currencies(self) -> list[str]: ...

    def get_supported_payment_methods(self) -> list[str]: ...
