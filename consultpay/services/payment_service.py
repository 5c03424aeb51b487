import logging
from datetime import datetime
from decimal import Decimal

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from consultpay.core.errors import ConflictError, DatabaseError, NotFoundError, ValidationError
from consultpay.models.payment import Payment
from consultpay.providers.base import NormalizedIntent, ProviderName
from consultpay.providers.registry import get_provider
from consultpay.services import payment_repository as repo
from consultpay.services.amounts import convert_approximate, normalize_currency, quantize, validate_amount
from consultpay.services.event_log import record_event
from consultpay.services.payment_state import (
    APPLIED,
    CANCELLED,
    PENDING,
    PROCESSING,
    REFUNDED,
    SUCCEEDED,
    extras_from_intent,
    status_for_intent,
    update_status,
)

logger = logging.getLogger(__name__)

# Paystack charges in currencies it does not settle are converted to this one
PAYSTACK_SETTLEMENT_CURRENCY = "ngn"


def _commit(db: Session, operation: str):
    try:
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        logger.exception("Commit failed during %s", operation)
        raise DatabaseError(operation=operation)


def create_payment(
    db: Session,
    providers: dict,
    provider_name,
    *,
    user_id: str,
    consultation_id: str,
    amount,
    currency: str,
    customer_email: str | None = None,
    customer_name: str | None = None,
    appointment_id: str | None = None,
    customer_id: str | None = None,
    metadata: dict | None = None,
    return_url: str | None = None,
) -> tuple[Payment, NormalizedIntent]:
    provider = get_provider(provider_name, providers)
    code = normalize_currency(currency)
    value = validate_amount(amount, code)
    meta = repo.clean_metadata(metadata)

    if provider.name == ProviderName.PAYSTACK:
        if not customer_email:
            raise ValidationError("Customer email is required for Paystack payments", field="customer_email")
        if code not in provider.get_supported_currencies():
            converted, rate = convert_approximate(value, code, PAYSTACK_SETTLEMENT_CURRENCY)
            meta.update({
                "original_amount": str(value),
                "original_currency": code.upper(),
                "approximate_rate": str(rate),
            })
            logger.info("Converted %s %s to %s %s for Paystack (approximate rate %s)", value, code, converted, PAYSTACK_SETTLEMENT_CURRENCY, rate)
            code, value = PAYSTACK_SETTLEMENT_CURRENCY, validate_amount(converted, PAYSTACK_SETTLEMENT_CURRENCY)
    elif code not in provider.get_supported_currencies():
        raise ValidationError(f"Currency {code.upper()} is not supported by {provider.name.value}", field="currency")

    intent_meta = {**meta, "user_id": user_id, "consultation_id": consultation_id}
    if appointment_id:
        intent_meta["appointment_id"] = appointment_id

    # nothing is persisted unless the provider accepted the intent
    intent = provider.create_payment_intent(
        value,
        code,
        customer_id=customer_id,
        metadata=intent_meta,
        email=customer_email,
        return_url=return_url,
    )

    payment = repo.create(
        db,
        appointment_id=appointment_id,
        user_id=user_id,
        consultation_id=consultation_id,
        provider=provider.name.value,
        provider_payment_id=intent.id,
        provider_customer_id=intent.customer_id or customer_id,
        amount=value,
        currency=code.upper(),
        status=PENDING,
        customer_email=customer_email,
        customer_name=customer_name,
        metadata_=meta,
    )
    record_event(
        db,
        payment.id,
        "payment.initialized" if provider.name == ProviderName.PAYSTACK else "payment.created",
        {"providerPaymentId": intent.id, "amount": str(value), "currency": code, "status": intent.status},
    )
    _commit(db, "create_payment")
    logger.info("Created %s payment %s (%s)", provider.name.value, payment.id, intent.id)
    return payment, intent


def create_checkout_payment(
    db: Session,
    providers: dict,
    *,
    user_id: str,
    consultation_id: str,
    amount,
    currency: str,
    price_id: str | None = None,
    description: str | None = None,
    customer_email: str | None = None,
    customer_name: str | None = None,
    appointment_id: str | None = None,
    metadata: dict | None = None,
    success_url: str | None = None,
    cancel_url: str | None = None,
) -> tuple[Payment, NormalizedIntent]:
    """Hosted Stripe Checkout; the pending payment is keyed by the session id."""
    provider = get_provider(ProviderName.STRIPE, providers)
    code = normalize_currency(currency)
    value = validate_amount(amount, code)
    if code not in provider.get_supported_currencies():
        raise ValidationError(f"Currency {code.upper()} is not supported by stripe", field="currency")
    meta = repo.clean_metadata(metadata)

    session_meta = {**meta, "user_id": user_id, "consultation_id": consultation_id}
    if appointment_id:
        session_meta["appointment_id"] = appointment_id
    if customer_name:
        session_meta["customer_name"] = customer_name

    session = provider.create_checkout_session(
        value,
        code,
        price_id=price_id,
        metadata=session_meta,
        email=customer_email,
        description=description,
        success_url=success_url,
        cancel_url=cancel_url,
    )

    meta["stripe_session_id"] = session.id
    if price_id:
        meta["stripe_price_id"] = price_id
    payment = repo.create(
        db,
        appointment_id=appointment_id,
        user_id=user_id,
        consultation_id=consultation_id,
        provider=ProviderName.STRIPE.value,
        provider_payment_id=session.id,
        provider_customer_id=session.customer_id,
        amount=value,
        currency=code.upper(),
        status=PENDING,
        customer_email=customer_email,
        customer_name=customer_name,
        metadata_=meta,
    )
    record_event(db, payment.id, "checkout.session.created", {
        "sessionId": session.id, "amount": str(value), "currency": code, "checkoutUrl": session.authorization_url,
    })
    _commit(db, "create_checkout_payment")
    logger.info("Created Stripe checkout payment %s (%s)", payment.id, session.id)
    return payment, session


def verify_payment(db: Session, providers: dict, payment: Payment, record_unchanged: bool = True) -> tuple[Payment, NormalizedIntent]:
    """Re-query the provider and apply whatever status it reports.

    Background reconciliation passes ``record_unchanged=False`` so polling a
    payment that has not moved leaves no event behind.
    """
    provider = get_provider(payment.provider, providers)
    intent = provider.get_payment_intent(payment.provider_payment_id)
    target = status_for_intent(intent)
    outcome = None
    if target:
        outcome = update_status(db, payment, target, extras_from_intent(intent)).outcome
    if record_unchanged or outcome == APPLIED:
        record_event(db, payment.id, "payment.verified", {"providerStatus": intent.status, "transition": outcome})
    _commit(db, "verify_payment")
    return payment, intent


def verify_by_reference(db: Session, providers: dict, provider_name, reference: str) -> tuple[Payment, NormalizedIntent]:
    payment = repo.get_by_provider_payment_id(db, reference, provider=get_provider(provider_name, providers).name.value)
    if not payment:
        raise NotFoundError("Payment not found")
    return verify_payment(db, providers, payment)


def cancel_payment(db: Session, providers: dict, payment_id: str, reason: str = "requested_by_customer") -> Payment:
    payment = repo.get(db, payment_id)
    if payment.status not in (PENDING, PROCESSING):
        raise ConflictError(f"Cannot cancel a payment in status {payment.status}")
    if payment.status == PROCESSING and payment.provider == ProviderName.PAYSTACK.value:
        raise ConflictError("Paystack payments cannot be cancelled once processing")

    extra = {"metadata": {"cancellation_reason": reason}}
    if payment.provider == ProviderName.STRIPE.value and payment.provider_payment_id:
        intent = get_provider(payment.provider, providers).cancel_payment_intent(payment.provider_payment_id, reason)
        extra["metadata"]["provider_status"] = intent.status
    # pending Paystack transactions are abandoned provider-side, nothing to call

    result = update_status(db, payment, CANCELLED, extra)
    if not result.applied:
        raise ConflictError(f"Cannot cancel a payment in status {payment.status}")
    record_event(db, payment.id, "payment.cancelled", {"reason": reason, "previousStatus": result.previous})
    _commit(db, "cancel_payment")
    return payment


def refund_payment(db: Session, providers: dict, payment_id: str, amount=None, reason: str = "requested_by_customer") -> Payment:
    payment = repo.get(db, payment_id)

    refund_amount = None
    if amount is not None:
        refund_amount = quantize(amount, payment.currency)
        if refund_amount <= 0:
            raise ValidationError("Refund amount must be greater than zero", field="amount")
        if refund_amount > Decimal(payment.amount):
            raise ValidationError("Refund amount exceeds the payment amount", field="amount")
    if payment.status != SUCCEEDED:
        raise ConflictError("Only succeeded payments can be refunded")

    refund = get_provider(payment.provider, providers).create_refund(payment.provider_payment_id, refund_amount, reason)

    refunded = refund.amount or refund_amount or Decimal(payment.amount)
    update_status(db, payment, REFUNDED, {"metadata": {
        "refund_id": refund.id,
        "refund_amount": str(refunded),
        "refund_status": refund.status,
        "refund_reason": reason,
    }})
    record_event(db, payment.id, "payment.refunded", {
        "refundId": refund.id,
        "amount": str(refunded),
        "currency": refund.currency,
        "status": refund.status,
        "reason": reason,
    })
    _commit(db, "refund_payment")
    return payment


def payment_stats(db: Session, start: datetime | None = None, end: datetime | None = None) -> list[dict]:
    return repo.stats(db, start, end)
