from datetime import datetime
from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from consultpay.api.deps import Principal, get_current_principal, get_db, get_providers, require_roles
from consultpay.api.responses import iso, ok
from consultpay.models.payment import Payment
from consultpay.models.payment_event import PaymentEvent
from consultpay.providers.base import ProviderName
from consultpay.schemas.payments import (
    CancelRequest,
    PaymentEventOut,
    PaymentOut,
    PaystackInitializeRequest,
    RefundRequest,
    StripeCheckoutRequest,
    StripeIntentRequest,
)
from consultpay.services import payment_repository as repo
from consultpay.services import payment_service
from consultpay.services.event_log import list_events

router = APIRouter(tags=["payments"])

ADMIN_ROLES = ("admin", "finance", "superadmin")


def payment_out(p: Payment) -> dict:
    return PaymentOut(
        id=p.id,
        appointmentId=p.appointment_id,
        userId=p.user_id,
        consultationId=p.consultation_id,
        provider=p.provider,
        providerPaymentId=p.provider_payment_id,
        amount=f"{p.amount:.2f}",
        currency=p.currency,
        status=p.status,
        paymentMethod=p.payment_method,
        customerEmail=p.customer_email,
        customerName=p.customer_name,
        metadata=p.metadata_ or {},
        createdAt=iso(p.created_at),
        updatedAt=iso(p.updated_at),
    ).model_dump()


def event_out(e: PaymentEvent) -> dict:
    return PaymentEventOut(
        id=e.id,
        eventType=e.event_type,
        eventData=e.event_data or {},
        webhookId=e.webhook_id,
        processedAt=iso(e.processed_at),
    ).model_dump()


@router.post("/payments/stripe/payment-intent", status_code=201)
def create_stripe_intent(body: StripeIntentRequest, db: Session = Depends(get_db), providers: dict = Depends(get_providers)):
    payment, intent = payment_service.create_payment(
        db, providers, ProviderName.STRIPE,
        user_id=body.userId,
        consultation_id=body.consultationId,
        appointment_id=body.appointmentId,
        amount=body.amount,
        currency=body.currency,
        customer_email=body.customerEmail,
        customer_name=body.customerName,
        customer_id=body.customerId,
        metadata=body.metadata,
    )
    return ok({
        "payment": payment_out(payment),
        "clientSecret": intent.client_secret,
        "paymentIntentId": intent.id,
        "status": intent.status,
    }, "Payment intent created")


@router.post("/payments/stripe/checkout-session", status_code=201)
def create_stripe_checkout(body: StripeCheckoutRequest, db: Session = Depends(get_db), providers: dict = Depends(get_providers)):
    payment, session = payment_service.create_checkout_payment(
        db, providers,
        user_id=body.userId,
        consultation_id=body.consultationId,
        appointment_id=body.appointmentId,
        amount=body.amount,
        currency=body.currency,
        price_id=body.priceId,
        description=body.description,
        customer_email=body.customerEmail,
        customer_name=body.customerName,
        metadata=body.metadata,
        success_url=body.successUrl,
        cancel_url=body.cancelUrl,
    )
    return ok({
        "payment": payment_out(payment),
        "sessionId": session.id,
        "checkoutUrl": session.authorization_url,
    }, "Checkout session created")


@router.post("/payments/paystack/initialize", status_code=201)
def initialize_paystack(body: PaystackInitializeRequest, db: Session = Depends(get_db), providers: dict = Depends(get_providers)):
    payment, intent = payment_service.create_payment(
        db, providers, ProviderName.PAYSTACK,
        user_id=body.userId,
        consultation_id=body.consultationId,
        appointment_id=body.appointmentId,
        amount=body.amount,
        currency=body.currency,
        customer_email=body.customerEmail,
        customer_name=body.customerName,
        metadata=body.metadata,
        return_url=body.callbackUrl,
    )
    return ok({
        "payment": payment_out(payment),
        "authorizationUrl": intent.authorization_url,
        "accessCode": intent.client_secret,
        "reference": intent.id,
    }, "Payment initialized")


@router.get("/payments/paystack/verify/{reference}")
def verify_paystack(reference: str, db: Session = Depends(get_db), providers: dict = Depends(get_providers)):
    payment, intent = payment_service.verify_by_reference(db, providers, ProviderName.PAYSTACK, reference)
    return ok({
        "payment": payment_out(payment),
        "providerStatus": intent.status,
        "lastError": intent.last_error,
    }, "Payment verified")


@router.get("/payments/stats")
def payment_stats(start: datetime | None = None, end: datetime | None = None,
                  db: Session = Depends(get_db),
                  me: Principal = Depends(require_roles(*ADMIN_ROLES))):
    return ok(payment_service.payment_stats(db, start, end))


@router.get("/payments/user/{user_id}")
def list_user_payments(user_id: str, limit: int = 20, offset: int = 0, db: Session = Depends(get_db)):
    items, total = repo.list_for_user(db, user_id, limit=min(limit, 100), offset=max(offset, 0))
    return ok({"total": total, "items": [payment_out(p) for p in items]})


@router.get("/payments/{payment_id}")
def get_payment(payment_id: str, db: Session = Depends(get_db)):
    return ok(payment_out(repo.get(db, payment_id)))


@router.get("/payments/{payment_id}/events")
def get_payment_events(payment_id: str, limit: int = 100, db: Session = Depends(get_db)):
    repo.get(db, payment_id)
    return ok([event_out(e) for e in list_events(db, payment_id, limit=min(limit, 500))])


@router.post("/payments/{payment_id}/refund")
def refund_payment(payment_id: str, body: RefundRequest,
                   db: Session = Depends(get_db),
                   providers: dict = Depends(get_providers),
                   me: Principal = Depends(require_roles(*ADMIN_ROLES))):
    payment = payment_service.refund_payment(db, providers, payment_id, amount=body.amount, reason=body.reason)
    return ok(payment_out(payment), "Payment refunded")


@router.post("/payments/{payment_id}/cancel")
def cancel_payment(payment_id: str, body: CancelRequest | None = None,
                   db: Session = Depends(get_db),
                   providers: dict = Depends(get_providers),
                   me: Principal = Depends(get_current_principal)):
    # payers may cancel their own payments; staff may cancel any
    if me.role not in ADMIN_ROLES and repo.get(db, payment_id).user_id != me.subject:
        raise HTTPException(status_code=403, detail="Forbidden")
    reason = body.reason if body else "requested_by_customer"
    payment = payment_service.cancel_payment(db, providers, payment_id, reason=reason)
    return ok(payment_out(payment), "Payment cancelled")
