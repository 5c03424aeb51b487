from decimal import Decimal
from pydantic import BaseModel, Field
from typing import Optional, Dict, Any


class PaymentCreateBase(BaseModel):
    userId: str
    consultationId: str
    appointmentId: Optional[str] = None
    amount: Decimal = Field(gt=0)  # major units, e.g. 50.00
    currency: str = "USD"
    customerEmail: Optional[str] = None  # plain str to allow .local and other dev domains
    customerName: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class StripeIntentRequest(PaymentCreateBase):
    customerId: Optional[str] = None  # existing Stripe customer


class StripeCheckoutRequest(PaymentCreateBase):
    priceId: Optional[str] = None  # catalogue price; otherwise charged inline from amount
    description: Optional[str] = None
    successUrl: Optional[str] = None
    cancelUrl: Optional[str] = None


class PaystackInitializeRequest(PaymentCreateBase):
    currency: str = "NGN"
    customerEmail: str
    callbackUrl: Optional[str] = None


class RefundRequest(BaseModel):
    # omitted means a full refund
    amount: Optional[Decimal] = None
    reason: str = "requested_by_customer"


class CancelRequest(BaseModel):
    reason: str = "requested_by_customer"


class PaymentOut(BaseModel):
    id: str
    appointmentId: Optional[str] = None
    userId: str
    consultationId: str
    provider: str
    providerPaymentId: Optional[str] = None
    amount: str
    currency: str
    status: str
    paymentMethod: Optional[str] = None
    customerEmail: Optional[str] = None
    customerName: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    createdAt: Optional[str] = None
    updatedAt: Optional[str] = None


class PaymentEventOut(BaseModel):
    id: str
    eventType: str
    eventData: Dict[str, Any] = Field(default_factory=dict)
    webhookId: Optional[str] = None
    processedAt: Optional[str] = None
