import hashlib
import hmac
import json
import time
import uuid
from decimal import Decimal

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from consultpay.main import app as fastapi_app
from consultpay.db.session import Base, get_db
from consultpay.core.security import create_access_token
from consultpay.models.payment import Payment
from consultpay.models.payment_event import PaymentEvent  # noqa: F401
from consultpay.models.webhook_log import WebhookLog  # noqa: F401
from consultpay.providers.base import ProviderName
from consultpay.providers.paystack_client import PaystackConfig
from consultpay.providers.paystack_provider import PaystackProvider
from consultpay.providers.registry import get_providers
from consultpay.providers.stripe_provider import StripeConfig, StripeProvider

STRIPE_WEBHOOK_SECRET = "whsec_test_secret"
PAYSTACK_SECRET = "sk_test_paystack_secret"

# Single in-memory database shared by the test session and the app's sessions
engine = create_engine("sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool)
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture(autouse=True)
def setup_db():
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)


@pytest.fixture
def db():
    session = TestingSessionLocal()
    yield session
    session.close()


@pytest.fixture
def providers():
    return {
        ProviderName.STRIPE: StripeProvider(StripeConfig(secret_key="sk_test_stripe", webhook_secret=STRIPE_WEBHOOK_SECRET)),
        ProviderName.PAYSTACK: PaystackProvider(PaystackConfig(secret_key=PAYSTACK_SECRET, webhook_secret=PAYSTACK_SECRET)),
    }


@pytest.fixture
def client(providers):
    def _get_db():
        session = TestingSessionLocal()
        try:
            yield session
        finally:
            session.close()

    fastapi_app.dependency_overrides[get_db] = _get_db
    fastapi_app.dependency_overrides[get_providers] = lambda: providers
    with TestClient(fastapi_app) as c:
        yield c
    fastapi_app.dependency_overrides.clear()


@pytest.fixture
def admin_headers():
    return {"Authorization": f"Bearer {create_access_token('admin-1', 'admin')}"}


@pytest.fixture
def user_headers():
    return {"Authorization": f"Bearer {create_access_token('user-1', 'patient')}"}


@pytest.fixture
def make_payment(db):
    def _make(**overrides) -> Payment:
        fields = dict(
            id=str(uuid.uuid4()),
            user_id="user-1",
            consultation_id="consult-1",
            provider="stripe",
            provider_payment_id=f"pi_{uuid.uuid4().hex[:14]}",
            amount=Decimal("50.00"),
            currency="USD",
            status="pending",
            metadata_={},
        )
        fields.update(overrides)
        p = Payment(**fields)
        db.add(p)
        db.commit()
        return p
    return _make


@pytest.fixture
def stripe_webhook():
    """Build a signed Stripe delivery: returns (raw body, headers)."""
    def _build(pi_id, event_type="payment_intent.succeeded", event_id=None, status="succeeded",
               amount=5000, timestamp=None, secret=STRIPE_WEBHOOK_SECRET, obj=None):
        event = {
            "id": event_id or f"evt_{uuid.uuid4().hex[:14]}",
            "object": "event",
            "type": event_type,
            "data": {"object": obj or {
                "id": pi_id,
                "object": "payment_intent",
                "amount": amount,
                "currency": "usd",
                "status": status,
                "metadata": {},
                "created": int(time.time()),
                "payment_method_types": ["card"],
            }},
        }
        raw = json.dumps(event).encode("utf-8")
        ts = timestamp or int(time.time())
        sig = hmac.new(secret.encode("utf-8"), f"{ts}.".encode("utf-8") + raw, hashlib.sha256).hexdigest()
        return raw, {"stripe-signature": f"t={ts},v1={sig}", "content-type": "application/json"}
    return _build


@pytest.fixture
def paystack_webhook():
    """Build a signed Paystack delivery: returns (raw body, headers)."""
    def _build(reference, event="charge.success", tx_id=None, status="success", amount=500000,
               gateway_response="Successful", secret=PAYSTACK_SECRET):
        body = {
            "event": event,
            "data": {
                "id": tx_id or int(time.time() * 1000),
                "reference": reference,
                "amount": amount,
                "currency": "NGN",
                "status": status,
                "gateway_response": gateway_response,
                "channel": "card",
                "paid_at": "2026-10-19T10:00:00.000Z",
                "created_at": "2026-10-19T09:59:00.000Z",
                "customer": {"customer_code": "CUS_test", "email": "ada@example.com"},
                "authorization": {"authorization_code": "AUTH_test"},
                "metadata": {},
            },
        }
        raw = json.dumps(body).encode("utf-8")
        sig = hmac.new(secret.encode("utf-8"), raw, hashlib.sha512).hexdigest()
        return raw, {"x-paystack-signature": sig, "content-type": "application/json"}
    return _build
