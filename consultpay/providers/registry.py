from functools import lru_cache

from consultpay.core.config import settings
from consultpay.core.errors import ValidationError
from consultpay.providers.base import PaymentProvider, ProviderName
from consultpay.providers.paystack_client import PaystackConfig
from consultpay.providers.paystack_provider import PaystackProvider
from consultpay.providers.stripe_provider import StripeConfig, StripeProvider


def _stripe() -> StripeProvider:
    frontend = settings.FRONTEND_URL.rstrip("/")
    return StripeProvider(StripeConfig(
        secret_key=settings.STRIPE_SECRET_KEY,
        webhook_secret=settings.STRIPE_WEBHOOK_SECRET,
        webhook_tolerance=settings.STRIPE_WEBHOOK_TOLERANCE_SECONDS,
        timeout=settings.PROVIDER_TIMEOUT_SECONDS,
        success_url=f"{frontend}/payment/success?session_id={{CHECKOUT_SESSION_ID}}",
        cancel_url=f"{frontend}/payment/cancel",
    ))


def _paystack() -> PaystackProvider:
    return PaystackProvider(PaystackConfig(
        secret_key=settings.PAYSTACK_SECRET_KEY,
        webhook_secret=settings.paystack_webhook_secret,
        base_url=settings.PAYSTACK_BASE_URL,
        callback_url=f"{settings.FRONTEND_URL.rstrip('/')}/payment/callback" if settings.FRONTEND_URL else "",
        timeout=settings.PROVIDER_TIMEOUT_SECONDS,
    ))


_FACTORIES = {
    ProviderName.STRIPE: _stripe,
    ProviderName.PAYSTACK: _paystack,
}


def parse_provider(name) -> ProviderName:
    try:
        return ProviderName(str(getattr(name, "value", name)).lower())
    except ValueError:
        raise ValidationError(f"Unsupported payment provider: {name}", field="provider")


@lru_cache
def get_providers() -> dict[ProviderName, PaymentProvider]:
    """Adapters keyed by provider name; FastAPI routes depend on this."""
    return {name: factory() for name, factory in _FACTORIES.items()}


def get_provider(name, providers: dict | None = None) -> PaymentProvider:
    providers = providers if providers is not None else get_providers()
    return providers[parse_provider(name)]
