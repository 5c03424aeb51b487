from dataclasses import dataclass
import requests

from consultpay.core.errors import NotFoundError, PaymentError, ProviderUnreachableError, RateLimitedError

@dataclass
class PaystackConfig:
    secret_key: str         # sk_test_... / sk_live_...
    webhook_secret: str     # Paystack signs webhooks with the secret key
    base_url: str = "https://api.paystack.co"
    callback_url: str = ""  # where the hosted checkout redirects after payment
    timeout: int = 20

class PaystackClient:
    def __init__(self, cfg: PaystackConfig, session: requests.Session | None = None):
        self.cfg = cfg
        self.session = session or requests.Session()

    def _headers(self) -> dict:
        return {
            "Authorization": f"Bearer {self.cfg.secret_key}",
            "Content-Type": "application/json",
            "Accept": "application/json",
        }

    def request(self, method: str, path: str, payload: dict | None = None) -> dict:
        """Call the API and return the ``data`` member of the response envelope."""
        url = f"{self.cfg.base_url.rstrip('/')}{path}"
        try:
            r = self.session.request(
                method=method.upper(),
                url=url,
                json=payload if payload is not None else None,
                headers=self._headers(),
                timeout=self.cfg.timeout,
            )
        except (requests.ConnectionError, requests.Timeout):
            raise ProviderUnreachableError(provider="paystack")
        except requests.RequestException as e:
            raise PaymentError(f"Paystack request failed: {e}", provider="paystack", code="provider_error", status_code=502)

        try:
            body = r.json() if r.text else {}
        except ValueError:
            body = {"message": r.text}
        if not isinstance(body, dict):
            body = {"message": str(body)}
        message = body.get("message") or "Payment error"

        if r.status_code == 400:
            raise PaymentError(message, provider="paystack", code="invalid_request")
        if r.status_code == 401:
            raise PaymentError("Payment service configuration error", provider="paystack", code="authentication_error", status_code=500)
        if r.status_code == 404:
            raise NotFoundError(message or "Resource not found")
        if r.status_code == 429:
            raise RateLimitedError(provider="paystack")
        if r.status_code >= 500:
            raise PaymentError("Payment provider error", provider="paystack", code="provider_error", status_code=502)
        if r.status_code >= 400:
            raise PaymentError(message, provider="paystack", code="provider_error")
        if not body.get("status"):
            raise PaymentError(message, provider="paystack", code="provider_error")
        return body.get("data") or {}

    def initialize_transaction(self, *, email: str, amount: int, currency: str, reference: str, metadata: dict, channels: list[str], callback_url: str | None = None) -> dict:
        payload = {
            "email": email,
            "amount": amount,
            "currency": currency,
            "reference": reference,
            "metadata": metadata,
            "channels": channels,
        }
        if callback_url or self.cfg.callback_url:
            payload["callback_url"] = callback_url or self.cfg.callback_url
        return self.request("POST", "/transaction/initialize", payload)

    def verify_transaction(self, reference: str) -> dict:
        return self.request("GET", f"/transaction/verify/{reference}")

    def create_refund(self, *, transaction: str, currency: str, amount: int | None = None, merchant_note: str = "") -> dict:
        payload = {"transaction": transaction, "currency": currency, "merchant_note": merchant_note}
        if amount is not None:
            payload["amount"] = amount
        return self.request("POST", "/refund", payload)
