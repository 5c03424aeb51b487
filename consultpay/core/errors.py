"""Error taxonomy shared by providers, services and the HTTP layer.

Every error that crosses a provider adapter or service boundary is one of the
classes below. Each carries the HTTP status it maps to and a short ``kind``
tag; the API layer renders them as ``{"success": false, "message": ...}``.
"""
from __future__ import annotations


class PaymentSystemError(Exception):
    status_code = 500
    kind = "internal_error"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict:
        return {"success": False, "message": self.message}


class ValidationError(PaymentSystemError):
    status_code = 400
    kind = "validation_error"

    def __init__(self, message: str, field: str | None = None):
        super().__init__(message)
        self.field = field

    def to_dict(self) -> dict:
        out = super().to_dict()
        if self.field:
            out["field"] = self.field
        return out


class PaymentError(PaymentSystemError):
    """The provider rejected the operation (declined card, invalid request...)."""

    status_code = 400
    kind = "payment_error"

    def __init__(self, message: str, provider: str | None = None, code: str = "provider_error", status_code: int | None = None):
        super().__init__(message)
        self.provider = provider
        self.code = code
        if status_code is not None:
            self.status_code = status_code

    def to_dict(self) -> dict:
        out = super().to_dict()
        out["provider"] = self.provider
        out["errorCode"] = self.code
        return out


class InvalidSignatureError(PaymentSystemError):
    status_code = 400
    kind = "invalid_signature"

    def __init__(self, message: str = "signature verification failed", provider: str | None = None):
        super().__init__(message)
        self.provider = provider


class ProviderUnreachableError(PaymentSystemError):
    status_code = 503
    kind = "provider_unreachable"

    def __init__(self, message: str = "Unable to connect to payment provider", provider: str | None = None):
        super().__init__(message)
        self.provider = provider


class RateLimitedError(PaymentSystemError):
    status_code = 429
    kind = "rate_limited"

    def __init__(self, message: str = "Too many requests to payment provider", provider: str | None = None):
        super().__init__(message)
        self.provider = provider


class NotFoundError(PaymentSystemError):
    status_code = 404
    kind = "not_found"


class ConflictError(PaymentSystemError):
    status_code = 409
    kind = "conflict"


class DatabaseError(PaymentSystemError):
    status_code = 500
    kind = "database_error"

    def __init__(self, message: str = "Database operation failed", operation: str | None = None):
        super().__init__(message)
        self.operation = operation
