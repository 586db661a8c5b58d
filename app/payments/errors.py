# app/payments/errors.py
from __future__ import annotations

from enum import Enum
from typing import Optional


class PaymentError(Exception):
    """Base for every payment-protocol error."""

    code = "PAYMENT_ERROR"


class PaymentValidationError(PaymentError):
    """Bad amount or phone. Never reaches the provider."""

    code = "VALIDATION_ERROR"

    def __init__(self, field: str, message: str):
        super().__init__(f"{field}: {message}")
        self.field = field
        self.message = message


class ProviderErrorKind(str, Enum):
    AUTH_FAILED = "AUTH_FAILED"
    REJECTED = "REJECTED"
    UNREACHABLE = "UNREACHABLE"


class ProviderError(PaymentError):
    code = "PROVIDER_ERROR"

    def __init__(
        self,
        kind: ProviderErrorKind,
        message: str,
        *,
        http_status: Optional[int] = None,
        response: Optional[dict] = None,
    ):
        super().__init__(f"{kind.value}: {message}")
        self.kind = kind
        self.message = message
        self.http_status = http_status
        self.response = response
        # set by the state machine once the errored attempt is persisted
        self.attempt_id: Optional[str] = None


class DuplicateSignal(PaymentError):
    """A late callback/poll/timeout hit a record that is already terminal."""

    code = "DUPLICATE_SIGNAL"


class StoreUnavailable(PaymentError):
    """Transient storage fault; the caller may retry."""

    code = "STORE_UNAVAILABLE"
    retryable = True


class DuplicateCheckout(PaymentError):
    code = "DUPLICATE_CHECKOUT"


class AttemptNotFound(PaymentError):
    code = "ATTEMPT_NOT_FOUND"


class InvalidTransition(PaymentError):
    code = "INVALID_TRANSITION"
