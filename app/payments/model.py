# app/payments/model.py
from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional


class PaymentStatus(str, Enum):
    CREATED = "created"
    PUSHED = "pushed"
    AWAITING_CONFIRMATION = "awaiting_confirmation"
    CONFIRMED = "confirmed"
    DECLINED = "declined"
    EXPIRED = "expired"
    ERRORED = "errored"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


# statuses the deadline runs against; pushed is included for a push whose
# awaiting step was never written
PENDING_STATUSES = frozenset({PaymentStatus.PUSHED, PaymentStatus.AWAITING_CONFIRMATION})

TERMINAL_STATUSES = frozenset(
    {
        PaymentStatus.CONFIRMED,
        PaymentStatus.DECLINED,
        PaymentStatus.EXPIRED,
        PaymentStatus.ERRORED,
    }
)


class ResolutionSource(str, Enum):
    CALLBACK = "callback"
    POLL = "poll"
    TIMEOUT = "timeout"
    ERRORED_AT_PUSH = "errored-at-push"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class PaymentAttempt:
    invoice_ref: str
    amount: int
    payer_phone: str
    # assigned by the store on create()
    attempt_id: Optional[str] = None
    status: PaymentStatus = PaymentStatus.CREATED
    owner_id: Optional[str] = None
    account_reference: Optional[str] = None
    description: Optional[str] = None
    checkout_id: Optional[str] = None
    merchant_request_id: Optional[str] = None
    provider_message: Optional[str] = None
    result_code: Optional[str] = None
    result_message: Optional[str] = None
    receipt: Optional[str] = None
    # Daraja TransactionDate as sent, YYYYMMDDHHMMSS in EAT
    transaction_date: Optional[str] = None
    resolution_source: Optional[ResolutionSource] = None
    created_at: datetime = field(default_factory=utcnow)
    last_transition_at: datetime = field(default_factory=utcnow)

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def evolve(self, **changes: Any) -> "PaymentAttempt":
        return replace(self, **changes)

    def to_dict(self) -> dict[str, Any]:
        return {
            "attempt_id": self.attempt_id,
            "invoice_ref": self.invoice_ref,
            "amount": self.amount,
            "payer_phone": self.payer_phone,
            "status": self.status.value,
            "account_reference": self.account_reference,
            "checkout_id": self.checkout_id,
            "merchant_request_id": self.merchant_request_id,
            "provider_message": self.provider_message,
            "result_code": self.result_code,
            "result_message": self.result_message,
            "receipt": self.receipt,
            "transaction_date": self.transaction_date,
            "resolution_source": self.resolution_source.value if self.resolution_source else None,
            "created_at": self.created_at,
            "last_transition_at": self.last_transition_at,
        }


@dataclass(frozen=True)
class TransitionResult:
    applied: bool
    status: PaymentStatus
    attempt: Optional[PaymentAttempt] = None

    @property
    def already_terminal(self) -> bool:
        return not self.applied and self.status.is_terminal

    @classmethod
    def ok(cls, attempt: PaymentAttempt) -> "TransitionResult":
        return cls(applied=True, status=attempt.status, attempt=attempt)

    @classmethod
    def not_applied(cls, existing: PaymentAttempt) -> "TransitionResult":
        # existing.status is terminal, or not a legal source for the requested status
        return cls(applied=False, status=existing.status, attempt=existing)


class AssignResult(str, Enum):
    ASSIGNED = "assigned"
    ALREADY_ASSIGNED = "already_assigned"
