# app/payments/store.py
from __future__ import annotations

import logging
import threading
import uuid
from datetime import datetime
from typing import Any, Dict, Optional, Protocol

from app.payments.errors import AttemptNotFound, DuplicateCheckout
from app.payments.model import (
    PENDING_STATUSES,
    AssignResult,
    PaymentAttempt,
    PaymentStatus,
    ResolutionSource,
    TransitionResult,
    utcnow,
)
from app.payments.state_machine import assert_checkout_invariant, can_transition

logger = logging.getLogger("invoicepay.payments.store")


class PaymentStore(Protocol):
    def create(self, attempt: PaymentAttempt) -> str: ...

    def assign_checkout(
        self,
        attempt_id: str,
        checkout_id: str,
        *,
        merchant_request_id: Optional[str] = None,
        provider_message: Optional[str] = None,
    ) -> AssignResult: ...

    def advance(self, attempt_id: str, from_status: PaymentStatus, to_status: PaymentStatus) -> bool: ...

    def transition_if_not_terminal(
        self,
        attempt_id: str,
        new_status: PaymentStatus,
        *,
        result_code: Optional[str],
        result_message: Optional[str],
        source: ResolutionSource,
        receipt: Optional[str] = None,
        transaction_date: Optional[str] = None,
    ) -> TransitionResult: ...

    def lookup(self, checkout_id: str, *, owner_id: Optional[str] = None) -> PaymentAttempt: ...

    def get(self, attempt_id: str, *, owner_id: Optional[str] = None) -> PaymentAttempt: ...

    def list_for_invoice(self, invoice_ref: str, *, owner_id: Optional[str]) -> list[PaymentAttempt]: ...

    def list_stale(self, *, older_than: datetime, limit: int = 100) -> list[PaymentAttempt]: ...


def new_attempt_id() -> str:
    return str(uuid.uuid4())


def _check_owner(attempt: PaymentAttempt, owner_id: Optional[str], key: str) -> PaymentAttempt:
    # a foreign owner gets the same answer as a missing record
    if owner_id is not None and attempt.owner_id != owner_id:
        raise AttemptNotFound(key)
    return attempt


class InMemoryPaymentStore:
    """
    Dev/test store. A single lock linearizes every mutation, which gives the
    same per-key compare-and-set semantics as the conditional UPDATE in
    PostgresPaymentStore.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._by_id: Dict[str, PaymentAttempt] = {}
        self._by_checkout: Dict[str, str] = {}

    def create(self, attempt: PaymentAttempt) -> str:
        with self._lock:
            if attempt.checkout_id and attempt.checkout_id in self._by_checkout:
                raise DuplicateCheckout(attempt.checkout_id)

            attempt_id = attempt.attempt_id or new_attempt_id()
            if attempt_id in self._by_id:
                raise DuplicateCheckout(f"attempt {attempt_id} already exists")

            now = utcnow()
            stored = attempt.evolve(attempt_id=attempt_id, created_at=now, last_transition_at=now)
            self._by_id[attempt_id] = stored
            if stored.checkout_id:
                self._by_checkout[stored.checkout_id] = attempt_id
            return attempt_id

    def assign_checkout(
        self,
        attempt_id: str,
        checkout_id: str,
        *,
        merchant_request_id: Optional[str] = None,
        provider_message: Optional[str] = None,
    ) -> AssignResult:
        with self._lock:
            current = self._require(attempt_id)
            if current.checkout_id or current.status != PaymentStatus.CREATED:
                return AssignResult.ALREADY_ASSIGNED
            if checkout_id in self._by_checkout:
                raise DuplicateCheckout(checkout_id)

            self._by_id[attempt_id] = current.evolve(
                checkout_id=checkout_id,
                merchant_request_id=merchant_request_id,
                provider_message=provider_message,
                status=PaymentStatus.PUSHED,
                last_transition_at=utcnow(),
            )
            self._by_checkout[checkout_id] = attempt_id
            return AssignResult.ASSIGNED

    def advance(self, attempt_id: str, from_status: PaymentStatus, to_status: PaymentStatus) -> bool:
        with self._lock:
            current = self._require(attempt_id)
            if current.status != from_status or not can_transition(from_status, to_status):
                return False
            assert_checkout_invariant(to_status, current.checkout_id)
            self._by_id[attempt_id] = current.evolve(status=to_status, last_transition_at=utcnow())
            return True

    def transition_if_not_terminal(
        self,
        attempt_id: str,
        new_status: PaymentStatus,
        *,
        result_code: Optional[str],
        result_message: Optional[str],
        source: ResolutionSource,
        receipt: Optional[str] = None,
        transaction_date: Optional[str] = None,
    ) -> TransitionResult:
        new_status = PaymentStatus(new_status)
        if not new_status.is_terminal:
            raise ValueError(f"transition_if_not_terminal expects a terminal status, got {new_status.value}")

        with self._lock:
            current = self._require(attempt_id)
            if current.is_terminal or not can_transition(current.status, new_status):
                return TransitionResult.not_applied(current)

            assert_checkout_invariant(new_status, current.checkout_id)
            updated = current.evolve(
                status=new_status,
                result_code=result_code,
                result_message=result_message,
                resolution_source=ResolutionSource(source),
                receipt=receipt if receipt is not None else current.receipt,
                transaction_date=transaction_date if transaction_date is not None else current.transaction_date,
                last_transition_at=utcnow(),
            )
            self._by_id[attempt_id] = updated
            return TransitionResult.ok(updated)

    def lookup(self, checkout_id: str, *, owner_id: Optional[str] = None) -> PaymentAttempt:
        with self._lock:
            attempt_id = self._by_checkout.get(checkout_id)
            if attempt_id is None:
                raise AttemptNotFound(checkout_id)
            return _check_owner(self._by_id[attempt_id], owner_id, checkout_id)

    def get(self, attempt_id: str, *, owner_id: Optional[str] = None) -> PaymentAttempt:
        with self._lock:
            return _check_owner(self._require(attempt_id), owner_id, attempt_id)

    def list_for_invoice(self, invoice_ref: str, *, owner_id: Optional[str]) -> list[PaymentAttempt]:
        with self._lock:
            rows = [
                a
                for a in self._by_id.values()
                if a.invoice_ref == invoice_ref and (owner_id is None or a.owner_id == owner_id)
            ]
        return sorted(rows, key=lambda a: a.created_at)

    def list_stale(self, *, older_than: datetime, limit: int = 100) -> list[PaymentAttempt]:
        with self._lock:
            rows = [
                a
                for a in self._by_id.values()
                if a.status in PENDING_STATUSES and a.last_transition_at <= older_than
            ]
        rows.sort(key=lambda a: a.last_transition_at)
        return rows[:limit]

    def clear(self) -> None:
        with self._lock:
            self._by_id.clear()
            self._by_checkout.clear()

    def _require(self, attempt_id: str) -> PaymentAttempt:
        attempt = self._by_id.get(attempt_id)
        if attempt is None:
            raise AttemptNotFound(attempt_id)
        return attempt


_STORE_CACHE: Dict[str, Any] = {}


def get_payment_store() -> PaymentStore:
    from settings import settings

    backend = (settings.PAYMENT_STORE or "memory").strip().lower()
    if backend in _STORE_CACHE:
        return _STORE_CACHE[backend]

    if backend == "postgres":
        from app.payments.repository import PostgresPaymentStore
        store = PostgresPaymentStore()
    else:
        store = InMemoryPaymentStore()

    logger.info("payment store initialized backend=%s", backend)
    _STORE_CACHE[backend] = store
    return store


def reset_payment_store() -> None:
    _STORE_CACHE.clear()
