# app/payments/service.py
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from enum import Enum
from typing import Callable, Optional

from app.payments.errors import (
    AttemptNotFound,
    DuplicateCheckout,
    DuplicateSignal,
    InvalidTransition,
    PaymentValidationError,
    ProviderError,
    ProviderErrorKind,
)
from app.payments.model import (
    AssignResult,
    PENDING_STATUSES,
    PaymentAttempt,
    PaymentStatus,
    ResolutionSource,
    TransitionResult,
    utcnow,
)
from app.payments.notifier import InvoiceNotifier, LogInvoiceNotifier
from app.payments.phone import generate_account_reference, normalize_msisdn
from app.payments.store import PaymentStore
from app.providers.base import PushProvider
from services.metrics import (
    increment_callback,
    increment_discarded_signal,
    increment_stk_push,
    increment_transition,
)
from services.redaction import redact_text

logger = logging.getLogger("invoicepay.payments")

TIMEOUT_RESULT_CODE = "TIMEOUT"
TIMEOUT_RESULT_MESSAGE = "No confirmation received before the deadline"


class SignalOutcome(str, Enum):
    APPLIED = "applied"
    DUPLICATE = "duplicate"
    UNKNOWN = "unknown"
    # signal arrived for a record that cannot take it yet (timeout before the push was accepted, deadline not reached)
    IGNORED = "ignored"


@dataclass(frozen=True)
class PaymentRequest:
    invoice_ref: str
    amount: object
    phone: str
    account_reference: Optional[str] = None
    description: Optional[str] = None


def validate_amount(amount: object) -> int:
    """Positive whole number of shillings. 100.0 is accepted, 100.5 is not."""
    if isinstance(amount, bool) or amount is None:
        raise PaymentValidationError("amount", "Amount must be a whole number")
    if isinstance(amount, int):
        value = amount
    elif isinstance(amount, (float, Decimal)):
        if amount != amount or amount % 1 != 0:
            raise PaymentValidationError("amount", "Fractional amounts are not supported")
        value = int(amount)
    elif isinstance(amount, str) and amount.strip().isdigit():
        value = int(amount.strip())
    else:
        raise PaymentValidationError("amount", "Amount must be a whole number")

    if value <= 0:
        raise PaymentValidationError("amount", "Amount must be greater than zero")
    return value


class PaymentService:
    """
    Reconciles the three signals that can resolve a push: the provider
    callback, the client's polling, and the local deadline. Every terminal
    write goes through store.transition_if_not_terminal, so the first signal
    to land wins and the rest are discarded.
    """

    def __init__(
        self,
        store: PaymentStore,
        provider: PushProvider,
        notifier: Optional[InvoiceNotifier] = None,
        *,
        deadline_s: float = 120,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.provider = provider
        self.notifier = notifier or LogInvoiceNotifier()
        self.deadline_s = float(deadline_s)
        self.clock = clock

    # ------------------------------------------------------------------
    # initiate
    # ------------------------------------------------------------------
    def initiate(self, request: PaymentRequest, *, owner_id: Optional[str] = None) -> PaymentAttempt:
        invoice_ref = (request.invoice_ref or "").strip()
        if not invoice_ref:
            raise PaymentValidationError("invoice_ref", "Invoice reference is required")
        amount = validate_amount(request.amount)
        phone = normalize_msisdn(request.phone)

        reference = (request.account_reference or "").strip() or generate_account_reference(invoice_ref)
        description = (request.description or "").strip() or f"Payment for invoice {invoice_ref}"

        attempt_id = self.store.create(
            PaymentAttempt(
                invoice_ref=invoice_ref,
                amount=amount,
                payer_phone=phone,
                owner_id=owner_id,
                account_reference=reference,
                description=description,
            )
        )
        logger.info(
            "stk_push_start attempt_id=%s invoice_ref=%s amount=%s phone=%s",
            attempt_id,
            invoice_ref,
            amount,
            redact_text(phone),
        )

        try:
            accepted = self.provider.push(
                amount=amount,
                payer_phone=phone,
                reference=reference,
                description=description,
            )
        except ProviderError as exc:
            self._fail_push(attempt_id, exc)
            raise
        except Exception as exc:
            logger.exception("stk_push_crashed attempt_id=%s", attempt_id)
            wrapped = ProviderError(ProviderErrorKind.UNREACHABLE, f"Provider call failed: {exc}")
            self._fail_push(attempt_id, wrapped)
            raise wrapped from exc

        try:
            assigned = self.store.assign_checkout(
                attempt_id,
                accepted.checkout_id,
                merchant_request_id=accepted.merchant_request_id,
                provider_message=accepted.provider_message,
            )
        except DuplicateCheckout as exc:
            err = ProviderError(
                ProviderErrorKind.REJECTED,
                f"Checkout id {accepted.checkout_id} is already bound to another attempt",
            )
            self._fail_push(attempt_id, err)
            raise err from exc

        if assigned == AssignResult.ALREADY_ASSIGNED:
            logger.error("checkout_already_assigned attempt_id=%s checkout_id=%s", attempt_id, accepted.checkout_id)
        else:
            increment_transition(PaymentStatus.PUSHED.value, "push")

        # a callback may already have resolved the attempt; then this is a no-op
        if self.store.advance(attempt_id, PaymentStatus.PUSHED, PaymentStatus.AWAITING_CONFIRMATION):
            increment_transition(PaymentStatus.AWAITING_CONFIRMATION.value, "push")

        increment_stk_push("accepted")
        logger.info(
            "stk_push_accepted attempt_id=%s checkout_id=%s",
            attempt_id,
            accepted.checkout_id,
        )
        return self.store.get(attempt_id)

    def _fail_push(self, attempt_id: str, exc: ProviderError) -> None:
        exc.attempt_id = attempt_id
        increment_stk_push(exc.kind.value.lower())
        result = self.store.transition_if_not_terminal(
            attempt_id,
            PaymentStatus.ERRORED,
            result_code=exc.kind.value,
            result_message=exc.message,
            source=ResolutionSource.ERRORED_AT_PUSH,
        )
        if result.applied:
            increment_transition(PaymentStatus.ERRORED.value, ResolutionSource.ERRORED_AT_PUSH.value)
        logger.warning(
            "stk_push_failed attempt_id=%s kind=%s http_status=%s message=%s",
            attempt_id,
            exc.kind.value,
            exc.http_status,
            exc.message,
        )

    # ------------------------------------------------------------------
    # signals
    # ------------------------------------------------------------------
    def apply_callback(
        self,
        checkout_id: str,
        success: bool,
        code: object,
        message: Optional[str],
        *,
        receipt: Optional[str] = None,
        transaction_date: Optional[str] = None,
    ) -> SignalOutcome:
        try:
            attempt = self.store.lookup(checkout_id)
        except AttemptNotFound:
            logger.warning("callback_unknown_checkout checkout_id=%s", checkout_id)
            increment_callback(SignalOutcome.UNKNOWN.value)
            return SignalOutcome.UNKNOWN

        new_status = PaymentStatus.CONFIRMED if success else PaymentStatus.DECLINED
        try:
            result = self._terminate(
                attempt,
                new_status,
                result_code=None if code is None else str(code),
                result_message=message,
                source=ResolutionSource.CALLBACK,
                receipt=receipt if success else None,
                transaction_date=transaction_date if success else None,
            )
        except DuplicateSignal as signal:
            self._discard(signal, "callback")
            increment_callback(SignalOutcome.DUPLICATE.value)
            return SignalOutcome.DUPLICATE

        increment_callback(SignalOutcome.APPLIED.value)
        if result.status == PaymentStatus.CONFIRMED and result.attempt is not None:
            self._notify_paid(result.attempt)
        return SignalOutcome.APPLIED

    def apply_poll_observation(self, checkout_id: str, *, owner_id: Optional[str] = None) -> PaymentStatus:
        return self.store.lookup(checkout_id, owner_id=owner_id).status

    def apply_timeout(self, attempt_id: str, deadline_reached: bool) -> SignalOutcome:
        if not deadline_reached:
            return SignalOutcome.IGNORED

        attempt = self.store.get(attempt_id)
        if not attempt.is_terminal and attempt.status not in PENDING_STATUSES:
            logger.info("timeout_ignored attempt_id=%s status=%s", attempt_id, attempt.status.value)
            return SignalOutcome.IGNORED

        try:
            self._terminate(
                attempt,
                PaymentStatus.EXPIRED,
                result_code=TIMEOUT_RESULT_CODE,
                result_message=TIMEOUT_RESULT_MESSAGE,
                source=ResolutionSource.TIMEOUT,
            )
        except DuplicateSignal as signal:
            self._discard(signal, "timeout")
            return SignalOutcome.DUPLICATE
        return SignalOutcome.APPLIED

    # ------------------------------------------------------------------
    # deadline helpers
    # ------------------------------------------------------------------
    def deadline_for(self, attempt: PaymentAttempt) -> Optional[datetime]:
        """
        The countdown starts when the attempt enters awaiting_confirmation, or
        when the checkout id was assigned if the awaiting step never happened.
        """
        if attempt.status not in PENDING_STATUSES:
            return None
        return attempt.last_transition_at + timedelta(seconds=self.deadline_s)

    def seconds_remaining(self, attempt: PaymentAttempt, now: Optional[datetime] = None) -> Optional[int]:
        deadline = self.deadline_for(attempt)
        if deadline is None:
            return None
        left = (deadline - (now or self.clock())).total_seconds()
        return max(0, int(left + 0.999))

    def observe(self, attempt_id: str, *, owner_id: Optional[str] = None) -> PaymentAttempt:
        """One status read; expires the attempt first if its deadline has already passed."""
        attempt = self.store.get(attempt_id, owner_id=owner_id)
        deadline = self.deadline_for(attempt)
        if deadline is not None and self.clock() >= deadline:
            self.apply_timeout(attempt_id, True)
            attempt = self.store.get(attempt_id, owner_id=owner_id)
        return attempt

    def expire_stale(self, *, limit: int = 100) -> int:
        """Expire pending attempts whose deadline passed with nobody polling them."""
        cutoff = self.clock() - timedelta(seconds=self.deadline_s)
        expired = 0
        for attempt in self.store.list_stale(older_than=cutoff, limit=limit):
            if self.apply_timeout(attempt.attempt_id, True) == SignalOutcome.APPLIED:
                expired += 1
        return expired

    # ------------------------------------------------------------------
    # internals
    # ------------------------------------------------------------------
    def _terminate(
        self,
        attempt: PaymentAttempt,
        new_status: PaymentStatus,
        *,
        result_code: Optional[str],
        result_message: Optional[str],
        source: ResolutionSource,
        receipt: Optional[str] = None,
        transaction_date: Optional[str] = None,
    ) -> TransitionResult:
        if attempt.is_terminal:
            raise DuplicateSignal(f"{attempt.attempt_id} already {attempt.status.value}")

        result = self.store.transition_if_not_terminal(
            attempt.attempt_id,
            new_status,
            result_code=result_code,
            result_message=result_message,
            source=source,
            receipt=receipt,
            transaction_date=transaction_date,
        )
        if not result.applied:
            if not result.status.is_terminal:
                # the table has no edge from this status; not a duplicate
                logger.error(
                    "signal_not_applicable attempt_id=%s status=%s target=%s",
                    attempt.attempt_id,
                    result.status.value,
                    new_status.value,
                )
                raise InvalidTransition(f"{attempt.attempt_id}: {result.status.value} -> {new_status.value}")
            # lost the race to another signal
            raise DuplicateSignal(f"{attempt.attempt_id} already {result.status.value}")

        increment_transition(new_status.value, source.value)
        logger.info(
            "payment_resolved attempt_id=%s status=%s source=%s result_code=%s",
            attempt.attempt_id,
            new_status.value,
            source.value,
            result_code,
        )
        return result

    def _discard(self, signal: DuplicateSignal, kind: str) -> None:
        increment_discarded_signal(kind)
        logger.info("duplicate_signal kind=%s detail=%s", kind, signal)

    def _notify_paid(self, attempt: PaymentAttempt) -> None:
        try:
            self.notifier.invoice_paid(attempt)
        except Exception:
            # the confirmed status stands whatever happens downstream
            logger.exception(
                "invoice_notify_failed attempt_id=%s invoice_ref=%s",
                attempt.attempt_id,
                attempt.invoice_ref,
            )


def get_payment_service() -> PaymentService:
    from app.payments.notifier import default_notifier
    from app.payments.store import get_payment_store
    from app.providers.factory import get_provider
    from settings import settings

    return PaymentService(
        get_payment_store(),
        get_provider("MPESA"),
        default_notifier(),
        deadline_s=float(settings.PAYMENT_DEADLINE_S),
    )
