# routes/payments.py
from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException

from app.payments.errors import (
    AttemptNotFound,
    PaymentError,
    PaymentValidationError,
    ProviderError,
    StoreUnavailable,
)
from app.payments.model import PaymentAttempt
from app.payments.reconciler import ui_state
from app.payments.service import PaymentRequest, PaymentService, get_payment_service
from deps.auth import CurrentUser, get_current_user
from schemas import (
    InvoicePaymentsResponse,
    MpesaPaymentRequest,
    PaymentAttemptResponse,
    PaymentStatusResponse,
)

router = APIRouter(prefix="/v1", tags=["payments"])
logger = logging.getLogger("invoicepay.payments.api")


def map_payment_error(e: PaymentError) -> HTTPException:
    if isinstance(e, PaymentValidationError):
        return HTTPException(
            status_code=422,
            detail={"error": e.code, "field": e.field, "message": e.message},
        )
    if isinstance(e, ProviderError):
        return HTTPException(
            status_code=502,
            detail={
                "error": e.code,
                "kind": e.kind.value,
                "message": e.message,
                "attempt_id": e.attempt_id,
            },
        )
    if isinstance(e, AttemptNotFound):
        return HTTPException(status_code=404, detail={"error": e.code})
    if isinstance(e, StoreUnavailable):
        return HTTPException(
            status_code=503,
            detail={"error": e.code, "retryable": True, "message": "Temporarily unavailable, try again"},
        )
    logger.error("unmapped payment error code=%s err=%s", e.code, e)
    return HTTPException(status_code=500, detail={"error": "INTERNAL_ERROR"})


def _attempt_view(a: PaymentAttempt) -> PaymentAttemptResponse:
    return PaymentAttemptResponse(**a.to_dict())


@router.post("/payments/mpesa", response_model=PaymentAttemptResponse, status_code=201)
def create_mpesa_payment(
    body: MpesaPaymentRequest,
    user: CurrentUser = Depends(get_current_user),
    service: PaymentService = Depends(get_payment_service),
):
    try:
        attempt = service.initiate(
            PaymentRequest(
                invoice_ref=body.invoice_ref,
                amount=body.amount,
                phone=body.phone,
                account_reference=body.account_reference,
                description=body.description,
            ),
            owner_id=user.user_id,
        )
    except PaymentError as e:
        raise map_payment_error(e)
    return _attempt_view(attempt)


@router.get("/payments/{attempt_id}", response_model=PaymentAttemptResponse)
def get_payment(
    attempt_id: str,
    user: CurrentUser = Depends(get_current_user),
    service: PaymentService = Depends(get_payment_service),
):
    try:
        attempt = service.store.get(attempt_id, owner_id=user.user_id)
    except PaymentError as e:
        raise map_payment_error(e)
    return _attempt_view(attempt)


@router.get("/payments/{attempt_id}/status", response_model=PaymentStatusResponse)
def get_payment_status(
    attempt_id: str,
    user: CurrentUser = Depends(get_current_user),
    service: PaymentService = Depends(get_payment_service),
):
    """One reconciler observation; an overdue pending attempt is expired before answering."""
    try:
        attempt = service.observe(attempt_id, owner_id=user.user_id)
    except PaymentError as e:
        raise map_payment_error(e)

    return PaymentStatusResponse(
        attempt_id=attempt.attempt_id,
        status=attempt.status.value,
        ui_state=ui_state(attempt.status),
        seconds_remaining=service.seconds_remaining(attempt),
        result_code=attempt.result_code,
        result_message=attempt.result_message,
        receipt=attempt.receipt,
        transaction_date=attempt.transaction_date,
    )


@router.get("/invoices/{invoice_ref}/payments", response_model=InvoicePaymentsResponse)
def list_invoice_payments(
    invoice_ref: str,
    user: CurrentUser = Depends(get_current_user),
    service: PaymentService = Depends(get_payment_service),
):
    try:
        attempts = service.store.list_for_invoice(invoice_ref, owner_id=user.user_id)
    except PaymentError as e:
        raise map_payment_error(e)
    return InvoicePaymentsResponse(
        invoice_ref=invoice_ref,
        attempts=[_attempt_view(a) for a in attempts],
    )
