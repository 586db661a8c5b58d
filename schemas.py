# schemas.py
from __future__ import annotations

from datetime import datetime
from typing import Optional, Union

from pydantic import BaseModel, Field


# -------- PAYMENTS --------
class MpesaPaymentRequest(BaseModel):
    invoice_ref: str = Field(min_length=1, max_length=64)
    # whole shillings; fractional values are rejected by the service with a clear message
    amount: Union[int, float]
    phone: str = Field(min_length=9, max_length=20)
    account_reference: Optional[str] = Field(default=None, max_length=12)
    description: Optional[str] = Field(default=None, max_length=64)


class PaymentAttemptResponse(BaseModel):
    attempt_id: str
    invoice_ref: str
    amount: int
    payer_phone: str
    status: str
    account_reference: Optional[str] = None
    checkout_id: Optional[str] = None
    merchant_request_id: Optional[str] = None
    provider_message: Optional[str] = None
    result_code: Optional[str] = None
    result_message: Optional[str] = None
    receipt: Optional[str] = None
    transaction_date: Optional[str] = None
    resolution_source: Optional[str] = None
    created_at: datetime
    last_transition_at: datetime


class PaymentStatusResponse(BaseModel):
    attempt_id: str
    status: str
    ui_state: str
    seconds_remaining: Optional[int] = None
    result_code: Optional[str] = None
    result_message: Optional[str] = None
    receipt: Optional[str] = None
    transaction_date: Optional[str] = None


class InvoicePaymentsResponse(BaseModel):
    invoice_ref: str
    attempts: list[PaymentAttemptResponse]


# -------- WEBHOOKS --------
class CallbackAck(BaseModel):
    ResultCode: int = 0
    ResultDesc: str = "Accepted"
