# app/payments/notifier.py
from __future__ import annotations

import logging
from typing import Optional, Protocol

import httpx

from app.payments.model import PaymentAttempt
from settings import settings

logger = logging.getLogger("invoicepay.payments.notify")


class InvoiceNotifier(Protocol):
    def invoice_paid(self, attempt: PaymentAttempt) -> None: ...


class LogInvoiceNotifier:
    """Used when no invoice-status endpoint is configured."""

    def invoice_paid(self, attempt: PaymentAttempt) -> None:
        logger.info(
            "invoice_paid invoice_ref=%s attempt_id=%s receipt=%s",
            attempt.invoice_ref,
            attempt.attempt_id,
            attempt.receipt,
        )


class HttpInvoiceNotifier:
    def __init__(self, url: str, *, timeout_s: float = 5.0, client: Optional[httpx.Client] = None):
        self.url = url
        self._client = client or httpx.Client(timeout=timeout_s)

    def invoice_paid(self, attempt: PaymentAttempt) -> None:
        resp = self._client.post(
            self.url,
            json={
                "invoice_ref": attempt.invoice_ref,
                "status": "paid",
                "attempt_id": attempt.attempt_id,
                "amount": attempt.amount,
                "receipt": attempt.receipt,
                "transaction_date": attempt.transaction_date,
            },
        )
        resp.raise_for_status()
        logger.info("invoice_paid delivered invoice_ref=%s status=%s", attempt.invoice_ref, resp.status_code)


def default_notifier() -> InvoiceNotifier:
    url = (settings.INVOICE_NOTIFY_URL or "").strip()
    if url:
        return HttpInvoiceNotifier(url, timeout_s=float(settings.INVOICE_NOTIFY_TIMEOUT_S or 5.0))
    return LogInvoiceNotifier()
