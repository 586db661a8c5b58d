# app/providers/mpesa/daraja.py
from __future__ import annotations

import base64
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional

import httpx

from app.payments.errors import ProviderError, ProviderErrorKind
from app.payments.phone import normalize_msisdn
from app.providers.base import PushAccepted, TokenSupplier
from app.providers.mpesa.config import MpesaConfig, mpesa_config
from app.providers.mpesa.http import HttpClient, is_retryable_http
from app.providers.mpesa.token import OAuthTokenSupplier
from services.redaction import redact_text

logger = logging.getLogger("invoicepay.mpesa")

# Daraja timestamps are East Africa Time
EAT = timezone(timedelta(hours=3))
TRANSACTION_TYPE = "CustomerPayBillOnline"


def stk_timestamp(now: datetime) -> str:
    return now.astimezone(EAT).strftime("%Y%m%d%H%M%S")


def stk_password(shortcode: str, passkey: str, timestamp: str) -> str:
    return base64.b64encode(f"{shortcode}{passkey}{timestamp}".encode("utf-8")).decode("ascii")


class MpesaStkProvider:
    def __init__(
        self,
        http: Optional[HttpClient] = None,
        *,
        tokens: Optional[TokenSupplier] = None,
        cfg: Optional[MpesaConfig] = None,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self._cfg = cfg
        self.http = http or HttpClient(timeout_s=self.cfg.timeout_s)
        self.tokens = tokens or OAuthTokenSupplier(cfg)
        self._clock = clock

    @property
    def cfg(self) -> MpesaConfig:
        return self._cfg or mpesa_config()

    def build_request(self, *, amount: int, phone: str, reference: str, description: str) -> dict[str, Any]:
        cfg = self.cfg
        timestamp = stk_timestamp(self._clock())
        return {
            "BusinessShortCode": cfg.shortcode,
            "Password": stk_password(cfg.shortcode, cfg.passkey, timestamp),
            "Timestamp": timestamp,
            "TransactionType": TRANSACTION_TYPE,
            "Amount": int(amount),
            "PartyA": phone,
            "PartyB": cfg.shortcode,
            "PhoneNumber": phone,
            "CallBackURL": cfg.callback_url,
            "AccountReference": reference,
            "TransactionDesc": description or f"Payment for invoice {reference}",
        }

    def push(self, *, amount: int, payer_phone: str, reference: str, description: str) -> PushAccepted:
        phone = normalize_msisdn(payer_phone)

        token = self.tokens.get_token()
        if not token:
            raise ProviderError(ProviderErrorKind.AUTH_FAILED, "Failed to get M-Pesa access token")

        body = self.build_request(amount=amount, phone=phone, reference=reference, description=description)
        headers = {
            "Authorization": f"Bearer {token}",
            "Content-Type": "application/json",
        }

        try:
            resp = self.http.post(self.cfg.stk_push_url, headers=headers, json_body=body, debug=True)
        except httpx.TimeoutException as exc:
            logger.warning("stk push timeout reference=%s", reference)
            raise ProviderError(ProviderErrorKind.UNREACHABLE, "Gateway timeout") from exc
        except httpx.HTTPError as exc:
            logger.warning("stk push transport error reference=%s err=%s", reference, type(exc).__name__)
            raise ProviderError(ProviderErrorKind.UNREACHABLE, f"Provider error: {type(exc).__name__}") from exc

        payload = resp.json if isinstance(resp.json, dict) else {}
        logger.info(
            "stk push response status=%s reference=%s phone=%s response_code=%s",
            resp.status_code,
            reference,
            redact_text(phone),
            payload.get("ResponseCode"),
        )

        if resp.status_code in (401, 403):
            invalidate = getattr(self.tokens, "invalidate", None)
            if callable(invalidate):
                invalidate()
            raise ProviderError(
                ProviderErrorKind.AUTH_FAILED,
                _error_message(payload, resp.text) or f"HTTP {resp.status_code}",
                http_status=resp.status_code,
                response=payload,
            )

        if resp.status_code >= 500 or is_retryable_http(resp.status_code):
            raise ProviderError(
                ProviderErrorKind.UNREACHABLE,
                _error_message(payload, resp.text) or f"HTTP {resp.status_code}",
                http_status=resp.status_code,
                response=payload,
            )

        checkout_id = str(payload.get("CheckoutRequestID") or "").strip()
        response_code = str(payload.get("ResponseCode") if payload.get("ResponseCode") is not None else "").strip()

        if resp.status_code == 200 and response_code == "0" and checkout_id:
            return PushAccepted(
                checkout_id=checkout_id,
                merchant_request_id=(str(payload.get("MerchantRequestID") or "").strip() or None),
                provider_message=str(
                    payload.get("CustomerMessage") or payload.get("ResponseDescription") or "Request accepted"
                ),
                response=payload,
            )

        raise ProviderError(
            ProviderErrorKind.REJECTED,
            _error_message(payload, resp.text) or f"HTTP {resp.status_code}",
            http_status=resp.status_code,
            response=payload,
        )


def _error_message(payload: dict[str, Any], text: str) -> str:
    for key in ("errorMessage", "ResponseDescription", "CustomerMessage", "error_description"):
        value = payload.get(key)
        if value:
            return str(value)
    return (text or "").strip()[:200]
