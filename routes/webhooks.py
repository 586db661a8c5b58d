# routes/webhooks.py
from __future__ import annotations

import hashlib
import hmac
import json
import logging

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool

from app.payments.errors import StoreUnavailable
from app.payments.service import PaymentService, get_payment_service
from app.webhooks.mpesa import MalformedCallback, parse_stk_callback
from services.metrics import increment_callback
from services.redaction import redact_dict
from settings import settings


router = APIRouter(prefix="/v1/webhooks", tags=["webhooks"])
logger = logging.getLogger("invoicepay.webhooks")

ACK = {"ResultCode": 0, "ResultDesc": "Accepted"}


def _verify_signature(*, raw: bytes, signature_header: str | None, secret: str | None) -> tuple[bool, str | None]:
    if not secret or not secret.strip():
        # verification disabled (sandbox); validate_env_settings() requires a secret in prod
        return True, None

    if not signature_header or not signature_header.strip():
        return False, "MISSING_SIGNATURE"

    sig = signature_header.strip()
    if sig.lower().startswith("sha256="):
        sig = sig.split("=", 1)[1].strip()

    expected = hmac.new(secret.encode("utf-8"), raw, hashlib.sha256).hexdigest()
    if not hmac.compare_digest(expected, sig):
        return False, "INVALID_SIGNATURE"

    return True, None


def _allowed_ips() -> set[str]:
    raw = settings.MPESA_CALLBACK_ALLOWED_IPS or ""
    return {p.strip() for p in raw.split(",") if p.strip()}


def _client_ip(req: Request) -> str | None:
    return req.client.host if req.client else None


@router.post("/mpesa")
async def mpesa_stk_callback(
    req: Request,
    service: PaymentService = Depends(get_payment_service),
):
    raw = await req.body()
    request_id = getattr(req.state, "request_id", None)

    allowed = _allowed_ips()
    client_ip = _client_ip(req)
    if allowed and client_ip not in allowed:
        logger.warning("mpesa_callback_rejected request_id=%s reason=IP_NOT_ALLOWED ip=%s", request_id, client_ip)
        increment_callback("rejected")
        raise HTTPException(status_code=403, detail={"error": "IP_NOT_ALLOWED"})

    sig_ok, sig_err = _verify_signature(
        raw=raw,
        signature_header=req.headers.get("X-Signature"),
        secret=settings.MPESA_WEBHOOK_SECRET,
    )
    if not sig_ok:
        logger.warning("mpesa_callback_rejected request_id=%s reason=%s", request_id, sig_err)
        increment_callback("rejected")
        raise HTTPException(status_code=401, detail={"error": sig_err})

    try:
        payload = json.loads(raw.decode("utf-8"))
    except (UnicodeDecodeError, ValueError):
        increment_callback("malformed")
        raise HTTPException(status_code=400, detail={"error": "INVALID_JSON"})

    try:
        parsed = parse_stk_callback(payload)
    except MalformedCallback as e:
        logger.warning("mpesa_callback_malformed request_id=%s reason=%s", request_id, e.reason)
        increment_callback("malformed")
        raise HTTPException(status_code=400, detail={"error": e.reason})

    logger.info(
        "mpesa_callback_received request_id=%s checkout_id=%s result_code=%s metadata=%s",
        request_id,
        parsed.checkout_id,
        parsed.code,
        redact_dict(parsed.metadata),
    )

    try:
        # store and notifier are blocking; keep them off the event loop
        outcome = await run_in_threadpool(
            service.apply_callback,
            parsed.checkout_id,
            parsed.success,
            parsed.code,
            parsed.message,
            receipt=parsed.receipt,
            transaction_date=parsed.transaction_date,
        )
    except StoreUnavailable:
        logger.exception("mpesa_callback_store_unavailable request_id=%s checkout_id=%s", request_id, parsed.checkout_id)
        return JSONResponse(status_code=503, content={"ResultCode": 1, "ResultDesc": "Temporarily unavailable"})

    logger.info(
        "mpesa_callback_done request_id=%s checkout_id=%s outcome=%s",
        request_id,
        parsed.checkout_id,
        outcome.value,
    )
    # unknown and duplicate callbacks are acknowledged too, so Daraja stops redelivering
    return ACK
