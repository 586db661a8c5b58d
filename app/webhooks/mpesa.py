# app/webhooks/mpesa.py
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Optional


class MalformedCallback(ValueError):
    """Payload is not a Daraja stkCallback envelope."""

    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


@dataclass(frozen=True)
class ParsedCallback:
    checkout_id: str
    success: bool
    code: int
    message: str
    merchant_request_id: Optional[str] = None
    receipt: Optional[str] = None
    transaction_date: Optional[str] = None
    metadata: dict[str, Any] = field(default_factory=dict)


def _metadata_items(callback: dict) -> dict[str, Any]:
    meta = callback.get("CallbackMetadata")
    if meta is None:
        return {}
    if not isinstance(meta, dict) or not isinstance(meta.get("Item"), list):
        raise MalformedCallback("INVALID_CALLBACK_METADATA")

    out: dict[str, Any] = {}
    for item in meta["Item"]:
        if not isinstance(item, dict) or not item.get("Name"):
            continue
        # Daraja omits Value for some items (e.g. Balance)
        out[str(item["Name"])] = item.get("Value")
    return out


def parse_stk_callback(payload: Any) -> ParsedCallback:
    """
    {"Body": {"stkCallback": {"MerchantRequestID", "CheckoutRequestID",
    "ResultCode", "ResultDesc", "CallbackMetadata": {"Item": [...]}}}}

    ResultCode 0 is success; anything else (1032 cancelled, 1037 no response
    from handset, 2001 wrong PIN, ...) is a decline.
    """
    if not isinstance(payload, dict):
        raise MalformedCallback("INVALID_JSON_OBJECT")
    body = payload.get("Body")
    if not isinstance(body, dict):
        raise MalformedCallback("MISSING_BODY")
    callback = body.get("stkCallback")
    if not isinstance(callback, dict):
        raise MalformedCallback("MISSING_STK_CALLBACK")

    checkout_id = str(callback.get("CheckoutRequestID") or "").strip()
    if not checkout_id:
        raise MalformedCallback("MISSING_CHECKOUT_REQUEST_ID")

    raw_code = callback.get("ResultCode")
    if isinstance(raw_code, bool) or raw_code is None:
        raise MalformedCallback("MISSING_RESULT_CODE")
    try:
        code = int(str(raw_code).strip())
    except ValueError:
        raise MalformedCallback("INVALID_RESULT_CODE") from None

    metadata = _metadata_items(callback)
    receipt = metadata.get("MpesaReceiptNumber")
    transaction_date = metadata.get("TransactionDate")

    return ParsedCallback(
        checkout_id=checkout_id,
        success=code == 0,
        code=code,
        message=str(callback.get("ResultDesc") or ""),
        merchant_request_id=(str(callback["MerchantRequestID"]) if callback.get("MerchantRequestID") else None),
        receipt=str(receipt) if receipt else None,
        transaction_date=str(transaction_date) if transaction_date else None,
        metadata=metadata,
    )
