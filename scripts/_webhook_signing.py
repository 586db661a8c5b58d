import hashlib
import hmac
import json


def canonical_json_bytes(payload) -> bytes:
    return json.dumps(
        payload,
        separators=(",", ":"),
        sort_keys=True,
        ensure_ascii=False,
    ).encode("utf-8")


def hmac_sha256_hex(secret: str, body_bytes: bytes) -> str:
    return hmac.new(secret.encode("utf-8"), body_bytes, hashlib.sha256).hexdigest()


def mpesa_signature_header(secret: str, body_bytes: bytes) -> dict[str, str]:
    return {"X-Signature": "sha256=" + hmac_sha256_hex(secret, body_bytes)}


def stk_callback_payload(
    checkout_id: str,
    *,
    result_code: int = 0,
    result_desc: str | None = None,
    amount: int | None = None,
    receipt: str | None = None,
    phone: str | None = None,
    merchant_request_id: str | None = None,
    transaction_date: str | None = None,
) -> dict:
    callback = {
        "MerchantRequestID": merchant_request_id or "sim_mrID_local",
        "CheckoutRequestID": checkout_id,
        "ResultCode": result_code,
        "ResultDesc": result_desc
        or ("The service request is processed successfully." if result_code == 0 else "Request cancelled by user"),
    }
    if result_code == 0:
        items = [
            {"Name": "Amount", "Value": amount if amount is not None else 1},
            {"Name": "MpesaReceiptNumber", "Value": receipt or "SIM0000000"},
            {"Name": "TransactionDate", "Value": int(transaction_date or "20240101120000")},
        ]
        if phone:
            items.append({"Name": "PhoneNumber", "Value": int(phone)})
        callback["CallbackMetadata"] = {"Item": items}
    return {"Body": {"stkCallback": callback}}
