"""
End-to-end check against a running sandbox instance (MPESA_SIMULATE=true):
push -> simulated callback -> status.

  BASE_URL=http://127.0.0.1:8000 JWT_SECRET=... python scripts/smoke_dev.py
"""
import os
import sys
import uuid

import requests

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

from security import create_access_token  # noqa: E402
from _webhook_signing import canonical_json_bytes, mpesa_signature_header, stk_callback_payload  # noqa: E402


def die(message, code=1):
    print(message)
    sys.exit(code)


def step(message):
    print("\n==> " + message)


def request(method, url, headers=None, json_body=None, data=None, allow_failure=False):
    try:
        resp = requests.request(method, url, headers=headers, json=json_body, data=data, timeout=30)
    except Exception as exc:
        die("Request failed: %s" % exc)
    if resp.status_code < 200 or resp.status_code >= 300:
        if not allow_failure:
            print("HTTP %s %s" % (resp.status_code, resp.reason))
            print(resp.text)
            sys.exit(1)
    return resp


def auth_headers(token):
    return {"Authorization": "Bearer %s" % token}


def main():
    base_url = os.getenv("BASE_URL", "http://127.0.0.1:8000").rstrip("/")
    phone = os.getenv("SMOKE_PHONE", "0712345678")
    invoice_ref = os.getenv("SMOKE_INVOICE", "INV-" + uuid.uuid4().hex[:6].upper())
    webhook_secret = os.getenv("MPESA_WEBHOOK_SECRET")
    token = create_access_token(os.getenv("SMOKE_USER_ID", "smoke-user"))

    step("Health")
    health = request("GET", base_url + "/health").json()
    if not health.get("mpesa_simulated"):
        die("Instance is not simulating pushes; refusing to run against Daraja.")

    step("Initiate STK push for %s" % invoice_ref)
    attempt = request(
        "POST",
        base_url + "/v1/payments/mpesa",
        headers=auth_headers(token),
        json_body={"invoice_ref": invoice_ref, "amount": 10, "phone": phone},
    ).json()
    print(attempt)
    if attempt.get("status") != "awaiting_confirmation":
        die("Expected awaiting_confirmation, got %s" % attempt.get("status"))

    step("Deliver simulated success callback")
    body = canonical_json_bytes(
        stk_callback_payload(attempt["checkout_id"], result_code=0, amount=10, receipt="SMOKE" + uuid.uuid4().hex[:5].upper())
    )
    headers = {"Content-Type": "application/json"}
    if webhook_secret:
        headers.update(mpesa_signature_header(webhook_secret, body))
    request("POST", base_url + "/v1/webhooks/mpesa", headers=headers, data=body)

    step("Status")
    status = request("GET", base_url + "/v1/payments/%s/status" % attempt["attempt_id"], headers=auth_headers(token)).json()
    print(status)
    if status.get("status") != "confirmed":
        die("Expected confirmed, got %s" % status.get("status"))

    step("Late duplicate callback is acknowledged and ignored")
    late = canonical_json_bytes(stk_callback_payload(attempt["checkout_id"], result_code=1032))
    headers = {"Content-Type": "application/json"}
    if webhook_secret:
        headers.update(mpesa_signature_header(webhook_secret, late))
    request("POST", base_url + "/v1/webhooks/mpesa", headers=headers, data=late)
    status = request("GET", base_url + "/v1/payments/%s" % attempt["attempt_id"], headers=auth_headers(token)).json()
    if status.get("status") != "confirmed":
        die("Duplicate callback changed the outcome: %s" % status.get("status"))

    print("\nOK")


if __name__ == "__main__":
    main()
