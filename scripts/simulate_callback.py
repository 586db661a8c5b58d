"""
Post a Daraja-shaped STK callback to a running instance.

  python scripts/simulate_callback.py sim_crID_123 --success --receipt QK12AB34CD
  python scripts/simulate_callback.py sim_crID_123 --code 1032
"""
import argparse
import os
import sys

import requests

from _webhook_signing import canonical_json_bytes, mpesa_signature_header, stk_callback_payload


def main(argv=None):
    parser = argparse.ArgumentParser(description="Send a simulated M-Pesa STK callback")
    parser.add_argument("checkout_id")
    parser.add_argument("--base-url", default=os.getenv("BASE_URL", "http://127.0.0.1:8000"))
    parser.add_argument("--success", action="store_true", help="ResultCode 0")
    parser.add_argument("--code", type=int, default=1032, help="ResultCode when not --success")
    parser.add_argument("--amount", type=int, default=None)
    parser.add_argument("--receipt", default=None)
    parser.add_argument("--phone", default=None)
    args = parser.parse_args(argv)

    payload = stk_callback_payload(
        args.checkout_id,
        result_code=0 if args.success else args.code,
        amount=args.amount,
        receipt=args.receipt,
        phone=args.phone,
    )
    body = canonical_json_bytes(payload)
    headers = {"Content-Type": "application/json"}
    secret = os.getenv("MPESA_WEBHOOK_SECRET")
    if secret:
        headers.update(mpesa_signature_header(secret, body))

    try:
        resp = requests.post(args.base_url.rstrip("/") + "/v1/webhooks/mpesa", data=body, headers=headers, timeout=10)
    except requests.RequestException as exc:
        print("Request failed: %s" % exc)
        return 1

    print("HTTP %s %s" % (resp.status_code, resp.text))
    return 0 if resp.status_code == 200 else 1


if __name__ == "__main__":
    sys.exit(main())
