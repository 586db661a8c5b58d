# app/providers/mock.py
from __future__ import annotations

import secrets
import time
from typing import Optional

from app.payments.errors import ProviderError, ProviderErrorKind
from app.payments.phone import normalize_msisdn
from app.providers.base import PushAccepted


class SimulatedStkProvider:
    """
    Sandbox/test provider. Accepts the push locally and hands out
    sim_crID_... checkout ids; the result then arrives through a (simulated)
    callback or the local timeout.

    fail_with: make every push raise ProviderError of that kind.
    checkout_ids: fixed ids to hand out in order (tests).
    """

    def __init__(
        self,
        *,
        fail_with: Optional[ProviderErrorKind] = None,
        checkout_ids: Optional[list[str]] = None,
    ):
        self.fail_with = fail_with
        self._checkout_ids = list(checkout_ids or [])
        self.calls: list[dict] = []

    def push(self, *, amount: int, payer_phone: str, reference: str, description: str) -> PushAccepted:
        phone = normalize_msisdn(payer_phone)
        self.calls.append(
            {"amount": amount, "phone": phone, "reference": reference, "description": description}
        )

        if self.fail_with is not None:
            raise ProviderError(self.fail_with, "Simulation: push failed")

        stamp = int(time.time() * 1000)
        checkout_id = self._checkout_ids.pop(0) if self._checkout_ids else f"sim_crID_{stamp}_{secrets.token_hex(4)}"
        return PushAccepted(
            checkout_id=checkout_id,
            merchant_request_id=f"sim_mrID_{stamp}_{secrets.token_hex(4)}",
            provider_message="Simulation: Please enter your M-Pesa PIN to complete the payment.",
            response={"ResponseCode": "0", "simulated": True},
        )
