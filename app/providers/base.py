# app/providers/base.py
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Optional, Protocol


@dataclass(frozen=True)
class PushAccepted:
    checkout_id: str
    provider_message: str
    merchant_request_id: Optional[str] = None
    response: Optional[dict[str, Any]] = None


class PushProvider(Protocol):
    """
    One push attempt per call. Raises PaymentValidationError for a bad phone
    and ProviderError for anything the provider (or the network) refused.
    """

    def push(
        self,
        *,
        amount: int,
        payer_phone: str,
        reference: str,
        description: str,
    ) -> PushAccepted: ...


class TokenSupplier(Protocol):
    def get_token(self) -> Optional[str]: ...
