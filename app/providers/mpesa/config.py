# app/providers/mpesa/config.py
from __future__ import annotations

from dataclasses import dataclass

from settings import settings


def mpesa_mode() -> str:
    return (settings.MPESA_MODE or "sandbox").strip().lower()


def simulate_pushes() -> bool:
    # simulation is a sandbox-only convenience; real mode always talks to Daraja
    return mpesa_mode() == "sandbox" and bool(settings.MPESA_SIMULATE)


@dataclass(frozen=True)
class MpesaConfig:
    mode: str
    base_url: str
    consumer_key: str
    consumer_secret: str
    shortcode: str
    passkey: str
    callback_url: str
    timeout_s: float

    @property
    def token_url(self) -> str:
        return f"{self.base_url}/oauth/v1/generate?grant_type=client_credentials"

    @property
    def stk_push_url(self) -> str:
        return f"{self.base_url}/mpesa/stkpush/v1/processrequest"

    def missing(self) -> list[str]:
        out: list[str] = []
        for name, value in (
            ("MPESA_CONSUMER_KEY", self.consumer_key),
            ("MPESA_CONSUMER_SECRET", self.consumer_secret),
            ("MPESA_SHORTCODE", self.shortcode),
            ("MPESA_PASSKEY", self.passkey),
            ("MPESA_CALLBACK_URL", self.callback_url),
        ):
            if not value:
                out.append(name)
        return out


def mpesa_config() -> MpesaConfig:
    mode = mpesa_mode()
    if mode == "real":
        base = (settings.MPESA_REAL_BASE_URL or "").strip()
    else:
        base = (settings.MPESA_SANDBOX_BASE_URL or "").strip()

    return MpesaConfig(
        mode=mode,
        base_url=base.rstrip("/"),
        consumer_key=(settings.MPESA_CONSUMER_KEY or "").strip(),
        consumer_secret=(settings.MPESA_CONSUMER_SECRET or "").strip(),
        shortcode=(settings.MPESA_SHORTCODE or "").strip(),
        passkey=(settings.MPESA_PASSKEY or "").strip(),
        callback_url=(settings.MPESA_CALLBACK_URL or "").strip(),
        timeout_s=float(settings.MPESA_HTTP_TIMEOUT_S or 20.0),
    )
