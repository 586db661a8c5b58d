# app/providers/factory.py
from __future__ import annotations

from typing import Any, Dict

from app.providers.mpesa.config import simulate_pushes

_PROVIDER_CACHE: Dict[str, Any] = {}


def get_provider(name: str = "MPESA"):
    key = (name or "").strip().upper().replace("-", "_").replace(" ", "_")
    if not key:
        return None

    if key == "MPESA" and simulate_pushes():
        key = "MPESA_SIM"

    if key in _PROVIDER_CACHE:
        return _PROVIDER_CACHE[key]

    if key == "MPESA_SIM":
        from app.providers.mock import SimulatedStkProvider
        provider = SimulatedStkProvider()

    elif key in ("MPESA", "DARAJA"):
        from app.providers.mpesa.daraja import MpesaStkProvider
        provider = MpesaStkProvider()

    else:
        return None

    _PROVIDER_CACHE[key] = provider
    return provider


def reset_providers() -> None:
    _PROVIDER_CACHE.clear()
