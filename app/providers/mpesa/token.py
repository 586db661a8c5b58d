# app/providers/mpesa/token.py
from __future__ import annotations

import logging
import time
from typing import Any, Optional

import requests

from app.providers.mpesa.config import MpesaConfig, mpesa_config

TOKEN_SAFETY_BUFFER_S = 60
DEFAULT_EXPIRES_IN_S = 3599
logger = logging.getLogger("invoicepay.mpesa")


class OAuthTokenSupplier:
    """
    Client-credentials token for Daraja. Cached until shortly before expiry;
    any failure yields None and the push client reports AUTH_FAILED.
    """

    def __init__(self, cfg: Optional[MpesaConfig] = None, *, clock=time.time):
        self._cfg = cfg
        self._clock = clock
        self._token: Optional[str] = None
        self._token_exp: float = 0.0

    @property
    def cfg(self) -> MpesaConfig:
        return self._cfg or mpesa_config()

    def get_token(self) -> Optional[str]:
        now = self._clock()
        if self._token and now < (self._token_exp - TOKEN_SAFETY_BUFFER_S):
            return self._token

        cfg = self.cfg
        if not (cfg.consumer_key and cfg.consumer_secret and cfg.base_url):
            logger.warning("mpesa token skipped: consumer credentials not configured")
            return None

        try:
            resp = requests.get(
                cfg.token_url,
                auth=(cfg.consumer_key, cfg.consumer_secret),
                timeout=cfg.timeout_s,
            )
        except requests.RequestException as exc:
            logger.warning("mpesa token request failed err=%s", type(exc).__name__)
            return None

        if resp.status_code != 200:
            logger.warning("mpesa token rejected status=%s", resp.status_code)
            return None

        payload = _safe_json(resp)
        token = payload.get("access_token") if isinstance(payload, dict) else None
        if not token:
            logger.warning("mpesa token response missing access_token")
            return None

        try:
            expires_in = int(payload.get("expires_in") or DEFAULT_EXPIRES_IN_S)
        except (TypeError, ValueError):
            expires_in = DEFAULT_EXPIRES_IN_S

        self._token = token
        self._token_exp = now + max(0, expires_in)
        return self._token

    def invalidate(self) -> None:
        self._token = None
        self._token_exp = 0.0


def _safe_json(resp) -> Any:
    try:
        return resp.json()
    except ValueError:
        return None
