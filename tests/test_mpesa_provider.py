from __future__ import annotations

import base64
import json
import logging
from datetime import datetime, timezone

import httpx
import pytest

from app.payments.errors import PaymentValidationError, ProviderError, ProviderErrorKind
from app.providers.factory import get_provider
from app.providers.mock import SimulatedStkProvider
from app.providers.mpesa.config import MpesaConfig
from app.providers.mpesa.daraja import MpesaStkProvider, stk_password, stk_timestamp
from app.providers.mpesa.http import HttpResponse
from app.providers.mpesa.token import OAuthTokenSupplier
from settings import settings


CFG = MpesaConfig(
    mode="sandbox",
    base_url="https://sandbox.safaricom.co.ke",
    consumer_key="ck",
    consumer_secret="cs",
    shortcode="174379",
    passkey="passkey-123",
    callback_url="https://example.test/v1/webhooks/mpesa",
    timeout_s=5.0,
)

# 2024-03-01 09:15:30 UTC == 12:15:30 EAT
FIXED_NOW = datetime(2024, 3, 1, 9, 15, 30, tzinfo=timezone.utc)


class _FakeResponse:
    def __init__(self, status_code: int, payload: dict | None = None):
        self.status_code = status_code
        self._payload = payload or {}
        self.text = json.dumps(self._payload)

    def json(self):
        return self._payload


class _FakeHttp:
    def __init__(self, response: HttpResponse | None = None, exc: Exception | None = None):
        self.response = response
        self.exc = exc
        self.calls: list[dict] = []

    def post(self, url, *, headers, json_body=None, debug=False):
        self.calls.append({"url": url, "headers": headers, "json": json_body})
        if self.exc:
            raise self.exc
        return self.response


class _StaticTokens:
    def __init__(self, token: str | None = "token-123"):
        self.token = token
        self.invalidated = 0

    def get_token(self):
        return self.token

    def invalidate(self):
        self.invalidated += 1


def _resp(status: int, payload: dict) -> HttpResponse:
    return HttpResponse(status_code=status, json=payload, text=json.dumps(payload))


def _provider(http, tokens=None) -> MpesaStkProvider:
    return MpesaStkProvider(http, tokens=tokens or _StaticTokens(), cfg=CFG, clock=lambda: FIXED_NOW)


def _push(provider, phone="0712345678"):
    return provider.push(amount=100, payer_phone=phone, reference="INV001", description="Payment for invoice INV-001")


ACCEPTED = {
    "MerchantRequestID": "29115-34620561-1",
    "CheckoutRequestID": "ws_CO_191220191020363925",
    "ResponseCode": "0",
    "ResponseDescription": "Success. Request accepted for processing",
    "CustomerMessage": "Success. Request accepted for processing",
}


def test_timestamp_and_password():
    ts = stk_timestamp(FIXED_NOW)
    assert ts == "20240301121530"
    assert base64.b64decode(stk_password("174379", "pk", ts)).decode() == "174379pk20240301121530"


def test_push_accepted_builds_daraja_body():
    http = _FakeHttp(_resp(200, ACCEPTED))
    result = _push(_provider(http))

    assert result.checkout_id == "ws_CO_191220191020363925"
    assert result.merchant_request_id == "29115-34620561-1"
    assert result.provider_message.startswith("Success")

    call = http.calls[0]
    assert call["url"] == "https://sandbox.safaricom.co.ke/mpesa/stkpush/v1/processrequest"
    assert call["headers"]["Authorization"] == "Bearer token-123"
    body = call["json"]
    assert body["BusinessShortCode"] == "174379"
    assert body["PartyB"] == "174379"
    assert body["Timestamp"] == "20240301121530"
    assert body["Password"] == stk_password("174379", "passkey-123", "20240301121530")
    assert body["TransactionType"] == "CustomerPayBillOnline"
    assert body["Amount"] == 100
    assert body["PartyA"] == body["PhoneNumber"] == "254712345678"
    assert body["CallBackURL"] == CFG.callback_url
    assert body["AccountReference"] == "INV001"


def test_invalid_phone_fails_before_network():
    http = _FakeHttp(_resp(200, ACCEPTED))
    tokens = _StaticTokens()
    with pytest.raises(PaymentValidationError):
        _push(_provider(http, tokens), phone="123")
    assert http.calls == []


def test_missing_token_is_auth_failed():
    http = _FakeHttp(_resp(200, ACCEPTED))
    with pytest.raises(ProviderError) as exc:
        _push(_provider(http, _StaticTokens(token=None)))
    assert exc.value.kind == ProviderErrorKind.AUTH_FAILED
    assert http.calls == []


def test_401_is_auth_failed_and_drops_cached_token():
    tokens = _StaticTokens()
    http = _FakeHttp(_resp(401, {"errorCode": "404.001.03", "errorMessage": "Invalid Access Token"}))
    with pytest.raises(ProviderError) as exc:
        _push(_provider(http, tokens))
    assert exc.value.kind == ProviderErrorKind.AUTH_FAILED
    assert exc.value.http_status == 401
    assert exc.value.message == "Invalid Access Token"
    assert tokens.invalidated == 1


def test_bad_request_is_rejected():
    http = _FakeHttp(_resp(400, {"errorCode": "400.002.02", "errorMessage": "Bad Request - Invalid PhoneNumber"}))
    with pytest.raises(ProviderError) as exc:
        _push(_provider(http))
    assert exc.value.kind == ProviderErrorKind.REJECTED
    assert "Invalid PhoneNumber" in exc.value.message


def test_nonzero_response_code_is_rejected():
    payload = dict(ACCEPTED, ResponseCode="1", ResponseDescription="Rejected by system")
    with pytest.raises(ProviderError) as exc:
        _push(_provider(_FakeHttp(_resp(200, payload))))
    assert exc.value.kind == ProviderErrorKind.REJECTED


@pytest.mark.parametrize("status", [500, 503, 429])
def test_server_errors_are_unreachable(status):
    with pytest.raises(ProviderError) as exc:
        _push(_provider(_FakeHttp(_resp(status, {}))))
    assert exc.value.kind == ProviderErrorKind.UNREACHABLE


@pytest.mark.parametrize(
    "exc",
    [httpx.ReadTimeout("timed out"), httpx.ConnectError("refused")],
)
def test_transport_failures_are_unreachable(exc):
    with pytest.raises(ProviderError) as raised:
        _push(_provider(_FakeHttp(exc=exc)))
    assert raised.value.kind == ProviderErrorKind.UNREACHABLE


def test_push_log_masks_phone(caplog):
    caplog.set_level(logging.INFO, logger="invoicepay.mpesa")
    _push(_provider(_FakeHttp(_resp(200, ACCEPTED))))
    assert "254712345678" not in caplog.text
    assert "254712****78" in caplog.text


# ---------------------------
# OAuth token
# ---------------------------

def test_token_success_is_cached(monkeypatch):
    calls = {"n": 0}

    def fake_get(url, auth=None, timeout=None):
        calls["n"] += 1
        assert url == "https://sandbox.safaricom.co.ke/oauth/v1/generate?grant_type=client_credentials"
        assert auth == ("ck", "cs")
        return _FakeResponse(200, {"access_token": "tok-1", "expires_in": "3599"})

    monkeypatch.setattr("app.providers.mpesa.token.requests.get", fake_get)
    now = {"t": 1000.0}
    supplier = OAuthTokenSupplier(CFG, clock=lambda: now["t"])

    assert supplier.get_token() == "tok-1"
    now["t"] += 3000
    assert supplier.get_token() == "tok-1"
    assert calls["n"] == 1

    # inside the safety buffer: refresh
    now["t"] += 560
    assert supplier.get_token() == "tok-1"
    assert calls["n"] == 2


def test_token_failure_returns_none(monkeypatch):
    monkeypatch.setattr(
        "app.providers.mpesa.token.requests.get",
        lambda url, auth=None, timeout=None: _FakeResponse(400, {"errorMessage": "Invalid credentials"}),
    )
    assert OAuthTokenSupplier(CFG).get_token() is None


def test_token_without_credentials_skips_network(monkeypatch):
    def boom(*a, **kw):
        raise AssertionError("network called")

    monkeypatch.setattr("app.providers.mpesa.token.requests.get", boom)
    cfg = MpesaConfig(**{**CFG.__dict__, "consumer_key": ""})
    assert OAuthTokenSupplier(cfg).get_token() is None


# ---------------------------
# simulator + factory
# ---------------------------

def test_simulator_hands_out_sim_ids():
    sim = SimulatedStkProvider()
    result = sim.push(amount=10, payer_phone="+254712345678", reference="X", description="d")
    assert result.checkout_id.startswith("sim_crID_")
    assert result.merchant_request_id.startswith("sim_mrID_")
    assert sim.calls[0]["phone"] == "254712345678"


def test_factory_simulates_in_sandbox():
    assert isinstance(get_provider("MPESA"), SimulatedStkProvider)
    assert get_provider("MPESA") is get_provider("mpesa")
    assert get_provider("unknown") is None


def test_factory_uses_daraja_in_real_mode(monkeypatch):
    monkeypatch.setattr(settings, "MPESA_MODE", "real", raising=False)
    assert isinstance(get_provider("MPESA"), MpesaStkProvider)
