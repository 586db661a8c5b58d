# tests/conftest.py

import os
import uuid
from dataclasses import dataclass
from typing import Dict

import pytest
from fastapi.testclient import TestClient

from app.payments.notifier import LogInvoiceNotifier
from app.payments.service import PaymentService, get_payment_service
from app.payments.store import InMemoryPaymentStore, reset_payment_store
from app.providers.factory import reset_providers
from app.providers.mock import SimulatedStkProvider
from main import create_app
from security import create_access_token
from services.metrics import reset_counters
from settings import settings


TEST_PHONE = os.getenv("TEST_PHONE", "0712345678")


@dataclass
class AuthedUser:
    user_id: str
    token: str

    @property
    def headers(self) -> Dict[str, str]:
        return _auth_headers(self.token)


class RecordingNotifier(LogInvoiceNotifier):
    def __init__(self, fail: bool = False):
        self.fail = fail
        self.paid: list = []

    def invoice_paid(self, attempt) -> None:
        self.paid.append(attempt)
        if self.fail:
            raise RuntimeError("invoice service down")


def _auth_headers(token: str) -> Dict[str, str]:
    return {"Authorization": f"Bearer {token}"}


def make_user() -> AuthedUser:
    user_id = f"user-{uuid.uuid4().hex[:8]}"
    return AuthedUser(user_id=user_id, token=create_access_token(user_id))


# ---------------------------
# Isolation
# ---------------------------

@pytest.fixture(autouse=True)
def _isolated_state(monkeypatch):
    monkeypatch.setattr(settings, "ENV", "dev", raising=False)
    monkeypatch.setattr(settings, "PAYMENT_STORE", "memory", raising=False)
    monkeypatch.setattr(settings, "MPESA_MODE", "sandbox", raising=False)
    monkeypatch.setattr(settings, "MPESA_SIMULATE", True, raising=False)
    monkeypatch.setattr(settings, "MPESA_WEBHOOK_SECRET", "", raising=False)
    monkeypatch.setattr(settings, "MPESA_CALLBACK_ALLOWED_IPS", "", raising=False)
    monkeypatch.setattr(settings, "INVOICE_NOTIFY_URL", "", raising=False)
    reset_payment_store()
    reset_providers()
    reset_counters()
    yield
    reset_payment_store()
    reset_providers()


# ---------------------------
# Service wiring
# ---------------------------

@pytest.fixture()
def store() -> InMemoryPaymentStore:
    return InMemoryPaymentStore()


@pytest.fixture()
def provider() -> SimulatedStkProvider:
    return SimulatedStkProvider()


@pytest.fixture()
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture()
def service(store, provider, notifier) -> PaymentService:
    return PaymentService(store, provider, notifier, deadline_s=120)


# ---------------------------
# Client + Auth Helpers
# ---------------------------

@pytest.fixture()
def app(service):
    app = create_app()
    app.dependency_overrides[get_payment_service] = lambda: service
    yield app
    app.dependency_overrides.clear()


@pytest.fixture()
def client(app) -> TestClient:
    # Needed so tests can assert 500s instead of pytest re-raising server exceptions
    return TestClient(app, raise_server_exceptions=False)


@pytest.fixture()
def user() -> AuthedUser:
    return make_user()


@pytest.fixture()
def other_user() -> AuthedUser:
    return make_user()
