import threading

import pytest

from app.payments.errors import ProviderError, ProviderErrorKind, StoreUnavailable
from app.payments.model import PaymentAttempt, PaymentStatus as S, ResolutionSource
from app.payments.reconciler import StatusReconciler, StatusView, ui_state
from app.payments.service import PaymentRequest, PaymentService
from app.payments.store import InMemoryPaymentStore
from app.providers.mock import SimulatedStkProvider

from conftest import TEST_PHONE


class _StepClock:
    """Every read moves time forward by `step` seconds."""

    def __init__(self, step: float):
        self.step = step
        self.t = 0.0

    def __call__(self) -> float:
        value = self.t
        self.t += self.step
        return value


def _initiate(service: PaymentService):
    return service.initiate(PaymentRequest(invoice_ref="INV-9", amount=50, phone=TEST_PHONE))


def test_ui_states():
    assert ui_state(S.CREATED) == "initiating"
    assert ui_state(S.PUSHED) == "initiating"
    assert ui_state(S.AWAITING_CONFIRMATION) == "awaiting_confirmation"
    assert ui_state("confirmed") == "confirmed"
    assert ui_state(S.ERRORED) == "errored"


def test_stops_on_terminal_status(service):
    attempt = _initiate(service)
    views: list[StatusView] = []

    def on_status(view):
        views.append(view)
        if len(views) == 2:
            service.apply_callback(attempt.checkout_id, True, 0, "ok", receipt="QK1")

    reconciler = StatusReconciler(service, interval_s=0.001, deadline_s=120, clock=_StepClock(1), on_status=on_status)
    assert reconciler.run(attempt.attempt_id, attempt.checkout_id) == S.CONFIRMED

    assert views[0].ui_state == "awaiting_confirmation"
    assert views[0].seconds_remaining is not None and views[0].seconds_remaining <= 120
    assert views[-1].status == S.CONFIRMED
    assert views[-1].seconds_remaining == 0


def test_deadline_triggers_timeout(service, store):
    attempt = _initiate(service)
    views: list[StatusView] = []
    reconciler = StatusReconciler(
        service, interval_s=0.001, deadline_s=10, clock=_StepClock(3), on_status=views.append
    )

    assert reconciler.run(attempt.attempt_id, attempt.checkout_id) == S.EXPIRED
    stored = store.get(attempt.attempt_id)
    assert stored.status == S.EXPIRED
    assert stored.resolution_source == ResolutionSource.TIMEOUT
    assert views[-1].ui_state == "expired"
    # countdown only goes down
    remaining = [v.seconds_remaining for v in views]
    assert remaining == sorted(remaining, reverse=True)


def test_callback_racing_the_deadline_wins(service, store):
    attempt = _initiate(service)

    class _LateCallbackService:
        def __init__(self, inner):
            self.inner = inner
            self.store = inner.store

        def apply_poll_observation(self, checkout_id, **kw):
            return self.inner.apply_poll_observation(checkout_id, **kw)

        def apply_timeout(self, attempt_id, deadline_reached):
            # the callback lands a moment before the timeout write
            self.inner.apply_callback(attempt.checkout_id, False, 1032, "cancelled")
            return self.inner.apply_timeout(attempt_id, deadline_reached)

    reconciler = StatusReconciler(_LateCallbackService(service), interval_s=0.001, deadline_s=1, clock=_StepClock(5))
    assert reconciler.run(attempt.attempt_id, attempt.checkout_id) == S.DECLINED
    assert store.get(attempt.attempt_id).resolution_source == ResolutionSource.CALLBACK


def test_errored_attempt_reports_immediately(store, notifier):
    service = PaymentService(store, SimulatedStkProvider(fail_with=ProviderErrorKind.UNREACHABLE), notifier)
    with pytest.raises(ProviderError) as exc:
        _initiate(service)

    views = []
    reconciler = StatusReconciler(service, interval_s=0.001, on_status=views.append)
    assert reconciler.run(exc.value.attempt_id, None) == S.ERRORED
    assert views == [StatusView(status=S.ERRORED, ui_state="errored", seconds_remaining=None)]


def test_cancel_stops_polling_without_touching_attempt(service, store):
    attempt = _initiate(service)
    first_view = threading.Event()

    def on_status(view):
        first_view.set()

    reconciler = StatusReconciler(service, interval_s=0.05, deadline_s=3600, on_status=on_status)
    handle = reconciler.start(attempt.attempt_id, attempt.checkout_id)
    assert first_view.wait(2)

    handle.cancel()
    assert handle.wait(2) is None
    assert handle.cancelled
    assert store.get(attempt.attempt_id).status == S.AWAITING_CONFIRMATION


def test_background_run_reports_final_status(service):
    attempt = _initiate(service)
    reconciler = StatusReconciler(service, interval_s=0.01, deadline_s=3600)
    handle = reconciler.start(attempt.attempt_id, attempt.checkout_id)

    service.apply_callback(attempt.checkout_id, True, 0, "ok", receipt="QK1")
    assert handle.wait(5) == S.CONFIRMED


def test_interval_must_be_positive(service):
    with pytest.raises(ValueError):
        StatusReconciler(service, interval_s=0)


class _FlakyLookupStore(InMemoryPaymentStore):
    """lookup() fails `failures` times before the connection comes back."""

    def __init__(self, failures: int):
        super().__init__()
        self.failures = failures

    def lookup(self, checkout_id, *, owner_id=None):
        if self.failures > 0:
            self.failures -= 1
            raise StoreUnavailable("connection reset")
        return super().lookup(checkout_id, owner_id=owner_id)


def test_store_outage_during_poll_is_retried(notifier):
    store = _FlakyLookupStore(failures=0)
    service = PaymentService(store, SimulatedStkProvider(), notifier)
    attempt = _initiate(service)
    store.failures = 1
    views = []

    def on_status(view):
        views.append(view)
        service.apply_callback(attempt.checkout_id, True, 0, "ok", receipt="QK2")

    reconciler = StatusReconciler(service, interval_s=0.001, deadline_s=120, clock=_StepClock(1), on_status=on_status)
    handle = reconciler.start(attempt.attempt_id, attempt.checkout_id)

    assert handle.wait(5) == S.CONFIRMED
    assert not handle.cancelled
    assert views[-1].status == S.CONFIRMED


def test_store_outage_at_deadline_still_expires(store, notifier):
    service = PaymentService(store, SimulatedStkProvider(), notifier)
    attempt = _initiate(service)

    class _TimeoutFailsOnce:
        def __init__(self, inner):
            self.inner = inner
            self.store = inner.store
            self.timeouts = 0

        def apply_poll_observation(self, checkout_id, **kw):
            return self.inner.apply_poll_observation(checkout_id, **kw)

        def apply_timeout(self, attempt_id, deadline_reached):
            self.timeouts += 1
            if self.timeouts == 1:
                raise StoreUnavailable("connection reset")
            return self.inner.apply_timeout(attempt_id, deadline_reached)

    wrapped = _TimeoutFailsOnce(service)
    reconciler = StatusReconciler(wrapped, interval_s=0.001, deadline_s=1, clock=_StepClock(5))
    assert reconciler.run(attempt.attempt_id, attempt.checkout_id) == S.EXPIRED
    assert wrapped.timeouts == 2


def test_pushed_attempt_is_expired_at_deadline(store, notifier):
    service = PaymentService(store, SimulatedStkProvider(), notifier)
    # push accepted but the awaiting step was never written
    attempt_id = store.create(PaymentAttempt(invoice_ref="INV-9", amount=50, payer_phone="254712345678"))
    store.assign_checkout(attempt_id, "ws_CO_stuck")
    assert store.get(attempt_id).status == S.PUSHED

    views: list[StatusView] = []
    reconciler = StatusReconciler(service, interval_s=0.001, deadline_s=1, clock=_StepClock(5), on_status=views.append)
    assert reconciler.run(attempt_id, "ws_CO_stuck") == S.EXPIRED
    assert store.get(attempt_id).resolution_source == ResolutionSource.TIMEOUT
    assert views[-1].ui_state == "expired"
