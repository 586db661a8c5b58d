# app/payments/reconciler.py
from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, Optional

from app.payments.errors import StoreUnavailable
from app.payments.model import PaymentStatus
from app.payments.service import PaymentService

logger = logging.getLogger("invoicepay.payments.reconciler")

_UI_STATES = {
    PaymentStatus.CREATED: "initiating",
    PaymentStatus.PUSHED: "initiating",
    PaymentStatus.AWAITING_CONFIRMATION: "awaiting_confirmation",
    PaymentStatus.CONFIRMED: "confirmed",
    PaymentStatus.DECLINED: "declined",
    PaymentStatus.EXPIRED: "expired",
    PaymentStatus.ERRORED: "errored",
}


def ui_state(status: PaymentStatus) -> str:
    return _UI_STATES[PaymentStatus(status)]


@dataclass(frozen=True)
class StatusView:
    status: PaymentStatus
    ui_state: str
    seconds_remaining: Optional[int] = None


class ReconcileHandle:
    def __init__(self, thread: threading.Thread, stop: threading.Event):
        self._thread = thread
        self._stop = stop
        self._done = threading.Event()
        self.result: Optional[PaymentStatus] = None

    def cancel(self) -> None:
        """Stop polling. The attempt itself is left as it is."""
        self._stop.set()

    @property
    def cancelled(self) -> bool:
        return self._stop.is_set()

    def wait(self, timeout: Optional[float] = None) -> Optional[PaymentStatus]:
        self._done.wait(timeout)
        return self.result

    def _finish(self, status: Optional[PaymentStatus]) -> None:
        self.result = status
        self._done.set()


class StatusReconciler:
    """
    Drives what the payer sees while an attempt is awaiting confirmation:
    poll at a fixed interval, stop on the first terminal status, and fire
    the timeout signal once the deadline passes. It only reads and triggers;
    the terminal result always comes out of the store.
    """

    def __init__(
        self,
        service: PaymentService,
        *,
        interval_s: float = 3.0,
        deadline_s: float = 120.0,
        clock: Callable[[], float] = time.monotonic,
        on_status: Optional[Callable[[StatusView], None]] = None,
    ):
        if interval_s <= 0:
            raise ValueError("interval_s must be positive")
        self.service = service
        self.interval_s = float(interval_s)
        self.deadline_s = float(deadline_s)
        self.clock = clock
        self.on_status = on_status

    def run(
        self,
        attempt_id: str,
        checkout_id: Optional[str],
        *,
        stop: Optional[threading.Event] = None,
    ) -> Optional[PaymentStatus]:
        """Returns the final status, or None when stopped before one was reached."""
        stop = stop or threading.Event()

        if not checkout_id:
            # errored at push; nothing will ever call back
            status = self.service.store.get(attempt_id).status
            self._report(status, None)
            return status

        started = self.clock()
        while not stop.is_set():
            try:
                status = self.service.apply_poll_observation(checkout_id)
            except StoreUnavailable:
                # transient; poll again on the next tick while the deadline keeps running
                logger.warning("reconcile_store_unavailable attempt_id=%s step=poll", attempt_id)
                status = None
            elapsed = self.clock() - started
            remaining = max(0, int(self.deadline_s - elapsed + 0.999))

            if status is not None and status.is_terminal:
                self._report(status, 0)
                logger.info("reconcile_done attempt_id=%s status=%s", attempt_id, status.value)
                return status

            if elapsed >= self.deadline_s:
                final = self._expire(attempt_id, checkout_id)
                if final is not None:
                    return final
            elif status is not None:
                self._report(status, remaining)

            stop.wait(self.interval_s)

        logger.info("reconcile_cancelled attempt_id=%s", attempt_id)
        return None

    def _expire(self, attempt_id: str, checkout_id: str) -> Optional[PaymentStatus]:
        """Fire the timeout and re-read. None means the attempt is still open; try again next tick."""
        try:
            outcome = self.service.apply_timeout(attempt_id, True)
            # re-read: a callback may have won the race with the timeout
            status = self.service.apply_poll_observation(checkout_id)
        except StoreUnavailable:
            logger.warning("reconcile_store_unavailable attempt_id=%s step=timeout", attempt_id)
            return None

        if not status.is_terminal:
            logger.warning("reconcile_deadline_not_applied attempt_id=%s status=%s", attempt_id, status.value)
            return None

        self._report(status, 0)
        logger.info(
            "reconcile_deadline attempt_id=%s outcome=%s status=%s",
            attempt_id,
            outcome.value,
            status.value,
        )
        return status

    def start(self, attempt_id: str, checkout_id: Optional[str]) -> ReconcileHandle:
        stop = threading.Event()
        holder: dict[str, ReconcileHandle] = {}

        def _target() -> None:
            handle = holder["handle"]
            status: Optional[PaymentStatus] = None
            try:
                status = self.run(attempt_id, checkout_id, stop=stop)
            except Exception:
                logger.exception("reconcile_crashed attempt_id=%s", attempt_id)
            finally:
                handle._finish(status)

        thread = threading.Thread(target=_target, name=f"reconcile-{attempt_id}", daemon=True)
        handle = ReconcileHandle(thread, stop)
        holder["handle"] = handle
        thread.start()
        return handle

    def _report(self, status: PaymentStatus, seconds_remaining: Optional[int]) -> None:
        if self.on_status is None:
            return
        self.on_status(StatusView(status=status, ui_state=ui_state(status), seconds_remaining=seconds_remaining))
