# app/payments/repository.py
from __future__ import annotations

import logging
import uuid
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Iterator, Optional

import psycopg2
from psycopg2 import errors as pg_errors
from psycopg2.extras import RealDictCursor
from psycopg2.pool import PoolError

from app.payments.errors import AttemptNotFound, DuplicateCheckout, StoreUnavailable
from app.payments.model import (
    PENDING_STATUSES,
    AssignResult,
    PaymentAttempt,
    PaymentStatus,
    ResolutionSource,
    TransitionResult,
)
from app.payments.state_machine import assert_checkout_invariant, can_transition, sources_for
from app.payments.store import new_attempt_id
from db import get_conn

logger = logging.getLogger("invoicepay.payments.store")

_COLUMNS = """
  id::text AS attempt_id,
  owner_id,
  invoice_ref,
  amount,
  payer_phone,
  account_reference,
  description,
  checkout_id,
  merchant_request_id,
  provider_message,
  status,
  result_code,
  result_message,
  receipt,
  transaction_date,
  resolution_source,
  created_at,
  last_transition_at
"""


def _row_to_attempt(row: dict[str, Any]) -> PaymentAttempt:
    source = row.get("resolution_source")
    return PaymentAttempt(
        attempt_id=row["attempt_id"],
        owner_id=row.get("owner_id"),
        invoice_ref=row["invoice_ref"],
        amount=int(row["amount"]),
        payer_phone=row["payer_phone"],
        account_reference=row.get("account_reference"),
        description=row.get("description"),
        checkout_id=row.get("checkout_id"),
        merchant_request_id=row.get("merchant_request_id"),
        provider_message=row.get("provider_message"),
        status=PaymentStatus(row["status"]),
        result_code=row.get("result_code"),
        result_message=row.get("result_message"),
        receipt=row.get("receipt"),
        transaction_date=row.get("transaction_date"),
        resolution_source=ResolutionSource(source) if source else None,
        created_at=row["created_at"],
        last_transition_at=row["last_transition_at"],
    )


def _is_uuid(value: str) -> bool:
    try:
        uuid.UUID(str(value))
    except ValueError:
        return False
    return True


@contextmanager
def _store_errors() -> Iterator[None]:
    """
    Infrastructure faults become StoreUnavailable (retryable);
    business errors raised inside the block pass through untouched.
    """
    try:
        yield
    except (psycopg2.OperationalError, psycopg2.InterfaceError, PoolError) as exc:
        logger.warning("payment store unavailable err=%s", type(exc).__name__)
        raise StoreUnavailable(str(exc)) from exc


class PostgresPaymentStore:
    """
    app.payment_attempts backed store.
    Every status write is a single conditional UPDATE keyed on the current
    status, so concurrent writers from different processes are linearized by
    Postgres row locking.
    """

    def create(self, attempt: PaymentAttempt) -> str:
        attempt_id = attempt.attempt_id or new_attempt_id()
        with _store_errors(), get_conn() as conn:
            try:
                with conn.cursor() as cur:
                    cur.execute(
                        """
                        INSERT INTO app.payment_attempts (
                          id, owner_id, invoice_ref, amount, payer_phone,
                          account_reference, description, checkout_id, status,
                          created_at, last_transition_at
                        )
                        VALUES (%s::uuid, %s, %s, %s, %s, %s, %s, %s, %s, now(), now())
                        """,
                        (
                            attempt_id,
                            attempt.owner_id,
                            attempt.invoice_ref,
                            int(attempt.amount),
                            attempt.payer_phone,
                            attempt.account_reference,
                            attempt.description,
                            attempt.checkout_id,
                            PaymentStatus(attempt.status).value,
                        ),
                    )
            except pg_errors.UniqueViolation as exc:
                raise DuplicateCheckout(attempt.checkout_id or attempt_id) from exc
        return attempt_id

    def assign_checkout(
        self,
        attempt_id: str,
        checkout_id: str,
        *,
        merchant_request_id: Optional[str] = None,
        provider_message: Optional[str] = None,
    ) -> AssignResult:
        with _store_errors(), get_conn() as conn:
            try:
                with conn.cursor() as cur:
                    cur.execute(
                        """
                        UPDATE app.payment_attempts
                        SET
                          checkout_id = %s,
                          merchant_request_id = %s,
                          provider_message = %s,
                          status = 'pushed',
                          last_transition_at = now()
                        WHERE id = %s::uuid
                          AND checkout_id IS NULL
                          AND status = 'created'
                        """,
                        (checkout_id, merchant_request_id, provider_message, attempt_id),
                    )
                    if cur.rowcount == 1:
                        return AssignResult.ASSIGNED
            except pg_errors.UniqueViolation as exc:
                raise DuplicateCheckout(checkout_id) from exc

            self._fetch_by_id(conn, attempt_id)
            return AssignResult.ALREADY_ASSIGNED

    def advance(self, attempt_id: str, from_status: PaymentStatus, to_status: PaymentStatus) -> bool:
        from_status, to_status = PaymentStatus(from_status), PaymentStatus(to_status)
        if not can_transition(from_status, to_status):
            return False
        with _store_errors(), get_conn() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    UPDATE app.payment_attempts
                    SET status = %s, last_transition_at = now()
                    WHERE id = %s::uuid
                      AND status = %s
                      AND checkout_id IS NOT NULL
                    """,
                    (to_status.value, attempt_id, from_status.value),
                )
                return cur.rowcount == 1

    def transition_if_not_terminal(
        self,
        attempt_id: str,
        new_status: PaymentStatus,
        *,
        result_code: Optional[str],
        result_message: Optional[str],
        source: ResolutionSource,
        receipt: Optional[str] = None,
        transaction_date: Optional[str] = None,
    ) -> TransitionResult:
        new_status = PaymentStatus(new_status)
        if not new_status.is_terminal:
            raise ValueError(f"transition_if_not_terminal expects a terminal status, got {new_status.value}")

        allowed_from = sorted(s.value for s in sources_for(new_status))

        with _store_errors(), get_conn() as conn:
            with conn.cursor(cursor_factory=RealDictCursor) as cur:
                cur.execute(
                    f"""
                    UPDATE app.payment_attempts
                    SET
                      status = %s,
                      result_code = %s,
                      result_message = %s,
                      resolution_source = %s,
                      receipt = COALESCE(%s, receipt),
                      transaction_date = COALESCE(%s, transaction_date),
                      last_transition_at = now()
                    WHERE id = %s::uuid
                      AND status = ANY(%s)
                    RETURNING {_COLUMNS}
                    """,
                    (
                        new_status.value,
                        result_code,
                        result_message,
                        ResolutionSource(source).value,
                        receipt,
                        transaction_date,
                        attempt_id,
                        allowed_from,
                    ),
                )
                row = cur.fetchone()

            if row:
                attempt = _row_to_attempt(dict(row))
                assert_checkout_invariant(attempt.status, attempt.checkout_id)
                return TransitionResult.ok(attempt)

            # the conditional write lost; report what is there now
            return TransitionResult.not_applied(self._fetch_by_id(conn, attempt_id))

    def lookup(self, checkout_id: str, *, owner_id: Optional[str] = None) -> PaymentAttempt:
        with _store_errors(), get_conn() as conn:
            row = self._fetch_one(conn, "checkout_id = %s", (checkout_id,), owner_id=owner_id)
        if row is None:
            raise AttemptNotFound(checkout_id)
        return row

    def get(self, attempt_id: str, *, owner_id: Optional[str] = None) -> PaymentAttempt:
        if not _is_uuid(attempt_id):
            raise AttemptNotFound(attempt_id)
        with _store_errors(), get_conn() as conn:
            row = self._fetch_one(conn, "id = %s::uuid", (attempt_id,), owner_id=owner_id)
        if row is None:
            raise AttemptNotFound(attempt_id)
        return row

    def list_for_invoice(self, invoice_ref: str, *, owner_id: Optional[str]) -> list[PaymentAttempt]:
        owner_filter = ""
        params: list[Any] = [invoice_ref]
        if owner_id is not None:
            owner_filter = "AND owner_id = %s"
            params.append(owner_id)

        with _store_errors(), get_conn() as conn:
            with conn.cursor(cursor_factory=RealDictCursor) as cur:
                cur.execute(
                    f"""
                    SELECT {_COLUMNS}
                    FROM app.payment_attempts
                    WHERE invoice_ref = %s
                    {owner_filter}
                    ORDER BY created_at
                    """,
                    tuple(params),
                )
                return [_row_to_attempt(dict(r)) for r in cur.fetchall()]

    def list_stale(self, *, older_than: datetime, limit: int = 100) -> list[PaymentAttempt]:
        with _store_errors(), get_conn() as conn:
            with conn.cursor(cursor_factory=RealDictCursor) as cur:
                cur.execute(
                    f"""
                    SELECT {_COLUMNS}
                    FROM app.payment_attempts
                    WHERE status = ANY(%s)
                      AND last_transition_at <= %s
                    ORDER BY last_transition_at
                    LIMIT %s
                    """,
                    (sorted(s.value for s in PENDING_STATUSES), older_than, limit),
                )
                return [_row_to_attempt(dict(r)) for r in cur.fetchall()]

    @staticmethod
    def _fetch_one(conn, where: str, params: tuple, *, owner_id: Optional[str]) -> PaymentAttempt | None:
        owner_filter = ""
        if owner_id is not None:
            owner_filter = "AND owner_id = %s"
            params = (*params, owner_id)

        with conn.cursor(cursor_factory=RealDictCursor) as cur:
            cur.execute(
                f"""
                SELECT {_COLUMNS}
                FROM app.payment_attempts
                WHERE {where}
                {owner_filter}
                LIMIT 1
                """,
                params,
            )
            row = cur.fetchone()
        return _row_to_attempt(dict(row)) if row else None

    def _fetch_by_id(self, conn, attempt_id: str) -> PaymentAttempt:
        attempt = self._fetch_one(conn, "id = %s::uuid", (attempt_id,), owner_id=None)
        if attempt is None:
            raise AttemptNotFound(attempt_id)
        return attempt
