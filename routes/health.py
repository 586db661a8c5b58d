from __future__ import annotations

import os

from fastapi import APIRouter
from fastapi.responses import Response

from app.providers.mpesa.config import mpesa_mode, simulate_pushes
from services.metrics import render_prometheus
from settings import settings

router = APIRouter(tags=["health"])


def _check_db() -> tuple[bool | None, str | None]:
    # the in-memory store has no database to probe
    if settings.PAYMENT_STORE != "postgres":
        return None, None

    from db import get_conn

    try:
        with get_conn() as conn:
            with conn.cursor() as cur:
                cur.execute("SELECT 1;")
                cur.fetchone()
        return True, None
    except Exception as exc:
        return False, f"{type(exc).__name__}: {exc}"


def _resolve_git_sha() -> str | None:
    return (os.getenv("GIT_SHA") or "").strip() or None


@router.get("/health")
def health():
    return {
        "ok": True,
        "env": (settings.ENV or "").strip(),
        "mpesa_mode": mpesa_mode(),
        "mpesa_simulated": simulate_pushes(),
        "payment_store": settings.PAYMENT_STORE,
        "git_sha": _resolve_git_sha(),
    }


@router.get("/healthz")
def healthz():
    db_ok, db_error = _check_db()
    return {
        "ok": db_ok is not False,
        "version": os.getenv("APP_VERSION", "1.0.0"),
        "git_sha": _resolve_git_sha(),
        "db_ok": db_ok,
        "db_error": db_error,
    }


@router.get("/metrics", tags=["metrics"])
def metrics():
    return Response(content=render_prometheus(), media_type="text/plain; version=0.0.4")
