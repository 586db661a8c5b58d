# scripts/reconcile_daemon.py
from __future__ import annotations

import logging
import time

from app.payments.service import get_payment_service
from settings import settings


logger = logging.getLogger("invoicepay.reconcile_daemon")


def _interval_seconds() -> int:
    return max(1, int(settings.PAYMENT_STALE_SWEEP_S or 300))


def sweep_once(limit: int = 100) -> int:
    """Expire pending attempts that outlived the deadline with no callback and no poller."""
    return get_payment_service().expire_stale(limit=limit)


def main() -> None:
    logging.basicConfig(level=logging.INFO, format="%(levelname)s %(name)s: %(message)s")
    interval = _interval_seconds()
    if settings.PAYMENT_STORE != "postgres":
        logger.warning("PAYMENT_STORE=%s; the sweep only sees this process's attempts", settings.PAYMENT_STORE)
    logger.info("Reconcile daemon starting; interval=%ss deadline=%ss", interval, settings.PAYMENT_DEADLINE_S)

    while True:
        try:
            expired = sweep_once()
        except KeyboardInterrupt:
            logger.info("Reconcile daemon exiting")
            raise
        except Exception:
            logger.exception("Reconcile sweep failed")
            raise

        logger.info("Reconcile sweep done expired=%s", expired)
        time.sleep(interval)


if __name__ == "__main__":
    main()
