#main.py
import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from middleware import RequestContextMiddleware
from routes.health import router as health_router
from routes.payments import router as payments_router
from routes.webhooks import router as webhooks_router
from services.observability import configure_logging
from settings import validate_env_settings

logger = logging.getLogger("invoicepay.app")


def create_app() -> FastAPI:
    validate_env_settings()
    configure_logging()

    app = FastAPI(title="InvoicePay API", version="1.0.0")

    # -----------------------------
    # MIDDLEWARE
    # -----------------------------
    app.add_middleware(RequestContextMiddleware)

    # -----------------------------
    # ROUTERS
    # -----------------------------
    app.include_router(health_router)
    app.include_router(payments_router)
    app.include_router(webhooks_router)

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception):
        logger.exception(
            "unhandled_error request_id=%s path=%s",
            getattr(request.state, "request_id", None),
            request.url.path,
        )
        return JSONResponse(
            status_code=500,
            content={"detail": "Internal server error"},
        )

    return app


app = create_app()
